from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.irdesk.models import Base
from app.irdesk.utils import iso, utcnow

if TYPE_CHECKING:
    from app.irdesk.models import User

DIFFICULTIES = ("beginner", "intermediate", "advanced")
PASSING_PERCENTAGE = 70


class TabletopExercise(Base):
    """Platform-wide exercise; completions are scoped to the taker's organization."""

    __tablename__ = "tabletop_exercises"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    scenario: Mapped[str] = mapped_column(Text, nullable=False)
    difficulty: Mapped[str] = mapped_column(String(20), nullable=False, default="beginner")
    estimated_duration: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    objectives: Mapped[list | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    questions: Mapped[list["ExerciseQuestion"]] = relationship(
        back_populates="exercise",
        cascade="all, delete-orphan",
        order_by="ExerciseQuestion.question_number",
        lazy="selectin",
    )

    @property
    def total_points(self) -> int:
        return sum(q.points or 1 for q in self.questions)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "scenario": self.scenario,
            "difficulty": self.difficulty,
            "estimatedDuration": self.estimated_duration,
            "category": self.category,
            "objectives": self.objectives or [],
            "isActive": self.is_active,
            "questionCount": len(self.questions),
            "totalPoints": self.total_points,
            "createdAt": iso(self.created_at),
            "updatedAt": iso(self.updated_at),
        }


class ExerciseQuestion(Base):
    __tablename__ = "exercise_questions"
    __table_args__ = (UniqueConstraint("exercise_id", "question_number", name="uq_exercise_question_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    exercise_id: Mapped[int] = mapped_column(ForeignKey("tabletop_exercises.id", ondelete="CASCADE"), nullable=False)
    question_number: Mapped[int] = mapped_column(Integer, nullable=False)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    # [{"id": "a", "text": "..."}]
    options: Mapped[list] = mapped_column(JSON, nullable=False)
    correct_answer: Mapped[str] = mapped_column(String(50), nullable=False)
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    exercise: Mapped[TabletopExercise] = relationship(back_populates="questions")

    def to_dict(self, *, include_answer: bool = False) -> dict:
        data = {
            "id": self.id,
            "questionNumber": self.question_number,
            "question": self.question,
            "options": self.options or [],
            "points": self.points,
        }
        if include_answer:
            data["correctAnswer"] = self.correct_answer
            data["explanation"] = self.explanation
        return data


class ExerciseCompletion(Base):
    """One attempt; ``completed_at`` is null while the session is still open."""

    __tablename__ = "exercise_completions"
    __table_args__ = (
        Index("idx_exercise_completions_org", "organization_id", "completed_at"),
        Index("idx_exercise_completions_user", "user_id", "exercise_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    exercise_id: Mapped[int] = mapped_column(ForeignKey("tabletop_exercises.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # question id (as string) -> option id
    answers: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    progress: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    certificate_id: Mapped[str | None] = mapped_column(String(50), nullable=True)

    exercise: Mapped[TabletopExercise] = relationship(lazy="joined")
    user: Mapped["User"] = relationship("User", lazy="joined")

    @property
    def percentage(self) -> float:
        if not self.total_score:
            return 0.0
        return round(self.score / self.total_score * 100, 1)

    @property
    def passed(self) -> bool:
        return self.completed_at is not None and self.percentage >= PASSING_PERCENTAGE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "exerciseId": self.exercise_id,
            "exerciseTitle": self.exercise.title if self.exercise else None,
            "userId": self.user_id,
            "organizationId": self.organization_id,
            "startedAt": iso(self.started_at),
            "completedAt": iso(self.completed_at),
            "score": self.score,
            "totalScore": self.total_score,
            "percentage": self.percentage if self.completed_at else None,
            "passed": self.passed,
            "answers": self.answers or {},
            "progress": self.progress or {},
            "certificateId": self.certificate_id,
        }
