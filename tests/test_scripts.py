import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash

from app.irdesk.models import Base, User
from scripts.init_db import seed_only
from scripts.release import run_release, unmigrated_tables
from scripts.start import gunicorn_argv


def test_seed_only_is_idempotent(app, tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path / 'seed.db'}"
    engine = create_engine(db_url)
    Base.metadata.create_all(engine)
    monkeypatch.setenv("ADMIN_EMAIL", "Ops@Example.test")
    monkeypatch.setenv("ADMIN_PASSWORD", "initial-secret")

    first = seed_only(database_url=db_url)
    assert first["runbook_templates"] == 2
    assert first["communication_templates"] == 3
    assert first["exercises"] > 0

    monkeypatch.setenv("ADMIN_PASSWORD", "rotated-secret")
    second = seed_only(database_url=db_url)
    assert set(second.values()) == {0}

    with Session(engine) as s:
        admin = s.query(User).filter(User.email == "ops@example.test").one()
        assert admin.is_system_admin
        assert check_password_hash(admin.password_hash, "initial-secret")
        assert s.query(User).count() == 1
    engine.dispose()


def test_release_migrates_and_seeds(tmp_path, monkeypatch):
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'ignored.db'}")
    monkeypatch.setenv("ADMIN_EMAIL", "ops@example.test")
    monkeypatch.setenv("ADMIN_PASSWORD", "initial-secret")
    db_url = f"sqlite:///{tmp_path / 'release.db'}"

    counts = run_release(database_url=db_url)
    assert counts["runbook_templates"] == 2
    assert unmigrated_tables(db_url) == []
    assert not (tmp_path / "ignored.db").exists()

    assert set(run_release(database_url=db_url).values()) == {0}


def test_release_refuses_sqlite_in_production(tmp_path, monkeypatch):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "a-long-random-production-secret")
    with pytest.raises(RuntimeError, match="must be Postgres"):
        run_release(database_url=f"sqlite:///{tmp_path / 'prod.db'}")
    assert not (tmp_path / "prod.db").exists()


def test_gunicorn_argv_targets_wsgi_app():
    argv = gunicorn_argv(9000, "3")
    assert argv[:2] == ["gunicorn", "app.wsgi:app"]
    assert argv[argv.index("--bind") + 1] == "0.0.0.0:9000"
    assert argv[argv.index("--workers") + 1] == "3"
