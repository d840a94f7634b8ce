from __future__ import annotations

import json
import math
from datetime import date, datetime, timezone
from typing import Any, Callable

from flask import current_app, request
from sqlalchemy.orm import Query

from app.irdesk.errors import ValidationError

MAX_PAGE_SIZE = 200


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns are stored without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def iso(value: date | datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def clean_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def parse_date(s: str | None) -> date | None:
    """Parse YYYY-MM-DD date string."""
    if not s:
        return None
    s = str(s).strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s[:10])
    except ValueError as e:
        raise ValidationError(f"Invalid date: {s!r}") from e


def parse_datetime(s: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp (a trailing Z is accepted) into naive UTC."""
    if not s:
        return None
    s = str(s).strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError as e:
        raise ValidationError(f"Invalid timestamp: {s!r}") from e
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_int(s: Any, *, field: str = "value") -> int | None:
    if s is None or s == "":
        return None
    if isinstance(s, bool):
        raise ValidationError(f"{field} must be an integer")
    try:
        return int(s)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{field} must be an integer") from e


def parse_bool(s: Any) -> bool | None:
    if s is None or s == "":
        return None
    if isinstance(s, bool):
        return s
    return str(s).strip().lower() in ("1", "true", "yes", "on")


def parse_custom_fields(raw: Any) -> dict | None:
    """Accept a dict or a JSON object string for free-form metadata."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, dict):
        return raw
    try:
        value = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise ValidationError(f"Metadata JSON is invalid: {e}") from e
    if not isinstance(value, dict):
        raise ValidationError("Metadata must be a JSON object.")
    return value


def request_payload() -> dict:
    """JSON body, falling back to form fields."""
    if request.is_json:
        data = request.get_json(silent=True)
        if data is None:
            raise ValidationError("Request body is not valid JSON.")
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object.")
        return data
    return request.form.to_dict()


def page_args() -> tuple[int, int]:
    try:
        page = max(int(request.args.get("page") or 1), 1)
    except ValueError:
        page = 1
    default = int(current_app.config.get("DEFAULT_PAGE_SIZE") or 50)
    try:
        per_page = int(request.args.get("per_page") or default)
    except ValueError:
        per_page = default
    per_page = min(max(per_page, 1), MAX_PAGE_SIZE)
    return page, per_page


def paginate(q: Query, *, key: str, serialize: Callable[[Any], dict], page: int, per_page: int) -> dict:
    total = q.order_by(None).count()
    items = q.offset((page - 1) * per_page).limit(per_page).all()
    return {
        key: [serialize(i) for i in items],
        "page": page,
        "perPage": per_page,
        "totalCount": total,
        "totalPages": math.ceil(total / per_page) if total else 0,
        "hasNext": page * per_page < total,
    }
