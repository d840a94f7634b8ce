import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    storage_backend: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    trial_days: int
    default_page_size: int
    max_evidence_mb: int
    max_request_mb: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///irdesk.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        trial_days=_getenv_int("TRIAL_DAYS", 30),
        default_page_size=_getenv_int("DEFAULT_PAGE_SIZE", 50),
        max_evidence_mb=_getenv_int("MAX_EVIDENCE_MB", 25),
        max_request_mb=_getenv_int("MAX_REQUEST_MB", 50),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": _getenv("STORAGE_ROOT", ""),
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "TRIAL_DAYS": s.trial_days,
        "DEFAULT_PAGE_SIZE": s.default_page_size,
        "MAX_EVIDENCE_MB": s.max_evidence_mb,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        # whole-request cap; per-file evidence cap is MAX_EVIDENCE_MB
        "MAX_CONTENT_LENGTH": s.max_request_mb * 1024 * 1024,
        "JSON_SORT_KEYS": False,
    }


def production_problems(config: dict) -> list[str]:
    """Settings that must not reach a production deploy; empty outside production."""
    env = str(config.get("ENV") or "").strip().lower()
    if env not in ("prod", "production"):
        return []
    problems = []
    db_url = str(config.get("DATABASE_URL") or "").strip()
    if not db_url:
        problems.append("DATABASE_URL is required in production.")
    elif db_url.startswith("sqlite"):
        problems.append("DATABASE_URL must be Postgres in production (not sqlite).")
    if str(config.get("SECRET_KEY") or "") in ("", "change-me"):
        problems.append("SECRET_KEY must be set to a strong value in production (not default).")
    return problems
