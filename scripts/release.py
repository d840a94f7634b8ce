"""
Release phase: migrate the schema, verify it against the models, then seed.

Run once per deploy before the web processes start. Every step is
idempotent, so re-running after a partial failure is safe.

Usage:
  python scripts/release.py                 # DATABASE_URL from the environment
  python scripts/release.py --skip-seed
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy import inspect

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.irdesk.config import load_config, production_problems  # noqa: E402
from app.irdesk.models import Base  # noqa: E402
from scripts._db_utils import create_script_engine  # noqa: E402
from scripts.init_db import seed_only  # noqa: E402


def _alembic_config(db_url: str):
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    cfg.attributes["database_url"] = db_url
    return cfg


def unmigrated_tables(db_url: str) -> list[str]:
    engine = create_script_engine(db_url)
    try:
        present = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    return sorted(t for t in Base.metadata.tables if t not in present)


def run_release(*, database_url: str | None = None, seed: bool = True) -> dict[str, int]:
    load_dotenv()
    config = load_config()
    if database_url:
        config["DATABASE_URL"] = database_url
    problems = production_problems(config)
    if problems:
        raise RuntimeError(" ".join(problems))
    db_url = config["DATABASE_URL"]

    print(f"=== irdesk release (ENV={config['ENV']}) ===", flush=True)
    from alembic import command

    command.upgrade(_alembic_config(db_url), "head")
    missing = unmigrated_tables(db_url)
    if missing:
        raise RuntimeError(f"Schema is missing tables after upgrade: {', '.join(missing)}")
    print(f"Schema at head ({len(Base.metadata.tables)} tables).", flush=True)

    counts: dict[str, int] = {}
    if seed:
        counts = seed_only(database_url=db_url)
    print("=== irdesk release done ===", flush=True)
    return counts


def main() -> None:
    parser = argparse.ArgumentParser(description="Migrate and seed the IRDesk database.")
    parser.add_argument("--database-url", help="Overrides DATABASE_URL")
    parser.add_argument("--skip-seed", action="store_true", help="Only run migrations")
    args = parser.parse_args()
    run_release(database_url=args.database_url, seed=not args.skip_seed)


if __name__ == "__main__":
    main()
