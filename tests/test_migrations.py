from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from app.irdesk.models import Base

ROOT = Path(__file__).resolve().parents[1]


def _alembic_config() -> Config:
    # No ini file: keeps alembic from reconfiguring logging for the test session
    cfg = Config()
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    return cfg


def test_baseline_migration_matches_models(tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path / 'migrated.db'}"
    monkeypatch.setenv("DATABASE_URL", db_url)
    cfg = _alembic_config()
    command.upgrade(cfg, "head")

    engine = create_engine(db_url)
    insp = inspect(engine)
    assert set(insp.get_table_names()) - {"alembic_version"} == set(Base.metadata.tables)
    for table in Base.metadata.sorted_tables:
        assert {c["name"] for c in insp.get_columns(table.name)} == {c.name for c in table.columns}, table.name
        migrated_indexes = {i["name"] for i in insp.get_indexes(table.name)}
        assert {i.name for i in table.indexes} <= migrated_indexes, table.name

    # Re-running is a no-op
    command.upgrade(cfg, "head")

    command.downgrade(cfg, "base")
    assert set(inspect(engine).get_table_names()) <= {"alembic_version"}
    engine.dispose()
