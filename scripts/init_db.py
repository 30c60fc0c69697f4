from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from luckyshare.db.engine import get_sessionmaker, make_engine
from luckyshare.workflows import ensure_builtin_algorithms


def upgrade_db(target_revision: str = "head") -> None:
    """Apply Alembic migrations up to the requested revision."""
    project_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(project_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(project_root / "alembic"))
    command.upgrade(alembic_cfg, target_revision)


def print_tables() -> None:
    """Inspect the configured database and print all table names."""
    engine = make_engine()
    insp = inspect(engine)
    print("Current tables:", ", ".join(sorted(insp.get_table_names())))


def register_algorithms() -> None:
    """Create configuration rows for the built-in draw algorithms."""
    Session = get_sessionmaker(make_engine())
    created = ensure_builtin_algorithms(Session)
    for row in created:
        print(f"Registered draw algorithm '{row.name}' (default={row.is_default})")


def main() -> None:
    """Apply migrations (default to head), seed algorithms and report the schema."""
    upgrade_db()
    register_algorithms()
    print_tables()


if __name__ == "__main__":
    main()
