from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ..config import load_settings
from .utils import resolve_sqlite_url

# Project root directory (repo root)
ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_SQLITE_URL = resolve_sqlite_url(load_settings().db_url, ROOT_DIR)


def make_engine(
    database_url: Optional[str] = None,
    echo: bool = False,
    *,
    sqlite_timeout: Optional[float] = None,
) -> Engine:
    """Create an engine for ``database_url`` (defaults to ``DB_URL``).

    ``sqlite_timeout`` sets how long a SQLite connection waits on a locked
    database before raising; concurrent purchasers rely on it.
    """
    url = resolve_sqlite_url(database_url, ROOT_DIR) if database_url else DEFAULT_SQLITE_URL
    connect_args = {}
    if url.startswith("sqlite") and sqlite_timeout is not None:
        # pooled connections move between worker threads
        connect_args["timeout"] = sqlite_timeout
        connect_args["check_same_thread"] = False
    engine = create_engine(
        url,
        echo=echo,
        future=True,
        connect_args=connect_args,
    )
    if url.startswith("sqlite"):
        # ensure FK constraints are enforced on SQLite
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def get_sessionmaker(engine: Engine) -> "sessionmaker[Session]":
    return sessionmaker(
        bind=engine,
        expire_on_commit=False,  # results stay readable after the workflow commits
        future=True,
    )
