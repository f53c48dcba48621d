from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from sqlalchemy import create_engine, inspect as sa_inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from biosignal.config import get_settings
from biosignal.models import AgentRun, Base
from biosignal.utils import to_json, utc_now

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None

# Columns added after the first schema; older databases get them via ALTER TABLE.
_ADDITIVE_COLUMNS = {
    "signals": {
        "score_breakdown_json": "TEXT DEFAULT '{}'",
        "source_name": "VARCHAR(100) DEFAULT ''",
        "claimed_by": "VARCHAR(200) DEFAULT ''",
    },
    "agent_runs": {
        "signals_carried_forward": "INTEGER DEFAULT 0",
    },
    "excluded_companies": {
        "employee_count": "INTEGER",
    },
}


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            db_path = get_settings().database_path
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _migrate_existing_db(_engine)
        log.debug("Database ready at %s", db_path)


def _migrate_existing_db(engine: Engine) -> None:
    """Add columns that may be missing in older databases."""
    inspector = sa_inspect(engine)
    for table, columns in _ADDITIVE_COLUMNS.items():
        if not inspector.has_table(table):
            continue
        existing = {col["name"] for col in inspector.get_columns(table)}
        for column, definition in columns.items():
            if column in existing:
                continue
            with engine.begin() as conn:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {definition}"))
            log.info("Migrated %s: added column %s", table, column)


def get_session_factory() -> sessionmaker[Session]:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        return _SessionLocal


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (CLI, scripts, etc.)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Agent run bookkeeping
# ---------------------------------------------------------------------------


def start_agent_run(session: Session, agent_name: str) -> AgentRun:
    run = AgentRun(agent_name=agent_name, status="running", detail_json="{}", error_message="", started_at=utc_now())
    session.add(run)
    session.commit()
    return run


def finish_agent_run(
    session: Session,
    run: AgentRun,
    *,
    status: str,
    signals_found: int = 0,
    signals_carried_forward: int = 0,
    details: dict[str, Any] | None = None,
    error_message: str = "",
) -> AgentRun:
    run.status = status
    run.signals_found = signals_found
    run.signals_carried_forward = signals_carried_forward
    run.detail_json = to_json(details or {})
    run.error_message = error_message
    run.completed_at = utc_now()
    session.add(run)
    session.commit()
    return run
