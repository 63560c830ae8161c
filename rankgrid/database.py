"""Storage layer for RankGrid: one engine per process and short-lived sessions.

Every service (tracking, credits, schedules, the rank checker) opens its own
``get_session()`` block per unit of work. A block is one transaction: the credit
debit and its ledger rows, or one batch of check-result upserts, land
together or not at all.
"""

import os
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///data/rankgrid.db"

# Applied to every new SQLite connection. WAL lets the dispatcher's worker
# threads read results while a run is writing them; foreign keys make
# deleting a tracking config cascade to its terms, results and summaries.
SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA busy_timeout=5000;",
)


class Base(DeclarativeBase):
    """Declarative base shared by keyword, geo-grid, credit and schedule tables."""
    pass


_engine = None
_SessionFactory: sessionmaker | None = None


def _apply_sqlite_pragmas(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    for pragma in SQLITE_PRAGMAS:
        cursor.execute(pragma)
    cursor.close()


def get_engine(database_url: str | None = None, echo: bool = False):
    """Return the process-wide engine, creating it on first use.

    The URL comes from the argument, then ``DATABASE_URL``, then a SQLite
    file under ``data/``. Later calls return the cached engine and ignore
    their arguments until ``reset_engine()`` is called.
    """
    global _engine
    if _engine is not None:
        return _engine

    if database_url is None:
        database_url = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)

    is_sqlite = database_url.startswith("sqlite")
    if database_url.startswith("sqlite:///") and ":memory:" not in database_url:
        Path(database_url.replace("sqlite:///", "")).parent.mkdir(parents=True, exist_ok=True)

    # APScheduler runs the dispatcher job on its own worker threads.
    connect_args = {"check_same_thread": False} if is_sqlite else {}
    _engine = create_engine(
        database_url,
        echo=echo,
        connect_args=connect_args,
        pool_pre_ping=True,
    )

    if is_sqlite:
        event.listen(_engine, "connect", _apply_sqlite_pragmas)
    logger.info("Database engine created: %s", database_url)
    return _engine


def get_session_factory(engine=None) -> sessionmaker:
    """Return the cached session factory bound to ``engine`` (or the default one).

    ``expire_on_commit=False``: services return ORM rows or dicts built from
    them after the block commits, so attributes must stay loaded.
    """
    global _SessionFactory
    if _SessionFactory is not None:
        return _SessionFactory
    if engine is None:
        engine = get_engine()
    _SessionFactory = sessionmaker(bind=engine, expire_on_commit=False)
    return _SessionFactory


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Run one unit of work in its own transaction.

    The block commits when it exits normally. Any exception rolls the
    transaction back and propagates to the caller, which decides whether
    the failure is a skipped debit, a failed run step or a CLI error.

    Usage::

        with get_session() as session:
            config = session.get(TrackingConfig, config_id)
            config.last_run_at = now
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(database_url: str | None = None, echo: bool = False) -> None:
    """Bind the engine and create any missing RankGrid tables."""
    engine = get_engine(database_url=database_url, echo=echo)
    import rankgrid.models  # noqa: F401  registers every table on Base.metadata
    Base.metadata.create_all(bind=engine)
    logger.info("RankGrid tables created / verified.")


def reset_db(database_url: str | None = None) -> None:
    """Drop and recreate every RankGrid table, losing all data."""
    engine = get_engine(database_url=database_url)
    import rankgrid.models  # noqa: F401
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    logger.warning("Database reset: all RankGrid tables dropped and recreated.")


def reset_engine() -> None:
    """Dispose of the cached engine and session factory so the next call rebinds."""
    global _engine, _SessionFactory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionFactory = None
