import logging
import os
from contextlib import contextmanager
from typing import Generator, Iterator

from alembic import command
from alembic.config import Config as AlembicConfig
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from .config import (
    DATABASE_URL,
    DB_MAX_OVERFLOW,
    DB_POOL_RECYCLE_SECONDS,
    DB_POOL_SIZE,
    DB_POOL_TIMEOUT_SECONDS,
    RUN_DB_MIGRATIONS,
)


logger = logging.getLogger("database")

# Advisory lock ID shared by every replica that may run migrations
MIGRATION_LOCK_ID = 0x6C62726F  # 'lbro' in hex

_engine_kwargs = {"pool_pre_ping": True, "future": True}
if DB_POOL_SIZE is not None:
    _engine_kwargs["pool_size"] = int(DB_POOL_SIZE)
if DB_MAX_OVERFLOW is not None:
    _engine_kwargs["max_overflow"] = int(DB_MAX_OVERFLOW)
if DB_POOL_TIMEOUT_SECONDS is not None:
    _engine_kwargs["pool_timeout"] = int(DB_POOL_TIMEOUT_SECONDS)
if DB_POOL_RECYCLE_SECONDS is not None:
    _engine_kwargs["pool_recycle"] = int(DB_POOL_RECYCLE_SECONDS)

ENGINE = create_engine(DATABASE_URL, **_engine_kwargs)
SessionLocal = sessionmaker(bind=ENGINE, autocommit=False, autoflush=False, future=True)

_MIGRATIONS_APPLIED = False


def _build_alembic_config() -> AlembicConfig:
    """
    Build Alembic config with absolute paths

    Returns:
        Alembic Config
    """
    services_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    config = AlembicConfig(os.path.join(services_dir, "alembic.ini"))
    config.set_main_option(
        "script_location",
        os.path.join(services_dir, "shared", "persistence", "alembic"),
    )
    config.set_main_option("sqlalchemy.url", DATABASE_URL)
    return config


def apply_pending_migrations() -> None:
    """
    Apply Alembic migrations when RUN_DB_MIGRATIONS is enabled

    On PostgreSQL a transaction advisory lock serializes replicas so only one
    of them upgrades the contrib_rollups schema at a time

    Returns:
        None
    """
    global _MIGRATIONS_APPLIED

    if not RUN_DB_MIGRATIONS:
        logger.debug("RUN_DB_MIGRATIONS is disabled; skipping migrations")
        return

    if _MIGRATIONS_APPLIED:
        return

    logger.info("Applying database migrations")
    alembic_config = _build_alembic_config()

    try:
        with ENGINE.begin() as conn:
            if ENGINE.dialect.name == "postgresql":
                conn.execute(
                    text("SELECT pg_advisory_xact_lock(:lock_id)"),
                    {"lock_id": MIGRATION_LOCK_ID},
                )

            command.upgrade(alembic_config, "head")

        _MIGRATIONS_APPLIED = True
        logger.info("Database migrations completed successfully")
    except Exception:
        logger.exception("Database migration failed")
        raise


def get_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency for the leaderboard endpoint

    The session only serves durable fallback reads of contrib_rollups when the
    ranked cache is empty or unreachable, so it is closed without a commit

    Returns:
        Generator yielding SQLAlchemy Session
    """
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def db_session() -> Iterator[Session]:
    """
    One transaction against contrib_rollups

    The aggregator writes a user's per-period upserts (or a purge's deletes)
    inside a single db_session so a refresh lands whole; sync and the health
    check use it for reads

    Commits on a clean exit; any exception rolls back and propagates

    Returns:
        SQLAlchemy Session
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
