"""
Card Catalog Sync — Application Entrypoint

Initializes the async SQLAlchemy engine, configures structlog, then reads one
JSON request envelope from stdin, dispatches it and prints the JSON response.

Run via:
    echo '{"operation": "sync-products", "categoryId": 3, "maxGroups": 5}' \
        | python -m cardsync.main
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from cardsync.config import settings
from cardsync.models import Base
from cardsync.service import ServiceState, dispatch


# ---------------------------------------------------------------------------
# Structlog Configuration
# ---------------------------------------------------------------------------


def _configure_logging(log_level: str = "INFO") -> None:
    """
    Set up structured logging with JSON output on stderr.

    stdout is reserved for the response document.
    """
    level = getattr(logging, log_level.upper())

    # Configure stdlib logging first (for third-party libraries)
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Database Setup
# ---------------------------------------------------------------------------


async def create_db_engine(
    database_url: str | None = None,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """
    Create SQLAlchemy async engine and session factory.

    Returns:
        (engine, session_factory) tuple.
    """
    logger = structlog.get_logger(__name__)
    database_url = database_url or settings.DATABASE_URL

    logger.info("database_engine_initializing", dialect=database_url.split(":", 1)[0])

    engine_kwargs: dict[str, Any] = {"echo": False, "pool_pre_ping": True}
    if not database_url.startswith("sqlite"):
        engine_kwargs.update(pool_size=5, max_overflow=10)
    engine = create_async_engine(database_url, **engine_kwargs)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    logger.info("database_engine_ready")
    return engine, session_factory


async def prepare_database(engine: AsyncEngine, session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Health-check the connection and create any missing tables."""
    async with session_factory() as session:
        await session.execute(text("SELECT 1"))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ---------------------------------------------------------------------------
# Application Startup
# ---------------------------------------------------------------------------


async def run(envelope: dict[str, Any]) -> tuple[int, dict[str, Any]]:
    """
    Execution order:
    1. Create async database engine and session factory
    2. Verify database connection and schema
    3. Dispatch the request
    4. Wait for any background work it scheduled
    """
    logger = structlog.get_logger(__name__)

    try:
        engine, session_factory = await create_db_engine()
    except Exception as e:
        logger.error("database_engine_creation_failed", error=str(e), error_type=type(e).__name__)
        raise

    try:
        await prepare_database(engine, session_factory)
        logger.info("database_health_check_passed")
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e), error_type=type(e).__name__)
        await engine.dispose()
        raise

    state = ServiceState(session_factory)
    try:
        status, body = await dispatch(state, envelope)
        # A one-shot process must not exit before background work completes.
        await state.drain()
        return status, body
    finally:
        await engine.dispose()
        logger.info("cardsync_shutdown_complete")


def main() -> int:
    _configure_logging(log_level=settings.LOG_LEVEL)
    logger = structlog.get_logger(__name__)

    raw = sys.stdin.read()
    try:
        envelope = json.loads(raw or "{}")
    except json.JSONDecodeError as e:
        logger.error("request_not_json", error=str(e))
        print(json.dumps({"success": False, "error": f"Request is not valid JSON: {e}"}))
        return 1
    if not isinstance(envelope, dict):
        print(json.dumps({"success": False, "error": "Request must be a JSON object"}))
        return 1

    try:
        status, body = asyncio.run(run(envelope))
    except KeyboardInterrupt:
        logger.info("cardsync_interrupted_by_user")
        return 130
    except Exception as e:
        # Startup failures (engine, health check) still answer with a JSON body.
        logger.error("cardsync_fatal_error", error=str(e), error_type=type(e).__name__)
        print(json.dumps({"status": 500, "success": False, "error": str(e)}))
        return 1

    print(json.dumps({"status": status, **body}, default=str))
    return 0 if status < 400 else 1


# ---------------------------------------------------------------------------
# CLI Entry
# ---------------------------------------------------------------------------


if __name__ == "__main__":
    sys.exit(main())
