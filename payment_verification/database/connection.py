"""Database connection and session management."""
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_fixed

from payment_verification.config import Settings, get_settings
from payment_verification.database.models import Base

logger = structlog.get_logger(__name__)

# Global engine and session factory
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


class DatabaseUnavailableError(Exception):
    """Raised when the database cannot be reached within the retry budget."""

    pass


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """
    Build an async engine for the configured URL.

    SQLite URLs (used by tests and local runs) do not take pool sizing.
    """
    if settings.database_url.startswith("sqlite"):
        return create_async_engine(settings.database_url, echo=settings.database_echo)

    return create_async_engine(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=3600,  # Recycle connections after 1 hour
    )


def get_engine() -> AsyncEngine:
    """
    Get or create the database engine.

    Returns:
        AsyncEngine: SQLAlchemy async engine instance
    """
    global _engine
    if _engine is None:
        _engine = create_engine_from_settings(get_settings())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Get or create the session factory.

    Returns:
        async_sessionmaker: SQLAlchemy async session factory
    """
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = create_session_factory(get_engine())
    return _async_session_factory


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory with the settings every repository expects."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def connect_with_retry(
    engine: AsyncEngine | None = None,
    settings: Settings | None = None,
) -> AsyncEngine:
    """
    Establish database connectivity at startup.

    Retries a fixed number of times with a fixed delay; this is a startup
    concern, not a per-request retry.

    Raises:
        DatabaseUnavailableError: If every attempt fails
    """
    settings = settings or get_settings()
    engine = engine or get_engine()
    max_attempts = settings.database_connect_max_retries

    def _log_retry(retry_state: Any) -> None:
        logger.warning(
            "database_connection_attempt_failed",
            attempt=retry_state.attempt_number,
            max_attempts=max_attempts,
            error=str(retry_state.outcome.exception()),
        )

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_fixed(settings.database_connect_retry_delay),
            before_sleep=_log_retry,
        ):
            with attempt:
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
    except RetryError as e:
        last_error = e.last_attempt.exception()
        logger.error(
            "database_unavailable",
            attempts=max_attempts,
            error=str(last_error),
        )
        raise DatabaseUnavailableError(
            f"Failed to connect to database after {max_attempts} attempts: {last_error}"
        ) from last_error

    logger.info("database_connected")
    return engine


async def init_db(engine: AsyncEngine | None = None) -> None:
    """
    Initialize database tables.

    Creates all tables defined in models if they don't exist.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections and dispose of the engine."""
    global _engine, _async_session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
