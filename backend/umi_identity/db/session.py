"""Async SQLAlchemy engine and session helpers.

Provides the configured async engine, the session factory handed to every
store and a helper that creates the tables at startup.
"""

from config.config import settings
from core.logging import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool


def _engine_options(url: str) -> dict:
    # NOTE: SQLite (tests, local dev) gets a fresh connection per session so
    # connections are never shared between event loops.
    if url.startswith("sqlite"):
        return {"poolclass": NullPool}
    return {"pool_size": 5, "max_overflow": 10, "pool_pre_ping": True}


engine = create_async_engine(
    settings.DATABASE_URL_ASYNC,
    echo=settings.DB_ECHO,
    **_engine_options(settings.DATABASE_URL_ASYNC),
)

AsyncSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

Base = declarative_base()


async def initialize_database():
    """Create all metadata tables defined on the declarative `Base`.

    Raises:
        Exception: Re-raises any exception encountered while initializing.
    """
    import models.auth  # noqa: F401  (registers tables on Base.metadata)

    logger.info("Initializing database tables")
    async with engine.begin() as conn:
        try:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Database initialization complete")
        except Exception:
            logger.exception("Database initialization failed")
            raise

