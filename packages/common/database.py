"""
Async SQLAlchemy engine for the pipeline's durable stores

Only the key-value tables (normalization cache, LLM usage) live here; item
and transaction stores belong to the host application.

Hosts call init() at startup. Worker tasks and scripts may skip it: the first
session() initializes from Settings.database_url.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from packages.common.config import Settings, get_settings

logger = structlog.get_logger()


def to_async_url(database_url: str) -> str:
    """postgresql:// → postgresql+asyncpg://"""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


class DatabaseSessionManager:
    """Engine + session factory, created once per process (or per event loop)"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker = None
        self._init_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._sessionmaker is not None

    async def init(self, database_url: Optional[str] = None, **engine_kwargs):
        """
        Create the engine.

        Args:
            database_url: Overrides Settings.database_url
            engine_kwargs: Passed to create_async_engine
        """
        if self.initialized:
            return

        async with self._init_lock:
            if self.initialized:
                return

            settings = self.settings or get_settings()
            url = to_async_url(database_url or settings.database_url)

            options = {
                "echo": False,
                "pool_size": 5,
                "max_overflow": 5,
                "pool_pre_ping": True,
                "pool_recycle": 3600,
            }
            options.update(engine_kwargs)

            self._engine = create_async_engine(url, **options)
            self._sessionmaker = async_sessionmaker(
                bind=self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )
            logger.info("database_initialized", host=settings.db_host, database=settings.db_name)

    async def close(self):
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
        logger.info("database_closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """One unit of work: commit on success, rollback on error"""
        if not self.initialized:
            await self.init()

        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def ping(self) -> bool:
        """True when the database answers SELECT 1"""
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning("database_ping_failed", error=str(e))
            return False
