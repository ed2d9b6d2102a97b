from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from points_engine.config import Config
from points_engine.database.models import Base, EntityRecord, ProcessedEvent
from points_engine.utils.logger import setup_logger


class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url or Config.DATABASE_URL
        self.engine = None
        self.async_session = None

    async def initialize(self):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")

        # Convert sqlite URL to async if needed
        database_url = self.database_url
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.engine = create_async_engine(
            database_url,
            echo=Config.DEBUG,
            future=True
        )

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # Create all tables
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Database initialized successfully")

    @asynccontextmanager
    async def get_session(self):
        """Get a database session"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.

        Everything written through the yielded session is committed together
        on success or rolled back together on failure. Exceptions must be
        allowed to propagate out of the context for rollback to occur.

        Usage:
            async with db.transaction() as session:
                await store.flush(session)
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("Database connection closed")

    async def count_entities(self, entity_type: str) -> int:
        """Number of persisted entities of one type"""
        async with self.get_session() as session:
            result = await session.execute(
                select(func.count()).select_from(EntityRecord).where(EntityRecord.entity_type == entity_type)
            )
            return result.scalar()

    async def count_processed_events(self) -> int:
        async with self.get_session() as session:
            result = await session.execute(select(func.count(ProcessedEvent.event_key)))
            return result.scalar()
