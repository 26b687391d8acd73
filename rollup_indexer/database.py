"""Database connection, session management and the indexer cursor/lock."""

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator, Optional

from sqlalchemy import or_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rollup_indexer.config import settings
from rollup_indexer.models import Base, IndexingState, RunStatus, utcnow


class IndexerError(Exception):
    """Base class for indexer failures."""
    pass


class LockLostError(IndexerError):
    """Raised when a checkpoint finds the run lock held by someone else or expired."""
    pass


class Database:
    """Database connection manager."""

    def __init__(self, database_url: str = None):
        self.database_url = database_url or str(settings.database_url)
        # Convert postgresql:// to postgresql+asyncpg:// for async support
        if self.database_url.startswith("postgresql://"):
            self.database_url = self.database_url.replace("postgresql://", "postgresql+asyncpg://")

        self.engine = None
        self.session_factory = None

    async def connect(self):
        """Initialize database connections."""
        if self.database_url.startswith("sqlite"):
            # One shared connection so in-memory databases survive across sessions
            self.engine = create_async_engine(
                self.database_url,
                echo=False,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            self.engine = create_async_engine(
                self.database_url,
                echo=False,
                pool_size=settings.database_pool_size,
                pool_timeout=settings.database_pool_timeout,
                pool_pre_ping=True,
            )

        self.session_factory = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def disconnect(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()

    async def create_tables(self):
        """Create all database tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_tables(self):
        """Drop all database tables (use with caution!)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    def _insert(self, table):
        """Dialect-specific INSERT supporting ON CONFLICT."""
        if self.engine.dialect.name == "postgresql":
            return pg_insert(table)
        return sqlite_insert(table)

    async def get_indexing_state(self, chain_id: int) -> Optional[IndexingState]:
        """Get the cursor row for a chain, if one was ever written."""
        async with self.session() as session:
            return await session.get(IndexingState, chain_id)

    async def get_last_processed_block(self, chain_id: int) -> Optional[int]:
        """Get the last checkpointed block for a chain."""
        state = await self.get_indexing_state(chain_id)
        return state.last_processed_block if state else None

    async def acquire_lock(self, chain_id: int, lock_id: str, ttl_seconds: int) -> bool:
        """Take the run lock for a chain if it is free or expired.

        A single conditional upsert: the row is created when missing and only
        overwritten when no live lock exists, so two callers can never both
        succeed.

        Returns:
            True if this caller now holds the lock
        """
        now = utcnow()
        values = {
            "chain_id": chain_id,
            "lock_id": lock_id,
            "lock_expires_at": now + timedelta(seconds=ttl_seconds),
            "last_run_started_at": now,
            "last_run_status": RunStatus.RUNNING.value,
            "last_run_error": None,
            "updated_at": now,
        }
        stmt = self._insert(IndexingState).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["chain_id"],
            set_={key: value for key, value in values.items() if key != "chain_id"},
            where=or_(
                IndexingState.lock_id.is_(None),
                IndexingState.lock_expires_at.is_(None),
                IndexingState.lock_expires_at < now,
            ),
        ).returning(IndexingState.lock_id)

        async with self.session() as session:
            row = (await session.execute(stmt)).first()

        return row is not None and row.lock_id == lock_id

    async def checkpoint(self, chain_id: int, lock_id: str, block_number: int, ttl_seconds: int):
        """Advance the cursor and extend the lock.

        Raises:
            LockLostError: the lock token no longer matches or has expired
        """
        now = utcnow()
        stmt = (
            update(IndexingState)
            .where(
                IndexingState.chain_id == chain_id,
                IndexingState.lock_id == lock_id,
                IndexingState.lock_expires_at > now,
            )
            .values(
                last_processed_block=block_number,
                lock_expires_at=now + timedelta(seconds=ttl_seconds),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            if result.rowcount == 0:
                raise LockLostError(
                    f"Indexer lock {lock_id} for chain {chain_id} was lost before checkpointing block {block_number}"
                )

    async def release_lock(
        self,
        chain_id: int,
        lock_id: str,
        status: RunStatus,
        error: Optional[str] = None,
    ) -> bool:
        """Clear the lock and record the run outcome.

        Only the holder's own token is cleared; a lock taken over by another
        runner is left untouched.
        """
        now = utcnow()
        stmt = (
            update(IndexingState)
            .where(
                IndexingState.chain_id == chain_id,
                IndexingState.lock_id == lock_id,
            )
            .values(
                lock_id=None,
                lock_expires_at=None,
                last_run_finished_at=now,
                last_run_status=status.value,
                last_run_error=error,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            return result.rowcount > 0


# Global database instance
db = Database()
