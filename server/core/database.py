"""Async database service with SQLModel and SQLAlchemy 2.0.

Owns the engine lifecycle and the durable cache store. Every write that
must be atomic (upsert, conditional insert, hit bookkeeping, conditional
sweep) is a single SQL statement plus tag maintenance in the same
transaction. Failures surface as ``StorageUnavailableError``; deciding what
a failure means for the caller is the cache engine's job.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel

from core.config import Settings
from core.exceptions import StorageUnavailableError
from core.logging import get_logger
from models.cache import CacheEntry, CacheEntryTag, CacheRecord

logger = get_logger(__name__)

SUPPORTED_DIALECTS = ("sqlite", "postgresql")

# Keeps IN (...) lists well below SQLite's bound-parameter limit
KEY_BATCH_SIZE = 500

# Columns rewritten when an existing key is overwritten
OVERWRITE_COLUMNS = (
    "value", "expires_at", "created_at", "access_count", "last_accessed_at", "metadata",
)

entries = CacheEntry.__table__
entry_tags = CacheEntryTag.__table__


def like_pattern(pattern: str) -> str:
    """Convert a glob-style pattern to SQL LIKE (``*`` behaves like ``%``)."""
    return pattern.replace("*", "%")


def _batches(keys: Sequence[str], size: int = KEY_BATCH_SIZE) -> Iterable[Sequence[str]]:
    for start in range(0, len(keys), size):
        yield keys[start:start + size]


def _record_from_row(row: Mapping[str, Any], tags: Optional[List[str]] = None) -> CacheRecord:
    return CacheRecord(
        key=row["key"],
        value=row["value"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
        access_count=row["access_count"],
        last_accessed_at=row["last_accessed_at"],
        tags=sorted(tags or []),
        metadata=row["metadata"] or {},
    )


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            engine_kwargs: Dict[str, Any] = {"echo": self.settings.database_echo, "future": True}
            # In-memory SQLite runs on a static pool that takes no sizing arguments
            if ":memory:" not in self.settings.database_url:
                engine_kwargs["pool_size"] = self.settings.database_pool_size
                engine_kwargs["max_overflow"] = self.settings.database_max_overflow
            if self.settings.is_sqlite:
                # Concurrent writers wait on the file lock instead of failing at once
                engine_kwargs["connect_args"] = {"timeout": 30}

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            if self.engine.dialect.name not in SUPPORTED_DIALECTS:
                raise ValueError(f"Unsupported cache database dialect: {self.engine.dialect.name}")

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully", dialect=self.engine.dialect.name)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")
        self.engine = None
        self.async_session = None

    @asynccontextmanager
    async def get_session(self, operation: str = "session"):
        """Get async database session.

        Raises:
            StorageUnavailableError: database not started, unreachable, or the
                statement failed.
        """
        if not self.async_session:
            raise StorageUnavailableError(operation, "Database not initialized")

        try:
            async with self.async_session() as session:
                try:
                    yield session
                except Exception:
                    await session.rollback()
                    raise
        except (SQLAlchemyError, OSError) as e:
            raise StorageUnavailableError(operation, str(e)) from e

    def _insert(self, table, operation: str):
        """Dialect insert supporting ON CONFLICT."""
        if self.engine is None:
            raise StorageUnavailableError(operation, "Database not initialized")
        if self.engine.dialect.name == "postgresql":
            return pg_insert(table)
        return sqlite_insert(table)

    # ============================================================================
    # Cache Entries
    # ============================================================================

    async def read_cache_entry(self, key: str) -> Optional[CacheRecord]:
        """Physical read with tags. No expiry filtering, no bookkeeping."""
        async with self.get_session("read") as session:
            result = await session.execute(select(entries).where(entries.c.key == key))
            row = result.mappings().one_or_none()
            if row is None:
                return None
            return _record_from_row(row, await self._tags_for(session, key))

    async def upsert_cache_entry(self, key: str, value: Any, created_at: float,
                                 expires_at: float, tags: Iterable[str] = (),
                                 metadata: Optional[Dict[str, Any]] = None) -> None:
        """Insert or fully overwrite an entry; bookkeeping and tags are reset."""
        stmt = self._insert(entries, "upsert").values(
            **self._entry_values(key, value, created_at, expires_at, metadata)
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[entries.c.key],
            set_={name: stmt.excluded[name] for name in OVERWRITE_COLUMNS}
        )

        async with self.get_session("upsert") as session:
            await session.execute(stmt)
            await self._replace_tags(session, key, tags)
            await session.commit()

    async def insert_cache_entry_if_absent(self, key: str, value: Any, created_at: float,
                                           expires_at: float, tags: Iterable[str] = (),
                                           metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Write only when no live entry exists for ``key``.

        An expired row still counts as absent and is overwritten. The check
        and the write are one statement, so concurrent callers (in this
        process or another) cannot both win.
        """
        stmt = self._insert(entries, "insert_if_absent").values(
            **self._entry_values(key, value, created_at, expires_at, metadata)
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[entries.c.key],
            set_={name: stmt.excluded[name] for name in OVERWRITE_COLUMNS},
            where=entries.c.expires_at <= created_at
        ).returning(entries.c.key)

        async with self.get_session("insert_if_absent") as session:
            result = await session.execute(stmt)
            written = result.scalar_one_or_none() is not None
            if written:
                await self._replace_tags(session, key, tags)
            await session.commit()
            return written

    async def record_cache_hit(self, key: str, now: float) -> Optional[CacheRecord]:
        """Return the live entry and count the hit, or None.

        Liveness check and bookkeeping happen in the same UPDATE, so an entry
        that expires concurrently is never counted. Tags are not loaded.
        """
        stmt = (
            update(entries)
            .where(entries.c.key == key, entries.c.expires_at > now)
            .values(access_count=entries.c.access_count + 1, last_accessed_at=now)
            .returning(*entries.c)
        )

        async with self.get_session("record_hit") as session:
            result = await session.execute(stmt)
            row = result.mappings().one_or_none()
            await session.commit()
            return _record_from_row(row) if row is not None else None

    async def evict_expired_cache_entry(self, key: str, now: float) -> bool:
        """Delete ``key`` only if it is expired at ``now``."""
        stmt = (
            delete(entries)
            .where(entries.c.key == key, entries.c.expires_at <= now)
            .returning(entries.c.key)
        )

        async with self.get_session("evict") as session:
            result = await session.execute(stmt)
            evicted = result.scalar_one_or_none() is not None
            if evicted:
                await self._delete_tags(session, [key])
            await session.commit()
            return evicted

    async def delete_cache_entries(self, keys: Iterable[str]) -> int:
        """Delete entries unconditionally. Returns how many rows existed."""
        keys = list(dict.fromkeys(keys))
        count = 0

        async with self.get_session("delete") as session:
            for batch in _batches(keys):
                result = await session.execute(delete(entries).where(entries.c.key.in_(batch)))
                count += result.rowcount or 0
            await self._delete_tags(session, keys)
            await session.commit()

        return count

    async def delete_expired_cache_entries(self, now: float) -> int:
        """Delete every entry expired at ``now``.

        The predicate is evaluated per row by the DELETE itself, so an entry
        refreshed after the sweep started is left alone.
        """
        stmt = delete(entries).where(entries.c.expires_at <= now).returning(entries.c.key)

        async with self.get_session("sweep") as session:
            result = await session.execute(stmt)
            keys = list(result.scalars().all())
            await self._delete_tags(session, keys)
            await session.commit()

        if keys:
            logger.debug("Deleted expired cache entries", count=len(keys))
        return len(keys)

    async def list_expired_cache_keys(self, before: float) -> List[str]:
        async with self.get_session("list_expired") as session:
            result = await session.execute(
                select(entries.c.key).where(entries.c.expires_at <= before).order_by(entries.c.key)
            )
            return list(result.scalars().all())

    async def count_cache_entries(self) -> int:
        async with self.get_session("count") as session:
            result = await session.execute(select(func.count()).select_from(entries))
            return int(result.scalar_one())

    async def count_expired_cache_entries(self, before: float) -> int:
        async with self.get_session("count_expired") as session:
            result = await session.execute(
                select(func.count()).select_from(entries).where(entries.c.expires_at <= before)
            )
            return int(result.scalar_one())

    async def cache_access_totals(self) -> Tuple[int, float]:
        """Sum and mean of ``access_count`` over all physical entries."""
        async with self.get_session("access_totals") as session:
            result = await session.execute(
                select(
                    func.coalesce(func.sum(entries.c.access_count), 0),
                    func.coalesce(func.avg(entries.c.access_count), 0),
                )
            )
            total, average = result.one()
            return int(total), float(average)

    async def list_cache_keys_by_tag(self, tag: str) -> List[str]:
        async with self.get_session("list_by_tag") as session:
            result = await session.execute(
                select(entry_tags.c.key).where(entry_tags.c.tag == tag).order_by(entry_tags.c.key)
            )
            return list(result.scalars().all())

    async def delete_cache_entries_by_tag(self, tag: str) -> int:
        """Delete live and expired entries carrying ``tag``."""
        tagged = select(entry_tags.c.key).where(entry_tags.c.tag == tag)
        stmt = delete(entries).where(entries.c.key.in_(tagged)).returning(entries.c.key)

        async with self.get_session("delete_by_tag") as session:
            result = await session.execute(stmt)
            keys = list(result.scalars().all())
            await self._delete_tags(session, keys)
            # Tag rows whose entry is already gone
            await session.execute(delete(entry_tags).where(entry_tags.c.tag == tag))
            await session.commit()

        return len(keys)

    async def list_cache_keys_matching(self, pattern: str) -> List[str]:
        """Keys matching a LIKE pattern, expired ones included."""
        async with self.get_session("list_matching") as session:
            result = await session.execute(
                select(entries.c.key)
                .where(entries.c.key.like(like_pattern(pattern)))
                .order_by(entries.c.key)
            )
            return list(result.scalars().all())

    async def delete_cache_entries_matching(self, pattern: str) -> int:
        stmt = (
            delete(entries)
            .where(entries.c.key.like(like_pattern(pattern)))
            .returning(entries.c.key)
        )

        async with self.get_session("delete_matching") as session:
            result = await session.execute(stmt)
            keys = list(result.scalars().all())
            await self._delete_tags(session, keys)
            await session.commit()

        if keys:
            logger.debug("Deleted cache entries", pattern=pattern, count=len(keys))
        return len(keys)

    async def clear_cache_entries(self) -> int:
        async with self.get_session("clear") as session:
            result = await session.execute(delete(entries))
            await session.execute(delete(entry_tags))
            await session.commit()
            return result.rowcount or 0

    # ============================================================================
    # Helpers
    # ============================================================================

    @staticmethod
    def _entry_values(key: str, value: Any, created_at: float, expires_at: float,
                      metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "key": key,
            "value": value,
            "expires_at": expires_at,
            "created_at": created_at,
            "access_count": 0,
            "last_accessed_at": None,
            "metadata": metadata or {},
        }

    @staticmethod
    async def _tags_for(session: AsyncSession, key: str) -> List[str]:
        result = await session.execute(
            select(entry_tags.c.tag).where(entry_tags.c.key == key)
        )
        return list(result.scalars().all())

    @staticmethod
    async def _delete_tags(session: AsyncSession, keys: Sequence[str]) -> None:
        for batch in _batches(list(keys)):
            await session.execute(delete(entry_tags).where(entry_tags.c.key.in_(batch)))

    async def _replace_tags(self, session: AsyncSession, key: str, tags: Iterable[str]) -> None:
        await self._delete_tags(session, [key])
        rows = [{"key": key, "tag": tag} for tag in sorted(set(tags))]
        if rows:
            await session.execute(insert(entry_tags), rows)
