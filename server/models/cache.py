"""SQL-backed cache tables and the read models built from them.

One row per cache key in ``cache_entries``; tags live in a separate
``cache_entry_tags`` table so tag lookups hit an index on every backend.
Timestamps are unix epoch seconds.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import CheckConstraint
from pydantic import BaseModel
from sqlmodel import SQLModel, Field, Column, JSON


class CacheEntry(SQLModel, table=True):
    """Generic key-value cache row with mandatory expiration."""

    __tablename__ = "cache_entries"
    __table_args__ = (
        CheckConstraint("length(key) > 0", name="cache_key_length"),
        CheckConstraint("expires_at > created_at", name="cache_expires_future"),
    )

    key: str = Field(primary_key=True, max_length=512)
    value: Any = Field(sa_column=Column(JSON, nullable=False))
    expires_at: float = Field(index=True)
    created_at: float = Field(default_factory=time.time)
    access_count: int = Field(default=0)
    last_accessed_at: Optional[float] = Field(default=None)
    # "metadata" is reserved on declarative classes, so map it by column name
    entry_metadata: Dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSON, nullable=False)
    )


class CacheEntryTag(SQLModel, table=True):
    """Tag membership used for bulk invalidation."""

    __tablename__ = "cache_entry_tags"

    key: str = Field(primary_key=True, max_length=512)
    tag: str = Field(primary_key=True, index=True, max_length=255)


def to_iso(timestamp: Optional[float]) -> Optional[str]:
    """Render an epoch timestamp as ISO-8601 UTC."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class CacheRecord(BaseModel):
    """Physical snapshot of a cache entry, tags included."""

    key: str
    value: Any
    expires_at: float
    created_at: float
    access_count: int = 0
    last_accessed_at: Optional[float] = None
    tags: List[str] = []
    metadata: Dict[str, Any] = {}

    def is_expired(self, now: float) -> bool:
        """Entries are logically dead at and after ``expires_at``."""
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "expires_at": to_iso(self.expires_at),
            "created_at": to_iso(self.created_at),
            "access_count": self.access_count,
            "last_accessed_at": to_iso(self.last_accessed_at),
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
        }


class CacheStatistics(BaseModel):
    """Point-in-time cache statistics."""

    total: int = 0
    active: int = 0
    expired: int = 0
    total_accesses: int = 0
    average_accesses: float = 0.0
    hits: int = 0
    misses: int = 0
    hit_ratio: float = 0.0
    in_flight: int = 0
