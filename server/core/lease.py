"""Cross-instance population lease backed by Redis.

Single-flight only protects one worker. When several workers share the same
store, a leader takes ``lock:cache:{key}`` with ``SET NX EX`` before
computing; other instances wait for the value to show up in the store
instead of computing it again. Redis is optional: any failure is logged and
treated as "no lease", so the cache never depends on it.
"""

import uuid
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from core.config import Settings
from core.logging import get_logger

logger = get_logger(__name__)


class RedisLease:
    """Token-guarded Redis lease (SET NX EX, compare-then-delete release)."""

    def __init__(self, settings: Settings, client: Optional[redis.Redis] = None):
        self.settings = settings
        self.redis: Optional[redis.Redis] = client
        self.ttl = settings.cache_lease_ttl

    async def startup(self):
        """Connect to Redis. Leaves the lease disabled if Redis is unreachable."""
        if self.redis is not None:
            return
        if not self.settings.redis_url:
            logger.warning("Redis lease enabled without REDIS_URL, lease disabled")
            return
        try:
            self.redis = redis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True
            )
            await self.redis.ping()
            logger.info("Redis lease initialized", url=self.settings.redis_url)
        except (RedisError, OSError) as e:
            logger.warning("Redis connection failed, lease disabled", error=str(e))
            self.redis = None

    async def shutdown(self):
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
            logger.info("Redis lease connection closed")

    @property
    def available(self) -> bool:
        return self.redis is not None

    @staticmethod
    def lease_key(key: str) -> str:
        return f"lock:cache:{key}"

    async def acquire(self, key: str) -> Optional[str]:
        """Try once to take the lease for ``key``.

        Returns:
            The lease token if acquired, None if another instance holds it or
            Redis is unavailable.
        """
        if self.redis is None:
            return None
        token = str(uuid.uuid4())
        try:
            acquired = await self.redis.set(self.lease_key(key), token, ex=self.ttl, nx=True)
        except (RedisError, OSError) as e:
            logger.warning("Lease acquire failed", cache_key=key, error=str(e))
            return None
        if not acquired:
            logger.debug("Lease held elsewhere", cache_key=key)
            return None
        logger.debug("Lease acquired", cache_key=key, token=token[:8])
        return token

    async def release(self, key: str, token: str) -> bool:
        """Release the lease if ``token`` still owns it."""
        if self.redis is None:
            return False
        lease_key = self.lease_key(key)
        try:
            current = await self.redis.get(lease_key)
            if current and current == token:
                await self.redis.delete(lease_key)
                logger.debug("Lease released", cache_key=key)
                return True
            return False
        except (RedisError, OSError) as e:
            logger.warning("Lease release failed", cache_key=key, error=str(e))
            return False


def create_lease(settings: Settings) -> Optional[RedisLease]:
    """Lease provider: a RedisLease when REDIS_ENABLED, otherwise None."""
    if not settings.redis_enabled:
        return None
    return RedisLease(settings)
