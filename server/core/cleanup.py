"""Periodic sweep of expired cache entries.

Follows the RecoverySweeper pattern: one background asyncio task, started
and stopped with the application lifespan. Lazy eviction only removes
expired rows that are read again; this removes the rest.
"""
import asyncio
import time
from typing import Any, Dict, Optional, TYPE_CHECKING

from core.logging import get_logger, log_execution_time
from models.cache import to_iso

if TYPE_CHECKING:
    from core.config import Settings
    from core.cache import CacheService

logger = get_logger(__name__)


class CleanupService:
    """Background sweeper with run statistics."""

    def __init__(self, cache: "CacheService", settings: "Settings"):
        self.cache = cache
        self.settings = settings
        self.interval = settings.cache_sweep_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

        self.total_runs = 0
        self.total_cleaned = 0
        self.last_run: Optional[float] = None
        self.last_cleaned_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the sweep loop. The first sweep runs immediately."""
        if self._running:
            logger.warning("Cache sweeper already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._cleanup_loop())
        logger.info("Cache sweeper started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the sweep loop gracefully."""
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Cache sweeper stopped")

    async def _cleanup_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("Cache sweep failed", error=str(e))
            await asyncio.sleep(self.interval)

    async def run_once(self) -> Dict[str, Any]:
        """Run one sweep and record it. Also used by the admin endpoint."""
        start = time.time()
        cleaned = await self.cache.sweep_expired()
        end = time.time()

        self.total_runs += 1
        self.total_cleaned += cleaned
        self.last_run = end
        self.last_cleaned_count = cleaned

        if cleaned:
            log_execution_time(logger, "cache_sweep", start, end, cleaned=cleaned)

        return {
            "cleaned_count": cleaned,
            "duration_ms": round((end - start) * 1000, 2),
        }

    def get_stats(self) -> Dict[str, Any]:
        next_run_at = None
        if self._running and self.last_run is not None:
            next_run_at = to_iso(self.last_run + self.interval)

        return {
            "total_runs": self.total_runs,
            "total_cleaned": self.total_cleaned,
            "last_run": to_iso(self.last_run),
            "last_cleaned_count": self.last_cleaned_count,
            "average_cleaned": round(self.total_cleaned / self.total_runs) if self.total_runs else 0,
            "is_running": self._running,
            "interval": self.interval,
            "next_run_at": next_run_at,
        }
