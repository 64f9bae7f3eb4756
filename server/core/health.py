"""Health checks for the store, the cache engine and the process."""
import time
import uuid
from typing import Any, Dict, TYPE_CHECKING

from sqlalchemy import text

from core.exceptions import StorageUnavailableError

try:
    import psutil
    PSUTIL_AVAILABLE = True
except ImportError:
    PSUTIL_AVAILABLE = False

if TYPE_CHECKING:
    from core.cache import CacheService
    from core.config import Settings
    from core.database import Database

HEALTH_KEY_PREFIX = "_health_check:"

_started_at = 0.0


def set_startup_time() -> None:
    global _started_at
    _started_at = time.time()


def get_uptime() -> float:
    """Seconds since ``set_startup_time``, 0 before it is called."""
    if not _started_at:
        return 0.0
    return time.time() - _started_at


def process_info() -> Dict[str, Any]:
    """Resident memory and CPU of this worker, when psutil is installed."""
    if not PSUTIL_AVAILABLE:
        return {"memory_mb": 0.0, "cpu_percent": 0.0}
    try:
        process = psutil.Process()
        return {
            "memory_mb": round(process.memory_info().rss / (1024 * 1024), 1),
            "cpu_percent": process.cpu_percent(interval=None),
        }
    except psutil.Error:
        return {"memory_mb": 0.0, "cpu_percent": 0.0}


async def check_database(database: "Database") -> bool:
    try:
        async with database.get_session("health") as session:
            await session.execute(text("SELECT 1"))
    except StorageUnavailableError:
        return False
    return True


async def check_cache(cache: "CacheService") -> Dict[str, bool]:
    """Set, read back and delete a throwaway key through the cache engine."""
    key = f"{HEALTH_KEY_PREFIX}{uuid.uuid4().hex}"
    payload = {"health_key": key, "written_at": time.time()}

    stored = await cache.set(key, payload, ttl=60)
    fetched = await cache.get(key)
    deleted = await cache.delete(key)

    return {
        "set": stored,
        "get": fetched is not None,
        "value_integrity": fetched == payload,
        "delete": deleted,
    }


async def get_health_status(database: "Database", cache: "CacheService",
                            settings: "Settings") -> Dict[str, Any]:
    """Aggregate status for the /health endpoint."""
    database_ok = await check_database(database)
    cache_ok = all((await check_cache(cache)).values())

    return {
        "status": "healthy" if database_ok and cache_ok else "degraded",
        "uptime_seconds": round(get_uptime(), 1),
        "process": process_info(),
        "checks": {
            "database": database_ok,
            "cache": cache_ok,
        },
        "features": {
            "redis_lease": settings.redis_enabled,
            "sweeper": settings.cache_sweep_enabled,
        },
        "psutil_available": PSUTIL_AVAILABLE,
    }
