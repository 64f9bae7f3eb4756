"""Cache administration routes."""

from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Body, Depends, Query, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from core.cache import CacheService
from core.cleanup import CleanupService
from core.config import Settings
from core.container import container
from core.exceptions import InvalidCacheArgumentError
from core.health import check_cache
from core.logging import get_logger
from models.cache import to_iso

logger = get_logger(__name__)
router = APIRouter(prefix="/api/cache", tags=["cache"])


class CacheSetRequest(BaseModel):
    # Upper bound is CACHE_KEY_MAX_LENGTH, enforced by the cache engine
    key: str = Field(min_length=1)
    value: Any
    ttl: int = Field(default=3600, ge=1)
    tags: List[str] = []
    metadata: Dict[str, Any] = {}


class CacheUpdateRequest(BaseModel):
    value: Any
    ttl: int = Field(default=3600, ge=1)
    tags: List[str] = []
    metadata: Dict[str, Any] = {}


class CacheDeleteRequest(BaseModel):
    keys: Union[str, List[str]]


class CacheIncrementRequest(BaseModel):
    increment: float = 1
    ttl: int = Field(default=3600, ge=1)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def _ttl_error(ttl: int, settings: Settings) -> Optional[str]:
    if ttl > settings.cache_max_ttl:
        return f"ttl must be at most {settings.cache_max_ttl} seconds"
    return None


def _as_number(value: float) -> Union[int, float]:
    return int(value) if float(value).is_integer() else value


async def _set_entry(cache: CacheService, settings: Settings, request: CacheSetRequest) -> Dict[str, Any]:
    ttl_error = _ttl_error(request.ttl, settings)
    if ttl_error:
        return {"key": request.key, "success": False, "error": ttl_error}
    success = await cache.set(request.key, request.value, request.ttl,
                              tags=request.tags, metadata=request.metadata)
    result = {"key": request.key, "success": success, "ttl": request.ttl}
    if success:
        record = await cache.describe(request.key)
        if record:
            result["expires_at"] = to_iso(record.expires_at)
    return result


# ============================================================================
# Statistics and maintenance
# ============================================================================

@router.get("")
async def get_cache(
    keys: Optional[str] = Query(default=None),
    cache: CacheService = Depends(lambda: container.cache())
):
    """Cache statistics, or the values of ``?keys=k1,k2``."""
    if not keys:
        stats = await cache.statistics()
        return {
            "success": True,
            "data": {
                "statistics": stats.model_dump(),
                "message": "Use ?keys=key1,key2 to get specific cache entries",
            },
        }

    results = {}
    for key in [k.strip() for k in keys.split(",") if k.strip()]:
        try:
            results[key] = await cache.get(key)
        except InvalidCacheArgumentError as e:
            logger.warning("Invalid cache key in multi-get", key=key, error=str(e))
            results[key] = None
    return {"success": True, "data": results}


@router.get("/keys")
async def list_keys(
    pattern: str = Query(default="%"),
    cache: CacheService = Depends(lambda: container.cache())
):
    """Physical keys matching a LIKE pattern (may include expired keys)."""
    keys = await cache.list_keys(pattern)
    return {"success": True, "data": {"keys": keys, "count": len(keys), "pattern": pattern}}


@router.get("/keys/expired")
async def list_expired_keys(cache: CacheService = Depends(lambda: container.cache())):
    keys = await cache.list_expired_keys()
    return {"success": True, "data": {"keys": keys, "count": len(keys)}}


@router.get("/tags/{tag}")
async def list_tag_keys(tag: str, cache: CacheService = Depends(lambda: container.cache())):
    keys = await cache.keys_for_tag(tag)
    return {"success": True, "data": {"tag": tag, "keys": keys, "count": len(keys)}}


@router.delete("/tags/{tag}")
async def invalidate_tag(tag: str, cache: CacheService = Depends(lambda: container.cache())):
    """Invalidate every entry carrying ``tag``."""
    removed = await cache.invalidate_by_tag(tag)
    logger.info("Cache tag invalidated", tag=tag, count=removed)
    return {"success": True, "data": {"tag": tag, "deleted_count": removed}}


@router.get("/sweeper")
async def sweeper_stats(cleanup: CleanupService = Depends(lambda: container.cleanup())):
    return {"success": True, "data": cleanup.get_stats()}


@router.get("/health")
async def cache_health(cache: CacheService = Depends(lambda: container.cache())):
    """Round-trip check plus statistics."""
    operations = await check_cache(cache)
    stats = await cache.statistics()
    healthy = all(operations.values())
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "success": healthy,
            "data": {
                "cache_status": "online" if healthy else "degraded",
                "operations_test": operations,
                "stats": stats.model_dump(),
            },
        },
    )


@router.post("/clear")
async def clear_cache(cache: CacheService = Depends(lambda: container.cache())):
    """Remove every cache entry."""
    if await cache.clear():
        logger.info("All cache cleared")
        return {"success": True, "message": "All cache entries cleared successfully"}
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to clear cache")


@router.post("/cleanup")
async def cleanup_cache(
    cache: CacheService = Depends(lambda: container.cache()),
    cleanup: CleanupService = Depends(lambda: container.cleanup())
):
    """Sweep expired entries now and report statistics."""
    result = await cleanup.run_once()
    stats = await cache.statistics()
    return {
        "success": True,
        "data": {
            "cleaned_entries": result["cleaned_count"],
            "duration_ms": result["duration_ms"],
            "statistics": stats.model_dump(),
        },
        "message": f"Cleaned {result['cleaned_count']} expired cache entries",
    }


# ============================================================================
# Entries
# ============================================================================

@router.post("")
async def set_cache(
    body: Union[List[Dict[str, Any]], Dict[str, Any]] = Body(...),
    cache: CacheService = Depends(lambda: container.cache()),
    settings: Settings = Depends(lambda: container.settings())
):
    """Set one entry, or a batch when the body is a list."""
    if isinstance(body, list):
        results = []
        for raw in body:
            try:
                request = CacheSetRequest.model_validate(raw)
            except ValidationError as e:
                results.append({"key": raw.get("key", "unknown"), "success": False,
                                "error": e.errors()[0]["msg"]})
                continue
            try:
                results.append(await _set_entry(cache, settings, request))
            except InvalidCacheArgumentError as e:
                results.append({"key": request.key, "success": False, "error": str(e)})
        return {"success": True, "data": results, "message": "Batch cache operation completed"}

    try:
        request = CacheSetRequest.model_validate(body)
        result = await _set_entry(cache, settings, request)
    except ValidationError as e:
        return _error(status.HTTP_400_BAD_REQUEST, e.errors()[0]["msg"])
    except InvalidCacheArgumentError as e:
        return _error(status.HTTP_400_BAD_REQUEST, str(e))

    if "error" in result:
        return _error(status.HTTP_400_BAD_REQUEST, result["error"])
    if not result["success"]:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to set cache entry")

    logger.info("Cache set", key=request.key, ttl=request.ttl)
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={"success": True, "data": result, "message": "Cache entry created successfully"},
    )


@router.delete("")
async def delete_cache_entries(
    request: CacheDeleteRequest,
    cache: CacheService = Depends(lambda: container.cache())
):
    keys = [request.keys] if isinstance(request.keys, str) else request.keys
    try:
        success = await cache.delete(keys)
    except InvalidCacheArgumentError as e:
        return _error(status.HTTP_400_BAD_REQUEST, str(e))
    if not success:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to delete cache entries")
    return {
        "success": True,
        "data": {"deleted_keys": keys, "count": len(keys)},
        "message": "Cache entries deleted successfully",
    }


@router.get("/{key}")
async def get_cache_entry(key: str, cache: CacheService = Depends(lambda: container.cache())):
    try:
        value = await cache.get(key)
    except InvalidCacheArgumentError as e:
        return _error(status.HTTP_400_BAD_REQUEST, str(e))
    if value is None:
        return _error(status.HTTP_404_NOT_FOUND, "Cache key not found or expired")
    return {"success": True, "data": {"key": key, "value": value}}


@router.get("/{key}/entry")
async def describe_cache_entry(key: str, cache: CacheService = Depends(lambda: container.cache())):
    """Stored record with access statistics; does not count as a hit."""
    try:
        record = await cache.describe(key)
    except InvalidCacheArgumentError as e:
        return _error(status.HTTP_400_BAD_REQUEST, str(e))
    if record is None:
        return _error(status.HTTP_404_NOT_FOUND, "Cache key not found")
    return {"success": True, "data": record.to_dict()}


@router.put("/{key}")
async def update_cache_entry(
    key: str,
    request: CacheUpdateRequest,
    cache: CacheService = Depends(lambda: container.cache()),
    settings: Settings = Depends(lambda: container.settings())
):
    """Create or overwrite a specific entry."""
    set_request = CacheSetRequest(key=key, value=request.value, ttl=request.ttl,
                                  tags=request.tags, metadata=request.metadata)
    try:
        result = await _set_entry(cache, settings, set_request)
    except InvalidCacheArgumentError as e:
        return _error(status.HTTP_400_BAD_REQUEST, str(e))
    if "error" in result:
        return _error(status.HTTP_400_BAD_REQUEST, result["error"])
    if not result["success"]:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to update cache entry")
    return {"success": True, "data": result, "message": "Cache entry updated successfully"}


@router.delete("/{key}")
async def delete_cache_entry(key: str, cache: CacheService = Depends(lambda: container.cache())):
    try:
        deleted = await cache.delete(key)
    except InvalidCacheArgumentError as e:
        return _error(status.HTTP_400_BAD_REQUEST, str(e))
    if not deleted:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to delete cache entry")
    return {"success": True, "data": {"deleted_key": key}, "message": "Cache entry deleted successfully"}


@router.head("/{key}")
async def cache_entry_exists(key: str, cache: CacheService = Depends(lambda: container.cache())):
    try:
        exists = await cache.has(key)
    except InvalidCacheArgumentError:
        return Response(status_code=status.HTTP_400_BAD_REQUEST)
    return Response(status_code=status.HTTP_200_OK if exists else status.HTTP_404_NOT_FOUND)


@router.post("/{key}/increment")
async def increment_cache_entry(
    key: str,
    request: Optional[CacheIncrementRequest] = None,
    cache: CacheService = Depends(lambda: container.cache()),
    settings: Settings = Depends(lambda: container.settings())
):
    """Increment a numeric entry; missing or non-numeric values count as 0."""
    request = request or CacheIncrementRequest()
    ttl_error = _ttl_error(request.ttl, settings)
    if ttl_error:
        return _error(status.HTTP_400_BAD_REQUEST, ttl_error)
    try:
        value = await cache.increment(key, _as_number(request.increment), request.ttl)
    except InvalidCacheArgumentError as e:
        return _error(status.HTTP_400_BAD_REQUEST, str(e))
    if value is None:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to increment cache value")
    return {
        "success": True,
        "data": {"key": key, "value": value, "increment": _as_number(request.increment)},
        "message": "Cache value incremented successfully",
    }
