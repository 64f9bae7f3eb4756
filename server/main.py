"""
Cachekeeper: durable TTL cache service.

FastAPI app exposing cache administration routes; the cache engine itself
is used in-process through the container.
"""

# uvloop is optional (not available on Windows)
try:
    import uvloop
    uvloop.install()
except ImportError:
    pass

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.config import Settings
from core.container import container
from core.health import get_health_status, set_startup_time
from core.logging import configure_logging, get_logger
from routers import cache

settings = Settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the store, the cache engine and the sweeper; stop them in reverse."""
    set_startup_time()
    logger.info("Starting cache service", database=settings.database_url,
                sweeper=settings.cache_sweep_enabled, redis_lease=settings.redis_enabled)

    database = container.database()
    cache_service = container.cache()
    cleanup = container.cleanup()

    await database.startup()
    await cache_service.startup()
    if settings.cache_sweep_enabled:
        await cleanup.start()
    logger.info("Cache service ready")

    yield

    await cleanup.stop()
    await cache_service.shutdown()
    await database.shutdown()
    logger.info("Cache service stopped")


app = FastAPI(
    title="Cachekeeper",
    version="1.0.0",
    description="Durable TTL key-value cache with stampede protection",
    default_response_class=ORJSONResponse,
    lifespan=lifespan
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    """Turn unhandled errors into the router's JSON error envelope."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled request error", path=request.url.path,
                         method=request.method, error=str(e), exc_info=True)
            return ORJSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"success": False, "error": f"{type(e).__name__}: {e}"}
            )


# Must be added before CORS so CORS wraps it
app.add_middleware(CatchAllExceptionsMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)

app.include_router(cache.router)


@app.get("/health")
async def health_check():
    """Service health: database, cache round trip, sweeper, process."""
    health = await get_health_status(container.database(), container.cache(), settings)
    health["cache_sweeper"] = container.cleanup().get_stats()
    health["timestamp"] = datetime.now(timezone.utc).isoformat()
    code = status.HTTP_200_OK if health["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
    return ORJSONResponse(status_code=code, content=health)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
        log_level=settings.log_level.lower()
    )
