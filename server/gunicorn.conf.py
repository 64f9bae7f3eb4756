"""Gunicorn settings for running the cache service with uvicorn workers.

Uses the same environment variables as core/config.py. Each worker has its own
event loop, single-flight table and sweeper. Workers share only the database,
plus Redis when REDIS_ENABLED=true.

    gunicorn main:app -c gunicorn.conf.py
"""
import multiprocessing
import os


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


bind = f"{os.getenv('HOST', '0.0.0.0')}:{os.getenv('PORT', '3020')}"
worker_class = "uvicorn.workers.UvicornWorker"

# WORKERS unset or 0: one worker per core, capped since SQLite serializes writers
workers = _env_int("WORKERS", 0) or min(multiprocessing.cpu_count(), 4)

# get_or_set requests wait for the computation they joined
timeout = _env_int("GUNICORN_TIMEOUT", 120)
graceful_timeout = _env_int("GUNICORN_GRACEFUL_TIMEOUT", 30)
keepalive = _env_int("GUNICORN_KEEPALIVE", 5)
max_requests = _env_int("GUNICORN_MAX_REQUESTS", 10000)
max_requests_jitter = _env_int("GUNICORN_MAX_REQUESTS_JITTER", 1000)

loglevel = os.getenv("LOG_LEVEL", "INFO").lower()
accesslog = None if os.getenv("DEBUG", "false").lower() == "true" else "-"
errorlog = "-"
proc_name = "cachekeeper"

# Engines and Redis clients are opened in the lifespan, after fork
preload_app = False
