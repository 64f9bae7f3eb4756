"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from core.cleanup import CleanupService
from core.lease import create_lease


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Durable store
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Cross-instance lease (None unless REDIS_ENABLED)
    lease = providers.Singleton(
        create_lease,
        settings=settings
    )

    # Cache engine
    cache = providers.Singleton(
        CacheService,
        settings=settings,
        database=database,
        lease=lease
    )

    # Expired entry sweeper
    cleanup = providers.Singleton(
        CleanupService,
        cache=cache,
        settings=settings
    )


# Global container instance
container = Container()
