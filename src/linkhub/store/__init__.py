"""
Data access layer: the link store interface, its backends and the event bus.
"""

from linkhub.core.config import Settings
from linkhub.store.base import HealthStatus, LinkStore, Record, normalize_record
from linkhub.store.events import EventStream, LinkEvent, LinkEventBus
from linkhub.store.memory import InMemoryLinkStore
from linkhub.store.postgres import PostgresLinkStore


def create_store(settings: Settings) -> LinkStore:
    """Build the store backend selected by ``settings.store_backend``."""
    if settings.store_backend == "memory":
        return InMemoryLinkStore()
    return PostgresLinkStore(
        settings.database_url,
        table=settings.store_table,
        min_size=settings.store_pool_min_size,
        max_size=settings.store_pool_max_size,
        command_timeout=settings.store_command_timeout_seconds,
        notify_channel=settings.store_notify_channel,
    )


__all__ = [
    "LinkStore",
    "Record",
    "HealthStatus",
    "normalize_record",
    "LinkEvent",
    "LinkEventBus",
    "EventStream",
    "InMemoryLinkStore",
    "PostgresLinkStore",
    "create_store",
]
