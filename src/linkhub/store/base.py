"""
Data access interface used by the GraphQL resolvers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from linkhub.core.logging import get_logger
from linkhub.store.events import LinkEvent, LinkEventBus

logger = get_logger(__name__)

# Records are opaque to the gateway; resolvers read them by GraphQL field name.
Record = Dict[str, Any]

LINK_FIELDS = (
    "id",
    "title",
    "description",
    "url",
    "category",
    "imageUrl",
    "users",
    "createdAt",
    "updatedAt",
)


@dataclass
class HealthStatus:
    """Store health check result."""
    healthy: bool
    latency_ms: float
    message: Optional[str] = None


def normalize_record(row: Any) -> Record:
    """
    Copy a row into a plain dict keyed by GraphQL field names.

    Timestamps become ISO-8601 strings and ``users`` always becomes a list.
    """
    record: Record = {}
    for name in LINK_FIELDS:
        value = row[name] if name in row else None
        if isinstance(value, datetime):
            value = value.isoformat()
        record[name] = value
    if record["users"] is None:
        record["users"] = []
    else:
        record["users"] = list(record["users"])
    return record


class LinkStore(ABC):
    """
    Resolver-facing access to link records.

    One operation per top-level GraphQL field. Mutations publish a
    ``LinkEvent`` on ``events`` once they succeed; reads have no side effects.
    Implementations raise ``StoreUnavailableError`` when the backing store
    cannot be reached.
    """

    def __init__(self, events: Optional[LinkEventBus] = None):
        self.events = events or LinkEventBus()
        self.logger = get_logger(self.__class__.__module__)
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @abstractmethod
    async def connect(self) -> None:
        """Open connections to the backing store."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Release connections. Safe to call more than once."""

    @abstractmethod
    async def list_links(self) -> List[Record]:
        """Return every link, oldest first."""

    @abstractmethod
    async def get_link(self, link_id: str) -> Optional[Record]:
        """Return one link or None."""

    @abstractmethod
    async def create_link(
        self,
        title: str,
        url: str,
        description: Optional[str] = None,
        category: Optional[str] = None,
        image_url: Optional[str] = None,
        users: Optional[Sequence[str]] = None,
    ) -> Record:
        """Insert a link and return the stored record."""

    @abstractmethod
    async def delete_link(self, link_id: str) -> Optional[Record]:
        """Delete a link, returning the removed record or None if absent."""

    @abstractmethod
    async def health_check(self) -> HealthStatus:
        """Probe the backing store."""

    def _publish(self, kind: str, record: Record) -> None:
        delivered = self.events.publish(LinkEvent(kind=kind, link=record))
        self.logger.debug("Link event published", kind=kind, link_id=record.get("id"), subscribers=delivered)
