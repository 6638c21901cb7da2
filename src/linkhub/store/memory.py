"""
In-memory link store for development and tests.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from linkhub.store.base import HealthStatus, LinkStore, Record, normalize_record
from linkhub.store.events import LinkEventBus


class InMemoryLinkStore(LinkStore):
    """Keeps link records in a dict, in insertion order."""

    def __init__(self, records: Optional[Iterable[Record]] = None, events: Optional[LinkEventBus] = None):
        super().__init__(events)
        self._links: Dict[str, Record] = {}
        for record in records or []:
            normalized = normalize_record(record)
            if not normalized["id"]:
                normalized["id"] = str(uuid.uuid4())
            self._links[normalized["id"]] = normalized

    async def connect(self) -> None:
        self._connected = True
        self.logger.info("In-memory link store ready", links=len(self._links))

    async def disconnect(self) -> None:
        self._connected = False

    async def list_links(self) -> List[Record]:
        return [dict(record) for record in self._links.values()]

    async def get_link(self, link_id: str) -> Optional[Record]:
        record = self._links.get(link_id)
        return dict(record) if record else None

    async def create_link(
        self,
        title: str,
        url: str,
        description: Optional[str] = None,
        category: Optional[str] = None,
        image_url: Optional[str] = None,
        users: Optional[Sequence[str]] = None,
    ) -> Record:
        now = datetime.now(timezone.utc)
        record = normalize_record({
            "id": str(uuid.uuid4()),
            "title": title,
            "description": description,
            "url": url,
            "category": category,
            "imageUrl": image_url,
            "users": users,
            "createdAt": now,
            "updatedAt": now,
        })
        self._links[record["id"]] = record
        self._publish("created", dict(record))
        return dict(record)

    async def delete_link(self, link_id: str) -> Optional[Record]:
        record = self._links.pop(link_id, None)
        if record is None:
            return None
        self._publish("deleted", dict(record))
        return dict(record)

    async def health_check(self) -> HealthStatus:
        start = time.perf_counter()
        return HealthStatus(
            healthy=True,
            latency_ms=round((time.perf_counter() - start) * 1000, 2),
            message=f"{len(self._links)} links in memory",
        )
