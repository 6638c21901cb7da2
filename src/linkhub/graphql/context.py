"""
Per-request GraphQL context.

Resolvers never reach for module-level clients. Everything they need is on
the ``GatewayContext`` passed as ``info.context``, built by the
``ContextFactory`` the lifecycle coordinator owns.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from linkhub.store.base import LinkStore
from linkhub.store.events import LinkEventBus


@dataclass(frozen=True)
class GatewayContext:
    """
    Context handed to every resolver.

    Attributes:
        store: Data access adapter for link records
        events: Bus carrying link change events to subscriptions
        transport: "http" or "ws"
        request_id: Unique id of the HTTP request, for tracing
        connection_id: WebSocket connection the operation belongs to
        operation_id: Client-chosen id of the WebSocket operation
    """

    store: LinkStore
    events: LinkEventBus
    transport: str = "http"
    request_id: Optional[str] = None
    connection_id: Optional[str] = None
    operation_id: Optional[str] = None


class ContextFactory:
    """Builds resolver contexts around one store."""

    def __init__(self, store: LinkStore):
        self.store = store

    def for_request(self, request_id: Optional[str] = None) -> GatewayContext:
        return GatewayContext(
            store=self.store,
            events=self.store.events,
            transport="http",
            request_id=request_id or str(uuid.uuid4()),
        )

    def for_operation(self, connection_id: str, operation_id: str) -> GatewayContext:
        return GatewayContext(
            store=self.store,
            events=self.store.events,
            transport="ws",
            connection_id=connection_id,
            operation_id=operation_id,
        )
