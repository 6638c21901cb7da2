"""
Lifecycle coordination for the gateway process.

The coordinator owns the single executable schema, the store, both
transports and the HTTP listener, and tears them down in order:
drain HTTP, dispose subscriptions, release the listener, close resources.
"""

import asyncio
from typing import Any, Mapping, Optional

import uvicorn

from linkhub.app import create_app
from linkhub.core.config import Settings, get_settings
from linkhub.core.exceptions import StoreUnavailableError
from linkhub.core.logging import get_logger
from linkhub.graphql.assembler import assemble
from linkhub.graphql.context import ContextFactory
from linkhub.graphql.http import HTTPGateway
from linkhub.graphql.protocol import CLOSE_GOING_AWAY
from linkhub.graphql.resolvers import RESOLVERS
from linkhub.graphql.typedefs import TYPE_DEFS
from linkhub.graphql.websocket import SubscriptionGateway
from linkhub.store import LinkStore, create_store

logger = get_logger(__name__)


class _GatewayServer(uvicorn.Server):
    """uvicorn server whose exit signals run the coordinator's ordered shutdown."""

    def __init__(self, config: uvicorn.Config, coordinator: "LifecycleCoordinator"):
        super().__init__(config)
        self.coordinator = coordinator
        self._loop = asyncio.get_running_loop()

    def handle_exit(self, sig: int, frame: Any) -> None:
        if self.coordinator.is_shutting_down:
            # Second signal: stop waiting for anything
            logger.warning("Forced exit requested", signal=sig)
            self.force_exit = True
            self.should_exit = True
            return
        logger.info("Exit signal received", signal=sig)
        self._loop.call_soon_threadsafe(self.coordinator.request_shutdown)


class LifecycleCoordinator:
    """
    Builds and runs one gateway instance.

    Construction assembles the schema, so an invalid schema fails with
    ``SchemaValidationError`` before any listener exists.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[LinkStore] = None,
        type_defs: str = TYPE_DEFS,
        resolvers: Mapping = RESOLVERS,
    ):
        self.settings = settings or get_settings()
        self.logger = get_logger(__name__)

        self.schema = assemble(
            type_defs,
            resolvers,
            resolver_timeout=self.settings.resolver_timeout_seconds,
        )
        self.store = store if store is not None else create_store(self.settings)
        self.contexts = ContextFactory(self.store)
        self.http = HTTPGateway(self.schema, self.contexts)
        self.subscriptions = SubscriptionGateway(
            self.schema,
            self.contexts,
            init_timeout=self.settings.ws_connection_init_timeout_seconds,
            keepalive_interval=self.settings.ws_keepalive_interval_seconds,
            protocol_error_tolerance=self.settings.ws_protocol_error_tolerance,
        )

        self.app = create_app(self)

        self._server: Optional[_GatewayServer] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._released: Optional[asyncio.Event] = None
        self._opened = False
        self._closed = False

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_task is not None

    @property
    def port(self) -> Optional[int]:
        """Port the listener is bound to, once started."""
        if self._server is None:
            return None
        for server in self._server.servers:
            for sock in server.sockets:
                return sock.getsockname()[1]
        return None

    async def start(self, port: Optional[int] = None) -> "LifecycleCoordinator":
        """
        Bind the listener and serve both transports.

        Args:
            port: Overrides ``settings.api_port``; 0 picks a free port

        Returns:
            self, once the server is accepting connections
        """
        if self._server is not None:
            raise RuntimeError("Gateway already started")

        config = uvicorn.Config(
            self.app,
            host=self.settings.api_host,
            port=self.settings.api_port if port is None else port,
            lifespan="on",
            log_config=None,
            timeout_graceful_shutdown=max(self.settings.shutdown_drain_timeout_seconds, 1.0),
        )
        self._released = asyncio.Event()
        self._server = _GatewayServer(config, self)
        self._serve_task = asyncio.create_task(self._server.serve())
        self._serve_task.add_done_callback(lambda _: self._released.set())

        while not self._server.started:
            if self._serve_task.done():
                await self._serve_task
                raise RuntimeError("Gateway stopped during startup")
            await asyncio.sleep(0.05)

        self.logger.info(
            "Gateway listening",
            host=self.settings.api_host,
            port=self.port,
            graphql_path=self.settings.graphql_path,
        )
        return self

    async def open(self) -> None:
        """Connect the store and export the schema. Runs as the app starts."""
        if self._opened:
            return
        self._opened = True
        try:
            await self.store.connect()
        except StoreUnavailableError as e:
            # Requests fail per field until the store comes back
            self.logger.error(f"Store unavailable at startup: {e}")
        if self.settings.schema_export_path:
            self.schema.export(self.settings.schema_export_path)

    async def close(self) -> None:
        """Dispose subscriptions and disconnect the store. Runs as the app stops."""
        if self._closed:
            return
        self._closed = True
        await self.subscriptions.dispose(CLOSE_GOING_AWAY)
        self.store.events.close("shutdown")
        await self.store.disconnect()
        self.logger.info("Gateway resources released")

    def request_shutdown(self) -> None:
        """Start ``shutdown`` without waiting for it."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self._teardown())

    async def shutdown(self) -> None:
        """
        Ordered, idempotent teardown.

        Concurrent and repeated calls all wait on the same teardown.
        """
        self.request_shutdown()
        await asyncio.shield(self._shutdown_task)

    async def wait_closed(self) -> None:
        """Wait until the listener is released and teardown has finished."""
        if self._released is not None:
            await self._released.wait()
        if self._shutdown_task is not None:
            await asyncio.shield(self._shutdown_task)

    async def _teardown(self) -> None:
        self.logger.info("Shutting down gateway")

        drained = await self.http.drain(self.settings.shutdown_drain_timeout_seconds)
        if not drained:
            self.logger.warning("Proceeding with HTTP requests still in flight", in_flight=self.http.in_flight)

        await self.subscriptions.dispose(CLOSE_GOING_AWAY)

        if self._server is not None:
            self._server.should_exit = True
            try:
                await self._serve_task
            except Exception as e:
                self.logger.error(f"Listener stopped with an error: {e}")

        await self.close()
        self.logger.info("Gateway shut down")
