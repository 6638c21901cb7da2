"""
WebSocket transport for GraphQL subscriptions.

Handles connection lifecycle, subscription operations, keep-alive and
disposal of every connection at shutdown.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from linkhub.core.exceptions import ProtocolError
from linkhub.core.logging import LogContext, get_logger
from linkhub.graphql.assembler import ExecutableSchema
from linkhub.graphql.context import ContextFactory
from linkhub.graphql.protocol import (
    CLOSE_GOING_AWAY,
    CLOSE_INIT_TIMEOUT,
    CLOSE_INTERNAL_ERROR,
    CLOSE_NORMAL,
    CLOSE_SUBPROTOCOL_NOT_ACCEPTABLE,
    CLOSE_SUBSCRIBER_EXISTS,
    CLOSE_TOO_MANY_INIT,
    CLOSE_UNAUTHORIZED,
    GQL_COMPLETE,
    GQL_CONNECTION_ACK,
    GQL_CONNECTION_INIT,
    GQL_CONNECTION_TERMINATE,
    GQL_ERROR,
    GQL_PING,
    GQL_PONG,
    ClientMessage,
    Dialect,
    encode,
    negotiate,
    parse_message,
)
from linkhub.graphql.results import error_payload, format_errors, format_result
from linkhub.metrics import GRAPHQL_OPERATIONS, WS_CONNECTIONS, WS_SUBSCRIPTIONS

logger = get_logger(__name__)

# Raised by the ASGI server or Starlette when sending on a dead socket
SEND_ERRORS = (WebSocketDisconnect, RuntimeError, OSError)

# Missed keep-alive intervals before an idle graphql-transport-ws client is dropped
IDLE_INTERVALS = 3


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class OperationState(str, Enum):
    ACTIVE = "active"
    COMPLETE = "complete"


@dataclass
class SubscriptionOperation:
    """One operation started by a client on a connection."""
    operation_id: str
    query: str
    variables: Optional[Dict[str, Any]]
    operation_name: Optional[str]
    state: OperationState = OperationState.ACTIVE
    cancelled: bool = False
    task: Optional[asyncio.Task] = None
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class Connection:
    """Information about a WebSocket connection."""
    connection_id: str
    websocket: WebSocket
    dialect: Dialect
    state: ConnectionState = ConnectionState.CONNECTING
    operations: Dict[str, SubscriptionOperation] = field(default_factory=dict)
    protocol_errors: int = 0
    last_activity: float = 0.0
    connected_at: datetime = field(default_factory=datetime.now)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closed: asyncio.Event = field(default_factory=asyncio.Event)
    handler: Optional[asyncio.Task] = None


class SubscriptionGateway:
    """
    Serves GraphQL over WebSocket.

    Every operation runs in its own task. Frames for one connection are sent
    under a per-connection lock, and operation frames re-check the
    operation's cancellation flag under that lock, so nothing is sent for an
    operation once the client stopped it.
    """

    def __init__(
        self,
        schema: ExecutableSchema,
        contexts: ContextFactory,
        init_timeout: float = 3.0,
        keepalive_interval: float = 12.0,
        protocol_error_tolerance: int = 1,
    ):
        self.schema = schema
        self.contexts = contexts
        self.init_timeout = init_timeout
        self.keepalive_interval = keepalive_interval
        self.protocol_error_tolerance = protocol_error_tolerance
        self.connections: Dict[str, Connection] = {}
        self.logger = get_logger(__name__)
        self._disposed = False
        self._heartbeat_task: Optional[asyncio.Task] = None

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def get_router(self, path: str = "/graphql") -> APIRouter:
        router = APIRouter(tags=["graphql"])
        router.add_api_websocket_route(path, self.handle)
        return router

    def get_connection_count(self) -> int:
        """Get total number of open connections."""
        return len(self.connections)

    def get_subscription_count(self) -> int:
        """Get total number of active operations."""
        return sum(len(c.operations) for c in self.connections.values())

    def get_stats(self) -> Dict[str, Any]:
        by_protocol: Dict[str, int] = {}
        for connection in self.connections.values():
            name = connection.dialect.name
            by_protocol[name] = by_protocol.get(name, 0) + 1
        return {
            "active_connections": self.get_connection_count(),
            "active_subscriptions": self.get_subscription_count(),
            "connections_by_protocol": by_protocol,
        }

    async def handle(self, websocket: WebSocket) -> None:
        """Run one connection from handshake to close."""
        if self._disposed:
            await websocket.close(code=CLOSE_GOING_AWAY)
            return

        dialect = negotiate(websocket.scope.get("subprotocols") or [])
        if dialect is None:
            await websocket.accept()
            await websocket.close(code=CLOSE_SUBPROTOCOL_NOT_ACCEPTABLE, reason="Subprotocol not acceptable")
            return

        await websocket.accept(subprotocol=dialect.name)
        loop = asyncio.get_running_loop()
        connection = Connection(
            connection_id=str(uuid.uuid4()),
            websocket=websocket,
            dialect=dialect,
            last_activity=loop.time(),
            handler=asyncio.current_task(),
        )
        self.connections[connection.connection_id] = connection
        WS_CONNECTIONS.inc()
        self._ensure_heartbeat()

        with LogContext(connection_id=connection.connection_id):
            self.logger.info("WebSocket connection established", protocol=dialect.name)
            try:
                await self._serve(connection)
            except SEND_ERRORS as e:
                self.logger.info(f"WebSocket connection lost: {e}")
            finally:
                await self._teardown(connection)

    async def dispose(self, code: int = CLOSE_GOING_AWAY, timeout: float = 5.0) -> None:
        """Refuse new connections, then cancel and close every open one."""
        self._disposed = True
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

        connections = list(self.connections.values())
        if not connections:
            return

        self.logger.info("Closing WebSocket connections", connections=len(connections))
        await asyncio.gather(
            *(self._close(c, code, "Server shutting down") for c in connections),
            return_exceptions=True,
        )

        waiters = [asyncio.ensure_future(c.closed.wait()) for c in connections]
        _, pending = await asyncio.wait(waiters, timeout=timeout)
        for waiter in pending:
            waiter.cancel()
        for connection in connections:
            if not connection.closed.is_set() and connection.handler is not None:
                self.logger.warning(
                    "Connection handler did not finish, cancelling",
                    connection_id=connection.connection_id,
                )
                connection.handler.cancel()

    async def _serve(self, connection: Connection) -> None:
        websocket = connection.websocket
        loop = asyncio.get_running_loop()
        init_deadline = loop.time() + self.init_timeout

        while connection.state is not ConnectionState.CLOSED:
            if connection.state is ConnectionState.CONNECTING:
                try:
                    message = await asyncio.wait_for(
                        websocket.receive(), timeout=max(init_deadline - loop.time(), 0)
                    )
                except asyncio.TimeoutError:
                    await self._close(connection, CLOSE_INIT_TIMEOUT, "Connection initialisation timeout")
                    return
            else:
                message = await websocket.receive()

            if message["type"] == "websocket.disconnect":
                return
            connection.last_activity = loop.time()

            try:
                text = message.get("text")
                if text is None:
                    raise ProtocolError("Binary frames are not supported")
                await self._dispatch(connection, parse_message(text, connection.dialect))
            except ProtocolError as e:
                await self._protocol_violation(connection, e)

    async def _dispatch(self, connection: Connection, message: ClientMessage) -> None:
        dialect = connection.dialect

        if message.type == GQL_CONNECTION_INIT:
            if connection.state is ConnectionState.CONNECTED:
                await self._close(connection, CLOSE_TOO_MANY_INIT, "Too many initialisation requests")
                return
            connection.state = ConnectionState.CONNECTED
            await self._send(connection, encode(GQL_CONNECTION_ACK))
            self.logger.debug("Connection acknowledged")

        elif message.type == GQL_PING:
            await self._send(connection, encode(GQL_PONG, payload=message.payload))

        elif message.type == GQL_PONG:
            pass

        elif message.type == GQL_CONNECTION_TERMINATE:
            await self._close(connection, CLOSE_NORMAL, "Connection terminated by client")

        elif message.type == dialect.subscribe:
            if connection.state is not ConnectionState.CONNECTED:
                await self._close(connection, CLOSE_UNAUTHORIZED, "Unauthorized")
                return
            await self._start_operation(connection, message)

        elif message.type == dialect.stop:
            await self._stop_operation(connection, message.id)

    async def _protocol_violation(self, connection: Connection, error: ProtocolError) -> None:
        connection.protocol_errors += 1
        self.logger.warning(
            "Protocol violation",
            error=error.message,
            violations=connection.protocol_errors,
            operation_id=error.operation_id,
        )
        if connection.protocol_errors > self.protocol_error_tolerance:
            await self._close(connection, error.close_code, error.message)
            return

        payload = error_payload(error.message, error.code)
        dialect = connection.dialect
        await self._send(
            connection,
            encode(
                dialect.protocol_error,
                operation_id=None if dialect.is_legacy else error.operation_id,
                payload=dialect.error_payload([payload]),
            ),
        )

    async def _start_operation(self, connection: Connection, message: ClientMessage) -> None:
        dialect = connection.dialect
        request = message.request
        existing = connection.operations.get(message.id)
        if existing is not None:
            if not dialect.replaces_duplicate_ids:
                await self._close(
                    connection, CLOSE_SUBSCRIBER_EXISTS, f"Subscriber for {message.id} already exists"
                )
                return
            self._cancel_operation(connection, existing)

        operation_type, errors = self.schema.validate(request.query, request.operation_name)
        if errors:
            GRAPHQL_OPERATIONS.labels("ws", "unknown", "invalid").inc()
            await self._send(
                connection,
                encode(GQL_ERROR, message.id, dialect.error_payload(format_errors(errors))),
            )
            return

        operation = SubscriptionOperation(
            operation_id=message.id,
            query=request.query,
            variables=request.variables,
            operation_name=request.operation_name,
        )
        connection.operations[operation.operation_id] = operation
        WS_SUBSCRIPTIONS.inc()
        operation.task = asyncio.create_task(
            self._run_operation(connection, operation, operation_type),
            name=f"graphql-ws:{connection.connection_id}:{operation.operation_id}",
        )
        self.logger.debug("Operation started", operation_id=operation.operation_id, operation=operation_type)

    async def _stop_operation(self, connection: Connection, operation_id: str) -> None:
        operation = connection.operations.get(operation_id)
        if operation is None:
            return
        self._cancel_operation(connection, operation)
        await self._send(connection, encode(GQL_COMPLETE, operation_id))
        self.logger.debug("Operation stopped by client", operation_id=operation_id)

    def _cancel_operation(self, connection: Connection, operation: SubscriptionOperation) -> None:
        # The flag is set before any await so no later frame for this id goes out
        operation.cancelled = True
        operation.state = OperationState.COMPLETE
        if operation.task is not None and not operation.task.done():
            operation.task.cancel()
        self._forget_operation(connection, operation)

    def _forget_operation(self, connection: Connection, operation: SubscriptionOperation) -> None:
        if connection.operations.get(operation.operation_id) is operation:
            del connection.operations[operation.operation_id]
            WS_SUBSCRIPTIONS.dec()

    async def _run_operation(
        self, connection: Connection, operation: SubscriptionOperation, operation_type: str
    ) -> None:
        dialect = connection.dialect
        context = self.contexts.for_operation(connection.connection_id, operation.operation_id)

        with LogContext(connection_id=connection.connection_id, operation_id=operation.operation_id):
            try:
                if operation_type == "subscription":
                    result = await self.schema.subscribe(
                        operation.query,
                        variables=operation.variables,
                        operation_name=operation.operation_name,
                        context=context,
                    )
                    if not hasattr(result, "__aiter__"):
                        # The subscription could not start
                        await self._send_for(
                            connection,
                            operation,
                            encode(GQL_ERROR, operation.operation_id,
                                   dialect.error_payload(format_errors(result.errors or []))),
                        )
                        GRAPHQL_OPERATIONS.labels("ws", operation_type, "error").inc()
                        return
                    try:
                        async for item in result:
                            await self._send_for(
                                connection,
                                operation,
                                encode(dialect.next, operation.operation_id, format_result(item)),
                            )
                    finally:
                        if hasattr(result, "aclose"):
                            await result.aclose()
                else:
                    result = await self.schema.execute(
                        operation.query,
                        variables=operation.variables,
                        operation_name=operation.operation_name,
                        context=context,
                    )
                    await self._send_for(
                        connection,
                        operation,
                        encode(dialect.next, operation.operation_id, format_result(result)),
                    )

                if await self._send_for(connection, operation, encode(GQL_COMPLETE, operation.operation_id)):
                    GRAPHQL_OPERATIONS.labels("ws", operation_type, "ok").inc()
                    self.logger.debug("Operation complete")
            except asyncio.CancelledError:
                GRAPHQL_OPERATIONS.labels("ws", operation_type, "cancelled").inc()
                raise
            except SEND_ERRORS as e:
                self.logger.info(f"Could not deliver operation result: {e}")
            except Exception as e:
                GRAPHQL_OPERATIONS.labels("ws", operation_type, "error").inc()
                self.logger.error(f"Operation failed: {e}", exc_info=True)
            finally:
                operation.state = OperationState.COMPLETE
                self._forget_operation(connection, operation)

    async def _send_for(self, connection: Connection, operation: SubscriptionOperation, text: str) -> bool:
        """Send a frame for ``operation`` unless it was cancelled; report whether it went out."""
        async with connection.send_lock:
            if operation.cancelled or connection.state is ConnectionState.CLOSED:
                return False
            await connection.websocket.send_text(text)
            return True

    async def _send(self, connection: Connection, text: str) -> None:
        async with connection.send_lock:
            if connection.state is ConnectionState.CLOSED:
                return
            await connection.websocket.send_text(text)

    async def _close(self, connection: Connection, code: int, reason: str) -> None:
        """Cancel every operation and send the close frame. Safe to call twice."""
        if connection.state is ConnectionState.CLOSED:
            return
        connection.state = ConnectionState.CLOSED
        self._cancel_all(connection)
        async with connection.send_lock:
            try:
                await connection.websocket.close(code=code, reason=reason)
            except SEND_ERRORS as e:
                self.logger.debug(f"Close frame not delivered: {e}", connection_id=connection.connection_id)
        self.logger.info("WebSocket connection closed", code=code, reason=reason,
                         connection_id=connection.connection_id)

    def _cancel_all(self, connection: Connection) -> List[asyncio.Task]:
        tasks = []
        for operation in list(connection.operations.values()):
            if operation.task is not None:
                tasks.append(operation.task)
            self._cancel_operation(connection, operation)
        return tasks

    async def _teardown(self, connection: Connection) -> None:
        # Deregister before the first await: the handler may be cancelled again here
        connection.state = ConnectionState.CLOSED
        tasks = self._cancel_all(connection)
        if self.connections.pop(connection.connection_id, None) is not None:
            WS_CONNECTIONS.dec()
        if not self.connections and self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

        try:
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            connection.closed.set()
            self.logger.info("WebSocket connection released", connection_id=connection.connection_id)

    def _ensure_heartbeat(self) -> None:
        if self.keepalive_interval > 0 and self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        """Send periodic keep-alives and drop idle graphql-transport-ws clients."""
        loop = asyncio.get_running_loop()
        while True:
            try:
                await asyncio.sleep(self.keepalive_interval)

                now = loop.time()
                for connection in list(self.connections.values()):
                    if connection.state is not ConnectionState.CONNECTED:
                        continue
                    dialect = connection.dialect
                    idle = now - connection.last_activity
                    if not dialect.is_legacy and idle > IDLE_INTERVALS * self.keepalive_interval:
                        await self._close(connection, CLOSE_INIT_TIMEOUT, "Connection idle timeout")
                        continue
                    try:
                        await self._send(connection, encode(dialect.keepalive))
                    except SEND_ERRORS as e:
                        self.logger.warning(f"Heartbeat failed for {connection.connection_id}: {e}")
                        await self._close(connection, CLOSE_INTERNAL_ERROR, "Heartbeat failed")

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in heartbeat loop: {e}")
