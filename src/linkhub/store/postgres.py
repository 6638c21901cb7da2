"""
PostgreSQL link store backed by an asyncpg connection pool.

The table layout follows Prisma's defaults for a ``Link`` model: a quoted
table name and camelCase column names.
"""

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional, Sequence

import asyncpg
from asyncpg.pool import Pool

from linkhub.core.exceptions import StoreUnavailableError
from linkhub.core.logging import log_performance
from linkhub.store.base import LINK_FIELDS, HealthStatus, LinkStore, Record, normalize_record
from linkhub.store.events import LinkEvent, LinkEventBus

# Failures that mean the database cannot be reached, as opposed to a bad query
CONNECTION_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.TooManyConnectionsError,
)

# Backoff between attempts to restore a lost listener connection
LISTENER_RETRY_INITIAL_SECONDS = 1.0
LISTENER_RETRY_MAX_SECONDS = 30.0


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class PostgresLinkStore(LinkStore):
    """
    Link store with pooled connections and optional LISTEN/NOTIFY fan-out.

    The pool is created by ``connect()``. If that fails, or the pool is lost,
    the next call tries to create it again and raises
    ``StoreUnavailableError`` while the database stays unreachable.
    With a notify channel, mutations announce themselves through
    ``pg_notify`` and a dedicated listener connection republishes the events
    on the local bus, so subscribers also see changes made by other processes.
    While that connection is down mutations publish locally and it is
    reopened in the background.
    """

    def __init__(
        self,
        dsn: str,
        table: str = "Link",
        min_size: int = 1,
        max_size: int = 10,
        command_timeout: float = 10.0,
        notify_channel: Optional[str] = None,
        events: Optional[LinkEventBus] = None,
    ):
        super().__init__(events)
        self.dsn = dsn
        self.table = quote_identifier(table)
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.notify_channel = notify_channel
        self.pool: Optional[Pool] = None
        self._listener: Optional[asyncpg.Connection] = None
        self._relisten_task: Optional[asyncio.Task] = None
        self._closing = False
        self._pool_lock = asyncio.Lock()
        self._columns = ", ".join(quote_identifier(name) for name in LINK_FIELDS)

    async def connect(self) -> None:
        """Create the pool and, when configured, the listener connection."""
        self._closing = False
        await self._ensure_pool()
        if self.notify_channel and self._listener is None:
            await self._start_listener()

    async def disconnect(self) -> None:
        """Close the listener and the pool."""
        self._closing = True
        if self._relisten_task is not None:
            self._relisten_task.cancel()
            self._relisten_task = None
        if self._listener is not None:
            listener, self._listener = self._listener, None
            try:
                await listener.remove_listener(self.notify_channel, self._on_notification)
                await listener.close()
            except CONNECTION_ERRORS as e:
                self.logger.warning(f"Error closing listener connection: {e}")
        if self.pool is not None:
            pool, self.pool = self.pool, None
            await pool.close()
            self.logger.info("Disconnected from PostgreSQL")
        self._connected = False

    async def _start_listener(self) -> None:
        listener = None
        try:
            listener = await asyncpg.connect(self.dsn, timeout=self.command_timeout)
            await listener.add_listener(self.notify_channel, self._on_notification)
        except CONNECTION_ERRORS as e:
            if listener is not None:
                listener.terminate()
            raise StoreUnavailableError(f"Cannot listen on '{self.notify_channel}': {e}") from e
        listener.add_termination_listener(self._on_listener_terminated)
        self._listener = listener
        self.logger.info("Listening for link events", channel=self.notify_channel)

    def _on_listener_terminated(self, connection: Any) -> None:
        if connection is not self._listener:
            return
        # Mutations publish locally until the listener is back
        self._listener = None
        if self._closing:
            return
        self.logger.warning("Listener connection lost, reconnecting", channel=self.notify_channel)
        self._relisten_task = asyncio.get_running_loop().create_task(self._relisten())

    async def _relisten(self) -> None:
        delay = LISTENER_RETRY_INITIAL_SECONDS
        while not self._closing and self._listener is None:
            await asyncio.sleep(delay)
            try:
                await self._start_listener()
            except StoreUnavailableError as e:
                self.logger.warning(f"Listener reconnect failed: {e}", retry_in=delay)
                delay = min(delay * 2, LISTENER_RETRY_MAX_SECONDS)
        self._relisten_task = None

    async def _ensure_pool(self) -> Pool:
        if self.pool is not None:
            return self.pool
        async with self._pool_lock:
            if self.pool is None:
                try:
                    self.pool = await asyncpg.create_pool(
                        self.dsn,
                        min_size=self.min_size,
                        max_size=self.max_size,
                        command_timeout=self.command_timeout,
                        timeout=self.command_timeout,
                    )
                except CONNECTION_ERRORS as e:
                    self.logger.error(f"Failed to connect to PostgreSQL: {e}")
                    raise StoreUnavailableError(f"PostgreSQL is unavailable: {e}") from e
                self._connected = True
                self.logger.info("Connected to PostgreSQL", pool_max_size=self.max_size)
        return self.pool

    @asynccontextmanager
    async def _acquire(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except CONNECTION_ERRORS as e:
            # Drop the broken pool so the next call reconnects
            if self.pool is pool and not isinstance(e, asyncio.TimeoutError):
                self.pool = None
                self._connected = False
                pool.terminate()
            raise StoreUnavailableError(f"PostgreSQL is unavailable: {e}") from e

    @log_performance("list_links")
    async def list_links(self) -> List[Record]:
        async with self._acquire() as conn:
            rows = await conn.fetch(
                f'SELECT {self._columns} FROM {self.table} ORDER BY "createdAt", id'
            )
        return [normalize_record(row) for row in rows]

    @log_performance("get_link")
    async def get_link(self, link_id: str) -> Optional[Record]:
        async with self._acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {self._columns} FROM {self.table} WHERE id = $1", link_id
            )
        return normalize_record(row) if row else None

    @log_performance("create_link")
    async def create_link(
        self,
        title: str,
        url: str,
        description: Optional[str] = None,
        category: Optional[str] = None,
        image_url: Optional[str] = None,
        users: Optional[Sequence[str]] = None,
    ) -> Record:
        async with self._acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO {self.table}
                        (id, title, description, url, category, "imageUrl", users, "updatedAt")
                    VALUES ($1, $2, $3, $4, $5, $6, $7, now())
                    RETURNING {self._columns}
                    """,
                    str(uuid.uuid4()),
                    title,
                    description,
                    url,
                    category,
                    image_url,
                    list(users or []),
                )
                record = normalize_record(row)
                announced = await self._announce(conn, "created", record)
        if not announced:
            self._publish("created", record)
        return record

    @log_performance("delete_link")
    async def delete_link(self, link_id: str) -> Optional[Record]:
        async with self._acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"DELETE FROM {self.table} WHERE id = $1 RETURNING {self._columns}",
                    link_id,
                )
                if row is None:
                    return None
                record = normalize_record(row)
                announced = await self._announce(conn, "deleted", record)
        if not announced:
            self._publish("deleted", record)
        return record

    async def health_check(self) -> HealthStatus:
        loop = asyncio.get_running_loop()
        start = loop.time()
        try:
            async with self._acquire() as conn:
                await conn.fetchval("SELECT 1")
        except StoreUnavailableError as e:
            return HealthStatus(healthy=False, latency_ms=0.0, message=str(e))
        return HealthStatus(
            healthy=True,
            latency_ms=round((loop.time() - start) * 1000, 2),
            message="PostgreSQL reachable",
        )

    async def _announce(self, conn: asyncpg.Connection, kind: str, record: Record) -> bool:
        """Send the event through NOTIFY; False means the caller publishes it locally."""
        if self._listener is None:
            return False
        payload = json.dumps(LinkEvent(kind=kind, link=record).to_record())
        await conn.execute("SELECT pg_notify($1, $2)", self.notify_channel, payload)
        return True

    def _on_notification(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        try:
            event = LinkEvent.from_record(json.loads(payload))
        except (ValueError, KeyError, TypeError) as e:
            self.logger.warning(f"Ignoring malformed notification on {channel}: {e}")
            return
        self.events.publish(event)
