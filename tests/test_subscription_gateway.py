"""Tests for the WebSocket transport: GET /graphql upgraded to a WebSocket."""

import asyncio
from typing import Any, AsyncGenerator, Dict, List
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect
from strawberry.types import Info

from conftest import SEED_LINKS, graphql, make_settings, wait_until
from linkhub.graphql import protocol
from linkhub.graphql.resolvers import RESOLVERS
from linkhub.graphql.websocket import Connection, ConnectionState, SubscriptionOperation
from linkhub.lifecycle import LifecycleCoordinator

TRANSPORT_WS = ["graphql-transport-ws"]
LEGACY_WS = ["graphql-ws"]

LINKS_SUBSCRIPTION = "subscription { links { id title } }"

SNAPSHOTS: List[List[Dict[str, Any]]] = [
    [{"id": "a", "title": "first"}],
    [{"id": "a", "title": "first"}, {"id": "b", "title": "second"}],
    [{"id": "b", "title": "second"}],
]


async def three_snapshots(info: Info) -> AsyncGenerator[List[Dict[str, Any]], None]:
    for snapshot in SNAPSHOTS:
        yield snapshot


def connect(client: TestClient, subprotocols=TRANSPORT_WS):
    return client.websocket_connect("/graphql", subprotocols=subprotocols)


def init(ws) -> None:
    ws.send_json({"type": "connection_init", "payload": {}})
    assert ws.receive_json() == {"type": "connection_ack"}


def subscribe(ws, operation_id: str, query: str, message_type: str = "subscribe", **payload) -> None:
    ws.send_json({"id": operation_id, "type": message_type, "payload": {"query": query, **payload}})


def expect_close(ws) -> int:
    with pytest.raises(WebSocketDisconnect) as excinfo:
        ws.receive_json()
    return excinfo.value.code


class TestHandshake:
    """Subprotocol negotiation and connection initialisation."""

    def test_ack_after_init(self, client):
        with connect(client) as ws:
            assert ws.accepted_subprotocol == "graphql-transport-ws"
            init(ws)

    def test_transport_ws_preferred(self, client):
        with connect(client, ["graphql-ws", "graphql-transport-ws"]) as ws:
            assert ws.accepted_subprotocol == "graphql-transport-ws"

    def test_unsupported_subprotocol_closes_4406(self, client):
        with connect(client, ["mqtt"]) as ws:
            assert expect_close(ws) == 4406

    def test_no_init_closes_4408(self, client):
        with connect(client) as ws:
            assert expect_close(ws) == 4408

    def test_second_init_closes_4429(self, client):
        with connect(client) as ws:
            init(ws)
            ws.send_json({"type": "connection_init"})
            assert expect_close(ws) == 4429

    def test_subscribe_before_init_closes_4401(self, client):
        with connect(client) as ws:
            subscribe(ws, "1", LINKS_SUBSCRIPTION)
            assert expect_close(ws) == 4401

    def test_ping_pong_echoes_payload(self, client):
        with connect(client) as ws:
            init(ws)
            ws.send_json({"type": "ping", "payload": {"seq": 1}})
            assert ws.receive_json() == {"type": "pong", "payload": {"seq": 1}}


class TestSubscriptions:
    """Operation lifecycle over graphql-transport-ws."""

    def test_next_in_order_then_complete(self, store):
        resolvers = {**RESOLVERS, "Subscription": {**RESOLVERS["Subscription"], "links": three_snapshots}}
        coordinator = LifecycleCoordinator(make_settings(), store=store, resolvers=resolvers)
        with TestClient(coordinator.app) as client, connect(client) as ws:
            init(ws)
            subscribe(ws, "1", LINKS_SUBSCRIPTION)
            for snapshot in SNAPSHOTS:
                assert ws.receive_json() == {
                    "id": "1",
                    "type": "next",
                    "payload": {"data": {"links": snapshot}},
                }
            assert ws.receive_json() == {"id": "1", "type": "complete"}

    def test_links_snapshot_then_update(self, client):
        with connect(client) as ws:
            init(ws)
            subscribe(ws, "links", LINKS_SUBSCRIPTION)
            first = ws.receive_json()
            assert first["type"] == "next"
            assert [link["id"] for link in first["payload"]["data"]["links"]] == ["link-1", "link-2"]

            graphql(client, 'mutation { deleteLink(id: "link-1") { id } }')
            second = ws.receive_json()
            assert second["id"] == "links"
            assert second["payload"]["data"]["links"] == [{"id": "link-2", "title": "Strawberry"}]

    def test_link_events_follow_mutations(self, client, store):
        with connect(client) as ws:
            init(ws)
            subscribe(ws, "events", "subscription { linkEvents { kind link { title url } } }")
            wait_until(lambda: store.events.subscriber_count == 1)

            graphql(client, 'mutation { createLink(title: "New", url: "https://new.example") { id } }')
            graphql(client, 'mutation { deleteLink(id: "link-2") { id } }')

            created = ws.receive_json()["payload"]["data"]["linkEvents"]
            deleted = ws.receive_json()["payload"]["data"]["linkEvents"]
            assert created == {"kind": "created", "link": {"title": "New", "url": "https://new.example"}}
            assert deleted == {"kind": "deleted", "link": {"title": "Strawberry", "url": "https://strawberry.rocks"}}

    def test_client_complete_stops_delivery(self, client, store):
        with connect(client) as ws:
            init(ws)
            subscribe(ws, "1", LINKS_SUBSCRIPTION)
            assert ws.receive_json()["type"] == "next"

            ws.send_json({"id": "1", "type": "complete"})
            assert ws.receive_json() == {"id": "1", "type": "complete"}
            wait_until(lambda: store.events.subscriber_count == 0)

            graphql(client, 'mutation { createLink(title: "Late", url: "https://late.example") { id } }')
            ws.send_json({"type": "ping"})
            # Nothing for the stopped operation arrives before the pong
            assert ws.receive_json() == {"type": "pong"}

    def test_operation_id_reusable_after_complete(self, client):
        with connect(client) as ws:
            init(ws)
            subscribe(ws, "1", LINKS_SUBSCRIPTION)
            ws.receive_json()
            ws.send_json({"id": "1", "type": "complete"})
            assert ws.receive_json()["type"] == "complete"

            subscribe(ws, "1", LINKS_SUBSCRIPTION)
            assert ws.receive_json()["type"] == "next"

    def test_duplicate_active_id_closes_4409(self, client):
        with connect(client) as ws:
            init(ws)
            subscribe(ws, "1", LINKS_SUBSCRIPTION)
            ws.receive_json()
            subscribe(ws, "1", LINKS_SUBSCRIPTION)
            assert expect_close(ws) == 4409

    def test_validation_error_frame(self, client):
        with connect(client) as ws:
            init(ws)
            subscribe(ws, "bad", "subscription { nope }")
            message = ws.receive_json()
            assert message["type"] == "error"
            assert message["id"] == "bad"
            assert "nope" in message["payload"][0]["message"]

            # The connection stays usable
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_query_over_socket(self, client):
        with connect(client) as ws:
            init(ws)
            subscribe(ws, "q", "query Titles { links { title } }", operationName="Titles")
            assert ws.receive_json() == {
                "id": "q",
                "type": "next",
                "payload": {"data": {"links": [{"title": link["title"]} for link in SEED_LINKS]}},
            }
            assert ws.receive_json() == {"id": "q", "type": "complete"}

    def test_mutation_over_socket(self, client):
        with connect(client) as ws:
            init(ws)
            subscribe(ws, "m", 'mutation { deleteLink(id: "link-1") { id } }')
            assert ws.receive_json()["payload"] == {"data": {"deleteLink": {"id": "link-1"}}}
            assert ws.receive_json() == {"id": "m", "type": "complete"}

    def test_connection_close_releases_operations(self, client, coordinator, store):
        with connect(client) as ws:
            init(ws)
            subscribe(ws, "1", LINKS_SUBSCRIPTION)
            ws.receive_json()
            assert coordinator.subscriptions.get_subscription_count() == 1
        wait_until(lambda: coordinator.subscriptions.get_connection_count() == 0)
        wait_until(lambda: store.events.subscriber_count == 0)


class TestProtocolViolations:
    """Malformed frames get an error first and close the connection after."""

    def test_error_then_close_4400(self, client):
        with connect(client) as ws:
            init(ws)
            ws.send_text("not json")
            message = ws.receive_json()
            assert message["type"] == "error"
            assert message["payload"][0]["extensions"]["code"] == "PROTOCOL_ERROR"

            ws.send_json({"type": "bogus"})
            assert expect_close(ws) == 4400

    @pytest.mark.parametrize(
        "frame",
        [
            [],
            {"payload": {}},
            {"type": "subscribe", "payload": {"query": "{ links { id } }"}},
            {"type": "subscribe", "id": "1", "payload": {"variables": {}}},
            {"type": "subscribe", "id": "1", "payload": {"query": "{ links { id } }", "variables": []}},
            {"type": "complete"},
        ],
    )
    def test_malformed_frames_are_reported(self, client, frame):
        with connect(client) as ws:
            init(ws)
            ws.send_json(frame)
            assert ws.receive_json()["type"] == "error"

    def test_binary_frames_rejected(self, client):
        with connect(client) as ws:
            init(ws)
            ws.send_bytes(b"\x00\x01")
            message = ws.receive_json()
            assert message["payload"][0]["message"] == "Binary frames are not supported"

    def test_no_tolerance_closes_immediately(self, store):
        coordinator = LifecycleCoordinator(make_settings(ws_protocol_error_tolerance=0), store=store)
        with TestClient(coordinator.app) as client, connect(client) as ws:
            init(ws)
            ws.send_text("{")
            assert expect_close(ws) == 4400


class TestLegacyProtocol:
    """Apollo graphql-ws clients."""

    def test_start_data_stop(self, client):
        with connect(client, LEGACY_WS) as ws:
            assert ws.accepted_subprotocol == "graphql-ws"
            init(ws)
            subscribe(ws, "1", LINKS_SUBSCRIPTION, message_type="start")
            message = ws.receive_json()
            assert message["type"] == "data"
            assert message["id"] == "1"
            assert len(message["payload"]["data"]["links"]) == 2

            ws.send_json({"id": "1", "type": "stop"})
            assert ws.receive_json() == {"id": "1", "type": "complete"}

    def test_duplicate_id_replaces_operation(self, client):
        with connect(client, LEGACY_WS) as ws:
            init(ws)
            subscribe(ws, "1", LINKS_SUBSCRIPTION, message_type="start")
            assert ws.receive_json()["type"] == "data"
            subscribe(ws, "1", "subscription { linkEvents { kind } }", message_type="start")
            ws.send_json({"id": "1", "type": "stop"})
            assert ws.receive_json() == {"id": "1", "type": "complete"}

    def test_query_data_then_complete(self, client):
        with connect(client, LEGACY_WS) as ws:
            init(ws)
            subscribe(ws, "q", '{ link(id: "link-1") { id } }', message_type="start")
            assert ws.receive_json() == {"id": "q", "type": "data", "payload": {"data": {"link": {"id": "link-1"}}}}
            assert ws.receive_json() == {"id": "q", "type": "complete"}

    def test_protocol_error_is_connection_error(self, client):
        with connect(client, LEGACY_WS) as ws:
            init(ws)
            ws.send_json({"type": "subscribe", "id": "1"})
            message = ws.receive_json()
            assert message["type"] == "connection_error"
            assert "subscribe" in message["payload"]["message"]

    def test_connection_terminate_closes_normally(self, client):
        with connect(client, LEGACY_WS) as ws:
            init(ws)
            ws.send_json({"type": "connection_terminate"})
            assert expect_close(ws) == 1000


class TestKeepAlive:
    """Server heartbeat and idle detection."""

    def test_legacy_keep_alive(self, store):
        coordinator = LifecycleCoordinator(make_settings(ws_keepalive_interval_seconds=0.1), store=store)
        with TestClient(coordinator.app) as client, connect(client, LEGACY_WS) as ws:
            init(ws)
            assert ws.receive_json() == {"type": "ka"}

    def test_silent_client_closed_4408(self, store):
        coordinator = LifecycleCoordinator(make_settings(ws_keepalive_interval_seconds=0.1), store=store)
        with TestClient(coordinator.app) as client, connect(client) as ws:
            init(ws)
            pings = 0
            with pytest.raises(WebSocketDisconnect) as excinfo:
                for _ in range(50):
                    assert ws.receive_json() == {"type": "ping"}
                    pings += 1
            assert excinfo.value.code == 4408
            assert pings >= 1


class TestDispose:
    """Shutdown of every connection."""

    def test_dispose_closes_connections_and_refuses_new(self, client, coordinator, store):
        with connect(client) as ws:
            init(ws)
            subscribe(ws, "1", LINKS_SUBSCRIPTION)
            ws.receive_json()

            disposing = client.portal.start_task_soon(coordinator.subscriptions.dispose)
            assert expect_close(ws) == 1001
        disposing.result(timeout=5)

        assert coordinator.subscriptions.get_connection_count() == 0
        assert store.events.subscriber_count == 0
        with pytest.raises(WebSocketDisconnect):
            with connect(client):
                pass


class TestTeardown:
    """Releasing a connection survives cancellation of its handler."""

    @pytest.mark.asyncio
    async def test_cancelled_teardown_still_releases_connection(self, coordinator):
        gateway = coordinator.subscriptions
        connection = Connection(
            connection_id="conn-1",
            websocket=MagicMock(),
            dialect=protocol.TRANSPORT_WS,
            state=ConnectionState.CONNECTED,
        )

        async def slow_to_stop():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                await asyncio.sleep(0.2)
                raise

        operation = SubscriptionOperation("1", LINKS_SUBSCRIPTION, None, None)
        operation.task = asyncio.create_task(slow_to_stop())
        connection.operations["1"] = operation
        gateway.connections[connection.connection_id] = connection

        teardown = asyncio.create_task(gateway._teardown(connection))
        await asyncio.sleep(0.01)
        teardown.cancel()
        with pytest.raises(asyncio.CancelledError):
            await teardown

        assert gateway.get_connection_count() == 0
        assert connection.operations == {}
        assert connection.closed.is_set()
        assert operation.cancelled
        await asyncio.gather(operation.task, return_exceptions=True)
