"""
Shared fixtures: an in-memory store seeded with two links and a gateway
built around it.
"""

import time
from typing import Callable, List

import pytest
from fastapi.testclient import TestClient

from linkhub.core.config import Settings
from linkhub.lifecycle import LifecycleCoordinator
from linkhub.store import InMemoryLinkStore, Record

SEED_LINKS: List[Record] = [
    {
        "id": "link-1",
        "title": "GraphQL over WebSocket",
        "description": "The graphql-transport-ws protocol",
        "url": "https://github.com/enisdenjo/graphql-ws",
        "category": "protocols",
        "imageUrl": None,
        "users": ["ada"],
        "createdAt": "2024-01-01T00:00:00+00:00",
        "updatedAt": "2024-01-01T00:00:00+00:00",
    },
    {
        "id": "link-2",
        "title": "Strawberry",
        "description": None,
        "url": "https://strawberry.rocks",
        "category": "libraries",
        "imageUrl": "https://strawberry.rocks/logo.png",
        "users": None,
        "createdAt": "2024-01-02T00:00:00+00:00",
        "updatedAt": "2024-01-02T00:00:00+00:00",
    },
]


def make_settings(**overrides) -> Settings:
    values = dict(
        environment="testing",
        store_backend="memory",
        resolver_timeout_seconds=2.0,
        shutdown_drain_timeout_seconds=2.0,
        ws_connection_init_timeout_seconds=0.5,
        ws_keepalive_interval_seconds=0,
        ws_protocol_error_tolerance=1,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` from the test thread while the app loop runs."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.01)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> InMemoryLinkStore:
    return InMemoryLinkStore(records=SEED_LINKS)


@pytest.fixture
def coordinator(settings, store) -> LifecycleCoordinator:
    return LifecycleCoordinator(settings, store=store)


@pytest.fixture
def client(coordinator):
    with TestClient(coordinator.app) as client:
        yield client


def graphql(client: TestClient, query: str, variables=None, **extra):
    body = {"query": query}
    if variables is not None:
        body["variables"] = variables
    body.update(extra)
    return client.post("/graphql", json=body)
