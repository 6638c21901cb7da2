"""
GraphQL over WebSocket message types, close codes and frame parsing.

Two subprotocols are spoken:

- ``graphql-transport-ws``: https://github.com/enisdenjo/graphql-ws/blob/master/PROTOCOL.md
- ``graphql-ws`` (legacy Apollo):
  https://github.com/apollographql/subscriptions-transport-ws/blob/master/PROTOCOL.md
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from linkhub.core.exceptions import ProtocolError

## graphql-transport-ws
GRAPHQL_TRANSPORT_WS = "graphql-transport-ws"

GQL_SUBSCRIBE = "subscribe"  # Client -> Server
GQL_NEXT = "next"  # Server -> Client
GQL_PING = "ping"  # Bidirectional
GQL_PONG = "pong"  # Bidirectional

## graphql-ws (Apollo)
GRAPHQL_WS = "graphql-ws"

GQL_START = "start"  # Client -> Server
GQL_DATA = "data"  # Server -> Client
GQL_STOP = "stop"  # Client -> Server
GQL_CONNECTION_ERROR = "connection_error"  # Server -> Client
GQL_CONNECTION_TERMINATE = "connection_terminate"  # Client -> Server
GQL_CONNECTION_KEEP_ALIVE = "ka"  # Server -> Client

## Common to both
GQL_CONNECTION_INIT = "connection_init"  # Client -> Server
GQL_CONNECTION_ACK = "connection_ack"  # Server -> Client
GQL_ERROR = "error"  # Server -> Client
GQL_COMPLETE = "complete"  # Bidirectional in graphql-transport-ws

## Close codes
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_INTERNAL_ERROR = 1011
CLOSE_BAD_REQUEST = 4400
CLOSE_UNAUTHORIZED = 4401
CLOSE_SUBPROTOCOL_NOT_ACCEPTABLE = 4406
CLOSE_INIT_TIMEOUT = 4408
CLOSE_SUBSCRIBER_EXISTS = 4409
CLOSE_TOO_MANY_INIT = 4429


@dataclass(frozen=True)
class Dialect:
    """Message vocabulary of one subprotocol."""

    name: str
    subscribe: str
    next: str
    stop: str
    keepalive: str
    protocol_error: str
    client_types: FrozenSet[str]
    replaces_duplicate_ids: bool

    @property
    def is_legacy(self) -> bool:
        return self.name == GRAPHQL_WS

    def error_payload(self, errors: List[Dict[str, Any]]) -> Any:
        # graphql-ws sends a single error object
        if self.is_legacy:
            return errors[0] if errors else {"message": "Unknown error"}
        return errors


TRANSPORT_WS = Dialect(
    name=GRAPHQL_TRANSPORT_WS,
    subscribe=GQL_SUBSCRIBE,
    next=GQL_NEXT,
    stop=GQL_COMPLETE,
    keepalive=GQL_PING,
    protocol_error=GQL_ERROR,
    client_types=frozenset({GQL_CONNECTION_INIT, GQL_PING, GQL_PONG, GQL_SUBSCRIBE, GQL_COMPLETE}),
    replaces_duplicate_ids=False,
)

LEGACY_WS = Dialect(
    name=GRAPHQL_WS,
    subscribe=GQL_START,
    next=GQL_DATA,
    stop=GQL_STOP,
    keepalive=GQL_CONNECTION_KEEP_ALIVE,
    protocol_error=GQL_CONNECTION_ERROR,
    client_types=frozenset({GQL_CONNECTION_INIT, GQL_START, GQL_STOP, GQL_CONNECTION_TERMINATE}),
    replaces_duplicate_ids=True,
)

# In order of preference
DIALECTS = (TRANSPORT_WS, LEGACY_WS)


def negotiate(requested: Sequence[str]) -> Optional[Dialect]:
    """Pick the preferred dialect among the subprotocols a client offered."""
    for dialect in DIALECTS:
        if dialect.name in requested:
            return dialect
    return None


@dataclass(frozen=True)
class OperationRequest:
    query: str
    variables: Optional[Dict[str, Any]] = None
    operation_name: Optional[str] = None


@dataclass(frozen=True)
class ClientMessage:
    """A decoded and checked client frame."""

    type: str
    id: Optional[str] = None
    payload: Any = None
    request: Optional[OperationRequest] = None


def parse_message(raw: str, dialect: Dialect) -> ClientMessage:
    """
    Decode a text frame and check it against the dialect.

    Raises:
        ProtocolError: The frame is not a well-formed client message
    """
    try:
        message = json.loads(raw)
    except ValueError:
        raise ProtocolError("Message is not valid JSON") from None

    if not isinstance(message, dict):
        raise ProtocolError("Message must be a JSON object")

    message_type = message.get("type")
    if not isinstance(message_type, str):
        raise ProtocolError("Message is missing its 'type'")
    if message_type not in dialect.client_types:
        raise ProtocolError(f"Unexpected message type '{message_type}'")

    payload = message.get("payload")

    if message_type == GQL_CONNECTION_INIT:
        if payload is not None and not isinstance(payload, dict):
            raise ProtocolError("connection_init payload must be an object")
        return ClientMessage(type=message_type, payload=payload)

    if message_type in (dialect.subscribe, dialect.stop):
        operation_id = message.get("id")
        if not isinstance(operation_id, str) or not operation_id:
            raise ProtocolError(f"'{message_type}' requires a non-empty string 'id'")
        if message_type == dialect.stop:
            return ClientMessage(type=message_type, id=operation_id)
        return ClientMessage(
            type=message_type,
            id=operation_id,
            payload=payload,
            request=_operation_request(payload, operation_id),
        )

    return ClientMessage(type=message_type, payload=payload)


def _operation_request(payload: Any, operation_id: str) -> OperationRequest:
    if not isinstance(payload, dict):
        raise ProtocolError("Operation payload must be an object", operation_id=operation_id)

    query = payload.get("query")
    variables = payload.get("variables")
    operation_name = payload.get("operationName")
    if not isinstance(query, str):
        raise ProtocolError("Operation payload requires a string 'query'", operation_id=operation_id)
    if variables is not None and not isinstance(variables, dict):
        raise ProtocolError("'variables' must be an object", operation_id=operation_id)
    if operation_name is not None and not isinstance(operation_name, str):
        raise ProtocolError("'operationName' must be a string", operation_id=operation_id)
    return OperationRequest(query=query, variables=variables, operation_name=operation_name)


def encode(message_type: str, operation_id: Optional[str] = None, payload: Any = None) -> str:
    message: Dict[str, Any] = {"type": message_type}
    if operation_id is not None:
        message["id"] = operation_id
    if payload is not None:
        message["payload"] = payload
    return json.dumps(message)
