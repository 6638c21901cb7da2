"""
Prometheus metrics for the gateway transports.
"""

from prometheus_client import Counter, Gauge, Histogram

GRAPHQL_OPERATIONS = Counter(
    "linkhub_graphql_operations_total",
    "GraphQL operations handled",
    ["transport", "operation", "outcome"],
)

GRAPHQL_OPERATION_SECONDS = Histogram(
    "linkhub_graphql_operation_seconds",
    "Time spent executing HTTP GraphQL operations",
    ["operation"],
)

HTTP_IN_FLIGHT = Gauge(
    "linkhub_http_requests_in_flight",
    "GraphQL HTTP requests currently executing",
)

WS_CONNECTIONS = Gauge(
    "linkhub_ws_connections",
    "Open GraphQL WebSocket connections",
)

WS_SUBSCRIPTIONS = Gauge(
    "linkhub_ws_subscriptions",
    "Active subscription operations across all connections",
)
