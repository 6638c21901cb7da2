"""
GraphQL layer: schema assembly, resolvers and both transports.
"""

from .assembler import ExecutableSchema, assemble
from .context import ContextFactory, GatewayContext
from .http import HTTPGateway
from .resolvers import RESOLVERS
from .typedefs import TYPE_DEFS
from .websocket import SubscriptionGateway

__all__ = [
    "ExecutableSchema",
    "assemble",
    "ContextFactory",
    "GatewayContext",
    "HTTPGateway",
    "SubscriptionGateway",
    "RESOLVERS",
    "TYPE_DEFS",
]
