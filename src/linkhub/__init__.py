"""
LinkHub - GraphQL gateway for the links catalogue

Serves queries and mutations over HTTP and subscriptions over WebSocket
from one executable schema backed by a relational store.
"""

__version__ = "0.1.0"

from linkhub.core.config import settings
from linkhub.core.logging import get_logger

logger = get_logger(__name__)

__all__ = ["settings", "logger", "__version__"]
