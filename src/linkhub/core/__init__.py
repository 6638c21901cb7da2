"""
Core infrastructure: configuration, logging and the error taxonomy.
"""

from linkhub.core.config import Settings, get_settings, settings
from linkhub.core.exceptions import (
    ExecutionTimeout,
    LinkHubError,
    ProtocolError,
    SchemaValidationError,
    StoreUnavailableError,
)
from linkhub.core.logging import LogContext, get_logger, log_performance, setup_logging

__all__ = [
    "Settings",
    "get_settings",
    "settings",
    "get_logger",
    "setup_logging",
    "LogContext",
    "log_performance",
    "LinkHubError",
    "SchemaValidationError",
    "StoreUnavailableError",
    "ProtocolError",
    "ExecutionTimeout",
]
