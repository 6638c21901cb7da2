"""
Error taxonomy for the LinkHub gateway.

Every error the gateway raises on purpose derives from ``LinkHubError`` and
carries a machine-readable ``code``, which the HTTP and WebSocket gateways
copy into the ``extensions`` of the GraphQL error they report.
"""

from typing import Iterable, List, Optional


class LinkHubError(Exception):
    """Base class for gateway errors."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SchemaValidationError(LinkHubError):
    """Type definitions and resolvers do not form a consistent schema."""

    code = "SCHEMA_INVALID"

    def __init__(self, message: str, problems: Optional[Iterable[str]] = None):
        self.problems: List[str] = list(problems or [])
        if self.problems:
            message = f"{message}: " + "; ".join(self.problems)
        super().__init__(message)


class StoreUnavailableError(LinkHubError):
    """The backing store cannot be reached."""

    code = "STORE_UNAVAILABLE"


class ProtocolError(LinkHubError):
    """A WebSocket client broke the GraphQL-over-WebSocket protocol."""

    code = "PROTOCOL_ERROR"

    def __init__(self, message: str, close_code: int = 4400, operation_id: Optional[str] = None):
        super().__init__(message)
        self.close_code = close_code
        self.operation_id = operation_id


class ExecutionTimeout(LinkHubError):
    """A resolver did not finish within its time budget."""

    code = "EXECUTION_TIMEOUT"

    def __init__(self, field_name: str, timeout: float):
        super().__init__(f"Resolver for '{field_name}' exceeded {timeout:g}s")
        self.field_name = field_name
        self.timeout = timeout
