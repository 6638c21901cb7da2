"""
Serialisation of execution results for both transports.
"""

from typing import Any, Dict, Iterable, List

from graphql import GraphQLError

from linkhub.core.exceptions import LinkHubError


def format_error(error: GraphQLError) -> Dict[str, Any]:
    """Format one error, adding ``extensions.code`` for gateway errors."""
    formatted = dict(error.formatted)
    original = error.original_error
    if isinstance(original, LinkHubError):
        extensions = dict(formatted.get("extensions") or {})
        extensions.setdefault("code", original.code)
        formatted["extensions"] = extensions
    return formatted


def format_errors(errors: Iterable[GraphQLError]) -> List[Dict[str, Any]]:
    return [format_error(error) for error in errors]


def format_result(result: Any) -> Dict[str, Any]:
    """Turn an ``ExecutionResult`` into a response payload; ``errors`` only when present."""
    payload: Dict[str, Any] = {"data": result.data}
    if result.errors:
        payload["errors"] = format_errors(result.errors)
    return payload


def error_payload(message: str, code: str) -> Dict[str, Any]:
    """A request-level error that did not come from graphql-core."""
    return {"message": message, "extensions": {"code": code}}
