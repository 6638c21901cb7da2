"""
Strawberry schema extensions used by the gateway.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable

from graphql import GraphQLResolveInfo
from strawberry.extensions import SchemaExtension

from linkhub.core.exceptions import ExecutionTimeout


class ResolverTimeout(SchemaExtension):
    """
    Bound every asynchronous resolver to ``timeout`` seconds.

    A resolver that overruns is cancelled and its field fails with
    ``ExecutionTimeout``; sibling fields still resolve. Synchronous resolvers
    and subscription sources are left alone.
    """

    def __init__(self, *, timeout: float):
        self.timeout = timeout

    def resolve(self, _next: Callable, root: Any, info: GraphQLResolveInfo, *args: Any, **kwargs: Any) -> Any:
        result = _next(root, info, *args, **kwargs)
        if inspect.isawaitable(result):
            return self._bounded(result, info.parent_type.name, info.field_name)
        return result

    async def _bounded(self, awaitable: Awaitable, type_name: str, field_name: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ExecutionTimeout(f"{type_name}.{field_name}", self.timeout) from None
