"""
HTTP transport: GraphQL queries and mutations on ``POST /graphql``.
"""

import asyncio
import json
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError

from linkhub.core.logging import LogContext, get_logger
from linkhub.graphql.assembler import ExecutableSchema
from linkhub.graphql.context import ContextFactory
from linkhub.graphql.results import error_payload, format_errors, format_result
from linkhub.metrics import GRAPHQL_OPERATION_SECONDS, GRAPHQL_OPERATIONS, HTTP_IN_FLIGHT

logger = get_logger(__name__)


class GraphQLRequest(BaseModel):
    """Body of a GraphQL POST request."""

    model_config = ConfigDict(populate_by_name=True)

    query: StrictStr
    variables: Optional[Dict[str, Any]] = None
    operation_name: Optional[StrictStr] = Field(default=None, alias="operationName")


class HTTPGateway:
    """
    Serves queries and mutations over HTTP.

    Counts requests in flight so shutdown can drain them: once ``drain`` is
    called every new request gets a 503 and is not executed.
    """

    def __init__(self, schema: ExecutableSchema, contexts: ContextFactory):
        self.schema = schema
        self.contexts = contexts
        self.logger = get_logger(__name__)
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._draining = False

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def is_draining(self) -> bool:
        return self._draining

    def get_router(self, path: str = "/graphql") -> APIRouter:
        router = APIRouter(tags=["graphql"])
        router.add_api_route(path, self.handle, methods=["POST"], include_in_schema=False)
        return router

    async def handle(self, request: Request) -> JSONResponse:
        if self._draining:
            return JSONResponse(
                {"errors": [error_payload("Server is shutting down", "SERVICE_UNAVAILABLE")]},
                status_code=503,
            )

        self._in_flight += 1
        self._idle.clear()
        HTTP_IN_FLIGHT.inc()
        try:
            return await self._process(request)
        finally:
            self._in_flight -= 1
            HTTP_IN_FLIGHT.dec()
            if self._in_flight == 0:
                self._idle.set()

    async def drain(self, timeout: float) -> bool:
        """
        Stop admitting requests and wait for those in flight.

        Returns:
            True if every request finished within ``timeout`` seconds
        """
        self._draining = True
        if self._in_flight == 0:
            return True
        self.logger.info("Draining HTTP requests", in_flight=self._in_flight)
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.warning("HTTP drain timed out", in_flight=self._in_flight, timeout=timeout)
            return False
        return True

    async def _process(self, request: Request) -> JSONResponse:
        body = await request.body()
        try:
            payload = json.loads(body)
        except ValueError:
            GRAPHQL_OPERATIONS.labels("http", "unknown", "rejected").inc()
            return JSONResponse(
                {"errors": [error_payload("Request body is not valid JSON", "BAD_REQUEST")]},
                status_code=400,
            )

        try:
            params = GraphQLRequest.model_validate(payload)
        except ValidationError as e:
            GRAPHQL_OPERATIONS.labels("http", "unknown", "rejected").inc()
            errors = [
                error_payload(
                    f"{'.'.join(str(part) for part in err['loc']) or 'body'}: {err['msg']}",
                    "BAD_REQUEST",
                )
                for err in e.errors()
            ]
            return JSONResponse({"errors": errors}, status_code=400)

        operation_type, errors = self.schema.validate(params.query, params.operation_name)
        if errors:
            GRAPHQL_OPERATIONS.labels("http", "unknown", "invalid").inc()
            return JSONResponse({"errors": format_errors(errors)})

        if operation_type == "subscription":
            GRAPHQL_OPERATIONS.labels("http", operation_type, "rejected").inc()
            return JSONResponse(
                {"errors": [error_payload(
                    "Subscriptions are only served over WebSocket", "BAD_REQUEST"
                )]},
                status_code=400,
            )

        context = self.contexts.for_request(request.headers.get("x-request-id"))
        with LogContext(request_id=context.request_id):
            start_time = time.perf_counter()
            result = await self.schema.execute(
                params.query,
                variables=params.variables,
                operation_name=params.operation_name,
                context=context,
            )
            duration = time.perf_counter() - start_time

            GRAPHQL_OPERATION_SECONDS.labels(operation_type).observe(duration)
            outcome = "error" if result.errors else "ok"
            GRAPHQL_OPERATIONS.labels("http", operation_type, outcome).inc()
            self.logger.debug(
                "GraphQL operation executed",
                operation=operation_type,
                operation_name=params.operation_name,
                duration_ms=round(duration * 1000, 2),
                errors=len(result.errors or []),
            )
        return JSONResponse(format_result(result))
