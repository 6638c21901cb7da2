"""
LinkHub Application Entry Point.

Builds the FastAPI application serving both GraphQL transports on one
listener:

- POST /graphql: queries and mutations
- GET /graphql (WebSocket): subscriptions
- GET /, GET /health: service info and health
- GET /metrics: Prometheus exposition, when enabled

The application belongs to a ``LifecycleCoordinator``; its lifespan opens
and closes the coordinator's resources. Serve it with
``uvicorn --factory linkhub.app:create_app`` or ``uvicorn linkhub.app:app``;
the latter is built on first access.
"""

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from linkhub.api.routes import health_router
from linkhub.core.config import get_settings
from linkhub.core.logging import get_logger

if TYPE_CHECKING:
    from linkhub.lifecycle import LifecycleCoordinator

# Initialize logger for this module
logger = get_logger(__name__)


def create_app(coordinator: Optional["LifecycleCoordinator"] = None) -> FastAPI:
    """
    Create and configure the FastAPI application instance.

    Args:
        coordinator: Owner of the schema, store and gateways. When omitted a
            coordinator is built from the environment settings and its app
            is returned.

    Returns:
        FastAPI: Configured application ready to run
    """
    if coordinator is None:
        from linkhub.lifecycle import LifecycleCoordinator
        return LifecycleCoordinator(get_settings()).app

    settings = coordinator.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # ========== STARTUP OPERATIONS ==========
        logger.info("Starting LinkHub gateway", environment=settings.environment)
        await coordinator.open()
        logger.info("LinkHub gateway started")

        yield

        # ========== SHUTDOWN OPERATIONS ==========
        logger.info("Stopping LinkHub gateway")
        try:
            await coordinator.close()
        except Exception as e:
            logger.error(f"Shutdown error: {e}")
        logger.info("LinkHub gateway stopped")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="GraphQL gateway for the links catalogue",
        lifespan=lifespan,
    )
    app.state.coordinator = coordinator

    # Credentials are only allowed together with an explicit origin list
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(coordinator.http.get_router(settings.graphql_path))
    app.include_router(coordinator.subscriptions.get_router(settings.graphql_path))

    if settings.enable_metrics:
        app.mount("/metrics", make_asgi_app())

    return app


_default_app: Optional[FastAPI] = None


def __getattr__(name: str) -> FastAPI:
    # `uvicorn linkhub.app:app` builds the application on first access only
    global _default_app
    if name != "app":
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    if _default_app is None:
        _default_app = create_app()
    return _default_app
