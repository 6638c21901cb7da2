"""
Health check API endpoints.

These endpoints serve load balancer and orchestrator probes:
- GET /: Root endpoint with basic service info
- GET /health: Store reachability plus gateway statistics, 503 when the
  store cannot be reached
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

# Create router for health-related endpoints
router = APIRouter(tags=["health"])


@router.get("/")
async def root(request: Request):
    """
    Root endpoint providing basic service information.

    Returns:
        dict: Service name, version and a constant "operational" status
    """
    settings = request.app.state.coordinator.settings
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "status": "operational",
    }


@router.get("/health")
async def health_check(request: Request):
    """
    Health check of the store and both transports.

    The store is probed on every call. Transport statistics are read from
    the gateways without side effects.

    Returns:
        JSONResponse: Overall status with per-component details; status code
        503 when the store is unhealthy or the gateway is shutting down
    """
    coordinator = request.app.state.coordinator
    store_health = await coordinator.store.health_check()
    draining = coordinator.http.is_draining

    if draining:
        status = "shutting_down"
    elif store_health.healthy:
        status = "healthy"
    else:
        status = "unhealthy"

    body = {
        "status": status,
        "components": {
            "api": {"status": "healthy"},
            "store": {
                "status": "healthy" if store_health.healthy else "unhealthy",
                "backend": type(coordinator.store).__name__,
                "latency_ms": store_health.latency_ms,
                "message": store_health.message,
            },
            "http": {
                "in_flight": coordinator.http.in_flight,
                "draining": draining,
            },
            "subscriptions": coordinator.subscriptions.get_stats(),
        },
    }
    return JSONResponse(body, status_code=200 if status == "healthy" else 503)
