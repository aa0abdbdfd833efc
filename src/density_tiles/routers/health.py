"""Health check endpoints."""
from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health/")
async def health_check():
    """Liveness check. No side effects."""
    return {"ok": True}


@router.get("/metrics")
async def get_metrics(request: Request):
    """Request, cache and render statistics."""
    coordinator = request.app.state.coordinator

    stats = coordinator.monitor.get_stats()
    stats["cache"] = coordinator.store.stats()
    stats["renders_in_flight"] = coordinator.in_flight
    return stats
