"""Health check endpoints."""

from fastapi import APIRouter, Request

from rbridge import __version__
from rbridge.config import get_settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "rbridge"}


@router.get("/health/detailed")
async def detailed_health(request: Request):
    """Detailed health check with configuration and monitor info."""
    settings = get_settings()
    bridge = getattr(request.app.state, "bridge", None)
    return {
        "status": "healthy" if bridge is not None else "starting",
        "service": "rbridge",
        "version": __version__,
        "monitors": {
            "addresses": len(bridge.monitors.keys()) if bridge else 0,
            "deposits": bridge.monitors.tracker_count if bridge else 0,
        },
        "config": settings.get_safe_dict(),
    }
