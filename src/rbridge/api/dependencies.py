"""Shared FastAPI dependencies."""

from fastapi import Header, HTTPException, Request

from rbridge.config import get_settings
from rbridge.services.bridge import Bridge


def get_bridge(request: Request) -> Bridge:
    """The Bridge built by the application lifespan."""
    bridge = getattr(request.app.state, "bridge", None)
    if bridge is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return bridge


async def require_admin_token(x_admin_token: str = Header(None)) -> bool:
    """Verify admin token from header.

    If ADMIN_TOKEN is not set, allows access outside production (dev mode).
    """
    settings = get_settings()

    if not settings.admin_token:
        if settings.is_production:
            raise HTTPException(status_code=503, detail="Admin API disabled: ADMIN_TOKEN not set")
        return True

    if x_admin_token != settings.admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")

    return True
