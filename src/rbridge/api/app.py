"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from rbridge.adapters import close_adapters
from rbridge.config import get_settings
from rbridge.errors import InvalidStateTransition, NotFound, TransientAdapterError, ValidationError
from rbridge.ledger.database import close_db, init_db
from rbridge.services.bridge import Bridge

logger = logging.getLogger(__name__)


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": exc.reason})

    @app.exception_handler(NotFound)
    async def not_found(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidStateTransition)
    async def invalid_state(request: Request, exc: InvalidStateTransition):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(TransientAdapterError)
    async def network_unavailable(request: Request, exc: TransientAdapterError):
        logger.warning(f"Network unavailable during {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": str(exc)})


def create_app(bridge: Optional[Bridge] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        bridge: Pre-built bridge. When omitted, the lifespan creates the
            database and starts a bridge of its own.
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.bridge is None
        if owned:
            await init_db()
            app.state.bridge = Bridge(settings=settings)
            await app.state.bridge.start()
        yield
        if owned:
            await app.state.bridge.stop()
            app.state.bridge = None
            await close_adapters()
            await close_db()

    app = FastAPI(
        title="rBridge API",
        description="Custodial multi-chain deposit and withdrawal bridge",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.bridge = bridge

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_exception_handlers(app)

    # Register routes
    from rbridge.api.routes import addresses, admin, deposits, health, networks, withdrawals

    app.include_router(health.router, tags=["Health"])
    app.include_router(addresses.router, tags=["Addresses"])
    app.include_router(deposits.router, tags=["Deposits"])
    app.include_router(withdrawals.router, tags=["Withdrawals"])
    app.include_router(networks.router, tags=["Networks"])
    app.include_router(admin.router, tags=["Admin"])

    return app
