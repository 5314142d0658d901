"""
FastAPI application factory.

`create_app()` builds services from the environment on startup;
`create_app(services)` uses a ready-made graph (tests, custom wiring).
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from topup import __version__
from topup.config import load_settings
from topup.errors import DuplicateOrderError, TopUpError, ERROR_INVALID_REQUEST
from topup.logging import get_logger
from topup.routers import admin_router, cron_router, orders_router, webhooks_router
from topup.services import Services, build_services

logger = get_logger(__name__)


async def _handle_topup_error(request: Request, exc: TopUpError) -> JSONResponse:
    if isinstance(exc, DuplicateOrderError):
        logger.critical("Order id collision on %s: %s", request.url.path, exc.message)
    elif exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse({"error": ERROR_INVALID_REQUEST}, status_code=400)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the FastAPI app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler"""
        if getattr(app.state, "services", None) is None:
            app.state.services = await build_services(load_settings())
        current: Services = app.state.services
        if current.settings.expiry_sweep_interval_seconds > 0:
            current.sweeper.start()
        yield
        await current.aclose()

    app = FastAPI(
        title="ROBEKC GAMES Top Up",
        description="Game top-up orders, payment confirmation and notifications",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(TopUpError, _handle_topup_error)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)

    app.include_router(orders_router)
    app.include_router(webhooks_router)
    app.include_router(admin_router)
    app.include_router(cron_router)

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "ok", "service": "robekc-topup"}

    return app
