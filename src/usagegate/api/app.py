"""FastAPI application for the usage gate admin API."""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from usagegate import __version__
from usagegate.api.routes import router as api_router
from usagegate.config import Settings, get_settings
from usagegate.errors import InvalidIdentity, PeriodMisconfiguration, StoreUnavailable
from usagegate.services import build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan events."""
    # Startup
    logger.info("Starting usage gate admin API...")
    services = build_services(app.state.settings)
    await services.start()
    app.state.services = services
    yield
    # Shutdown
    logger.info("Shutting down usage gate admin API...")
    await services.close()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = FastAPI(
        title="Usage Gate",
        description="Analysis cache, quota and rate-limit administration",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Request timing middleware
    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        process_time = (time.perf_counter() - start_time) * 1000
        response.headers["X-Process-Time-Ms"] = f"{process_time:.2f}"
        return response

    @app.exception_handler(InvalidIdentity)
    @app.exception_handler(PeriodMisconfiguration)
    async def bad_request_handler(request: Request, exc: Exception):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    app.include_router(api_router, prefix="/v1")

    # Health check
    @app.get("/health")
    async def health_check(request: Request):
        store_health = await request.app.state.services.store.health_check()
        return {
            "status": "healthy" if store_health.get("connected") else "degraded",
            "version": __version__,
            "store": store_health,
        }

    return app


# Create app instance
app = create_app()
