"""FastAPI server for the event pipeline.

Main entry point for the API server.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes import (
    health,
    webhooks,
    events,
    transactions,
    admin,
    auth,
)
from connectors.erp_base import ERPError
from core import __version__
from core.config import Settings
from core.observability import configure_logging, get_logger
from pipeline.errors import PipelineError
from pipeline.services import get_services

logger = get_logger(__name__)

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    settings = Settings.from_env()
    configure_logging(level=settings.log_level, json_format=settings.log_json)

    services = get_services()
    if not services.settings.webhook_secret:
        logger.warning("WEBHOOK_SECRET not set; every webhook will be refused")
    try:
        connected = await services.connector.connect()
        logger.info(f"ERP connector {services.connector.get_connector_name()} connected={connected}")
    except ERPError as e:
        logger.warning(f"ERP connector not ready: {e}")
    logger.info(f"Event pipeline API starting up (dispatch={services.settings.dispatch_mode})")

    yield

    logger.info("Event pipeline API shutting down...")
    await services.connector.disconnect()


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message, "code": exc.code},
    )


async def erp_error_handler(request: Request, exc: ERPError) -> JSONResponse:
    logger.error(f"ERP error on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=502,
        content={
            "success": False,
            "error": exc.message,
            "code": "ERP_ERROR",
            "retryable": exc.retryable,
        },
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Event Pipeline API",
        description="Webhook intake, Sage X3 synchronisation, retry and reversal for source business events",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PipelineError, pipeline_error_handler)
    app.add_exception_handler(ERPError, erp_error_handler)

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(webhooks.router, prefix=API_PREFIX, tags=["Webhooks"])
    app.include_router(events.router, prefix=API_PREFIX, tags=["Events"])
    app.include_router(transactions.router, prefix=API_PREFIX, tags=["Transactions"])
    app.include_router(admin.router, prefix=API_PREFIX, tags=["Admin"])
    app.include_router(auth.router, prefix=API_PREFIX, tags=["Authentication"])

    return app


# Default app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.server:app", host="0.0.0.0", port=8000, reload=True)
