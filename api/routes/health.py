"""Health check endpoints."""

from typing import Dict

from fastapi import APIRouter, Response
from pydantic import BaseModel

from core import __version__
from core.models import utcnow
from core.storage import EventQuery
from pipeline.services import get_services


router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    services: Dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    services = get_services()
    try:
        services.store.list_events(EventQuery(limit=1))
        storage = "up"
    except Exception:
        storage = "down"

    return HealthResponse(
        status="healthy" if storage == "up" else "degraded",
        timestamp=utcnow().isoformat(),
        version=__version__,
        services={
            "api": "up",
            "storage": storage,
            "erp": services.connector.connection_status.value,
            "dispatch": services.settings.dispatch_mode,
        }
    )


@router.get("/ready")
async def readiness_check() -> Dict[str, str]:
    """Readiness probe for Kubernetes."""
    return {"status": "ready"}


@router.get("/live")
async def liveness_check(response: Response) -> Dict[str, str]:
    """Liveness probe for Kubernetes."""
    return {"status": "alive"}
