"""Webhook intake endpoint.

- POST /api/v1/webhooks/events - Receive a signed source event
"""

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse

from core.observability import get_logger
from pipeline.dispatch import EventDispatcher
from pipeline.services import get_services

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks")


async def _dispatch(dispatcher: EventDispatcher, event_id: str) -> None:
    # The event stays in received status on failure; reconciliation picks it up
    try:
        await dispatcher.dispatch(event_id)
    except Exception:
        logger.exception(f"Dispatch of {event_id} failed")


@router.post("/events")
async def receive_event(request: Request, background_tasks: BackgroundTasks):
    """Receive a webhook delivery.

    The body is read raw so the signature is checked over the exact bytes
    sent. Accepted events are processed after the response is returned.
    """
    services = get_services()
    body = await request.body()
    result = services.intake.receive(
        body,
        request.headers,
        source_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    if result.should_dispatch:
        background_tasks.add_task(_dispatch, services.dispatcher, result.event_id)
    return JSONResponse(status_code=result.status_code, content=result.to_body())
