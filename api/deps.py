"""Shared route dependencies."""

from typing import Optional

from fastapi import Header, Request

from core.models import Actor
from pipeline.services import PipelineServices, get_services


def services() -> PipelineServices:
    return get_services()


def operator_actor(
    request: Request,
    x_operator_id: Optional[str] = Header(None),
    x_operator_name: Optional[str] = Header(None),
) -> Actor:
    """Operator identity for audit entries, taken from the X-Operator-* headers."""
    actor = Actor.operator(x_operator_id or "operator", x_operator_name)
    actor.ip_address = request.client.host if request.client else None
    actor.user_agent = request.headers.get("user-agent")
    return actor
