from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from calliope_proxy.gateway.errors import ClientValidationError

logger = logging.getLogger("uvicorn.error")


class AnalyticsEvent(BaseModel):
    event: str
    workspace_id: str
    unique_id: str
    properties: dict[str, Any] = Field(default_factory=dict)


def validate_analytics_event(workspace_id: str, payload: Any) -> AnalyticsEvent:
    if not isinstance(payload, dict):
        raise ClientValidationError({"error": "Expected a JSON object request body."})
    for field_name in ("event", "uniqueId"):
        if not payload.get(field_name):
            raise ClientValidationError(
                {"error": f"Missing required parameter: {field_name}"}
            )
    if not workspace_id:
        raise ClientValidationError({"error": "Missing required parameter: workspaceId"})
    properties = payload.get("properties")
    return AnalyticsEvent(
        event=str(payload["event"]),
        workspace_id=workspace_id,
        unique_id=str(payload["uniqueId"]),
        properties=properties if isinstance(properties, dict) else {},
    )


def log_analytics_event(event: AnalyticsEvent) -> None:
    """Events are only logged; there is no downstream analytics store."""
    logger.info(
        "analytics_event_captured event=%s workspace_id=%s unique_id=%s properties=%s",
        event.event,
        event.workspace_id,
        event.unique_id,
        sorted(event.properties),
    )
