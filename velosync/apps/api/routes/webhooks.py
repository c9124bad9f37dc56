from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from velosync.apps.api.deps import get_pipeline_dep
from velosync.core.errors import WebhookRejected
from velosync.services.ingest.intake import WebhookEvent
from velosync.services.pipeline import Pipeline


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class WebhookAck(BaseModel):
    status: str
    action: str
    event_type: str


@router.get("/activity")
async def verify_subscription(
    mode: str | None = Query(default=None, alias="hub.mode"),
    verify_token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
    pipeline: Pipeline = Depends(get_pipeline_dep),
) -> dict:
    # Echo the challenge only when the handshake carries our verify token.
    try:
        echoed = pipeline.intake.verify_subscription(
            mode=mode, verify_token=verify_token, challenge=challenge
        )
    except WebhookRejected as exc:
        logger.warning("webhook_handshake_rejected reason=%s", exc)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "WEBHOOK_REJECTED", "message": str(exc)},
        ) from exc
    return {"hub.challenge": echoed}


@router.post("/activity", response_model=WebhookAck)
async def receive_event(
    event: WebhookEvent,
    pipeline: Pipeline = Depends(get_pipeline_dep),
) -> WebhookAck:
    # Acknowledge fast: intake only validates, invalidates and enqueues.
    try:
        outcome = await pipeline.intake.handle(event)
    except WebhookRejected as exc:
        logger.warning(
            "webhook_event_rejected owner_id=%s object_id=%s reason=%s",
            event.owner_id,
            event.object_id,
            exc,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "WEBHOOK_REJECTED", "message": str(exc)},
        ) from exc
    return WebhookAck(status="ok", action=outcome.action, event_type=outcome.event_type)
