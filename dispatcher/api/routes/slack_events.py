"""Slack Events API endpoint."""

import json

import structlog
from fastapi import APIRouter, HTTPException, Request
from slack_sdk.signature import SignatureVerifier

from dispatcher.core.config import get_settings

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/events")
async def slack_events(request: Request):
    """Acknowledge an Events API delivery and hand the event to the router.

    Slack expects an answer within 3 seconds, so handling happens in a
    background task owned by the EventRouter.
    """
    body = await request.body()

    settings = get_settings()
    verifier = SignatureVerifier(signing_secret=settings.slack_signing_secret)
    if not verifier.is_valid_request(body, dict(request.headers)):
        logger.warning("slack_signature_invalid")
        raise HTTPException(status_code=401, detail="Invalid Slack signature")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Malformed JSON body")

    if payload.get("type") == "url_verification":
        return {"challenge": payload.get("challenge")}

    if payload.get("type") != "event_callback":
        logger.debug("slack_payload_ignored", payload_type=payload.get("type"))
        return {"ok": True}

    # Deliveries are acknowledged immediately, so a retry is always a duplicate
    retry_num = request.headers.get("x-slack-retry-num")
    if retry_num:
        logger.info("slack_retry_ignored", retry_num=retry_num, reason=request.headers.get("x-slack-retry-reason"))
        return {"ok": True}

    router_ = request.app.state.event_router
    if getattr(request.app.state, "shutting_down", False) or not router_.dispatch(payload.get("event", {})):
        raise HTTPException(status_code=503, detail="Dispatcher is shutting down")

    return {"ok": True}
