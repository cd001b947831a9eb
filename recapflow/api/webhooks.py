"""
Webhook endpoints - receive meeting lifecycle events from all platforms.
Each endpoint authenticates the sender, normalizes the payload into
CanonicalEvents and hands them to the event router.

Responses are 200 (202 for Teams) for every outcome except authentication
failure (401/403) and malformed input (400). Senders redeliver aggressively
on non-2xx, so internal failures are absorbed by the retry manager instead.
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from recapflow.database import get_db
from recapflow.errors import PermanentEventError, WebhookAuthError
from recapflow.schemas.events import HandlerResult, Platform, WebhookAck
from recapflow.utils.alerting import AlertType, send_alert
from recapflow.utils.background import spawn
from recapflow.webhooks.auth import (
    validate_client_state,
    verify_meet_jwt,
    verify_teams_bearer,
    verify_zoom_signature,
    zoom_url_validation_response,
)
from recapflow.webhooks.meet import normalize_meet_event
from recapflow.webhooks.router import EventRouter, get_event_router
from recapflow.webhooks.teams import normalize_teams_notification, split_notifications
from recapflow.webhooks.zoom import URL_VALIDATION_EVENT, normalize_zoom_event

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


def _reject(platform: str, request: Request, error: WebhookAuthError) -> HTTPException:
    client_ip = request.client.host if request.client else "unknown"
    logger.warning(
        "Webhook authentication failed: platform=%s ip=%s reason=%s",
        platform, client_ip, error.detail,
    )
    spawn(
        send_alert(
            AlertType.WEBHOOK_SIGNATURE_INVALID,
            f"Rejected {platform} webhook from {client_ip}: {error.detail}",
            severity="warning",
        ),
        name=f"auth-alert-{platform}",
    )
    return HTTPException(status_code=error.status_code, detail=error.detail)


def _parse_json(body: bytes) -> dict:
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Malformed JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="JSON body must be an object")
    return payload


@router.post("/zoom")
async def zoom_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    event_router: EventRouter = Depends(get_event_router),
):
    """Zoom webhook - meeting.ended, recording.completed, recording.transcript_completed."""
    body = await request.body()
    try:
        verify_zoom_signature(
            body,
            signature=request.headers.get("x-zm-signature", ""),
            timestamp=request.headers.get("x-zm-request-timestamp", ""),
            request_id=request.headers.get("x-zm-request-id"),
        )
    except WebhookAuthError as e:
        raise _reject(Platform.ZOOM, request, e)

    payload = _parse_json(body)

    if payload.get("event") == URL_VALIDATION_EVENT:
        plain_token = (payload.get("payload") or {}).get("plainToken")
        if not plain_token:
            raise HTTPException(status_code=400, detail="Missing plainToken")
        logger.info("Zoom URL validation challenge answered")
        return zoom_url_validation_response(plain_token)

    try:
        event = normalize_zoom_event(payload)
    except PermanentEventError as e:
        raise HTTPException(status_code=400, detail=str(e))

    ack = await event_router.receive(db, [event])
    return ack.model_dump()


@router.get("/meet")
async def meet_subscription_check(request: Request):
    """Pub/Sub endpoint verification - echoes the challenge."""
    challenge = request.query_params.get("challenge")
    if not challenge:
        raise HTTPException(status_code=400, detail="Missing challenge parameter")
    return PlainTextResponse(challenge)


@router.post("/meet")
async def meet_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    event_router: EventRouter = Depends(get_event_router),
):
    """Google Meet webhook - Workspace Events delivered by Pub/Sub push."""
    try:
        await verify_meet_jwt(request.headers.get("authorization"))
    except WebhookAuthError as e:
        raise _reject(Platform.GOOGLE_MEET, request, e)

    envelope = _parse_json(await request.body())
    try:
        event = normalize_meet_event(envelope)
    except PermanentEventError as e:
        raise HTTPException(status_code=400, detail=str(e))

    ack = await event_router.receive(db, [event])
    return ack.model_dump()


@router.get("/teams")
async def teams_subscription_check(request: Request):
    """Graph subscription validation - echoes validationToken as text/plain."""
    token = request.query_params.get("validationToken")
    if not token:
        raise HTTPException(status_code=400, detail="Missing validationToken")
    return PlainTextResponse(token)


@router.post("/teams")
async def teams_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    event_router: EventRouter = Depends(get_event_router),
):
    """Microsoft Teams webhook - Graph change notifications for transcripts and recordings."""
    token = request.query_params.get("validationToken")
    if token:
        logger.info("Teams subscription validation via query parameter")
        return PlainTextResponse(token)

    body = await request.body()
    payload = _parse_json(body)
    if payload.get("validationToken"):
        logger.info("Teams subscription validation via body")
        return PlainTextResponse(str(payload["validationToken"]))

    try:
        verify_teams_bearer(request.headers.get("authorization"))
    except WebhookAuthError as e:
        raise _reject(Platform.MICROSOFT_TEAMS, request, e)

    try:
        notifications = split_notifications(payload)
    except PermanentEventError as e:
        raise HTTPException(status_code=400, detail=str(e))

    ack = WebhookAck()
    for notification in notifications:
        if not validate_client_state(notification.get("clientState")):
            logger.warning(
                "Invalid clientState on notification for subscription %s",
                str(notification.get("subscriptionId") or "")[:8],
            )
            ack.results.append(HandlerResult(action="failed", error="Invalid client state"))
            continue
        try:
            event = normalize_teams_notification(notification)
        except PermanentEventError as e:
            ack.results.append(HandlerResult(action="failed", error=str(e)))
            continue

        partial = await event_router.receive(db, [event])
        ack.duplicate = ack.duplicate or partial.duplicate
        ack.results.extend(partial.results)

    logger.info(
        "Teams webhook processed %d notification(s)", len(notifications),
        extra={"platform": Platform.MICROSOFT_TEAMS},
    )
    return JSONResponse(status_code=202, content=ack.model_dump())
