"""Webhook API routes: Stripe ingestion and event monitoring."""

import asyncio
import logging
from uuid import UUID

from fastapi import APIRouter, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder

from src.api.deps import AdminUser, is_admin
from src.api.middleware.auth import AuthError, decode_jwt
from src.schemas.payment import (
    WebhookAck,
    WebhookEventListResponse,
    WebhookEventResponse,
    WebhookHealthResponse,
)
from src.services.payment_gateway import PaymentGateway
from src.services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/stripe",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    summary="Handle Stripe webhooks",
    description="Receives Stripe webhook events. Requires a valid Stripe-Signature header.",
)
async def stripe_webhook(request: Request) -> WebhookAck:
    """Verify, store and reconcile a Stripe webhook delivery.

    Handles payment_intent.succeeded, payment_intent.payment_failed,
    payment_intent.canceled and payment_intent.requires_action by
    updating the cart transaction that references the intent. Other
    event types are stored and acknowledged.

    Returns 400 for a bad signature, so Stripe does not retry, and 500
    when reconciliation fails, so Stripe redelivers.

    Args:
        request: FastAPI request object for reading raw body and headers.

    Returns:
        WebhookAck: 'received', or 'duplicate' for an already processed event.
    """
    # Signature covers the exact bytes received
    payload = await request.body()
    event = PaymentGateway().construct_webhook_event(payload, request.headers.get("stripe-signature"))

    logger.info("Processing Stripe webhook event %s (%s)", event.get("id"), event.get("type"))
    result = await WebhookProcessor().handle_event(event)
    return WebhookAck(**result)


@router.get(
    "/events",
    response_model=WebhookEventListResponse,
    summary="List webhook events",
    description="Stored webhook events, newest first. Requires an admin user.",
)
async def list_events(
    user: AdminUser,
    limit: int = Query(default=50, ge=1, le=500),
    event_type: str | None = None,
    processed: bool | None = None,
) -> WebhookEventListResponse:
    """List stored webhook events."""
    rows = await WebhookProcessor().list_events(limit=limit, event_type=event_type, processed=processed)
    return WebhookEventListResponse(items=[WebhookEventResponse(**row) for row in rows])


@router.get(
    "/health",
    response_model=WebhookHealthResponse,
    summary="Webhook processing health",
    description="Processed and failed counts over a trailing window. Requires an admin user.",
)
async def webhook_health(
    user: AdminUser,
    window_minutes: int | None = Query(default=None, ge=1),
) -> WebhookHealthResponse:
    """Return webhook processing aggregates."""
    return WebhookHealthResponse(**await WebhookProcessor().health(window_minutes))


@router.post(
    "/events/{stripe_event_id}/reprocess",
    response_model=WebhookEventResponse,
    summary="Reprocess webhook event",
    description="Runs reconciliation again for a stored event. Requires an admin user.",
)
async def reprocess_event(stripe_event_id: str, user: AdminUser) -> WebhookEventResponse:
    """Reprocess a stored webhook event."""
    logger.info("User %s reprocessing webhook event %s", user.user_id, stripe_event_id)
    row = await WebhookProcessor().reprocess_event(stripe_event_id)
    return WebhookEventResponse(**row)


@router.get(
    "/transactions/{transaction_id}/events",
    response_model=WebhookEventListResponse,
    summary="Events for a transaction",
    description="Webhook events for a cart transaction's payment intent, oldest first. Requires an admin user.",
)
async def transaction_events(transaction_id: UUID, user: AdminUser) -> WebhookEventListResponse:
    """List the webhook events of a transaction."""
    rows = await WebhookProcessor().events_for_transaction(transaction_id)
    return WebhookEventListResponse(items=[WebhookEventResponse(**row) for row in rows])


@router.websocket("/stream")
async def stream_events(
    websocket: WebSocket,
    token: str | None = None,
    event_type: str | None = None,
) -> None:
    """Push webhook events to the client as they are stored and processed.

    The bearer token is passed as the ``token`` query parameter since
    browsers cannot set headers on WebSocket requests. Only admin users
    may connect.
    """
    try:
        user = decode_jwt(token or "").to_user_context()
    except AuthError as e:
        logger.warning("Rejected webhook stream connection: %s", e.code.value)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    if not is_admin(user):
        logger.warning("User %s denied webhook stream connection", user.user_id)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue()
    subscription = await WebhookProcessor().subscribe_to_events(
        queue.put_nowait,
        event_type=event_type,
        processed=True,
    )

    async def forward() -> None:
        while True:
            row = await queue.get()
            await websocket.send_json(jsonable_encoder(row))

    sender = asyncio.create_task(forward())
    try:
        # Reading is how a client disconnect is noticed
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Webhook stream client disconnected")
    finally:
        sender.cancel()
        await subscription.unsubscribe()
