"""Webhook event model type definitions for database operations."""

from datetime import datetime
from typing import Any, TypedDict


class WebhookEvent(TypedDict):
    """webhook_events table row representation.

    One row per distinct Stripe event id. Rows are updated in place when
    processed and never deleted.
    """

    id: int
    stripe_event_id: str
    event_type: str
    payment_intent_id: str | None
    payload: dict[str, Any]
    provider_created_at: datetime | None
    processed: bool
    processing_error: str | None
    created_at: datetime
    processed_at: datetime | None


class WebhookEventCreate(TypedDict, total=False):
    """Data inserted when an event is first received."""

    stripe_event_id: str
    event_type: str
    payment_intent_id: str | None
    payload: dict[str, Any]
    provider_created_at: str | None
    processed: bool
