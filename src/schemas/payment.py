"""Payment and webhook Pydantic schemas for API request/response models."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class PaymentStatus(str, Enum):
    """Coarse payment status derived from webhook events."""

    PENDING = "pending"
    REQUIRES_ACTION = "requires_action"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class PaymentIntentCreate(BaseModel):
    """Schema for POST /checkout/payment-intent."""

    model_config = ConfigDict(from_attributes=True)

    customer_email: str | None = Field(default=None, description="Email used to find or create the Stripe customer")
    customer_name: str | None = Field(default=None, description="Customer display name")


class PaymentIntentResponse(BaseModel):
    """Schema for payment intent creation responses."""

    model_config = ConfigDict(from_attributes=True)

    transaction_id: UUID = Field(description="Cart transaction being paid")
    payment_intent_id: str = Field(description="Stripe PaymentIntent ID")
    client_secret: str | None = Field(default=None, description="Client secret for confirming the payment")
    amount: int = Field(description="Amount in minor currency units")
    currency: str = Field(description="Currency code")
    customer_id: str | None = Field(default=None, description="Stripe customer ID")


class SubscriptionCreate(BaseModel):
    """Schema for POST /checkout/subscription."""

    model_config = ConfigDict(from_attributes=True)

    price_id: str = Field(description="Stripe Price ID of the community membership")
    community_id: UUID = Field(description="Community being joined")
    customer_name: str | None = Field(default=None, description="Customer display name")
    trial_days: int | None = Field(default=None, ge=1, description="Optional trial period in days")


class SubscriptionResponse(BaseModel):
    """Schema for subscription creation responses.

    The subscription starts incomplete; the client must confirm the first
    invoice's payment with ``client_secret``.
    """

    model_config = ConfigDict(from_attributes=True)

    subscription_id: str = Field(description="Stripe Subscription ID")
    status: str = Field(description="Stripe subscription status, usually 'incomplete'")
    customer_id: str = Field(description="Stripe customer ID")
    client_secret: str | None = Field(default=None, description="Client secret of the first invoice payment")


class PaymentStatusResponse(BaseModel):
    """Derived payment status for a payment intent."""

    model_config = ConfigDict(from_attributes=True)

    payment_intent_id: str = Field(description="Stripe PaymentIntent ID")
    status: PaymentStatus = Field(description="Derived payment status")


class WebhookAck(BaseModel):
    """Acknowledgment returned to Stripe."""

    status: str = Field(description="'received' for new events, 'duplicate' for already processed ones")
    event_id: str | None = Field(default=None, description="Stripe event ID")


class WebhookEventResponse(BaseModel):
    """Schema for a stored webhook event."""

    model_config = ConfigDict(from_attributes=True)

    id: int = Field(description="Row ID")
    stripe_event_id: str = Field(description="Stripe event ID")
    event_type: str = Field(description="Stripe event type")
    payment_intent_id: str | None = Field(default=None, description="Payment intent referenced by the payload")
    payload: dict[str, Any] = Field(description="Original event body")
    processed: bool = Field(description="Whether reconciliation completed")
    processing_error: str | None = Field(default=None, description="Last processing failure")
    created_at: datetime = Field(description="When the event was received")
    processed_at: datetime | None = Field(default=None, description="When the event was processed")


class WebhookEventListResponse(BaseModel):
    """Schema for webhook event list responses."""

    model_config = ConfigDict(from_attributes=True)

    items: list[WebhookEventResponse] = Field(description="Stored webhook events, newest first")


class WebhookHealthResponse(BaseModel):
    """Webhook processing aggregates over a trailing window."""

    model_config = ConfigDict(from_attributes=True)

    window_minutes: int = Field(description="Trailing window size")
    total: int = Field(description="Events received in the window")
    processed: int = Field(description="Events marked processed")
    failed: int = Field(description="Events with a processing error")
    pending: int = Field(description="Events not yet processed")
    success_rate: float = Field(description="(processed - failed) / total, 1 when empty")
    failure_rate: float = Field(description="failed / total, 0 when empty")
