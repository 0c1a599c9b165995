"""Database model type definitions."""

from src.models.cart import CartLineItem, CartTransaction, OwnerType, TransactionStatus, Variant
from src.models.session import GuestSession
from src.models.webhook_event import WebhookEvent

__all__ = [
    "CartTransaction",
    "CartLineItem",
    "GuestSession",
    "OwnerType",
    "TransactionStatus",
    "Variant",
    "WebhookEvent",
]
