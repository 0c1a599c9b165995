"""Cart model type definitions for database operations."""

from datetime import datetime
from decimal import Decimal
from typing import Literal, TypedDict
from uuid import UUID


# Transaction status values matching database enum
TransactionStatus = Literal["pending", "paid", "failed", "canceled"]

# Which owner column is set on a transaction
OwnerType = Literal["user", "guest"]


class CartTransaction(TypedDict):
    """cart_transactions table row representation.

    One buyer's order. Only ``pending`` rows are mutable by the cart flow;
    at most one pending row exists per owner.
    """

    id: UUID
    owner_type: OwnerType
    user_id: UUID | None
    guest_session_id: UUID | None
    status: TransactionStatus
    item_count: int
    total_amount: Decimal
    currency: str
    payment_reference_id: str | None
    payment_provider: str | None
    created_at: datetime
    updated_at: datetime | None


class CartTransactionCreate(TypedDict, total=False):
    """Data required to create a new pending transaction."""

    owner_type: OwnerType
    user_id: str | None
    guest_session_id: str | None
    status: TransactionStatus
    item_count: int
    total_amount: Decimal
    currency: str


class CartLineItem(TypedDict):
    """cart_transaction_items table row representation.

    Unique per (transaction_id, product_id, variant_id).
    """

    id: UUID
    transaction_id: UUID
    product_id: UUID
    variant_id: UUID
    price: Decimal
    quantity: int
    line_total: Decimal
    created_at: datetime


class Variant(TypedDict):
    """variants table row (read-only catalogue)."""

    id: UUID
    product_id: UUID
    name: str
    price: Decimal
