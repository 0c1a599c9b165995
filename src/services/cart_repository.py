"""Cart read path: pending transaction lookup and display-ready snapshots."""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from src.api.middleware.error_handler import CartReadFailedError, CartWriteFailedError, NoIdentityError
from src.core.store import DataStore, StoreError
from src.core.supabase import get_store
from src.models.cart import CartLineItem, CartTransaction
from src.schemas.cart import (
    UNKNOWN_PRODUCT,
    UNKNOWN_VARIANT,
    CartItemSchema,
    CartOwner,
    CartSnapshot,
    GuestOwner,
    UserOwner,
)

logger = logging.getLogger(__name__)

TRANSACTIONS_TABLE = "cart_transactions"
ITEMS_TABLE = "cart_transaction_items"
PRODUCTS_TABLE = "products"
VARIANTS_TABLE = "variants"


def resolve_owner(user_id: UUID | str | None = None, guest_session_id: UUID | str | None = None) -> CartOwner:
    """Build the cart owner from whichever identity is available.

    A registered user wins when both ids are present.

    Raises:
        NoIdentityError: If neither id is provided.
    """
    if user_id:
        return UserOwner(user_id=user_id)
    if guest_session_id:
        return GuestOwner(guest_session_id=guest_session_id)
    raise NoIdentityError()


def to_decimal(value: Any) -> Decimal:
    """Convert a numeric column value (number or string) to Decimal."""
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


class CartRepository:
    """Reads carts and keeps transaction aggregates in line with their items."""

    def __init__(self, store: DataStore | None = None) -> None:
        """Initialize the repository.

        Args:
            store: Data store to use; defaults to the Supabase-backed store.
        """
        self.store = store if store is not None else get_store()

    async def fetch_cart(self, owner: CartOwner | None) -> CartSnapshot:
        """Return the owner's pending cart as a display-ready snapshot.

        The newest pending transaction wins if more than one exists; older
        ones are stale and never merged in. Item count and total are
        computed from the line items, not read from the transaction row.

        Args:
            owner: The user or guest session whose cart to load.

        Returns:
            CartSnapshot: The cart, or an empty snapshot when there is none.

        Raises:
            NoIdentityError: If no owner is given.
            CartReadFailedError: If the store cannot be read.
        """
        if owner is None:
            raise NoIdentityError()

        transaction = await self.get_pending_transaction(owner)
        if not transaction:
            return CartSnapshot.empty()

        rows = await self.list_items(transaction["id"])
        items = await self._enrich(rows)
        return CartSnapshot.from_items(transaction["id"], items)

    async def get_pending_transaction(self, owner: CartOwner) -> CartTransaction | None:
        """Get the owner's newest pending transaction row, if any."""
        try:
            rows = self.store.select(
                TRANSACTIONS_TABLE,
                {**owner.filters(), "status": "pending"},
                order_by="created_at",
                desc=True,
                limit=1,
            )
        except StoreError as e:
            logger.error("Failed to load pending transaction for %s owner: %s", owner.kind, e)
            raise CartReadFailedError() from e

        return rows[0] if rows else None

    async def get_transaction(self, transaction_id: UUID | str) -> CartTransaction | None:
        """Get a transaction row by ID."""
        try:
            rows = self.store.select(TRANSACTIONS_TABLE, {"id": str(transaction_id)}, limit=1)
        except StoreError as e:
            logger.error("Failed to load transaction %s: %s", transaction_id, e)
            raise CartReadFailedError() from e

        return rows[0] if rows else None

    async def get_transaction_by_payment_intent(self, payment_intent_id: str) -> CartTransaction | None:
        """Get the transaction referencing a Stripe payment intent."""
        try:
            rows = self.store.select(
                TRANSACTIONS_TABLE,
                {"payment_reference_id": payment_intent_id},
                order_by="created_at",
                desc=True,
                limit=1,
            )
        except StoreError as e:
            logger.error("Failed to load transaction for payment intent %s: %s", payment_intent_id, e)
            raise CartReadFailedError() from e

        return rows[0] if rows else None

    async def list_items(self, transaction_id: UUID | str) -> list[CartLineItem]:
        """Get the raw line item rows of a transaction."""
        try:
            return self.store.select(
                ITEMS_TABLE,
                {"transaction_id": str(transaction_id)},
                order_by="created_at",
            )
        except StoreError as e:
            logger.error("Failed to load items for transaction %s: %s", transaction_id, e)
            raise CartReadFailedError() from e

    async def sync_aggregates(self, transaction_id: UUID | str) -> tuple[int, Decimal]:
        """Recompute item count and total from stored items and persist them.

        Only a pending transaction's aggregates are written; a paid or
        canceled transaction keeps the totals it was settled with.

        Returns:
            tuple: (item_count, total_amount) as written.

        Raises:
            CartWriteFailedError: With step ``update_totals`` on store failure.
        """
        try:
            rows = self.store.select(ITEMS_TABLE, {"transaction_id": str(transaction_id)})
            item_count = sum(int(row.get("quantity") or 0) for row in rows)
            total_amount = sum(
                (to_decimal(row.get("price")) * int(row.get("quantity") or 0) for row in rows),
                Decimal("0"),
            )
            self.store.update(
                TRANSACTIONS_TABLE,
                {
                    "item_count": item_count,
                    "total_amount": total_amount,
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                },
                {"id": str(transaction_id), "status": "pending"},
            )
        except StoreError as e:
            logger.error("Failed to update totals for transaction %s: %s", transaction_id, e)
            raise CartWriteFailedError(step="update_totals") from e

        return item_count, total_amount

    async def _names(self, table: str, ids: set[str]) -> dict[str, str]:
        if not ids:
            return {}
        try:
            rows = self.store.select(table, {"id": sorted(ids)}, columns="id, name")
        except StoreError as e:
            logger.error("Failed to resolve names from %s: %s", table, e)
            raise CartReadFailedError() from e

        return {str(row["id"]): row.get("name") for row in rows}

    async def _enrich(self, rows: list[dict[str, Any]]) -> list[CartItemSchema]:
        product_names = await self._names(PRODUCTS_TABLE, {str(r["product_id"]) for r in rows if r.get("product_id")})
        variant_names = await self._names(VARIANTS_TABLE, {str(r["variant_id"]) for r in rows if r.get("variant_id")})

        items = []
        for row in rows:
            product_id = str(row["product_id"])
            variant_id = str(row["variant_id"])
            items.append(
                CartItemSchema(
                    product_id=product_id,
                    variant_id=variant_id,
                    price=to_decimal(row.get("price")),
                    quantity=int(row.get("quantity") or 1),
                    product_name=product_names.get(product_id) or UNKNOWN_PRODUCT,
                    variant_name=variant_names.get(variant_id) or UNKNOWN_VARIANT,
                    # Dangling references are tolerated, not fatal
                    is_available=product_id in product_names and variant_id in variant_names,
                )
            )
        return items
