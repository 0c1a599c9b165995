"""Cart write path: add, remove and claim.

Every write ends by recomputing the transaction's item count and total
from its stored line items, so the persisted aggregates never drift
from the items regardless of which tab or request wrote last.
"""

import logging
from decimal import Decimal
from typing import Any
from uuid import UUID

from src.api.middleware.error_handler import (
    CartReadFailedError,
    CartWriteFailedError,
    NoIdentityError,
    TransactionCreateFailedError,
    VariantNotFoundError,
)
from src.core.config import get_settings
from src.core.store import DataStore, DuplicateKeyError, StoreError
from src.core.supabase import get_store
from src.models.cart import CartLineItem, CartTransactionCreate, Variant
from src.schemas.cart import (
    UNKNOWN_PRODUCT,
    UNKNOWN_VARIANT,
    CartItemSchema,
    CartOwner,
    CartSnapshot,
    GuestOwner,
    ProductRef,
    UserOwner,
)
from src.services.cart_repository import (
    ITEMS_TABLE,
    TRANSACTIONS_TABLE,
    VARIANTS_TABLE,
    CartRepository,
    to_decimal,
)

logger = logging.getLogger(__name__)


class CartMutator:
    """Applies cart changes for one owner at a time."""

    def __init__(self, store: DataStore | None = None, repository: CartRepository | None = None) -> None:
        """Initialize the mutator.

        Args:
            store: Data store to use; defaults to the Supabase-backed store.
            repository: Read path sharing the same store.
        """
        self.store = store if store is not None else get_store()
        self.repository = repository or CartRepository(self.store)
        self.settings = get_settings()

    async def add_item(
        self,
        snapshot: CartSnapshot | None,
        product: ProductRef,
        variant_id: UUID | str,
        owner: CartOwner | None,
    ) -> CartSnapshot:
        """Add one unit of a product variant to the owner's cart.

        The unit price is captured from the variant the first time the
        line is created; later adds only bump the quantity. A missing
        pending transaction is created, reusing any pending transaction
        the owner already has.

        Args:
            snapshot: The caller's current view of the cart, if any.
            product: The product being added.
            variant_id: The variant being added.
            owner: The user or guest session the cart belongs to.

        Returns:
            CartSnapshot: The cart after the add, aggregates derived from items.

        Raises:
            NoIdentityError: If no owner is given.
            VariantNotFoundError: If the variant does not exist.
            TransactionCreateFailedError: If a pending transaction cannot be created.
            CartWriteFailedError: If an item or aggregate write fails.
        """
        if owner is None:
            raise NoIdentityError()

        variant = await self._get_variant(variant_id)
        if not variant:
            logger.warning("Variant %s not found for product %s", variant_id, product.product_id)
            raise VariantNotFoundError(variant_id)

        snapshot = snapshot or CartSnapshot.empty()
        transaction_id = snapshot.transaction_id
        if transaction_id is not None and not await self._is_pending(transaction_id):
            # Paid or canceled since the snapshot was taken; only pending carts change
            logger.info("Cart %s is no longer pending, starting a new one", transaction_id)
            snapshot = CartSnapshot.empty()
            transaction_id = None

        if transaction_id is None:
            transaction_id, reused = await self._ensure_transaction(owner)
            if reused:
                # The caller did not know about this cart; start from what is stored
                snapshot = await self.repository.fetch_cart(owner)

        existing = snapshot.find_item(product.product_id, variant_id)
        if existing:
            item = await self._increment_item(transaction_id, product, variant, existing)
        else:
            item = await self._insert_item(transaction_id, product, variant)

        item_count, total_amount = await self.repository.sync_aggregates(transaction_id)
        updated = snapshot.with_item(transaction_id, item)

        if updated.item_count != item_count or updated.total_amount != total_amount:
            # Another request changed the cart since the snapshot was taken
            logger.info("Cart %s changed concurrently, reloading", transaction_id)
            updated = await self.repository.fetch_cart(owner)

        logger.info(
            "Added variant %s to cart %s (items=%d, total=%s)",
            variant_id,
            transaction_id,
            updated.item_count,
            updated.total_amount,
        )
        return updated

    async def remove_item(
        self,
        owner: CartOwner | None,
        variant_id: UUID | str,
        product_id: UUID | str | None = None,
    ) -> CartSnapshot:
        """Remove a line from the owner's pending cart.

        Aggregates are recomputed from the remaining items, the same way
        ``add_item`` does.

        Args:
            owner: The user or guest session the cart belongs to.
            variant_id: The variant whose line to remove.
            product_id: Narrows the match when given.

        Returns:
            CartSnapshot: The cart after removal.

        Raises:
            NoIdentityError: If no owner is given.
            CartWriteFailedError: If the delete or aggregate write fails.
        """
        if owner is None:
            raise NoIdentityError()

        transaction = await self.repository.get_pending_transaction(owner)
        if not transaction:
            return CartSnapshot.empty()

        filters: dict[str, Any] = {"transaction_id": transaction["id"], "variant_id": str(variant_id)}
        if product_id:
            filters["product_id"] = str(product_id)

        try:
            self.store.delete(ITEMS_TABLE, filters)
        except StoreError as e:
            logger.error("Failed to remove variant %s from cart %s: %s", variant_id, transaction["id"], e)
            raise CartWriteFailedError(step="delete_item") from e

        await self.repository.sync_aggregates(transaction["id"])
        logger.info("Removed variant %s from cart %s", variant_id, transaction["id"])

        return await self.repository.fetch_cart(owner)

    async def claim_guest_cart(self, guest_session_id: UUID | str, user_id: UUID | str) -> bool:
        """Hand a guest's pending cart to the user who just signed in.

        A user who already has a pending cart keeps it; the guest cart is
        left behind untouched.

        Returns:
            bool: True if the guest cart now belongs to the user.

        Raises:
            CartWriteFailedError: With step ``claim_cart`` on store failure.
        """
        guest = GuestOwner(guest_session_id=guest_session_id)
        user = UserOwner(user_id=user_id)

        guest_transaction = await self.repository.get_pending_transaction(guest)
        if not guest_transaction:
            return False

        if await self.repository.get_pending_transaction(user):
            logger.info(
                "User %s already has a pending cart; guest cart %s not claimed",
                user_id,
                guest_transaction["id"],
            )
            return False

        try:
            self.store.update(
                TRANSACTIONS_TABLE,
                user.columns(),
                {"id": guest_transaction["id"], "status": "pending"},
            )
        except DuplicateKeyError:
            logger.info("User %s created a cart while claiming; guest cart not claimed", user_id)
            return False
        except StoreError as e:
            logger.error("Failed to claim guest cart %s: %s", guest_transaction["id"], e)
            raise CartWriteFailedError(step="claim_cart") from e

        logger.info("Guest cart %s claimed by user %s", guest_transaction["id"], user_id)
        return True

    async def _get_variant(self, variant_id: UUID | str) -> Variant | None:
        try:
            rows = self.store.select(VARIANTS_TABLE, {"id": str(variant_id)}, limit=1)
        except StoreError as e:
            logger.error("Failed to load variant %s: %s", variant_id, e)
            raise CartReadFailedError() from e

        return rows[0] if rows else None

    async def _is_pending(self, transaction_id: UUID | str) -> bool:
        transaction = await self.repository.get_transaction(transaction_id)
        return bool(transaction) and transaction.get("status") == "pending"

    async def _ensure_transaction(self, owner: CartOwner) -> tuple[str, bool]:
        """Return (transaction_id, reused) for the owner's pending cart."""
        existing = await self.repository.get_pending_transaction(owner)
        if existing:
            return existing["id"], True

        new_transaction: CartTransactionCreate = {
            **owner.columns(),
            "status": "pending",
            "item_count": 0,
            "total_amount": Decimal("0"),
            "currency": self.settings.default_currency,
        }
        try:
            row = self.store.insert(TRANSACTIONS_TABLE, new_transaction)
        except DuplicateKeyError as e:
            # A concurrent request created the pending cart first
            existing = await self.repository.get_pending_transaction(owner)
            if existing:
                return existing["id"], True
            raise TransactionCreateFailedError() from e
        except StoreError as e:
            logger.error("Failed to create pending transaction for %s owner: %s", owner.kind, e)
            raise TransactionCreateFailedError() from e

        logger.info("Created pending transaction %s for %s owner", row["id"], owner.kind)
        return row["id"], False

    async def _stored_item(self, transaction_id: str, product_id: str, variant_id: str) -> CartLineItem | None:
        try:
            rows = self.store.select(
                ITEMS_TABLE,
                {"transaction_id": transaction_id, "product_id": product_id, "variant_id": variant_id},
                limit=1,
            )
        except StoreError as e:
            logger.error("Failed to load item from cart %s: %s", transaction_id, e)
            raise CartWriteFailedError(step="write_item") from e

        return rows[0] if rows else None

    async def _increment_item(
        self,
        transaction_id: UUID | str,
        product: ProductRef,
        variant: Variant,
        existing: CartItemSchema | None = None,
        insert_if_missing: bool = True,
    ) -> CartItemSchema:
        """Bump the stored quantity of a line by one."""
        key = {
            "transaction_id": str(transaction_id),
            "product_id": str(product.product_id),
            "variant_id": str(variant["id"]),
        }
        stored = await self._stored_item(**key)
        if not stored:
            if not insert_if_missing:
                raise CartWriteFailedError(step="write_item")
            # Removed elsewhere since the snapshot was taken
            return await self._insert_item(transaction_id, product, variant)

        price = to_decimal(stored.get("price"))
        quantity = int(stored.get("quantity") or 0) + 1
        try:
            self.store.update(ITEMS_TABLE, {"quantity": quantity, "line_total": price * quantity}, key)
        except StoreError as e:
            logger.error("Failed to update item quantity in cart %s: %s", transaction_id, e)
            raise CartWriteFailedError(step="write_item") from e

        return CartItemSchema(
            product_id=product.product_id,
            variant_id=variant["id"],
            price=price,
            quantity=quantity,
            product_name=product.name or (existing.product_name if existing else UNKNOWN_PRODUCT),
            variant_name=variant.get("name") or UNKNOWN_VARIANT,
        )

    async def _insert_item(
        self,
        transaction_id: UUID | str,
        product: ProductRef,
        variant: Variant,
    ) -> CartItemSchema:
        """Create a new line at the variant's current price."""
        price = to_decimal(variant.get("price"))
        try:
            self.store.insert(
                ITEMS_TABLE,
                {
                    "transaction_id": str(transaction_id),
                    "product_id": str(product.product_id),
                    "variant_id": str(variant["id"]),
                    "price": price,
                    "quantity": 1,
                    "line_total": price,
                },
            )
        except DuplicateKeyError:
            # The line already exists in storage; treat as another unit
            return await self._increment_item(transaction_id, product, variant, insert_if_missing=False)
        except StoreError as e:
            logger.error("Failed to insert item into cart %s: %s", transaction_id, e)
            raise CartWriteFailedError(step="write_item") from e

        return CartItemSchema(
            product_id=product.product_id,
            variant_id=variant["id"],
            price=price,
            quantity=1,
            product_name=product.name or UNKNOWN_PRODUCT,
            variant_name=variant.get("name") or UNKNOWN_VARIANT,
        )
