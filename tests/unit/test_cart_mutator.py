"""Unit tests for CartMutator."""

from decimal import Decimal

import pytest

from src.api.middleware.error_handler import (
    CartWriteFailedError,
    NoIdentityError,
    TransactionCreateFailedError,
    VariantNotFoundError,
)
from src.core.store import DuplicateKeyError
from src.schemas.cart import CartSnapshot, GuestOwner, ProductRef, UserOwner
from src.services.cart_mutator import CartMutator
from src.services.cart_repository import CartRepository
from tests.support import OTHER_USER_ID, PRODUCT_ID, SECOND_VARIANT_ID, USER_ID, VARIANT_ID, InMemoryStore

GUEST_SESSION_ID = "66666666-6666-4666-8666-666666666666"
MISSING_VARIANT_ID = "99999999-9999-4999-8999-999999999999"


@pytest.fixture
def mutator(store: InMemoryStore) -> CartMutator:
    return CartMutator(store)


@pytest.fixture
def product() -> ProductRef:
    return ProductRef(product_id=PRODUCT_ID, name="Starter Template")


def pending_transactions(store: InMemoryStore) -> list[dict]:
    return [row for row in store.rows("cart_transactions") if row["status"] == "pending"]


class TestAddItem:
    """Tests for add_item."""

    @pytest.mark.asyncio
    async def test_first_add_creates_transaction_and_item(
        self, mutator: CartMutator, store: InMemoryStore, product: ProductRef
    ) -> None:
        owner = UserOwner(user_id=USER_ID)

        cart = await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, owner)

        transactions = store.rows("cart_transactions")
        assert len(transactions) == 1
        assert transactions[0]["owner_type"] == "user"
        assert transactions[0]["user_id"] == USER_ID
        assert transactions[0]["guest_session_id"] is None
        assert transactions[0]["item_count"] == 1
        assert Decimal(transactions[0]["total_amount"]) == Decimal("10.00")

        assert str(cart.transaction_id) == transactions[0]["id"]
        assert cart.item_count == 1
        assert cart.total_amount == Decimal("10.00")
        assert cart.items[0].product_name == "Starter Template"
        assert cart.items[0].variant_name == "Basic"

    @pytest.mark.asyncio
    async def test_repeated_add_increments_quantity(
        self, mutator: CartMutator, store: InMemoryStore, product: ProductRef
    ) -> None:
        owner = UserOwner(user_id=USER_ID)

        cart = await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, owner)
        cart = await mutator.add_item(cart, product, VARIANT_ID, owner)

        items = store.rows("cart_transaction_items")
        assert len(items) == 1
        assert items[0]["quantity"] == 2
        assert Decimal(items[0]["line_total"]) == Decimal("20.00")
        assert cart.item_count == 2
        assert cart.total_amount == Decimal("20.00")
        assert cart.items[0].line_total == Decimal("20.00")

    @pytest.mark.asyncio
    async def test_price_captured_at_first_add(
        self, mutator: CartMutator, store: InMemoryStore, product: ProductRef
    ) -> None:
        owner = UserOwner(user_id=USER_ID)
        cart = await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, owner)

        store.update("variants", {"price": "99.00"}, {"id": VARIANT_ID})
        cart = await mutator.add_item(cart, product, VARIANT_ID, owner)

        assert cart.items[0].price == Decimal("10.00")
        assert cart.total_amount == Decimal("20.00")

    @pytest.mark.asyncio
    async def test_aggregates_match_items_after_mixed_adds(
        self, mutator: CartMutator, store: InMemoryStore, product: ProductRef
    ) -> None:
        owner = UserOwner(user_id=USER_ID)
        cart = CartSnapshot.empty()
        for variant_id in [VARIANT_ID, SECOND_VARIANT_ID, VARIANT_ID]:
            cart = await mutator.add_item(cart, product, variant_id, owner)

        transaction = store.rows("cart_transactions")[0]
        assert cart.item_count == 3 == transaction["item_count"]
        assert cart.total_amount == Decimal("45.50") == Decimal(transaction["total_amount"])

    @pytest.mark.asyncio
    async def test_stale_empty_snapshot_reuses_pending_transaction(
        self, mutator: CartMutator, store: InMemoryStore, product: ProductRef
    ) -> None:
        owner = UserOwner(user_id=USER_ID)
        await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, owner)

        # Second tab still shows an empty cart
        cart = await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, owner)

        assert len(pending_transactions(store)) == 1
        assert cart.item_count == 2
        assert store.rows("cart_transaction_items")[0]["quantity"] == 2

    @pytest.mark.asyncio
    async def test_concurrent_transaction_insert_is_reused(
        self, mutator: CartMutator, store: InMemoryStore, product: ProductRef
    ) -> None:
        owner = UserOwner(user_id=USER_ID)
        # Another request creates the pending cart after our lookup
        existing = store.insert(
            "cart_transactions",
            {**owner.columns(), "status": "pending", "item_count": 0, "total_amount": "0", "currency": "usd"},
        )
        original_get = mutator.repository.get_pending_transaction
        calls = {"n": 0}

        async def first_lookup_misses(o):
            calls["n"] += 1
            return None if calls["n"] == 1 else await original_get(o)

        mutator.repository.get_pending_transaction = first_lookup_misses

        cart = await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, owner)

        assert len(pending_transactions(store)) == 1
        assert str(cart.transaction_id) == existing["id"]
        assert cart.item_count == 1

    @pytest.mark.asyncio
    async def test_snapshot_missing_stored_item_increments_stored_row(
        self, mutator: CartMutator, store: InMemoryStore, product: ProductRef
    ) -> None:
        owner = UserOwner(user_id=USER_ID)
        first = await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, owner)
        await mutator.add_item(first, product, SECOND_VARIANT_ID, owner)

        # Snapshot predates the SECOND_VARIANT_ID line
        cart = await mutator.add_item(first, product, SECOND_VARIANT_ID, owner)

        quantities = {row["variant_id"]: row["quantity"] for row in store.rows("cart_transaction_items")}
        assert quantities == {VARIANT_ID: 1, SECOND_VARIANT_ID: 2}
        assert cart.item_count == 3
        assert cart.total_amount == Decimal("61.00")

    @pytest.mark.asyncio
    async def test_unknown_variant_raises(self, mutator: CartMutator, store: InMemoryStore, product: ProductRef) -> None:
        with pytest.raises(VariantNotFoundError):
            await mutator.add_item(CartSnapshot.empty(), product, MISSING_VARIANT_ID, UserOwner(user_id=USER_ID))

        assert store.rows("cart_transactions") == []

    @pytest.mark.asyncio
    async def test_no_owner_raises(self, mutator: CartMutator, product: ProductRef) -> None:
        with pytest.raises(NoIdentityError):
            await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, None)

    @pytest.mark.asyncio
    async def test_transaction_insert_failure(
        self, mutator: CartMutator, store: InMemoryStore, product: ProductRef
    ) -> None:
        store.fail("cart_transactions", "insert")

        with pytest.raises(TransactionCreateFailedError):
            await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, UserOwner(user_id=USER_ID))

    @pytest.mark.asyncio
    async def test_duplicate_without_visible_pending_cart_fails(
        self, mutator: CartMutator, store: InMemoryStore, product: ProductRef
    ) -> None:
        store.fail("cart_transactions", "insert", DuplicateKeyError("dup", code="23505"))

        with pytest.raises(TransactionCreateFailedError):
            await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, UserOwner(user_id=USER_ID))

    @pytest.mark.asyncio
    async def test_item_write_failure_names_step(
        self, mutator: CartMutator, store: InMemoryStore, product: ProductRef
    ) -> None:
        store.fail("cart_transaction_items", "insert")

        with pytest.raises(CartWriteFailedError) as exc_info:
            await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, UserOwner(user_id=USER_ID))

        assert exc_info.value.step == "write_item"

    @pytest.mark.asyncio
    async def test_guest_owner(self, mutator: CartMutator, store: InMemoryStore, product: ProductRef) -> None:
        guest = GuestOwner(guest_session_id=GUEST_SESSION_ID)

        await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, guest)

        transaction = store.rows("cart_transactions")[0]
        assert transaction["owner_type"] == "guest"
        assert transaction["guest_session_id"] == GUEST_SESSION_ID
        assert transaction["user_id"] is None

    @pytest.mark.asyncio
    async def test_only_pending_cart_is_mutated(
        self, mutator: CartMutator, store: InMemoryStore, product: ProductRef
    ) -> None:
        owner = UserOwner(user_id=USER_ID)
        await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, owner)
        store.update("cart_transactions", {"status": "paid"}, {"user_id": USER_ID})

        cart = await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, owner)

        statuses = sorted(row["status"] for row in store.rows("cart_transactions"))
        assert statuses == ["paid", "pending"]
        assert cart.item_count == 1

    @pytest.mark.asyncio
    async def test_stale_snapshot_of_paid_cart_starts_new_cart(
        self, mutator: CartMutator, store: InMemoryStore, product: ProductRef
    ) -> None:
        """Test that a snapshot taken before payment never writes into the paid cart."""
        owner = UserOwner(user_id=USER_ID)
        snapshot = await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, owner)
        paid_id = str(snapshot.transaction_id)
        store.update("cart_transactions", {"status": "paid"}, {"id": paid_id})

        cart = await mutator.add_item(snapshot, product, VARIANT_ID, owner)

        paid = next(row for row in store.rows("cart_transactions") if row["id"] == paid_id)
        paid_items = [row for row in store.rows("cart_transaction_items") if row["transaction_id"] == paid_id]
        assert paid["status"] == "paid"
        assert paid["item_count"] == 1
        assert Decimal(paid["total_amount"]) == Decimal("10.00")
        assert [row["quantity"] for row in paid_items] == [1]

        assert str(cart.transaction_id) != paid_id
        assert cart.item_count == 1
        assert cart.items[0].quantity == 1
        assert len(pending_transactions(store)) == 1


class TestRemoveItem:
    """Tests for remove_item."""

    @pytest.mark.asyncio
    async def test_removes_line_and_recomputes(
        self, mutator: CartMutator, store: InMemoryStore, product: ProductRef
    ) -> None:
        owner = UserOwner(user_id=USER_ID)
        cart = await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, owner)
        await mutator.add_item(cart, product, SECOND_VARIANT_ID, owner)

        cart = await mutator.remove_item(owner, SECOND_VARIANT_ID)

        transaction = store.rows("cart_transactions")[0]
        assert cart.item_count == 1
        assert cart.total_amount == Decimal("10.00")
        assert transaction["item_count"] == 1
        assert Decimal(transaction["total_amount"]) == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_without_cart_returns_empty(self, mutator: CartMutator) -> None:
        cart = await mutator.remove_item(UserOwner(user_id=USER_ID), VARIANT_ID)

        assert cart.transaction_id is None

    @pytest.mark.asyncio
    async def test_delete_failure_names_step(
        self, mutator: CartMutator, store: InMemoryStore, product: ProductRef
    ) -> None:
        owner = UserOwner(user_id=USER_ID)
        await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, owner)
        store.fail("cart_transaction_items", "delete")

        with pytest.raises(CartWriteFailedError) as exc_info:
            await mutator.remove_item(owner, VARIANT_ID)

        assert exc_info.value.step == "delete_item"


class TestClaimGuestCart:
    """Tests for claim_guest_cart."""

    @pytest.mark.asyncio
    async def test_reassigns_guest_cart(self, mutator: CartMutator, store: InMemoryStore, product: ProductRef) -> None:
        guest = GuestOwner(guest_session_id=GUEST_SESSION_ID)
        await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, guest)

        claimed = await mutator.claim_guest_cart(GUEST_SESSION_ID, USER_ID)

        cart = await CartRepository(store).fetch_cart(UserOwner(user_id=USER_ID))
        assert claimed is True
        assert cart.item_count == 1
        assert store.rows("cart_transactions")[0]["guest_session_id"] is None

    @pytest.mark.asyncio
    async def test_existing_user_cart_wins(
        self, mutator: CartMutator, store: InMemoryStore, product: ProductRef
    ) -> None:
        await mutator.add_item(CartSnapshot.empty(), product, VARIANT_ID, GuestOwner(guest_session_id=GUEST_SESSION_ID))
        await mutator.add_item(CartSnapshot.empty(), product, SECOND_VARIANT_ID, UserOwner(user_id=OTHER_USER_ID))

        claimed = await mutator.claim_guest_cart(GUEST_SESSION_ID, OTHER_USER_ID)

        cart = await CartRepository(store).fetch_cart(UserOwner(user_id=OTHER_USER_ID))
        assert claimed is False
        assert [str(item.variant_id) for item in cart.items] == [SECOND_VARIANT_ID]

    @pytest.mark.asyncio
    async def test_nothing_to_claim(self, mutator: CartMutator) -> None:
        assert await mutator.claim_guest_cart(GUEST_SESSION_ID, USER_ID) is False
