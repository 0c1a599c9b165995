"""Checkout business logic: paying for carts and community memberships.

Cart and payment code never call each other; this service links them
through the transaction's ``payment_reference_id``.
"""

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from src.api.middleware.error_handler import CartWriteFailedError, NotFoundError, ValidationError
from src.core.config import get_settings
from src.core.store import DataStore, StoreError
from src.core.supabase import get_store
from src.schemas.auth import UserContext
from src.schemas.cart import CartOwner, UserOwner
from src.services.cart_repository import TRANSACTIONS_TABLE, CartRepository
from src.services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

# Intent states in which amount and customer may still change
REUSABLE_INTENT_STATUSES = frozenset({"requires_payment_method", "requires_confirmation", "requires_action"})


def to_minor_units(amount: Decimal) -> int:
    """Convert a decimal currency amount to integer cents."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class CheckoutService:
    """Service for Stripe payments against cart transactions."""

    def __init__(self, store: DataStore | None = None, gateway: PaymentGateway | None = None) -> None:
        """Initialize checkout service.

        Args:
            store: Data store to use; defaults to the Supabase-backed store.
            gateway: Stripe client wrapper.
        """
        self.store = store if store is not None else get_store()
        self.repository = CartRepository(self.store)
        self.gateway = gateway or PaymentGateway()
        self.settings = get_settings()

    async def create_payment_for_cart(
        self,
        owner: CartOwner,
        customer_email: str | None = None,
        customer_name: str | None = None,
    ) -> dict[str, Any]:
        """Create (or refresh) the payment intent for the owner's pending cart.

        If the cart already references an intent that can still be
        confirmed, its amount is updated to the current total instead of
        creating a second intent.

        Args:
            owner: The user or guest session paying.
            customer_email: Email used to find or create a Stripe customer.
            customer_name: Name for a newly created customer.

        Returns:
            dict: transaction_id, payment_intent_id, client_secret, amount,
                currency and customer_id.

        Raises:
            ValidationError: If the cart is empty.
            PaymentProviderError: If Stripe rejects a request.
            CartWriteFailedError: If the payment reference cannot be stored.
        """
        cart = await self.repository.fetch_cart(owner)
        transaction = await self.repository.get_transaction(cart.transaction_id) if cart.transaction_id else None
        if not transaction or cart.item_count == 0:
            raise ValidationError("Your cart is empty")

        amount = to_minor_units(cart.total_amount)
        currency = transaction.get("currency") or self.settings.default_currency

        customer_id = None
        if customer_email:
            user_id = str(owner.user_id) if isinstance(owner, UserOwner) else None
            customer = await self.gateway.create_or_get_customer(customer_email, customer_name, user_id)
            customer_id = customer["id"]

        intent = await self._reuse_intent(transaction.get("payment_reference_id"), amount, customer_id)
        if intent is None:
            intent = await self.gateway.create_payment_intent(
                amount=amount,
                currency=currency,
                customer_id=customer_id,
                metadata={"transaction_id": str(cart.transaction_id), "owner_type": owner.kind},
                description=f"Cart {cart.transaction_id}",
            )
            try:
                self.store.update(
                    TRANSACTIONS_TABLE,
                    {
                        "payment_reference_id": intent["id"],
                        "payment_provider": "stripe",
                        "updated_at": datetime.now(timezone.utc).isoformat(),
                    },
                    {"id": str(cart.transaction_id), "status": "pending"},
                )
            except StoreError as e:
                logger.error("Failed to link payment intent %s to cart %s: %s", intent["id"], cart.transaction_id, e)
                raise CartWriteFailedError(step="payment_reference") from e

        return {
            "transaction_id": cart.transaction_id,
            "payment_intent_id": intent["id"],
            "client_secret": intent.get("client_secret"),
            "amount": amount,
            "currency": currency,
            "customer_id": customer_id,
        }

    async def create_community_subscription(
        self,
        user: UserContext,
        price_id: str,
        community_id: UUID,
        customer_name: str | None = None,
        trial_days: int | None = None,
    ) -> dict[str, Any]:
        """Start a recurring community membership for a signed-in user.

        Returns:
            dict: subscription_id, status, customer_id and the client_secret
                of the first invoice's payment intent.

        Raises:
            ValidationError: If the user has no email address.
            PaymentProviderError: If Stripe rejects a request.
        """
        if not user.email:
            raise ValidationError("An email address is required to subscribe")

        customer = await self.gateway.create_or_get_customer(user.email, customer_name, str(user.user_id))
        subscription = await self.gateway.create_subscription(
            customer_id=customer["id"],
            price_id=price_id,
            metadata={"community_id": str(community_id), "user_id": str(user.user_id)},
            trial_days=trial_days,
        )

        invoice = subscription.get("latest_invoice")
        payment_intent = invoice.get("payment_intent") if isinstance(invoice, dict) else None
        client_secret = payment_intent.get("client_secret") if isinstance(payment_intent, dict) else None

        return {
            "subscription_id": subscription["id"],
            "status": subscription.get("status"),
            "customer_id": customer["id"],
            "client_secret": client_secret,
        }

    async def cancel_cart_payment(self, owner: CartOwner) -> dict[str, Any]:
        """Cancel the payment intent of the owner's pending cart.

        The transaction itself changes status only when Stripe's
        ``payment_intent.canceled`` webhook arrives.

        Raises:
            NotFoundError: If the cart has no payment in progress.
        """
        transaction = await self.repository.get_pending_transaction(owner)
        payment_intent_id = transaction.get("payment_reference_id") if transaction else None
        if not payment_intent_id:
            raise NotFoundError("No payment in progress for this cart")

        intent = await self.gateway.cancel_payment_intent(payment_intent_id)
        return {"payment_intent_id": payment_intent_id, "status": intent.get("status")}

    async def _reuse_intent(self, payment_intent_id: str | None, amount: int, customer_id: str | None) -> Any:
        if not payment_intent_id:
            return None

        current = await self.gateway.retrieve_payment_intent(payment_intent_id)
        if current.get("status") not in REUSABLE_INTENT_STATUSES:
            return None

        params: dict[str, Any] = {"amount": amount}
        if customer_id:
            params["customer"] = customer_id
        logger.info("Updating payment intent %s to %d", payment_intent_id, amount)
        return await self.gateway.update_payment_intent(payment_intent_id, **params)
