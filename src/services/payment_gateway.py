"""Thin Stripe client for payment intents, customers, subscriptions and webhooks.

Every call either returns the Stripe object as Stripe sent it or raises
an ``APIError``; raw provider errors never leave this module.
"""

import json
import logging
from typing import Any

import stripe

from src.api.middleware.error_handler import InvalidSignatureError, PaymentProviderError
from src.core.config import get_settings
from src.core.stripe import get_stripe, get_webhook_secret

logger = logging.getLogger(__name__)


class PaymentGateway:
    """Wrapper over the Stripe SDK configured for the active mode."""

    def __init__(self) -> None:
        """Initialize with the configured Stripe module."""
        self.stripe = get_stripe()
        self.settings = get_settings()

    async def create_payment_intent(
        self,
        amount: int,
        currency: str | None = None,
        customer_id: str | None = None,
        metadata: dict[str, str] | None = None,
        description: str | None = None,
    ) -> Any:
        """Create a one-time payment intent.

        Args:
            amount: Amount in minor currency units (cents).
            currency: ISO currency code; defaults to ``DEFAULT_CURRENCY``.
            customer_id: Optional Stripe customer to attach.
            metadata: String key/values stored on the intent.
            description: Optional statement description.

        Returns:
            stripe.PaymentIntent: The created intent.

        Raises:
            PaymentProviderError: If Stripe rejects the request.
        """
        params: dict[str, Any] = {
            "amount": amount,
            "currency": currency or self.settings.default_currency,
            "metadata": metadata or {},
            "automatic_payment_methods": {"enabled": True},
        }
        if customer_id:
            params["customer"] = customer_id
        if description:
            params["description"] = description

        try:
            intent = self.stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            logger.error("Error creating payment intent: %s", e)
            raise PaymentProviderError() from e

        logger.info("Created payment intent %s for %d %s", intent["id"], amount, params["currency"])
        return intent

    async def create_or_get_customer(self, email: str, name: str | None = None, user_id: str | None = None) -> Any:
        """Find a Stripe customer by email, creating one if none exists.

        Args:
            email: Customer email used for lookup.
            name: Display name for a new customer.
            user_id: Application user id stored in the new customer's metadata.

        Returns:
            stripe.Customer: Existing or newly created customer.

        Raises:
            PaymentProviderError: If Stripe rejects the request.
        """
        try:
            existing = self.stripe.Customer.list(email=email, limit=1)
            if existing.data:
                return existing.data[0]

            params: dict[str, Any] = {"email": email, "metadata": {"user_id": user_id or ""}}
            if name:
                params["name"] = name
            customer = self.stripe.Customer.create(**params)
        except stripe.StripeError as e:
            logger.error("Error creating/getting customer: %s", e)
            raise PaymentProviderError() from e

        logger.info("Created Stripe customer %s", customer["id"])
        return customer

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        metadata: dict[str, str] | None = None,
        trial_days: int | None = None,
    ) -> Any:
        """Create an incomplete subscription awaiting its first payment.

        The latest invoice's payment intent is expanded so the client can
        confirm the first payment right away.

        Raises:
            PaymentProviderError: If Stripe rejects the request.
        """
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": metadata or {},
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent"],
        }
        if trial_days:
            params["trial_period_days"] = trial_days

        try:
            subscription = self.stripe.Subscription.create(**params)
        except stripe.StripeError as e:
            logger.error("Error creating subscription: %s", e)
            raise PaymentProviderError() from e

        logger.info("Created subscription %s for customer %s", subscription["id"], customer_id)
        return subscription

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Any:
        """Retrieve a payment intent."""
        try:
            return self.stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as e:
            logger.error("Error retrieving payment intent %s: %s", payment_intent_id, e)
            raise PaymentProviderError() from e

    async def update_payment_intent(self, payment_intent_id: str, **params: Any) -> Any:
        """Update a payment intent (amount, metadata, customer...)."""
        try:
            return self.stripe.PaymentIntent.modify(payment_intent_id, **params)
        except stripe.StripeError as e:
            logger.error("Error updating payment intent %s: %s", payment_intent_id, e)
            raise PaymentProviderError() from e

    async def cancel_payment_intent(self, payment_intent_id: str) -> Any:
        """Cancel a payment intent."""
        try:
            intent = self.stripe.PaymentIntent.cancel(payment_intent_id)
        except stripe.StripeError as e:
            logger.error("Error canceling payment intent %s: %s", payment_intent_id, e)
            raise PaymentProviderError() from e

        logger.info("Canceled payment intent %s", payment_intent_id)
        return intent

    def construct_webhook_event(self, raw_body: bytes, signature: str | None) -> dict[str, Any]:
        """Verify a webhook delivery and return the event as a plain dict.

        Args:
            raw_body: Unparsed request body, byte for byte as received.
            signature: The ``Stripe-Signature`` header.

        Returns:
            dict: The verified event body.

        Raises:
            InvalidSignatureError: If the signature or body is invalid.
        """
        if not signature:
            logger.warning("Webhook received without Stripe-Signature header")
            raise InvalidSignatureError("Missing Stripe-Signature header")

        try:
            self.stripe.Webhook.construct_event(raw_body, signature, get_webhook_secret())
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed: %s", e)
            raise InvalidSignatureError() from e
        except ValueError as e:
            logger.warning("Webhook body could not be parsed: %s", e)
            raise InvalidSignatureError("Invalid payload") from e

        return json.loads(raw_body)
