"""Stripe client configuration and singleton."""

import logging

import stripe

from src.core.config import get_settings

logger = logging.getLogger(__name__)

# Pinned so subscription invoices still expand to a payment_intent
STRIPE_API_VERSION = "2024-11-20.acacia"


def configure_stripe() -> None:
    """Configure Stripe SDK with the key for the active mode.

    Called once at application startup. A missing or mismatched key
    stops the application from starting.

    Raises:
        ConfigurationError: If the active Stripe key set is incomplete or
            contradicts ``STRIPE_MODE``.
    """
    settings = get_settings()
    settings.validate_stripe()
    stripe.api_key = settings.stripe_secret_key
    stripe.api_version = STRIPE_API_VERSION
    logger.info("Stripe SDK configured in %s mode", settings.stripe_mode)


def get_stripe() -> stripe:
    """Get the configured Stripe module.

    Returns:
        stripe: The Stripe module with API key configured.

    Note:
        Stripe SDK uses module-level configuration, so this returns
        the stripe module itself. Ensure configure_stripe() has been
        called before using Stripe API calls.
    """
    return stripe


def get_webhook_secret() -> str:
    """Get the webhook signing secret for the active mode.

    Raises:
        ConfigurationError: If the secret for the active mode is not set.
    """
    return get_settings().stripe_webhook_secret
