"""Checkout API routes for Stripe payments."""

from fastapi import APIRouter, status

from src.api.deps import CurrentUser, DualAuth, RequiredDualAuth
from src.schemas.payment import (
    PaymentIntentCreate,
    PaymentIntentResponse,
    PaymentStatusResponse,
    SubscriptionCreate,
    SubscriptionResponse,
)
from src.services.checkout_service import CheckoutService
from src.services.webhook_processor import WebhookProcessor

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post(
    "/payment-intent",
    response_model=PaymentIntentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create payment intent for cart",
    description="Creates or refreshes the Stripe PaymentIntent for the caller's pending cart.",
)
async def create_payment_intent(data: PaymentIntentCreate, auth: DualAuth) -> PaymentIntentResponse:
    """Create a PaymentIntent for the caller's cart total.

    The frontend confirms the payment with the returned client secret;
    the outcome arrives through the Stripe webhook.

    Args:
        data: Optional customer details.
        auth: Dual auth context (user or guest session).

    Returns:
        PaymentIntentResponse: Intent id, client secret and amount.
    """
    email = data.customer_email or (auth.user.email if auth.user else None)
    result = await CheckoutService().create_payment_for_cart(
        auth.owner,
        customer_email=email,
        customer_name=data.customer_name,
    )
    return PaymentIntentResponse(**result)


@router.post(
    "/subscription",
    response_model=SubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Subscribe to a community",
    description="Creates an incomplete Stripe subscription for a community membership. Requires authentication.",
)
async def create_subscription(data: SubscriptionCreate, user: CurrentUser) -> SubscriptionResponse:
    """Start a community membership subscription for the signed-in user."""
    result = await CheckoutService().create_community_subscription(
        user,
        price_id=data.price_id,
        community_id=data.community_id,
        customer_name=data.customer_name,
        trial_days=data.trial_days,
    )
    return SubscriptionResponse(**result)


@router.post(
    "/cancel",
    summary="Cancel cart payment",
    description="Cancels the PaymentIntent of the caller's pending cart.",
)
async def cancel_payment(auth: RequiredDualAuth) -> dict:
    """Cancel the in-progress payment of the caller's cart."""
    return await CheckoutService().cancel_cart_payment(auth.owner)


@router.get(
    "/status/{payment_intent_id}",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
    description="Payment status derived from the Stripe webhook events received so far.",
)
async def get_payment_status(payment_intent_id: str, auth: RequiredDualAuth) -> PaymentStatusResponse:
    """Return the derived payment status of a payment intent."""
    payment_status = await WebhookProcessor().derive_status(payment_intent_id)
    return PaymentStatusResponse(payment_intent_id=payment_intent_id, status=payment_status)
