"""Cart API routes for signed-in users and guest sessions."""

from uuid import UUID

from fastapi import APIRouter, status

from src.api.deps import CurrentUser, DualAuth, RequiredDualAuth
from src.api.middleware.error_handler import ValidationError
from src.schemas.cart import AddCartItemRequest, CartSnapshot, ClaimCartResponse, ProductRef
from src.services.cart_mutator import CartMutator
from src.services.cart_repository import CartRepository
from src.services.session_service import SessionService

router = APIRouter(prefix="/cart", tags=["cart"])


@router.get(
    "",
    response_model=CartSnapshot,
    summary="Get cart",
    description="Returns the caller's pending cart. Creates a guest session when the caller has no identity.",
)
async def get_cart(auth: DualAuth) -> CartSnapshot:
    """Return the caller's pending cart, or an empty one."""
    return await CartRepository().fetch_cart(auth.owner)


@router.post(
    "/items",
    response_model=CartSnapshot,
    status_code=status.HTTP_200_OK,
    summary="Add item to cart",
    description="Adds one unit of a product variant. Repeated adds increase the quantity.",
)
async def add_cart_item(data: AddCartItemRequest, auth: DualAuth) -> CartSnapshot:
    """Add one unit of a variant to the caller's cart.

    Args:
        data: Product and variant to add.
        auth: Dual auth context (user or guest session).

    Returns:
        CartSnapshot: The cart after the add.
    """
    owner = auth.owner
    repository = CartRepository()
    mutator = CartMutator(repository.store, repository)

    snapshot = await repository.fetch_cart(owner)
    return await mutator.add_item(
        snapshot,
        ProductRef(product_id=data.product_id, name=data.product_name),
        data.variant_id,
        owner,
    )


@router.delete(
    "/items/{variant_id}",
    response_model=CartSnapshot,
    summary="Remove item from cart",
    description="Removes a variant's line from the caller's cart.",
)
async def remove_cart_item(
    variant_id: UUID,
    auth: RequiredDualAuth,
    product_id: UUID | None = None,
) -> CartSnapshot:
    """Remove a line from the caller's cart."""
    return await CartMutator().remove_item(auth.owner, variant_id, product_id)


@router.post(
    "/claim",
    response_model=ClaimCartResponse,
    summary="Claim guest cart",
    description="Moves the guest session's cart to the signed-in user. Requires both a bearer token and a session token.",
)
async def claim_cart(user: CurrentUser, auth: RequiredDualAuth) -> ClaimCartResponse:
    """Hand the guest session's pending cart to the signed-in user.

    Raises:
        ValidationError: If the request carries no guest session.
    """
    if not auth.session:
        raise ValidationError("A guest session token is required to claim a cart")

    mutator = CartMutator()
    claimed = await mutator.claim_guest_cart(auth.session.session_id, user.user_id)
    await SessionService(mutator.store).mark_claimed(auth.session.session_id, user.user_id)

    cart = await mutator.repository.fetch_cart(auth.owner)
    return ClaimCartResponse(claimed=claimed, cart=cart)
