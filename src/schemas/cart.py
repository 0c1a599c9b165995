"""Cart Pydantic schemas for API request/response models."""

from decimal import Decimal
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field

UNKNOWN_PRODUCT = "Unknown Product"
UNKNOWN_VARIANT = "Unknown Variant"


class UserOwner(BaseModel):
    """Cart owned by a registered user."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["user"] = "user"
    user_id: UUID = Field(description="Authenticated user ID")

    def filters(self) -> dict[str, Any]:
        """Store filter selecting this owner's transactions."""
        return {"owner_type": "user", "user_id": str(self.user_id)}

    def columns(self) -> dict[str, Any]:
        """Owner columns written on a new transaction."""
        return {"owner_type": "user", "user_id": str(self.user_id), "guest_session_id": None}


class GuestOwner(BaseModel):
    """Cart owned by an anonymous guest session."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["guest"] = "guest"
    guest_session_id: UUID = Field(description="Guest session ID")

    def filters(self) -> dict[str, Any]:
        """Store filter selecting this owner's transactions."""
        return {"owner_type": "guest", "guest_session_id": str(self.guest_session_id)}

    def columns(self) -> dict[str, Any]:
        """Owner columns written on a new transaction."""
        return {"owner_type": "guest", "user_id": None, "guest_session_id": str(self.guest_session_id)}


# Tagged union: exactly one identity per cart
CartOwner = Annotated[Union[UserOwner, GuestOwner], Field(discriminator="kind")]


class ProductRef(BaseModel):
    """Product being added to the cart, as known by the caller."""

    model_config = ConfigDict(from_attributes=True)

    product_id: UUID = Field(description="Product UUID")
    name: str | None = Field(default=None, description="Product display name")


class CartItemSchema(BaseModel):
    """One product+variant line in a cart snapshot."""

    model_config = ConfigDict(from_attributes=True)

    product_id: UUID = Field(description="Product UUID")
    variant_id: UUID = Field(description="Variant UUID")
    price: Decimal = Field(ge=0, description="Unit price captured at first add")
    quantity: int = Field(ge=1, description="Quantity in cart")
    product_name: str = Field(default=UNKNOWN_PRODUCT, description="Product display name")
    variant_name: str = Field(default=UNKNOWN_VARIANT, description="Variant display name")
    is_available: bool = Field(default=True, description="False when the product or variant no longer exists")

    @computed_field  # type: ignore[misc]
    @property
    def line_total(self) -> Decimal:
        """Unit price times quantity."""
        return self.price * self.quantity

    def matches(self, product_id: UUID | str, variant_id: UUID | str) -> bool:
        """Check whether this line is the given product+variant."""
        return str(self.product_id) == str(product_id) and str(self.variant_id) == str(variant_id)


class CartSnapshot(BaseModel):
    """Display-ready view of an owner's pending cart.

    Aggregates are always derived from ``items``.
    """

    model_config = ConfigDict(from_attributes=True)

    transaction_id: UUID | None = Field(default=None, description="Pending transaction UUID, None for an empty cart")
    item_count: int = Field(default=0, ge=0, description="Sum of item quantities")
    total_amount: Decimal = Field(default=Decimal("0"), description="Sum of line totals")
    items: list[CartItemSchema] = Field(default_factory=list, description="Cart lines")

    @classmethod
    def empty(cls) -> "CartSnapshot":
        """Snapshot for an owner without a pending transaction."""
        return cls()

    @classmethod
    def from_items(cls, transaction_id: UUID | str | None, items: list[CartItemSchema]) -> "CartSnapshot":
        """Build a snapshot whose aggregates are computed from its items."""
        return cls(
            transaction_id=transaction_id,
            item_count=sum(item.quantity for item in items),
            total_amount=sum((item.line_total for item in items), Decimal("0")),
            items=items,
        )

    def find_item(self, product_id: UUID | str, variant_id: UUID | str) -> CartItemSchema | None:
        """Return the line for a product+variant, if present."""
        return next((item for item in self.items if item.matches(product_id, variant_id)), None)

    def with_item(self, transaction_id: UUID | str, item: CartItemSchema) -> "CartSnapshot":
        """Return a copy with ``item`` replacing its line, or appended."""
        items = list(self.items)
        for index, existing in enumerate(items):
            if existing.matches(item.product_id, item.variant_id):
                items[index] = item
                break
        else:
            items.append(item)
        return CartSnapshot.from_items(transaction_id, items)


class AddCartItemRequest(BaseModel):
    """Schema for POST /cart/items."""

    model_config = ConfigDict(from_attributes=True)

    product_id: UUID = Field(description="Product UUID")
    variant_id: UUID = Field(description="Variant UUID to add")
    product_name: str | None = Field(default=None, description="Product display name, if already known by the client")


class ClaimCartResponse(BaseModel):
    """Schema for POST /cart/claim responses."""

    model_config = ConfigDict(from_attributes=True)

    claimed: bool = Field(description="Whether the guest cart was reassigned to the user")
    cart: CartSnapshot = Field(description="The user's cart after the claim")
