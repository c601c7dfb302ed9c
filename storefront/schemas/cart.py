# storefront/schemas/cart.py
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlmodel import SQLModel, Field


class ProductSnapshot(SQLModel):
    """
    Denormalized product display data attached to a cart line.

    Only `price` takes part in pricing; the rest is for rendering.
    """

    id: str
    name: str
    slug: str | None = None
    price: Decimal | None = None
    image_url: str | None = None


class VariantSnapshot(SQLModel):
    """
    Denormalized variant display data (size / color labels).

    A null `price` means "use the product's base price".
    """

    id: str
    title: str | None = None
    price: Decimal | None = None
    option1: str | None = None
    option2: str | None = None
    option3: str | None = None


class CartLine(SQLModel):
    """
    One resolved entry in the cart.

    `id` is the persisted row id for authenticated carts and a locally
    generated token for guest carts. Lines are unique per `key`.
    """

    id: str
    product_id: str = Field(min_length=1)
    variant_id: str | None = None
    quantity: int = Field(ge=1)
    created_at: datetime | None = None

    product: ProductSnapshot | None = None
    variant: VariantSnapshot | None = None

    @property
    def key(self) -> tuple[str, str | None]:
        # A null variant is its own key value, not a wildcard.
        return (self.product_id, self.variant_id)

    @property
    def unit_price(self) -> Decimal:
        if self.variant is not None and self.variant.price is not None:
            return Decimal(self.variant.price)
        if self.product is not None and self.product.price is not None:
            return Decimal(self.product.price)
        return Decimal("0")


class CartSession(SQLModel):
    """
    Result of asking the identity provider who is calling.

    `user_id` is only set for authenticated sessions.
    """

    authenticated: bool = False
    user_id: uuid.UUID | None = None


class CartFailureReason(str, Enum):
    INVALID_QUANTITY = "invalid_quantity"
    INVALID_PRODUCT = "invalid_product"
    PERSISTENCE_ERROR = "persistence_error"
    NOT_AUTHENTICATED = "not_authenticated"


class CartResult(SQLModel):
    """
    Outcome of a cart mutation.

    On failure `lines` and the totals describe the unchanged cart.
    """

    ok: bool
    reason: CartFailureReason | None = None
    detail: str | None = None
    lines: list[CartLine] = []
    total_items: int = 0
    total_price: Decimal = Decimal("0.00")


class CheckoutSummary(SQLModel):
    """
    Checkout order summary derived from the cart totals.
    """

    total_items: int
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    total: Decimal


# ---- HTTP payloads ----


class CartItemCreate(SQLModel):
    """
    Payload for adding to cart.
    """

    product_id: str = Field(min_length=1)
    variant_id: str | None = None
    quantity: int = Field(default=1, gt=0)


class CartItemUpdate(SQLModel):
    """
    Payload for updating quantity of a cart line.

    Zero or negative removes the line.
    """

    quantity: int


class CartLineRead(SQLModel):
    """
    Read model for a single cart line, including unit price and line_total.
    """

    id: str
    product_id: str
    variant_id: str | None = None
    quantity: int
    product_name: str | None = None
    product_slug: str | None = None
    image_url: str | None = None
    variant_title: str | None = None
    size: str | None = None
    color: str | None = None
    unit_price: float
    line_total: float

    @classmethod
    def from_line(cls, line: CartLine) -> "CartLineRead":
        product = line.product
        variant = line.variant
        unit_price = line.unit_price
        return cls(
            id=line.id,
            product_id=line.product_id,
            variant_id=line.variant_id,
            quantity=line.quantity,
            product_name=product.name if product else None,
            product_slug=product.slug if product else None,
            image_url=product.image_url if product else None,
            variant_title=variant.title if variant else None,
            size=variant.option1 if variant else None,
            color=variant.option2 if variant else None,
            unit_price=float(unit_price),
            line_total=float(unit_price * line.quantity),
        )


class CartRead(SQLModel):
    """
    Full cart response model with totals.
    """

    lines: list[CartLineRead]
    total_items: int
    total_price: float


class CheckoutSummaryRead(SQLModel):
    total_items: int
    subtotal: float
    shipping: float
    tax: float
    total: float
