# storefront/models/product.py
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import SQLModel, Field


class Product(SQLModel, table=True):
    """
    Catalog product, as far as the cart needs it.

    The cart reads `price` for pricing and `name`, `slug` for line
    snapshots. Pictures live in `product_images`.
    """

    __tablename__ = "products"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    name: str = Field(
        max_length=255,
        index=True,
        description="Display name of the garment",
    )

    slug: str = Field(
        max_length=255,
        unique=True,
        index=True,
        description="URL-friendly identifier (unique)",
    )

    price: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        max_digits=12,
        decimal_places=2,
        description="Base unit price",
    )

    # active | inactive | out_of_stock
    status: str = Field(
        default="active",
        max_length=20,
        index=True,
    )

    inventory_quantity: int = Field(default=0, ge=0)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Creation timestamp (UTC)",
    )

    @property
    def is_active(self) -> bool:
        return self.status == "active"


class ProductImage(SQLModel, table=True):
    """
    Additional gallery images for a product.
    """

    __tablename__ = "product_images"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    product_id: uuid.UUID = Field(
        foreign_key="products.id",
        index=True,
        description="FK to products.id",
    )

    url: str = Field(
        description="Public URL stored in Supabase Storage",
    )

    alt_text: str | None = None

    sort_order: int = Field(
        default=0,
        ge=0,
        description="Ordering index within the gallery",
    )


class ProductVariant(SQLModel, table=True):
    """
    Size / color variant of a product.

    option1 = size, option2 = color, option3 = free-form.
    A null price means the variant sells at the product's base price.
    """

    __tablename__ = "product_variants"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    product_id: uuid.UUID = Field(
        foreign_key="products.id",
        index=True,
    )

    title: str = Field(max_length=255)
    option1: str | None = None
    option2: str | None = None
    option3: str | None = None
    sku: str | None = None

    price: Decimal | None = Field(
        default=None,
        ge=0,
        max_digits=12,
        decimal_places=2,
    )

    inventory_quantity: int = Field(default=0, ge=0)
