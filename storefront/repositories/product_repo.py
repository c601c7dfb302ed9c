# storefront/repositories/product_repo.py
import uuid

from sqlmodel import Session, col, select

from storefront.models.product import Product, ProductImage, ProductVariant
from storefront.repositories.cart_repo import parse_uuid


class ProductRepository:
    """
    Read-only catalog lookups the cart needs.

    - Pure DB operations.
    - Malformed ids behave like missing rows.
    """

    def get_by_id(self, session: Session, product_id: str | uuid.UUID) -> Product | None:
        product_uuid = parse_uuid(product_id)
        if product_uuid is None:
            return None
        return session.get(Product, product_uuid)

    def get_variant(
        self,
        session: Session,
        product_id: uuid.UUID,
        variant_id: str | uuid.UUID,
    ) -> ProductVariant | None:
        """Return the variant only if it belongs to `product_id`."""
        variant_uuid = parse_uuid(variant_id)
        if variant_uuid is None:
            return None
        stmt = select(ProductVariant).where(
            ProductVariant.id == variant_uuid,
            ProductVariant.product_id == product_id,
        )
        return session.exec(stmt).first()

    def first_image_url(self, session: Session, product_id: uuid.UUID) -> str | None:
        stmt = (
            select(ProductImage)
            .where(ProductImage.product_id == product_id)
            .order_by(col(ProductImage.sort_order))
        )
        image = session.exec(stmt).first()
        return image.url if image else None
