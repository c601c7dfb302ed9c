# storefront/repositories/cart_repo.py
import uuid
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from storefront.core.exceptions import CartPersistenceError, DuplicateCartLineError
from storefront.models.cart import CartItem
from storefront.models.product import Product, ProductImage, ProductVariant
from storefront.schemas.cart import CartLine, ProductSnapshot, VariantSnapshot


def parse_uuid(value: str | uuid.UUID | None) -> uuid.UUID | None:
    """Return `value` as a UUID, or None if it is empty / not a UUID."""
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


def product_snapshot(product: Product, image_url: str | None = None) -> ProductSnapshot:
    return ProductSnapshot(
        id=str(product.id),
        name=product.name,
        slug=product.slug,
        price=product.price,
        image_url=image_url,
    )


def variant_snapshot(variant: ProductVariant) -> VariantSnapshot:
    return VariantSnapshot(
        id=str(variant.id),
        title=variant.title,
        price=variant.price,
        option1=variant.option1,
        option2=variant.option2,
        option3=variant.option3,
    )


def to_cart_line(
    item: CartItem,
    product: Product | None = None,
    variant: ProductVariant | None = None,
    image_url: str | None = None,
) -> CartLine:
    """
    Map a cart_items row (plus optional joined rows) to a CartLine.
    """
    return CartLine(
        id=str(item.id),
        product_id=str(item.product_id),
        variant_id=str(item.variant_id) if item.variant_id else None,
        quantity=item.quantity,
        created_at=item.created_at,
        product=product_snapshot(product, image_url) if product else None,
        variant=variant_snapshot(variant) if variant else None,
    )


class CartRepository:
    """
    Data access layer for cart_items.

    - Every query is scoped by user_id.
    - Pure DB operations; no FastAPI, no cart rules.
    - Ids arrive as strings (the cart's opaque ids); anything that is
      not a UUID cannot match a row.
    """

    def _get_owned(
        self, session: Session, line_id: str, user_id: uuid.UUID
    ) -> CartItem | None:
        line_uuid = parse_uuid(line_id)
        if line_uuid is None:
            return None
        stmt = select(CartItem).where(
            CartItem.id == line_uuid, CartItem.user_id == user_id
        )
        return session.exec(stmt).first()

    def find_line(
        self,
        session: Session,
        user_id: uuid.UUID,
        product_id: str,
        variant_id: str | None,
    ) -> CartLine | None:
        product_uuid = parse_uuid(product_id)
        if product_uuid is None:
            return None

        stmt = select(CartItem).where(
            CartItem.user_id == user_id, CartItem.product_id == product_uuid
        )
        if variant_id is None:
            stmt = stmt.where(col(CartItem.variant_id).is_(None))
        else:
            variant_uuid = parse_uuid(variant_id)
            if variant_uuid is None:
                return None
            stmt = stmt.where(CartItem.variant_id == variant_uuid)

        item = session.exec(stmt).first()
        return to_cart_line(item) if item else None

    def insert_line(
        self,
        session: Session,
        user_id: uuid.UUID,
        product_id: str,
        variant_id: str | None,
        quantity: int,
    ) -> CartLine:
        """
        Insert a new row.

        Raises:
            DuplicateCartLineError: a row for (user, product, variant)
                already exists.
            CartPersistenceError: ids are malformed or a foreign key
                does not resolve.
        """
        product_uuid = parse_uuid(product_id)
        variant_uuid = parse_uuid(variant_id)
        if product_uuid is None or (variant_id is not None and variant_uuid is None):
            raise CartPersistenceError(
                f"Malformed product/variant id: {product_id!r}/{variant_id!r}"
            )

        item = CartItem(
            user_id=user_id,
            product_id=product_uuid,
            variant_id=variant_uuid,
            quantity=quantity,
        )
        session.add(item)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            if self.find_line(session, user_id, product_id, variant_id):
                raise DuplicateCartLineError(str(exc.orig)) from exc
            raise CartPersistenceError(str(exc.orig)) from exc
        session.refresh(item)
        return to_cart_line(item)

    def update_line_quantity(
        self,
        session: Session,
        line_id: str,
        user_id: uuid.UUID,
        quantity: int,
    ) -> None:
        """No-op when the line does not exist or belongs to someone else."""
        item = self._get_owned(session, line_id, user_id)
        if item is None:
            return
        item.quantity = quantity
        item.updated_at = datetime.now(timezone.utc)
        session.add(item)
        session.commit()

    def delete_line(self, session: Session, line_id: str, user_id: uuid.UUID) -> None:
        item = self._get_owned(session, line_id, user_id)
        if item is None:
            return
        session.delete(item)
        session.commit()

    def delete_all_lines(self, session: Session, user_id: uuid.UUID) -> None:
        stmt = select(CartItem).where(CartItem.user_id == user_id)
        for row in session.exec(stmt).all():
            session.delete(row)
        session.commit()

    def list_lines(self, session: Session, user_id: uuid.UUID) -> list[CartLine]:
        """
        All lines of a user, newest first, with product / variant
        snapshots and the first gallery image joined in.
        """
        stmt = (
            select(CartItem, Product, ProductVariant)
            .join(Product, CartItem.product_id == Product.id)
            .outerjoin(ProductVariant, CartItem.variant_id == ProductVariant.id)
            .where(CartItem.user_id == user_id)
            .order_by(col(CartItem.created_at).desc(), col(CartItem.id))
        )
        rows = session.exec(stmt).all()

        images = self._first_images(session, [product.id for _, product, _ in rows])
        return [
            to_cart_line(item, product, variant, images.get(product.id))
            for item, product, variant in rows
        ]

    def _first_images(
        self, session: Session, product_ids: list[uuid.UUID]
    ) -> dict[uuid.UUID, str]:
        if not product_ids:
            return {}
        stmt = (
            select(ProductImage)
            .where(col(ProductImage.product_id).in_(set(product_ids)))
            .order_by(col(ProductImage.sort_order))
        )
        first: dict[uuid.UUID, str] = {}
        for image in session.exec(stmt).all():
            first.setdefault(image.product_id, image.url)
        return first
