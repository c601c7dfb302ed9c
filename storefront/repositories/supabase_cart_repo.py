# storefront/repositories/supabase_cart_repo.py
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from postgrest.exceptions import APIError
from supabase import Client

from storefront.core.exceptions import DuplicateCartLineError
from storefront.schemas.cart import CartLine, ProductSnapshot, VariantSnapshot

TABLE = "cart_items"

# cart_items joined with enough product / variant data to render a line
LIST_COLUMNS = (
    "*, "
    "products:product_id (*, product_images (*)), "
    "product_variants:variant_id (*)"
)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


def _money(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def row_to_cart_line(row: dict[str, Any]) -> CartLine:
    """
    Map a PostgREST cart_items row (optionally with embedded
    `products` / `product_variants`) to a CartLine.
    """
    product_snapshot = None
    product = row.get("products")
    if product:
        images = sorted(
            product.get("product_images") or [],
            key=lambda image: image.get("sort_order", 0),
        )
        product_snapshot = ProductSnapshot(
            id=str(product["id"]),
            name=product.get("name", ""),
            slug=product.get("slug"),
            price=_money(product.get("price")),
            image_url=images[0].get("url") if images else None,
        )

    variant_snapshot = None
    variant = row.get("product_variants")
    if variant:
        variant_snapshot = VariantSnapshot(
            id=str(variant["id"]),
            title=variant.get("title"),
            price=_money(variant.get("price")),
            option1=variant.get("option1"),
            option2=variant.get("option2"),
            option3=variant.get("option3"),
        )

    return CartLine(
        id=str(row["id"]),
        product_id=str(row["product_id"]),
        variant_id=str(row["variant_id"]) if row.get("variant_id") else None,
        quantity=row["quantity"],
        created_at=row.get("created_at"),
        product=product_snapshot,
        variant=variant_snapshot,
    )


class SupabaseCartRepository:
    """
    cart_items access through the Supabase table API (PostgREST).

    Mirrors the queries the storefront issues from the browser, but
    runs server-side with the service-role client, so RLS is bypassed
    and every statement filters on user_id explicitly.

    Raises postgrest APIError on any failed request.
    """

    def __init__(self, client: Client):
        self.client = client

    def _table(self):
        return self.client.table(TABLE)

    def find_line(
        self,
        user_id: uuid.UUID,
        product_id: str,
        variant_id: str | None,
    ) -> CartLine | None:
        query = (
            self._table()
            .select("*")
            .eq("user_id", str(user_id))
            .eq("product_id", product_id)
        )
        if variant_id is None:
            query = query.is_("variant_id", "null")
        else:
            query = query.eq("variant_id", variant_id)

        response = query.limit(1).execute()
        if not response.data:
            return None
        return row_to_cart_line(response.data[0])

    def insert_line(
        self,
        user_id: uuid.UUID,
        product_id: str,
        variant_id: str | None,
        quantity: int,
    ) -> CartLine:
        try:
            response = (
                self._table()
                .insert(
                    {
                        "user_id": str(user_id),
                        "product_id": product_id,
                        "variant_id": variant_id,
                        "quantity": quantity,
                    }
                )
                .execute()
            )
        except APIError as exc:
            if exc.code == UNIQUE_VIOLATION:
                raise DuplicateCartLineError(exc.message) from exc
            raise
        return row_to_cart_line(response.data[0])

    def update_line_quantity(
        self, line_id: str, user_id: uuid.UUID, quantity: int
    ) -> None:
        (
            self._table()
            .update(
                {
                    "quantity": quantity,
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                }
            )
            .eq("id", line_id)
            .eq("user_id", str(user_id))
            .execute()
        )

    def delete_line(self, line_id: str, user_id: uuid.UUID) -> None:
        self._table().delete().eq("id", line_id).eq("user_id", str(user_id)).execute()

    def delete_all_lines(self, user_id: uuid.UUID) -> None:
        self._table().delete().eq("user_id", str(user_id)).execute()

    def list_lines(self, user_id: uuid.UUID) -> list[CartLine]:
        response = (
            self._table()
            .select(LIST_COLUMNS)
            .eq("user_id", str(user_id))
            .order("created_at", desc=True)
            .execute()
        )
        return [row_to_cart_line(row) for row in response.data or []]
