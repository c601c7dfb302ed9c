# storefront/services/cart_engine.py
import asyncio
import logging
import uuid
import weakref
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from decimal import Decimal

from starlette.concurrency import run_in_threadpool

from storefront.core.auth import IdentityProvider
from storefront.core.exceptions import (
    CartError,
    CartPersistenceError,
    DuplicateCartLineError,
)
from storefront.repositories.guest_cart_store import GuestCartStore
from storefront.schemas.cart import (
    CartFailureReason,
    CartLine,
    CartResult,
    CartSession,
    CheckoutSummary,
    ProductSnapshot,
    VariantSnapshot,
)
from storefront.services.cart_pricing import build_checkout_summary, calculate_totals
from storefront.services.cart_persistence import CartPersistence

logger = logging.getLogger(__name__)


class CartLocks:
    """
    One asyncio.Lock per cart owner (user id or guest token).

    Shared by every CartEngine of the process so two requests against
    the same cart never interleave their read-then-write sequences.
    Locks are dropped once nobody holds a reference to them.
    """

    def __init__(self):
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


def _with_added(
    lines: list[CartLine],
    product_id: str,
    variant_id: str | None,
    quantity: int,
    product: ProductSnapshot | None,
    variant: VariantSnapshot | None,
) -> list[CartLine]:
    """Guest lines after adding `quantity` of (product_id, variant_id)."""
    key = (product_id, variant_id)
    result: list[CartLine] = []
    found = False
    for line in lines:
        if line.key == key:
            found = True
            update = {"quantity": line.quantity + quantity}
            if product is not None:
                update["product"] = product
            if variant is not None:
                update["variant"] = variant
            line = line.model_copy(update=update)
        result.append(line)

    if not found:
        result.append(
            CartLine(
                id=str(uuid.uuid4()),
                product_id=product_id,
                variant_id=variant_id,
                quantity=quantity,
                created_at=datetime.now(timezone.utc),
                product=product,
                variant=variant,
            )
        )
    return result


class CartEngine:
    """
    Canonical state of one shopping cart.

    Responsibilities:
      - guest carts: re-read the stored line list under the lock,
        change it and save it back
      - authenticated carts: write through the persistence backend,
        always scoped by the identity provider's user id
      - keep `total_items` / `total_price` recomputed after every change
      - serialize mutations per cart owner
      - return a CartResult from every operation; never raise for
        persistence failures

    One engine is built per session (request) with explicit collaborators.
    """

    def __init__(
        self,
        identity: IdentityProvider,
        persistence: CartPersistence,
        guest_store: GuestCartStore,
        guest_key: str | None = None,
        locks: CartLocks | None = None,
        tax_rate: float = 0.05,
        shipping: float = 0.0,
    ):
        self.identity = identity
        self.persistence = persistence
        self.guest_store = guest_store
        self.guest_key = guest_key or uuid.uuid4().hex
        self.locks = locks or CartLocks()
        self.tax_rate = tax_rate
        self.shipping = shipping

        self.lines: list[CartLine] = []
        self.total_items = 0
        self.total_price = Decimal("0.00")
        self.is_open = False
        self.is_loading = False

    # ---- internal helpers ----

    def _set_lines(self, lines: list[CartLine]) -> None:
        # Lines and totals change together; nothing awaits in between.
        total_items, total_price = calculate_totals(lines)
        self.lines = list(lines)
        self.total_items = total_items
        self.total_price = total_price

    def _success(self) -> CartResult:
        return CartResult(
            ok=True,
            lines=list(self.lines),
            total_items=self.total_items,
            total_price=self.total_price,
        )

    def _failure(self, reason: CartFailureReason, detail: str) -> CartResult:
        return CartResult(
            ok=False,
            reason=reason,
            detail=detail,
            lines=list(self.lines),
            total_items=self.total_items,
            total_price=self.total_price,
        )

    def _lock_for(self, session: CartSession) -> asyncio.Lock:
        if session.authenticated:
            return self.locks.get(f"user:{session.user_id}")
        return self.locks.get(f"guest:{self.guest_key}")

    async def _remote(
        self,
        action: str,
        operation: Callable[[], Awaitable[None]],
    ) -> CartResult:
        """
        Run an authenticated persistence sequence with is_loading set.

        Any CartError leaves lines / totals as they were before.
        """
        self.is_loading = True
        try:
            await operation()
        except CartError as exc:
            logger.exception("Error %s", action)
            return self._failure(CartFailureReason.PERSISTENCE_ERROR, str(exc))
        finally:
            self.is_loading = False
        return self._success()

    async def _change_guest(
        self,
        action: str,
        change: Callable[[list[CartLine]], list[CartLine]],
    ) -> CartResult:
        """
        Re-read the stored guest cart, apply `change` and save the result.

        Callers hold the guest lock, so the stored cart cannot move
        between the read and the write.
        """
        try:
            current = await run_in_threadpool(self.guest_store.load, self.guest_key)
            lines = change(current)
            if lines != current:
                await run_in_threadpool(self.guest_store.save, self.guest_key, lines)
        except CartError as exc:
            logger.exception("Error %s", action)
            return self._failure(CartFailureReason.PERSISTENCE_ERROR, str(exc))
        self._set_lines(lines)
        return self._success()

    async def _store_guest(self, key: str, lines: list[CartLine]) -> None:
        if lines:
            await run_in_threadpool(self.guest_store.save, key, lines)
        else:
            await run_in_threadpool(self.guest_store.delete, key)

    async def _increment_remote(
        self,
        user_id: uuid.UUID,
        product_id: str,
        variant_id: str | None,
        quantity: int,
    ) -> None:
        """
        Add `quantity` to the (user, product, variant) row, creating it
        when missing. A concurrent insert from another process shows up
        as DuplicateCartLineError and is retried as an increment.
        """
        existing = await self.persistence.find_line(user_id, product_id, variant_id)
        if existing is None:
            try:
                await self.persistence.insert_line(
                    user_id, product_id, variant_id, quantity
                )
                return
            except DuplicateCartLineError:
                existing = await self.persistence.find_line(
                    user_id, product_id, variant_id
                )
                if existing is None:
                    raise CartPersistenceError(
                        "Cart line reported as duplicate but not found"
                    )

        await self.persistence.update_line_quantity(
            existing.id, user_id, existing.quantity + quantity
        )

    async def _refetch(self, user_id: uuid.UUID) -> None:
        lines = await self.persistence.list_lines(user_id)
        self._set_lines(lines)

    # ---- state loading ----

    async def load(self) -> CartResult:
        """
        Hydrate the engine: guest carts from the guest store,
        authenticated carts from persistence.
        """
        session = await self.identity.get_current_session()
        if session.authenticated:
            return await self.fetch_cart()

        try:
            lines = await run_in_threadpool(self.guest_store.load, self.guest_key)
        except CartError as exc:
            logger.exception("Error loading guest cart")
            return self._failure(CartFailureReason.PERSISTENCE_ERROR, str(exc))
        self._set_lines(lines)
        return self._success()

    async def fetch_cart(self) -> CartResult:
        """
        Replace lines with the persisted cart (newest first, snapshots
        joined). Authenticated sessions only.
        """
        session = await self.identity.get_current_session()
        if not session.authenticated:
            return self._failure(
                CartFailureReason.NOT_AUTHENTICATED,
                "fetch_cart requires an authenticated session",
            )

        async with self._lock_for(session):
            return await self._remote(
                "fetching cart", lambda: self._refetch(session.user_id)
            )

    # ---- mutations ----

    async def add_item(
        self,
        product_id: str,
        variant_id: str | None = None,
        quantity: int = 1,
        product: ProductSnapshot | None = None,
        variant: VariantSnapshot | None = None,
    ) -> CartResult:
        """
        Add `quantity` units of (product_id, variant_id).

        An existing line with the same key is incremented; otherwise a
        new line is created. quantity < 1 is rejected.

        `product` / `variant` snapshots are only used for guest carts;
        authenticated carts get theirs from the refetch.
        """
        if not product_id:
            return self._failure(
                CartFailureReason.INVALID_PRODUCT, "product_id is required"
            )
        if quantity < 1:
            return self._failure(
                CartFailureReason.INVALID_QUANTITY,
                f"quantity must be >= 1, got {quantity}",
            )

        session = await self.identity.get_current_session()
        async with self._lock_for(session):
            if not session.authenticated:
                return await self._change_guest(
                    "adding item to guest cart",
                    lambda lines: _with_added(
                        lines, product_id, variant_id, quantity, product, variant
                    ),
                )

            async def operation():
                await self._increment_remote(
                    session.user_id, product_id, variant_id, quantity
                )
                # Full refetch, not just the touched row.
                await self._refetch(session.user_id)

            return await self._remote("adding item to cart", operation)

    async def remove_item(self, line_id: str) -> CartResult:
        """
        Remove a line. Unknown ids are a silent no-op.

        Authenticated deletes are scoped to the session's user, so a
        line owned by another account is never touched.
        """
        session = await self.identity.get_current_session()
        async with self._lock_for(session):
            if not session.authenticated:
                return await self._change_guest(
                    "removing item from guest cart",
                    lambda lines: [line for line in lines if line.id != line_id],
                )

            async def operation():
                await self.persistence.delete_line(line_id, session.user_id)
                await self._refetch(session.user_id)

            return await self._remote("removing item from cart", operation)

    async def update_quantity(self, line_id: str, quantity: int) -> CartResult:
        """
        Set a line's quantity. quantity <= 0 removes the line.
        """
        if quantity <= 0:
            return await self.remove_item(line_id)

        session = await self.identity.get_current_session()
        async with self._lock_for(session):
            if not session.authenticated:
                return await self._change_guest(
                    "updating guest cart quantity",
                    lambda lines: [
                        line.model_copy(update={"quantity": quantity})
                        if line.id == line_id
                        else line
                        for line in lines
                    ],
                )

            async def operation():
                await self.persistence.update_line_quantity(
                    line_id, session.user_id, quantity
                )
                await self._refetch(session.user_id)

            return await self._remote("updating cart item quantity", operation)

    async def clear_cart(self) -> CartResult:
        """
        Empty the cart. Lines and totals reset together.
        """
        session = await self.identity.get_current_session()
        async with self._lock_for(session):
            if not session.authenticated:
                try:
                    await run_in_threadpool(self.guest_store.delete, self.guest_key)
                except CartError as exc:
                    logger.exception("Error clearing guest cart")
                    return self._failure(
                        CartFailureReason.PERSISTENCE_ERROR, str(exc)
                    )
                self._set_lines([])
                return self._success()

            async def operation():
                await self.persistence.delete_all_lines(session.user_id)
                self._set_lines([])

            return await self._remote("clearing cart", operation)

    async def merge_guest_cart(self, guest_key: str | None = None) -> CartResult:
        """
        Move a guest cart into the authenticated cart.

        Every guest line is replayed through the authenticated add path
        (so keys deduplicate and quantities add up). Replayed lines are
        removed from the guest store before they are added, and put
        back if adding fails, so a retry after a partial failure never
        adds a line twice. The guest cart is gone once every line is
        merged.
        """
        session = await self.identity.get_current_session()
        if not session.authenticated:
            return self._failure(
                CartFailureReason.NOT_AUTHENTICATED,
                "merging a guest cart requires an authenticated session",
            )

        key = guest_key or self.guest_key
        async with self._lock_for(session), self.locks.get(f"guest:{key}"):
            try:
                guest_lines = await run_in_threadpool(self.guest_store.load, key)
            except CartError as exc:
                logger.exception("Error loading guest cart %s for merge", key)
                return self._failure(CartFailureReason.PERSISTENCE_ERROR, str(exc))

            async def operation():
                remaining = list(guest_lines)
                while remaining:
                    line = remaining.pop(0)
                    # Taken out of the guest cart before it lands, so a
                    # retry never replays a line that already merged.
                    await self._store_guest(key, remaining)
                    try:
                        await self._increment_remote(
                            session.user_id,
                            line.product_id,
                            line.variant_id,
                            line.quantity,
                        )
                    except CartError:
                        await self._store_guest(key, [line, *remaining])
                        raise
                await self._refetch(session.user_id)

            result = await self._remote("merging guest cart", operation)

        if result.ok:
            logger.info(
                "Merged %d guest line(s) into cart of user %s",
                len(guest_lines),
                session.user_id,
            )
        return result

    # ---- UI flags / derived views ----

    def state(self) -> CartResult:
        """Current lines and totals, as a successful result."""
        return self._success()

    def open_cart(self) -> None:
        self.is_open = True

    def close_cart(self) -> None:
        self.is_open = False

    def checkout_summary(self) -> CheckoutSummary:
        return build_checkout_summary(
            self.total_items,
            self.total_price,
            tax_rate=self.tax_rate,
            shipping=self.shipping,
        )
