# storefront/routers/cart.py
from functools import lru_cache

from fastapi import APIRouter, Depends, Header, HTTPException, Response, status
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from storefront.core.auth import TokenIdentityProvider, get_identity_provider
from storefront.core.config import get_settings
from storefront.core.supabase_client import supabase_admin
from storefront.database import get_session, new_session
from storefront.repositories.cart_repo import product_snapshot, variant_snapshot
from storefront.repositories.guest_cart_store import (
    GuestCartStore,
    JsonFileGuestCartStore,
    is_valid_guest_key,
)
from storefront.repositories.product_repo import ProductRepository
from storefront.repositories.supabase_cart_repo import SupabaseCartRepository
from storefront.schemas.cart import (
    CartFailureReason,
    CartItemCreate,
    CartItemUpdate,
    CartLineRead,
    CartRead,
    CartResult,
    CheckoutSummaryRead,
    ProductSnapshot,
    VariantSnapshot,
)
from storefront.services.cart_engine import CartEngine, CartLocks
from storefront.services.cart_persistence import (
    CartPersistence,
    SqlCartPersistence,
    SupabaseCartPersistence,
)

router = APIRouter(prefix="/cart", tags=["Cart"])

CART_TOKEN_HEADER = "X-Cart-Token"

product_repo = ProductRepository()
cart_locks = CartLocks()

_FAILURE_STATUS = {
    CartFailureReason.INVALID_QUANTITY: status.HTTP_400_BAD_REQUEST,
    CartFailureReason.INVALID_PRODUCT: status.HTTP_400_BAD_REQUEST,
    CartFailureReason.NOT_AUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    CartFailureReason.PERSISTENCE_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
}


# ---- dependencies ----


@lru_cache
def get_guest_store() -> GuestCartStore:
    return JsonFileGuestCartStore(get_settings().GUEST_CART_DIR)


@lru_cache
def get_cart_persistence() -> CartPersistence:
    """
    Persistence backend selected by CART_BACKEND.
    """
    if get_settings().CART_BACKEND == "supabase":
        return SupabaseCartPersistence(SupabaseCartRepository(supabase_admin()))
    return SqlCartPersistence(new_session)


async def get_cart_engine(
    response: Response,
    identity: TokenIdentityProvider = Depends(get_identity_provider),
    persistence: CartPersistence = Depends(get_cart_persistence),
    guest_store: GuestCartStore = Depends(get_guest_store),
    cart_token: str | None = Header(default=None, alias=CART_TOKEN_HEADER),
) -> CartEngine:
    """
    Build and hydrate the cart engine for this request.

    Guests without a cart token get a fresh one, echoed back in the
    X-Cart-Token response header.
    """
    if cart_token is not None and not is_valid_guest_key(cart_token):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Malformed cart token",
        )

    settings = get_settings()
    engine = CartEngine(
        identity=identity,
        persistence=persistence,
        guest_store=guest_store,
        guest_key=cart_token,
        locks=cart_locks,
        tax_rate=settings.CHECKOUT_TAX_RATE,
        shipping=settings.CHECKOUT_SHIPPING_FLAT,
    )

    session = await identity.get_current_session()
    if not session.authenticated:
        response.headers[CART_TOKEN_HEADER] = engine.guest_key

    _raise_for_failure(await engine.load())
    return engine


# ---- helpers ----


def _raise_for_failure(result: CartResult) -> None:
    if result.ok:
        return
    raise HTTPException(
        status_code=_FAILURE_STATUS[result.reason],
        detail={"reason": result.reason.value, "message": result.detail},
    )


def _to_read(result: CartResult) -> CartRead:
    return CartRead(
        lines=[CartLineRead.from_line(line) for line in result.lines],
        total_items=result.total_items,
        total_price=float(result.total_price),
    )


def _resolve_snapshots(
    session: Session, payload: CartItemCreate
) -> tuple[ProductSnapshot, VariantSnapshot | None]:
    """
    Validate the requested product / variant against the catalog and
    build display snapshots for it.

    Rules:
      - product must exist and be active
      - variant, when given, must belong to the product
    """
    product = product_repo.get_by_id(session, payload.product_id)
    if not product:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Product not found",
        )
    if not product.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Product is not available",
        )

    variant = None
    if payload.variant_id is not None:
        variant = product_repo.get_variant(session, product.id, payload.variant_id)
        if not variant:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Variant not found",
            )

    image_url = product_repo.first_image_url(session, product.id)
    return (
        product_snapshot(product, image_url),
        variant_snapshot(variant) if variant else None,
    )


# ---- endpoints ----


@router.get("", response_model=CartRead)
async def get_my_cart(engine: CartEngine = Depends(get_cart_engine)):
    """
    Get the current cart (guest or authenticated) with totals.
    """
    return _to_read(engine.state())


@router.post("/items", response_model=CartRead)
async def add_to_cart(
    payload: CartItemCreate,
    engine: CartEngine = Depends(get_cart_engine),
    session: Session = Depends(get_session),
):
    """
    Add a product (optionally a specific variant) to the cart.

    Adding a product/variant already in the cart increases its quantity.
    Returns the updated cart.
    """
    product, variant = await run_in_threadpool(_resolve_snapshots, session, payload)
    result = await engine.add_item(
        payload.product_id,
        payload.variant_id,
        payload.quantity,
        product=product,
        variant=variant,
    )
    _raise_for_failure(result)
    return _to_read(result)


@router.patch("/items/{line_id}", response_model=CartRead)
async def update_cart_item(
    line_id: str,
    payload: CartItemUpdate,
    engine: CartEngine = Depends(get_cart_engine),
):
    """
    Set the quantity of a cart line. Zero or less removes the line.
    """
    result = await engine.update_quantity(line_id, payload.quantity)
    _raise_for_failure(result)
    return _to_read(result)


@router.delete("/items/{line_id}", response_model=CartRead)
async def remove_cart_item(
    line_id: str,
    engine: CartEngine = Depends(get_cart_engine),
):
    """
    Remove a line from the cart. Unknown lines are ignored.
    """
    result = await engine.remove_item(line_id)
    _raise_for_failure(result)
    return _to_read(result)


@router.delete("", response_model=CartRead)
async def clear_cart(engine: CartEngine = Depends(get_cart_engine)):
    """
    Clear the entire cart.

    Returns an empty cart.
    """
    result = await engine.clear_cart()
    _raise_for_failure(result)
    return _to_read(result)


@router.post("/merge", response_model=CartRead)
async def merge_guest_cart(
    engine: CartEngine = Depends(get_cart_engine),
    cart_token: str | None = Header(default=None, alias=CART_TOKEN_HEADER),
):
    """
    Move the guest cart identified by X-Cart-Token into the signed-in
    user's cart. Call right after login.

    Auth:
      - Requires valid Supabase JWT.
    """
    if not cart_token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{CART_TOKEN_HEADER} header required",
        )
    result = await engine.merge_guest_cart(cart_token)
    _raise_for_failure(result)
    return _to_read(result)


@router.get("/summary", response_model=CheckoutSummaryRead)
async def get_checkout_summary(engine: CartEngine = Depends(get_cart_engine)):
    """
    Checkout order summary: subtotal, shipping, tax and total.
    """
    summary = engine.checkout_summary()
    return CheckoutSummaryRead(
        total_items=summary.total_items,
        subtotal=float(summary.subtotal),
        shipping=float(summary.shipping),
        tax=float(summary.tax),
        total=float(summary.total),
    )
