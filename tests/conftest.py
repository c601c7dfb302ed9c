# tests/conftest.py
"""
Shared fixtures.

Settings are read from the environment at import time, so the
variables below are set before anything from `storefront` is imported.
"""

import os
import tempfile
from dataclasses import dataclass
from decimal import Decimal

os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_KEY", "test-anon-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-0123456789abcdef")
os.environ.setdefault("GUEST_CART_DIR", tempfile.mkdtemp(prefix="guest-carts-"))

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from storefront.core.auth import StaticIdentityProvider
from storefront.models.cart import CartItem  # noqa: F401
from storefront.models.product import Product, ProductImage, ProductVariant
from storefront.repositories.guest_cart_store import InMemoryGuestCartStore
from storefront.schemas.cart import CartSession
from storefront.services.cart_engine import CartEngine, CartLocks
from storefront.services.cart_persistence import SqlCartPersistence


@dataclass
class Catalog:
    dress: Product
    scarf: Product
    scarf_small: ProductVariant   # no own price -> scarf base price
    scarf_large: ProductVariant   # own price
    retired: Product              # inactive


@pytest.fixture
def db_engine():
    """
    Fresh in-memory SQLite database per test.

    StaticPool keeps the single connection alive across the threadpool
    workers the async persistence adapter runs in.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    try:
        yield engine
    finally:
        SQLModel.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return lambda: Session(db_engine)


@pytest.fixture
def catalog(session_factory) -> Catalog:
    with session_factory() as session:
        dress = Product(
            name="Silk Wrap Dress",
            slug="silk-wrap-dress",
            price=Decimal("100.00"),
            inventory_quantity=10,
        )
        scarf = Product(
            name="Cashmere Scarf",
            slug="cashmere-scarf",
            price=Decimal("25.50"),
            inventory_quantity=10,
        )
        retired = Product(
            name="Linen Blazer",
            slug="linen-blazer",
            price=Decimal("80.00"),
            status="inactive",
        )
        session.add_all([dress, scarf, retired])
        session.commit()

        scarf_small = ProductVariant(
            product_id=scarf.id, title="S / Red", option1="S", option2="Red"
        )
        scarf_large = ProductVariant(
            product_id=scarf.id,
            title="L / Red",
            option1="L",
            option2="Red",
            price=Decimal("30.00"),
        )
        session.add_all(
            [
                scarf_small,
                scarf_large,
                ProductImage(
                    product_id=dress.id,
                    url="https://cdn.example.com/dress-2.jpg",
                    sort_order=2,
                ),
                ProductImage(
                    product_id=dress.id,
                    url="https://cdn.example.com/dress-1.jpg",
                    sort_order=1,
                ),
                ProductImage(
                    product_id=scarf.id,
                    url="https://cdn.example.com/scarf-1.jpg",
                    alt_text="Cashmere scarf, folded",
                ),
            ]
        )
        session.commit()

        for row in (dress, scarf, retired, scarf_small, scarf_large):
            session.refresh(row)
        session.expunge_all()

    return Catalog(
        dress=dress,
        scarf=scarf,
        scarf_small=scarf_small,
        scarf_large=scarf_large,
        retired=retired,
    )


@pytest.fixture
def persistence(session_factory):
    return SqlCartPersistence(session_factory)


@pytest.fixture
def guest_store():
    return InMemoryGuestCartStore()


@pytest.fixture
def cart_locks():
    return CartLocks()


@pytest.fixture
def make_engine(persistence, guest_store, cart_locks):
    """
    Build a CartEngine for a user id (None = guest).

    Engines built by one test share persistence, guest store and locks,
    like two requests of the same process.
    """

    def factory(user_id=None, guest_key=None, persistence_override=None):
        if user_id is None:
            session = CartSession(authenticated=False)
        else:
            session = CartSession(authenticated=True, user_id=user_id)
        return CartEngine(
            identity=StaticIdentityProvider(session),
            persistence=persistence_override or persistence,
            guest_store=guest_store,
            guest_key=guest_key,
            locks=cart_locks,
        )

    return factory
