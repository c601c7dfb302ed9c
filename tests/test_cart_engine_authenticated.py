# tests/test_cart_engine_authenticated.py
import asyncio
import uuid
from decimal import Decimal

import pytest

from storefront.core.exceptions import (
    CartPersistenceError,
    DuplicateCartLineError,
    GuestCartStorageError,
)
from storefront.repositories.guest_cart_store import InMemoryGuestCartStore
from storefront.schemas.cart import CartFailureReason

pytestmark = pytest.mark.asyncio

ALICE = uuid.UUID("11111111-1111-4111-8111-111111111111")
BOB = uuid.UUID("22222222-2222-4222-8222-222222222222")


class FlakyPersistence:
    """
    Wraps a real persistence backend and fails the named operations.
    """

    def __init__(self, inner, fail_on=()):
        self.inner = inner
        self.fail_on = set(fail_on)
        self.calls = []

    def __getattr__(self, name):
        method = getattr(self.inner, name)

        async def call(*args):
            self.calls.append(name)
            if name in self.fail_on:
                raise CartPersistenceError(f"{name} unavailable")
            return await method(*args)

        return call


class RacingPersistence(FlakyPersistence):
    """
    Simulates another process inserting the same line between our
    lookup and our insert.
    """

    def __init__(self, inner):
        super().__init__(inner)
        self.raced = False

    def __getattr__(self, name):
        if name == "insert_line" and not self.raced:

            async def insert_after_rival(user_id, product_id, variant_id, quantity):
                self.raced = True
                await self.inner.insert_line(user_id, product_id, variant_id, 10)
                raise DuplicateCartLineError("uq_cart_items_user_product_variant")

            return insert_after_rival
        return super().__getattr__(name)


async def test_add_deduplicates_and_refetches_snapshots(make_engine, catalog):
    engine = make_engine(ALICE)
    dress_id = str(catalog.dress.id)

    await engine.add_item(dress_id, None, 2)
    result = await engine.add_item(dress_id, None, 3)

    assert result.ok
    assert len(engine.lines) == 1
    line = engine.lines[0]
    assert line.quantity == 5
    assert line.product.name == "Silk Wrap Dress"
    # first gallery image by sort order
    assert line.product.image_url == "https://cdn.example.com/dress-1.jpg"
    assert engine.total_items == 5
    assert engine.total_price == Decimal("500.00")


async def test_variant_pricing_and_fallback(make_engine, catalog):
    engine = make_engine(ALICE)
    scarf_id = str(catalog.scarf.id)

    await engine.add_item(scarf_id, str(catalog.scarf_small.id), 2)
    await engine.add_item(scarf_id, str(catalog.scarf_large.id), 1)
    result = await engine.add_item(scarf_id, None, 1)

    assert len(result.lines) == 3
    prices = {line.variant_id: line.unit_price for line in result.lines}
    assert prices[str(catalog.scarf_small.id)] == Decimal("25.50")
    assert prices[str(catalog.scarf_large.id)] == Decimal("30.00")
    assert prices[None] == Decimal("25.50")
    assert result.total_items == 4
    assert result.total_price == Decimal("106.50")


async def test_update_quantity_writes_through(make_engine, catalog):
    engine = make_engine(ALICE)
    await engine.add_item(str(catalog.dress.id), None, 1)

    await engine.update_quantity(engine.lines[0].id, 4)

    assert engine.total_items == 4
    fresh = make_engine(ALICE)
    await fresh.fetch_cart()
    assert fresh.lines[0].quantity == 4


async def test_update_to_zero_deletes_row(make_engine, catalog):
    engine = make_engine(ALICE)
    await engine.add_item(str(catalog.dress.id), None, 1)

    result = await engine.update_quantity(engine.lines[0].id, 0)

    assert result.ok
    assert result.lines == []
    assert result.total_items == 0
    assert result.total_price == Decimal("0")
    fresh = make_engine(ALICE)
    await fresh.fetch_cart()
    assert fresh.lines == []


async def test_remove_is_scoped_to_owner(make_engine, catalog):
    alice = make_engine(ALICE)
    await alice.add_item(str(catalog.dress.id), None, 1)
    alice_line = alice.lines[0].id

    bob = make_engine(BOB)
    result = await bob.remove_item(alice_line)
    await bob.update_quantity(alice_line, 99)

    assert result.ok
    await alice.fetch_cart()
    assert [line.id for line in alice.lines] == [alice_line]
    assert alice.lines[0].quantity == 1


async def test_clear_is_scoped_to_owner(make_engine, catalog):
    alice = make_engine(ALICE)
    bob = make_engine(BOB)
    await alice.add_item(str(catalog.dress.id), None, 1)
    await bob.add_item(str(catalog.dress.id), None, 2)

    first = await alice.clear_cart()
    second = await alice.clear_cart()

    assert first.ok and second.ok
    assert alice.lines == [] and alice.total_items == 0
    assert alice.total_price == Decimal("0")
    await bob.fetch_cart()
    assert bob.total_items == 2


async def test_concurrent_adds_never_duplicate_lines(make_engine, catalog):
    # Two UI surfaces (two engines) hitting the same cart at once.
    drawer = make_engine(ALICE)
    product_page = make_engine(ALICE)
    dress_id = str(catalog.dress.id)

    results = await asyncio.gather(
        drawer.add_item(dress_id, None, 1),
        product_page.add_item(dress_id, None, 2),
        drawer.add_item(dress_id, None, 3),
    )

    assert all(result.ok for result in results)
    check = make_engine(ALICE)
    await check.fetch_cart()
    assert len(check.lines) == 1
    assert check.lines[0].quantity == 6


async def test_duplicate_insert_is_retried_as_increment(make_engine, persistence, catalog):
    engine = make_engine(ALICE, persistence_override=RacingPersistence(persistence))

    result = await engine.add_item(str(catalog.dress.id), None, 2)

    assert result.ok
    assert len(engine.lines) == 1
    assert engine.lines[0].quantity == 12


@pytest.mark.parametrize("failing", ["find_line", "insert_line", "list_lines"])
async def test_add_failure_leaves_state_unchanged(make_engine, persistence, catalog, failing):
    engine = make_engine(ALICE)
    await engine.add_item(str(catalog.scarf.id), None, 1)
    before = [line.model_dump() for line in engine.lines]

    engine.persistence = FlakyPersistence(persistence, fail_on=[failing])
    result = await engine.add_item(str(catalog.dress.id), None, 1)

    assert not result.ok
    assert result.reason == CartFailureReason.PERSISTENCE_ERROR
    assert failing in result.detail
    assert [line.model_dump() for line in engine.lines] == before
    assert engine.total_items == 1
    assert not engine.is_loading


async def test_remove_failure_keeps_line(make_engine, persistence, catalog):
    engine = make_engine(ALICE)
    await engine.add_item(str(catalog.dress.id), None, 1)
    engine.persistence = FlakyPersistence(persistence, fail_on=["delete_line"])

    result = await engine.remove_item(engine.lines[0].id)

    assert not result.ok
    assert len(engine.lines) == 1
    assert engine.total_items == 1


async def test_clear_failure_keeps_lines_and_totals(make_engine, persistence, catalog):
    engine = make_engine(ALICE)
    await engine.add_item(str(catalog.dress.id), None, 2)
    engine.persistence = FlakyPersistence(persistence, fail_on=["delete_all_lines"])

    result = await engine.clear_cart()

    assert not result.ok
    assert engine.total_items == 2
    assert engine.total_price == Decimal("200.00")


async def test_is_loading_is_set_only_during_remote_calls(make_engine, persistence, catalog):
    engine = make_engine(ALICE)
    seen = []

    class Spy(FlakyPersistence):
        def __getattr__(self, name):
            seen.append(engine.is_loading)
            return super().__getattr__(name)

    engine.persistence = Spy(persistence)
    await engine.add_item(str(catalog.dress.id), None, 1)

    assert seen and all(seen)
    assert engine.is_loading is False


async def test_merge_replays_guest_lines_then_clears_guest_cart(
    make_engine, guest_store, catalog
):
    token = "c" * 32
    guest = make_engine(guest_key=token)
    await guest.add_item(str(catalog.dress.id), None, 2)
    await guest.add_item(str(catalog.scarf.id), str(catalog.scarf_large.id), 1)

    alice = make_engine(ALICE)
    await alice.add_item(str(catalog.dress.id), None, 1)

    result = await alice.merge_guest_cart(token)

    assert result.ok
    quantities = {(line.product_id, line.variant_id): line.quantity for line in result.lines}
    assert quantities == {
        (str(catalog.dress.id), None): 3,
        (str(catalog.scarf.id), str(catalog.scarf_large.id)): 1,
    }
    assert result.total_price == Decimal("330.00")
    assert guest_store.load(token) == []


async def test_partial_merge_keeps_unmerged_guest_lines(
    make_engine, persistence, guest_store, catalog
):
    token = "d" * 32
    guest = make_engine(guest_key=token)
    await guest.add_item(str(catalog.dress.id), None, 1)
    await guest.add_item(str(catalog.scarf.id), None, 1)

    calls = {"n": 0}

    class FailSecondInsert(FlakyPersistence):
        def __getattr__(self, name):
            if name == "insert_line":
                calls["n"] += 1
                if calls["n"] == 2:
                    self.fail_on.add(name)
            return super().__getattr__(name)

    alice = make_engine(ALICE, persistence_override=FailSecondInsert(persistence))
    result = await alice.merge_guest_cart(token)

    assert not result.ok
    remaining = guest_store.load(token)
    assert [line.product_id for line in remaining] == [str(catalog.scarf.id)]


async def test_merge_requires_authentication(make_engine):
    result = await make_engine().merge_guest_cart("e" * 32)

    assert not result.ok
    assert result.reason == CartFailureReason.NOT_AUTHENTICATED


async def test_remove_response_includes_lines_added_elsewhere(make_engine, catalog):
    drawer = make_engine(ALICE)
    await drawer.add_item(str(catalog.dress.id), None, 1)
    dress_line = drawer.lines[0].id

    await make_engine(ALICE).add_item(str(catalog.scarf.id), None, 2)

    result = await drawer.remove_item(dress_line)

    assert result.ok
    assert [line.product_id for line in result.lines] == [str(catalog.scarf.id)]
    assert result.total_items == 2


class ArmedGuestStore(InMemoryGuestCartStore):
    """Guest store whose writes start failing once `broken` is set."""

    def __init__(self):
        super().__init__()
        self.broken = False
        self.writes = 0

    def _write(self):
        self.writes += 1
        if self.broken and self.writes > 1:
            raise GuestCartStorageError("disk full")

    def save(self, key, lines):
        self._write()
        super().save(key, lines)

    def delete(self, key):
        self._write()
        super().delete(key)


async def test_merge_retry_after_store_failure_does_not_double_count(
    make_engine, catalog
):
    token = "b" * 32
    store = ArmedGuestStore()
    guest = make_engine(guest_key=token)
    guest.guest_store = store
    await guest.add_item(str(catalog.dress.id), None, 2)
    await guest.add_item(str(catalog.scarf.id), None, 1)

    alice = make_engine(ALICE)
    alice.guest_store = store
    store.broken = True
    store.writes = 0

    # The first line lands; the write after it fails.
    first = await alice.merge_guest_cart(token)
    assert not first.ok
    assert [line.product_id for line in store.load(token)] == [str(catalog.scarf.id)]

    store.broken = False
    second = await alice.merge_guest_cart(token)

    assert second.ok
    quantities = {line.product_id: line.quantity for line in second.lines}
    assert quantities == {str(catalog.dress.id): 2, str(catalog.scarf.id): 1}
    assert store.load(token) == []
