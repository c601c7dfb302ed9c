# storefront/services/cart_persistence.py
import uuid
from collections.abc import Callable
from typing import Protocol

import httpx
from postgrest.exceptions import APIError
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from storefront.core.exceptions import CartPersistenceError
from storefront.repositories.cart_repo import CartRepository
from storefront.repositories.supabase_cart_repo import SupabaseCartRepository
from storefront.schemas.cart import CartLine


class CartPersistence(Protocol):
    """
    Row store for authenticated carts, always scoped by user.

    Implementations raise CartPersistenceError (or DuplicateCartLineError
    from insert_line) and nothing else.
    """

    async def find_line(
        self, user_id: uuid.UUID, product_id: str, variant_id: str | None
    ) -> CartLine | None: ...

    async def insert_line(
        self, user_id: uuid.UUID, product_id: str, variant_id: str | None, quantity: int
    ) -> CartLine: ...

    async def update_line_quantity(
        self, line_id: str, user_id: uuid.UUID, quantity: int
    ) -> None: ...

    async def delete_line(self, line_id: str, user_id: uuid.UUID) -> None: ...

    async def delete_all_lines(self, user_id: uuid.UUID) -> None: ...

    async def list_lines(self, user_id: uuid.UUID) -> list[CartLine]: ...


class SqlCartPersistence:
    """
    Async adapter over CartRepository.

    Each call opens its own Session and runs in the threadpool, so the
    synchronous SQLModel engine never blocks the event loop.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        repo: CartRepository | None = None,
    ):
        self.session_factory = session_factory
        self.repo = repo or CartRepository()

    async def _run(self, method: str, *args):
        def call():
            with self.session_factory() as session:
                return getattr(self.repo, method)(session, *args)

        try:
            return await run_in_threadpool(call)
        except SQLAlchemyError as exc:
            raise CartPersistenceError(f"{method} failed: {exc}") from exc

    async def find_line(self, user_id, product_id, variant_id):
        return await self._run("find_line", user_id, product_id, variant_id)

    async def insert_line(self, user_id, product_id, variant_id, quantity):
        return await self._run("insert_line", user_id, product_id, variant_id, quantity)

    async def update_line_quantity(self, line_id, user_id, quantity):
        await self._run("update_line_quantity", line_id, user_id, quantity)

    async def delete_line(self, line_id, user_id):
        await self._run("delete_line", line_id, user_id)

    async def delete_all_lines(self, user_id):
        await self._run("delete_all_lines", user_id)

    async def list_lines(self, user_id):
        return await self._run("list_lines", user_id)


class SupabaseCartPersistence:
    """
    Async adapter over SupabaseCartRepository.

    supabase-py's sync client is used from the threadpool; PostgREST
    errors and transport failures become CartPersistenceError.
    """

    def __init__(self, repo: SupabaseCartRepository):
        self.repo = repo

    async def _run(self, method: str, *args):
        try:
            return await run_in_threadpool(getattr(self.repo, method), *args)
        except CartPersistenceError:
            raise
        except APIError as exc:
            raise CartPersistenceError(f"{method} failed: {exc.message}") from exc
        except httpx.HTTPError as exc:
            raise CartPersistenceError(f"{method} failed: {exc}") from exc

    async def find_line(self, user_id, product_id, variant_id):
        return await self._run("find_line", user_id, product_id, variant_id)

    async def insert_line(self, user_id, product_id, variant_id, quantity):
        return await self._run("insert_line", user_id, product_id, variant_id, quantity)

    async def update_line_quantity(self, line_id, user_id, quantity):
        await self._run("update_line_quantity", line_id, user_id, quantity)

    async def delete_line(self, line_id, user_id):
        await self._run("delete_line", line_id, user_id)

    async def delete_all_lines(self, user_id):
        await self._run("delete_all_lines", user_id)

    async def list_lines(self, user_id):
        return await self._run("list_lines", user_id)
