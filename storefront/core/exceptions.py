# storefront/core/exceptions.py


class CartError(Exception):
    """Base class for failures inside the cart layer."""


class CartPersistenceError(CartError):
    """
    A persistence backend call failed.

    Covers network failures, authorization (RLS) rejections and
    database errors. The underlying backend exception is chained.
    """


class DuplicateCartLineError(CartPersistenceError):
    """
    Insert hit the (user_id, product_id, variant_id) unique constraint.

    Another writer created the line first; callers should increment
    the existing row instead.
    """


class GuestCartStorageError(CartError):
    """Reading or writing an anonymous cart failed."""
