# storefront/repositories/guest_cart_store.py
"""
Storage for anonymous (guest) carts.

A guest cart is addressed by an opaque token handed to the client
(the `X-Cart-Token` header). Only the line list is stored; totals are
always recomputed from it after loading.
"""

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Protocol

from pydantic import TypeAdapter, ValidationError

from storefront.core.exceptions import GuestCartStorageError
from storefront.schemas.cart import CartLine

logger = logging.getLogger(__name__)

_lines_adapter = TypeAdapter(list[CartLine])

# uuid4 hex, with or without dashes
_TOKEN_RE = re.compile(r"^[0-9a-fA-F-]{16,64}$")


def is_valid_guest_key(key: str) -> bool:
    return bool(_TOKEN_RE.match(key))


class GuestCartStore(Protocol):
    def load(self, key: str) -> list[CartLine]: ...

    def save(self, key: str, lines: list[CartLine]) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryGuestCartStore:
    """Process-local guest carts. Lost on restart."""

    def __init__(self):
        self._carts: dict[str, list[CartLine]] = {}

    def load(self, key: str) -> list[CartLine]:
        return [line.model_copy(deep=True) for line in self._carts.get(key, [])]

    def save(self, key: str, lines: list[CartLine]) -> None:
        self._carts[key] = [line.model_copy(deep=True) for line in lines]

    def delete(self, key: str) -> None:
        self._carts.pop(key, None)


class JsonFileGuestCartStore:
    """
    One JSON document per guest token under `directory`.

    Survives process restarts. Writes go to a temp file first and are
    swapped in with os.replace, so a crash never leaves half a cart.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        if not is_valid_guest_key(key):
            raise GuestCartStorageError(f"Invalid guest cart token: {key!r}")
        return self.directory / f"{key}.json"

    def load(self, key: str) -> list[CartLine]:
        path = self._path(key)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise GuestCartStorageError(f"Cannot read guest cart {key}") from exc

        try:
            return _lines_adapter.validate_json(raw)
        except ValidationError:
            # A corrupt document is treated as an empty cart.
            logger.warning("Discarding unreadable guest cart %s", key)
            return []

    def save(self, key: str, lines: list[CartLine]) -> None:
        path = self._path(key)
        tmp_name = None
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
            with os.fdopen(fd, "wb") as fh:
                fh.write(_lines_adapter.dump_json(lines))
            os.replace(tmp_name, path)
        except OSError as exc:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise GuestCartStorageError(f"Cannot write guest cart {key}") from exc

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise GuestCartStorageError(f"Cannot delete guest cart {key}") from exc
