"""Exception hierarchy shared by the store, ledger and CRUD services."""

from __future__ import annotations


class GoldshopError(Exception):
    """Base class for every error raised deliberately by the package."""


class ValidationError(GoldshopError):
    """Raised when a request is malformed; no write has been attempted."""


class NotFoundError(GoldshopError):
    """Raised when a referenced product, customer or document is unknown."""


class InsufficientStockError(GoldshopError):
    """Raised when a sale would drive a product's stock below zero."""

    def __init__(self, product_name: str, stock: int, requested: int) -> None:
        super().__init__(
            f"Insufficient stock for '{product_name}': {stock} on hand, {requested} requested"
        )
        self.product_name = product_name
        self.stock = stock
        self.requested = requested


class CustomerResolutionAmbiguous(GoldshopError):
    """Raised when a national id resolves to more than one customer."""


class TransientStoreError(GoldshopError):
    """Raised when the backing store cannot be read or written right now."""


class ConcurrentModificationError(GoldshopError):
    """Raised when a conditional write finds the document changed underneath."""


__all__ = [
    "GoldshopError",
    "ValidationError",
    "NotFoundError",
    "InsufficientStockError",
    "CustomerResolutionAmbiguous",
    "TransientStoreError",
    "ConcurrentModificationError",
]
