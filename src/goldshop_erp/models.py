"""Typed records for the documents held in each collection.

The store deals in plain dictionaries keyed by the worksheet field names
(``productName``, ``createdAt``...). The dataclasses below are the in-memory
view used by the services; ``from_document`` and ``to_document`` translate
between the two and normalise the raw cell values (numbers come back from
Excel as ``int``/``float``, money is written as exact decimal strings).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Optional

from .constants import ID_FIELD, OWNER_FIELD, VERSION_FIELD


CENT = Decimal("0.01")


def to_decimal(raw: Any, default: str = "0.00") -> Decimal:
    """Coerce a raw cell value into :class:`~decimal.Decimal`."""

    if raw is None or raw == "":
        return Decimal(default)
    if isinstance(raw, Decimal):
        return raw
    return Decimal(str(raw))


def to_money(raw: Any) -> Decimal:
    """Coerce ``raw`` and round it half-up to two decimal places."""

    return to_decimal(raw).quantize(CENT, rounding=ROUND_HALF_UP)


def _to_int(raw: Any, default: int = 0) -> int:
    if raw is None or raw == "":
        return default
    return int(Decimal(str(raw)))


def _to_text(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    return str(raw)


def _money_cell(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


@dataclass(frozen=True)
class Principal:
    """The authenticated operator on whose behalf a write is made."""

    uid: str
    email: str = ""


@dataclass(frozen=True)
class Product:
    """In-memory view of a ``products`` document."""

    id: str
    name: str
    gram: Decimal
    price: Decimal
    stock: int
    created_at: Optional[str] = None
    version: int = 0

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "Product":
        return cls(
            id=str(doc[ID_FIELD]),
            name=str(doc.get("name") or ""),
            gram=to_decimal(doc.get("gram"), default="0"),
            price=to_decimal(doc.get("price")),
            stock=_to_int(doc.get("stock")),
            created_at=_to_text(doc.get("createdAt")),
            version=_to_int(doc.get(VERSION_FIELD)),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "gram": _money_cell(self.gram),
            "price": _money_cell(self.price),
            "stock": self.stock,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class Customer:
    """In-memory view of a ``customers`` document.

    ``total``, ``paid``, ``sold_item``/``bought_item`` and ``date`` describe
    the latest reconciled transaction only; ``debt`` is the running balance.
    """

    id: str
    name: str
    tc: str
    phone: Optional[str] = None
    sold_item: Optional[str] = None
    bought_item: Optional[str] = None
    total: Decimal = Decimal("0.00")
    paid: Decimal = Decimal("0.00")
    debt: Decimal = Decimal("0.00")
    date: Optional[str] = None
    created_at: Optional[str] = None
    version: int = 0

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "Customer":
        return cls(
            id=str(doc[ID_FIELD]),
            name=str(doc.get("name") or ""),
            tc=str(doc.get("tc") or ""),
            phone=_to_text(doc.get("phone")),
            sold_item=_to_text(doc.get("soldItem")),
            bought_item=_to_text(doc.get("boughtItem")),
            total=to_decimal(doc.get("total")),
            paid=to_decimal(doc.get("paid")),
            debt=to_decimal(doc.get("debt")),
            date=_to_text(doc.get("date")),
            created_at=_to_text(doc.get("createdAt")),
            version=_to_int(doc.get(VERSION_FIELD)),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "tc": self.tc,
            "phone": self.phone,
            "soldItem": self.sold_item,
            "boughtItem": self.bought_item,
            "total": _money_cell(self.total),
            "paid": _money_cell(self.paid),
            "debt": _money_cell(self.debt),
            "date": self.date,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class TradeRecord:
    """In-memory view of a ``sales`` or ``purchases`` document."""

    id: str
    product_id: Optional[str]
    product_name: str
    quantity: int
    total: Decimal
    paid: Decimal
    date: str
    payment_method: str
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_tc: Optional[str] = None
    customer_phone: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "TradeRecord":
        return cls(
            id=str(doc[ID_FIELD]),
            product_id=_to_text(doc.get("productId")),
            product_name=str(doc.get("productName") or ""),
            quantity=_to_int(doc.get("quantity")),
            total=to_decimal(doc.get("total")),
            paid=to_decimal(doc.get("paid")),
            date=str(doc.get("date") or ""),
            payment_method=str(doc.get("paymentMethod") or ""),
            customer_id=_to_text(doc.get("customerId")),
            customer_name=_to_text(doc.get("customerName")),
            customer_tc=_to_text(doc.get("customerTc")),
            customer_phone=_to_text(doc.get("customerPhone")),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "productId": self.product_id,
            "productName": self.product_name,
            "customerId": self.customer_id,
            "customerName": self.customer_name,
            "customerTc": self.customer_tc,
            "customerPhone": self.customer_phone,
            "quantity": self.quantity,
            "total": _money_cell(self.total),
            "paid": _money_cell(self.paid),
            "date": self.date,
            "paymentMethod": self.payment_method,
        }


# Sales and purchases share one shape.
Sale = TradeRecord
Purchase = TradeRecord


@dataclass(frozen=True)
class SupplierTransaction:
    """Stock bought in from a wholesaler (``supplierTransactions``)."""

    id: str
    supplier_name: str
    product_id: Optional[str]
    product_name: str
    quantity: int
    total: Decimal
    paid: Decimal
    date: str
    payment_method: str

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "SupplierTransaction":
        return cls(
            id=str(doc[ID_FIELD]),
            supplier_name=str(doc.get("supplierName") or ""),
            product_id=_to_text(doc.get("productId")),
            product_name=str(doc.get("productName") or ""),
            quantity=_to_int(doc.get("quantity")),
            total=to_decimal(doc.get("total")),
            paid=to_decimal(doc.get("paid")),
            date=str(doc.get("date") or ""),
            payment_method=str(doc.get("paymentMethod") or ""),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "supplierName": self.supplier_name,
            "productId": self.product_id,
            "productName": self.product_name,
            "quantity": self.quantity,
            "total": _money_cell(self.total),
            "paid": _money_cell(self.paid),
            "date": self.date,
            "paymentMethod": self.payment_method,
        }


@dataclass(frozen=True)
class Transaction:
    """In-memory view of a ``transactions`` (cash movement) document."""

    id: str
    type: str
    description: str
    amount: Decimal
    date: str
    method: str

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "Transaction":
        return cls(
            id=str(doc[ID_FIELD]),
            type=str(doc.get("type") or ""),
            description=str(doc.get("description") or ""),
            amount=to_decimal(doc.get("amount")),
            date=str(doc.get("date") or ""),
            method=str(doc.get("method") or ""),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "amount": _money_cell(self.amount),
            "date": self.date,
            "method": self.method,
        }


@dataclass(frozen=True)
class CurrencyTransaction:
    """In-memory view of a ``currencyTransactions`` document."""

    id: str
    name: str
    tc: str
    amount: Decimal
    rate: Decimal
    type: str
    date: str
    total: Decimal

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "CurrencyTransaction":
        return cls(
            id=str(doc[ID_FIELD]),
            name=str(doc.get("name") or ""),
            tc=str(doc.get("tc") or ""),
            amount=to_decimal(doc.get("amount")),
            rate=to_decimal(doc.get("rate"), default="0"),
            type=str(doc.get("type") or ""),
            date=str(doc.get("date") or ""),
            total=to_decimal(doc.get("total")),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "tc": self.tc,
            "amount": _money_cell(self.amount),
            "rate": _money_cell(self.rate),
            "type": self.type,
            "date": self.date,
            "total": _money_cell(self.total),
        }


@dataclass(frozen=True)
class DailyCashRecord:
    """In-memory view of a per-operator ``dailyCashRecords`` document."""

    id: str
    owner_uid: str
    date: str
    initial_cash: Decimal
    final_cash: Decimal
    total_movement: Decimal

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "DailyCashRecord":
        return cls(
            id=str(doc[ID_FIELD]),
            owner_uid=str(doc.get(OWNER_FIELD) or ""),
            date=str(doc.get("date") or ""),
            initial_cash=to_decimal(doc.get("initialCash")),
            final_cash=to_decimal(doc.get("finalCash")),
            total_movement=to_decimal(doc.get("totalMovement")),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "initialCash": _money_cell(self.initial_cash),
            "finalCash": _money_cell(self.final_cash),
            "totalMovement": _money_cell(self.total_movement),
        }


__all__ = [
    "CENT",
    "to_decimal",
    "to_money",
    "Principal",
    "Product",
    "Customer",
    "TradeRecord",
    "Sale",
    "Purchase",
    "SupplierTransaction",
    "Transaction",
    "CurrencyTransaction",
    "DailyCashRecord",
]
