"""Enumerations and store schemas shared across the gold shop modules.

Centralises domain constants so that the document store access layer, the
ledger and CRUD services, and the CLI rely on a single source of truth for
collection names, field names and labels.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping, Sequence


# Central schema version expected by all layers when validating the store.
EXPECTED_SCHEMA_VERSION = "1.1.0"

CANONICAL_DATE_FORMAT = "%Y-%m-%d"

# Placeholder the sales form writes when no national id was typed in.
ANONYMOUS_TC = "-"


class Collection(str, Enum):
    """Enumerate the document collections managed by the store."""

    PRODUCTS = "products"
    CUSTOMERS = "customers"
    SALES = "sales"
    PURCHASES = "purchases"
    TRANSACTIONS = "transactions"
    CURRENCY_TRANSACTIONS = "currencyTransactions"
    SUPPLIER_TRANSACTIONS = "supplierTransactions"
    DAILY_CASH_RECORDS = "dailyCashRecords"


class TransactionType(str, Enum):
    """Cash-movement labels recorded in the ``transactions`` collection."""

    SALE = "sale"
    PURCHASE = "purchase"
    INFLOW = "inflow"
    OUTFLOW = "outflow"


# Movement types that bring cash into the till versus take it out.
INCOME_TYPES = frozenset({TransactionType.SALE.value, TransactionType.INFLOW.value})
EXPENSE_TYPES = frozenset({TransactionType.PURCHASE.value, TransactionType.OUTFLOW.value})


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms."""

    CASH = "cash"
    IBAN = "iban"
    POS = "pos"


class CurrencyDirection(str, Enum):
    """Whether the shop bought or sold foreign currency."""

    BUY = "buy"
    SELL = "sell"


# Identity and optimistic-lock columns lead every worksheet.
ID_FIELD = "id"
VERSION_FIELD = "version"
OWNER_FIELD = "ownerUid"

COLLECTION_FIELDS: Mapping[str, Sequence[str]] = {
    Collection.PRODUCTS.value: [
        ID_FIELD,
        VERSION_FIELD,
        "name",
        "gram",
        "price",
        "stock",
        "createdAt",
    ],
    Collection.CUSTOMERS.value: [
        ID_FIELD,
        VERSION_FIELD,
        "name",
        "tc",
        "phone",
        "soldItem",
        "boughtItem",
        "total",
        "paid",
        "debt",
        "date",
        "createdAt",
    ],
    Collection.SALES.value: [
        ID_FIELD,
        VERSION_FIELD,
        "productId",
        "productName",
        "customerId",
        "customerName",
        "customerTc",
        "customerPhone",
        "quantity",
        "total",
        "paid",
        "date",
        "paymentMethod",
    ],
    Collection.PURCHASES.value: [
        ID_FIELD,
        VERSION_FIELD,
        "productId",
        "productName",
        "customerId",
        "customerName",
        "customerTc",
        "customerPhone",
        "quantity",
        "total",
        "paid",
        "date",
        "paymentMethod",
    ],
    Collection.TRANSACTIONS.value: [
        ID_FIELD,
        VERSION_FIELD,
        "type",
        "description",
        "amount",
        "date",
        "method",
    ],
    Collection.CURRENCY_TRANSACTIONS.value: [
        ID_FIELD,
        VERSION_FIELD,
        "name",
        "tc",
        "amount",
        "rate",
        "type",
        "date",
        "total",
    ],
    Collection.SUPPLIER_TRANSACTIONS.value: [
        ID_FIELD,
        VERSION_FIELD,
        "supplierName",
        "productId",
        "productName",
        "quantity",
        "total",
        "paid",
        "date",
        "paymentMethod",
    ],
    Collection.DAILY_CASH_RECORDS.value: [
        ID_FIELD,
        VERSION_FIELD,
        OWNER_FIELD,
        "date",
        "initialCash",
        "finalCash",
        "totalMovement",
    ],
}

# Fields holding a store-level unique key.
UNIQUE_FIELDS: Mapping[str, Sequence[str]] = {
    Collection.CUSTOMERS.value: ["tc"],
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "CANONICAL_DATE_FORMAT",
    "ANONYMOUS_TC",
    "Collection",
    "TransactionType",
    "INCOME_TYPES",
    "EXPENSE_TYPES",
    "PaymentMethod",
    "CurrencyDirection",
    "ID_FIELD",
    "VERSION_FIELD",
    "OWNER_FIELD",
    "COLLECTION_FIELDS",
    "UNIQUE_FIELDS",
]
