"""Business logic layer for the gold shop back-office.

This module holds the runtime context and the thin services behind every
screen: products and stock, customers, sales and purchases bookkeeping, the
cash-movement log, currency exchange, per-operator daily cash records and the
reports built from them. It consumes the document store for all I/O. The
sale/purchase reconciliation lives in :mod:`goldshop_erp.ledger`.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar, Union

from . import data_manager, dates, log
from .constants import (
    ANONYMOUS_TC,
    EXPECTED_SCHEMA_VERSION,
    EXPENSE_TYPES,
    INCOME_TYPES,
    Collection,
    CurrencyDirection,
    PaymentMethod,
    TransactionType,
)
from .errors import ValidationError
from .models import (
    Customer,
    CurrencyTransaction,
    DailyCashRecord,
    Principal,
    Product,
    SupplierTransaction,
    TradeRecord,
    Transaction,
    to_decimal,
    to_money,
)


T = TypeVar("T")

PRODUCTS = Collection.PRODUCTS.value
CUSTOMERS = Collection.CUSTOMERS.value
SALES = Collection.SALES.value
PURCHASES = Collection.PURCHASES.value
TRANSACTIONS = Collection.TRANSACTIONS.value
CURRENCY_TRANSACTIONS = Collection.CURRENCY_TRANSACTIONS.value
SUPPLIER_TRANSACTIONS = Collection.SUPPLIER_TRANSACTIONS.value


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the open document store."""

    settings: data_manager.ConfigSettings
    store: data_manager.DocumentStore


@dataclass(frozen=True)
class CurrencyCommand:
    """User intent for recording a currency exchange."""

    name: str
    tc: str
    amount: Any
    rate: Any
    direction: CurrencyDirection
    date: dates.DateLike
    method: Union[PaymentMethod, str, None] = None


@dataclass(frozen=True)
class SupplierPurchaseCommand:
    """Stock bought from a wholesaler; ``price`` is per gram."""

    supplier_name: str
    product_name: str
    quantity: Any
    gram: Any
    price: Any
    paid: Any = "0"
    date: Optional[dates.DateLike] = None
    payment_method: Union[PaymentMethod, str, None] = None


@dataclass(frozen=True)
class MonthlyProfit:
    month: str
    sales: Decimal
    estimated_cost: Decimal
    profit: Decimal


@dataclass(frozen=True)
class TotalsSummary:
    total: Decimal
    paid: Decimal
    debt: Decimal


@dataclass(frozen=True)
class CashSummary:
    income: Decimal
    expense: Decimal
    profit: Decimal


@dataclass(frozen=True)
class CurrencyTotals:
    total_amount: Decimal
    total_local: Decimal


# Python attribute -> document field, per editable collection.
PRODUCT_FIELDS = {"name": "name", "gram": "gram", "price": "price", "stock": "stock"}
CUSTOMER_FIELDS = {
    "name": "name",
    "tc": "tc",
    "phone": "phone",
    "sold_item": "soldItem",
    "bought_item": "boughtItem",
    "total": "total",
    "paid": "paid",
    "debt": "debt",
    "date": "date",
}
TRADE_FIELDS = {
    "product_id": "productId",
    "product_name": "productName",
    "customer_id": "customerId",
    "customer_name": "customerName",
    "customer_tc": "customerTc",
    "customer_phone": "customerPhone",
    "quantity": "quantity",
    "total": "total",
    "paid": "paid",
    "date": "date",
    "payment_method": "paymentMethod",
}
TRANSACTION_FIELDS = {
    "type": "type",
    "description": "description",
    "amount": "amount",
    "date": "date",
    "method": "method",
}
CURRENCY_FIELDS = {
    "name": "name",
    "tc": "tc",
    "amount": "amount",
    "rate": "rate",
    "type": "type",
    "date": "date",
}
SUPPLIER_FIELDS = {
    "supplier_name": "supplierName",
    "product_name": "productName",
    "quantity": "quantity",
    "total": "total",
    "paid": "paid",
    "date": "date",
    "payment_method": "paymentMethod",
}
DAILY_CASH_FIELDS = {"date": "date", "initial_cash": "initialCash", "final_cash": "finalCash"}

_MONEY_FIELDS = frozenset(
    {"gram", "price", "total", "paid", "debt", "amount", "rate", "initialCash", "finalCash", "totalMovement"}
)
_INT_FIELDS = frozenset({"stock", "quantity"})


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the document store.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.open_store(settings)
    log.info("Loaded runtime context for store '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate store compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Store schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Store schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def with_retry(context: RuntimeContext, func: Callable[[], T]) -> T:
    """Run ``func`` under the configured retry policy."""

    return data_manager.run_with_retry(
        func,
        attempts=context.settings.retry_attempts,
        backoff_base=context.settings.retry_backoff,
    )


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_principal(principal: Optional[Principal]) -> Principal:
    """Reject writes that are not made on behalf of an operator."""

    if principal is None or not principal.uid:
        log.error("Rejected write without an authenticated principal")
        raise ValidationError("An authenticated operator is required")
    return principal


def require_text(value: Optional[str], label: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{label} is required")
    return str(value).strip()


def require_number(value: Any, label: str = "Amount", default: str = "0.00") -> Decimal:
    """Coerce ``value`` into a finite :class:`~decimal.Decimal`.

    Raises:
        ValidationError: If ``value`` is not numeric, or is NaN or infinite.
    """
    try:
        number = to_decimal(value, default=default)
    except ArithmeticError as exc:
        raise ValidationError(f"{label} is not a number: {value!r}") from exc
    if not number.is_finite():
        log.error("%s validation failed: %s", label, value)
        raise ValidationError(f"{label} is not a number: {value!r}")
    return number


def require_whole_number(value: Any, label: str, *, minimum: int = 0) -> int:
    """Validate a count such as stock or quantity.

    Raises:
        ValidationError: If ``value`` is not a whole number of at least
            ``minimum``.
    """
    number = require_number(value, label, default="0")
    if number != number.to_integral_value() or number < minimum:
        log.error("%s validation failed: %s", label, value)
        if minimum > 0:
            raise ValidationError(f"{label} must be a whole number greater than zero")
        raise ValidationError(f"{label} must be a whole number of zero or more")
    return int(number)


def require_positive_quantity(quantity: Any) -> int:
    """Validate that a quantity is a strictly positive whole number."""
    return require_whole_number(quantity, "Quantity", minimum=1)


def require_nonnegative_money(amount: Any, label: str = "Amount") -> Decimal:
    """Validate that a monetary value is present and not negative.

    Raises:
        ValidationError: If ``amount`` is not numeric or is below zero.
    """
    number = require_number(amount, label)
    try:
        value = to_money(number)
    except ArithmeticError as exc:
        raise ValidationError(f"{label} is out of range: {amount!r}") from exc
    if value < 0:
        log.error("%s validation failed: %s", label, amount)
        raise ValidationError(f"{label} must be zero or positive")
    return value


def parse_payment_method(method: Union[PaymentMethod, str, None]) -> PaymentMethod:
    """Resolve a payment method, defaulting to cash when none was given."""

    if method is None or (isinstance(method, str) and not method.strip()):
        return PaymentMethod.CASH
    if isinstance(method, PaymentMethod):
        return method
    try:
        return PaymentMethod(method.strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unsupported payment method: {method}") from exc


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def to_fields(changes: Mapping[str, Any], mapping: Mapping[str, str], label: str) -> Dict[str, Any]:
    """Translate attribute-keyed ``changes`` into a store field mapping.

    Dates are normalised to canonical form, money to exact decimal strings and
    counts to integers.

    Raises:
        ValidationError: On unknown attributes or malformed values.
    """

    unknown = set(changes) - set(mapping)
    if unknown:
        raise ValidationError(f"Unknown {label} field(s): {', '.join(sorted(unknown))}")
    fields: Dict[str, Any] = {}
    for attribute, value in changes.items():
        name = mapping[attribute]
        if name == "date":
            value = dates.to_canonical(value)
        elif name in _MONEY_FIELDS and value is not None:
            value = str(require_number(value, attribute))
        elif name in _INT_FIELDS and value is not None:
            value = require_whole_number(value, attribute)
        elif name == "paymentMethod":
            value = parse_payment_method(value).value
        fields[name] = value
    return fields


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def add_product(
    context: RuntimeContext,
    principal: Principal,
    *,
    name: str,
    gram: Any,
    price: Any,
    stock: int = 0,
) -> Product:
    """Register a new product."""
    require_principal(principal)
    product = Product(
        id="",
        name=require_text(name, "Product name"),
        gram=require_number(gram, "Gram", default="0"),
        price=require_nonnegative_money(price, "Price"),
        stock=require_whole_number(stock, "Stock"),
        created_at=now_iso(),
    )
    product_id = with_retry(context, lambda: context.store.create(PRODUCTS, product.to_document()))
    log.info("Added product '%s' (%s) with stock %d", product.name, product_id, product.stock)
    return get_product(context, product_id)


def list_products(context: RuntimeContext) -> List[Product]:
    return [Product.from_document(doc) for doc in context.store.list(PRODUCTS)]


def get_product(context: RuntimeContext, product_id: str) -> Product:
    """Resolve a product by id.

    Raises:
        NotFoundError: If ``product_id`` is unknown.
    """
    return Product.from_document(context.store.get(PRODUCTS, product_id))


def find_product_by_name(context: RuntimeContext, name: str) -> Optional[Product]:
    document = context.store.find_by(PRODUCTS, "name", name)
    return None if document is None else Product.from_document(document)


def update_product(context: RuntimeContext, principal: Principal, product_id: str, changes: Mapping[str, Any]) -> Product:
    """Merge ``changes`` (attribute names) into a product."""
    require_principal(principal)
    fields = to_fields(changes, PRODUCT_FIELDS, "product")
    with_retry(context, lambda: context.store.update(PRODUCTS, product_id, fields))
    log.info("Updated product '%s': %s", product_id, ", ".join(sorted(fields)))
    return get_product(context, product_id)


def delete_product(context: RuntimeContext, principal: Principal, product_id: str) -> None:
    require_principal(principal)
    with_retry(context, lambda: context.store.delete(PRODUCTS, product_id))
    log.info("Deleted product '%s'", product_id)


def _step_stock(context: RuntimeContext, product_id: str, delta: int) -> Product:
    def attempt() -> Product:
        product = get_product(context, product_id)
        new_stock = product.stock + delta
        if new_stock < 0:
            log.info("Stock of '%s' already at zero; nothing to decrement", product.name)
            return product
        context.store.update(PRODUCTS, product_id, {"stock": new_stock}, expected_version=product.version)
        return get_product(context, product_id)

    return with_retry(context, attempt)


def increase_stock_by_one(context: RuntimeContext, principal: Principal, product_id: str) -> Product:
    require_principal(principal)
    return _step_stock(context, product_id, 1)


def decrease_stock_by_one(context: RuntimeContext, principal: Principal, product_id: str) -> Product:
    """Decrement stock by one; a product already at zero is left untouched."""
    require_principal(principal)
    return _step_stock(context, product_id, -1)


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


def add_customer(
    context: RuntimeContext,
    principal: Principal,
    *,
    name: str,
    tc: str,
    phone: Optional[str] = None,
) -> Customer:
    """Register a customer; the national id must not be in use already.

    Raises:
        ValidationError: If the name or national id is missing, or the
            national id already belongs to another customer.
    """
    require_principal(principal)
    tc = require_text(tc, "National id")
    if tc == ANONYMOUS_TC:
        raise ValidationError("National id is required")
    if find_customer_by_tc(context, tc) is not None:
        raise ValidationError(f"A customer with national id {tc} already exists")
    customer = Customer(
        id="",
        name=require_text(name, "Customer name"),
        tc=tc,
        phone=phone or None,
        created_at=now_iso(),
    )
    customer_id = with_retry(context, lambda: context.store.create(CUSTOMERS, customer.to_document()))
    log.info("Added customer '%s' (%s)", customer.name, customer_id)
    return get_customer(context, customer_id)


def list_customers(context: RuntimeContext) -> List[Customer]:
    return [Customer.from_document(doc) for doc in context.store.list(CUSTOMERS)]


def get_customer(context: RuntimeContext, customer_id: str) -> Customer:
    return Customer.from_document(context.store.get(CUSTOMERS, customer_id))


def find_customer_by_tc(context: RuntimeContext, tc: str) -> Optional[Customer]:
    """Indexed lookup of a customer by national id."""
    document = context.store.find_by(CUSTOMERS, "tc", tc)
    return None if document is None else Customer.from_document(document)


def update_customer(context: RuntimeContext, principal: Principal, customer_id: str, changes: Mapping[str, Any]) -> Customer:
    """Merge ``changes`` into a customer.

    Raises:
        ValidationError: If a new national id is blank or already belongs to
            another customer.
    """
    require_principal(principal)
    fields = to_fields(changes, CUSTOMER_FIELDS, "customer")
    if "tc" in fields:
        tc = require_text(fields["tc"], "National id")
        if tc == ANONYMOUS_TC:
            raise ValidationError("National id is required")
        holder = find_customer_by_tc(context, tc)
        if holder is not None and holder.id != customer_id:
            log.error("National id %s already belongs to customer '%s'", tc, holder.id)
            raise ValidationError(f"A customer with national id {tc} already exists")
        fields["tc"] = tc
    with_retry(context, lambda: context.store.update(CUSTOMERS, customer_id, fields))
    log.info("Updated customer '%s': %s", customer_id, ", ".join(sorted(fields)))
    return get_customer(context, customer_id)


def delete_customer(context: RuntimeContext, principal: Principal, customer_id: str) -> None:
    require_principal(principal)
    with_retry(context, lambda: context.store.delete(CUSTOMERS, customer_id))
    log.info("Deleted customer '%s'", customer_id)


def listen_customers(context: RuntimeContext, callback: Callable[[List[Customer]], None]) -> Callable[[], None]:
    """Push the customer list to ``callback`` now and after every change.

    Returns:
        Callable[[], None]: Function that stops the feed.
    """

    def relay(documents: List[data_manager.Document]) -> None:
        callback([Customer.from_document(doc) for doc in documents])

    return context.store.subscribe(CUSTOMERS, relay)


# ---------------------------------------------------------------------------
# Sales and purchases (records only; see ledger for reconciliation)
# ---------------------------------------------------------------------------


def list_sales(context: RuntimeContext) -> List[TradeRecord]:
    return [TradeRecord.from_document(doc) for doc in context.store.list(SALES)]


def get_sale(context: RuntimeContext, sale_id: str) -> TradeRecord:
    return TradeRecord.from_document(context.store.get(SALES, sale_id))


def update_sale(context: RuntimeContext, principal: Principal, sale_id: str, changes: Mapping[str, Any]) -> TradeRecord:
    """Edit a stored sale. Stock and customer balances are not re-reconciled."""
    require_principal(principal)
    fields = to_fields(changes, TRADE_FIELDS, "sale")
    with_retry(context, lambda: context.store.update(SALES, sale_id, fields))
    log.info("Updated sale '%s': %s", sale_id, ", ".join(sorted(fields)))
    return get_sale(context, sale_id)


def delete_sale(context: RuntimeContext, principal: Principal, sale_id: str) -> None:
    require_principal(principal)
    with_retry(context, lambda: context.store.delete(SALES, sale_id))
    log.info("Deleted sale '%s'", sale_id)


def list_purchases(context: RuntimeContext) -> List[TradeRecord]:
    return [TradeRecord.from_document(doc) for doc in context.store.list(PURCHASES)]


def get_purchase(context: RuntimeContext, purchase_id: str) -> TradeRecord:
    return TradeRecord.from_document(context.store.get(PURCHASES, purchase_id))


def update_purchase(context: RuntimeContext, principal: Principal, purchase_id: str, changes: Mapping[str, Any]) -> TradeRecord:
    """Edit a stored purchase. Stock and customer balances are not re-reconciled."""
    require_principal(principal)
    fields = to_fields(changes, TRADE_FIELDS, "purchase")
    with_retry(context, lambda: context.store.update(PURCHASES, purchase_id, fields))
    log.info("Updated purchase '%s': %s", purchase_id, ", ".join(sorted(fields)))
    return get_purchase(context, purchase_id)


def delete_purchase(context: RuntimeContext, principal: Principal, purchase_id: str) -> None:
    require_principal(principal)
    with_retry(context, lambda: context.store.delete(PURCHASES, purchase_id))
    log.info("Deleted purchase '%s'", purchase_id)


# ---------------------------------------------------------------------------
# Supplier intake
# ---------------------------------------------------------------------------


def record_supplier_purchase(
    context: RuntimeContext,
    principal: Principal,
    command: SupplierPurchaseCommand,
) -> SupplierTransaction:
    """Book stock bought in from a wholesaler.

    The product is looked up by name and created with zero gram and price
    when it does not exist yet; its stock grows by ``quantity``. The supplier
    transaction is valued at ``gram x price`` and committed in the same batch
    as the stock change.

    Raises:
        ValidationError: On missing names, non-positive quantity, gram or
            price, or a paid amount above the total.
    """
    require_principal(principal)
    supplier_name = require_text(command.supplier_name, "Supplier name")
    product_name = require_text(command.product_name, "Product name")
    quantity = require_positive_quantity(command.quantity)
    gram = require_number(command.gram, "Gram", default="0")
    price = require_nonnegative_money(command.price, "Price")
    if gram <= 0 or price <= 0:
        raise ValidationError("Gram and price must be greater than zero")
    total = require_nonnegative_money(gram * price, "Total")
    paid = require_nonnegative_money(command.paid, "Paid")
    if paid > total:
        log.error("Paid amount %s exceeds supplier total %s", paid, total)
        raise ValidationError("Paid amount cannot exceed the total")
    day = dates.to_canonical(command.date) if command.date is not None else dates.today()
    method = parse_payment_method(command.payment_method)

    def attempt() -> Tuple[str, int]:
        product = find_product_by_name(context, product_name)
        batch = context.store.batch()
        if product is None:
            new_stock = quantity
            fresh = Product(
                id="",
                name=product_name,
                gram=Decimal("0"),
                price=Decimal("0.00"),
                stock=quantity,
                created_at=now_iso(),
            )
            product_id = batch.create(PRODUCTS, fresh.to_document())
        else:
            new_stock = product.stock + quantity
            product_id = product.id
            batch.update(PRODUCTS, product.id, {"stock": new_stock}, expected_version=product.version)
        record = SupplierTransaction(
            id="",
            supplier_name=supplier_name,
            product_id=product_id,
            product_name=product_name,
            quantity=quantity,
            total=total,
            paid=paid,
            date=day,
            payment_method=method.value,
        )
        record_id = batch.create(SUPPLIER_TRANSACTIONS, record.to_document())
        batch.commit()
        return record_id, new_stock

    record_id, new_stock = with_retry(context, attempt)
    log.info(
        "Recorded supplier purchase '%s' from '%s': %d x '%s' (total=%s), stock now %d",
        record_id,
        supplier_name,
        quantity,
        product_name,
        total,
        new_stock,
    )
    return get_supplier_transaction(context, record_id)


def list_supplier_transactions(context: RuntimeContext) -> List[SupplierTransaction]:
    return [SupplierTransaction.from_document(doc) for doc in context.store.list(SUPPLIER_TRANSACTIONS)]


def get_supplier_transaction(context: RuntimeContext, record_id: str) -> SupplierTransaction:
    return SupplierTransaction.from_document(context.store.get(SUPPLIER_TRANSACTIONS, record_id))


def update_supplier_transaction(
    context: RuntimeContext,
    principal: Principal,
    record_id: str,
    changes: Mapping[str, Any],
) -> SupplierTransaction:
    """Edit a supplier transaction. Product stock is left as it is."""
    require_principal(principal)
    fields = to_fields(changes, SUPPLIER_FIELDS, "supplier transaction")
    with_retry(context, lambda: context.store.update(SUPPLIER_TRANSACTIONS, record_id, fields))
    log.info("Updated supplier transaction '%s': %s", record_id, ", ".join(sorted(fields)))
    return get_supplier_transaction(context, record_id)


def delete_supplier_transaction(context: RuntimeContext, principal: Principal, record_id: str) -> None:
    require_principal(principal)
    with_retry(context, lambda: context.store.delete(SUPPLIER_TRANSACTIONS, record_id))
    log.info("Deleted supplier transaction '%s'", record_id)


# ---------------------------------------------------------------------------
# Cash movements
# ---------------------------------------------------------------------------


def parse_transaction_type(value: Union[TransactionType, str]) -> TransactionType:
    if isinstance(value, TransactionType):
        return value
    try:
        return TransactionType(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unsupported transaction type: {value}") from exc


def add_transaction(
    context: RuntimeContext,
    principal: Principal,
    *,
    type: Union[TransactionType, str],
    description: str,
    amount: Any,
    date: dates.DateLike,
    method: Union[PaymentMethod, str, None] = None,
) -> Transaction:
    """Record a manual cash movement."""
    require_principal(principal)
    transaction = Transaction(
        id="",
        type=parse_transaction_type(type).value,
        description=description or "",
        amount=require_nonnegative_money(amount),
        date=dates.to_canonical(date),
        method=parse_payment_method(method).value,
    )
    transaction_id = with_retry(context, lambda: context.store.create(TRANSACTIONS, transaction.to_document()))
    log.info("Recorded %s cash movement '%s' (amount=%s)", transaction.type, transaction_id, transaction.amount)
    return get_transaction(context, transaction_id)


def list_transactions(context: RuntimeContext) -> List[Transaction]:
    return [Transaction.from_document(doc) for doc in context.store.list(TRANSACTIONS)]


def get_transaction(context: RuntimeContext, transaction_id: str) -> Transaction:
    return Transaction.from_document(context.store.get(TRANSACTIONS, transaction_id))


def update_transaction(context: RuntimeContext, principal: Principal, transaction_id: str, changes: Mapping[str, Any]) -> Transaction:
    require_principal(principal)
    fields = to_fields(changes, TRANSACTION_FIELDS, "transaction")
    if "type" in fields:
        fields["type"] = parse_transaction_type(fields["type"]).value
    if "method" in fields:
        fields["method"] = parse_payment_method(fields["method"]).value
    with_retry(context, lambda: context.store.update(TRANSACTIONS, transaction_id, fields))
    log.info("Updated transaction '%s': %s", transaction_id, ", ".join(sorted(fields)))
    return get_transaction(context, transaction_id)


def delete_transaction(context: RuntimeContext, principal: Principal, transaction_id: str) -> None:
    require_principal(principal)
    with_retry(context, lambda: context.store.delete(TRANSACTIONS, transaction_id))
    log.info("Deleted transaction '%s'", transaction_id)


# ---------------------------------------------------------------------------
# Currency exchange
# ---------------------------------------------------------------------------


def currency_total(amount: Any, rate: Any) -> Decimal:
    """Local-currency value of an exchange, rounded to cents."""
    return to_money(to_decimal(amount) * to_decimal(rate, default="0"))


def parse_currency_direction(value: Union[CurrencyDirection, str]) -> CurrencyDirection:
    if isinstance(value, CurrencyDirection):
        return value
    try:
        return CurrencyDirection(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unsupported currency direction: {value}") from exc


def record_currency_transaction(context: RuntimeContext, principal: Principal, command: CurrencyCommand) -> CurrencyTransaction:
    """Store a currency exchange together with its cash movement.

    Selling currency brings local cash in; buying it pays cash out. Both
    documents are committed in one batch.
    """
    require_principal(principal)
    amount = require_nonnegative_money(command.amount)
    rate = require_number(command.rate, "Rate", default="0")
    if amount <= 0 or rate <= 0:
        raise ValidationError("Currency amount and rate must be greater than zero")
    direction = parse_currency_direction(command.direction)
    record = CurrencyTransaction(
        id="",
        name=require_text(command.name, "Customer name"),
        tc=command.tc or "",
        amount=amount,
        rate=rate,
        type=direction.value,
        date=dates.to_canonical(command.date),
        total=currency_total(amount, rate),
    )
    movement = Transaction(
        id="",
        type=(TransactionType.INFLOW if direction is CurrencyDirection.SELL else TransactionType.OUTFLOW).value,
        description=f"{record.name} - currency {direction.value}",
        amount=record.total,
        date=record.date,
        method=parse_payment_method(command.method).value,
    )

    def attempt() -> str:
        batch = context.store.batch()
        record_id = batch.create(CURRENCY_TRANSACTIONS, record.to_document())
        batch.create(TRANSACTIONS, movement.to_document())
        batch.commit()
        return record_id

    record_id = with_retry(context, attempt)
    log.info(
        "Recorded currency %s '%s' (amount=%s, rate=%s, total=%s)",
        direction.value,
        record_id,
        amount,
        rate,
        record.total,
    )
    return get_currency_transaction(context, record_id)


def list_currency_transactions(context: RuntimeContext) -> List[CurrencyTransaction]:
    return [CurrencyTransaction.from_document(doc) for doc in context.store.list(CURRENCY_TRANSACTIONS)]


def get_currency_transaction(context: RuntimeContext, record_id: str) -> CurrencyTransaction:
    return CurrencyTransaction.from_document(context.store.get(CURRENCY_TRANSACTIONS, record_id))


def update_currency_transaction(
    context: RuntimeContext,
    principal: Principal,
    record_id: str,
    changes: Mapping[str, Any],
) -> CurrencyTransaction:
    """Edit an exchange record, recomputing ``total`` when amount or rate move."""
    require_principal(principal)
    fields = to_fields(changes, CURRENCY_FIELDS, "currency transaction")
    if "type" in fields:
        fields["type"] = parse_currency_direction(fields["type"]).value

    def attempt() -> None:
        current = get_currency_transaction(context, record_id)
        staged = dict(fields)
        if "amount" in staged or "rate" in staged:
            amount = staged.get("amount", current.amount)
            rate = staged.get("rate", current.rate)
            staged["total"] = str(currency_total(amount, rate))
        context.store.update(CURRENCY_TRANSACTIONS, record_id, staged)

    with_retry(context, attempt)
    log.info("Updated currency transaction '%s': %s", record_id, ", ".join(sorted(fields)))
    return get_currency_transaction(context, record_id)


def delete_currency_transaction(context: RuntimeContext, principal: Principal, record_id: str) -> None:
    require_principal(principal)
    with_retry(context, lambda: context.store.delete(CURRENCY_TRANSACTIONS, record_id))
    log.info("Deleted currency transaction '%s'", record_id)


# ---------------------------------------------------------------------------
# Daily cash records (scoped to the operator)
# ---------------------------------------------------------------------------


def record_daily_cash(
    context: RuntimeContext,
    principal: Principal,
    *,
    date: dates.DateLike,
    initial_cash: Any,
    final_cash: Any,
) -> DailyCashRecord:
    """Store the operator's opening and closing cash for a day."""
    require_principal(principal)
    initial = require_nonnegative_money(initial_cash, "Initial cash")
    final = require_nonnegative_money(final_cash, "Final cash")
    record = DailyCashRecord(
        id="",
        owner_uid=principal.uid,
        date=dates.to_canonical(date),
        initial_cash=initial,
        final_cash=final,
        total_movement=final - initial,
    )
    path = data_manager.daily_cash_path(principal.uid)
    record_id = with_retry(context, lambda: context.store.create(path, record.to_document()))
    log.info("Recorded daily cash '%s' for operator '%s' on %s", record_id, principal.uid, record.date)
    return DailyCashRecord.from_document(context.store.get(path, record_id))


def list_daily_cash(context: RuntimeContext, principal: Principal) -> List[DailyCashRecord]:
    require_principal(principal)
    path = data_manager.daily_cash_path(principal.uid)
    return [DailyCashRecord.from_document(doc) for doc in context.store.list(path)]


def update_daily_cash(context: RuntimeContext, principal: Principal, record_id: str, changes: Mapping[str, Any]) -> DailyCashRecord:
    """Edit a cash record; ``total_movement`` follows the cash figures."""
    require_principal(principal)
    path = data_manager.daily_cash_path(principal.uid)
    fields = to_fields(changes, DAILY_CASH_FIELDS, "daily cash record")

    def attempt() -> None:
        current = DailyCashRecord.from_document(context.store.get(path, record_id))
        staged = dict(fields)
        initial = to_decimal(staged.get("initialCash", current.initial_cash))
        final = to_decimal(staged.get("finalCash", current.final_cash))
        staged["totalMovement"] = str(final - initial)
        context.store.update(path, record_id, staged)

    with_retry(context, attempt)
    return DailyCashRecord.from_document(context.store.get(path, record_id))


def delete_daily_cash(context: RuntimeContext, principal: Principal, record_id: str) -> None:
    require_principal(principal)
    path = data_manager.daily_cash_path(principal.uid)
    with_retry(context, lambda: context.store.delete(path, record_id))
    log.info("Deleted daily cash '%s' for operator '%s'", record_id, principal.uid)


# ---------------------------------------------------------------------------
# Filters and reports
# ---------------------------------------------------------------------------


def filter_by_date(records: Iterable[T], *, day: Optional[dates.DateLike] = None, month: Optional[str] = None) -> List[T]:
    """Keep records on ``day`` or within ``month`` (``YYYY-MM``).

    ``day`` wins when both are given. Records whose date cannot be parsed
    never match a filter.
    """
    items = list(records)
    if day is None and not month:
        return items
    wanted_day = dates.to_canonical(day) if day is not None else None
    kept: List[T] = []
    for record in items:
        raw = getattr(record, "date", None)
        try:
            canonical = dates.to_canonical(raw) if raw else ""
        except ValidationError:
            continue
        if wanted_day is not None:
            if canonical == wanted_day:
                kept.append(record)
        elif canonical.startswith(str(month)):
            kept.append(record)
    return kept


def stock_report(context: RuntimeContext) -> List[Product]:
    """Products ordered by name."""
    return sorted(list_products(context), key=lambda product: product.name.lower())


def customer_debts(context: RuntimeContext) -> List[Customer]:
    """Customers carrying a non-zero balance, largest debt first."""
    return sorted(
        (customer for customer in list_customers(context) if customer.debt != 0),
        key=lambda customer: customer.debt,
        reverse=True,
    )


def monthly_profit_report(context: RuntimeContext, sales: Optional[Sequence[TradeRecord]] = None) -> List[MonthlyProfit]:
    """Sales per ``YYYY-MM`` with cost estimated from the configured ratio."""
    ratio = context.settings.cost_ratio
    totals: "OrderedDict[str, Decimal]" = OrderedDict()
    for sale in sorted(sales if sales is not None else list_sales(context), key=lambda s: s.date):
        month = sale.date[:7]
        totals[month] = totals.get(month, Decimal("0")) + sale.total
    report = []
    for month, total in totals.items():
        cost = to_money(total * ratio)
        report.append(MonthlyProfit(month=month, sales=to_money(total), estimated_cost=cost, profit=to_money(total) - cost))
    return report


def trade_totals(records: Iterable[Union[TradeRecord, SupplierTransaction]]) -> TotalsSummary:
    """Sum ``total`` and ``paid``; the difference is what remains owed."""
    total = Decimal("0.00")
    paid = Decimal("0.00")
    for record in records:
        total += record.total
        paid += record.paid
    return TotalsSummary(total=to_money(total), paid=to_money(paid), debt=to_money(total - paid))


def purchase_totals(context: RuntimeContext) -> TotalsSummary:
    return trade_totals(list_purchases(context))


def supplier_totals(context: RuntimeContext) -> TotalsSummary:
    """What the shop owes its wholesalers."""
    return trade_totals(list_supplier_transactions(context))


def cash_summary(
    context: RuntimeContext,
    *,
    day: Optional[dates.DateLike] = None,
    month: Optional[str] = None,
) -> CashSummary:
    """Income versus expense over the cash log, optionally for a day or month."""
    income = Decimal("0.00")
    expense = Decimal("0.00")
    for transaction in filter_by_date(list_transactions(context), day=day, month=month):
        if transaction.type in INCOME_TYPES:
            income += transaction.amount
        elif transaction.type in EXPENSE_TYPES:
            expense += transaction.amount
    log.debug("Cash summary: income=%s expense=%s", income, expense)
    return CashSummary(income=to_money(income), expense=to_money(expense), profit=to_money(income - expense))


def currency_totals(records: Iterable[CurrencyTransaction]) -> CurrencyTotals:
    total_amount = Decimal("0.00")
    total_local = Decimal("0.00")
    for record in records:
        total_amount += record.amount
        total_local += record.total
    return CurrencyTotals(total_amount=to_money(total_amount), total_local=to_money(total_local))


__all__ = [
    "RuntimeContext",
    "CurrencyCommand",
    "SupplierPurchaseCommand",
    "MonthlyProfit",
    "TotalsSummary",
    "CashSummary",
    "CurrencyTotals",
    "load_runtime_context",
    "ensure_schema_version",
    "with_retry",
    "now_iso",
    "require_principal",
    "require_number",
    "require_whole_number",
    "require_positive_quantity",
    "require_nonnegative_money",
    "parse_payment_method",
    "add_product",
    "list_products",
    "get_product",
    "find_product_by_name",
    "update_product",
    "delete_product",
    "increase_stock_by_one",
    "decrease_stock_by_one",
    "add_customer",
    "list_customers",
    "get_customer",
    "find_customer_by_tc",
    "update_customer",
    "delete_customer",
    "listen_customers",
    "list_sales",
    "get_sale",
    "update_sale",
    "delete_sale",
    "list_purchases",
    "get_purchase",
    "update_purchase",
    "delete_purchase",
    "record_supplier_purchase",
    "list_supplier_transactions",
    "get_supplier_transaction",
    "update_supplier_transaction",
    "delete_supplier_transaction",
    "add_transaction",
    "list_transactions",
    "get_transaction",
    "update_transaction",
    "delete_transaction",
    "currency_total",
    "record_currency_transaction",
    "list_currency_transactions",
    "get_currency_transaction",
    "update_currency_transaction",
    "delete_currency_transaction",
    "record_daily_cash",
    "list_daily_cash",
    "update_daily_cash",
    "delete_daily_cash",
    "filter_by_date",
    "stock_report",
    "customer_debts",
    "monthly_profit_report",
    "trade_totals",
    "purchase_totals",
    "supplier_totals",
    "cash_summary",
    "currency_totals",
]
