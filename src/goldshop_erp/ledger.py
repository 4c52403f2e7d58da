"""Customer-ledger reconciliation for sales and purchases.

Recording a sale or a purchase touches four collections: the primary record,
the cash-movement log, the customer's running balance and the product stock.
Every read happens first, then all writes are staged in one
:class:`~goldshop_erp.data_manager.WriteBatch` and committed together. Stock
and existing customers are updated conditionally on the version that was read,
so a concurrent writer causes a retry of the whole unit of work instead of a
lost update.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Union

from . import dates, log
from .constants import ANONYMOUS_TC, Collection, PaymentMethod, TransactionType
from .core_logic import (
    CUSTOMERS,
    PRODUCTS,
    RuntimeContext,
    find_customer_by_tc,
    find_product_by_name,
    get_customer,
    get_product,
    now_iso,
    parse_payment_method,
    require_nonnegative_money,
    require_positive_quantity,
    require_principal,
    with_retry,
)
from .errors import (
    ConcurrentModificationError,
    InsufficientStockError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from .models import Customer, Principal, Product, TradeRecord, Transaction


@dataclass(frozen=True)
class TradeCommand:
    """User intent for recording a sale or a purchase.

    The product is referenced by ``product_id`` or, failing that, by
    ``product_name``. The customer is referenced by ``customer_id`` or by the
    snapshot's national id ``customer_tc``; with neither the trade is
    anonymous.
    """

    quantity: Any
    total: Any
    paid: Any
    date: dates.DateLike
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    payment_method: Union[PaymentMethod, str, None] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_tc: Optional[str] = None
    customer_phone: Optional[str] = None


class SaleCommand(TradeCommand):
    """A sale: stock goes down, the customer's debt goes up by what is unpaid."""


class PurchaseCommand(TradeCommand):
    """A purchase: stock goes up, the customer's debt goes down by what is unpaid."""


@dataclass(frozen=True)
class ReconciliationResult:
    """Identifiers and post-commit balances of a reconciled trade."""

    record_id: str
    transaction_id: str
    product_id: str
    new_stock: int
    customer_id: Optional[str] = None
    new_debt: Optional[Decimal] = None
    customer_created: bool = False


@dataclass(frozen=True)
class _ValidatedTrade:
    quantity: int
    total: Decimal
    paid: Decimal
    date: str
    method: PaymentMethod


def _validate(command: TradeCommand) -> _ValidatedTrade:
    if not (command.product_id or (command.product_name and command.product_name.strip())):
        raise ValidationError("A product id or product name is required")
    quantity = require_positive_quantity(command.quantity)
    total = require_nonnegative_money(command.total, "Total")
    paid = require_nonnegative_money(command.paid, "Paid")
    if paid > total:
        log.error("Paid amount %s exceeds total %s", paid, total)
        raise ValidationError("Paid amount cannot exceed the total")
    return _ValidatedTrade(
        quantity=quantity,
        total=total,
        paid=paid,
        date=dates.to_canonical(command.date),
        method=parse_payment_method(command.payment_method),
    )


def _resolve_product(context: RuntimeContext, command: TradeCommand) -> Product:
    if command.product_id:
        return get_product(context, command.product_id)
    product = find_product_by_name(context, command.product_name.strip())
    if product is None:
        log.warning("Product '%s' not found", command.product_name)
        raise NotFoundError(f"Unknown product: {command.product_name}")
    return product


def _resolve_customer(context: RuntimeContext, command: TradeCommand) -> Optional[Customer]:
    """Existing customer for the trade, ``None`` when a new one is needed or it is anonymous."""

    if command.customer_id:
        return get_customer(context, command.customer_id)
    if is_anonymous(command):
        return None
    return find_customer_by_tc(context, command.customer_tc.strip())


def is_anonymous(command: TradeCommand) -> bool:
    """A trade with no customer id and an empty or placeholder national id."""

    if command.customer_id:
        return False
    tc = (command.customer_tc or "").strip()
    return tc in ("", ANONYMOUS_TC)


def _reconcile(
    context: RuntimeContext,
    command: TradeCommand,
    trade: _ValidatedTrade,
    *,
    is_sale: bool,
) -> ReconciliationResult:
    product = _resolve_product(context, command)
    customer = _resolve_customer(context, command)

    if is_sale:
        new_stock = product.stock - trade.quantity
        if new_stock < 0:
            log.error(
                "Rejected sale of %d x '%s': only %d in stock",
                trade.quantity,
                product.name,
                product.stock,
            )
            raise InsufficientStockError(product.name, product.stock, trade.quantity)
    else:
        new_stock = product.stock + trade.quantity

    anonymous = customer is None and is_anonymous(command)
    snapshot_name = customer.name if customer is not None else (command.customer_name or "")
    batch = context.store.batch()

    customer_id: Optional[str] = None
    new_debt: Optional[Decimal] = None
    created = False
    if not anonymous:
        previous_debt = customer.debt if customer is not None else Decimal("0.00")
        unpaid = trade.total - trade.paid
        new_debt = previous_debt + unpaid if is_sale else previous_debt - unpaid
        balance = {
            "soldItem" if is_sale else "boughtItem": product.name,
            "total": str(trade.total),
            "paid": str(trade.paid),
            "debt": str(new_debt),
            "date": trade.date,
        }
        if customer is not None:
            customer_id = customer.id
            batch.update(CUSTOMERS, customer.id, balance, expected_version=customer.version)
        else:
            fresh = Customer(
                id="",
                name=snapshot_name,
                tc=command.customer_tc.strip(),
                phone=command.customer_phone or None,
                created_at=now_iso(),
            ).to_document()
            fresh.update(balance)
            customer_id = batch.create(CUSTOMERS, fresh)
            created = True

    record = TradeRecord(
        id="",
        product_id=product.id,
        product_name=product.name,
        quantity=trade.quantity,
        total=trade.total,
        paid=trade.paid,
        date=trade.date,
        payment_method=trade.method.value,
        customer_id=customer_id,
        customer_name=snapshot_name or None,
        customer_tc=(customer.tc if customer is not None else (command.customer_tc or "").strip()) or None,
        customer_phone=customer.phone if customer is not None else command.customer_phone,
    )
    if is_sale:
        movement = Transaction(
            id="",
            type=TransactionType.SALE.value,
            description=f"{product.name} sale",
            amount=trade.total,
            date=trade.date,
            method=trade.method.value,
        )
    else:
        movement = Transaction(
            id="",
            type=TransactionType.PURCHASE.value,
            description=f"{snapshot_name or ANONYMOUS_TC} - {product.name} purchase",
            amount=trade.paid,
            date=trade.date,
            method=trade.method.value,
        )

    collection = Collection.SALES.value if is_sale else Collection.PURCHASES.value
    record_id = batch.create(collection, record.to_document())
    transaction_id = batch.create(Collection.TRANSACTIONS.value, movement.to_document())
    batch.update(PRODUCTS, product.id, {"stock": new_stock}, expected_version=product.version)
    batch.commit()

    return ReconciliationResult(
        record_id=record_id,
        transaction_id=transaction_id,
        product_id=product.id,
        new_stock=new_stock,
        customer_id=customer_id,
        new_debt=new_debt,
        customer_created=created,
    )


def _record(context: RuntimeContext, principal: Principal, command: TradeCommand, *, is_sale: bool) -> ReconciliationResult:
    require_principal(principal)
    trade = _validate(command)
    label = "sale" if is_sale else "purchase"

    try:
        result = with_retry(context, lambda: _reconcile(context, command, trade, is_sale=is_sale))
    except (ConcurrentModificationError, TransientStoreError):
        log.error("Recording %s for operator '%s' failed; nothing was committed", label, principal.uid)
        raise

    log.info(
        "Recorded %s '%s' by '%s': product=%s stock=%d customer=%s debt=%s",
        label,
        result.record_id,
        principal.uid,
        result.product_id,
        result.new_stock,
        result.customer_id or "anonymous",
        result.new_debt,
    )
    return result


def record_sale(context: RuntimeContext, principal: Principal, command: TradeCommand) -> ReconciliationResult:
    """Record a sale and reconcile stock, cash log and customer balance.

    Raises:
        ValidationError: Malformed request or missing principal.
        NotFoundError: Unknown product or customer id.
        InsufficientStockError: The sale would drive stock below zero.
        ConcurrentModificationError: Conflicts persisted through every retry.
        TransientStoreError: The store stayed unavailable through every retry.
    """
    return _record(context, principal, command, is_sale=True)


def record_purchase(context: RuntimeContext, principal: Principal, command: TradeCommand) -> ReconciliationResult:
    """Record a purchase from a customer; stock is incremented unconditionally."""
    return _record(context, principal, command, is_sale=False)


def build_command(kind: str, **values: Any) -> TradeCommand:
    """Instantiate a :class:`SaleCommand` or :class:`PurchaseCommand` by name."""

    if kind == "sale":
        return SaleCommand(**values)
    if kind == "purchase":
        return PurchaseCommand(**values)
    raise ValueError(f"Unknown trade kind: {kind}")


__all__ = [
    "TradeCommand",
    "SaleCommand",
    "PurchaseCommand",
    "ReconciliationResult",
    "record_sale",
    "record_purchase",
    "is_anonymous",
    "build_command",
]
