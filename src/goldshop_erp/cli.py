"""Command-line entry points for the gold shop back-office.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the requests consumed by the business layer and
printing results. Keeping the CLI thin means the same parser configuration can
be reused by tests or any alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, dates, ledger, log
from .constants import CurrencyDirection, PaymentMethod, TransactionType
from .errors import (
    ConcurrentModificationError,
    CustomerResolutionAmbiguous,
    InsufficientStockError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from .models import Principal


SubParsers = argparse._SubParsersAction


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[SubParsers], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="goldshop-cli",
        description="Command-line tools for the gold shop store.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    parser.add_argument("--operator", default=None, help="Operator id recorded for writes.")
    parser.add_argument("--email", default="", help="Operator e-mail address.")
    return parser


def make_spec(
    name: str,
    help_text: str,
    add_arguments: Callable[[argparse.ArgumentParser], None],
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    """Bundle a sub-command's parser setup and executor."""

    def registrar(action: SubParsers) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        add_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def configure_subcommands(parser: argparse.ArgumentParser) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands."""
    specs = {
        "add-product": make_spec("add-product", "Register a new product.", add_product_arguments, run_add_product),
        "update-product": make_spec(
            "update-product", "Change fields of a product.", update_product_arguments, run_update_product
        ),
        "delete-product": make_spec("delete-product", "Delete a product.", id_arguments("--product-id"), run_delete_product),
        "stock-up": make_spec("stock-up", "Increase a product's stock by one.", id_arguments("--product-id"), run_stock_up),
        "stock-down": make_spec(
            "stock-down", "Decrease a product's stock by one.", id_arguments("--product-id"), run_stock_down
        ),
        "add-customer": make_spec("add-customer", "Register a new customer.", add_customer_arguments, run_add_customer),
        "update-customer": make_spec(
            "update-customer", "Change fields of a customer.", update_customer_arguments, run_update_customer
        ),
        "delete-customer": make_spec(
            "delete-customer", "Delete a customer.", id_arguments("--customer-id"), run_delete_customer
        ),
        "sale": make_spec("sale", "Record a sale and reconcile stock and customer debt.", trade_arguments, run_sale),
        "purchase": make_spec(
            "purchase", "Record a purchase and reconcile stock and customer debt.", trade_arguments, run_purchase
        ),
        "delete-sale": make_spec("delete-sale", "Delete a sale record.", id_arguments("--record-id"), run_delete_sale),
        "delete-purchase": make_spec(
            "delete-purchase", "Delete a purchase record.", id_arguments("--record-id"), run_delete_purchase
        ),
        "supplier-purchase": make_spec(
            "supplier-purchase", "Book stock bought from a wholesaler.", supplier_arguments, run_supplier_purchase
        ),
        "delete-supplier-purchase": make_spec(
            "delete-supplier-purchase",
            "Delete a supplier transaction.",
            id_arguments("--record-id"),
            run_delete_supplier_purchase,
        ),
        "add-transaction": make_spec(
            "add-transaction", "Record a manual cash movement.", transaction_arguments, run_add_transaction
        ),
        "delete-transaction": make_spec(
            "delete-transaction", "Delete a cash movement.", id_arguments("--transaction-id"), run_delete_transaction
        ),
        "currency": make_spec("currency", "Record a currency exchange.", currency_arguments, run_currency),
        "cash-record": make_spec(
            "cash-record", "Record the operator's opening and closing cash.", cash_record_arguments, run_cash_record
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(subparsers: SubParsers) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and reports."""
    specs = {
        "stock": make_spec("stock", "Display current stock levels.", no_arguments, run_stock_report),
        "customers": make_spec("customers", "List customers.", no_arguments, run_customers),
        "sales": make_spec("sales", "List sales.", period_arguments, run_sales),
        "purchases": make_spec("purchases", "List purchases.", period_arguments, run_purchases),
        "supplier-purchases": make_spec(
            "supplier-purchases",
            "List supplier transactions and what is still owed.",
            period_arguments,
            run_supplier_purchases,
        ),
        "transactions": make_spec("transactions", "List cash movements.", period_arguments, run_transactions),
        "currencies": make_spec("currencies", "List currency exchanges.", period_arguments, run_currencies),
        "cash-records": make_spec("cash-records", "List the operator's daily cash records.", no_arguments, run_cash_records),
        "cash-summary": make_spec("cash-summary", "Display income, expense and profit.", period_arguments, run_cash_summary),
        "profit": make_spec("profit", "Display estimated profit per month.", no_arguments, run_profit_report),
        "purchase-totals": make_spec(
            "purchase-totals", "Display purchase totals and what is still owed.", no_arguments, run_purchase_totals
        ),
        "debts": make_spec("debts", "Display customers with an open balance.", no_arguments, run_debts_report),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


# ---------------------------------------------------------------------------
# Argument groups
# ---------------------------------------------------------------------------


def no_arguments(parser: argparse.ArgumentParser) -> None:
    return None


def id_arguments(flag: str) -> Callable[[argparse.ArgumentParser], None]:
    def add(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(flag, required=True)

    return add


def add_product_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--gram", required=True)
    parser.add_argument("--price", required=True)
    parser.add_argument("--stock", type=int, default=0)


def update_product_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--product-id", required=True)
    parser.add_argument("--name", default=None)
    parser.add_argument("--gram", default=None)
    parser.add_argument("--price", default=None)
    parser.add_argument("--stock", type=int, default=None)


def add_customer_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--tc", required=True, help="National id.")
    parser.add_argument("--phone", default=None)


def update_customer_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--customer-id", required=True)
    parser.add_argument("--name", default=None)
    parser.add_argument("--tc", default=None)
    parser.add_argument("--phone", default=None)
    parser.add_argument("--debt", default=None)


def trade_arguments(parser: argparse.ArgumentParser) -> None:
    product = parser.add_mutually_exclusive_group(required=True)
    product.add_argument("--product-id", default=None)
    product.add_argument("--product-name", default=None)
    parser.add_argument("--quantity", required=True)
    parser.add_argument("--total", required=True)
    parser.add_argument("--paid", required=True)
    parser.add_argument("--date", default=None, help="YYYY-MM-DD or DD.MM.YYYY (defaults to today).")
    parser.add_argument("--payment-method", choices=[member.value for member in PaymentMethod], default=None)
    parser.add_argument("--customer-id", default=None)
    parser.add_argument("--customer-name", default=None)
    parser.add_argument("--tc", default=None, help="Customer national id.")
    parser.add_argument("--phone", default=None)


def supplier_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--supplier", required=True, help="Wholesaler name.")
    parser.add_argument("--product-name", required=True)
    parser.add_argument("--quantity", required=True)
    parser.add_argument("--gram", required=True)
    parser.add_argument("--price", required=True, help="Price per gram.")
    parser.add_argument("--paid", default="0")
    parser.add_argument("--date", default=None)
    parser.add_argument("--payment-method", choices=[member.value for member in PaymentMethod], default=None)


def transaction_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--type", required=True, choices=[member.value for member in TransactionType])
    parser.add_argument("--description", default="")
    parser.add_argument("--amount", required=True)
    parser.add_argument("--date", default=None)
    parser.add_argument("--method", choices=[member.value for member in PaymentMethod], default=None)


def currency_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--name", required=True)
    parser.add_argument("--tc", default="")
    parser.add_argument("--amount", required=True)
    parser.add_argument("--rate", required=True)
    parser.add_argument("--direction", required=True, choices=[member.value for member in CurrencyDirection])
    parser.add_argument("--date", default=None)
    parser.add_argument("--method", choices=[member.value for member in PaymentMethod], default=None)


def cash_record_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--date", default=None)
    parser.add_argument("--initial", required=True)
    parser.add_argument("--final", required=True)


def period_arguments(parser: argparse.ArgumentParser) -> None:
    period = parser.add_mutually_exclusive_group()
    period.add_argument("--day", default=None, help="Only this day.")
    period.add_argument("--month", default=None, help="Only this month (YYYY-MM).")


# ---------------------------------------------------------------------------
# Plumbing
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(specs: Iterable[CommandSpec]) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def principal_from_args(args: argparse.Namespace) -> Principal:
    operator = getattr(args, "operator", None)
    if not operator:
        raise ValidationError("--operator is required for this command")
    return Principal(uid=operator, email=getattr(args, "email", "") or "")


def drop_unset(values: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def display_date(value: Optional[str]) -> str:
    if not value:
        return ""
    try:
        return dates.to_display(value)
    except ValidationError:
        return value


def print_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
    materialised: List[List[str]] = [["" if cell is None else str(cell) for cell in row] for row in rows]
    widths = [len(header) for header in headers]
    for row in materialised:
        widths = [max(width, len(cell)) for width, cell in zip(widths, row)]
    print("  ".join(header.ljust(width) for header, width in zip(headers, widths)))
    for row in materialised:
        print("  ".join(cell.ljust(width) for cell, width in zip(row, widths)))


# ---------------------------------------------------------------------------
# Translators
# ---------------------------------------------------------------------------


def translate_trade(args: argparse.Namespace, kind: str) -> ledger.TradeCommand:
    """Translate CLI args into a sale or purchase command."""
    return ledger.build_command(
        kind,
        product_id=args.product_id,
        product_name=args.product_name,
        quantity=args.quantity,
        total=args.total,
        paid=args.paid,
        date=args.date or dates.today(),
        payment_method=args.payment_method,
        customer_id=args.customer_id,
        customer_name=args.customer_name,
        customer_tc=args.tc,
        customer_phone=args.phone,
    )


def translate_currency(args: argparse.Namespace) -> core_logic.CurrencyCommand:
    return core_logic.CurrencyCommand(
        name=args.name,
        tc=args.tc,
        amount=args.amount,
        rate=args.rate,
        direction=CurrencyDirection(args.direction),
        date=args.date or dates.today(),
        method=args.method,
    )


# ---------------------------------------------------------------------------
# Write executors
# ---------------------------------------------------------------------------


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.add_product(
        context,
        principal_from_args(args),
        name=args.name,
        gram=args.gram,
        price=args.price,
        stock=args.stock,
    )
    print(f"Added product {product.id}")
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    changes = drop_unset({"name": args.name, "gram": args.gram, "price": args.price, "stock": args.stock})
    core_logic.update_product(context, principal_from_args(args), args.product_id, changes)
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_product(context, principal_from_args(args), args.product_id)
    return 0


def run_stock_up(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.increase_stock_by_one(context, principal_from_args(args), args.product_id)
    print(f"{product.name}: {product.stock}")
    return 0


def run_stock_down(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.decrease_stock_by_one(context, principal_from_args(args), args.product_id)
    print(f"{product.name}: {product.stock}")
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    customer = core_logic.add_customer(
        context, principal_from_args(args), name=args.name, tc=args.tc, phone=args.phone
    )
    print(f"Added customer {customer.id}")
    return 0


def run_update_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    changes = drop_unset({"name": args.name, "tc": args.tc, "phone": args.phone, "debt": args.debt})
    core_logic.update_customer(context, principal_from_args(args), args.customer_id, changes)
    return 0


def run_delete_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_customer(context, principal_from_args(args), args.customer_id)
    return 0


def _print_reconciliation(label: str, result: ledger.ReconciliationResult) -> None:
    print(f"Recorded {label} {result.record_id}; stock now {result.new_stock}")
    if result.customer_id is not None:
        print(f"Customer {result.customer_id} debt: {result.new_debt}")


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = ledger.record_sale(context, principal_from_args(args), translate_trade(args, "sale"))
    _print_reconciliation("sale", result)
    return 0


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = ledger.record_purchase(context, principal_from_args(args), translate_trade(args, "purchase"))
    _print_reconciliation("purchase", result)
    return 0


def run_delete_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_sale(context, principal_from_args(args), args.record_id)
    return 0


def run_delete_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_purchase(context, principal_from_args(args), args.record_id)
    return 0


def run_supplier_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    command = core_logic.SupplierPurchaseCommand(
        supplier_name=args.supplier,
        product_name=args.product_name,
        quantity=args.quantity,
        gram=args.gram,
        price=args.price,
        paid=args.paid,
        date=args.date or dates.today(),
        payment_method=args.payment_method,
    )
    record = core_logic.record_supplier_purchase(context, principal_from_args(args), command)
    print(f"Recorded supplier purchase {record.id}: total {record.total}")
    return 0


def run_delete_supplier_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_supplier_transaction(context, principal_from_args(args), args.record_id)
    return 0


def run_add_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    transaction = core_logic.add_transaction(
        context,
        principal_from_args(args),
        type=args.type,
        description=args.description,
        amount=args.amount,
        date=args.date or dates.today(),
        method=args.method,
    )
    print(f"Recorded transaction {transaction.id}")
    return 0


def run_delete_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.delete_transaction(context, principal_from_args(args), args.transaction_id)
    return 0


def run_currency(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    record = core_logic.record_currency_transaction(context, principal_from_args(args), translate_currency(args))
    print(f"Recorded currency {record.type} {record.id}: total {record.total}")
    return 0


def run_cash_record(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    record = core_logic.record_daily_cash(
        context,
        principal_from_args(args),
        date=args.date or dates.today(),
        initial_cash=args.initial,
        final_cash=args.final,
    )
    print(f"Recorded cash {record.id}: movement {record.total_movement}")
    return 0


# ---------------------------------------------------------------------------
# Read executors
# ---------------------------------------------------------------------------


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    print_table(
        ["ID", "Name", "Gram", "Price", "Stock"],
        ((p.id, p.name, p.gram, p.price, p.stock) for p in core_logic.stock_report(context)),
    )
    return 0


def run_customers(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    print_table(
        ["ID", "Name", "TC", "Phone", "Debt", "Last date"],
        ((c.id, c.name, c.tc, c.phone, c.debt, display_date(c.date)) for c in core_logic.list_customers(context)),
    )
    return 0


def _print_trades(records: Sequence[Any]) -> None:
    print_table(
        ["ID", "Date", "Product", "Qty", "Customer", "Total", "Paid", "Method"],
        (
            (r.id, display_date(r.date), r.product_name, r.quantity, r.customer_name, r.total, r.paid, r.payment_method)
            for r in records
        ),
    )
    summary = core_logic.trade_totals(records)
    print(f"Total: {summary.total}  Paid: {summary.paid}  Remaining: {summary.debt}")


def run_sales(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_trades(core_logic.filter_by_date(core_logic.list_sales(context), day=args.day, month=args.month))
    return 0


def run_purchases(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    _print_trades(core_logic.filter_by_date(core_logic.list_purchases(context), day=args.day, month=args.month))
    return 0


def run_supplier_purchases(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    records = core_logic.filter_by_date(
        core_logic.list_supplier_transactions(context), day=args.day, month=args.month
    )
    print_table(
        ["ID", "Date", "Supplier", "Product", "Qty", "Total", "Paid"],
        ((r.id, display_date(r.date), r.supplier_name, r.product_name, r.quantity, r.total, r.paid) for r in records),
    )
    summary = core_logic.trade_totals(records)
    print(f"Total: {summary.total}  Paid: {summary.paid}  Remaining: {summary.debt}")
    return 0


def run_transactions(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    records = core_logic.filter_by_date(core_logic.list_transactions(context), day=args.day, month=args.month)
    print_table(
        ["ID", "Date", "Type", "Description", "Amount", "Method"],
        ((t.id, display_date(t.date), t.type, t.description, t.amount, t.method) for t in records),
    )
    return 0


def run_currencies(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    records = core_logic.filter_by_date(
        core_logic.list_currency_transactions(context), day=args.day, month=args.month
    )
    print_table(
        ["ID", "Date", "Name", "Type", "Amount", "Rate", "Total"],
        ((r.id, display_date(r.date), r.name, r.type, r.amount, r.rate, r.total) for r in records),
    )
    totals = core_logic.currency_totals(records)
    print(f"Currency: {totals.total_amount}  Local: {totals.total_local}")
    return 0


def run_cash_records(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    records = core_logic.list_daily_cash(context, principal_from_args(args))
    print_table(
        ["ID", "Date", "Initial", "Final", "Movement"],
        ((r.id, display_date(r.date), r.initial_cash, r.final_cash, r.total_movement) for r in records),
    )
    return 0


def run_cash_summary(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = core_logic.cash_summary(context, day=args.day, month=args.month)
    print(f"Income: {summary.income}  Expense: {summary.expense}  Profit: {summary.profit}")
    return 0


def run_profit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    print_table(
        ["Month", "Sales", "Est. cost", "Profit"],
        ((m.month, m.sales, m.estimated_cost, m.profit) for m in core_logic.monthly_profit_report(context)),
    )
    return 0


def run_purchase_totals(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = core_logic.purchase_totals(context)
    print(f"Total: {summary.total}  Paid: {summary.paid}  Remaining: {summary.debt}")
    return 0


def run_debts_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    print_table(
        ["ID", "Name", "TC", "Debt"],
        ((c.id, c.name, c.tc, c.debt) for c in core_logic.customer_debts(context)),
    )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    log.error("%s", error)
    if isinstance(error, (ValidationError, NotFoundError, InsufficientStockError, CustomerResolutionAmbiguous)):
        return 2
    if isinstance(error, FileNotFoundError):
        return 3
    if isinstance(error, (TransientStoreError, ConcurrentModificationError)):
        return 4
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        return dispatch_command(context, args, command_table)
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
