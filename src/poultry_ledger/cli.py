"""Command-line entry points for the poultry ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the drafts consumed by the lifecycle managers,
and printing read-only reports. Keeping the CLI thin lets tests and scripts
reuse the same parser configuration.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, data_manager, farmers, log, orders, purchase_orders, set_log_level, transactions
from .atomic import WriteConflictError
from .constants import OrderStatus, PaymentMethod, ProfileRole, TransactionStatus

AUDIT_MISMATCH_EXIT_CODE = 4
WRITE_CONFLICT_EXIT_CODE = 5


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def decimal_arg(raw: str) -> Decimal:
    """argparse ``type`` converting text into :class:`Decimal`."""

    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid decimal value: {raw!r}") from exc
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"invalid decimal value: {raw!r}")
    return value


def datetime_arg(raw: str) -> datetime:
    """argparse ``type`` accepting ISO-8601 dates or datetimes."""

    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid ISO date: {raw!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="poultry-ledger",
        description="Ledger, balance, and stock tools for a poultry dealer workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override the package log level for this run.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales, orders, and purchases."""
    specs = {
        "add-dealer": register_add_dealer_command(subparsers),
        "add-farmer": register_add_farmer_command(subparsers),
        "sale": register_sale_command(subparsers),
        "payment": register_payment_command(subparsers),
        "expense": register_expense_command(subparsers),
        "edit-transaction": register_edit_transaction_command(subparsers),
        "delete-transaction": register_delete_transaction_command(subparsers),
        "place-order": register_place_order_command(subparsers),
        "order-status": register_order_status_command(subparsers),
        "cancel-order": register_cancel_order_command(subparsers),
        "purchase": register_purchase_command(subparsers),
        "delete-purchase": register_delete_purchase_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "farmers": register_farmers_command(subparsers),
        "stock": register_stock_command(subparsers),
        "ledger": register_ledger_command(subparsers),
        "orders": register_orders_command(subparsers),
        "audit": register_audit_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


# ---------------------------------------------------------------------------
# Write command registration
# ---------------------------------------------------------------------------


def register_add_dealer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-dealer``."""
    name = "add-dealer"
    help_text = "Register a dealer profile."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--dealer-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--premium", action="store_true", help="Lift the free plan farmer limit.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_dealer)


def register_add_farmer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-farmer``."""
    name = "add-farmer"
    help_text = "Register a farmer under a dealer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--dealer-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--location", default="")
        parser.add_argument("--batch-size", type=int, default=farmers.DEFAULT_BATCH_SIZE)
        parser.add_argument("--farmer-id", default=None, help="Owning user id; required unless --placeholder.")
        parser.add_argument(
            "--placeholder",
            action="store_true",
            help="Create a dealer-managed farmer with a generated id and claim code.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_farmer)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Log a sale to a farmer, drawing down stock when an item is given."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--dealer-id", required=True)
        parser.add_argument("--farmer-id", required=True)
        parser.add_argument("--amount", type=decimal_arg, required=True)
        parser.add_argument("--description", default="Sale")
        parser.add_argument("--item-id", default=None)
        parser.add_argument("--quantity", type=decimal_arg, default=None)
        parser.add_argument("--weight", type=decimal_arg, default=None)
        parser.add_argument("--batch-id", default=None)
        parser.add_argument(
            "--status",
            choices=[member.value for member in TransactionStatus],
            default=TransactionStatus.PAID.value,
        )
        parser.add_argument("--date", type=datetime_arg, default=None)
        parser.add_argument("--remarks", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_payment_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``payment``."""
    name = "payment"
    help_text = "Log a payment received from a farmer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--dealer-id", required=True)
        parser.add_argument("--farmer-id", required=True)
        parser.add_argument("--amount", type=decimal_arg, required=True)
        parser.add_argument(
            "--method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--description", default="Payment Received")
        parser.add_argument("--reference", default=None)
        parser.add_argument("--date", type=datetime_arg, default=None)
        parser.add_argument("--remarks", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_payment)


def register_expense_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``expense``."""
    name = "expense"
    help_text = "Log a dealer business expense."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--dealer-id", required=True)
        parser.add_argument("--amount", type=decimal_arg, required=True)
        parser.add_argument("--description", required=True)
        parser.add_argument("--paid-to", default=None)
        parser.add_argument("--method", choices=[member.value for member in PaymentMethod], default=None)
        parser.add_argument("--date", type=datetime_arg, default=None)
        parser.add_argument("--remarks", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_expense)


def register_edit_transaction_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-transaction``."""
    name = "edit-transaction"
    help_text = "Edit a logged transaction; balance follows the amount change."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.add_argument("--amount", type=decimal_arg, default=None)
        parser.add_argument("--description", default=None)
        parser.add_argument("--status", choices=[member.value for member in TransactionStatus], default=None)
        parser.add_argument("--method", choices=[member.value for member in PaymentMethod], default=None)
        parser.add_argument("--reference", default=None)
        parser.add_argument("--remarks", default=None)
        parser.add_argument("--date", type=datetime_arg, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_transaction)


def register_delete_transaction_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-transaction``."""
    name = "delete-transaction"
    help_text = "Delete a transaction and reverse its balance and stock effects."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--transaction-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_transaction)


def register_place_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``place-order``."""
    name = "place-order"
    help_text = "Place a Pending order for an existing or new farmer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--dealer-id", required=True)
        farmer_group = parser.add_mutually_exclusive_group(required=True)
        farmer_group.add_argument("--farmer-id", default=None)
        farmer_group.add_argument("--new-farmer-name", default=None)
        parser.add_argument("--new-farmer-location", default="")
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            metavar="ITEM_ID:QUANTITY",
            help="Inventory item and quantity; repeat for several lines.",
        )
        parser.add_argument("--payment-amount", type=decimal_arg, default=None)
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod if member is not PaymentMethod.CREDIT],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--payment-reference", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_place_order)


def register_order_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``order-status``."""
    name = "order-status"
    help_text = "Move an order to a new status; accepting it books the sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument(
            "--status",
            choices=[member.value for member in OrderStatus if member is not OrderStatus.PENDING],
            required=True,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_order_status)


def register_cancel_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cancel-order``."""
    name = "cancel-order"
    help_text = "Cancel a Pending order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cancel_order)


def register_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purchase``."""
    name = "purchase"
    help_text = "Record a purchase order from a supplier and stock its items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--owner-id", required=True)
        parser.add_argument("--supplier", default=None)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            metavar="NAME:CATEGORY:QUANTITY:UNIT:PURCHASE_PRICE[:SALES_PRICE]",
            help="Line to stock; repeat for several items.",
        )
        parser.add_argument("--date", type=datetime_arg, default=None)
        parser.add_argument("--payment-amount", type=decimal_arg, default=None)
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--payment-reference", default=None)
        parser.add_argument(
            "--cost",
            dest="costs",
            action="append",
            default=[],
            metavar="DESCRIPTION:AMOUNT:PAID_TO",
            help="Additional cost such as freight; repeat for several.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchase)


def register_delete_purchase_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-purchase``."""
    name = "delete-purchase"
    help_text = "Delete a purchase order with its items and expense records."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--purchase-order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_purchase)


# ---------------------------------------------------------------------------
# Read command registration
# ---------------------------------------------------------------------------


def register_farmers_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``farmers``."""
    name = "farmers"
    help_text = "List a dealer's farmers with their outstanding balances."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--dealer-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_farmers_report, mutates=False)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Show current inventory for an owner."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--owner-id", required=True)
        parser.add_argument("--supplier", default=None, help="Only items bought from this supplier.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report, mutates=False)


def register_ledger_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``ledger``."""
    name = "ledger"
    help_text = "Show the latest transactions for a user."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--user-id", required=True)
        parser.add_argument("--dealer-view", action="store_true", help="Treat the user as the recording dealer.")
        parser.add_argument("--limit", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_ledger_report, mutates=False)


def register_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``orders``."""
    name = "orders"
    help_text = "List orders for a dealer or a farmer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        owner = parser.add_mutually_exclusive_group(required=True)
        owner.add_argument("--dealer-id", default=None)
        owner.add_argument("--farmer-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_orders_report, mutates=False)


def register_audit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``audit``."""
    name = "audit"
    help_text = f"Replay the ledger against stored balances (exit {AUDIT_MISMATCH_EXIT_CODE} on mismatch)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--dealer-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_audit_report, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)
    core_logic.ensure_schema_version(context)
    return context


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


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def _split_fields(raw: str, minimum: int, maximum: int, label: str) -> List[str]:
    parts = [part.strip() for part in raw.split(":")]
    if not minimum <= len(parts) <= maximum:
        raise core_logic.ValidationError(f"Malformed {label}: {raw!r}")
    return parts


def _parse_decimal(raw: str, label: str) -> Decimal:
    try:
        return decimal_arg(raw)
    except argparse.ArgumentTypeError as exc:
        raise core_logic.ValidationError(f"{label} must be a decimal amount: {raw!r}") from exc


def translate_sale(args: argparse.Namespace) -> transactions.TransactionDraft:
    """Translate CLI args into a sale draft."""
    return transactions.TransactionDraft(
        description=args.description,
        amount=args.amount,
        user_id=args.farmer_id,
        dealer_id=args.dealer_id,
        date=args.date,
        status=TransactionStatus(args.status),
        inventory_item_id=args.item_id,
        quantity_sold=args.quantity,
        total_weight=args.weight,
        batch_id=args.batch_id,
        payment_method=PaymentMethod.CREDIT,
        remarks=args.remarks,
    )


def translate_payment(args: argparse.Namespace) -> transactions.TransactionDraft:
    """Translate CLI args into a payment draft; the amount is always a credit."""
    return transactions.TransactionDraft(
        description=args.description,
        amount=-abs(args.amount),
        user_id=args.farmer_id,
        dealer_id=args.dealer_id,
        date=args.date,
        payment_method=PaymentMethod(args.method),
        reference_number=args.reference,
        remarks=args.remarks,
    )


def translate_expense(args: argparse.Namespace) -> transactions.TransactionDraft:
    """Translate CLI args into a business-expense draft."""
    return transactions.TransactionDraft(
        description=args.description,
        amount=-abs(args.amount),
        user_id=args.dealer_id,
        dealer_id=args.dealer_id,
        user_name=args.paid_to,
        date=args.date,
        payment_method=PaymentMethod(args.method) if args.method else None,
        remarks=args.remarks,
        is_business_expense=True,
    )


def translate_edit_transaction(args: argparse.Namespace) -> transactions.TransactionPatch:
    """Translate CLI args into a transaction patch."""
    return transactions.TransactionPatch(
        date=args.date,
        description=args.description,
        amount=args.amount,
        status=TransactionStatus(args.status) if args.status else None,
        payment_method=PaymentMethod(args.method) if args.method else None,
        reference_number=args.reference,
        remarks=args.remarks,
    )


def translate_place_order(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
) -> tuple[orders.OrderDraft, Optional[orders.OrderPayment]]:
    """Translate CLI args into an order draft, pricing lines from inventory."""
    lines = []
    for raw in args.items:
        item_id, quantity = _split_fields(raw, 2, 2, "order item")
        item = purchase_orders.get_inventory_item(context, item_id)
        lines.append(
            data_manager.OrderItem(
                item_id=item.item_id,
                name=item.name,
                quantity=_parse_decimal(quantity, "Quantity"),
                unit=item.unit,
                price=item.sales_price or Decimal("0"),
                purchase_source=item.purchase_source,
            )
        )
    new_farmer = None
    if args.new_farmer_name:
        new_farmer = orders.NewFarmer(name=args.new_farmer_name, location=args.new_farmer_location)
    draft = orders.OrderDraft(dealer_id=args.dealer_id, items=lines, farmer_id=args.farmer_id, new_farmer=new_farmer)
    payment = None
    if args.payment_amount is not None:
        payment = orders.OrderPayment(
            amount=args.payment_amount,
            method=PaymentMethod(args.payment_method),
            reference_number=args.payment_reference,
        )
    return draft, payment


def translate_purchase_items(raw_items: Sequence[str]) -> List[purchase_orders.PurchaseItemDraft]:
    """Translate ``--item`` values into purchase lines."""
    drafts = []
    for raw in raw_items:
        parts = _split_fields(raw, 5, 6, "purchase item")
        drafts.append(
            purchase_orders.PurchaseItemDraft(
                name=parts[0],
                category=parts[1],
                quantity=_parse_decimal(parts[2], "Quantity"),
                unit=parts[3],
                purchase_price=_parse_decimal(parts[4], "Purchase price"),
                sales_price=_parse_decimal(parts[5], "Sales price") if len(parts) == 6 else None,
            )
        )
    return drafts


def translate_additional_costs(raw_costs: Sequence[str]) -> List[purchase_orders.AdditionalCost]:
    """Translate ``--cost`` values into additional costs."""
    costs = []
    for raw in raw_costs:
        description, amount, paid_to = _split_fields(raw, 3, 3, "additional cost")
        costs.append(
            purchase_orders.AdditionalCost(
                description=description,
                amount=_parse_decimal(amount, "Additional cost"),
                paid_to=paid_to or None,
            )
        )
    return costs


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_add_dealer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Register a dealer profile."""
    core_logic.register_profile(
        context,
        user_id=args.dealer_id,
        name=args.name,
        role=ProfileRole.DEALER,
        is_premium=args.premium,
    )
    print(f"Registered dealer '{args.dealer_id}'.")
    return 0


def run_add_farmer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Register a farmer (or a placeholder farmer)."""
    draft = farmers.FarmerDraft(
        name=args.name,
        location=args.location,
        dealer_id=args.dealer_id,
        batch_size=args.batch_size,
        farmer_id=args.farmer_id,
    )
    farmer = farmers.create_farmer(context, draft, placeholder=args.placeholder)
    if farmer.is_placeholder:
        print(f"Created placeholder farmer '{farmer.farmer_id}' with claim code {farmer.farmer_code}.")
    else:
        print(f"Registered farmer '{farmer.farmer_id}'.")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow."""
    record = transactions.create_transaction(context, translate_sale(args))
    print(f"Logged sale {record.transaction_id} for {core_logic.format_money(context, record.amount)}.")
    return 0


def run_payment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment workflow."""
    record = transactions.create_transaction(context, translate_payment(args))
    print(f"Logged payment {record.transaction_id} of {core_logic.format_money(context, abs(record.amount))}.")
    return 0


def run_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the business-expense workflow."""
    record = transactions.create_transaction(context, translate_expense(args))
    print(f"Logged expense {record.transaction_id}.")
    return 0


def run_edit_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the transaction edit workflow."""
    transactions.update_transaction(context, args.transaction_id, translate_edit_transaction(args))
    print(f"Updated transaction {args.transaction_id}.")
    return 0


def run_delete_transaction(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the transaction delete workflow."""
    transactions.delete_transaction(context, args.transaction_id)
    print(f"Deleted transaction {args.transaction_id}.")
    return 0


def run_place_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the order placement workflow."""
    draft, payment = translate_place_order(context, args)
    order_id = orders.create_order(context, draft, payment)
    print(f"Placed order {order_id}.")
    return 0


def run_order_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute an order status transition."""
    order = orders.update_order_status(context, args.order_id, OrderStatus(args.status))
    print(f"Order {order.order_id} is now {order.status}.")
    return 0


def run_cancel_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the order cancellation workflow."""
    orders.delete_order(context, args.order_id)
    print(f"Cancelled order {args.order_id}.")
    return 0


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase-order workflow."""
    payment = None
    if args.payment_amount is not None:
        payment = purchase_orders.SupplierPayment(
            amount=args.payment_amount,
            method=PaymentMethod(args.payment_method),
            date=args.date,
            reference_number=args.payment_reference,
        )
    purchase_order_id = purchase_orders.create_purchase_order(
        context,
        translate_purchase_items(args.items),
        order_date=args.date,
        payment=payment,
        additional_costs=translate_additional_costs(args.costs),
        purchase_source=args.supplier,
        owner_id=args.owner_id,
    )
    print(f"Created purchase order {purchase_order_id}.")
    return 0


def run_delete_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase-order delete workflow."""
    removed = purchase_orders.delete_purchase_order(context, args.purchase_order_id)
    print(f"Removed {removed} record(s) for purchase order {args.purchase_order_id}.")
    return 0


def run_farmers_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print a dealer's farmers and balances."""
    for farmer in farmers.list_farmers_for_dealer(context, args.dealer_id):
        marker = " (placeholder)" if farmer.is_placeholder else ""
        print(
            f"{farmer.farmer_id}\t{farmer.name}{marker}\t{farmer.location}\t"
            f"{core_logic.format_money(context, farmer.outstanding)}"
        )
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print current inventory."""
    if args.supplier:
        items = purchase_orders.list_items_by_purchase_source(context, args.owner_id, args.supplier)
    else:
        items = purchase_orders.list_inventory_items(context, args.owner_id)
    for item in items:
        print(f"{item.item_id}\t{item.category}\t{item.name}\t{item.quantity}/{item.original_quantity} {item.unit}")
    return 0


def run_ledger_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print a user's latest transactions."""
    records = transactions.list_transactions_for_user(
        context,
        args.user_id,
        dealer_view=args.dealer_view,
        limit=args.limit,
    )
    for record in records:
        print(
            f"{record.date_iso[:10]}\t{record.transaction_id}\t{record.user_name}\t"
            f"{record.description}\t{core_logic.format_money(context, record.amount)}"
        )
    return 0


def run_orders_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print orders for a dealer or a farmer."""
    if args.dealer_id:
        records = orders.list_orders_for_dealer(context, args.dealer_id)
    else:
        records = orders.list_orders_for_farmer(context, args.farmer_id)
    for order in records:
        print(
            f"{order.created_at_iso[:10]}\t{order.order_id}\t{order.farmer_name}\t{order.status}\t"
            f"{core_logic.format_money(context, order.total_amount)}"
        )
    return 0


def run_audit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print balance discrepancies; non-zero exit when any exist."""
    discrepancies = farmers.audit_outstanding(context, args.dealer_id)
    if not discrepancies:
        print("All farmer balances match the ledger.")
        return 0
    for entry in discrepancies:
        print(f"{entry.farmer_id}\t{entry.name}\trecorded {entry.recorded}\treplayed {entry.replayed}")
    return AUDIT_MISMATCH_EXIT_CODE


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, WriteConflictError):
        log.error("Gave up after repeated write conflicts: %s", error)
        return WRITE_CONFLICT_EXIT_CODE
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if getattr(args, "log_level", None):
        set_log_level(args.log_level)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
