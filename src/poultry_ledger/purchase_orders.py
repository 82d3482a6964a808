"""Purchase orders: stocking inventory from suppliers and recording what it cost.

A purchase order creates its inventory items, the dealer's additional costs
(transport, labour, ...) and the payment to the supplier in one atomic unit.
All money recorded here is a business expense; no farmer balance moves.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import List, Optional, Sequence

from . import data_manager, log
from .atomic import AtomicUnit, run_atomic
from .constants import InventoryCategory, PaymentMethod, TransactionStatus
from .core_logic import (
    MissingReferenceError,
    RuntimeContext,
    _resolve_timestamp,
    affects_farmer_balance,
    coerce_enum,
    find_cached_record,
    generate_document_id,
    list_records,
    newest_first,
    require_decimal,
    require_nonnegative_money,
    require_text,
)
from .orders import short_reference
from .transactions import normalize_optional_text

UNKNOWN_SUPPLIER = "Unknown Supplier"
PURCHASE_REFERENCE_LENGTH = 5


@dataclass(frozen=True)
class PurchaseItemDraft:
    """One line of a purchase order, becoming one inventory item."""

    name: str
    category: InventoryCategory
    quantity: Decimal
    unit: str
    purchase_price: Optional[Decimal] = None
    sales_price: Optional[Decimal] = None
    gst_rate: Optional[Decimal] = None
    purchase_source: Optional[str] = None


@dataclass(frozen=True)
class SupplierPayment:
    """Payment made to the supplier for the whole purchase order."""

    amount: Decimal
    method: PaymentMethod
    date: Optional[datetime] = None
    reference_number: Optional[str] = None
    remarks: Optional[str] = None


@dataclass(frozen=True)
class AdditionalCost:
    """Extra spend attached to a purchase order, such as freight."""

    description: str
    amount: Decimal
    paid_to: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None


def _optional_money(value: Optional[Decimal], label: str) -> Optional[Decimal]:
    if value is None:
        return None
    return require_nonnegative_money(value, label)


def _build_item(
    draft: PurchaseItemDraft,
    *,
    owner_id: str,
    purchase_order_id: str,
    purchase_source: Optional[str],
    created_at_iso: str,
) -> data_manager.InventoryItemRow:
    require_text(draft.name, "Item name")
    require_text(draft.unit, "Unit")
    quantity = require_nonnegative_money(draft.quantity, "Quantity")
    return data_manager.InventoryItemRow(
        item_id=generate_document_id("I"),
        name=draft.name.strip(),
        category=coerce_enum(InventoryCategory, draft.category, "inventory category").value,
        quantity=quantity,
        original_quantity=quantity,
        unit=draft.unit.strip(),
        purchase_price=_optional_money(draft.purchase_price, "Purchase price"),
        sales_price=_optional_money(draft.sales_price, "Sales price"),
        gst_rate=_optional_money(draft.gst_rate, "GST rate"),
        purchase_source=purchase_source or normalize_optional_text(draft.purchase_source),
        owner_id=owner_id,
        purchase_order_id=purchase_order_id,
        created_at_iso=created_at_iso,
    )


def create_purchase_order(
    context: RuntimeContext,
    items: Sequence[PurchaseItemDraft],
    order_date: Optional[datetime] = None,
    payment: Optional[SupplierPayment] = None,
    additional_costs: Optional[Sequence[AdditionalCost]] = None,
    purchase_source: Optional[str] = None,
    owner_id: Optional[str] = None,
) -> str:
    """Record a purchase from a supplier.

    Args:
        context (RuntimeContext): Active runtime context.
        items (Sequence[PurchaseItemDraft]): Lines to stock as inventory.
        order_date (datetime | None): Purchase date; defaults to now.
        payment (SupplierPayment | None): Payment to the supplier. Skipped
            for the Credit method, a zero amount, or when no supplier is
            named.
        additional_costs (Sequence[AdditionalCost] | None): Extra expenses.
            Only costs with a positive amount and a payee are recorded.
        purchase_source (str | None): Supplier name.
        owner_id (str | None): Dealer who owns the stock. Required.

    Returns:
        str: The purchase order id.

    Raises:
        ValidationError: If the owner is missing or any line is malformed.
    """

    require_text(owner_id, "Owner id")
    order_date = _resolve_timestamp(order_date)
    source = normalize_optional_text(purchase_source)
    purchase_order_id = generate_document_id("PO")
    reference = short_reference(purchase_order_id, PURCHASE_REFERENCE_LENGTH)
    created_at = datetime.now(UTC).isoformat()

    inventory = [
        _build_item(
            draft,
            owner_id=owner_id,
            purchase_order_id=purchase_order_id,
            purchase_source=source,
            created_at_iso=order_date.isoformat(),
        )
        for draft in items
    ]

    expenses: List[data_manager.TransactionRow] = []
    for cost in additional_costs or ():
        amount = require_decimal(cost.amount, "Additional cost")
        paid_to = normalize_optional_text(cost.paid_to)
        if amount <= Decimal("0") or not paid_to:
            continue
        method = None
        if cost.payment_method is not None:
            method = coerce_enum(PaymentMethod, cost.payment_method, "payment method").value
        expenses.append(
            data_manager.TransactionRow(
                transaction_id=generate_document_id("T"),
                date_iso=order_date.isoformat(),
                description=require_text(cost.description, "Cost description").strip(),
                amount=-abs(amount),
                status=TransactionStatus.PAID.value,
                user_id=owner_id,
                user_name=paid_to,
                dealer_id=owner_id,
                payment_method=method,
                remarks=f"Associated with PO #{reference}",
                purchase_order_id=purchase_order_id,
                is_business_expense=True,
                created_at_iso=created_at,
            )
        )

    if payment is not None and source:
        amount = require_decimal(payment.amount, "Payment amount")
        method = coerce_enum(PaymentMethod, payment.method, "payment method")
        if method is not PaymentMethod.CREDIT and amount > Decimal("0"):
            expenses.append(
                data_manager.TransactionRow(
                    transaction_id=generate_document_id("T"),
                    date_iso=_resolve_timestamp(payment.date).isoformat(),
                    description=f"Payment for Purchase Order #{reference}",
                    amount=-abs(amount),
                    status=TransactionStatus.PAID.value,
                    user_id=owner_id,
                    user_name=source,
                    dealer_id=owner_id,
                    payment_method=method.value,
                    reference_number=normalize_optional_text(payment.reference_number),
                    remarks=normalize_optional_text(payment.remarks),
                    purchase_order_id=purchase_order_id,
                    is_business_expense=True,
                    created_at_iso=created_at,
                )
            )

    header = data_manager.PurchaseOrderRow(
        purchase_order_id=purchase_order_id,
        owner_id=owner_id,
        order_date_iso=order_date.isoformat(),
        purchase_source=source or UNKNOWN_SUPPLIER,
        item_count=len(inventory),
        created_at_iso=created_at,
    )

    def body(unit: AtomicUnit) -> None:
        unit.insert_purchase_order(header)
        for item in inventory:
            unit.insert_inventory_item(item)
        for expense in expenses:
            unit.insert_transaction(expense)

    run_atomic(context, body)
    log.info(
        "Created purchase order '%s' from '%s' with %d item(s) and %d expense record(s)",
        purchase_order_id,
        header.purchase_source,
        len(inventory),
        len(expenses),
    )
    return purchase_order_id


def delete_purchase_order(context: RuntimeContext, purchase_order_id: str) -> int:
    """Delete a purchase order with every inventory item and transaction it created.

    Stock already sold from the deleted items is not restored anywhere and no
    balance is reversed. Only business-expense records are removed: farmer
    transactions that carry the id stay in the ledger so every outstanding
    balance still matches its replay.

    Returns:
        int: Number of documents removed, the purchase order included.
    """

    def body(unit: AtomicUnit) -> int:
        header = unit.get_purchase_order(purchase_order_id)
        if header is None:
            log.warning("Purchase order '%s' not found; removing any orphaned records", purchase_order_id)
        items = unit.query(
            data_manager.INVENTORY_SHEET,
            lambda item: item.purchase_order_id == purchase_order_id,
        )
        transactions = unit.query(
            data_manager.TRANSACTIONS_SHEET,
            lambda record: record.purchase_order_id == purchase_order_id
            and not affects_farmer_balance(record.user_id, record.dealer_id, record.is_business_expense),
        )
        if header is not None:
            unit.delete(data_manager.PURCHASE_ORDERS_SHEET, purchase_order_id)
        for item in items:
            unit.delete(data_manager.INVENTORY_SHEET, item.item_id)
        for record in transactions:
            unit.delete(data_manager.TRANSACTIONS_SHEET, record.transaction_id)
        return len(unit.writes)

    removed = run_atomic(context, body)
    log.info("Deleted purchase order '%s' (%d document(s))", purchase_order_id, removed)
    return removed


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_purchase_order(context: RuntimeContext, purchase_order_id: str) -> data_manager.PurchaseOrderRow:
    record = find_cached_record(context, data_manager.PURCHASE_ORDERS_SHEET, purchase_order_id)
    if record is None:
        log.warning("Purchase order lookup failed for id '%s'", purchase_order_id)
        raise MissingReferenceError(f"Purchase order not found: {purchase_order_id}")
    return record


def get_inventory_item(context: RuntimeContext, item_id: str) -> data_manager.InventoryItemRow:
    item = find_cached_record(context, data_manager.INVENTORY_SHEET, item_id)
    if item is None:
        log.warning("Inventory lookup failed for id '%s'", item_id)
        raise MissingReferenceError(f"Inventory item not found: {item_id}")
    return item


def list_inventory_items(context: RuntimeContext, owner_id: str) -> List[data_manager.InventoryItemRow]:
    items = [item for item in list_records(context, data_manager.INVENTORY_SHEET) if item.owner_id == owner_id]
    return sorted(items, key=lambda item: (item.category, item.name.lower()))


def list_purchase_sources(context: RuntimeContext, owner_id: str) -> List[str]:
    """Return the distinct suppliers ``owner_id`` has bought stock from."""

    return sorted(
        {
            item.purchase_source
            for item in list_records(context, data_manager.INVENTORY_SHEET)
            if item.owner_id == owner_id and item.purchase_source
        }
    )


def list_items_by_purchase_source(
    context: RuntimeContext,
    owner_id: str,
    purchase_source: str,
) -> List[data_manager.InventoryItemRow]:
    return newest_first(
        (
            item
            for item in list_records(context, data_manager.INVENTORY_SHEET)
            if item.owner_id == owner_id and item.purchase_source == purchase_source
        ),
        date_attribute="created_at_iso",
    )
