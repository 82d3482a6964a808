"""Transaction lifecycle: logging sales, payments, and expenses against the ledger.

Creating, editing, and deleting a transaction keeps the affected farmer's
outstanding balance and any sold inventory in step with the ledger record,
all within one atomic unit.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from . import data_manager, log
from .atomic import AtomicUnit, run_atomic
from .constants import NotificationCategory, PaymentMethod, TransactionStatus
from .core_logic import (
    InsufficientStockError,
    RuntimeContext,
    ValidationError,
    _resolve_timestamp,
    affects_farmer_balance,
    coerce_enum,
    find_cached_record,
    find_profile,
    format_money,
    generate_document_id,
    list_records,
    newest_first,
    require_decimal,
    require_text,
)
from .notifications import NotificationEvent

LEDGER_LINK = "/ledger"


@dataclass(frozen=True)
class TransactionDraft:
    """Caller input for :func:`create_transaction`.

    ``amount`` is signed: positive for a sale or charge to the farmer,
    negative for a payment received. ``user_name`` is looked up from the
    farmer or the identity profile when omitted.
    """

    description: str
    amount: Decimal
    user_id: str
    dealer_id: str
    date: Optional[datetime] = None
    status: TransactionStatus = TransactionStatus.PAID
    user_name: Optional[str] = None
    inventory_item_id: Optional[str] = None
    inventory_item_name: Optional[str] = None
    quantity_sold: Optional[Decimal] = None
    total_weight: Optional[Decimal] = None
    payment_method: Optional[PaymentMethod] = None
    reference_number: Optional[str] = None
    remarks: Optional[str] = None
    purchase_order_id: Optional[str] = None
    batch_id: Optional[str] = None
    is_business_expense: bool = False


@dataclass(frozen=True)
class TransactionPatch:
    """Editable fields of an existing transaction; ``None`` leaves a field as is.

    An empty string for ``reference_number`` or ``remarks`` clears it.
    """

    date: Optional[datetime] = None
    description: Optional[str] = None
    amount: Optional[Decimal] = None
    status: Optional[TransactionStatus] = None
    payment_method: Optional[PaymentMethod] = None
    reference_number: Optional[str] = None
    remarks: Optional[str] = None

    def field_values(self) -> Dict[str, Any]:
        """Translate the patch into ``Transactions`` header columns.

        Raises:
            ValidationError: If any supplied value is malformed.
        """

        values: Dict[str, Any] = {}
        if self.date is not None:
            values["Date"] = _resolve_timestamp(self.date).isoformat()
        if self.description is not None:
            values["Description"] = require_text(self.description, "Description").strip()
        if self.amount is not None:
            values["Amount"] = require_decimal(self.amount, "Amount")
        if self.status is not None:
            values["Status"] = coerce_enum(TransactionStatus, self.status, "transaction status").value
        if self.payment_method is not None:
            values["PaymentMethod"] = coerce_enum(PaymentMethod, self.payment_method, "payment method").value
        if self.reference_number is not None:
            values["ReferenceNumber"] = normalize_optional_text(self.reference_number)
        if self.remarks is not None:
            values["Remarks"] = normalize_optional_text(self.remarks)
        return values


def normalize_optional_text(value: Optional[str]) -> Optional[str]:
    """Collapse blank strings to ``None``."""

    if value is None:
        return None
    value = value.strip()
    return value or None


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _is_sale(transaction: Any) -> bool:
    return (
        bool(transaction.inventory_item_id)
        and transaction.quantity_sold is not None
        and transaction.quantity_sold > Decimal("0")
    )


def _optional_decimal(value: Any, label: str) -> Optional[Decimal]:
    if value is None:
        return None
    value = require_decimal(value, label)
    if value < Decimal("0"):
        log.error("Validation failed: %s cannot be negative (%s)", label, value)
        raise ValidationError(f"{label} cannot be negative.")
    return value


def _normalize_draft(draft: TransactionDraft) -> TransactionDraft:
    """Validate ``draft`` and return a copy with canonical values.

    Raises:
        ValidationError: On missing text, non-decimal amounts, or unknown
            enum values.
    """

    require_text(draft.description, "Description")
    require_text(draft.user_id, "User id")
    require_text(draft.dealer_id, "Dealer id")
    method = None
    if draft.payment_method is not None:
        method = coerce_enum(PaymentMethod, draft.payment_method, "payment method")
    return TransactionDraft(
        description=draft.description.strip(),
        amount=require_decimal(draft.amount, "Amount"),
        user_id=draft.user_id,
        dealer_id=draft.dealer_id,
        date=_resolve_timestamp(draft.date),
        status=coerce_enum(TransactionStatus, draft.status, "transaction status"),
        user_name=normalize_optional_text(draft.user_name),
        inventory_item_id=normalize_optional_text(draft.inventory_item_id),
        inventory_item_name=normalize_optional_text(draft.inventory_item_name),
        quantity_sold=_optional_decimal(draft.quantity_sold, "Quantity sold"),
        total_weight=_optional_decimal(draft.total_weight, "Total weight"),
        payment_method=method,
        reference_number=normalize_optional_text(draft.reference_number),
        remarks=normalize_optional_text(draft.remarks),
        purchase_order_id=normalize_optional_text(draft.purchase_order_id),
        batch_id=normalize_optional_text(draft.batch_id),
        is_business_expense=bool(draft.is_business_expense),
    )


def _resolve_user_name(context: RuntimeContext, draft: TransactionDraft, farmer: Optional[data_manager.FarmerRow]) -> str:
    if draft.user_name:
        return draft.user_name
    if farmer is not None:
        return farmer.name
    profile = find_profile(context, draft.user_id)
    if profile is not None:
        return profile.name
    return draft.user_id


def _transaction_event(context: RuntimeContext, record: data_manager.TransactionRow) -> NotificationEvent:
    if record.amount > Decimal("0"):
        return NotificationEvent(
            user_id=record.user_id,
            title="New Sale Logged",
            message=f"A new sale of {format_money(context, record.amount)} has been added to your ledger.",
            category=NotificationCategory.NEW_PAYMENT,
            link=LEDGER_LINK,
        )
    return NotificationEvent(
        user_id=record.user_id,
        title="Payment Received",
        message=f"Your payment of {format_money(context, abs(record.amount))} has been logged by your dealer.",
        category=NotificationCategory.NEW_PAYMENT,
        link=LEDGER_LINK,
    )


def create_transaction(context: RuntimeContext, draft: TransactionDraft) -> data_manager.TransactionRow:
    """Log a transaction and apply its balance and stock effects atomically.

    When the transaction belongs to a farmer (not the dealer, not a business
    expense) the farmer's outstanding balance moves by ``amount``. When it
    records a sale of ``quantity_sold`` units of an inventory item, that stock
    is decremented and the cost of goods sold is captured at the item's
    current purchase price.

    Args:
        context (RuntimeContext): Active runtime context.
        draft (TransactionDraft): Transaction details.

    Returns:
        TransactionRow: The committed record.

    Raises:
        ValidationError: If the draft is malformed.
        MissingReferenceError: If the farmer or inventory item does not exist.
        InsufficientStockError: If the item holds less than ``quantity_sold``.
    """

    draft = _normalize_draft(draft)
    farmer_affecting = affects_farmer_balance(draft.user_id, draft.dealer_id, draft.is_business_expense)
    transaction_id = generate_document_id("T")

    def body(unit: AtomicUnit) -> data_manager.TransactionRow:
        farmer = unit.require_farmer(draft.user_id) if farmer_affecting else None
        item = None
        cost_of_goods_sold = None
        if _is_sale(draft):
            item = unit.require_inventory_item(draft.inventory_item_id)
            if item.quantity < draft.quantity_sold:
                log.warning(
                    "Sale of %s '%s' rejected: only %s available",
                    draft.quantity_sold,
                    item.item_id,
                    item.quantity,
                )
                raise InsufficientStockError(
                    f"Not enough stock for {item.name}. Only {item.quantity} available.",
                    item_id=item.item_id,
                    available=item.quantity,
                )
            cost_of_goods_sold = (item.purchase_price or Decimal("0")) * draft.quantity_sold

        record = data_manager.TransactionRow(
            transaction_id=transaction_id,
            date_iso=draft.date.isoformat(),
            description=draft.description,
            amount=draft.amount,
            status=draft.status.value,
            user_id=draft.user_id,
            user_name=_resolve_user_name(context, draft, farmer),
            dealer_id=draft.dealer_id,
            inventory_item_id=draft.inventory_item_id,
            inventory_item_name=draft.inventory_item_name or (item.name if item is not None else None),
            quantity_sold=draft.quantity_sold,
            total_weight=draft.total_weight,
            cost_of_goods_sold=cost_of_goods_sold,
            payment_method=draft.payment_method.value if draft.payment_method is not None else None,
            reference_number=draft.reference_number,
            remarks=draft.remarks,
            purchase_order_id=draft.purchase_order_id,
            batch_id=draft.batch_id,
            is_business_expense=draft.is_business_expense,
            created_at_iso=_now_iso(),
        )
        unit.insert_transaction(record)
        if farmer is not None:
            unit.adjust_outstanding(farmer.farmer_id, draft.amount)
        if item is not None:
            unit.adjust_quantity(item.item_id, -draft.quantity_sold)
        return record

    record = run_atomic(context, body)
    log.info(
        "Logged transaction '%s' of %s for user '%s' (dealer '%s')",
        record.transaction_id,
        record.amount,
        record.user_id,
        record.dealer_id,
    )
    if farmer_affecting:
        context.dispatcher.emit(_transaction_event(context, record))
    return find_cached_record(context, data_manager.TRANSACTIONS_SHEET, transaction_id)


def update_transaction(
    context: RuntimeContext,
    transaction_id: str,
    patch: TransactionPatch,
) -> data_manager.TransactionRow:
    """Edit a logged transaction, shifting the farmer balance by the amount delta.

    Inventory is never touched by an edit: the quantity sold and the stored
    cost of goods sold are fixed when the transaction is created.

    Raises:
        ValidationError: If the patch carries malformed values.
        MissingReferenceError: If the transaction (or its farmer, when the
            amount changes) does not exist.
    """

    field_values = patch.field_values()

    def body(unit: AtomicUnit) -> None:
        existing = unit.require_transaction(transaction_id)
        delta = Decimal("0")
        if "Amount" in field_values:
            delta = field_values["Amount"] - existing.amount
        farmer = None
        if delta != Decimal("0") and affects_farmer_balance(
            existing.user_id, existing.dealer_id, existing.is_business_expense
        ):
            farmer = unit.require_farmer(existing.user_id)
        if field_values:
            unit.update_transaction_fields(transaction_id, field_values)
        if farmer is not None:
            unit.adjust_outstanding(farmer.farmer_id, delta)

    run_atomic(context, body)
    log.info("Updated transaction '%s' (%s)", transaction_id, ", ".join(sorted(field_values)) or "no changes")
    return find_cached_record(context, data_manager.TRANSACTIONS_SHEET, transaction_id)


def delete_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Delete a transaction and reverse its balance and stock effects.

    If the sold inventory item no longer exists the restock is skipped with a
    warning; the record is still removed and the balance still reversed.

    Returns:
        TransactionRow: The record as it was before deletion.

    Raises:
        MissingReferenceError: If the transaction, or the farmer it affects,
            does not exist.
    """

    def body(unit: AtomicUnit) -> data_manager.TransactionRow:
        existing = unit.require_transaction(transaction_id)
        farmer = None
        if affects_farmer_balance(existing.user_id, existing.dealer_id, existing.is_business_expense):
            farmer = unit.require_farmer(existing.user_id)
        item = None
        if _is_sale(existing):
            item = unit.get_inventory_item(existing.inventory_item_id)
            if item is None:
                log.warning(
                    "Inventory item '%s' for transaction '%s' no longer exists; skipping restock",
                    existing.inventory_item_id,
                    transaction_id,
                )
        unit.delete(data_manager.TRANSACTIONS_SHEET, transaction_id)
        if farmer is not None:
            unit.adjust_outstanding(farmer.farmer_id, -existing.amount)
        if item is not None:
            unit.adjust_quantity(item.item_id, existing.quantity_sold)
        return existing

    removed = run_atomic(context, body)
    log.info("Deleted transaction '%s' and reversed its effects", transaction_id)
    return removed


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def _transactions(context: RuntimeContext) -> List[data_manager.TransactionRow]:
    return list_records(context, data_manager.TRANSACTIONS_SHEET)


def list_transactions_for_user(
    context: RuntimeContext,
    user_id: str,
    *,
    dealer_view: bool = False,
    limit: Optional[int] = None,
) -> List[data_manager.TransactionRow]:
    """Return a user's latest transactions, newest first.

    In ``dealer_view`` the user is treated as a dealer and every transaction
    they recorded is returned. The page is capped at ``settings.page_size``
    unless ``limit`` says otherwise.
    """

    if dealer_view:
        matches = [record for record in _transactions(context) if record.dealer_id == user_id]
    else:
        matches = [record for record in _transactions(context) if record.user_id == user_id]
    return newest_first(matches, date_attribute="date_iso", limit=limit or context.settings.page_size)


def list_recent_transactions(context: RuntimeContext, *, limit: Optional[int] = None) -> List[data_manager.TransactionRow]:
    return newest_first(
        _transactions(context),
        date_attribute="date_iso",
        limit=limit or context.settings.global_page_size,
    )


def list_transactions_for_farmer(context: RuntimeContext, farmer_id: str) -> List[data_manager.TransactionRow]:
    return newest_first(
        (record for record in _transactions(context) if record.user_id == farmer_id),
        date_attribute="date_iso",
    )


def list_transactions_for_batch(context: RuntimeContext, batch_id: str) -> List[data_manager.TransactionRow]:
    return newest_first(
        (record for record in _transactions(context) if record.batch_id == batch_id),
        date_attribute="date_iso",
    )


def list_business_expenses(context: RuntimeContext, dealer_id: str) -> List[data_manager.TransactionRow]:
    return newest_first(
        (record for record in _transactions(context) if record.dealer_id == dealer_id and record.is_business_expense),
        date_attribute="date_iso",
    )


def list_supplier_payments(
    context: RuntimeContext,
    dealer_id: str,
    supplier_name: str,
) -> List[data_manager.TransactionRow]:
    """Return a dealer's business-expense payments made to ``supplier_name``."""

    return newest_first(
        (
            record
            for record in _transactions(context)
            if record.dealer_id == dealer_id and record.is_business_expense and record.user_name == supplier_name
        ),
        date_attribute="date_iso",
    )
