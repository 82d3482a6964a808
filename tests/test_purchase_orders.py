"""Tests for purchase orders: stocking inventory and recording supplier spend."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from poultry_ledger import core_logic, data_manager, farmers, orders, purchase_orders, transactions
from poultry_ledger.constants import InventoryCategory, OrderStatus, PaymentMethod
from poultry_ledger.purchase_orders import AdditionalCost, PurchaseItemDraft, SupplierPayment

from conftest import DEALER_ID


def _item(name: str = "Layer Mash", quantity: str = "20", **overrides) -> PurchaseItemDraft:
    values = dict(
        name=name,
        category=InventoryCategory.FEED,
        quantity=Decimal(quantity),
        unit="bag",
        purchase_price=Decimal("1450"),
        sales_price=Decimal("1600"),
    )
    values.update(overrides)
    return PurchaseItemDraft(**values)


# ---------------------------------------------------------------------------
# create_purchase_order
# ---------------------------------------------------------------------------


def test_purchase_order_stocks_items_on_order_date(runtime_context):
    """Each line becomes an inventory item dated to the purchase."""

    order_date = datetime(2025, 2, 10, 9, 30, tzinfo=UTC)
    purchase_order_id = purchase_orders.create_purchase_order(
        runtime_context,
        [_item(), _item("Ranikhet Vaccine", "50", category=InventoryCategory.VACCINE, unit="vial")],
        order_date=order_date,
        purchase_source="Acme Mills",
        owner_id=DEALER_ID,
    )

    header = purchase_orders.get_purchase_order(runtime_context, purchase_order_id)
    assert header.item_count == 2
    assert header.purchase_source == "Acme Mills"

    stocked = purchase_orders.list_inventory_items(runtime_context, DEALER_ID)
    assert [item.name for item in stocked] == ["Layer Mash", "Ranikhet Vaccine"]
    mash = stocked[0]
    assert mash.quantity == mash.original_quantity == Decimal("20")
    assert mash.created_at_iso == order_date.isoformat()
    assert mash.purchase_order_id == purchase_order_id
    assert mash.owner_id == DEALER_ID
    assert stocked[1].category == "Vaccine"


def test_purchase_order_records_costs_and_supplier_payment(runtime_context, add_farmer):
    """Costs and the payment are dealer expenses tied to the purchase order."""

    add_farmer()
    purchase_order_id = purchase_orders.create_purchase_order(
        runtime_context,
        [_item()],
        payment=SupplierPayment(amount=Decimal("29000"), method=PaymentMethod.RTGS, reference_number="UTR9"),
        additional_costs=[
            AdditionalCost(description="Freight", amount=Decimal("1500"), paid_to="Lorry Co"),
            AdditionalCost(description="Unloading", amount=Decimal("300"), paid_to="Crew", payment_method="Cash"),
        ],
        purchase_source="Acme Mills",
        owner_id=DEALER_ID,
    )

    reference = purchase_orders.short_reference(purchase_order_id, purchase_orders.PURCHASE_REFERENCE_LENGTH)
    expenses = transactions.list_business_expenses(runtime_context, DEALER_ID)
    assert len(expenses) == 3
    assert all(record.purchase_order_id == purchase_order_id for record in expenses)
    assert all(record.user_id == DEALER_ID for record in expenses)

    [payment] = transactions.list_supplier_payments(runtime_context, DEALER_ID, "Acme Mills")
    assert payment.amount == Decimal("-29000")
    assert payment.description == f"Payment for Purchase Order #{reference}"
    assert payment.payment_method == "RTGS"

    freight = next(record for record in expenses if record.description == "Freight")
    assert freight.amount == Decimal("-1500")
    assert freight.user_name == "Lorry Co"
    assert freight.remarks == f"Associated with PO #{reference}"

    farmer = core_logic.find_cached_record(runtime_context, data_manager.FARMERS_SHEET, "F-RAVI")
    assert farmer.outstanding == Decimal("0")


@pytest.mark.parametrize(
    ("payment", "source"),
    [
        (SupplierPayment(amount=Decimal("100"), method=PaymentMethod.CREDIT), "Acme Mills"),
        (SupplierPayment(amount=Decimal("0"), method=PaymentMethod.CASH), "Acme Mills"),
        (SupplierPayment(amount=Decimal("100"), method=PaymentMethod.CASH), None),
    ],
)
def test_supplier_payment_skipped_when_not_paid(runtime_context, payment, source):
    """Credit, zero amounts, and unnamed suppliers record no payment."""

    purchase_orders.create_purchase_order(
        runtime_context,
        [_item()],
        payment=payment,
        purchase_source=source,
        owner_id=DEALER_ID,
    )
    assert transactions.list_business_expenses(runtime_context, DEALER_ID) == []


def test_unnamed_supplier_is_recorded_as_unknown(runtime_context):
    """The header always names a supplier."""

    purchase_order_id = purchase_orders.create_purchase_order(runtime_context, [_item()], owner_id=DEALER_ID)
    header = purchase_orders.get_purchase_order(runtime_context, purchase_order_id)
    assert header.purchase_source == purchase_orders.UNKNOWN_SUPPLIER


def test_costs_without_payee_or_amount_are_ignored(runtime_context):
    """Only positive costs with a payee become expenses."""

    purchase_orders.create_purchase_order(
        runtime_context,
        [_item()],
        additional_costs=[
            AdditionalCost(description="Freight", amount=Decimal("0"), paid_to="Lorry Co"),
            AdditionalCost(description="Tips", amount=Decimal("50"), paid_to=" "),
        ],
        owner_id=DEALER_ID,
    )
    assert transactions.list_business_expenses(runtime_context, DEALER_ID) == []


def test_invalid_line_aborts_whole_purchase(runtime_context):
    """A malformed line leaves no header, stock, or expense behind."""

    with pytest.raises(core_logic.ValidationError):
        purchase_orders.create_purchase_order(
            runtime_context,
            [_item(), _item("Broken", purchase_price=Decimal("-1"))],
            payment=SupplierPayment(amount=Decimal("10"), method=PaymentMethod.CASH),
            purchase_source="Acme Mills",
            owner_id=DEALER_ID,
        )

    assert core_logic.list_records(runtime_context, data_manager.PURCHASE_ORDERS_SHEET) == []
    assert core_logic.list_records(runtime_context, data_manager.INVENTORY_SHEET) == []
    assert core_logic.list_records(runtime_context, data_manager.TRANSACTIONS_SHEET) == []


def test_owner_is_required(runtime_context):
    """Stock always belongs to a dealer."""

    with pytest.raises(core_logic.ValidationError):
        purchase_orders.create_purchase_order(runtime_context, [_item()])


def test_unknown_category_is_rejected(runtime_context):
    """Categories come from the fixed inventory list."""

    with pytest.raises(core_logic.ValidationError):
        purchase_orders.create_purchase_order(runtime_context, [_item(category="Toys")], owner_id=DEALER_ID)


# ---------------------------------------------------------------------------
# delete_purchase_order
# ---------------------------------------------------------------------------


def test_delete_removes_items_and_expenses(runtime_context):
    """The header, its stock, and its expense records go together."""

    purchase_order_id = purchase_orders.create_purchase_order(
        runtime_context,
        [_item(), _item("Grower")],
        payment=SupplierPayment(amount=Decimal("500"), method=PaymentMethod.CASH),
        additional_costs=[AdditionalCost(description="Freight", amount=Decimal("40"), paid_to="Lorry Co")],
        purchase_source="Acme Mills",
        owner_id=DEALER_ID,
    )
    kept = purchase_orders.create_purchase_order(runtime_context, [_item("Chick Starter")], owner_id=DEALER_ID)

    removed = purchase_orders.delete_purchase_order(runtime_context, purchase_order_id)

    assert removed == 5
    with pytest.raises(core_logic.MissingReferenceError):
        purchase_orders.get_purchase_order(runtime_context, purchase_order_id)
    assert [item.name for item in purchase_orders.list_inventory_items(runtime_context, DEALER_ID)] == ["Chick Starter"]
    assert transactions.list_business_expenses(runtime_context, DEALER_ID) == []
    assert purchase_orders.get_purchase_order(runtime_context, kept).item_count == 1


def test_delete_does_not_touch_farmer_sales(runtime_context, add_farmer, stock_item):
    """Sales of deleted stock keep their ledger records and balances."""

    add_farmer()
    item = stock_item(quantity=Decimal("10"))
    transactions.create_transaction(
        runtime_context,
        transactions.TransactionDraft(
            description="Feed sale",
            amount=Decimal("300"),
            user_id="F-RAVI",
            dealer_id=DEALER_ID,
            inventory_item_id=item.item_id,
            quantity_sold=Decimal("3"),
        ),
    )

    purchase_orders.delete_purchase_order(runtime_context, item.purchase_order_id)

    [sale] = transactions.list_transactions_for_farmer(runtime_context, "F-RAVI")
    assert sale.amount == Decimal("300")
    farmer = core_logic.find_cached_record(runtime_context, data_manager.FARMERS_SHEET, "F-RAVI")
    assert farmer.outstanding == Decimal("300")


def test_delete_missing_purchase_order_cleans_orphans(runtime_context):
    """A vanished header still lets orphaned stock be removed."""

    purchase_order_id = purchase_orders.create_purchase_order(runtime_context, [_item()], owner_id=DEALER_ID)
    data_manager.delete_record(runtime_context.workbook, data_manager.PURCHASE_ORDERS_SHEET, purchase_order_id)
    core_logic.invalidate_cache(runtime_context, data_manager.PURCHASE_ORDERS_SHEET)

    assert purchase_orders.delete_purchase_order(runtime_context, purchase_order_id) == 1
    assert purchase_orders.list_inventory_items(runtime_context, DEALER_ID) == []


def test_delete_unknown_purchase_order_is_a_no_op(runtime_context):
    """Nothing to remove means nothing removed."""

    assert purchase_orders.delete_purchase_order(runtime_context, "PO-GHOST") == 0


def test_delete_by_order_id_keeps_farmer_ledger(runtime_context, add_farmer, stock_item):
    """An order id matches no purchase order and its farmer records survive."""

    add_farmer()
    item = stock_item(quantity=Decimal("10"))
    order_id = orders.create_order(
        runtime_context,
        orders.OrderDraft(
            dealer_id=DEALER_ID,
            farmer_id="F-RAVI",
            items=[
                data_manager.OrderItem(
                    item_id=item.item_id, name=item.name, quantity=Decimal("2"), unit="bag", price=Decimal("100")
                )
            ],
        ),
        orders.OrderPayment(amount=Decimal("50"), method=PaymentMethod.CASH),
    )
    orders.update_order_status(runtime_context, order_id, OrderStatus.ACCEPTED)

    assert purchase_orders.delete_purchase_order(runtime_context, order_id) == 0

    assert len(transactions.list_transactions_for_farmer(runtime_context, "F-RAVI")) == 2
    assert farmers.get_farmer(runtime_context, "F-RAVI").outstanding == Decimal("150")
    assert farmers.audit_outstanding(runtime_context) == []


def test_delete_keeps_farmer_payment_linked_to_purchase_order(runtime_context, add_farmer):
    """Only business expenses go with the purchase order; farmer payments stay."""

    add_farmer()
    purchase_order_id = purchase_orders.create_purchase_order(runtime_context, [_item()], owner_id=DEALER_ID)
    payment = transactions.create_transaction(
        runtime_context,
        transactions.TransactionDraft(
            description="Payment Received",
            amount=Decimal("-200"),
            user_id="F-RAVI",
            dealer_id=DEALER_ID,
            payment_method=PaymentMethod.CASH,
            purchase_order_id=purchase_order_id,
        ),
    )

    assert purchase_orders.delete_purchase_order(runtime_context, purchase_order_id) == 2

    [kept] = transactions.list_transactions_for_farmer(runtime_context, "F-RAVI")
    assert kept.transaction_id == payment.transaction_id
    assert farmers.get_farmer(runtime_context, "F-RAVI").outstanding == Decimal("-200")
    assert farmers.audit_outstanding(runtime_context) == []


# ---------------------------------------------------------------------------
# Inventory queries
# ---------------------------------------------------------------------------


def test_purchase_source_queries(runtime_context):
    """Suppliers are listed once and their items newest first."""

    purchase_orders.create_purchase_order(
        runtime_context,
        [_item("Old Mash")],
        order_date=datetime(2025, 1, 1, tzinfo=UTC),
        purchase_source="Acme Mills",
        owner_id=DEALER_ID,
    )
    purchase_orders.create_purchase_order(
        runtime_context,
        [_item("New Mash")],
        order_date=datetime(2025, 3, 1, tzinfo=UTC),
        purchase_source="Acme Mills",
        owner_id=DEALER_ID,
    )
    purchase_orders.create_purchase_order(
        runtime_context,
        [_item("Vaccine", category=InventoryCategory.VACCINE)],
        purchase_source="BioVet",
        owner_id=DEALER_ID,
    )

    assert purchase_orders.list_purchase_sources(runtime_context, DEALER_ID) == ["Acme Mills", "BioVet"]
    acme = purchase_orders.list_items_by_purchase_source(runtime_context, DEALER_ID, "Acme Mills")
    assert [item.name for item in acme] == ["New Mash", "Old Mash"]


def test_get_inventory_item_missing_raises(runtime_context):
    """Unknown items are reported as missing references."""

    with pytest.raises(core_logic.MissingReferenceError):
        purchase_orders.get_inventory_item(runtime_context, "I-GHOST")
