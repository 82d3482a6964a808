"""Order lifecycle: placement, status transitions, and cancellation.

Orders move through an explicit state machine. Stock and the farmer's
balance change exactly once, when a Pending order is Accepted; every other
transition only rewrites the status.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Dict, FrozenSet, List, Mapping, Optional, Sequence

from . import data_manager, log
from .atomic import AtomicUnit, run_atomic
from .constants import NotificationCategory, OrderStatus, PaymentMethod, TransactionStatus
from .core_logic import (
    InsufficientStockError,
    InvalidStateError,
    MissingReferenceError,
    RuntimeContext,
    ValidationError,
    _resolve_timestamp,
    coerce_enum,
    find_cached_record,
    format_money,
    generate_document_id,
    list_records,
    newest_first,
    require_nonnegative_money,
    require_positive_quantity,
    require_text,
)
from .farmers import DEFAULT_BATCH_SIZE, FarmerDraft, stage_placeholder_farmer
from .notifications import NotificationEvent
from .transactions import normalize_optional_text

ORDERS_LINK = "/orders"
SHORT_REFERENCE_LENGTH = 6

ORDER_TRANSITIONS: Mapping[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.ACCEPTED, OrderStatus.REJECTED}),
    OrderStatus.ACCEPTED: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.REJECTED: frozenset(),
    OrderStatus.COMPLETED: frozenset(),
}


@dataclass(frozen=True)
class NewFarmer:
    """Details for a placeholder farmer created together with an order."""

    name: str
    location: str


@dataclass(frozen=True)
class OrderDraft:
    """Caller input for :func:`create_order`.

    Exactly one of ``farmer_id`` and ``new_farmer`` should be supplied; when
    both are present the new farmer wins.
    """

    dealer_id: str
    items: Sequence[data_manager.OrderItem]
    farmer_id: Optional[str] = None
    new_farmer: Optional[NewFarmer] = None


@dataclass(frozen=True)
class OrderPayment:
    """Upfront payment captured while placing an order."""

    amount: Decimal
    method: PaymentMethod
    date: Optional[datetime] = None
    reference_number: Optional[str] = None
    remarks: Optional[str] = None


def short_reference(document_id: str, length: int = SHORT_REFERENCE_LENGTH) -> str:
    """Return the human-facing ``#`` reference for a document id.

    Identifiers start with a timestamp, so the random tail is used instead
    of the prefix.
    """

    return document_id[-length:]


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS.get(current, frozenset())


def require_transition(current: OrderStatus, target: OrderStatus) -> None:
    """Raise :class:`InvalidStateError` unless ``current -> target`` is allowed."""

    if not can_transition(current, target):
        log.warning("Rejected order transition %s -> %s", current.value, target.value)
        raise InvalidStateError(f"Cannot move an order from {current.value} to {target.value}.")


def _require_whole_quantity(quantity: Decimal) -> Decimal:
    """Order lines are counted in whole units, at least one each."""

    quantity = require_positive_quantity(quantity)
    if quantity != quantity.to_integral_value():
        log.error("Validation failed: order quantity must be a whole number, got %s", quantity)
        raise ValidationError("Order quantities must be whole units.")
    return quantity


def _validate_items(items: Sequence[data_manager.OrderItem]) -> List[data_manager.OrderItem]:
    if not items:
        log.error("Validation failed: order has no items")
        raise ValidationError("An order must contain at least one item.")
    validated = []
    for item in items:
        require_text(item.item_id, "Item id")
        require_text(item.name, "Item name")
        validated.append(
            data_manager.OrderItem(
                item_id=item.item_id,
                name=item.name,
                quantity=_require_whole_quantity(item.quantity),
                unit=item.unit or "",
                price=require_nonnegative_money(item.price, "Price"),
                purchase_source=item.purchase_source,
            )
        )
    return validated


def _validate_payment(payment: Optional[OrderPayment]) -> Optional[OrderPayment]:
    if payment is None:
        return None
    amount = require_nonnegative_money(payment.amount, "Payment amount")
    method = coerce_enum(PaymentMethod, payment.method, "payment method")
    if method is PaymentMethod.CREDIT:
        log.error("Validation failed: upfront order payment cannot be on credit")
        raise ValidationError("An upfront payment cannot use the Credit method.")
    return OrderPayment(
        amount=amount,
        method=method,
        date=_resolve_timestamp(payment.date),
        reference_number=normalize_optional_text(payment.reference_number),
        remarks=normalize_optional_text(payment.remarks),
    )


def create_order(
    context: RuntimeContext,
    draft: OrderDraft,
    payment: Optional[OrderPayment] = None,
) -> str:
    """Place a Pending order, optionally creating the farmer and logging a payment.

    An upfront payment is recorded as a negative transaction linked to the
    order and reduces the farmer's outstanding balance immediately. Stock is
    not reserved: it is checked and decremented on acceptance.

    Returns:
        str: The new order id.

    Raises:
        ValidationError: If no farmer is given, the items are malformed, or
            the payment uses the Credit method.
        MissingReferenceError: If ``farmer_id`` does not exist.
        BusinessRuleViolation: If creating a new farmer exceeds the dealer's
            free plan quota.
    """

    require_text(draft.dealer_id, "Dealer id")
    items = _validate_items(draft.items)
    payment = _validate_payment(payment)
    if draft.new_farmer is None and not draft.farmer_id:
        log.error("Validation failed: order has no farmer")
        raise ValidationError("A farmer must be selected or created for the order.")

    total_amount = sum((item.line_total for item in items), Decimal("0"))
    order_id = generate_document_id("O")
    created_at = datetime.now(UTC).isoformat()

    def body(unit: AtomicUnit) -> data_manager.OrderRow:
        if draft.new_farmer is not None:
            farmer = stage_placeholder_farmer(
                context,
                unit,
                FarmerDraft(
                    name=draft.new_farmer.name,
                    location=draft.new_farmer.location,
                    dealer_id=draft.dealer_id,
                    batch_size=DEFAULT_BATCH_SIZE,
                ),
            )
        else:
            farmer = unit.require_farmer(draft.farmer_id)

        order = data_manager.OrderRow(
            order_id=order_id,
            farmer_id=farmer.farmer_id,
            farmer_name=farmer.name,
            dealer_id=draft.dealer_id,
            items=tuple(items),
            total_amount=total_amount,
            status=OrderStatus.PENDING.value,
            created_at_iso=created_at,
        )
        unit.insert_order(order)

        if payment is not None and payment.amount > Decimal("0"):
            unit.insert_transaction(
                data_manager.TransactionRow(
                    transaction_id=generate_document_id("T"),
                    date_iso=payment.date.isoformat(),
                    description=f"Payment for Order #{short_reference(order_id)}",
                    amount=-payment.amount,
                    status=TransactionStatus.PAID.value,
                    user_id=farmer.farmer_id,
                    user_name=farmer.name,
                    dealer_id=draft.dealer_id,
                    payment_method=payment.method.value,
                    reference_number=payment.reference_number,
                    remarks=payment.remarks,
                    purchase_order_id=order_id,
                    created_at_iso=created_at,
                )
            )
            unit.adjust_outstanding(farmer.farmer_id, -payment.amount)
        return order

    order = run_atomic(context, body)
    log.info("Placed order '%s' of %s for farmer '%s'", order_id, total_amount, order.farmer_id)
    context.dispatcher.emit(
        NotificationEvent(
            user_id=order.farmer_id,
            title="Order Submitted",
            message=f"Your order of {format_money(context, total_amount)} has been sent to your dealer.",
            category=NotificationCategory.NEW_ORDER,
            link=ORDERS_LINK,
        )
    )
    return order_id


def _requested_quantities(order: data_manager.OrderRow) -> Dict[str, Decimal]:
    requested: Dict[str, Decimal] = OrderedDict()
    for item in order.items:
        requested[item.item_id] = requested.get(item.item_id, Decimal("0")) + item.quantity
    return requested


def _stage_acceptance(unit: AtomicUnit, order: data_manager.OrderRow) -> None:
    """Reads and writes that turn a Pending order into a sale."""

    farmer = unit.require_farmer(order.farmer_id)
    requested = _requested_quantities(order)
    inventory: Dict[str, data_manager.InventoryItemRow] = {}
    for item_id, quantity in requested.items():
        item = unit.require_inventory_item(item_id)
        if item.quantity < quantity:
            log.warning(
                "Order '%s' cannot be accepted: %s of '%s' requested, %s available",
                order.order_id,
                quantity,
                item_id,
                item.quantity,
            )
            raise InsufficientStockError(
                f"Not enough stock for {item.name}. Only {item.quantity} available.",
                item_id=item_id,
                available=item.quantity,
            )
        inventory[item_id] = item

    cost_of_goods_sold = sum(
        ((inventory[line.item_id].purchase_price or Decimal("0")) * line.quantity for line in order.items),
        Decimal("0"),
    )
    now = datetime.now(UTC).isoformat()

    unit.set_order_status(order.order_id, OrderStatus.ACCEPTED.value)
    unit.insert_transaction(
        data_manager.TransactionRow(
            transaction_id=generate_document_id("T"),
            date_iso=now,
            description=f"Sale from Order #{short_reference(order.order_id)}",
            amount=order.total_amount,
            status=TransactionStatus.PAID.value,
            user_id=order.farmer_id,
            user_name=farmer.name,
            dealer_id=order.dealer_id,
            inventory_item_name=", ".join(f"{line.quantity}x {line.name}" for line in order.items),
            cost_of_goods_sold=cost_of_goods_sold,
            payment_method=PaymentMethod.CREDIT.value,
            purchase_order_id=order.order_id,
            created_at_iso=now,
        )
    )
    unit.adjust_outstanding(order.farmer_id, order.total_amount)
    for item_id, quantity in requested.items():
        unit.adjust_quantity(item_id, -quantity)


def update_order_status(
    context: RuntimeContext,
    order_id: str,
    new_status: OrderStatus,
) -> data_manager.OrderRow:
    """Move an order to ``new_status``.

    Accepting a Pending order records one aggregate Credit sale for the
    order total, raises the farmer's balance by the same amount, and draws
    down every ordered item. All other allowed transitions only change the
    status.

    Raises:
        ValidationError: If ``new_status`` is not an order status.
        MissingReferenceError: If the order, its farmer, or an ordered item
            does not exist.
        InvalidStateError: If the transition is not allowed.
        InsufficientStockError: If an item holds less than was ordered.
    """

    target = coerce_enum(OrderStatus, new_status, "order status")

    def body(unit: AtomicUnit) -> data_manager.OrderRow:
        order = unit.require_order(order_id)
        require_transition(coerce_enum(OrderStatus, order.status, "order status"), target)
        if target is OrderStatus.ACCEPTED:
            _stage_acceptance(unit, order)
        else:
            unit.set_order_status(order_id, target.value)
        return order

    order = run_atomic(context, body)
    log.info("Order '%s' moved from %s to %s", order_id, order.status, target.value)
    context.dispatcher.emit(
        NotificationEvent(
            user_id=order.farmer_id,
            title=f"Order {target.value}",
            message=f"Your order #{short_reference(order_id)} has been {target.value.lower()}.",
            category=NotificationCategory.ORDER_STATUS,
            link=ORDERS_LINK,
        )
    )
    return find_cached_record(context, data_manager.ORDERS_SHEET, order_id)


def delete_order(context: RuntimeContext, order_id: str) -> None:
    """Cancel a Pending order. No balance or stock is touched.

    Raises:
        MissingReferenceError: If the order does not exist.
        InvalidStateError: If the order is no longer Pending.
    """

    def body(unit: AtomicUnit) -> None:
        order = unit.require_order(order_id)
        if order.status != OrderStatus.PENDING.value:
            log.warning("Refused to cancel order '%s' in status %s", order_id, order.status)
            raise InvalidStateError("Only Pending orders may be cancelled.")
        unit.delete(data_manager.ORDERS_SHEET, order_id)

    run_atomic(context, body)
    log.info("Cancelled order '%s'", order_id)


def get_order(context: RuntimeContext, order_id: str) -> data_manager.OrderRow:
    order = find_cached_record(context, data_manager.ORDERS_SHEET, order_id)
    if order is None:
        log.warning("Order lookup failed for id '%s'", order_id)
        raise MissingReferenceError(f"Order not found: {order_id}")
    return order


def list_orders_for_farmer(context: RuntimeContext, farmer_id: str) -> List[data_manager.OrderRow]:
    return newest_first(
        (order for order in list_records(context, data_manager.ORDERS_SHEET) if order.farmer_id == farmer_id),
        date_attribute="created_at_iso",
    )


def list_orders_for_dealer(context: RuntimeContext, dealer_id: str) -> List[data_manager.OrderRow]:
    return newest_first(
        (order for order in list_records(context, data_manager.ORDERS_SHEET) if order.dealer_id == dealer_id),
        date_attribute="created_at_iso",
    )
