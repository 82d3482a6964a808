"""Enumerations shared across the poultry ledger modules.

Centralises domain constants so that the data access layer (DAL), the
lifecycle managers, and the CLI rely on a single source of truth for status
names, payment methods, and worksheet identifiers.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class TransactionStatus(str, Enum):
    """Settlement state recorded on a ledger transaction."""

    PAID = "Paid"
    PENDING = "Pending"


class PaymentMethod(str, Enum):
    """Enumerate the payment mechanisms accepted on transactions."""

    CASH = "Cash"
    BANK_TRANSFER = "Bank Transfer"
    CREDIT = "Credit"
    UPI = "UPI"
    RTGS = "RTGS"
    NEFT = "NEFT"


class OrderStatus(str, Enum):
    """Lifecycle states of a dealer/farmer order."""

    PENDING = "Pending"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    SHIPPED = "Shipped"
    COMPLETED = "Completed"


class InventoryCategory(str, Enum):
    """Stock-keeping categories a dealer can purchase."""

    FEED = "Feed"
    VACCINE = "Vaccine"
    MEDICINE = "Medicine"
    CHICKS = "Chicks"
    OTHER = "Other"


class ProfileRole(str, Enum):
    """Roles known to the identity collaborator."""

    FARMER = "farmer"
    DEALER = "dealer"
    ADMIN = "admin"


class NotificationCategory(str, Enum):
    """Categories attached to user notifications."""

    ANNOUNCEMENT = "announcement"
    ORDER_STATUS = "order_status"
    NEW_ORDER = "new_order"
    NEW_PAYMENT = "new_payment"
    CONNECTION_REQUEST = "connection_request"
    CONNECTION_ACCEPTED = "connection_accepted"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    FARMERS = "Farmers"
    INVENTORY = "Inventory"
    TRANSACTIONS = "Transactions"
    ORDERS = "Orders"
    PURCHASE_ORDERS = "PurchaseOrders"
    PROFILES = "Profiles"
    NOTIFICATIONS = "Notifications"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "TransactionStatus",
    "PaymentMethod",
    "OrderStatus",
    "InventoryCategory",
    "ProfileRole",
    "NotificationCategory",
    "SheetName",
]
