"""Data access layer for the poultry ledger.

This module provides low-level helpers that read from and write to the master
workbook. Every collection of the document store (farmers, inventory,
transactions, orders, purchase orders, profiles, notifications) is a worksheet
whose first row holds the column headers. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Collection operations: loading typed records and appending, patching, or
   deleting individual rows by their primary key.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"
FARMERS_SHEET = SheetName.FARMERS.value
INVENTORY_SHEET = SheetName.INVENTORY.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
ORDERS_SHEET = SheetName.ORDERS.value
PURCHASE_ORDERS_SHEET = SheetName.PURCHASE_ORDERS.value
PROFILES_SHEET = SheetName.PROFILES.value
NOTIFICATIONS_SHEET = SheetName.NOTIFICATIONS.value

DEFAULT_CURRENCY_SYMBOL = "₹"
DEFAULT_PAGE_SIZE = 50
DEFAULT_GLOBAL_PAGE_SIZE = 100
DEFAULT_COMMIT_ATTEMPTS = 3
DEFAULT_FREE_PLAN_FARMER_LIMIT = 3


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    currency_symbol: str = DEFAULT_CURRENCY_SYMBOL
    page_size: int = DEFAULT_PAGE_SIZE
    global_page_size: int = DEFAULT_GLOBAL_PAGE_SIZE
    commit_attempts: int = DEFAULT_COMMIT_ATTEMPTS
    free_plan_farmer_limit: int = DEFAULT_FREE_PLAN_FARMER_LIMIT
    notifications_enabled: bool = True


@dataclass(frozen=True)
class FarmerRow:
    """In-memory view of a row from the ``Farmers`` sheet."""

    farmer_id: str
    name: str
    location: str
    batch_size: int
    dealer_id: str
    outstanding: Decimal
    farmer_code: Optional[str]
    is_placeholder: bool
    version: int = 0


@dataclass(frozen=True)
class InventoryItemRow:
    """In-memory view of a row from the ``Inventory`` sheet."""

    item_id: str
    name: str
    category: str
    quantity: Decimal
    original_quantity: Decimal
    unit: str
    purchase_price: Optional[Decimal]
    sales_price: Optional[Decimal]
    gst_rate: Optional[Decimal]
    purchase_source: Optional[str]
    owner_id: str
    purchase_order_id: Optional[str]
    created_at_iso: str
    version: int = 0


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: str
    date_iso: str
    description: str
    amount: Decimal
    status: str
    user_id: str
    user_name: str
    dealer_id: str
    inventory_item_id: Optional[str] = None
    inventory_item_name: Optional[str] = None
    quantity_sold: Optional[Decimal] = None
    total_weight: Optional[Decimal] = None
    cost_of_goods_sold: Optional[Decimal] = None
    payment_method: Optional[str] = None
    reference_number: Optional[str] = None
    remarks: Optional[str] = None
    purchase_order_id: Optional[str] = None
    batch_id: Optional[str] = None
    is_business_expense: bool = False
    created_at_iso: str = ""
    version: int = 0


@dataclass(frozen=True)
class OrderItem:
    """One line of an order, persisted inside the order's ``Items`` cell."""

    item_id: str
    name: str
    quantity: Decimal
    unit: str
    price: Decimal
    purchase_source: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return self.quantity * self.price


@dataclass(frozen=True)
class OrderRow:
    """In-memory view of a row from the ``Orders`` sheet."""

    order_id: str
    farmer_id: str
    farmer_name: str
    dealer_id: str
    items: Tuple[OrderItem, ...]
    total_amount: Decimal
    status: str
    created_at_iso: str
    version: int = 0


@dataclass(frozen=True)
class PurchaseOrderRow:
    """In-memory view of a row from the ``PurchaseOrders`` sheet."""

    purchase_order_id: str
    owner_id: str
    order_date_iso: str
    purchase_source: str
    item_count: int
    created_at_iso: str
    version: int = 0


@dataclass(frozen=True)
class ProfileRow:
    """In-memory view of a row from the ``Profiles`` sheet."""

    user_id: str
    name: str
    role: str
    dealer_id: Optional[str]
    is_premium: bool


@dataclass(frozen=True)
class NotificationRow:
    """In-memory view of a row from the ``Notifications`` sheet."""

    notification_id: str
    user_id: str
    title: str
    message: str
    category: str
    link: Optional[str]
    is_read: bool
    created_at_iso: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`; callers
    receive the parser even if optional sections are missing.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. ``[Ledger]``, ``[Farmers]`` and
    ``[Notifications]`` are optional and fall back to module defaults. A
    relative ``DataFile`` is anchored to ``base_path`` (or the current working
    directory) and resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a numeric or boolean option cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    settings = ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        currency_symbol=parser.get("Ledger", "CurrencySymbol", fallback=DEFAULT_CURRENCY_SYMBOL),
        page_size=parser.getint("Ledger", "PageSize", fallback=DEFAULT_PAGE_SIZE),
        global_page_size=parser.getint("Ledger", "GlobalPageSize", fallback=DEFAULT_GLOBAL_PAGE_SIZE),
        commit_attempts=parser.getint("Ledger", "CommitAttempts", fallback=DEFAULT_COMMIT_ATTEMPTS),
        free_plan_farmer_limit=parser.getint("Farmers", "FreePlanLimit", fallback=DEFAULT_FREE_PLAN_FARMER_LIMIT),
        notifications_enabled=parser.getboolean("Notifications", "Enabled", fallback=True),
    )
    if settings.commit_attempts < 1:
        raise ValueError("CommitAttempts must be at least 1")
    return settings


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Cell coercion helpers
# ---------------------------------------------------------------------------


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    if raw is None or raw == "":
        return Decimal(default)
    return Decimal(str(raw))


def _to_optional_decimal(raw: object) -> Optional[Decimal]:
    if raw is None or raw == "":
        return None
    return Decimal(str(raw))


def _to_optional_str(raw: object) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def _to_str(raw: object) -> str:
    return str(raw) if raw is not None else ""


def _to_bool(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"true", "1", "yes"}
    return bool(raw)


def _to_int(raw: object) -> int:
    if raw is None or raw == "":
        return 0
    return int(Decimal(str(raw)))


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_farmer(record: FarmerRow) -> list[object]:
    """Arrange a farmer in the ``Farmers`` column order."""

    return [
        record.farmer_id,
        record.name,
        record.location,
        record.batch_size,
        record.dealer_id,
        record.outstanding,
        record.farmer_code,
        record.is_placeholder,
        record.version,
    ]


def deserialize_farmer(raw_row: Sequence[object]) -> FarmerRow:
    """Convert a raw ``Farmers`` row into a typed record."""

    (
        farmer_id,
        name,
        location,
        batch_size,
        dealer_id,
        outstanding,
        farmer_code,
        is_placeholder,
        version,
    ) = raw_row[:9]
    return FarmerRow(
        farmer_id=str(farmer_id),
        name=_to_str(name),
        location=_to_str(location),
        batch_size=_to_int(batch_size),
        dealer_id=_to_str(dealer_id),
        outstanding=_to_decimal(outstanding),
        farmer_code=_to_optional_str(farmer_code),
        is_placeholder=_to_bool(is_placeholder),
        version=_to_int(version),
    )


def serialize_inventory_item(record: InventoryItemRow) -> list[object]:
    """Arrange an inventory item in the ``Inventory`` column order."""

    return [
        record.item_id,
        record.name,
        record.category,
        record.quantity,
        record.original_quantity,
        record.unit,
        record.purchase_price,
        record.sales_price,
        record.gst_rate,
        record.purchase_source,
        record.owner_id,
        record.purchase_order_id,
        record.created_at_iso,
        record.version,
    ]


def deserialize_inventory_item(raw_row: Sequence[object]) -> InventoryItemRow:
    """Convert a raw ``Inventory`` row into a typed record.

    ``Quantity`` and ``OriginalQuantity`` default to zero when blank; prices
    remain ``None`` so callers can tell "unpriced" apart from "free".
    """

    (
        item_id,
        name,
        category,
        quantity,
        original_quantity,
        unit,
        purchase_price,
        sales_price,
        gst_rate,
        purchase_source,
        owner_id,
        purchase_order_id,
        created_at_iso,
        version,
    ) = raw_row[:14]
    return InventoryItemRow(
        item_id=str(item_id),
        name=_to_str(name),
        category=_to_str(category),
        quantity=_to_decimal(quantity),
        original_quantity=_to_decimal(original_quantity),
        unit=_to_str(unit),
        purchase_price=_to_optional_decimal(purchase_price),
        sales_price=_to_optional_decimal(sales_price),
        gst_rate=_to_optional_decimal(gst_rate),
        purchase_source=_to_optional_str(purchase_source),
        owner_id=_to_str(owner_id),
        purchase_order_id=_to_optional_str(purchase_order_id),
        created_at_iso=_to_str(created_at_iso),
        version=_to_int(version),
    )


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction into the ``Transactions`` column order.

    Numerical fields remain :class:`~decimal.Decimal` instances so Excel keeps
    their precision when the workbook is saved.
    """

    return [
        record.transaction_id,
        record.date_iso,
        record.description,
        record.amount,
        record.status,
        record.user_id,
        record.user_name,
        record.dealer_id,
        record.inventory_item_id,
        record.inventory_item_name,
        record.quantity_sold,
        record.total_weight,
        record.cost_of_goods_sold,
        record.payment_method,
        record.reference_number,
        record.remarks,
        record.purchase_order_id,
        record.batch_id,
        record.is_business_expense,
        record.created_at_iso,
        record.version,
    ]


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw ``Transactions`` row into a strongly typed record.

    Optional columns remain ``None`` when the sheet leaves them blank and
    textual columns default to empty strings where downstream code expects
    text.
    """

    (
        transaction_id,
        date_iso,
        description,
        amount,
        status,
        user_id,
        user_name,
        dealer_id,
        inventory_item_id,
        inventory_item_name,
        quantity_sold,
        total_weight,
        cost_of_goods_sold,
        payment_method,
        reference_number,
        remarks,
        purchase_order_id,
        batch_id,
        is_business_expense,
        created_at_iso,
        version,
    ) = raw_row[:21]
    return TransactionRow(
        transaction_id=str(transaction_id),
        date_iso=_to_str(date_iso),
        description=_to_str(description),
        amount=_to_decimal(amount),
        status=_to_str(status),
        user_id=_to_str(user_id),
        user_name=_to_str(user_name),
        dealer_id=_to_str(dealer_id),
        inventory_item_id=_to_optional_str(inventory_item_id),
        inventory_item_name=_to_optional_str(inventory_item_name),
        quantity_sold=_to_optional_decimal(quantity_sold),
        total_weight=_to_optional_decimal(total_weight),
        cost_of_goods_sold=_to_optional_decimal(cost_of_goods_sold),
        payment_method=_to_optional_str(payment_method),
        reference_number=_to_optional_str(reference_number),
        remarks=_to_optional_str(remarks),
        purchase_order_id=_to_optional_str(purchase_order_id),
        batch_id=_to_optional_str(batch_id),
        is_business_expense=_to_bool(is_business_expense),
        created_at_iso=_to_str(created_at_iso),
        version=_to_int(version),
    )


def serialize_order_items(items: Iterable[OrderItem]) -> str:
    """Encode order lines as the JSON document stored in the ``Items`` cell."""

    return json.dumps(
        [
            {
                "itemId": item.item_id,
                "name": item.name,
                "quantity": str(item.quantity),
                "unit": item.unit,
                "price": str(item.price),
                "purchaseSource": item.purchase_source,
            }
            for item in items
        ]
    )


def deserialize_order_items(raw: object) -> Tuple[OrderItem, ...]:
    """Decode the ``Items`` cell of an order row."""

    if raw is None or raw == "":
        return ()
    return tuple(
        OrderItem(
            item_id=str(entry["itemId"]),
            name=str(entry["name"]),
            quantity=Decimal(str(entry["quantity"])),
            unit=str(entry.get("unit") or ""),
            price=Decimal(str(entry["price"])),
            purchase_source=entry.get("purchaseSource"),
        )
        for entry in json.loads(str(raw))
    )


def serialize_order(record: OrderRow) -> list[object]:
    return [
        record.order_id,
        record.farmer_id,
        record.farmer_name,
        record.dealer_id,
        serialize_order_items(record.items),
        record.total_amount,
        record.status,
        record.created_at_iso,
        record.version,
    ]


def deserialize_order(raw_row: Sequence[object]) -> OrderRow:
    (
        order_id,
        farmer_id,
        farmer_name,
        dealer_id,
        items,
        total_amount,
        status,
        created_at_iso,
        version,
    ) = raw_row[:9]
    return OrderRow(
        order_id=str(order_id),
        farmer_id=_to_str(farmer_id),
        farmer_name=_to_str(farmer_name),
        dealer_id=_to_str(dealer_id),
        items=deserialize_order_items(items),
        total_amount=_to_decimal(total_amount),
        status=_to_str(status),
        created_at_iso=_to_str(created_at_iso),
        version=_to_int(version),
    )


def serialize_purchase_order(record: PurchaseOrderRow) -> list[object]:
    return [
        record.purchase_order_id,
        record.owner_id,
        record.order_date_iso,
        record.purchase_source,
        record.item_count,
        record.created_at_iso,
        record.version,
    ]


def deserialize_purchase_order(raw_row: Sequence[object]) -> PurchaseOrderRow:
    (
        purchase_order_id,
        owner_id,
        order_date_iso,
        purchase_source,
        item_count,
        created_at_iso,
        version,
    ) = raw_row[:7]
    return PurchaseOrderRow(
        purchase_order_id=str(purchase_order_id),
        owner_id=_to_str(owner_id),
        order_date_iso=_to_str(order_date_iso),
        purchase_source=_to_str(purchase_source),
        item_count=_to_int(item_count),
        created_at_iso=_to_str(created_at_iso),
        version=_to_int(version),
    )


def serialize_profile(record: ProfileRow) -> list[object]:
    return [record.user_id, record.name, record.role, record.dealer_id, record.is_premium]


def deserialize_profile(raw_row: Sequence[object]) -> ProfileRow:
    user_id, name, role, dealer_id, is_premium = raw_row[:5]
    return ProfileRow(
        user_id=str(user_id),
        name=_to_str(name),
        role=_to_str(role),
        dealer_id=_to_optional_str(dealer_id),
        is_premium=_to_bool(is_premium),
    )


def serialize_notification(record: NotificationRow) -> list[object]:
    return [
        record.notification_id,
        record.user_id,
        record.title,
        record.message,
        record.category,
        record.link,
        record.is_read,
        record.created_at_iso,
    ]


def deserialize_notification(raw_row: Sequence[object]) -> NotificationRow:
    notification_id, user_id, title, message, category, link, is_read, created_at_iso = raw_row[:8]
    return NotificationRow(
        notification_id=str(notification_id),
        user_id=_to_str(user_id),
        title=_to_str(title),
        message=_to_str(message),
        category=_to_str(category),
        link=_to_optional_str(link),
        is_read=_to_bool(is_read),
        created_at_iso=_to_str(created_at_iso),
    )


@dataclass(frozen=True)
class Collection:
    """Binds a worksheet to its primary key column and row codecs."""

    sheet_name: str
    key_column: str
    key_attribute: str
    serialize: Callable[[Any], list[object]]
    deserialize: Callable[[Sequence[object]], Any]

    def key_of(self, record: Any) -> str:
        return getattr(record, self.key_attribute)


COLLECTIONS: Dict[str, Collection] = {
    FARMERS_SHEET: Collection(FARMERS_SHEET, "FarmerID", "farmer_id", serialize_farmer, deserialize_farmer),
    INVENTORY_SHEET: Collection(
        INVENTORY_SHEET, "ItemID", "item_id", serialize_inventory_item, deserialize_inventory_item
    ),
    TRANSACTIONS_SHEET: Collection(
        TRANSACTIONS_SHEET, "TransactionID", "transaction_id", serialize_transaction, deserialize_transaction
    ),
    ORDERS_SHEET: Collection(ORDERS_SHEET, "OrderID", "order_id", serialize_order, deserialize_order),
    PURCHASE_ORDERS_SHEET: Collection(
        PURCHASE_ORDERS_SHEET,
        "PurchaseOrderID",
        "purchase_order_id",
        serialize_purchase_order,
        deserialize_purchase_order,
    ),
    PROFILES_SHEET: Collection(PROFILES_SHEET, "UserID", "user_id", serialize_profile, deserialize_profile),
    NOTIFICATIONS_SHEET: Collection(
        NOTIFICATIONS_SHEET,
        "NotificationID",
        "notification_id",
        serialize_notification,
        deserialize_notification,
    ),
}


def get_collection(sheet_name: str) -> Collection:
    """Return the collection descriptor registered for ``sheet_name``.

    Raises:
        KeyError: If the sheet is not a known collection.
    """

    try:
        return COLLECTIONS[sheet_name]
    except KeyError as exc:
        raise KeyError(f"Unknown collection: {sheet_name}") from exc


# ---------------------------------------------------------------------------
# Collection operations
# ---------------------------------------------------------------------------


def _header_map(workbook: Workbook, sheet_name: str) -> Dict[str, int]:
    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def iter_records(workbook: Workbook, sheet_name: str) -> Iterable[Any]:
    """Iterate over the typed records stored on ``sheet_name``.

    The iterator skips the header row and any fully empty rows, converting
    each remaining row with the collection's deserializer.

    Args:
        workbook (Workbook): Workbook containing the collection sheet.
        sheet_name (str): Name of a sheet registered in :data:`COLLECTIONS`.

    Yields:
        Any: One typed record per meaningful row, in sheet order.
    """

    collection = get_collection(sheet_name)
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield collection.deserialize(raw)


def iter_farmers(workbook: Workbook) -> Iterable[FarmerRow]:
    return iter_records(workbook, FARMERS_SHEET)


def iter_inventory_items(workbook: Workbook) -> Iterable[InventoryItemRow]:
    return iter_records(workbook, INVENTORY_SHEET)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    return iter_records(workbook, TRANSACTIONS_SHEET)


def iter_orders(workbook: Workbook) -> Iterable[OrderRow]:
    return iter_records(workbook, ORDERS_SHEET)


def iter_purchase_orders(workbook: Workbook) -> Iterable[PurchaseOrderRow]:
    return iter_records(workbook, PURCHASE_ORDERS_SHEET)


def iter_profiles(workbook: Workbook) -> Iterable[ProfileRow]:
    return iter_records(workbook, PROFILES_SHEET)


def iter_notifications(workbook: Workbook) -> Iterable[NotificationRow]:
    return iter_records(workbook, NOTIFICATIONS_SHEET)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    sheet = workbook[sheet_name]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] is not None and str(row[key_col_index - 1]) == key_value:
            return row_idx

    return None


def find_record(workbook: Workbook, sheet_name: str, key_value: str) -> Optional[Any]:
    """Return the typed record whose primary key equals ``key_value``.

    Returns:
        Any | None: The deserialized record, or ``None`` when absent.
    """

    collection = get_collection(sheet_name)
    row_index = locate_row(workbook, sheet_name, collection.key_column, key_value)
    if row_index is None:
        return None
    sheet = workbook[sheet_name]
    raw = next(sheet.iter_rows(min_row=row_index, max_row=row_index, values_only=True))
    return collection.deserialize(raw)


def append_record(workbook: Workbook, sheet_name: str, record: Any) -> None:
    """Append ``record`` to its collection sheet in the sheet's column order.

    Raises:
        KeyError: If a record with the same primary key already exists.
    """

    collection = get_collection(sheet_name)
    key = collection.key_of(record)
    if locate_row(workbook, sheet_name, collection.key_column, key) is not None:
        raise KeyError(f"Duplicate {collection.key_column}: {key}")
    workbook[sheet_name].append(collection.serialize(record))


def update_record(workbook: Workbook, sheet_name: str, key_value: str, *, field_values: Dict[str, Any]) -> None:
    """Update selected columns for an existing record.

    Only the specified header columns are written; other cells are left
    untouched.

    Args:
        workbook (Workbook): Workbook containing the collection sheet.
        sheet_name (str): Collection sheet name.
        key_value (str): Primary key of the row to patch.
        field_values (dict[str, Any]): Mapping of header names to new values.

    Raises:
        KeyError: If the record or any referenced column cannot be found.
    """

    collection = get_collection(sheet_name)
    row_index = locate_row(workbook, sheet_name, collection.key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} record not found: {key_value}")

    header_map = _header_map(workbook, sheet_name)
    sheet = workbook[sheet_name]
    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def delete_record(workbook: Workbook, sheet_name: str, key_value: str) -> bool:
    """Remove the row whose primary key equals ``key_value``.

    Returns:
        bool: ``True`` when a row was removed, ``False`` when none matched.
    """

    collection = get_collection(sheet_name)
    row_index = locate_row(workbook, sheet_name, collection.key_column, key_value)
    if row_index is None:
        log.debug("No %s row to delete for key '%s'", sheet_name, key_value)
        return False
    workbook[sheet_name].delete_rows(row_index)
    return True
