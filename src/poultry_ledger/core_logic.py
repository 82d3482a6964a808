"""Shared business-layer foundations for the poultry ledger.

This module owns the :class:`RuntimeContext` every operation receives, the
domain error taxonomy, the identity collaborator, and cached read-only views
over the workbook collections. Mutations never happen here: they go through
:mod:`poultry_ledger.atomic` from the lifecycle managers.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, ProfileRole
from .notifications import NotificationDispatcher, WorkbookNotificationSink


E = TypeVar("E")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised for malformed input, before any store interaction."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced farmer, item, order, or transaction is unknown."""


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a sale or order asks for more stock than is available."""

    def __init__(self, message: str, *, item_id: Optional[str] = None, available: Optional[Decimal] = None) -> None:
        super().__init__(message)
        self.item_id = item_id
        self.available = available


class InvalidStateError(BusinessRuleViolation):
    """Raised when an order is asked to make a transition it cannot make."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the live workbook, and shared services."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    dispatcher: NotificationDispatcher = field(default_factory=NotificationDispatcher, repr=False, compare=False)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` as an aware UTC datetime, or now when ``None``.

    Naive datetimes are interpreted as UTC so that ISO strings written to the
    workbook always sort chronologically.
    """

    if candidate is None:
        return datetime.now(UTC)
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=UTC)
    return candidate.astimezone(UTC)


def generate_document_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable, collision-resistant document identifier.

    Args:
        prefix (str): Collection designator (``T`` transactions, ``O`` orders,
            ``PO`` purchase orders, ``I`` inventory items, ``F`` farmers).
        when (datetime | None): Timestamp encoded into the identifier. Defaults
            to the current UTC time.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}{hex8}``.

    The random suffix keeps identifiers unique when one atomic unit creates
    several documents within the same microsecond.
    """

    when = _resolve_timestamp(when)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{uuid.uuid4().hex[:8]}"


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after the workbook changed.

    Missing buckets are ignored so callers can request targeted invalidation
    without checking what was populated.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))
    for name in names:
        context._cache.pop(name, None)


def _ensure_collection_cache(context: RuntimeContext, sheet_name: str) -> Dict[str, Any]:
    """Populate the cache bucket for ``sheet_name`` on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` records in sheet order and a
            ``by_id`` dictionary keyed by primary key.
    """

    bucket = _get_cache_bucket(context, sheet_name)
    if "by_id" not in bucket:
        collection = data_manager.get_collection(sheet_name)
        with context._lock:
            records = list(data_manager.iter_records(context.workbook, sheet_name))
        bucket["all"] = records
        # by_id is written last; its presence marks the bucket as complete.
        bucket["by_id"] = {collection.key_of(record): record for record in records}
        log.debug("Populated %s cache with %d entries", sheet_name, len(records))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    The helper resolves ``config.ini``, parses settings, opens the workbook,
    and wires the notification dispatcher (backed by the ``Notifications``
    sheet unless notifications are disabled in the configuration).

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    return build_context(settings, workbook)


def build_context(settings: data_manager.ConfigSettings, workbook: Workbook) -> RuntimeContext:
    """Assemble a :class:`RuntimeContext` around an already opened workbook."""

    lock = threading.RLock()
    dispatcher = NotificationDispatcher()
    if settings.notifications_enabled:
        dispatcher.subscribe(WorkbookNotificationSink(workbook, lock))
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook, dispatcher=dispatcher, _lock=lock)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def list_records(context: RuntimeContext, sheet_name: str) -> List[Any]:
    """Return a copy of the cached records of one collection, in sheet order."""

    return list(_ensure_collection_cache(context, sheet_name)["all"])


def find_cached_record(context: RuntimeContext, sheet_name: str, key: str) -> Optional[Any]:
    """Look up a record by primary key through the collection cache."""

    return _ensure_collection_cache(context, sheet_name)["by_id"].get(key)


def newest_first(records: Iterable[E], *, date_attribute: str, limit: Optional[int] = None) -> List[E]:
    """Sort records by an ISO timestamp attribute, newest first, then cap.

    Ties are broken by ``created_at_iso`` when the record carries one.
    """

    ordered = sorted(
        records,
        key=lambda record: (getattr(record, date_attribute), getattr(record, "created_at_iso", "")),
        reverse=True,
    )
    if limit is not None:
        return ordered[:limit]
    return ordered


def find_profile(context: RuntimeContext, user_id: str) -> Optional[data_manager.ProfileRow]:
    """Identity collaborator lookup that returns ``None`` for unknown users."""

    return find_cached_record(context, data_manager.PROFILES_SHEET, user_id)


def get_profile(context: RuntimeContext, user_id: str) -> data_manager.ProfileRow:
    """Resolve a user's display name, role, and dealer link.

    Raises:
        MissingReferenceError: If no profile exists for ``user_id``.
    """

    profile = find_profile(context, user_id)
    if profile is None:
        log.warning("Profile lookup failed for id '%s'", user_id)
        raise MissingReferenceError(f"Unknown user id: {user_id}")
    return profile


def register_profile(
    context: RuntimeContext,
    *,
    user_id: str,
    name: str,
    role: ProfileRole,
    dealer_id: Optional[str] = None,
    is_premium: bool = False,
) -> data_manager.ProfileRow:
    """Add a user profile to the identity collaborator's sheet.

    Raises:
        ValidationError: If the id or name is blank or the role is unknown.
        BusinessRuleViolation: If a profile with ``user_id`` already exists.
    """

    require_text(user_id, "User id")
    require_text(name, "Name")
    role = coerce_enum(ProfileRole, role, "role")
    if find_profile(context, user_id) is not None:
        raise BusinessRuleViolation(f"Profile already exists: {user_id}")

    record = data_manager.ProfileRow(
        user_id=user_id,
        name=name,
        role=role.value,
        dealer_id=dealer_id,
        is_premium=is_premium,
    )
    with context._lock:
        data_manager.append_record(context.workbook, data_manager.PROFILES_SHEET, record)
    invalidate_cache(context, data_manager.PROFILES_SHEET)
    log.info("Registered %s profile '%s'", role.value, user_id)
    return record


def affects_farmer_balance(user_id: Optional[str], dealer_id: Optional[str], is_business_expense: bool) -> bool:
    """Return ``True`` when a transaction moves a farmer's outstanding balance.

    Only transactions naming a counterpart distinct from the dealer, and not
    flagged as a business expense, touch a farmer ledger.
    """

    return bool(user_id) and user_id != dealer_id and not is_business_expense


def require_text(value: Optional[str], label: str) -> str:
    """Validate that a text field is present and non-blank.

    Raises:
        ValidationError: If ``value`` is ``None`` or only whitespace.
    """

    if value is None or not str(value).strip():
        log.error("Validation failed: %s is required", label)
        raise ValidationError(f"{label} is required.")
    return value


def require_decimal(value: Any, label: str) -> Decimal:
    """Coerce ints and Decimals into :class:`Decimal`, rejecting anything else.

    Floats are refused so binary rounding never reaches the ledger.

    Raises:
        ValidationError: If ``value`` is not an int or Decimal.
    """

    if isinstance(value, bool) or not isinstance(value, (int, Decimal)):
        log.error("Validation failed: %s must be a decimal amount, got %r", label, value)
        raise ValidationError(f"{label} must be a decimal amount.")
    result = Decimal(value)
    if not result.is_finite():
        log.error("Validation failed: %s must be finite, got %s", label, result)
        raise ValidationError(f"{label} must be a finite amount.")
    return result


def require_positive_quantity(quantity: Any, label: str = "Quantity") -> Decimal:
    """Validate that a quantity is strictly positive.

    Raises:
        ValidationError: If ``quantity`` is zero, negative, or not a decimal.
    """

    quantity = require_decimal(quantity, label)
    if quantity <= Decimal("0"):
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError(f"{label} must be greater than zero.")
    return quantity


def require_nonnegative_money(amount: Any, label: str = "Amount") -> Decimal:
    """Validate that a monetary value is zero or positive.

    Raises:
        ValidationError: If ``amount`` is negative or not a decimal.
    """

    amount = require_decimal(amount, label)
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValidationError(f"{label} cannot be negative.")
    return amount


def coerce_enum(enum_type: Type[E], value: Any, label: str) -> E:
    """Convert a raw value into ``enum_type`` or raise :class:`ValidationError`."""

    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)  # type: ignore[call-arg]
    except ValueError as exc:
        log.error("Unsupported %s provided: %s", label, value)
        raise ValidationError(f"Unsupported {label}: {value}") from exc


def format_money(context: RuntimeContext, amount: Decimal) -> str:
    """Render ``amount`` with the configured currency symbol and separators."""

    return f"{context.settings.currency_symbol}{amount:,}"


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""

    with context._lock:
        data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook, an empty
            cache, and a new dispatcher.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return build_context(context.settings, workbook)


def sum_amounts(records: Iterable[Any], attribute: str = "amount") -> Decimal:
    total = Decimal("0")
    for record in records:
        total += getattr(record, attribute)
    return total
