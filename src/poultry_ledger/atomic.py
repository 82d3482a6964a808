"""Atomic mutation protocol for ledger, balance, and inventory writes.

Every business event that touches more than one document (a sale, an order
acceptance, a purchase order) runs inside an :class:`AtomicUnit`:

1. The body issues all of its reads first. Each read records the version of
   the document it saw.
2. The body then stages writes: inserts, patches, deletes, and the two delta
   primitives :meth:`AtomicUnit.adjust_outstanding` and
   :meth:`AtomicUnit.adjust_quantity`. Nothing reaches the workbook yet.
3. :meth:`AtomicUnit.commit` re-checks the read set under the context lock,
   validates every staged write against committed state, and only then
   applies them. A stale read raises :class:`WriteConflictError`; a missing
   target or a quantity that would go negative aborts with no change.

:func:`run_atomic` is the only retry loop: it re-runs the whole body on
write conflicts and lets business errors through untouched.

Farmer ``Outstanding`` and inventory ``Quantity`` are written exclusively by
this module.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from . import data_manager, log
from .core_logic import InsufficientStockError, MissingReferenceError, RuntimeContext, invalidate_cache


T = TypeVar("T")

INSERT = "insert"
PATCH = "patch"
DELETE = "delete"
ADJUST = "adjust"

# Columns that only the delta primitives may write, keyed by sheet.
GUARDED_COLUMNS: Dict[str, Tuple[str, str]] = {
    data_manager.FARMERS_SHEET: ("Outstanding", "outstanding"),
    data_manager.INVENTORY_SHEET: ("Quantity", "quantity"),
}


class WriteConflictError(Exception):
    """Raised at commit when a document read by the unit changed underneath it."""


class ProtocolViolation(RuntimeError):
    """Raised when a unit is used out of order (read after write, double commit)."""


@dataclass(frozen=True)
class StagedWrite:
    """One buffered mutation waiting for :meth:`AtomicUnit.commit`."""

    kind: str
    sheet_name: str
    key: str
    record: Any = None
    field_values: Optional[Dict[str, Any]] = None
    delta: Decimal = Decimal("0")


class AtomicUnit:
    """Read-then-write unit of work over the context's workbook."""

    def __init__(self, context: RuntimeContext) -> None:
        self._context = context
        self._read_versions: Dict[Tuple[str, str], Optional[int]] = {}
        self._writes: List[StagedWrite] = []
        self._committed = False

    @property
    def writes(self) -> Tuple[StagedWrite, ...]:
        return tuple(self._writes)

    @property
    def committed(self) -> bool:
        return self._committed

    # -- reads --------------------------------------------------------------

    def _ensure_read_phase(self) -> None:
        if self._committed:
            raise ProtocolViolation("Atomic unit has already been committed")
        if self._writes:
            raise ProtocolViolation("All reads must be issued before the first write of an atomic unit")

    def read(self, sheet_name: str, key: str) -> Optional[Any]:
        """Read one document by primary key and remember the version seen."""

        self._ensure_read_phase()
        with self._context._lock:
            record = data_manager.find_record(self._context.workbook, sheet_name, key)
        self._read_versions[(sheet_name, key)] = _version_of(record)
        return record

    def query(self, sheet_name: str, predicate: Callable[[Any], bool]) -> List[Any]:
        """Read every document of a collection matching ``predicate``."""

        self._ensure_read_phase()
        collection = data_manager.get_collection(sheet_name)
        with self._context._lock:
            matches = [
                record
                for record in data_manager.iter_records(self._context.workbook, sheet_name)
                if predicate(record)
            ]
        for record in matches:
            self._read_versions[(sheet_name, collection.key_of(record))] = _version_of(record)
        return matches

    def _require(self, sheet_name: str, key: str, message: str) -> Any:
        record = self.read(sheet_name, key)
        if record is None:
            log.warning("%s (%s '%s')", message, sheet_name, key)
            raise MissingReferenceError(message)
        return record

    def get_farmer(self, farmer_id: str) -> Optional[data_manager.FarmerRow]:
        return self.read(data_manager.FARMERS_SHEET, farmer_id)

    def require_farmer(self, farmer_id: str) -> data_manager.FarmerRow:
        return self._require(data_manager.FARMERS_SHEET, farmer_id, f"Farmer profile could not be found: {farmer_id}")

    def get_inventory_item(self, item_id: str) -> Optional[data_manager.InventoryItemRow]:
        return self.read(data_manager.INVENTORY_SHEET, item_id)

    def require_inventory_item(self, item_id: str) -> data_manager.InventoryItemRow:
        return self._require(data_manager.INVENTORY_SHEET, item_id, f"Inventory item not found: {item_id}")

    def require_transaction(self, transaction_id: str) -> data_manager.TransactionRow:
        return self._require(data_manager.TRANSACTIONS_SHEET, transaction_id, f"Transaction not found: {transaction_id}")

    def require_order(self, order_id: str) -> data_manager.OrderRow:
        return self._require(data_manager.ORDERS_SHEET, order_id, f"Order not found: {order_id}")

    def get_purchase_order(self, purchase_order_id: str) -> Optional[data_manager.PurchaseOrderRow]:
        return self.read(data_manager.PURCHASE_ORDERS_SHEET, purchase_order_id)

    # -- writes -------------------------------------------------------------

    def _stage(self, write: StagedWrite) -> None:
        if self._committed:
            raise ProtocolViolation("Atomic unit has already been committed")
        self._writes.append(write)

    def insert(self, sheet_name: str, record: Any) -> None:
        collection = data_manager.get_collection(sheet_name)
        self._stage(StagedWrite(INSERT, sheet_name, collection.key_of(record), record=record))

    def insert_transaction(self, record: data_manager.TransactionRow) -> None:
        self.insert(data_manager.TRANSACTIONS_SHEET, record)

    def insert_farmer(self, record: data_manager.FarmerRow) -> None:
        self.insert(data_manager.FARMERS_SHEET, record)

    def insert_order(self, record: data_manager.OrderRow) -> None:
        self.insert(data_manager.ORDERS_SHEET, record)

    def insert_inventory_item(self, record: data_manager.InventoryItemRow) -> None:
        self.insert(data_manager.INVENTORY_SHEET, record)

    def insert_purchase_order(self, record: data_manager.PurchaseOrderRow) -> None:
        self.insert(data_manager.PURCHASE_ORDERS_SHEET, record)

    def patch(self, sheet_name: str, key: str, field_values: Dict[str, Any]) -> None:
        """Stage a partial update of header columns on an existing document."""

        guarded = GUARDED_COLUMNS.get(sheet_name)
        if guarded is not None and guarded[0] in field_values:
            raise ProtocolViolation(f"{sheet_name}.{guarded[0]} may only change through a delta adjustment")
        if "Version" in field_values:
            raise ProtocolViolation("Document versions are maintained by the commit")
        self._stage(StagedWrite(PATCH, sheet_name, key, field_values=dict(field_values)))

    def set_order_status(self, order_id: str, status: str) -> None:
        self.patch(data_manager.ORDERS_SHEET, order_id, {"Status": status})

    def update_transaction_fields(self, transaction_id: str, field_values: Dict[str, Any]) -> None:
        self.patch(data_manager.TRANSACTIONS_SHEET, transaction_id, field_values)

    def delete(self, sheet_name: str, key: str) -> None:
        self._stage(StagedWrite(DELETE, sheet_name, key))

    def adjust_outstanding(self, farmer_id: str, delta: Decimal) -> None:
        """Stage ``outstanding += delta`` on a farmer."""

        self._stage(StagedWrite(ADJUST, data_manager.FARMERS_SHEET, farmer_id, delta=Decimal(delta)))

    def adjust_quantity(self, item_id: str, delta: Decimal) -> None:
        """Stage ``quantity += delta`` on an inventory item."""

        self._stage(StagedWrite(ADJUST, data_manager.INVENTORY_SHEET, item_id, delta=Decimal(delta)))

    # -- commit -------------------------------------------------------------

    def commit(self) -> None:
        """Validate and apply every staged write, or none of them.

        Raises:
            WriteConflictError: If a document read by this unit has changed.
            MissingReferenceError: If a patch or adjustment targets a document
                that does not exist.
            InsufficientStockError: If an inventory quantity would drop below
                zero.
            ProtocolViolation: If the unit was already committed.
        """

        if self._committed:
            raise ProtocolViolation("Atomic unit has already been committed")

        touched = sorted({write.sheet_name for write in self._writes})
        with self._context._lock:
            self._verify_read_set()
            self._validate_writes()
            for write in self._writes:
                self._apply(write)
        self._committed = True
        invalidate_cache(self._context, *touched)
        if self._writes:
            log.debug("Committed atomic unit with %d write(s) across %s", len(self._writes), ", ".join(touched))

    def _verify_read_set(self) -> None:
        workbook = self._context.workbook
        for (sheet_name, key), seen in self._read_versions.items():
            current = _version_of(data_manager.find_record(workbook, sheet_name, key))
            if current != seen:
                log.warning(
                    "Write conflict on %s '%s': read version %s, committed version %s",
                    sheet_name,
                    key,
                    seen,
                    current,
                )
                raise WriteConflictError(f"{sheet_name} '{key}' changed during the atomic unit")

    def _validate_writes(self) -> None:
        """Replay the staged writes against committed state without applying them."""

        workbook = self._context.workbook
        exists: Dict[Tuple[str, str], bool] = {}
        values: Dict[Tuple[str, str], Decimal] = {}
        names: Dict[Tuple[str, str], str] = {}

        def load(sheet_name: str, key: str) -> bool:
            slot = (sheet_name, key)
            if slot not in exists:
                record = data_manager.find_record(workbook, sheet_name, key)
                exists[slot] = record is not None
                guarded = GUARDED_COLUMNS.get(sheet_name)
                if record is not None and guarded is not None:
                    values[slot] = getattr(record, guarded[1])
                    names[slot] = getattr(record, "name", key)
            return exists[slot]

        for write in self._writes:
            slot = (write.sheet_name, write.key)
            if write.kind == INSERT:
                if load(write.sheet_name, write.key):
                    raise WriteConflictError(f"{write.sheet_name} '{write.key}' already exists")
                exists[slot] = True
                guarded = GUARDED_COLUMNS.get(write.sheet_name)
                if guarded is not None:
                    values[slot] = getattr(write.record, guarded[1])
                    names[slot] = getattr(write.record, "name", write.key)
            elif write.kind == DELETE:
                load(write.sheet_name, write.key)
                exists[slot] = False
            elif not load(write.sheet_name, write.key):
                log.warning("Cannot %s missing %s '%s'", write.kind, write.sheet_name, write.key)
                raise MissingReferenceError(f"{write.sheet_name} record not found: {write.key}")
            elif write.kind == ADJUST:
                current = values[slot]
                updated = current + write.delta
                if write.sheet_name == data_manager.INVENTORY_SHEET and updated < Decimal("0"):
                    log.warning(
                        "Rejected stock adjustment on '%s': %s available, delta %s",
                        write.key,
                        current,
                        write.delta,
                    )
                    raise InsufficientStockError(
                        f"Not enough stock for {names[slot]}. Only {current} available.",
                        item_id=write.key,
                        available=current,
                    )
                values[slot] = updated

    def _apply(self, write: StagedWrite) -> None:
        workbook = self._context.workbook
        if write.kind == INSERT:
            record = write.record
            if hasattr(record, "version"):
                record = replace(record, version=1)
            data_manager.append_record(workbook, write.sheet_name, record)
        elif write.kind == DELETE:
            data_manager.delete_record(workbook, write.sheet_name, write.key)
        else:
            current = data_manager.find_record(workbook, write.sheet_name, write.key)
            field_values = dict(write.field_values or {})
            if write.kind == ADJUST:
                column, attribute = GUARDED_COLUMNS[write.sheet_name]
                field_values[column] = getattr(current, attribute) + write.delta
            if hasattr(current, "version"):
                field_values["Version"] = current.version + 1
            data_manager.update_record(workbook, write.sheet_name, write.key, field_values=field_values)


def _version_of(record: Optional[Any]) -> Optional[int]:
    if record is None:
        return None
    return getattr(record, "version", 0)


def run_atomic(
    context: RuntimeContext,
    body: Callable[[AtomicUnit], T],
    *,
    attempts: Optional[int] = None,
    backoff_base: float = 0.05,
) -> T:
    """Run ``body`` inside a fresh :class:`AtomicUnit` and commit it.

    The body receives the unit, performs its reads, stages its writes, and
    returns a value that is handed back to the caller after a successful
    commit. On :class:`WriteConflictError` the body is re-run against fresh
    reads, with exponential backoff, up to ``attempts`` times (defaulting to
    ``settings.commit_attempts``). Any other exception propagates immediately
    and nothing is written.
    """

    attempts = attempts if attempts is not None else context.settings.commit_attempts
    for attempt in range(attempts):
        unit = AtomicUnit(context)
        try:
            result = body(unit)
            unit.commit()
            return result
        except WriteConflictError:
            if attempt >= attempts - 1:
                log.error("Atomic unit abandoned after %d conflicting attempt(s)", attempts)
                raise
            log.warning("Atomic unit conflict on attempt %d/%d; retrying", attempt + 1, attempts)
            time.sleep(backoff_base * (2 ** attempt))
    raise WriteConflictError("Atomic unit could not be attempted")
