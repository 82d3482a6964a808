"""Tests for the atomic mutation protocol: ordering, conflicts, and all-or-nothing commits."""

from __future__ import annotations

from decimal import Decimal

import pytest

from poultry_ledger import atomic, core_logic, data_manager
from poultry_ledger.atomic import AtomicUnit, ProtocolViolation, WriteConflictError, run_atomic


def _transaction(transaction_id: str = "T-1", amount: str = "100") -> data_manager.TransactionRow:
    return data_manager.TransactionRow(
        transaction_id=transaction_id,
        date_iso="2025-03-01T00:00:00+00:00",
        description="Test",
        amount=Decimal(amount),
        status="Paid",
        user_id="F-RAVI",
        user_name="Ravi Kumar",
        dealer_id="D-001",
    )


@pytest.fixture
def sleeps(monkeypatch: pytest.MonkeyPatch) -> list:
    """Capture backoff sleeps instead of waiting."""

    recorded: list = []
    monkeypatch.setattr(atomic.time, "sleep", recorded.append)
    return recorded


# ---------------------------------------------------------------------------
# Protocol ordering
# ---------------------------------------------------------------------------


def test_read_after_write_is_rejected(runtime_context, add_farmer):
    """All reads must precede the first staged write."""

    add_farmer()
    unit = AtomicUnit(runtime_context)
    unit.adjust_outstanding("F-RAVI", Decimal("1"))
    with pytest.raises(ProtocolViolation):
        unit.get_farmer("F-RAVI")


def test_patch_cannot_write_guarded_columns(runtime_context):
    """Balances and quantities only change through delta adjustments."""

    unit = AtomicUnit(runtime_context)
    with pytest.raises(ProtocolViolation):
        unit.patch(data_manager.FARMERS_SHEET, "F-RAVI", {"Outstanding": Decimal("0")})
    with pytest.raises(ProtocolViolation):
        unit.patch(data_manager.INVENTORY_SHEET, "I-1", {"Quantity": Decimal("0")})
    with pytest.raises(ProtocolViolation):
        unit.patch(data_manager.ORDERS_SHEET, "O-1", {"Version": 9})


def test_unit_cannot_commit_twice(runtime_context):
    """A committed unit is spent."""

    unit = AtomicUnit(runtime_context)
    unit.commit()
    assert unit.committed is True
    with pytest.raises(ProtocolViolation):
        unit.commit()


# ---------------------------------------------------------------------------
# Commit semantics
# ---------------------------------------------------------------------------


def test_commit_applies_inserts_and_bumps_versions(runtime_context, add_farmer):
    """Inserts start at version 1 and every adjustment bumps the version."""

    add_farmer()
    unit = AtomicUnit(runtime_context)
    farmer = unit.require_farmer("F-RAVI")
    unit.insert_transaction(_transaction())
    unit.adjust_outstanding(farmer.farmer_id, Decimal("100"))
    unit.commit()

    stored = data_manager.find_record(runtime_context.workbook, data_manager.FARMERS_SHEET, "F-RAVI")
    assert stored.outstanding == Decimal("100")
    assert stored.version == farmer.version + 1
    inserted = data_manager.find_record(runtime_context.workbook, data_manager.TRANSACTIONS_SHEET, "T-1")
    assert inserted.version == 1


def test_commit_invalidates_collection_cache(runtime_context, add_farmer):
    """Cached reads should reflect a commit immediately afterwards."""

    add_farmer()
    before = core_logic.find_cached_record(runtime_context, data_manager.FARMERS_SHEET, "F-RAVI")
    run_atomic(runtime_context, lambda unit: unit.adjust_outstanding("F-RAVI", Decimal("7")))
    after = core_logic.find_cached_record(runtime_context, data_manager.FARMERS_SHEET, "F-RAVI")
    assert before.outstanding == Decimal("0")
    assert after.outstanding == Decimal("7")


def test_negative_stock_aborts_whole_unit(runtime_context, stock_item):
    """A quantity that would go negative leaves every other write unapplied."""

    item = stock_item(quantity=Decimal("3"))
    unit = AtomicUnit(runtime_context)
    unit.insert_transaction(_transaction())
    unit.adjust_quantity(item.item_id, Decimal("-4"))

    with pytest.raises(core_logic.InsufficientStockError) as excinfo:
        unit.commit()

    assert excinfo.value.available == Decimal("3")
    assert data_manager.find_record(runtime_context.workbook, data_manager.TRANSACTIONS_SHEET, "T-1") is None
    stored = data_manager.find_record(runtime_context.workbook, data_manager.INVENTORY_SHEET, item.item_id)
    assert stored.quantity == Decimal("3")


def test_adjusting_missing_document_aborts(runtime_context):
    """An adjustment against an unknown farmer fails before any write."""

    unit = AtomicUnit(runtime_context)
    unit.insert_transaction(_transaction())
    unit.adjust_outstanding("F-GHOST", Decimal("10"))

    with pytest.raises(core_logic.MissingReferenceError):
        unit.commit()
    assert list(data_manager.iter_transactions(runtime_context.workbook)) == []


def test_duplicate_insert_is_a_conflict(runtime_context):
    """Inserting a key that already exists is reported as a write conflict."""

    run_atomic(runtime_context, lambda unit: unit.insert_transaction(_transaction()))
    unit = AtomicUnit(runtime_context)
    unit.insert_transaction(_transaction())
    with pytest.raises(WriteConflictError):
        unit.commit()


def test_adjust_after_insert_in_same_unit(runtime_context):
    """A document inserted earlier in the unit can be adjusted later in it."""

    farmer = data_manager.FarmerRow(
        farmer_id="F-NEW",
        name="New",
        location="",
        batch_size=100,
        dealer_id="D-001",
        outstanding=Decimal("0"),
        farmer_code="ABCDEFGHIJ",
        is_placeholder=True,
    )

    def body(unit: AtomicUnit) -> None:
        unit.insert_farmer(farmer)
        unit.adjust_outstanding("F-NEW", Decimal("-50"))

    run_atomic(runtime_context, body)
    stored = data_manager.find_record(runtime_context.workbook, data_manager.FARMERS_SHEET, "F-NEW")
    assert stored.outstanding == Decimal("-50")
    assert stored.version == 2


# ---------------------------------------------------------------------------
# Conflict detection and retry
# ---------------------------------------------------------------------------


def test_stale_read_raises_write_conflict(runtime_context, add_farmer):
    """A document changed after it was read invalidates the unit."""

    add_farmer()
    unit = AtomicUnit(runtime_context)
    unit.require_farmer("F-RAVI")
    run_atomic(runtime_context, lambda other: other.adjust_outstanding("F-RAVI", Decimal("5")))
    unit.adjust_outstanding("F-RAVI", Decimal("10"))

    with pytest.raises(WriteConflictError):
        unit.commit()
    stored = data_manager.find_record(runtime_context.workbook, data_manager.FARMERS_SHEET, "F-RAVI")
    assert stored.outstanding == Decimal("5")


def test_run_atomic_retries_conflicts_transparently(runtime_context, add_farmer, sleeps):
    """The body is re-run on fresh reads and both writers' effects survive."""

    add_farmer()
    seen_versions = []

    def body(unit: AtomicUnit) -> str:
        farmer = unit.require_farmer("F-RAVI")
        if not seen_versions:
            run_atomic(runtime_context, lambda other: other.adjust_outstanding("F-RAVI", Decimal("5")))
        seen_versions.append(farmer.version)
        unit.adjust_outstanding("F-RAVI", Decimal("10"))
        return "done"

    assert run_atomic(runtime_context, body) == "done"
    assert seen_versions == [1, 2]
    assert sleeps == [0.05]
    stored = data_manager.find_record(runtime_context.workbook, data_manager.FARMERS_SHEET, "F-RAVI")
    assert stored.outstanding == Decimal("15")


def test_run_atomic_gives_up_after_configured_attempts(runtime_context, add_farmer, sleeps):
    """Persistent conflicts surface once every attempt is spent."""

    add_farmer()
    calls = []

    def body(unit: AtomicUnit) -> None:
        unit.require_farmer("F-RAVI")
        run_atomic(runtime_context, lambda other: other.adjust_outstanding("F-RAVI", Decimal("1")))
        calls.append(1)
        unit.adjust_outstanding("F-RAVI", Decimal("10"))

    with pytest.raises(WriteConflictError):
        run_atomic(runtime_context, body, attempts=3, backoff_base=0.1)

    assert len(calls) == 3
    assert sleeps == [0.1, 0.2]


def test_run_atomic_does_not_retry_business_errors(runtime_context, sleeps):
    """Domain failures propagate on the first attempt."""

    calls = []

    def body(unit: AtomicUnit) -> None:
        calls.append(1)
        unit.require_farmer("F-GHOST")

    with pytest.raises(core_logic.MissingReferenceError):
        run_atomic(runtime_context, body)
    assert calls == [1]
    assert sleeps == []
