"""Farmer registry: creation, free-plan quota, lookups, and balance audits."""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from . import data_manager, log
from .atomic import AtomicUnit, run_atomic
from .core_logic import (
    BusinessRuleViolation,
    MissingReferenceError,
    RuntimeContext,
    ValidationError,
    affects_farmer_balance,
    find_cached_record,
    find_profile,
    generate_document_id,
    list_records,
    require_text,
    sum_amounts,
)

FARMER_CODE_ALPHABET = string.ascii_uppercase + string.digits
FARMER_CODE_LENGTH = 10
DEFAULT_BATCH_SIZE = 100


@dataclass(frozen=True)
class FarmerDraft:
    """Input for :func:`create_farmer`.

    ``farmer_id`` is the owning user's id for regular farmers and is ignored
    for placeholders, which receive a generated id.
    """

    name: str
    location: str
    dealer_id: str
    batch_size: int = DEFAULT_BATCH_SIZE
    farmer_id: Optional[str] = None


@dataclass(frozen=True)
class OutstandingDiscrepancy:
    """Farmer whose stored balance differs from the replayed ledger."""

    farmer_id: str
    name: str
    recorded: Decimal
    replayed: Decimal

    @property
    def difference(self) -> Decimal:
        return self.recorded - self.replayed


def generate_farmer_code(length: int = FARMER_CODE_LENGTH) -> str:
    """Return a random uppercase alphanumeric code used to claim a placeholder."""

    return "".join(secrets.choice(FARMER_CODE_ALPHABET) for _ in range(length))


def _validate_draft(draft: FarmerDraft, *, placeholder: bool) -> None:
    require_text(draft.name, "Farmer name")
    require_text(draft.dealer_id, "Dealer id")
    if not placeholder:
        require_text(draft.farmer_id, "Farmer id")
    if isinstance(draft.batch_size, bool) or not isinstance(draft.batch_size, int) or draft.batch_size < 0:
        log.error("Validation failed: batch size must be a non-negative integer, got %r", draft.batch_size)
        raise ValidationError("Batch size must be a non-negative whole number.")


def check_farmer_quota(context: RuntimeContext, unit: AtomicUnit, dealer_id: str) -> None:
    """Enforce the free-plan farmer limit for ``dealer_id`` inside ``unit``.

    The dealer's existing farmers are read through the unit so that a
    concurrent registration for the same dealer forces a retry instead of
    slipping past the limit.

    Raises:
        BusinessRuleViolation: If a non-premium dealer is already at the limit.
    """

    owned = unit.query(data_manager.FARMERS_SHEET, lambda farmer: farmer.dealer_id == dealer_id)
    profile = find_profile(context, dealer_id)
    if profile is not None and profile.is_premium:
        return

    limit = context.settings.free_plan_farmer_limit
    if len(owned) >= limit:
        log.warning("Dealer '%s' reached the free plan limit of %d farmers", dealer_id, limit)
        raise BusinessRuleViolation(
            f"Free plan is limited to {limit} farmers. Please upgrade to a premium account to add more."
        )


def build_farmer_row(draft: FarmerDraft, *, placeholder: bool) -> data_manager.FarmerRow:
    farmer_id = generate_document_id("F") if placeholder else draft.farmer_id
    return data_manager.FarmerRow(
        farmer_id=farmer_id,
        name=draft.name.strip(),
        location=(draft.location or "").strip(),
        batch_size=draft.batch_size,
        dealer_id=draft.dealer_id,
        outstanding=Decimal("0"),
        farmer_code=generate_farmer_code() if placeholder else None,
        is_placeholder=placeholder,
    )


def stage_placeholder_farmer(
    context: RuntimeContext,
    unit: AtomicUnit,
    draft: FarmerDraft,
) -> data_manager.FarmerRow:
    """Read the dealer's quota and stage a placeholder farmer in ``unit``.

    Used by flows that create a farmer as part of a larger atomic unit. The
    caller must not have staged any write yet.
    """

    _validate_draft(draft, placeholder=True)
    check_farmer_quota(context, unit, draft.dealer_id)
    record = build_farmer_row(draft, placeholder=True)
    unit.insert_farmer(record)
    return record


def create_farmer(context: RuntimeContext, draft: FarmerDraft, *, placeholder: bool = False) -> data_manager.FarmerRow:
    """Register a farmer under a dealer.

    Args:
        context (RuntimeContext): Active runtime context.
        draft (FarmerDraft): Farmer details.
        placeholder (bool): Create a dealer-managed farmer without a user
            account. Placeholders get a generated id and a claim code.

    Returns:
        FarmerRow: The stored farmer.

    Raises:
        ValidationError: If required details are missing.
        BusinessRuleViolation: If the farmer id is taken or the dealer's free
            plan quota is exhausted.
    """

    _validate_draft(draft, placeholder=placeholder)

    def body(unit: AtomicUnit) -> data_manager.FarmerRow:
        if placeholder:
            return stage_placeholder_farmer(context, unit, draft)
        if unit.get_farmer(draft.farmer_id) is not None:
            log.warning("Farmer id '%s' is already registered", draft.farmer_id)
            raise BusinessRuleViolation(f"Farmer already exists: {draft.farmer_id}")
        check_farmer_quota(context, unit, draft.dealer_id)
        record = build_farmer_row(draft, placeholder=False)
        unit.insert_farmer(record)
        return record

    record = run_atomic(context, body)
    log.info(
        "Registered %sfarmer '%s' (%s) for dealer '%s'",
        "placeholder " if placeholder else "",
        record.name,
        record.farmer_id,
        record.dealer_id,
    )
    return find_cached_record(context, data_manager.FARMERS_SHEET, record.farmer_id)


def get_farmer(context: RuntimeContext, farmer_id: str) -> data_manager.FarmerRow:
    """Return the farmer with ``farmer_id``.

    Raises:
        MissingReferenceError: If the farmer does not exist.
    """

    farmer = find_cached_record(context, data_manager.FARMERS_SHEET, farmer_id)
    if farmer is None:
        log.warning("Farmer lookup failed for id '%s'", farmer_id)
        raise MissingReferenceError(f"Farmer profile could not be found: {farmer_id}")
    return farmer


def list_farmers_for_dealer(context: RuntimeContext, dealer_id: str) -> List[data_manager.FarmerRow]:
    farmers = [farmer for farmer in list_records(context, data_manager.FARMERS_SHEET) if farmer.dealer_id == dealer_id]
    return sorted(farmers, key=lambda farmer: farmer.name.lower())


def replay_outstanding(context: RuntimeContext, farmer_id: str) -> Decimal:
    """Recompute a farmer's balance from the transaction ledger."""

    return sum_amounts(
        transaction
        for transaction in list_records(context, data_manager.TRANSACTIONS_SHEET)
        if transaction.user_id == farmer_id
        and affects_farmer_balance(transaction.user_id, transaction.dealer_id, transaction.is_business_expense)
    )


def audit_outstanding(context: RuntimeContext, dealer_id: Optional[str] = None) -> List[OutstandingDiscrepancy]:
    """Compare every stored farmer balance with its replayed ledger.

    Args:
        context (RuntimeContext): Active runtime context.
        dealer_id (str | None): Restrict the audit to one dealer's farmers.

    Returns:
        list[OutstandingDiscrepancy]: Farmers whose balances disagree; empty
            when the ledger is consistent.
    """

    discrepancies: List[OutstandingDiscrepancy] = []
    for farmer in list_records(context, data_manager.FARMERS_SHEET):
        if dealer_id is not None and farmer.dealer_id != dealer_id:
            continue
        replayed = replay_outstanding(context, farmer.farmer_id)
        if replayed != farmer.outstanding:
            log.warning(
                "Outstanding mismatch for farmer '%s': recorded %s, replayed %s",
                farmer.farmer_id,
                farmer.outstanding,
                replayed,
            )
            discrepancies.append(
                OutstandingDiscrepancy(
                    farmer_id=farmer.farmer_id,
                    name=farmer.name,
                    recorded=farmer.outstanding,
                    replayed=replayed,
                )
            )
    return discrepancies
