"""
Sync Planner

Decides which externally-sourced records may be written to the ledger and
executes the approved writes. Planning is deterministic and additive only:
nothing is ever deleted or modified, and every rejection carries a reason.

Decision order per candidate:
1. Validate (positive amount, within auto-sync limits, has a description)
2. Skip duplicates of existing ledger rows (same amount within 0.01, same description)
3. Approve
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from ledgerflow.models.reconciliation import SuggestedAction, SyncFailure
from ledgerflow.models.records import Record
from ledgerflow.services.normalizer import normalize_record

logger = logging.getLogger(__name__)

DUPLICATE_AMOUNT_TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class SyncRules:
    min_amount: Decimal = Decimal("1.0")
    max_amount: Decimal = Decimal("10000.0")
    allow_undated: bool = True
    allow_duplicates: bool = False


@dataclass
class SyncPlan:
    approved: List[Record] = field(default_factory=list)
    rejected: List[SyncFailure] = field(default_factory=list)


def validate_candidate(record: Record, rules: SyncRules) -> Optional[str]:
    """Return a rejection reason, or None when the record may be synced."""
    if record.amount <= 0:
        return "Invalid or missing amount"
    if not record.description.strip():
        return "Missing description"
    if record.amount < rules.min_amount:
        return f"Amount below minimum threshold ({rules.min_amount})"
    if record.amount > rules.max_amount:
        return f"Amount exceeds auto-sync limit ({rules.max_amount}), requires manual approval"
    if not rules.allow_undated and record.date is None:
        return "Date required but missing"
    return None


def is_duplicate(record: Record, existing: Sequence[Record]) -> bool:
    description = record.description.lower()
    return any(
        abs(other.amount - record.amount) < DUPLICATE_AMOUNT_TOLERANCE
        and other.description.lower() == description
        for other in existing
    )


def plan_sync(
    actions: Sequence[SuggestedAction],
    existing: Sequence[Record],
    rules: Optional[SyncRules] = None,
) -> SyncPlan:
    rules = rules or SyncRules()
    plan = SyncPlan()
    # Approved records count as existing so a batch cannot duplicate itself
    seen = list(existing)

    for action in actions:
        if action.action != "create_record":
            continue
        record = action.record
        reason = validate_candidate(record, rules)
        if reason is None and not rules.allow_duplicates and is_duplicate(record, seen):
            reason = "Duplicate of existing ledger record"
        if reason:
            plan.rejected.append(SyncFailure(record=record, reason=reason, stage="validation"))
            continue
        plan.approved.append(record)
        seen.append(record)

    logger.info(
        "Sync plan: %d approved, %d rejected out of %d suggestions",
        len(plan.approved), len(plan.rejected), len(actions),
    )
    return plan


async def execute_sync(
    plan: SyncPlan,
    store: Any,
    auth_context: Optional[Mapping[str, Any]] = None,
    timeout: Optional[float] = None,
) -> Tuple[List[Record], List[SyncFailure]]:
    """
    Create each approved record in the ledger.

    Each write succeeds or fails on its own; a failed create is recorded and
    the remaining records are still attempted.
    """
    synced: List[Record] = []
    failures: List[SyncFailure] = list(plan.rejected)

    for record in plan.approved:
        try:
            created = await asyncio.wait_for(store.create(record, auth_context), timeout)
        except Exception as exc:
            logger.warning(
                "Failed to create ledger record %s (%s): %s",
                record.description, record.amount, exc,
            )
            failures.append(
                SyncFailure(record=record, reason=str(exc) or type(exc).__name__, stage="create")
            )
            continue
        synced.append(normalize_record(created, "ledger") if created else record)

    return synced, failures
