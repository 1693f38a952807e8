"""
Reconciliation domain logic.

Drives normalization and matching into a structured diff, then turns the
diff into a report. Everything here is deterministic; the only collaborator
call (semantic evidence lookup) is best-effort and never fails the caller.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ledgerflow.models.reconciliation import (
    ComparisonResult,
    Discrepancy,
    DiscrepancyType,
    MatchCandidate,
    MatchConfig,
    MatchType,
    ReconciliationReport,
    ReconciliationStatistics,
    Severity,
    SuggestedAction,
    SyncFailure,
    Totals,
)
from ledgerflow.models.records import Record
from ledgerflow.services.matching import assign_matches
from ledgerflow.services.normalizer import RawRecord, describe_record, normalize_records

logger = logging.getLogger(__name__)

EVIDENCE_THRESHOLD = 0.7
EVIDENCE_RESULTS = 3


def totals_for(records: Iterable[Record]) -> Totals:
    count = 0
    amount = Decimal("0")
    for record in records:
        count += 1
        amount += record.amount
    return Totals(count=count, amount=amount)


def compute_match_rate(matched: int, source_count: int, target_count: int) -> float:
    """matched / source_count; 1.0 for two empty lists, 0.0 for an empty source."""
    if source_count == 0:
        return 1.0 if target_count == 0 else 0.0
    return min(1.0, matched / source_count)


def compare_records(
    source: Sequence[RawRecord],
    target: Sequence[RawRecord],
    config: Optional[MatchConfig] = None,
    source_label: str = "source",
    target_label: str = "target",
) -> ComparisonResult:
    """
    Compare two record lists.

    Source records are matched one by one against the target list. Unmatched
    source records become missing_in_target (high), unmatched target records
    missing_in_source (medium). Fuzzy matches are kept as matches and also
    reported as amount_mismatch (medium).
    """
    sources = normalize_records(source, source_label)
    targets = normalize_records(target, target_label)
    result = assign_matches(sources, targets, config)

    matches: List[MatchCandidate] = []
    discrepancies: List[Discrepancy] = []

    def _next_id() -> str:
        return f"disc_{len(discrepancies) + 1:04d}"

    for assignment in result.assignments:
        src = sources[assignment.source_index]
        tgt = targets[assignment.target_index]
        matches.append(
            MatchCandidate(
                source_record=src,
                target_record=tgt,
                score=assignment.score,
                match_type=assignment.match_type,
                breakdown=assignment.breakdown,
            )
        )
        if assignment.match_type is MatchType.FUZZY:
            discrepancies.append(
                Discrepancy(
                    id=_next_id(),
                    type=DiscrepancyType.AMOUNT_MISMATCH,
                    severity=Severity.MEDIUM,
                    source_record=src,
                    target_record=tgt,
                    difference=abs(src.amount - tgt.amount),
                )
            )

    source_only = [sources[idx] for idx in result.unmatched_source]
    target_only = [targets[idx] for idx in result.unmatched_target]

    for record in source_only:
        discrepancies.append(
            Discrepancy(
                id=_next_id(),
                type=DiscrepancyType.MISSING_IN_TARGET,
                severity=Severity.HIGH,
                source_record=record,
            )
        )
    for record in target_only:
        discrepancies.append(
            Discrepancy(
                id=_next_id(),
                type=DiscrepancyType.MISSING_IN_SOURCE,
                severity=Severity.MEDIUM,
                target_record=record,
            )
        )

    logger.info(
        "Compared %d %s vs %d %s records: %d matched, %d discrepancies",
        len(sources), source_label, len(targets), target_label, len(matches), len(discrepancies),
    )

    return ComparisonResult(
        matches=matches,
        discrepancies=discrepancies,
        source_only=source_only,
        target_only=target_only,
        source_totals=totals_for(sources),
        target_totals=totals_for(targets),
        matched_totals=totals_for(match.source_record for match in matches),
        match_rate=compute_match_rate(len(matches), len(sources), len(targets)),
    )


def apply_severity_adjustments(
    discrepancies: Sequence[Discrepancy],
    adjustments: Optional[Mapping[str, Mapping[str, Any]]],
) -> List[Discrepancy]:
    if not adjustments:
        return list(discrepancies)
    adjusted = []
    for discrepancy in discrepancies:
        change = adjustments.get(discrepancy.id)
        if change:
            discrepancy = discrepancy.with_severity(Severity(change["severity"]), change.get("evidence"))
        adjusted.append(discrepancy)
    return adjusted


def suggest_actions(discrepancies: Sequence[Discrepancy]) -> List[SuggestedAction]:
    """One create_record action per high-severity missing_in_target discrepancy."""
    actions = []
    for discrepancy in discrepancies:
        if discrepancy.type is not DiscrepancyType.MISSING_IN_TARGET:
            continue
        if discrepancy.severity is not Severity.HIGH or discrepancy.source_record is None:
            continue
        record = discrepancy.source_record
        actions.append(
            SuggestedAction(
                action="create_record",
                record=record,
                reason=f"Create ledger record from {record.source} record: not found in ledger",
                discrepancy_id=discrepancy.id,
            )
        )
    return actions


def evidence_query(record: Record) -> str:
    parts = [record.description, str(record.amount)]
    if record.date:
        parts.append(record.date.isoformat())
    return " ".join(part for part in parts if part)


async def find_corroborating_evidence(
    discrepancies: Sequence[Discrepancy],
    search: Any,
    owner_id: str,
    threshold: float = EVIDENCE_THRESHOLD,
    timeout: Optional[float] = None,
) -> Tuple[Dict[str, Dict[str, Any]], List[str]]:
    """
    Look up supporting documents for high-severity missing_in_target entries.

    Returns (adjustments keyed by discrepancy id, failure notes). A top hit
    scoring above the threshold downgrades the discrepancy to low severity.
    Lookup failures are recorded and skipped.
    """
    adjustments: Dict[str, Dict[str, Any]] = {}
    failures: List[str] = []

    for discrepancy in discrepancies:
        if discrepancy.type is not DiscrepancyType.MISSING_IN_TARGET:
            continue
        if discrepancy.severity is not Severity.HIGH or discrepancy.source_record is None:
            continue
        try:
            hits = await asyncio.wait_for(
                search.query(evidence_query(discrepancy.source_record), owner_id, EVIDENCE_RESULTS),
                timeout,
            )
        except Exception as exc:
            logger.warning("Evidence lookup failed for %s: %s", discrepancy.id, exc)
            failures.append(f"{discrepancy.id}: {exc or type(exc).__name__}")
            continue

        top = _top_hit(hits)
        if top is None:
            continue
        content, similarity = top
        if similarity > threshold:
            adjustments[discrepancy.id] = {
                "severity": Severity.LOW.value,
                "evidence": {"content": content, "similarity_score": similarity},
            }

    return adjustments, failures


def _top_hit(hits: Any) -> Optional[Tuple[str, float]]:
    if not hits:
        return None
    first = hits[0]
    if isinstance(first, Mapping):
        content = first.get("content", "")
        similarity = first.get("similarity_score", first.get("similarityScore", 0.0))
    else:
        content = getattr(first, "content", "")
        similarity = getattr(first, "similarity_score", 0.0)
    try:
        return str(content), float(similarity or 0.0)
    except (TypeError, ValueError):
        return None


def structured_diff(
    matches: Sequence[MatchCandidate],
    discrepancies: Sequence[Discrepancy],
    source_count: int,
    target_count: int,
) -> Dict[str, Any]:
    """JSON-friendly digest handed to the summarizer."""
    return {
        "source_count": source_count,
        "target_count": target_count,
        "matched": len(matches),
        "match_types": {
            match_type.value: sum(1 for m in matches if m.match_type is match_type)
            for match_type in MatchType
        },
        "discrepancies": [
            {
                "id": d.id,
                "type": d.type.value,
                "severity": d.severity.value,
                "source": describe_record(d.source_record) if d.source_record else None,
                "target": describe_record(d.target_record) if d.target_record else None,
            }
            for d in discrepancies[:10]
        ],
        "discrepancy_count": len(discrepancies),
    }


def templated_summary(
    matched: int,
    discrepancies: Sequence[Discrepancy],
    source_count: int,
    target_count: int,
) -> str:
    """Deterministic summary used when no summarizer is available."""
    by_type = {
        kind: sum(1 for d in discrepancies if d.type is kind)
        for kind in DiscrepancyType
    }
    high = sum(1 for d in discrepancies if d.severity is Severity.HIGH)
    rate = compute_match_rate(matched, source_count, target_count)

    lines = [
        f"Compared {source_count} submitted records against {target_count} ledger records.",
        f"Matched {matched} ({rate:.0%}).",
    ]
    if discrepancies:
        lines.append(
            f"{len(discrepancies)} discrepancies: "
            f"{by_type[DiscrepancyType.MISSING_IN_TARGET]} missing from ledger, "
            f"{by_type[DiscrepancyType.MISSING_IN_SOURCE]} missing from submission, "
            f"{by_type[DiscrepancyType.AMOUNT_MISMATCH]} amount mismatches "
            f"({high} high severity)."
        )
    else:
        lines.append("No discrepancies found. All records are reconciled.")
    return " ".join(lines)


def build_report(
    *,
    source: Sequence[Record],
    target: Sequence[Record],
    matches: Sequence[MatchCandidate],
    discrepancies: Sequence[Discrepancy],
    suggested_actions: Sequence[SuggestedAction] = (),
    summary: Optional[str] = None,
    synced_records: Sequence[Record] = (),
    sync_failures: Sequence[SyncFailure] = (),
    trace_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> ReconciliationReport:
    match_rate = compute_match_rate(len(matches), len(source), len(target))
    statistics = ReconciliationStatistics(
        source_count=len(source),
        target_count=len(target),
        matched=len(matches),
        exact=sum(1 for m in matches if m.match_type is MatchType.EXACT),
        probable=sum(1 for m in matches if m.match_type is MatchType.PROBABLE),
        fuzzy=sum(1 for m in matches if m.match_type is MatchType.FUZZY),
        discrepancies=len(discrepancies),
        high_severity=sum(1 for d in discrepancies if d.severity is Severity.HIGH),
        match_rate=match_rate,
    )
    return ReconciliationReport(
        generated_at=datetime.now(timezone.utc),
        trace_id=trace_id,
        summary=summary or templated_summary(len(matches), discrepancies, len(source), len(target)),
        statistics=statistics,
        source_totals=totals_for(source),
        target_totals=totals_for(target),
        matched_totals=totals_for(m.source_record for m in matches),
        matches=list(matches),
        discrepancies=list(discrepancies),
        suggested_actions=list(suggested_actions),
        synced_records=list(synced_records),
        sync_failures=list(sync_failures),
        metadata=dict(metadata or {}),
    )
