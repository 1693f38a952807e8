"""
Matching Engine for Ledgerflow

Scores candidate record pairs and assigns best matches:
- Amount Match: weight 0.4
- Date Proximity (7 day window): weight 0.3
- Description Similarity (token Jaccard): weight 0.3

Thresholds (inclusive lower bounds):
- >= 0.9 exact
- >= 0.7 probable
- >= 0.5 fuzzy (also raised as an amount_mismatch discrepancy)
- <  0.5 no match
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence, Set

from ledgerflow.models.reconciliation import MatchConfig, MatchScoreBreakdown, MatchType
from ledgerflow.models.records import Record

AMOUNT_WEIGHT = 0.4
DATE_WEIGHT = 0.3
DESCRIPTION_WEIGHT = 0.3

DATE_WINDOW_DAYS = 7
MIN_TOKEN_LENGTH = 3

EXACT_THRESHOLD = 0.9
PROBABLE_THRESHOLD = 0.7
FUZZY_THRESHOLD = 0.5

# Weighted float sums drift in the last bits (0.4 + 0.3 + 0.3 != 1.0)
SCORE_PRECISION = 6


def amount_score(source_amount: Decimal, target_amount: Decimal) -> float:
    """Relative amount closeness, measured against the source amount."""
    if source_amount == 0:
        return 1.0 if target_amount == 0 else 0.0
    diff = abs(source_amount - target_amount) / abs(source_amount)
    return max(0.0, 1.0 - float(diff))


def date_score(source: Record, target: Record, require_dates: bool = True) -> float:
    if source.date is None or target.date is None:
        return 0.0 if require_dates else 1.0
    days = abs((source.date - target.date).days)
    return max(0.0, 1.0 - days / DATE_WINDOW_DAYS)


def tokenize(text: str) -> Set[str]:
    return {token for token in text.split() if len(token) >= MIN_TOKEN_LENGTH}


def description_similarity(text1: str, text2: str) -> float:
    """
    Jaccard similarity of word tokens longer than two characters.

    Symmetric and independent of token order. Two texts without any
    qualifying tokens are considered identical.
    """
    tokens1 = tokenize(text1.lower())
    tokens2 = tokenize(text2.lower())

    if not tokens1 and not tokens2:
        return 1.0
    if not tokens1 or not tokens2:
        return 0.0

    return len(tokens1 & tokens2) / len(tokens1 | tokens2)


def score_pair(source: Record, target: Record, config: Optional[MatchConfig] = None) -> MatchScoreBreakdown:
    config = config or MatchConfig()
    amount = amount_score(source.amount, target.amount)
    dates = date_score(source, target, config.require_dates)
    description = description_similarity(source.comparable_text, target.comparable_text)

    total = amount * AMOUNT_WEIGHT + dates * DATE_WEIGHT + description * DESCRIPTION_WEIGHT
    total = round(min(1.0, max(0.0, total)), SCORE_PRECISION)

    return MatchScoreBreakdown(
        amount_score=round(amount, SCORE_PRECISION),
        date_score=round(dates, SCORE_PRECISION),
        description_score=round(description, SCORE_PRECISION),
        total_score=total,
    )


def strict_score_pair(source: Record, target: Record, config: MatchConfig) -> Optional[MatchScoreBreakdown]:
    """
    Tolerance-sensitive scoring.

    Amount and date gates short-circuit to None before any similarity is
    computed; surviving pairs must also clear the description floor.
    """
    if abs(source.amount - target.amount) > config.amount_tolerance:
        return None
    if source.date and target.date and source.date != target.date:
        return None

    breakdown = score_pair(source, target, config)
    if breakdown.description_score < config.min_description_similarity:
        return None
    return breakdown


def classify_score(score: float) -> Optional[MatchType]:
    if score >= EXACT_THRESHOLD:
        return MatchType.EXACT
    if score >= PROBABLE_THRESHOLD:
        return MatchType.PROBABLE
    if score >= FUZZY_THRESHOLD:
        return MatchType.FUZZY
    return None


@dataclass(frozen=True)
class Assignment:
    source_index: int
    target_index: int
    breakdown: MatchScoreBreakdown
    match_type: MatchType

    @property
    def score(self) -> float:
        return self.breakdown.total_score


@dataclass(frozen=True)
class AssignmentResult:
    assignments: List[Assignment]
    unmatched_source: List[int]
    unmatched_target: List[int]


def assign_matches(
    sources: Sequence[Record],
    targets: Sequence[Record],
    config: Optional[MatchConfig] = None,
) -> AssignmentResult:
    """
    Greedy best-match assignment.

    Each source record takes the best-scoring target that is still unused.
    Ties go to the earliest target. A target is consumed by at most one match.
    """
    config = config or MatchConfig()
    used: Set[int] = set()
    assignments: List[Assignment] = []
    unmatched_source: List[int] = []

    for src_idx, source in enumerate(sources):
        best_idx = -1
        best: Optional[MatchScoreBreakdown] = None

        for tgt_idx, target in enumerate(targets):
            if tgt_idx in used:
                continue
            if config.strict:
                breakdown = strict_score_pair(source, target, config)
                if breakdown is None:
                    continue
            else:
                breakdown = score_pair(source, target, config)
            if best is None or breakdown.total_score > best.total_score:
                best = breakdown
                best_idx = tgt_idx

        match_type = classify_score(best.total_score) if best is not None else None
        if best is None or match_type is None:
            unmatched_source.append(src_idx)
            continue

        used.add(best_idx)
        assignments.append(
            Assignment(
                source_index=src_idx,
                target_index=best_idx,
                breakdown=best,
                match_type=match_type,
            )
        )

    unmatched_target = [idx for idx in range(len(targets)) if idx not in used]
    return AssignmentResult(
        assignments=assignments,
        unmatched_source=unmatched_source,
        unmatched_target=unmatched_target,
    )
