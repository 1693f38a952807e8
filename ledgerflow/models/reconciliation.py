"""Reconciliation and matching models."""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import Field

from ledgerflow.models.base import FrozenModel, LFBaseModel
from ledgerflow.models.records import Record


class MatchType(str, Enum):
    EXACT = "exact"
    PROBABLE = "probable"
    FUZZY = "fuzzy"


class DiscrepancyType(str, Enum):
    MISSING_IN_TARGET = "missing_in_target"
    MISSING_IN_SOURCE = "missing_in_source"
    AMOUNT_MISMATCH = "amount_mismatch"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class MatchScoreBreakdown(FrozenModel):
    amount_score: float = 0.0
    date_score: float = 0.0
    description_score: float = 0.0
    total_score: float = 0.0


class MatchCandidate(FrozenModel):
    source_record: Record
    target_record: Record
    score: float = Field(..., ge=0, le=1)
    match_type: MatchType
    breakdown: Optional[MatchScoreBreakdown] = None


class Discrepancy(FrozenModel):
    id: str
    type: DiscrepancyType
    severity: Severity
    source_record: Optional[Record] = None
    target_record: Optional[Record] = None
    difference: Optional[Decimal] = None
    evidence: Optional[Dict[str, Any]] = None

    def with_severity(self, severity: Severity, evidence: Optional[Dict[str, Any]] = None) -> "Discrepancy":
        return self.model_copy(update={"severity": severity, "evidence": evidence or self.evidence})


class SuggestedAction(FrozenModel):
    action: str = "create_record"
    record: Record
    reason: str
    discrepancy_id: Optional[str] = None


class Totals(FrozenModel):
    count: int = 0
    amount: Decimal = Decimal("0")


class MatchConfig(LFBaseModel):
    strict: bool = False
    amount_tolerance: Decimal = Field(default=Decimal("0.01"), ge=0)
    require_dates: bool = True
    min_description_similarity: float = Field(default=0.5, ge=0, le=1)


class ComparisonResult(FrozenModel):
    """Structured diff between a source list and a target list."""
    matches: List[MatchCandidate] = Field(default_factory=list)
    discrepancies: List[Discrepancy] = Field(default_factory=list)
    source_only: List[Record] = Field(default_factory=list)
    target_only: List[Record] = Field(default_factory=list)
    source_totals: Totals = Field(default_factory=Totals)
    target_totals: Totals = Field(default_factory=Totals)
    matched_totals: Totals = Field(default_factory=Totals)
    match_rate: float = Field(default=0.0, ge=0, le=1)


class SyncFailure(FrozenModel):
    record: Record
    reason: str
    stage: str


class ReconciliationStatistics(FrozenModel):
    source_count: int = 0
    target_count: int = 0
    matched: int = 0
    exact: int = 0
    probable: int = 0
    fuzzy: int = 0
    discrepancies: int = 0
    high_severity: int = 0
    match_rate: float = Field(default=0.0, ge=0, le=1)


class ReconciliationReport(FrozenModel):
    generated_at: datetime
    trace_id: Optional[str] = None
    summary: str = ""
    statistics: ReconciliationStatistics
    source_totals: Totals
    target_totals: Totals
    matched_totals: Totals
    matches: List[MatchCandidate] = Field(default_factory=list)
    discrepancies: List[Discrepancy] = Field(default_factory=list)
    suggested_actions: List[SuggestedAction] = Field(default_factory=list)
    synced_records: List[Record] = Field(default_factory=list)
    sync_failures: List[SyncFailure] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def match_rate(self) -> float:
        return self.statistics.match_rate
