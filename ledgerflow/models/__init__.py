from ledgerflow.models.base import FrozenModel, LFBaseModel
from ledgerflow.models.records import Record
from ledgerflow.models.reconciliation import (
    ComparisonResult,
    Discrepancy,
    DiscrepancyType,
    MatchCandidate,
    MatchConfig,
    MatchScoreBreakdown,
    MatchType,
    ReconciliationReport,
    ReconciliationStatistics,
    Severity,
    SuggestedAction,
    SyncFailure,
    Totals,
)

__all__ = [
    "ComparisonResult",
    "Discrepancy",
    "DiscrepancyType",
    "FrozenModel",
    "LFBaseModel",
    "MatchCandidate",
    "MatchConfig",
    "MatchScoreBreakdown",
    "MatchType",
    "Record",
    "ReconciliationReport",
    "ReconciliationStatistics",
    "Severity",
    "SuggestedAction",
    "SyncFailure",
    "Totals",
]
