"""
Reconciliation workflow.

    initialize
        -> fetch (fetch_primary || fetch_secondary)
        -> compare
        -> analyze_context      (only when document details are available)
        -> analyze
        -> auto_sync            (only when enabled and there is something to sync)
        -> report
        -> END

The caller's records are matched against the ledger: every submitted record
looks for its best ledger counterpart. Submitted records without one are
missing_in_target (they are not in the ledger yet), ledger rows nobody
claimed are missing_in_source.

Failure policy:
- initialize rejects runs without submitted records (straight to error)
- fetch_primary retries transient failures, then fails the run
- fetch_secondary, evidence lookups and the summarizer degrade silently
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from ledgerflow.adapters.base import DocumentStore, LedgerFilter, LedgerStore, SemanticSearch, Summarizer
from ledgerflow.core.settings import Settings
from ledgerflow.models.reconciliation import MatchConfig
from ledgerflow.services.errors import InputValidationError, TransientError
from ledgerflow.services.normalizer import normalize_records
from ledgerflow.services.reconciliation import (
    apply_severity_adjustments,
    build_report,
    compare_records,
    find_corroborating_evidence,
    structured_diff,
    suggest_actions,
    templated_summary,
)
from ledgerflow.services.sync_planner import SyncRules, execute_sync, plan_sync
from ledgerflow.workflows.graph import END, CompiledGraph, RetryPolicy, State, StateGraph
from ledgerflow.workflows.state import ReconciliationState

logger = logging.getLogger(__name__)

GRAPH_NAME = "reconciliation"
SUBMITTED_SOURCE = "submitted"
LEDGER_SOURCE = "ledger"


class CompareRoute(str, Enum):
    ANALYZE_CONTEXT = "analyze_context"
    ANALYZE = "analyze"


class AnalyzeRoute(str, Enum):
    AUTO_SYNC = "auto_sync"
    REPORT = "report"


def route_after_compare(state: State) -> CompareRoute:
    if state.get("document_details"):
        return CompareRoute.ANALYZE_CONTEXT
    return CompareRoute.ANALYZE


def route_after_analyze(state: State) -> AnalyzeRoute:
    if state.get("options", {}).get("auto_sync") and state.get("suggested_actions"):
        return AnalyzeRoute.AUTO_SYNC
    return AnalyzeRoute.REPORT


class ReconciliationWorkflow:
    """Builds the reconciliation graph around injected collaborators."""

    def __init__(
        self,
        ledger: LedgerStore,
        documents: Optional[DocumentStore] = None,
        search: Optional[SemanticSearch] = None,
        summarizer: Optional[Summarizer] = None,
        settings: Optional[Settings] = None,
    ):
        self.ledger = ledger
        self.documents = documents
        self.search = search
        self.summarizer = summarizer
        self.settings = settings or Settings()
        self.graph = self.build()

    def build(self) -> CompiledGraph:
        retry = RetryPolicy(
            max_retries=self.settings.primary_fetch_retries,
            retry_on=(TransientError, ConnectionError),
            backoff_seconds=self.settings.retry_backoff_seconds,
        )
        graph = StateGraph(GRAPH_NAME, ReconciliationState)
        graph.add_node("initialize", self.initialize)
        graph.add_node("fetch_primary", self.fetch_primary, retry=retry)
        graph.add_node("fetch_secondary", self.fetch_secondary)
        graph.add_node("compare", self.compare)
        graph.add_node("analyze_context", self.analyze_context)
        graph.add_node("analyze", self.analyze)
        graph.add_node("auto_sync", self.auto_sync)
        graph.add_node("report", self.report)

        graph.set_entry("initialize")
        graph.add_edge("initialize", "fetch")
        graph.add_parallel("fetch", ["fetch_primary", "fetch_secondary"], then="compare")
        graph.add_conditional_edges("compare", route_after_compare, {
            CompareRoute.ANALYZE_CONTEXT: "analyze_context",
            CompareRoute.ANALYZE: "analyze",
        })
        graph.add_edge("analyze_context", "analyze")
        graph.add_conditional_edges("analyze", route_after_analyze, {
            AnalyzeRoute.AUTO_SYNC: "auto_sync",
            AnalyzeRoute.REPORT: "report",
        })
        graph.add_edge("auto_sync", "report")
        graph.add_edge("report", END)
        return graph.compile()

    async def run(
        self,
        secondary_records: Any,
        owner_id: str,
        auth_context: Optional[Mapping[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        return await self.graph.run(
            {
                "owner_id": owner_id,
                "auth_context": dict(auth_context or {}),
                "secondary_records": list(secondary_records or []),
                "options": dict(options or {}),
            },
            cancel_event=cancel_event,
        )

    def _timeout(self, state: State) -> float:
        return state.get("options", {}).get("timeout_seconds") or self.settings.call_timeout_seconds

    # ==================== NODES ====================

    async def initialize(self, state: State) -> Dict[str, Any]:
        raw = state.get("secondary_records") or []
        if not raw:
            raise InputValidationError("secondary_records", "No records supplied for reconciliation")

        external = normalize_records(raw, SUBMITTED_SOURCE)
        options = state.get("options", {})
        return {
            "external_records": external,
            "options": {
                "auto_sync": bool(options.get("auto_sync", False)),
                "strict": bool(options.get("strict", False)),
                "timeout_seconds": options.get("timeout_seconds") or self.settings.call_timeout_seconds,
            },
            "metadata": {
                "started_at": datetime.now(timezone.utc).isoformat(),
                "submitted_count": len(external),
            },
        }

    async def fetch_primary(self, state: State) -> Dict[str, Any]:
        timeout = self._timeout(state)
        scope = LedgerFilter(owner_id=state["owner_id"], auth_context=state.get("auth_context", {}))
        try:
            rows = await asyncio.wait_for(self.ledger.fetch(scope), timeout)
        except asyncio.TimeoutError:
            raise TransientError(LEDGER_SOURCE, f"fetch timed out after {timeout}s") from None
        return {"primary_records": normalize_records(rows, LEDGER_SOURCE)}

    async def fetch_secondary(self, state: State) -> Dict[str, Any]:
        if self.documents is None:
            return {"document_details": []}
        try:
            details = await asyncio.wait_for(
                self.documents.fetch_details(state["owner_id"]), self._timeout(state)
            )
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            logger.warning("Document details unavailable for owner %s: %s", state["owner_id"], reason)
            return {"document_details": [], "metadata": {"degraded": {"document_store": reason}}}
        return {"document_details": list(details or [])}

    async def compare(self, state: State) -> Dict[str, Any]:
        config = MatchConfig(strict=bool(state.get("options", {}).get("strict")))
        comparison = compare_records(
            state.get("external_records", []),
            state.get("primary_records", []),
            config,
            source_label=SUBMITTED_SOURCE,
            target_label=LEDGER_SOURCE,
        )
        return {
            "matches": comparison.matches,
            "discrepancies": comparison.discrepancies,
            "metadata": {"match_rate": comparison.match_rate},
        }

    async def analyze_context(self, state: State) -> Dict[str, Any]:
        if self.search is None:
            return {"metadata": {"evidence_skipped": "no search backend configured"}}
        adjustments, failures = await find_corroborating_evidence(
            state.get("discrepancies", []),
            self.search,
            state["owner_id"],
            threshold=self.settings.evidence_threshold,
            timeout=self._timeout(state),
        )
        metadata: Dict[str, Any] = {"evidence_downgrades": len(adjustments)}
        if failures:
            metadata["evidence_failures"] = failures
        return {"severity_adjustments": adjustments, "metadata": metadata}

    async def analyze(self, state: State) -> Dict[str, Any]:
        discrepancies = apply_severity_adjustments(
            state.get("discrepancies", []), state.get("severity_adjustments")
        )
        matches = state.get("matches", [])
        source_count = len(state.get("external_records", []))
        target_count = len(state.get("primary_records", []))

        summary_source = "template"
        summary = None
        if self.summarizer is not None:
            try:
                summary = await asyncio.wait_for(
                    self.summarizer.summarize(structured_diff(matches, discrepancies, source_count, target_count)),
                    self._timeout(state),
                )
                summary_source = "summarizer"
            except Exception as exc:
                logger.warning("Summarizer failed, using templated summary: %s", exc)
                summary = None
        if not summary:
            summary_source = "template"
            summary = templated_summary(len(matches), discrepancies, source_count, target_count)

        return {
            "suggested_actions": suggest_actions(discrepancies),
            "summary": summary,
            "metadata": {"summary_source": summary_source},
        }

    async def auto_sync(self, state: State) -> Dict[str, Any]:
        rules = SyncRules(
            min_amount=self.settings.sync_min_amount,
            max_amount=self.settings.sync_max_amount,
        )
        plan = plan_sync(state.get("suggested_actions", []), state.get("primary_records", []), rules)
        synced, failures = await execute_sync(
            plan,
            self.ledger,
            auth_context=state.get("auth_context"),
            timeout=self._timeout(state),
        )
        logger.info("Auto-sync created %d ledger records, %d skipped or failed", len(synced), len(failures))
        return {"synced_records": synced, "sync_failures": failures}

    async def report(self, state: State) -> Dict[str, Any]:
        metadata = dict(state.get("metadata", {}))
        metadata["completed_at"] = datetime.now(timezone.utc).isoformat()
        report = build_report(
            source=state.get("external_records", []),
            target=state.get("primary_records", []),
            matches=state.get("matches", []),
            discrepancies=apply_severity_adjustments(
                state.get("discrepancies", []), state.get("severity_adjustments")
            ),
            suggested_actions=state.get("suggested_actions", []),
            summary=state.get("summary"),
            synced_records=state.get("synced_records", []),
            sync_failures=state.get("sync_failures", []),
            trace_id=state.get("trace_id"),
            metadata=metadata,
        )
        return {"result": report}
