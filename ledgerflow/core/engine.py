"""
Ledgerflow Engine

Single entry point for every surface (HTTP API, workers, scripts).
Compiles both workflows once, at construction, and shares them between
requests; each call only creates per-run state.

The default document store lives in process memory and starts empty.
Whoever embeds the engine loads extracted document text through
LedgerflowEngine.add_document; until an owner has documents, document
questions, comparisons and the reconciliation evidence step have nothing
to work with. There is no HTTP upload route.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional, Sequence

from pydantic import Field

from ledgerflow.adapters.backend import HttpLedgerStore
from ledgerflow.adapters.base import (
    Classifier,
    DocumentLoader,
    DocumentStore,
    IntentHandler,
    LedgerStore,
    SemanticSearch,
    Summarizer,
)
from ledgerflow.adapters.llm import ChatCompletionsClient, LLMClassifier, LLMSummarizer
from ledgerflow.adapters.memory import InMemoryDocumentStore
from ledgerflow.core.settings import Settings
from ledgerflow.models.base import LFBaseModel
from ledgerflow.models.reconciliation import ReconciliationReport
from ledgerflow.services.errors import InputValidationError, ReconciliationError
from ledgerflow.services.intent import Intent
from ledgerflow.workflows.graph import CANCELLED
from ledgerflow.workflows.handlers import intent_handlers
from ledgerflow.workflows.intent_router import IntentRouterWorkflow
from ledgerflow.workflows.reconciliation import ReconciliationWorkflow

logger = logging.getLogger(__name__)


class ReconciliationOptions(LFBaseModel):
    auto_sync: bool = False
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    strict: bool = False


class IntentRoutingResult(LFBaseModel):
    intent: Optional[str] = None
    confidence: float = 0.0
    result: Optional[str] = None
    error: Optional[str] = None
    needs_clarification: bool = False
    trace_id: Optional[str] = None


class LedgerflowEngine:
    """
    The engine all surfaces call.

    Usage:
        engine = LedgerflowEngine.from_settings(Settings.from_env())
        routed = await engine.run_intent_routing("show my expenses", "42", {"token": "..."}, [])
        report = await engine.run_reconciliation(records, "42", {"token": "..."}, {"auto_sync": True})
    """

    def __init__(
        self,
        ledger: LedgerStore,
        classifier: Optional[Classifier] = None,
        documents: Optional[DocumentStore] = None,
        search: Optional[SemanticSearch] = None,
        summarizer: Optional[Summarizer] = None,
        handlers: Optional[Mapping[Intent, IntentHandler]] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or Settings()
        self.documents = documents
        self.reconciliation = ReconciliationWorkflow(
            ledger,
            documents=documents,
            search=search,
            summarizer=summarizer,
            settings=self.settings,
        )
        # Explicit handlers win over the collaborator-backed defaults
        routed = intent_handlers(ledger, documents, search, summarizer, self.settings)
        routed.update(handlers or {})
        self.intent_router = IntentRouterWorkflow(classifier, routed, self.settings)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LedgerflowEngine":
        """Wire the default HTTP/LLM adapters from configuration."""
        documents = InMemoryDocumentStore()
        classifier = summarizer = None
        if settings.llm_enabled:
            client = ChatCompletionsClient(
                api_key=settings.llm_api_key,
                base_url=settings.llm_base_url,
                model=settings.llm_model,
                timeout=settings.call_timeout_seconds,
            )
            classifier = LLMClassifier(client)
            summarizer = LLMSummarizer(client)
        else:
            logger.info("LLM_API_KEY not set: keyword classification and templated summaries only")

        return cls(
            ledger=HttpLedgerStore(settings.backend_url, timeout=settings.call_timeout_seconds),
            classifier=classifier,
            documents=documents,
            search=documents,
            summarizer=summarizer,
            settings=settings,
        )

    async def run_intent_routing(
        self,
        message: str,
        owner_id: str,
        auth_context: Optional[Mapping[str, Any]] = None,
        history: Optional[Sequence[Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> IntentRoutingResult:
        state = await self.intent_router.run(message, owner_id, auth_context, history, cancel_event)
        result = state.get("result")
        return IntentRoutingResult(
            intent=state.get("intent"),
            confidence=state.get("confidence") or 0.0,
            result=str(result) if result is not None else None,
            error=state.get("error"),
            needs_clarification=bool(state.get("needs_clarification")),
            trace_id=state.get("trace_id"),
        )

    async def run_reconciliation(
        self,
        secondary_records: Sequence[Any],
        owner_id: str,
        auth_context: Optional[Mapping[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ReconciliationReport:
        """
        Reconcile caller-supplied records against the owner's ledger.

        Raises ReconciliationError (with the failing stage) when the run ends
        in an error state, including cancellation.
        """
        parsed = ReconciliationOptions.model_validate(dict(options or {}))
        state = await self.reconciliation.run(
            secondary_records,
            owner_id,
            auth_context,
            parsed.model_dump(exclude_none=True),
            cancel_event,
        )

        error = state.get("error")
        report = state.get("result")
        if error or not isinstance(report, ReconciliationReport):
            metadata = state.get("metadata") or {}
            stage = metadata.get("failed_stage") or state.get("stage") or "unknown"
            if error == CANCELLED:
                stage = state.get("stage") or stage
            raise ReconciliationError(
                stage,
                error or "Reconciliation finished without a report",
                cause=metadata.get("error_code"),
            )
        return report

    async def add_document(
        self,
        owner_id: str,
        document_id: str,
        text: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Store document text for an owner; returns the number of chunks kept."""
        if not isinstance(self.documents, DocumentLoader):
            raise InputValidationError("documents", "The configured document store does not accept uploads")
        if not text or not text.strip():
            raise InputValidationError("text", "Document text is empty")
        chunks = await self.documents.add_document(owner_id, document_id, text, metadata)
        logger.info("Stored document %s for owner %s in %d chunks", document_id, owner_id, chunks)
        return chunks

    def health(self) -> Dict[str, Any]:
        return {
            "graphs": [self.intent_router.graph.name, self.reconciliation.graph.name],
            "llm_enabled": self.settings.llm_enabled,
            "documents": self.documents is not None,
        }
