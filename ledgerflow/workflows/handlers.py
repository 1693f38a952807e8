"""
Intent handlers backed by the engine's collaborators.

    expense_operation -> ExpenseOperationHandler    lists and adds ledger entries
    rag_question      -> DocumentQuestionHandler    answers from search hits
    rag_compare       -> DocumentComparisonHandler  document rows vs the ledger
    reconciliation    -> ReconciliationHandler      document rows through the
                                                    reconciliation workflow, synced

Document-backed handlers read the owner's uploaded documents through
DocumentStore.fetch_details and pull dated expense lines out of them.
Collaborator errors propagate; the router turns them into its error reply.
"""
from __future__ import annotations

import logging
import re
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from ledgerflow.adapters.base import (
    DocumentStore,
    IntentHandler,
    IntentRequest,
    LedgerFilter,
    LedgerStore,
    SemanticSearch,
    Summarizer,
)
from ledgerflow.adapters.memory import document_texts
from ledgerflow.core.settings import Settings
from ledgerflow.models.reconciliation import DiscrepancyType, MatchConfig, ReconciliationReport
from ledgerflow.models.records import Record
from ledgerflow.services.errors import ReconciliationError
from ledgerflow.services.intent import Intent
from ledgerflow.services.normalizer import (
    DEFAULT_CATEGORY,
    extract_records,
    find_date,
    normalize_date,
    normalize_records,
    normalize_text,
    parse_amount,
)
from ledgerflow.services.reconciliation import compare_records
from ledgerflow.workflows.reconciliation import ReconciliationWorkflow

logger = logging.getLogger(__name__)

LIST_LIMIT = 10
SEARCH_RESULTS = 3
SNIPPET_LENGTH = 300
DISCREPANCY_LINES = 5

NO_DOCUMENTS_REPLY = (
    "You haven't uploaded any documents yet. Upload a receipt or statement "
    "and I can answer questions about it or compare it with your expenses."
)
NO_ROWS_REPLY = "I couldn't find any dated expense lines in your documents."
ASK_AMOUNT = "How much was it? For example: 'Add 500 for lunch today'."
UNSUPPORTED_OPERATION = (
    "I can add and list expenses here. Updating or deleting expenses isn't "
    "supported in chat yet; please use the expenses page for that."
)

CREATE_VERB = re.compile(r"^\s*(add|create|record|log|spent|paid)\b", re.IGNORECASE)
LIST_VERB = re.compile(r"^(list|show|view|display|get)\b|\b(my|all) expenses\b")
UNSUPPORTED_VERB = re.compile(r"^(delete|remove|clear|update|modify|edit|change)\b")
RELATIVE_DAY = re.compile(r"\b(today|yesterday)\b", re.IGNORECASE)
AMOUNT_IN_TEXT = re.compile(r"(?:\b(?:rs\.?|inr|usd)|[$₹€£])?\s*\d[\d,]*(?:\.\d+)?", re.IGNORECASE)
LEADING_FILLER = re.compile(r"^(?:(?:for|on|at|of|an?|the)\s+)+", re.IGNORECASE)
TRAILING_FILLER = re.compile(r"(?:\s+(?:for|on|at|of))+$", re.IGNORECASE)


def money(amount: Decimal) -> str:
    return f"{amount:,.2f}"


def _line(record: Record) -> str:
    day = record.date.isoformat() if record.date else "no date"
    return f"{day}  {record.description or record.category}  {money(record.amount)}"


def document_rows(details: Sequence[Any]) -> List[Dict[str, Any]]:
    """Extracted expense rows of every fetched document, tagged with their document_id."""
    rows: List[Dict[str, Any]] = []
    for document_id, text in document_texts(details).items():
        rows.extend({**row, "document_id": document_id} for row in extract_records(text))
    return rows


class ExpenseOperationHandler:
    """Lists the owner's expenses or adds one described in the message."""

    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger

    def _action(self, request: IntentRequest) -> str:
        action = normalize_text(request.entities.get("action"))
        if action in ("create", "add"):
            return "create"
        if action in ("list", "show", "read"):
            return "list"
        message = normalize_text(request.message)
        if action or UNSUPPORTED_VERB.match(message):
            return "unsupported"
        if CREATE_VERB.match(message):
            return "create"
        if LIST_VERB.search(message):
            return "list"
        return "unsupported"

    async def handle(self, request: IntentRequest) -> str:
        action = self._action(request)
        if action == "create":
            return await self.create_expense(request)
        if action == "list":
            return await self.list_expenses(request)
        return UNSUPPORTED_OPERATION

    def parse_expense(self, request: IntentRequest, today: Optional[date] = None) -> Optional[Record]:
        """
        Build the record to create from the classifier's entities, falling
        back to the message text:

            "Add 500 for lunch today"  -> 500, today, "lunch"
            "spent 1,200 on groceries on 03/02/2026" -> 1200, 2026-02-03, "groceries"

        Returns None when no amount can be found.
        """
        entities = request.entities
        text = CREATE_VERB.sub("", request.message, count=1)

        expense_date = normalize_date(entities.get("date"), today)
        found = find_date(text)
        if found is not None:
            match, parsed = found
            expense_date = expense_date or parsed
            text = text[:match.start()] + " " + text[match.end():]
        relative = RELATIVE_DAY.search(text)
        if relative is not None:
            expense_date = expense_date or normalize_date(relative.group(1).lower(), today)
            text = text[:relative.start()] + " " + text[relative.end():]

        amount = parse_amount(entities.get("amount"))
        number = AMOUNT_IN_TEXT.search(text)
        if number is not None:
            if amount == 0:
                amount = parse_amount(number.group())
            text = text[:number.start()] + " " + text[number.end():]
        if amount <= 0:
            return None

        description = entities.get("description")
        if not description:
            description = TRAILING_FILLER.sub("", LEADING_FILLER.sub("", " ".join(text.split())))
        category = normalize_text(entities.get("category")) or DEFAULT_CATEGORY

        return Record(
            amount=amount,
            date=expense_date or today or date.today(),
            description=normalize_text(description),
            category=category,
            source="chat",
        )

    async def create_expense(self, request: IntentRequest) -> str:
        record = self.parse_expense(request)
        if record is None:
            return ASK_AMOUNT
        await self.ledger.create(record, request.auth_context)
        logger.info("Created expense of %s for owner %s", record.amount, request.owner_id)
        label = record.description or record.category
        return f"Added {money(record.amount)} for {label} on {record.date.isoformat()}."

    async def list_expenses(self, request: IntentRequest) -> str:
        rows = await self.ledger.fetch(LedgerFilter(owner_id=request.owner_id, auth_context=request.auth_context))
        records = normalize_records(rows, "ledger")
        if not records:
            return "You don't have any expenses yet. Try 'Add 500 for lunch today'."

        records.sort(key=lambda r: (r.date is not None, r.date or date.min), reverse=True)
        total = sum((r.amount for r in records), Decimal("0"))
        noun = "expense" if len(records) == 1 else "expenses"
        lines = [f"You have {len(records)} {noun} totalling {money(total)}:"]
        lines.extend(f"- {_line(record)}" for record in records[:LIST_LIMIT])
        if len(records) > LIST_LIMIT:
            lines.append(f"...and {len(records) - LIST_LIMIT} more.")
        return "\n".join(lines)


class DocumentQuestionHandler:
    """Answers a question with the best matching passages of the owner's documents."""

    def __init__(self, search: SemanticSearch, documents: Optional[DocumentStore] = None, k: int = SEARCH_RESULTS):
        self.search = search
        self.documents = documents
        self.k = k

    async def handle(self, request: IntentRequest) -> str:
        if self.documents is not None and not await self.documents.fetch_details(request.owner_id):
            return NO_DOCUMENTS_REPLY

        hits = await self.search.query(request.message, request.owner_id, self.k)
        if not hits:
            return "I couldn't find anything about that in your documents."

        lines = ["Here's what I found in your documents:"]
        for hit in hits:
            snippet = " ".join(hit.content.split())
            if len(snippet) > SNIPPET_LENGTH:
                snippet = snippet[:SNIPPET_LENGTH].rstrip() + "..."
            source = hit.metadata.get("document_id") or "document"
            lines.append(f"- {snippet} ({source}, {hit.similarity_score:.0%} match)")
        return "\n".join(lines)


class DocumentComparisonHandler:
    """Compares the expense lines of the owner's documents with the ledger."""

    def __init__(self, ledger: LedgerStore, documents: DocumentStore, config: Optional[MatchConfig] = None):
        self.ledger = ledger
        self.documents = documents
        self.config = config

    async def handle(self, request: IntentRequest) -> str:
        details = await self.documents.fetch_details(request.owner_id)
        if not details:
            return NO_DOCUMENTS_REPLY
        rows = document_rows(details)
        if not rows:
            return NO_ROWS_REPLY

        ledger_rows = await self.ledger.fetch(
            LedgerFilter(owner_id=request.owner_id, auth_context=request.auth_context)
        )
        comparison = compare_records(rows, ledger_rows, self.config, "document", "ledger")

        lines = [
            f"Compared {len(rows)} document expenses with {comparison.target_totals.count} tracked expenses: "
            f"{len(comparison.matches)} matched ({comparison.match_rate:.0%})."
        ]
        if not comparison.discrepancies:
            lines.append("Everything in your documents is already tracked.")
            return "\n".join(lines)

        for discrepancy in comparison.discrepancies[:DISCREPANCY_LINES]:
            if discrepancy.type is DiscrepancyType.MISSING_IN_TARGET:
                lines.append(f"- Only in your documents: {_line(discrepancy.source_record)}")
            elif discrepancy.type is DiscrepancyType.MISSING_IN_SOURCE:
                lines.append(f"- Only in your tracked expenses: {_line(discrepancy.target_record)}")
            else:
                lines.append(
                    f"- Amount differs for {discrepancy.source_record.description or 'an expense'}: "
                    f"{money(discrepancy.source_record.amount)} in the document, "
                    f"{money(discrepancy.target_record.amount)} tracked"
                )
        hidden = len(comparison.discrepancies) - DISCREPANCY_LINES
        if hidden > 0:
            lines.append(f"...and {hidden} more differences.")
        return "\n".join(lines)


class ReconciliationHandler:
    """Reconciles the owner's documents against the ledger and adds what is missing."""

    def __init__(self, workflow: ReconciliationWorkflow, documents: DocumentStore):
        self.workflow = workflow
        self.documents = documents

    async def handle(self, request: IntentRequest) -> str:
        details = await self.documents.fetch_details(request.owner_id)
        if not details:
            return NO_DOCUMENTS_REPLY
        rows = document_rows(details)
        if not rows:
            return NO_ROWS_REPLY

        state = await self.workflow.run(rows, request.owner_id, request.auth_context, {"auto_sync": True})
        report = state.get("result")
        if state.get("error") or not isinstance(report, ReconciliationReport):
            metadata = state.get("metadata") or {}
            raise ReconciliationError(
                metadata.get("failed_stage") or state.get("stage") or "unknown",
                state.get("error") or "Reconciliation finished without a report",
                cause=metadata.get("error_code"),
            )

        lines = [report.summary]
        if report.synced_records:
            lines.append(f"Added {len(report.synced_records)} missing expenses to your ledger.")
        if report.sync_failures:
            lines.append(f"{len(report.sync_failures)} expenses could not be added; please add them manually.")
        return "\n".join(lines)


def intent_handlers(
    ledger: Optional[LedgerStore],
    documents: Optional[DocumentStore] = None,
    search: Optional[SemanticSearch] = None,
    summarizer: Optional[Summarizer] = None,
    settings: Optional[Settings] = None,
) -> Dict[Intent, IntentHandler]:
    """
    Handlers for every intent whose collaborators are available.

    The reconciliation handler gets a workflow without a document store or
    evidence search: its submitted records come from those same documents.
    """
    handlers: Dict[Intent, IntentHandler] = {}
    if ledger is not None:
        handlers[Intent.EXPENSE_OPERATION] = ExpenseOperationHandler(ledger)
    if search is not None:
        handlers[Intent.RAG_QUESTION] = DocumentQuestionHandler(search, documents)
    if ledger is not None and documents is not None:
        handlers[Intent.RAG_COMPARE] = DocumentComparisonHandler(ledger, documents)
        workflow = ReconciliationWorkflow(ledger, summarizer=summarizer, settings=settings)
        handlers[Intent.RECONCILIATION] = ReconciliationHandler(workflow, documents)
    return handlers
