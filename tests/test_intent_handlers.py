"""
Tests for the collaborator-backed intent handlers and their wiring.
"""

import asyncio
from datetime import date, timedelta
from decimal import Decimal

import pytest

from ledgerflow.adapters.base import IntentRequest, SearchHit
from ledgerflow.adapters.memory import InMemoryDocumentStore
from ledgerflow.core.engine import LedgerflowEngine
from ledgerflow.core.settings import Settings
from ledgerflow.models.reconciliation import DiscrepancyType, Severity
from ledgerflow.services.errors import InputValidationError, ReconciliationError, TransientError
from ledgerflow.services.intent import Intent
from ledgerflow.workflows.handlers import (
    ASK_AMOUNT,
    NO_DOCUMENTS_REPLY,
    NO_ROWS_REPLY,
    UNSUPPORTED_OPERATION,
    DocumentComparisonHandler,
    DocumentQuestionHandler,
    ExpenseOperationHandler,
    ReconciliationHandler,
    document_rows,
    intent_handlers,
)
from ledgerflow.workflows.intent_router import ERROR_REPLY
from ledgerflow.workflows.reconciliation import ReconciliationWorkflow

SETTINGS = Settings(call_timeout_seconds=1.0, retry_backoff_seconds=0.0, primary_fetch_retries=1)

STATEMENT = """Statement February 2026
Date        Description          Amount    Balance
08/02/2026  Lunch                500.00    9,500.00
09/02/2026  Taxi to airport      1,200.50  8,299.50
Total                            1,700.50
"""

LEDGER_LUNCH = {"id": 11, "amount": "500.00", "description": "Lunch", "expense_date": "2026-02-08"}
LEDGER_TAXI = {"id": 12, "amount": "1200.50", "description": "Taxi to airport", "expense_date": "2026-02-09"}


class FakeLedger:
    def __init__(self, rows=None, down=False):
        self.rows = list(rows or [])
        self.down = down
        self.fetch_calls = []
        self.created = []

    async def fetch(self, filter):
        self.fetch_calls.append(filter)
        if self.down:
            raise TransientError("ledger backend", "connection refused")
        return list(self.rows)

    async def create(self, record, auth_context=None):
        if self.down:
            raise TransientError("ledger backend", "connection refused")
        self.created.append((record, auth_context))
        return {"id": 100 + len(self.created), **record.to_payload()}


class FakeSearch:
    def __init__(self, hits):
        self.hits = hits
        self.queries = []

    async def query(self, text, owner_id, k):
        self.queries.append((text, owner_id, k))
        return self.hits[:k]


def store_with(*documents):
    store = InMemoryDocumentStore()

    async def load():
        for document_id, text in documents:
            await store.add_document("42", document_id, text)

    asyncio.run(load())
    return store


def ask(handler, message, entities=None):
    request = IntentRequest(
        message=message,
        owner_id="42",
        intent="test",
        confidence=0.9,
        entities=entities or {},
        auth_context={"token": "tok"},
    )
    return asyncio.run(handler.handle(request))


class TestExpenseOperationHandler:

    def test_adds_expense_described_in_message(self):
        ledger = FakeLedger()

        reply = ask(ExpenseOperationHandler(ledger), "Add 500 for lunch today")

        record, auth = ledger.created[0]
        assert record.amount == Decimal("500")
        assert record.description == "lunch"
        assert record.category == "other"
        assert record.date == date.today()
        assert auth == {"token": "tok"}
        assert reply == f"Added 500.00 for lunch on {date.today().isoformat()}."

    def test_parses_amount_date_and_description(self):
        handler = ExpenseOperationHandler(FakeLedger())
        request = IntentRequest(
            message="spent 1,200 on groceries on 03/02/2026", owner_id="42", intent="expense_operation", confidence=0.7
        )

        record = handler.parse_expense(request)

        assert record.amount == Decimal("1200")
        assert record.date == date(2026, 2, 3)
        assert record.description == "groceries"

    def test_yesterday(self):
        handler = ExpenseOperationHandler(FakeLedger())
        request = IntentRequest(message="paid $42.50 for taxi yesterday", owner_id="42", intent="x", confidence=0.7)

        record = handler.parse_expense(request, today=date(2026, 2, 10))

        assert record.amount == Decimal("42.50")
        assert record.date == date(2026, 2, 9)
        assert record.description == "taxi"

    def test_classifier_entities_take_precedence(self):
        ledger = FakeLedger()
        entities = {
            "action": "create",
            "amount": 42.5,
            "description": "Team Dinner",
            "category": "Food",
            "date": "2026-02-01",
        }

        reply = ask(ExpenseOperationHandler(ledger), "put it in", entities)

        record, _ = ledger.created[0]
        assert record.amount == Decimal("42.5")
        assert record.description == "team dinner"
        assert record.category == "food"
        assert record.date == date(2026, 2, 1)
        assert reply == "Added 42.50 for team dinner on 2026-02-01."

    def test_missing_amount_asks_for_it(self):
        ledger = FakeLedger()

        assert ask(ExpenseOperationHandler(ledger), "add lunch") == ASK_AMOUNT
        assert ledger.created == []

    def test_lists_newest_first_with_total(self):
        ledger = FakeLedger([LEDGER_LUNCH, LEDGER_TAXI])

        reply = ask(ExpenseOperationHandler(ledger), "show my expenses")

        assert reply.splitlines() == [
            "You have 2 expenses totalling 1,700.50:",
            "- 2026-02-09  taxi to airport  1,200.50",
            "- 2026-02-08  lunch  500.00",
        ]
        assert ledger.fetch_calls[0].owner_id == "42"
        assert ledger.fetch_calls[0].token == "tok"

    def test_long_lists_are_capped(self):
        rows = [
            {"id": day, "amount": 10, "description": f"coffee {day}", "expense_date": f"2026-03-{day:02d}"}
            for day in range(1, 13)
        ]

        lines = ask(ExpenseOperationHandler(FakeLedger(rows)), "list").splitlines()

        assert lines[0] == "You have 12 expenses totalling 120.00:"
        assert lines[1] == "- 2026-03-12  coffee 12  10.00"
        assert lines[-1] == "...and 2 more."
        assert len(lines) == 12

    def test_empty_ledger(self):
        reply = ask(ExpenseOperationHandler(FakeLedger()), "show my expenses")
        assert reply.startswith("You don't have any expenses yet.")

    @pytest.mark.parametrize("message", ["delete all my expenses", "update my lunch expense", "yes"])
    def test_other_operations_are_not_supported(self, message):
        ledger = FakeLedger([LEDGER_LUNCH])

        assert ask(ExpenseOperationHandler(ledger), message) == UNSUPPORTED_OPERATION
        assert ledger.fetch_calls == []
        assert ledger.created == []

    def test_ledger_errors_propagate(self):
        with pytest.raises(TransientError):
            ask(ExpenseOperationHandler(FakeLedger(down=True)), "Add 500 for lunch today")


class TestDocumentQuestionHandler:

    def test_no_documents_uploaded(self):
        store = InMemoryDocumentStore()

        assert ask(DocumentQuestionHandler(store, store), "what did the taxi cost") == NO_DOCUMENTS_REPLY

    def test_answers_from_search_hits(self):
        store = store_with(("feb-statement", STATEMENT))

        reply = ask(DocumentQuestionHandler(store, store), "what did the taxi to the airport cost")

        assert reply.startswith("Here's what I found in your documents:")
        assert "Taxi to airport" in reply
        assert "(feb-statement, " in reply
        assert reply.endswith("% match)")

    def test_nothing_relevant(self):
        store = store_with(("feb-statement", STATEMENT))

        reply = ask(DocumentQuestionHandler(store, store), "bananas")

        assert reply == "I couldn't find anything about that in your documents."

    def test_snippets_are_shortened(self):
        search = FakeSearch([SearchHit(content="word " * 200, similarity_score=0.8, metadata={"document_id": "r1"})])

        reply = ask(DocumentQuestionHandler(search, k=2), "word")

        line = reply.splitlines()[1]
        assert line.endswith("... (r1, 80% match)")
        assert len(line) < 340
        assert search.queries == [("word", "42", 2)]


class TestDocumentComparisonHandler:

    def test_reports_matches_and_untracked_expenses(self):
        ledger = FakeLedger([LEDGER_LUNCH])
        store = store_with(("feb-statement", STATEMENT))

        reply = ask(DocumentComparisonHandler(ledger, store), "compare my statement with my expenses")

        lines = reply.splitlines()
        assert lines[0] == "Compared 2 document expenses with 1 tracked expenses: 1 matched (50%)."
        assert lines[1] == "- Only in your documents: 2026-02-09  taxi to airport  1,200.50"
        assert ledger.created == []

    def test_reports_expenses_missing_from_documents(self):
        ledger = FakeLedger([LEDGER_LUNCH, LEDGER_TAXI, {"id": 13, "amount": 80, "description": "Parking", "expense_date": "2026-02-10"}])
        store = store_with(("feb-statement", STATEMENT))

        reply = ask(DocumentComparisonHandler(ledger, store), "compare")

        assert "2 matched" in reply
        assert "- Only in your tracked expenses: 2026-02-10  parking  80.00" in reply

    def test_everything_tracked(self):
        store = store_with(("feb-statement", STATEMENT))

        reply = ask(DocumentComparisonHandler(FakeLedger([LEDGER_LUNCH, LEDGER_TAXI]), store), "compare")

        assert reply.endswith("Everything in your documents is already tracked.")
        assert "2 matched (100%)" in reply

    def test_no_documents(self):
        ledger = FakeLedger([LEDGER_LUNCH])

        assert ask(DocumentComparisonHandler(ledger, InMemoryDocumentStore()), "compare") == NO_DOCUMENTS_REPLY
        assert ledger.fetch_calls == []

    def test_documents_without_expense_lines(self):
        store = store_with(("notes", "Remember to file the February receipts."))

        assert ask(DocumentComparisonHandler(FakeLedger(), store), "compare") == NO_ROWS_REPLY


class TestReconciliationHandler:

    def test_adds_untracked_document_expenses_to_ledger(self):
        ledger = FakeLedger([LEDGER_LUNCH])
        store = store_with(("feb-statement", STATEMENT))
        handler = ReconciliationHandler(ReconciliationWorkflow(ledger, settings=SETTINGS), store)

        reply = ask(handler, "reconcile my bank statement")

        assert "Matched 1 (50%)" in reply
        assert reply.endswith("Added 1 missing expenses to your ledger.")
        [(record, auth)] = ledger.created
        assert record.amount == Decimal("1200.50")
        assert record.description == "taxi to airport"
        assert auth == {"token": "tok"}

    def test_failed_run_raises(self):
        store = store_with(("feb-statement", STATEMENT))
        handler = ReconciliationHandler(ReconciliationWorkflow(FakeLedger(down=True), settings=SETTINGS), store)

        with pytest.raises(ReconciliationError) as exc_info:
            ask(handler, "reconcile")

        assert exc_info.value.context["stage"] == "fetch_primary"

    def test_no_documents(self):
        ledger = FakeLedger()
        handler = ReconciliationHandler(ReconciliationWorkflow(ledger, settings=SETTINGS), InMemoryDocumentStore())

        assert ask(handler, "reconcile") == NO_DOCUMENTS_REPLY
        assert ledger.fetch_calls == []


def test_document_rows_rebuild_chunked_documents():
    text = "\n".join(f"{day:02d}/03/2026  Item {day}  {day * 10}.00" for day in range(1, 29))
    store = InMemoryDocumentStore(chunk_size=200, overlap=50)
    asyncio.run(store.add_document("42", "march", text))
    details = asyncio.run(store.fetch_details("42"))

    rows = document_rows(details)

    assert len(details) > 1
    assert [row["description"] for row in rows] == [f"Item {day}" for day in range(1, 29)]
    assert {row["document_id"] for row in rows} == {"march"}


class TestWiring:

    def test_handlers_follow_available_collaborators(self):
        store = InMemoryDocumentStore()

        assert intent_handlers(None) == {}
        assert set(intent_handlers(FakeLedger())) == {Intent.EXPENSE_OPERATION}
        assert set(intent_handlers(FakeLedger(), store, store, settings=SETTINGS)) == {
            Intent.EXPENSE_OPERATION,
            Intent.RAG_QUESTION,
            Intent.RAG_COMPARE,
            Intent.RECONCILIATION,
        }

    def test_engine_from_settings_wires_every_handler(self):
        engine = LedgerflowEngine.from_settings(Settings(backend_url="http://backend.test/api"))
        handlers = engine.intent_router.handlers

        assert isinstance(handlers[Intent.EXPENSE_OPERATION], ExpenseOperationHandler)
        assert isinstance(handlers[Intent.RAG_QUESTION], DocumentQuestionHandler)
        assert isinstance(handlers[Intent.RAG_COMPARE], DocumentComparisonHandler)
        assert isinstance(handlers[Intent.RECONCILIATION], ReconciliationHandler)

    def test_explicit_handlers_override_defaults(self):
        class Canned:
            async def handle(self, request):
                return "canned"

        engine = LedgerflowEngine(FakeLedger(), handlers={Intent.EXPENSE_OPERATION: Canned()}, settings=SETTINGS)

        result = asyncio.run(engine.run_intent_routing("show my expenses", "42"))

        assert result.result == "canned"


class TestEngineConversation:
    """Routed messages reach the wired handlers once a document is uploaded."""

    def engine(self, ledger):
        store = InMemoryDocumentStore()
        engine = LedgerflowEngine(ledger, documents=store, search=store, settings=SETTINGS)
        asyncio.run(engine.add_document("42", "feb-statement", STATEMENT))
        return engine

    def route(self, engine, message):
        return asyncio.run(engine.run_intent_routing(message, "42", {"token": "tok"}, []))

    def test_reconcile_message(self):
        ledger = FakeLedger([LEDGER_LUNCH])

        result = self.route(self.engine(ledger), "reconcile my bank statement")

        assert result.intent == "reconciliation"
        assert result.error is None
        assert "Added 1 missing expenses" in result.result
        assert len(ledger.created) == 1

    def test_compare_message(self):
        result = self.route(self.engine(FakeLedger([LEDGER_LUNCH])), "compare my documents with my expenses")

        assert result.intent == "rag_compare"
        assert result.result.startswith("Compared 2 document expenses")

    def test_document_question(self):
        result = self.route(self.engine(FakeLedger()), "what does my receipt say about the taxi")

        assert result.intent == "rag_question"
        assert "Taxi to airport" in result.result

    def test_add_and_list(self):
        ledger = FakeLedger([LEDGER_LUNCH])
        engine = self.engine(ledger)

        added = self.route(engine, "Add 80 for parking today")
        listed = self.route(engine, "show my expenses")

        assert added.result == f"Added 80.00 for parking on {date.today().isoformat()}."
        assert listed.result.startswith("You have 1 expense totalling 500.00:")

    def test_loaded_documents_back_reconciliation_evidence(self):
        engine = self.engine(FakeLedger())
        taxi = {"amount": "1200.50", "description": "Taxi to airport", "date": "2026-02-09"}

        report = asyncio.run(engine.run_reconciliation([taxi], "42", {"token": "tok"}))

        assert report.metadata["evidence_downgrades"] == 1
        [missing] = report.discrepancies
        assert missing.type is DiscrepancyType.MISSING_IN_TARGET
        assert missing.severity is Severity.LOW
        assert "Taxi to airport" in missing.evidence["content"]

    def test_backend_failure_gets_the_error_reply(self):
        result = self.route(self.engine(FakeLedger(down=True)), "reconcile my bank statement")

        assert result.result == ERROR_REPLY
        assert result.error

    def test_uploads_need_a_loader(self):
        engine = LedgerflowEngine(FakeLedger(), settings=SETTINGS)

        with pytest.raises(InputValidationError):
            asyncio.run(engine.add_document("42", "receipt", "Lunch 500"))

    def test_blank_uploads_are_rejected(self):
        store = InMemoryDocumentStore()
        engine = LedgerflowEngine(FakeLedger(), documents=store, search=store, settings=SETTINGS)

        with pytest.raises(InputValidationError):
            asyncio.run(engine.add_document("42", "receipt", "   "))
