"""
Tests for intent classification and the intent router workflow.
"""

import asyncio
import json

import pytest

from ledgerflow.core.engine import LedgerflowEngine
from ledgerflow.core.settings import Settings
from ledgerflow.services.errors import ClassificationError
from ledgerflow.services.intent import (
    ConversationTurn,
    Intent,
    build_context,
    fallback_classify,
    parse_classifier_output,
    resolve_route,
)
from ledgerflow.workflows.intent_router import (
    CLARIFICATION_QUESTION,
    ERROR_REPLY,
    GENERAL_CHAT_REPLY,
    IntentRouterWorkflow,
)

SETTINGS = Settings(call_timeout_seconds=0.5)

DELETE_PROMPT = [
    {"role": "user", "content": "delete all my expenses"},
    {"role": "assistant", "content": "Are you sure you want to delete all 12 expenses? Reply yes to confirm."},
]


class FakeClassifier:
    def __init__(self, reply=None, error=None, delay=0.0):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls = []

    async def classify(self, message, context):
        self.calls.append((message, context))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.reply


class RecordingHandler:
    def __init__(self, reply="handled", error=None):
        self.reply = reply
        self.error = error
        self.requests = []

    async def handle(self, request):
        self.requests.append(request)
        if self.error:
            raise self.error
        return self.reply


def route(workflow, message, history=None):
    return asyncio.run(workflow.run(message, "42", {"token": "tok"}, history))


class TestFallbackClassifier:
    """Ordered keyword rules used when the classifier is unavailable."""

    @pytest.mark.parametrize("message,intent,confidence", [
        ("compare my pdf with app expenses", Intent.RAG_COMPARE, 0.7),
        ("What's the difference between them?", Intent.RAG_COMPARE, 0.7),
        ("what does my receipt say about dinner", Intent.RAG_QUESTION, 0.6),
        ("sync my bank statement", Intent.RECONCILIATION, 0.6),
        ("please reconcile everything", Intent.RECONCILIATION, 0.6),
        ("Add 500 for lunch today", Intent.EXPENSE_OPERATION, 0.7),
        ("show my expenses", Intent.EXPENSE_OPERATION, 0.7),
        ("hello there", Intent.GENERAL_CHAT, 0.5),
    ])
    def test_rules(self, message, intent, confidence):
        result = fallback_classify(message)
        assert result.intent == intent.value
        assert result.confidence == confidence
        assert result.source == "fallback"

    def test_keywords_match_whole_words(self):
        assert fallback_classify("my budget is documented").intent == Intent.GENERAL_CHAT.value
        assert fallback_classify("i was adding things").intent == Intent.GENERAL_CHAT.value

    def test_confirmation_after_delete_prompt(self):
        result = fallback_classify("yes", DELETE_PROMPT)
        assert result.intent == Intent.EXPENSE_OPERATION.value
        assert result.confidence >= 0.95

    @pytest.mark.parametrize("reply", ["Yes!", "ok", "go ahead", "confirm", "delete it"])
    def test_confirmation_variants(self, reply):
        assert fallback_classify(reply, DELETE_PROMPT).intent == Intent.EXPENSE_OPERATION.value

    def test_confirmation_without_pending_prompt(self):
        result = fallback_classify("yes", [{"role": "assistant", "content": "Here are your expenses."}])
        assert result.intent == Intent.GENERAL_CHAT.value

    def test_only_latest_assistant_turn_counts(self):
        history = DELETE_PROMPT + [
            {"role": "user", "content": "yes"},
            {"role": "assistant", "content": "Deleted 12 expenses."},
        ]
        assert fallback_classify("yes", history).intent == Intent.GENERAL_CHAT.value


class TestRouting:

    @pytest.mark.parametrize("intent,confidence,expected", [
        ("expense_operation", 0.49, Intent.CLARIFICATION),
        ("expense_operation", 0.5, Intent.EXPENSE_OPERATION),
        ("rag_question", 0.95, Intent.RAG_QUESTION),
        ("weather_report", 0.9, Intent.GENERAL_CHAT),
        (None, None, Intent.CLARIFICATION),
    ])
    def test_resolve_route(self, intent, confidence, expected):
        assert resolve_route(intent, confidence) is expected


class TestClassifierOutput:

    def test_mapping(self):
        result = parse_classifier_output({"intent": "RAG_Question", "confidence": 0.8, "entities": None})
        assert result.intent == "rag_question"
        assert result.entities == {}
        assert result.source == "classifier"

    def test_fenced_json(self):
        raw = '```json\n{"intent": "reconciliation", "confidence": 0.92, "reasoning": "sync"}\n```'
        result = parse_classifier_output(raw)
        assert result.intent == "reconciliation"
        assert result.reasoning == "sync"

    @pytest.mark.parametrize("raw", [
        "not json at all",
        "[1, 2, 3]",
        {"intent": "general_chat", "confidence": 1.5},
        {"intent": "", "confidence": 0.5},
        {"confidence": 0.9},
        42,
    ])
    def test_invalid_output(self, raw):
        with pytest.raises(ClassificationError):
            parse_classifier_output(raw)

    def test_build_context_keeps_last_turns(self):
        history = [{"role": "user", "content": str(i)} for i in range(10)]
        context = build_context(history)
        assert [turn["content"] for turn in context] == ["4", "5", "6", "7", "8", "9"]
        assert build_context([ConversationTurn(role="assistant", content="hi")], limit=0) == []


class TestIntentRouterWorkflow:

    def test_classifier_result_selects_handler(self):
        handler = RecordingHandler("Your receipt shows a 500 lunch.")
        classifier = FakeClassifier({"intent": "rag_question", "confidence": 0.9, "entities": {"amount": 500}})
        workflow = IntentRouterWorkflow(classifier, {Intent.RAG_QUESTION: handler}, SETTINGS)

        state = route(workflow, "what does my receipt say?", [{"role": "user", "content": "hi"}])

        assert state["result"] == "Your receipt shows a 500 lunch."
        assert state["intent"] == "rag_question"
        assert state["classified_by"] == "classifier"
        request = handler.requests[0]
        assert request.message == "what does my receipt say?"
        assert request.owner_id == "42"
        assert request.entities == {"amount": 500}
        assert request.auth_context == {"token": "tok"}
        assert request.history == [{"role": "user", "content": "hi"}]
        assert classifier.calls[0][1] == [{"role": "user", "content": "hi"}]

    def test_invalid_classifier_json_falls_back(self):
        workflow = IntentRouterWorkflow(FakeClassifier("I think this is about expenses"), settings=SETTINGS)

        state = route(workflow, "hello there")

        assert state["error"] is None
        assert state["classified_by"] == "fallback"
        assert state["result"] == GENERAL_CHAT_REPLY

    def test_classifier_exception_falls_back(self):
        handler = RecordingHandler("Added.")
        workflow = IntentRouterWorkflow(
            FakeClassifier(error=ConnectionError("llm down")),
            {Intent.EXPENSE_OPERATION: handler},
            SETTINGS,
        )

        state = route(workflow, "add 500 for lunch")

        assert state["intent"] == "expense_operation"
        assert state["classified_by"] == "fallback"
        assert state["result"] == "Added."

    def test_classifier_timeout_falls_back(self):
        workflow = IntentRouterWorkflow(
            FakeClassifier(json.dumps({"intent": "rag_compare", "confidence": 0.9}), delay=5),
            settings=Settings(call_timeout_seconds=0.01),
        )

        state = route(workflow, "hello")

        assert state["classified_by"] == "fallback"
        assert state["intent"] == "general_chat"

    def test_low_confidence_asks_for_clarification(self):
        workflow = IntentRouterWorkflow(
            FakeClassifier({"intent": "expense_operation", "confidence": 0.49}), settings=SETTINGS
        )

        state = route(workflow, "hmm, maybe that thing")

        assert state["needs_clarification"] is True
        assert state["result"] == CLARIFICATION_QUESTION
        assert state["clarification_question"] == CLARIFICATION_QUESTION
        assert state["stage"] == Intent.CLARIFICATION.value

    def test_confidence_at_threshold_is_routed(self):
        handler = RecordingHandler("Listed.")
        workflow = IntentRouterWorkflow(
            FakeClassifier({"intent": "expense_operation", "confidence": 0.5}),
            {Intent.EXPENSE_OPERATION: handler},
            SETTINGS,
        )

        state = route(workflow, "show them")

        assert state["needs_clarification"] is False
        assert state["result"] == "Listed."

    def test_unknown_intent_label_is_general_chat(self):
        workflow = IntentRouterWorkflow(FakeClassifier({"intent": "weather", "confidence": 0.99}), settings=SETTINGS)

        state = route(workflow, "will it rain?")

        assert state["intent"] == "weather"
        assert state["result"] == GENERAL_CHAT_REPLY

    def test_confirmation_reply_routes_to_expense_operation(self):
        handler = RecordingHandler("Deleted 12 expenses.")
        workflow = IntentRouterWorkflow(handlers={Intent.EXPENSE_OPERATION: handler}, settings=SETTINGS)

        state = route(workflow, "yes", DELETE_PROMPT)

        assert state["intent"] == "expense_operation"
        assert state["confidence"] >= 0.95
        assert state["result"] == "Deleted 12 expenses."
        assert handler.requests[0].history[-1]["role"] == "assistant"

    def test_missing_handler_replies_politely(self):
        workflow = IntentRouterWorkflow(FakeClassifier({"intent": "rag_compare", "confidence": 0.9}), settings=SETTINGS)

        state = route(workflow, "compare my pdf")

        assert state["error"] is None
        assert state["result"] == "Sorry, rag compare requests are not available right now."

    def test_handler_failure_returns_apology_and_keeps_error(self):
        handler = RecordingHandler(error=RuntimeError("backend exploded"))
        workflow = IntentRouterWorkflow(
            FakeClassifier({"intent": "expense_operation", "confidence": 0.9}),
            {Intent.EXPENSE_OPERATION: handler},
            SETTINGS,
        )

        state = route(workflow, "add 20 for coffee")

        assert state["result"] == ERROR_REPLY
        assert state["error"] == "backend exploded"
        assert state["stage"] == "error"
        assert state["metadata"]["failed_stage"] == "expense_operation"

    def test_graph_has_one_node_per_intent(self):
        workflow = IntentRouterWorkflow(settings=SETTINGS)
        for intent in Intent:
            assert intent.value in workflow.graph.nodes


class TestEngineIntentRouting:

    def test_returns_routing_result(self):
        engine = LedgerflowEngine(ledger=None, settings=SETTINGS)

        result = asyncio.run(engine.run_intent_routing("hello", "42", {"token": "tok"}, []))

        assert result.intent == "general_chat"
        assert result.confidence == 0.5
        assert result.result == GENERAL_CHAT_REPLY
        assert result.error is None
        assert result.trace_id.startswith("trace_")

    def test_empty_message_is_an_error(self):
        engine = LedgerflowEngine(ledger=None, settings=SETTINGS)

        result = asyncio.run(engine.run_intent_routing("", "42"))

        assert result.result is None
        assert result.error.startswith("Invalid input")
        assert result.intent is None
