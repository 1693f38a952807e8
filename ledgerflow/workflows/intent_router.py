"""
Intent router workflow.

    classify -> route_by_intent -> {expense_operation | rag_question | rag_compare
                                    | reconciliation | general_chat | clarification} -> END

Classification never fails the run: classifier errors and invalid output
fall back to the keyword heuristic. Handler failures route to the error
node, which answers with an apology and keeps the error for the caller.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional, Sequence

from ledgerflow.adapters.base import Classifier, IntentHandler, IntentRequest
from ledgerflow.core.settings import Settings
from ledgerflow.services.intent import (
    Intent,
    build_context,
    fallback_classify,
    parse_classifier_output,
    resolve_route,
)
from ledgerflow.workflows.graph import END, ERROR_NODE, CompiledGraph, State, StateGraph
from ledgerflow.workflows.state import IntentRouterState

logger = logging.getLogger(__name__)

GRAPH_NAME = "intent_router"

GENERAL_CHAT_REPLY = (
    "Hello! I'm your expense tracking assistant. I can add, list, update and delete "
    "expenses, answer questions about your uploaded receipts and statements, and "
    "compare or reconcile them with your tracked expenses. What would you like to do?"
)
CLARIFICATION_QUESTION = (
    "I'm not sure I understood that. Could you please clarify? For example:\n"
    "- 'Add 500 for lunch today'\n"
    "- 'Show my expenses'\n"
    "- 'What does my receipt say about dinner?'"
)
ERROR_REPLY = "Sorry, I couldn't complete that request. Please try again in a moment."


class GeneralChatHandler:
    async def handle(self, request: IntentRequest) -> str:
        return GENERAL_CHAT_REPLY


class ClarificationHandler:
    async def handle(self, request: IntentRequest) -> str:
        return CLARIFICATION_QUESTION


class NotConfiguredHandler:
    """Placeholder for intents whose handler was not wired in."""

    def __init__(self, intent: Intent):
        self.intent = intent

    async def handle(self, request: IntentRequest) -> str:
        label = self.intent.value.replace("_", " ")
        return f"Sorry, {label} requests are not available right now."


def default_handlers() -> Dict[Intent, IntentHandler]:
    handlers: Dict[Intent, IntentHandler] = {intent: NotConfiguredHandler(intent) for intent in Intent}
    handlers[Intent.GENERAL_CHAT] = GeneralChatHandler()
    handlers[Intent.CLARIFICATION] = ClarificationHandler()
    return handlers


def route_by_intent(state: State) -> Intent:
    return resolve_route(state.get("intent"), state.get("confidence"))


class IntentRouterWorkflow:
    def __init__(
        self,
        classifier: Optional[Classifier] = None,
        handlers: Optional[Mapping[Intent, IntentHandler]] = None,
        settings: Optional[Settings] = None,
    ):
        self.classifier = classifier
        self.handlers = default_handlers()
        self.handlers.update(handlers or {})
        self.settings = settings or Settings()
        self.graph = self.build()

    def build(self) -> CompiledGraph:
        graph = StateGraph(GRAPH_NAME, IntentRouterState)
        graph.add_node("classify", self.classify)
        for intent in Intent:
            graph.add_node(intent.value, self._handler_node(intent))
            graph.add_edge(intent.value, END)
        graph.add_node(ERROR_NODE, self.error)
        graph.add_edge(ERROR_NODE, END)

        graph.set_entry("classify")
        graph.add_conditional_edges("classify", route_by_intent, {intent: intent.value for intent in Intent})
        return graph.compile()

    async def run(
        self,
        message: str,
        owner_id: str,
        auth_context: Optional[Mapping[str, Any]] = None,
        history: Optional[Sequence[Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        return await self.graph.run(
            {
                "user_message": message,
                "owner_id": owner_id,
                "auth_context": dict(auth_context or {}),
                "history": list(history or []),
            },
            cancel_event=cancel_event,
        )

    async def classify(self, state: State) -> Dict[str, Any]:
        message = state["user_message"]
        history = state.get("history", [])
        classification = None

        if self.classifier is not None:
            try:
                raw = await asyncio.wait_for(
                    self.classifier.classify(message, build_context(history)),
                    self.settings.call_timeout_seconds,
                )
                classification = parse_classifier_output(raw)
            except Exception as exc:
                logger.warning("Classifier unavailable, using keyword fallback: %s", exc)

        if classification is None:
            classification = fallback_classify(message, history)

        logger.info(
            "Classified message as %s (%.2f, %s)",
            classification.intent, classification.confidence, classification.source,
        )
        return {
            "intent": classification.intent,
            "confidence": classification.confidence,
            "entities": classification.entities,
            "reasoning": classification.reasoning,
            "classified_by": classification.source,
        }

    def _handler_node(self, intent: Intent):
        async def handle(state: State) -> Dict[str, Any]:
            request = IntentRequest(
                message=state["user_message"],
                owner_id=state["owner_id"],
                intent=intent.value,
                confidence=state.get("confidence", 0.0),
                entities=state.get("entities", {}),
                history=build_context(state.get("history", [])),
                auth_context=state.get("auth_context", {}),
                trace_id=state.get("trace_id"),
            )
            reply = await asyncio.wait_for(
                self.handlers[intent].handle(request), self.settings.call_timeout_seconds
            )
            update: Dict[str, Any] = {"result": reply}
            if intent is Intent.CLARIFICATION:
                update.update(needs_clarification=True, clarification_question=reply)
            return update

        handle.__name__ = f"handle_{intent.value}"
        return handle

    async def error(self, state: State) -> Dict[str, Any]:
        return {"stage": ERROR_NODE, "result": ERROR_REPLY}
