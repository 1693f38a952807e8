"""
Intent Classification

Maps a free-form user message onto one of the router's intents.

The classifier collaborator is tried first; its output may be a mapping or a
JSON string (optionally wrapped in markdown code fences). Anything that
fails or does not validate falls back to ordered keyword rules:

    0. confirmation reply to a pending delete/clear  -> expense_operation 0.95
    1. comparison keywords                           -> rag_compare       0.7
    2. document / pdf / receipt keywords             -> rag_question      0.6
    3. sync / reconcile / bank / statement keywords  -> reconciliation    0.6
    4. leading imperative verb                       -> expense_operation 0.7
    5. anything else                                 -> general_chat      0.5
"""
from __future__ import annotations

import json
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ledgerflow.models.base import LFBaseModel
from ledgerflow.services.errors import ClassificationError

logger = logging.getLogger(__name__)

CONTEXT_TURNS = 6
LOW_CONFIDENCE = 0.5


class Intent(str, Enum):
    """Routing labels of the intent router."""
    EXPENSE_OPERATION = "expense_operation"
    RAG_QUESTION = "rag_question"
    RAG_COMPARE = "rag_compare"
    RECONCILIATION = "reconciliation"
    GENERAL_CHAT = "general_chat"
    CLARIFICATION = "clarification"

    @classmethod
    def parse(cls, label: Optional[str]) -> Optional["Intent"]:
        try:
            return cls((label or "").strip().lower())
        except ValueError:
            return None


class ConversationTurn(LFBaseModel):
    role: str
    content: str = ""


class ClassificationResult(BaseModel):
    """Validated classifier output. Unknown intent labels are kept verbatim."""
    model_config = ConfigDict(extra="ignore")

    intent: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0, le=1)
    entities: Dict[str, Any] = Field(default_factory=dict)
    reasoning: Optional[str] = None
    source: str = "classifier"

    @field_validator("intent")
    @classmethod
    def _normalize_intent(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("entities", mode="before")
    @classmethod
    def _default_entities(cls, value: Any) -> Any:
        return value if value is not None else {}


KEYWORD_RULES = [
    (Intent.RAG_COMPARE, 0.7, re.compile(r"\b(compare|comparison|vs|versus|difference|differences|different|match)\b")),
    (Intent.RAG_QUESTION, 0.6, re.compile(r"\b(pdf|document|documents|receipt|receipts)\b")),
    (Intent.RECONCILIATION, 0.6, re.compile(r"\b(sync|synchronize|reconcile|reconciliation|bank|statement)\b")),
    (Intent.EXPENSE_OPERATION, 0.7, re.compile(r"^(add|create|list|show|modify|update|delete|remove|clear)\b")),
]

CONFIRMATION_WORDS = re.compile(
    r"^(yes|y|yeah|yep|yup|sure|ok|okay|confirm|confirmed|proceed|go ahead|do it|delete it|clear it)\b[.!]*$"
)
PENDING_CONFIRMATION = re.compile(r"\b(confirm|are you sure|sure you want|proceed)\b")
DESTRUCTIVE_ACTION = re.compile(r"\b(delete|deleting|remove|removing|clear|clearing)\b")

HistoryTurn = Union[ConversationTurn, Mapping[str, Any]]


def _turn(turn: HistoryTurn) -> ConversationTurn:
    if isinstance(turn, ConversationTurn):
        return turn
    return ConversationTurn(role=str(turn.get("role", "user")), content=str(turn.get("content") or ""))


def build_context(history: Optional[Sequence[HistoryTurn]], limit: int = CONTEXT_TURNS) -> List[Dict[str, str]]:
    """Last `limit` turns of the conversation, oldest first."""
    turns = [_turn(turn) for turn in (history or [])][-limit:] if limit > 0 else []
    return [{"role": turn.role, "content": turn.content} for turn in turns]


def _strip_code_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```[a-zA-Z]*\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    return text.strip()


def parse_classifier_output(raw: Any) -> ClassificationResult:
    """
    Validate classifier output.

    Raises ClassificationError for anything that is not a mapping (or JSON
    object string) with a usable intent and a confidence in [0, 1].
    """
    payload = raw
    if isinstance(raw, (bytes, bytearray)):
        payload = raw.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        try:
            payload = json.loads(_strip_code_fences(payload))
        except json.JSONDecodeError as exc:
            raise ClassificationError(f"Classifier returned invalid JSON: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ClassificationError(f"Classifier returned {type(payload).__name__}, expected an object")

    try:
        return ClassificationResult.model_validate(dict(payload, source="classifier"))
    except ValidationError as exc:
        raise ClassificationError(f"Classifier output failed validation: {exc.error_count()} errors") from exc


def _is_confirmation_reply(message: str, history: Sequence[ConversationTurn]) -> bool:
    if not CONFIRMATION_WORDS.match(message):
        return False
    for turn in reversed(history):
        if turn.role != "assistant":
            continue
        content = turn.content.lower()
        return bool(PENDING_CONFIRMATION.search(content) and DESTRUCTIVE_ACTION.search(content))
    return False


def fallback_classify(message: str, history: Optional[Sequence[HistoryTurn]] = None) -> ClassificationResult:
    """Deterministic keyword classification. First matching rule wins."""
    text = " ".join(message.lower().split())
    turns = [_turn(turn) for turn in (history or [])][-CONTEXT_TURNS:]

    if _is_confirmation_reply(text, turns):
        return ClassificationResult(
            intent=Intent.EXPENSE_OPERATION.value,
            confidence=0.95,
            reasoning="Confirmation of a pending destructive operation",
            source="fallback",
        )

    for intent, confidence, pattern in KEYWORD_RULES:
        if pattern.search(text):
            return ClassificationResult(
                intent=intent.value,
                confidence=confidence,
                reasoning=f"Keyword match: {pattern.pattern}",
                source="fallback",
            )

    return ClassificationResult(
        intent=Intent.GENERAL_CHAT.value,
        confidence=0.5,
        reasoning="Unclear request, treating as general conversation",
        source="fallback",
    )


def resolve_route(intent: Optional[str], confidence: Optional[float]) -> Intent:
    """Low confidence always asks for clarification; unknown labels become general chat."""
    if (confidence or 0.0) < LOW_CONFIDENCE:
        return Intent.CLARIFICATION
    return Intent.parse(intent) or Intent.GENERAL_CHAT
