"""
Collaborator contracts consumed by the workflows.

Anything satisfying these protocols can be injected into LedgerflowEngine;
tests use small in-process fakes, production uses the adapters in this
package.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Union, runtime_checkable

from ledgerflow.models.records import Record


@dataclass(frozen=True)
class LedgerFilter:
    """Scope of a ledger fetch."""
    owner_id: str
    auth_context: Mapping[str, Any] = field(default_factory=dict)
    start_date: Optional[str] = None
    end_date: Optional[str] = None

    @property
    def token(self) -> Optional[str]:
        return self.auth_context.get("token") or self.auth_context.get("auth_token")


@dataclass(frozen=True)
class SearchHit:
    content: str
    similarity_score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


RawOrRecord = Union[Mapping[str, Any], Record]


class Classifier(Protocol):
    async def classify(self, message: str, context: Sequence[Mapping[str, str]]) -> Union[Mapping[str, Any], str]:
        ...


class LedgerStore(Protocol):
    async def fetch(self, filter: LedgerFilter) -> Sequence[RawOrRecord]:
        ...

    async def create(self, record: Record, auth_context: Optional[Mapping[str, Any]] = None) -> RawOrRecord:
        ...


class DocumentStore(Protocol):
    async def fetch_details(self, owner_id: str) -> Sequence[Any]:
        ...


@runtime_checkable
class DocumentLoader(Protocol):
    """A document store that accepts uploaded text."""

    async def add_document(
        self,
        owner_id: str,
        document_id: str,
        text: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        ...


class SemanticSearch(Protocol):
    async def query(self, text: str, owner_id: str, k: int) -> List[SearchHit]:
        ...


class Summarizer(Protocol):
    async def summarize(self, structured_diff: Mapping[str, Any]) -> str:
        ...


@dataclass(frozen=True)
class IntentRequest:
    """What an intent handler gets to work with."""
    message: str
    owner_id: str
    intent: str
    confidence: float
    entities: Mapping[str, Any] = field(default_factory=dict)
    history: Sequence[Mapping[str, str]] = ()
    auth_context: Mapping[str, Any] = field(default_factory=dict)
    trace_id: Optional[str] = None


class IntentHandler(Protocol):
    async def handle(self, request: IntentRequest) -> str:
        ...
