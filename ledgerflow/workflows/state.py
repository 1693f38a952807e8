"""
Workflow state schemas and merge semantics.

A run's state is a plain dict validated against a schema at entry. Nodes
return partial updates which are merged field by field:

- override: the update replaces the old value whenever the key is present
- append:   sequences are concatenated (old + new)
- merge:    mappings are shallow-merged (old | new)

Fields without a declared policy use override.
"""
from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from ledgerflow.models.reconciliation import Discrepancy, MatchCandidate, SuggestedAction, SyncFailure
from ledgerflow.models.records import Record
from ledgerflow.services.intent import ConversationTurn


class MergePolicy(str, Enum):
    OVERRIDE = "override"
    APPEND = "append"
    MERGE = "merge"


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (str, bytes, Mapping)) or not hasattr(value, "__iter__"):
        return [value]
    return list(value)


def _merge_value(policy: MergePolicy, old: Any, new: Any) -> Any:
    if policy is MergePolicy.APPEND:
        return _as_list(old) + _as_list(new)
    if policy is MergePolicy.MERGE:
        merged = dict(old) if isinstance(old, Mapping) else {}
        # A non-mapping update cannot be merged; the old value stands
        if isinstance(new, Mapping):
            merged.update(new)
        return merged
    return new


def merge_state(
    state: Mapping[str, Any],
    update: Optional[Mapping[str, Any]],
    policies: Optional[Mapping[str, MergePolicy]] = None,
) -> Dict[str, Any]:
    """Return a new state with `update` merged in. Never mutates its inputs and never raises."""
    merged = dict(state) if isinstance(state, Mapping) else {}
    if not isinstance(update, Mapping):
        return merged
    policies = policies or {}
    for key, value in update.items():
        policy = policies.get(key, MergePolicy.OVERRIDE)
        merged[key] = _merge_value(policy, merged.get(key), value)
    return merged


def invalid_fields(update: Mapping[str, Any], policies: Mapping[str, MergePolicy]) -> List[str]:
    """Fields of `update` whose value does not fit their merge policy."""
    return [
        key for key, value in update.items()
        if policies.get(key) is MergePolicy.MERGE and value is not None and not isinstance(value, Mapping)
    ]


def new_trace_id() -> str:
    return f"trace_{uuid.uuid4().hex[:16]}"


class WorkflowState(BaseModel):
    """Fields every workflow run carries."""
    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    MERGE_POLICIES: ClassVar[Dict[str, MergePolicy]] = {"metadata": MergePolicy.MERGE}

    stage: str = "start"
    error: Optional[str] = None
    trace_id: str = Field(default_factory=new_trace_id)
    result: Any = None
    retry_count: int = Field(default=0, ge=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def initial(cls, values: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Validate `values` and return the run's starting state as a dict."""
        if values is None:
            values = {}
        if not isinstance(values, Mapping):
            raise TypeError(f"initial state must be a mapping, got {type(values).__name__}")
        model = cls.model_validate(dict(values))
        return {name: getattr(model, name) for name in type(model).model_fields}


class IntentRouterState(WorkflowState):
    user_message: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    auth_context: Dict[str, Any] = Field(default_factory=dict)
    history: List[ConversationTurn] = Field(default_factory=list)

    intent: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0, le=1)
    entities: Dict[str, Any] = Field(default_factory=dict)
    reasoning: Optional[str] = None
    classified_by: Optional[str] = None
    needs_clarification: bool = False
    clarification_question: Optional[str] = None


class ReconciliationState(WorkflowState):
    MERGE_POLICIES: ClassVar[Dict[str, MergePolicy]] = {
        "matches": MergePolicy.APPEND,
        "discrepancies": MergePolicy.APPEND,
        "synced_records": MergePolicy.APPEND,
        "sync_failures": MergePolicy.APPEND,
        "metadata": MergePolicy.MERGE,
        "options": MergePolicy.MERGE,
        "severity_adjustments": MergePolicy.MERGE,
    }

    owner_id: str = Field(..., min_length=1)
    auth_context: Dict[str, Any] = Field(default_factory=dict)
    # Raw caller-supplied records; normalized by the initialize node
    secondary_records: List[Any] = Field(default_factory=list)
    options: Dict[str, Any] = Field(default_factory=dict)

    external_records: List[Record] = Field(default_factory=list)
    primary_records: List[Record] = Field(default_factory=list)
    document_details: List[Any] = Field(default_factory=list)

    matches: List[MatchCandidate] = Field(default_factory=list)
    discrepancies: List[Discrepancy] = Field(default_factory=list)
    severity_adjustments: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    suggested_actions: List[SuggestedAction] = Field(default_factory=list)
    summary: Optional[str] = None

    synced_records: List[Record] = Field(default_factory=list)
    sync_failures: List[SyncFailure] = Field(default_factory=list)
