"""
Workflow Graph Engine

Small interpretable state machine used by every Ledgerflow workflow.

    graph = StateGraph("reconciliation", ReconciliationState)
    graph.add_node("initialize", initialize)
    graph.add_node("fetch_primary", fetch_primary, retry=RetryPolicy(max_retries=3))
    graph.add_node("fetch_secondary", fetch_secondary)
    graph.add_parallel("fetch", ["fetch_primary", "fetch_secondary"], then="compare")
    graph.add_edge("initialize", "fetch")
    graph.add_conditional_edges("compare", route_after_compare, {
        CompareRoute.CONTEXT: "analyze_context",
        CompareRoute.ANALYZE: "analyze",
    })
    workflow = graph.compile()

    final_state = await workflow.run({"owner_id": "42", ...})

Nodes are async callables taking a read-only view of the state and returning
a partial update. Routers are plain functions of state returning a member of
a closed Enum; every member must be mapped when the graph is compiled.

Termination is structural: the only cycle allowed is a node's retry
self-edge, bounded by its RetryPolicy. Misconfigured graphs raise
GraphConfigError from compile(), never from run().
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    Type,
    Union,
)

from pydantic import ValidationError

from ledgerflow.services.errors import GraphConfigError, LedgerflowError, NodeUpdateError, TransientError
from ledgerflow.services.logging import log_error, log_workflow_step
from ledgerflow.workflows.state import MergePolicy, WorkflowState, invalid_fields, merge_state

logger = logging.getLogger(__name__)

END = "__end__"
ERROR_NODE = "error"
RETRY_LABEL = "retry"
MAX_RETRY_BOUND = 10
CANCELLED = "cancelled"

State = Mapping[str, Any]
PartialState = Optional[Dict[str, Any]]
NodeFunc = Callable[[State], Awaitable[PartialState]]
Router = Callable[[State], Enum]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry behaviour of a node.

    max_retries: re-runs allowed after the first failure (0-10)
    retry_on: exception types that trigger a retry; others fail immediately
    timeout: per-attempt timeout in seconds; a timeout counts as TransientError
    backoff_seconds: delay before each retry, doubled per attempt
    """
    max_retries: int = 3
    retry_on: Tuple[Type[BaseException], ...] = (TransientError,)
    timeout: Optional[float] = None
    backoff_seconds: float = 0.0

    def is_retryable(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retry_on)


@dataclass(frozen=True)
class Node:
    name: str
    func: NodeFunc
    retry: Optional[RetryPolicy] = None
    on_failure: str = ERROR_NODE


@dataclass(frozen=True)
class Edge:
    source: str
    target: str


@dataclass(frozen=True)
class ConditionalEdge:
    source: str
    router: Router
    mapping: Mapping[Enum, str]
    labels: Optional[Type[Enum]] = None

    @property
    def label_type(self) -> Optional[Type[Enum]]:
        if self.labels is not None:
            return self.labels
        first = next(iter(self.mapping), None)
        return type(first) if isinstance(first, Enum) else None


@dataclass(frozen=True)
class ParallelGroup:
    """Members run concurrently; `join` runs once all of them have settled."""
    name: str
    members: Tuple[str, ...]
    join: str


EdgeSpec = Union[Edge, ConditionalEdge, ParallelGroup]


async def _default_error_node(state: State) -> PartialState:
    return {"stage": ERROR_NODE}


@dataclass
class _Outcome:
    node: str
    update: PartialState = None
    error: Optional[BaseException] = None
    retries: int = 0
    cancelled: bool = False


async def _backoff(delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
    """Wait `delay` seconds before a retry. True when the run was cancelled meanwhile."""
    if cancel_event is None:
        if delay:
            await asyncio.sleep(delay)
        return False
    if cancel_event.is_set():
        return True
    if not delay:
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), delay)
    except asyncio.TimeoutError:
        return False
    return True


def _is_retry_label(label: Any) -> bool:
    value = label.value if isinstance(label, Enum) else label
    return value == RETRY_LABEL


def compile_graph(
    name: str,
    nodes: Sequence[Node],
    edges: Sequence[EdgeSpec],
    entry: str,
    schema: Type[WorkflowState] = WorkflowState,
) -> "CompiledGraph":
    """Validate a graph definition and freeze it into a CompiledGraph."""
    node_map: Dict[str, Node] = {}
    for node in nodes:
        if node.name in node_map or node.name == END:
            raise GraphConfigError(name, f"duplicate node name '{node.name}'")
        node_map[node.name] = node

    if ERROR_NODE not in node_map:
        node_map[ERROR_NODE] = Node(ERROR_NODE, _default_error_node)
    edges = list(edges)
    if not any(getattr(e, "source", None) == ERROR_NODE for e in edges):
        edges.append(Edge(ERROR_NODE, END))

    groups: Dict[str, ParallelGroup] = {}
    transitions: Dict[str, Union[Edge, ConditionalEdge, ParallelGroup]] = {}
    member_of: Dict[str, str] = {}

    for edge in edges:
        if isinstance(edge, ParallelGroup):
            if edge.name in node_map or edge.name in groups or edge.name == END:
                raise GraphConfigError(name, f"duplicate node name '{edge.name}'")
            if len(edge.members) < 2:
                raise GraphConfigError(name, f"parallel group '{edge.name}' needs at least two members")
            for member in edge.members:
                if member not in node_map:
                    raise GraphConfigError(name, f"parallel group '{edge.name}' has unknown member '{member}'")
                if member in member_of:
                    raise GraphConfigError(name, f"node '{member}' belongs to more than one parallel group")
                member_of[member] = edge.name
            groups[edge.name] = edge

    known = set(node_map) | set(groups)

    def _check_target(source: str, target: str) -> None:
        if target != END and target not in known:
            raise GraphConfigError(name, f"edge from '{source}' targets unknown node '{target}'")
        if target in member_of:
            raise GraphConfigError(name, f"edge from '{source}' targets parallel member '{target}' directly")

    for edge in edges:
        if isinstance(edge, ParallelGroup):
            if edge.name in transitions:
                raise GraphConfigError(name, f"node '{edge.name}' has more than one outgoing edge")
            _check_target(edge.name, edge.join)
            transitions[edge.name] = edge
            continue
        if edge.source not in known:
            raise GraphConfigError(name, f"edge from unknown node '{edge.source}'")
        if edge.source in member_of:
            raise GraphConfigError(name, f"parallel member '{edge.source}' cannot have its own edges")
        if edge.source in transitions:
            raise GraphConfigError(name, f"node '{edge.source}' has more than one outgoing edge")
        if isinstance(edge, Edge):
            if edge.target == edge.source:
                raise GraphConfigError(name, f"unconditional self-edge on '{edge.source}'")
            _check_target(edge.source, edge.target)
        else:
            _validate_conditional(name, edge, node_map)
            for target in edge.mapping.values():
                _check_target(edge.source, target)
        transitions[edge.source] = edge

    for node in node_map.values():
        if node.retry is not None and not 0 <= node.retry.max_retries <= MAX_RETRY_BOUND:
            raise GraphConfigError(
                name, f"node '{node.name}' retry count {node.retry.max_retries} outside 0..{MAX_RETRY_BOUND}"
            )
        if node.on_failure not in node_map:
            raise GraphConfigError(name, f"node '{node.name}' fails over to unknown node '{node.on_failure}'")
        if node.name not in member_of and node.name not in transitions:
            raise GraphConfigError(name, f"node '{node.name}' has no outgoing edge")

    if entry not in known:
        raise GraphConfigError(name, f"unknown entry node '{entry}'")
    if entry in member_of:
        raise GraphConfigError(name, f"entry '{entry}' is a parallel member")

    _check_acyclic(name, node_map, groups, transitions)

    return CompiledGraph(
        name=name,
        schema=schema,
        entry=entry,
        nodes=MappingProxyType(dict(node_map)),
        groups=MappingProxyType(dict(groups)),
        transitions=MappingProxyType(dict(transitions)),
    )


def _validate_conditional(graph: str, conditional: ConditionalEdge, nodes: Mapping[str, Node]) -> None:
    label_type = conditional.label_type
    if label_type is None or not issubclass(label_type, Enum):
        raise GraphConfigError(graph, f"router on '{conditional.source}' must use Enum labels")
    keys = set(conditional.mapping)
    if any(not isinstance(key, label_type) for key in keys):
        raise GraphConfigError(graph, f"router on '{conditional.source}' mixes label types")
    missing = [member.value for member in label_type if member not in keys]
    if missing:
        raise GraphConfigError(graph, f"router on '{conditional.source}' has unmapped labels: {', '.join(map(str, missing))}")
    for label, target in conditional.mapping.items():
        if target != conditional.source:
            continue
        if not _is_retry_label(label):
            raise GraphConfigError(graph, f"self-edge on '{conditional.source}' must be labelled '{RETRY_LABEL}'")
        node = nodes.get(conditional.source)
        if node is None or node.retry is None:
            raise GraphConfigError(graph, f"retry self-edge on '{conditional.source}' requires a retry policy")


def _check_acyclic(
    graph: str,
    nodes: Mapping[str, Node],
    groups: Mapping[str, ParallelGroup],
    transitions: Mapping[str, Any],
) -> None:
    adjacency: Dict[str, Set[str]] = {name: set() for name in list(nodes) + list(groups)}
    for source, edge in transitions.items():
        if isinstance(edge, Edge):
            adjacency[source].add(edge.target)
        elif isinstance(edge, ParallelGroup):
            adjacency[source].update(edge.members)
            for member in edge.members:
                adjacency[member].add(edge.join)
        else:
            adjacency[source].update(t for t in edge.mapping.values() if t != source)
    for node in nodes.values():
        if node.name != ERROR_NODE:
            adjacency[node.name].add(node.on_failure)

    visiting: Set[str] = set()
    done: Set[str] = set()

    def _visit(name: str, path: List[str]) -> None:
        if name == END or name in done:
            return
        if name in visiting:
            cycle = " -> ".join(path[path.index(name):] + [name])
            raise GraphConfigError(graph, f"cycle detected: {cycle}")
        visiting.add(name)
        for target in sorted(adjacency.get(name, ())):
            _visit(target, path + [name])
        visiting.discard(name)
        done.add(name)

    for name in sorted(adjacency):
        _visit(name, [])


@dataclass(frozen=True)
class CompiledGraph:
    """Immutable, validated workflow. Safe to share between concurrent runs."""
    name: str
    schema: Type[WorkflowState]
    entry: str
    nodes: Mapping[str, Node]
    groups: Mapping[str, ParallelGroup]
    transitions: Mapping[str, Any]

    @property
    def policies(self) -> Mapping[str, MergePolicy]:
        return self.schema.MERGE_POLICIES

    def _merge(self, state: Mapping[str, Any], update: PartialState) -> Dict[str, Any]:
        return merge_state(state, update, self.policies)

    async def run(
        self,
        initial_state: Optional[Mapping[str, Any]],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """
        Execute the graph from its entry node until END.

        Always returns a state with `result` or `error` populated. Node
        exceptions are recorded and routed to the node's failure edge; they
        never escape this method.
        """
        try:
            state = self.schema.initial(initial_state)
        except (ValidationError, TypeError) as exc:
            if isinstance(exc, ValidationError):
                detail = "; ".join(
                    f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
                )
            else:
                detail = str(exc)
            log_error("invalid_state", f"[{self.name}] initial state rejected: {detail}")
            return {
                **(dict(initial_state) if isinstance(initial_state, Mapping) else {}),
                "stage": ERROR_NODE,
                "error": f"Invalid input: {detail}",
                "metadata": {"failed_stage": "validation", "error_code": "MISSING_INPUT"},
            }

        retries: Dict[str, int] = {}
        current = self.entry

        while current != END:
            if cancel_event is not None and cancel_event.is_set():
                state = self._cancel(state, current)
                break

            if current in self.groups:
                state, current = await self._run_group(self.groups[current], state, cancel_event)
                continue

            node = self.nodes[current]
            outcome = await self._execute(node, state, retries.get(node.name, 0), cancel_event)
            retries[node.name] = outcome.retries
            if outcome.retries:
                state = self._merge(state, {"retry_count": outcome.retries})

            if outcome.cancelled:
                state = self._cancel(state, node.name)
                break
            if outcome.error is not None:
                state, current = self._fail(node, state, outcome.error)
                continue

            update = dict(outcome.update or {})
            update.setdefault("stage", node.name)
            try:
                state = self._merge(state, update)
            except Exception as exc:
                state, current = self._fail(node, state, NodeUpdateError(node.name, str(exc)))
                continue
            state, current = self._next(node, state, retries)

        if state.get("result") is None and not state.get("error"):
            state = self._merge(state, {"error": f"Workflow '{self.name}' finished without a result"})
        return state

    def _cancel(self, state: Dict[str, Any], before: str) -> Dict[str, Any]:
        logger.info("[%s] run %s cancelled before %s", self.name, state.get("trace_id"), before)
        return self._merge(state, {"error": CANCELLED, "metadata": {"cancelled_before": before}})

    def _check_update(self, node: Node, update: Any) -> Optional[NodeUpdateError]:
        if update is None:
            return None
        if not isinstance(update, Mapping):
            return NodeUpdateError(node.name, f"expected a mapping, got {type(update).__name__}")
        bad = invalid_fields(update, self.policies)
        if bad:
            return NodeUpdateError(node.name, f"merged field(s) {', '.join(bad)} must be mappings")
        return None

    async def _execute(
        self,
        node: Node,
        state: Mapping[str, Any],
        used_retries: int = 0,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> _Outcome:
        """Run one node, retrying per its policy. Never raises."""
        policy = node.retry
        attempts = used_retries
        trace_id = state.get("trace_id")

        while True:
            view = MappingProxyType(dict(state))
            started = time.perf_counter()
            try:
                call = node.func(view)
                if policy is not None and policy.timeout:
                    try:
                        update = await asyncio.wait_for(call, policy.timeout)
                    except asyncio.TimeoutError:
                        raise TransientError(node.name, f"timed out after {policy.timeout}s") from None
                else:
                    update = await call
            except Exception as exc:
                duration = (time.perf_counter() - started) * 1000
                if policy is not None and policy.is_retryable(exc) and attempts < policy.max_retries:
                    attempts += 1
                    log_workflow_step(
                        self.name, node.name, "retry", duration,
                        trace_id=trace_id, attempt=attempts, error=str(exc),
                    )
                    delay = policy.backoff_seconds * (2 ** (attempts - 1))
                    if await _backoff(delay, cancel_event):
                        return _Outcome(node.name, retries=attempts, cancelled=True)
                    continue
                log_workflow_step(
                    self.name, node.name, "failed", duration,
                    trace_id=trace_id, retries=attempts, error=str(exc),
                )
                return _Outcome(node.name, error=exc, retries=attempts)

            duration = (time.perf_counter() - started) * 1000
            problem = self._check_update(node, update)
            if problem is not None:
                log_workflow_step(
                    self.name, node.name, "failed", duration,
                    trace_id=trace_id, retries=attempts, error=str(problem),
                )
                return _Outcome(node.name, error=problem, retries=attempts)

            log_workflow_step(self.name, node.name, "ok", duration, trace_id=trace_id, retries=attempts)
            return _Outcome(node.name, update=update, retries=attempts)

    async def _run_group(
        self,
        group: ParallelGroup,
        state: Dict[str, Any],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Tuple[Dict[str, Any], str]:
        members = [self.nodes[name] for name in group.members]
        # _execute never raises; all members settle before outcomes are read
        outcomes = await asyncio.gather(*(self._execute(node, state, 0, cancel_event) for node in members))

        failed: Optional[Tuple[Node, BaseException]] = None
        cancelled: Optional[str] = None
        for node, outcome in zip(members, outcomes):
            if outcome.retries:
                state = self._merge(state, {"retry_count": outcome.retries})
            if outcome.cancelled:
                cancelled = cancelled or node.name
                continue
            if outcome.error is not None:
                failed = failed or (node, outcome.error)
                continue
            try:
                state = self._merge(state, outcome.update)
            except Exception as exc:
                failed = failed or (node, NodeUpdateError(node.name, str(exc)))

        if cancelled is not None:
            return self._cancel(state, cancelled), END
        if failed is not None:
            node, error = failed
            return self._fail(node, state, error)

        state = self._merge(state, {"stage": group.name})
        return state, group.join

    def _fail(self, node: Node, state: Dict[str, Any], exc: BaseException) -> Tuple[Dict[str, Any], str]:
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        metadata: Dict[str, Any] = {"failed_stage": node.name}
        if isinstance(exc, LedgerflowError):
            metadata["error_code"] = exc.code.value
            if exc.detail and exc.detail != message:
                metadata["error_detail"] = exc.detail
        log_error(
            "workflow_node_failed",
            f"[{self.name}] node '{node.name}' failed: {message}",
            context={"graph": self.name, "node": node.name, "trace_id": state.get("trace_id")},
        )
        state = self._merge(state, {"error": message, "metadata": metadata})
        if node.name == ERROR_NODE:
            return state, END
        return state, node.on_failure

    def _next(
        self, node: Node, state: Dict[str, Any], retries: Dict[str, int]
    ) -> Tuple[Dict[str, Any], str]:
        edge = self.transitions[node.name]
        if isinstance(edge, Edge):
            return state, edge.target

        try:
            label = edge.router(MappingProxyType(dict(state)))
        except Exception as exc:
            return self._fail(node, state, exc)

        target = edge.mapping.get(label) if isinstance(label, Enum) else None
        if target is None:
            error = GraphConfigError(self.name, f"router on '{node.name}' returned unknown label {label!r}")
            return self._fail(node, state, error)

        if target == node.name:
            used = retries.get(node.name, 0)
            if used >= node.retry.max_retries:
                error = TransientError(node.name, f"retry limit of {node.retry.max_retries} exceeded")
                return self._fail(node, self._merge(state, {"retry_count": used}), error)
            retries[node.name] = used + 1
            state = self._merge(state, {"retry_count": used + 1})
            log_workflow_step(self.name, node.name, "retry", 0.0, trace_id=state.get("trace_id"), attempt=used + 1)
            return state, target
        return state, target


class StateGraph:
    """Mutable builder for a CompiledGraph."""

    def __init__(self, name: str, schema: Type[WorkflowState] = WorkflowState):
        self.name = name
        self.schema = schema
        self._nodes: List[Node] = []
        self._edges: List[EdgeSpec] = []
        self._entry: Optional[str] = None

    def add_node(
        self,
        name: str,
        func: NodeFunc,
        retry: Optional[RetryPolicy] = None,
        on_failure: str = ERROR_NODE,
    ) -> "StateGraph":
        self._nodes.append(Node(name=name, func=func, retry=retry, on_failure=on_failure))
        return self

    def add_edge(self, source: str, target: str) -> "StateGraph":
        self._edges.append(Edge(source, target))
        return self

    def add_conditional_edges(
        self,
        source: str,
        router: Router,
        mapping: Mapping[Enum, str],
        labels: Optional[Type[Enum]] = None,
    ) -> "StateGraph":
        self._edges.append(ConditionalEdge(source, router, MappingProxyType(dict(mapping)), labels))
        return self

    def add_parallel(self, name: str, members: Sequence[str], then: str) -> "StateGraph":
        self._edges.append(ParallelGroup(name, tuple(members), then))
        return self

    def set_entry(self, name: str) -> "StateGraph":
        self._entry = name
        return self

    def compile(self) -> CompiledGraph:
        if self._entry is None:
            raise GraphConfigError(self.name, "no entry node set")
        return compile_graph(self.name, self._nodes, self._edges, self._entry, self.schema)
