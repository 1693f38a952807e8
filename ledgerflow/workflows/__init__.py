from ledgerflow.workflows.graph import END, ERROR_NODE, CompiledGraph, RetryPolicy, StateGraph
from ledgerflow.workflows.intent_router import IntentRouterWorkflow
from ledgerflow.workflows.reconciliation import ReconciliationWorkflow
from ledgerflow.workflows.state import MergePolicy, merge_state

__all__ = [
    "END",
    "ERROR_NODE",
    "CompiledGraph",
    "IntentRouterWorkflow",
    "MergePolicy",
    "ReconciliationWorkflow",
    "RetryPolicy",
    "StateGraph",
    "merge_state",
]
