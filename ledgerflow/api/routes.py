"""
Ledgerflow HTTP API

Thin layer over LedgerflowEngine. The bearer token is forwarded to the
ledger backend as auth context; it is not verified here.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Header, Request
from pydantic import BaseModel, Field

from ledgerflow.core.engine import IntentRoutingResult, LedgerflowEngine, ReconciliationOptions
from ledgerflow.models.reconciliation import ReconciliationReport
from ledgerflow.services.errors import LedgerflowError, to_http_exception
from ledgerflow.services.intent import ConversationTurn

router = APIRouter(prefix="/v1", tags=["Ledgerflow"])


class IntentRouteRequest(BaseModel):
    """A user message to route."""
    message: str = Field(..., min_length=1, description="User message")
    owner_id: str = Field(..., min_length=1, description="Owner of the ledger")
    history: List[ConversationTurn] = Field(default_factory=list, description="Prior conversation turns")


class ReconcileRequest(BaseModel):
    """Records to reconcile against the owner's ledger."""
    owner_id: str = Field(..., min_length=1, description="Owner of the ledger")
    records: List[Dict[str, Any]] = Field(default_factory=list, description="Externally extracted records")
    options: ReconciliationOptions = Field(default_factory=ReconciliationOptions)


def get_engine(request: Request) -> LedgerflowEngine:
    return request.app.state.engine


def auth_context(authorization: Optional[str]) -> Dict[str, Any]:
    if not authorization:
        return {}
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token:
        return {"token": token.strip()}
    return {"token": authorization.strip()}


@router.post("/intent/route", response_model=IntentRoutingResult)
async def route_intent(
    payload: IntentRouteRequest,
    request: Request,
    authorization: Optional[str] = Header(default=None),
):
    """Classify a message and run the matching handler."""
    engine = get_engine(request)
    return await engine.run_intent_routing(
        payload.message,
        payload.owner_id,
        auth_context(authorization),
        payload.history,
    )


@router.post("/reconcile", response_model=ReconciliationReport)
async def reconcile(
    payload: ReconcileRequest,
    request: Request,
    authorization: Optional[str] = Header(default=None),
):
    """
    Reconcile submitted records against the ledger.

    Returns the full report: matches, discrepancies, suggested actions and,
    with auto_sync, the records written to the ledger.
    """
    engine = get_engine(request)
    try:
        return await engine.run_reconciliation(
            payload.records,
            payload.owner_id,
            auth_context(authorization),
            payload.options.model_dump(exclude_none=True),
        )
    except LedgerflowError as exc:
        raise to_http_exception(exc)

