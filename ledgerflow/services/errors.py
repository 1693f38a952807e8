"""
Ledgerflow Error Handling

Specific error types with user-friendly messages and debugging context.
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Input errors (400s)
    MISSING_INPUT = "MISSING_INPUT"
    INVALID_STATE = "INVALID_STATE"

    # Configuration errors
    GRAPH_CONFIG = "GRAPH_CONFIG"

    # Processing errors (500s)
    RECONCILIATION_FAILED = "RECONCILIATION_FAILED"
    CLASSIFICATION_FAILED = "CLASSIFICATION_FAILED"
    INVALID_UPDATE = "INVALID_UPDATE"

    # External service errors
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"
    SOURCE_DEGRADED = "SOURCE_DEGRADED"
    UPSTREAM_REJECTED = "UPSTREAM_REJECTED"


class LedgerflowError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class GraphConfigError(LedgerflowError):
    """Malformed workflow graph. Raised while compiling, never retried."""

    def __init__(self, graph: str, detail: str):
        super().__init__(
            code=ErrorCode.GRAPH_CONFIG,
            message=f"Invalid workflow graph '{graph}': {detail}",
            detail=detail,
            context={"graph": graph}
        )


class NodeUpdateError(LedgerflowError):
    """A node returned something that cannot be merged into the run state."""

    def __init__(self, node: str, detail: str):
        super().__init__(
            code=ErrorCode.INVALID_UPDATE,
            message=f"Node '{node}' returned an invalid update: {detail}",
            detail=detail,
            context={"node": node}
        )


class InputValidationError(LedgerflowError):
    """Required input missing or malformed."""

    def __init__(self, field: str, detail: str):
        super().__init__(
            code=ErrorCode.MISSING_INPUT,
            message=detail,
            detail=detail,
            context={"field": field}
        )


class TransientError(LedgerflowError):
    """Network, timeout or upstream failure that is safe to retry."""

    def __init__(self, service: str, detail: str):
        super().__init__(
            code=ErrorCode.TRANSIENT_FAILURE,
            message=f"{service} temporarily unavailable: {detail}",
            detail=detail,
            context={"service": service}
        )


class DegradedSourceError(LedgerflowError):
    """Optional data source unavailable; callers substitute a neutral default."""

    def __init__(self, source: str, detail: str):
        super().__init__(
            code=ErrorCode.SOURCE_DEGRADED,
            message=f"Optional source '{source}' unavailable",
            detail=detail,
            context={"source": source}
        )


class UpstreamError(LedgerflowError):
    """Upstream service answered with a non-retryable error status."""

    def __init__(self, service: str, status_code: int, detail: str):
        super().__init__(
            code=ErrorCode.UPSTREAM_REJECTED,
            message=f"{service} rejected the request ({status_code})",
            detail=detail,
            context={"service": service, "status_code": status_code}
        )


class ClassificationError(LedgerflowError):
    """Classifier call failed or returned unusable output."""

    def __init__(self, detail: str):
        super().__init__(
            code=ErrorCode.CLASSIFICATION_FAILED,
            message="Intent classification unavailable",
            detail=detail
        )


class ReconciliationError(LedgerflowError):
    """Error during reconciliation."""

    def __init__(self, stage: str, detail: str, cause: Optional[str] = None):
        context = {"stage": stage}
        if cause:
            context["cause"] = cause
        super().__init__(
            code=ErrorCode.RECONCILIATION_FAILED,
            message=f"Reconciliation failed at {stage}",
            detail=detail,
            context=context
        )
        self.stage = stage


def to_http_exception(error: LedgerflowError) -> HTTPException:
    """Convert LedgerflowError to HTTPException."""
    # Map error codes to HTTP status codes
    status_map = {
        ErrorCode.MISSING_INPUT: 400,
        ErrorCode.INVALID_STATE: 400,
        ErrorCode.GRAPH_CONFIG: 500,
        ErrorCode.RECONCILIATION_FAILED: 500,
        ErrorCode.INVALID_UPDATE: 500,
        ErrorCode.CLASSIFICATION_FAILED: 503,
        ErrorCode.TRANSIENT_FAILURE: 503,
        ErrorCode.SOURCE_DEGRADED: 502,
        ErrorCode.UPSTREAM_REJECTED: 502,
    }

    status_code = status_map.get(error.code, 500)
    # Failed runs caused by bad input are the caller's fault
    cause = error.context.get("cause")
    if cause in (ErrorCode.MISSING_INPUT.value, ErrorCode.INVALID_STATE.value):
        status_code = 400

    return HTTPException(
        status_code=status_code,
        detail=error.to_dict()
    )
