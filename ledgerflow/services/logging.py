"""
Structured logging for Ledgerflow.

Every module logs through ``logging.getLogger(__name__)``; those loggers sit
under the ``ledgerflow`` package logger configured here. Set ``LOG_LEVEL`` to
change verbosity and ``USE_JSON_LOGS=true`` for one JSON object per line.
"""
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

PACKAGE_LOGGER = "ledgerflow"
TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON line, including its ``extra_fields``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.pathname:
            payload["location"] = f"{record.module}.{record.funcName}:{record.lineno}"
        payload.update(getattr(record, "extra_fields", None) or {})
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        # Decimal amounts and dates end up in extra_fields
        return json.dumps(payload, default=str)


def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> logging.Logger:
    """(Re)configure the package logger. Safe to call more than once."""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_logs is None:
        json_logs = os.getenv("USE_JSON_LOGS", "false").lower() == "true"

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(getattr(logging, level_name, logging.INFO))
    package_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_logs else logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    package_logger.addHandler(handler)
    package_logger.propagate = False
    return package_logger


logger = configure_logging()


def _emit(level: int, message: str, fields: Dict[str, Any]) -> None:
    if not logger.isEnabledFor(level):
        return
    record = logger.makeRecord(logger.name, level, "", 0, message, (), None)
    record.extra_fields = fields
    logger.handle(record)


def log_request(method: str, path: str, status_code: int, duration_ms: float, **fields):
    """Log one served HTTP request."""
    _emit(
        logging.INFO if status_code < 500 else logging.WARNING,
        f"{method} {path} {status_code}",
        {
            "type": "http_request",
            "method": method,
            "path": path,
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
            **fields,
        },
    )


def log_workflow_step(
    graph: str,
    node: str,
    outcome: str,
    duration_ms: float,
    trace_id: Optional[str] = None,
    **fields
):
    """Log one executed workflow node: ``outcome`` is ok, retry, failed, degraded..."""
    step = {"type": "workflow_step", "graph": graph, "node": node, "outcome": outcome}
    step["duration_ms"] = round(duration_ms, 2)
    if trace_id:
        step["trace_id"] = trace_id
    step.update(fields)
    _emit(logging.INFO if outcome == "ok" else logging.WARNING, f"[{graph}] {node} -> {outcome}", step)


def log_error(
    error_type: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    exception: Optional[BaseException] = None,
):
    fields = {"type": "error", "error_type": error_type, **(context or {})}
    if exception is not None:
        logger.error(message, exc_info=exception, extra={"extra_fields": fields})
    else:
        _emit(logging.ERROR, message, fields)
