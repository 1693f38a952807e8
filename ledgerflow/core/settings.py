"""Environment-driven settings for Ledgerflow."""
from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """
    Runtime configuration.

    Environment variables:
    - LEDGER_BACKEND_URL: expense backend base URL (default: http://localhost:3003/api)
    - LLM_API_KEY / LLM_BASE_URL / LLM_MODEL: OpenAI-compatible endpoint for
      classification and summaries (disabled when no key is set)
    - LEDGERFLOW_CALL_TIMEOUT_SECONDS: per external call timeout (default: 10)
    - LEDGERFLOW_PRIMARY_FETCH_RETRIES: primary fetch retry bound (default: 3)
    - LEDGERFLOW_RETRY_BACKOFF_SECONDS: first retry delay, doubled per attempt (default: 0.5)
    - LEDGERFLOW_SYNC_MIN_AMOUNT / LEDGERFLOW_SYNC_MAX_AMOUNT: auto-sync limits
    - LEDGERFLOW_EVIDENCE_THRESHOLD: semantic evidence threshold (default: 0.7)
    """

    backend_url: str = "http://localhost:3003/api"
    llm_api_key: Optional[str] = None
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4o-mini"
    call_timeout_seconds: float = 10.0
    primary_fetch_retries: int = 3
    retry_backoff_seconds: float = 0.5
    sync_min_amount: Decimal = Decimal("1.0")
    sync_max_amount: Decimal = Decimal("10000.0")
    evidence_threshold: float = 0.7

    @property
    def llm_enabled(self) -> bool:
        return bool(self.llm_api_key)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            backend_url=os.getenv("LEDGER_BACKEND_URL", cls.backend_url).rstrip("/"),
            llm_api_key=(os.getenv("LLM_API_KEY") or "").strip() or None,
            llm_base_url=os.getenv("LLM_BASE_URL", cls.llm_base_url).rstrip("/"),
            llm_model=os.getenv("LLM_MODEL", cls.llm_model),
            call_timeout_seconds=_env_float("LEDGERFLOW_CALL_TIMEOUT_SECONDS", cls.call_timeout_seconds),
            primary_fetch_retries=_env_int("LEDGERFLOW_PRIMARY_FETCH_RETRIES", cls.primary_fetch_retries),
            retry_backoff_seconds=_env_float("LEDGERFLOW_RETRY_BACKOFF_SECONDS", cls.retry_backoff_seconds),
            sync_min_amount=Decimal(str(_env_float("LEDGERFLOW_SYNC_MIN_AMOUNT", 1.0))),
            sync_max_amount=Decimal(str(_env_float("LEDGERFLOW_SYNC_MAX_AMOUNT", 10000.0))),
            evidence_threshold=_env_float("LEDGERFLOW_EVIDENCE_THRESHOLD", cls.evidence_threshold),
        )
