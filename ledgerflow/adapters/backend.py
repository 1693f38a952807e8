"""Expense backend ledger store over HTTP.

Talks to the expense tracker REST API:
- GET  /expenses     list the caller's expenses
- GET  /categories   category names and ids
- POST /expenses     create an expense

The caller's bearer token travels in the auth context; this adapter never
validates it.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import httpx

from ledgerflow.adapters.base import LedgerFilter
from ledgerflow.models.records import Record
from ledgerflow.services.errors import TransientError, UpstreamError

logger = logging.getLogger(__name__)

SERVICE_NAME = "ledger backend"
DEFAULT_CATEGORY = "Other"
RETRYABLE_STATUS = {408, 425, 429}


class HttpLedgerStore:
    """
    LedgerStore backed by the expense backend.

    Network failures, timeouts, 5xx and throttling responses raise
    TransientError so the workflow engine can retry them; other error
    statuses raise UpstreamError.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._category_ids: Dict[str, Dict[str, Any]] = {}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    def _get_headers(self, token: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(self, method: str, path: str, token: Optional[str], **kwargs) -> Any:
        try:
            async with self._client() as client:
                response = await client.request(method, path, headers=self._get_headers(token), **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientError(SERVICE_NAME, f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientError(SERVICE_NAME, f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS:
            raise TransientError(SERVICE_NAME, f"{method} {path} returned {response.status_code}")
        if response.status_code >= 400:
            raise UpstreamError(SERVICE_NAME, response.status_code, _error_message(response))
        if not response.content:
            return None
        return response.json()

    async def fetch(self, filter: LedgerFilter) -> List[Dict[str, Any]]:
        params = {}
        if filter.start_date:
            params["start_date"] = filter.start_date
        if filter.end_date:
            params["end_date"] = filter.end_date

        data = await self._request("GET", "/expenses", filter.token, params=params)
        expenses = _unwrap_list(data, "expenses")
        logger.info("Fetched %d ledger records for owner %s", len(expenses), filter.owner_id)
        return expenses

    async def create(self, record: Record, auth_context: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        token = _token(auth_context)
        payload = record.to_payload()
        category = await self._resolve_category(record.category, token)
        if category is not None:
            payload.pop("category", None)
            payload["category_id"] = category["id"]

        created = await self._request("POST", "/expenses", token, json=payload)
        if isinstance(created, Mapping) and isinstance(created.get("expense"), Mapping):
            created = created["expense"]
        return dict(created or payload)

    async def _resolve_category(self, name: str, token: Optional[str]) -> Optional[Dict[str, Any]]:
        """Map a category name to the backend's category row, falling back to Other."""
        key = token or ""
        if key not in self._category_ids:
            data = await self._request("GET", "/categories", token)
            self._category_ids[key] = {
                str(row.get("name", "")).strip().lower(): row
                for row in _unwrap_list(data, "categories")
                if isinstance(row, Mapping) and row.get("id") is not None
            }
        categories = self._category_ids[key]
        return categories.get((name or "").strip().lower()) or categories.get(DEFAULT_CATEGORY.lower())


def _token(auth_context: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not auth_context:
        return None
    return auth_context.get("token") or auth_context.get("auth_token")


def _unwrap_list(data: Any, key: str) -> List[Dict[str, Any]]:
    if isinstance(data, list):
        return data
    if isinstance(data, Mapping):
        for candidate in (data.get(key), data.get("data"), data.get("results")):
            if isinstance(candidate, list):
                return candidate
            if isinstance(candidate, Mapping) and isinstance(candidate.get(key), list):
                return candidate[key]
    return []


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, Mapping):
        return str(body.get("message") or body.get("error") or body)[:200]
    return str(body)[:200]
