"""
LLM-backed classifier and summarizer.

Both use an OpenAI-compatible /chat/completions endpoint (LLM_BASE_URL).
Errors propagate to the calling workflow node, which owns the fallback:
the keyword heuristic for classification, the templated summary for
reports.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from ledgerflow.services.errors import TransientError, UpstreamError

logger = logging.getLogger(__name__)

SERVICE_NAME = "llm"

CLASSIFIER_PROMPT = """You are an intent classifier for an expense tracking application.

Classify the user's message into ONE of these intents:
1. expense_operation - add, list, show, modify, update, delete, remove or clear expenses in the app
2. rag_question - questions about uploaded PDF documents, receipts or statements
3. rag_compare - compare PDF expenses with app expenses (compare only, no sync)
4. reconciliation - sync, synchronize, reconcile or merge PDF/bank data into the app
5. general_chat - greetings, capability questions, small talk

If the assistant just asked the user to confirm deleting or clearing expenses and
the user replies with a confirmation ("yes", "confirm", "ok", "proceed", "delete it"),
classify as expense_operation with confidence 0.95 or higher.

Also extract entities when present: action, amount, category, date, description.

Respond with JSON only:
{"intent": "...", "confidence": 0.0-1.0, "reasoning": "...", "entities": {...}}"""

SUMMARIZER_PROMPT = """You are a financial reconciliation assistant.
Given a JSON digest of a reconciliation run, write a short plain-English summary
(at most 5 sentences): the match rate, the most important discrepancies and
what the user should review. Do not invent records that are not in the digest."""


class ChatCompletionsClient:
    """Thin async wrapper over an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._transport = transport

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def complete(
        self,
        messages: List[Dict[str, str]],
        temperature: float = 0.0,
        max_tokens: int = 400,
    ) -> str:
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=self._get_headers(),
                    json=payload,
                )
        except httpx.TimeoutException as exc:
            raise TransientError(SERVICE_NAME, "chat completion timed out") from exc
        except httpx.TransportError as exc:
            raise TransientError(SERVICE_NAME, str(exc)) from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientError(SERVICE_NAME, f"chat completion returned {response.status_code}")
        if response.status_code >= 400:
            raise UpstreamError(SERVICE_NAME, response.status_code, response.text[:200])

        data = response.json()
        try:
            return str(data["choices"][0]["message"]["content"] or "").strip()
        except (KeyError, IndexError, TypeError) as exc:
            raise UpstreamError(SERVICE_NAME, response.status_code, "unexpected completion payload") from exc


class LLMClassifier:
    def __init__(self, client: ChatCompletionsClient):
        self.client = client

    async def classify(self, message: str, context: Sequence[Mapping[str, str]]) -> str:
        messages = [{"role": "system", "content": CLASSIFIER_PROMPT}]
        if context:
            transcript = "\n".join(
                f"{'User' if turn.get('role') == 'user' else 'Assistant'}: {turn.get('content', '')}"
                for turn in context
            )
            messages.append({"role": "user", "content": f"Recent conversation:\n{transcript}"})
        messages.append({"role": "user", "content": f'Current user message: "{message}"'})
        # Raw text; the intent service strips fences and validates
        return await self.client.complete(messages, temperature=0.0, max_tokens=200)


class LLMSummarizer:
    def __init__(self, client: ChatCompletionsClient):
        self.client = client

    async def summarize(self, structured_diff: Mapping[str, Any]) -> str:
        messages = [
            {"role": "system", "content": SUMMARIZER_PROMPT},
            {"role": "user", "content": json.dumps(structured_diff, default=str)},
        ]
        text = await self.client.complete(messages, temperature=0.3, max_tokens=300)
        if not text:
            raise UpstreamError(SERVICE_NAME, 200, "empty summary")
        return text
