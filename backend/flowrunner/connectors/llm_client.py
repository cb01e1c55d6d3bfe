"""LLM client connector (OpenAI-compatible chat completions API).

Gateway headers from ``LLM_GATEWAY_HEADERS`` are merged into every request,
with per-instance ``extra_headers`` on top.  Streaming reads server-sent
``data:`` lines and honours a :class:`CancellationToken`; a cancelled stream
raises :class:`~flowrunner.errors.LLMCancelledError` and its partial output is
discarded by the caller.
"""

from __future__ import annotations

import asyncio
import json as _json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from flowrunner.config import Settings
from flowrunner.errors import LLMCallError, LLMCancelledError

logger = logging.getLogger("flowrunner.connectors.llm")


@dataclass
class CancellationToken:
    """Cooperative cancellation flag checked between stream chunks."""

    _event: asyncio.Event = field(default_factory=asyncio.Event, init=False)

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise LLMCancelledError("LLM call cancelled")


def _parse_gateway_headers(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    try:
        parsed = _json.loads(raw)
    except (_json.JSONDecodeError, TypeError):
        logger.warning("LLM_GATEWAY_HEADERS is not valid JSON — ignored")
        return {}
    return {str(k): str(v) for k, v in parsed.items()} if isinstance(parsed, dict) else {}


class LLMClient:
    """OpenAI-compatible chat completion client with gateway header support.

    Parameters
    ----------
    settings : Settings
        Source of the endpoint, key, timeout and gateway headers.
    extra_headers : dict[str, str] | None
        Merged on top of the configured gateway headers.
    transport : httpx.AsyncBaseTransport | None
        Injected transport, e.g. ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        settings: Settings,
        extra_headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = settings.LLM_BASE_URL.rstrip("/")
        self.api_key = settings.LLM_API_KEY
        self.timeout = settings.LLM_TIMEOUT_SECONDS
        self._transport = transport
        self._extra_headers = _parse_gateway_headers(settings.LLM_GATEWAY_HEADERS)
        if extra_headers:
            self._extra_headers.update(extra_headers)

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise LLMCallError("LLM_API_KEY is not configured")
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        headers.update(self._extra_headers)
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, headers=self._headers(), transport=self._transport)

    @staticmethod
    def _body(
        messages: list[dict[str, str]],
        model: str,
        temperature: float,
        max_tokens: int | None,
        json_mode: bool,
        stream: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        if stream:
            body["stream"] = True
        return body

    async def invoke(
        self,
        messages: list[dict[str, str]],
        model: str,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        url = f"{self.base_url}/chat/completions"
        logger.info("LLM call: model=%s url=%s messages=%d", model, url, len(messages))
        body = self._body(messages, model, temperature, max_tokens, json_mode, stream=False)
        try:
            async with self._client() as client:
                resp = await client.post(url, json=body)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise LLMCallError(f"HTTP {exc.response.status_code}") from exc
        except httpx.RequestError as exc:
            raise LLMCallError(str(exc)) from exc

        choices = data.get("choices") or []
        if not choices:
            raise LLMCallError("LLM response missing choices")
        return choices[0].get("message", {}).get("content") or ""

    async def stream(
        self,
        messages: list[dict[str, str]],
        model: str,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        """Yield content deltas as they arrive."""
        url = f"{self.base_url}/chat/completions"
        logger.info("LLM stream: model=%s url=%s messages=%d", model, url, len(messages))
        body = self._body(messages, model, temperature, max_tokens, json_mode=False, stream=True)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        try:
            async with self._client() as client:
                async with client.stream("POST", url, json=body) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        if cancel_token is not None:
                            cancel_token.raise_if_cancelled()
                        chunk = self._parse_sse_line(line)
                        if chunk is None:
                            continue
                        if chunk == "[DONE]":
                            break
                        yield chunk
        except httpx.HTTPStatusError as exc:
            raise LLMCallError(f"HTTP {exc.response.status_code}") from exc
        except httpx.RequestError as exc:
            raise LLMCallError(str(exc)) from exc

    @staticmethod
    def _parse_sse_line(line: str) -> str | None:
        line = line.strip()
        if not line.startswith("data:"):
            return None
        payload = line[len("data:"):].strip()
        if payload == "[DONE]":
            return payload
        try:
            data = _json.loads(payload)
        except _json.JSONDecodeError:
            logger.warning("Skipping malformed stream event: %.80s", payload)
            return None
        choices = data.get("choices") or []
        if not choices:
            return None
        content = (choices[0].get("delta") or {}).get("content")
        return content or None
