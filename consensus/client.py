"""Chat clients the orchestrator talks to: over HTTP, or to an in-process gateway."""

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

import httpx

from consensus.gateway import ChatRequest, Gateway
from consensus.models import ChatResult, Message, StreamEvent, Usage
from consensus.providers.base import (
    INSUFFICIENT_CREDITS,
    INVALID_KEY,
    RATE_LIMIT,
    STREAM_ERROR,
    ProviderError,
    error_kind_for_status,
)
from consensus.targets import parse_model_target

logger = logging.getLogger(__name__)

_FRIENDLY_MESSAGES = {
    INVALID_KEY: "Invalid API key. Please check your key in settings.",
    RATE_LIMIT: "Rate limited. Please wait a moment and try again.",
    INSUFFICIENT_CREDITS: "Insufficient credits. Please add credits to your account.",
}


def _as_dicts(messages: list[Message] | list[dict]) -> list[dict]:
    return [m.to_dict() if isinstance(m, Message) else m for m in messages]


class ChatClient(ABC):
    """What the orchestrator needs from a gateway."""

    @abstractmethod
    async def complete(self, model: str, messages: list[Message], native_web_search: bool = False) -> ChatResult:
        """Non-streaming completion. ``native_web_search`` turns on the provider's own search tool.

        Raises:
            ProviderError: On any failure.
        """
        ...

    @abstractmethod
    def stream(self, model: str, messages: list[Message], native_web_search: bool = False) -> AsyncIterator[StreamEvent]:
        """Streamed completion ending in one ``done`` or ``error`` event."""
        ...

    async def aclose(self) -> None:
        return None


class LocalGatewayClient(ChatClient):
    """Calls a Gateway in the same process."""

    def __init__(self, gateway: Gateway, client_api_key: str | None = None) -> None:
        self._gateway = gateway
        self._client_api_key = client_api_key

    async def complete(self, model: str, messages: list[Message], native_web_search: bool = False) -> ChatResult:
        start = time.monotonic()
        result = await self._gateway.complete(
            ChatRequest(
                model=model,
                messages=_as_dicts(messages),
                client_api_key=self._client_api_key,
                native_web_search=native_web_search,
            )
        )
        result.duration_ms = int((time.monotonic() - start) * 1000)
        return result

    def stream(self, model: str, messages: list[Message], native_web_search: bool = False) -> AsyncIterator[StreamEvent]:
        return self._gateway.stream(
            ChatRequest(
                model=model,
                messages=_as_dicts(messages),
                stream=True,
                client_api_key=self._client_api_key,
                native_web_search=native_web_search,
            )
        )


class GatewayClient(ChatClient):
    """Calls a gateway served over HTTP (``consensus serve``)."""

    def __init__(
        self,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        client_api_key: str | None = None,
        timeout_sec: float = 600.0,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/chat"
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_sec, connect=10.0))
        self._client_api_key = client_api_key

    async def aclose(self) -> None:
        await self._http.aclose()

    def _payload(self, model: str, messages: list[Message], stream: bool, native_web_search: bool = False) -> dict:
        payload = {"model": model, "messages": _as_dicts(messages), "stream": stream}
        if native_web_search:
            payload["nativeWebSearch"] = True
        if self._client_api_key:
            payload["clientApiKey"] = self._client_api_key
        return payload

    def _http_error(self, model: str, status: int, body_text: str) -> ProviderError:
        provider = parse_model_target(model).provider
        message = body_text or f"API error: {status}"
        kind = error_kind_for_status(status)
        try:
            body = json.loads(body_text) if body_text else {}
        except json.JSONDecodeError:
            body = {}
        if isinstance(body, dict):
            provider = body.get("provider") or provider
            message = body.get("error") or message
            kind = body.get("kind") or kind
        message = _FRIENDLY_MESSAGES.get(kind, message)
        return ProviderError(provider, message, kind=kind, status=status, body=body_text)

    async def complete(self, model: str, messages: list[Message], native_web_search: bool = False) -> ChatResult:
        start = time.monotonic()
        payload = self._payload(model, messages, stream=False, native_web_search=native_web_search)
        try:
            response = await self._http.post(self._url, json=payload)
        except httpx.HTTPError as exc:
            raise ProviderError(parse_model_target(model).provider, f"Gateway request failed: {exc}") from exc

        if response.status_code >= 400:
            raise self._http_error(model, response.status_code, response.text)

        data = response.json()
        return ChatResult(
            content=data.get("content") or "",
            reasoning=data.get("reasoning"),
            usage=Usage.from_dict(data.get("usage")),
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    async def stream(
        self, model: str, messages: list[Message], native_web_search: bool = False
    ) -> AsyncIterator[StreamEvent]:
        payload = self._payload(model, messages, stream=True, native_web_search=native_web_search)
        try:
            async with self._http.stream("POST", self._url, json=payload) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise self._http_error(model, response.status_code, body)

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if not data or data == "[DONE]":
                        continue
                    try:
                        payload = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed SSE payload: %s", data[:200])
                        continue
                    event = StreamEvent.from_payload(payload)
                    yield event
                    if event.type in ("done", "error"):
                        return
        except httpx.HTTPError as exc:
            raise ProviderError(
                parse_model_target(model).provider, f"Gateway stream failed: {exc}", kind=STREAM_ERROR
            ) from exc

        yield StreamEvent("error", message="Stream ended before completion", kind=STREAM_ERROR)
