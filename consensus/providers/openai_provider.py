"""OpenAI provider using openai SDK with native async."""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import openai
from openai import AsyncOpenAI

from config.config_loader import ProviderConfig
from consensus.models import ChatResult, StreamEvent, Usage
from consensus.providers.base import ProviderAdapter, ProviderError, error_kind_for_status

logger = logging.getLogger(__name__)


def decode_usage(raw: dict | None) -> Usage | None:
    """Chat-completions usage block, including OpenRouter's cost extension."""
    if not raw:
        return None
    details = raw.get("completion_tokens_details") or {}
    return Usage(
        prompt_tokens=raw.get("prompt_tokens"),
        completion_tokens=raw.get("completion_tokens"),
        total_tokens=raw.get("total_tokens"),
        cost=raw.get("cost"),
        reasoning_tokens=details.get("reasoning_tokens") if isinstance(details, dict) else None,
    )


def reasoning_details_text(details: Any) -> str:
    if not isinstance(details, list):
        return ""
    texts = [d.get("text") or d.get("summary") or "" for d in details if isinstance(d, dict)]
    return "\n".join(t for t in texts if t)


def decode_chunk(chunk: dict) -> list[StreamEvent]:
    """Translate one chat-completions stream chunk into normalized events."""
    events: list[StreamEvent] = []
    choices = chunk.get("choices") or []
    delta = (choices[0].get("delta") or {}) if choices else {}

    if delta.get("content"):
        events.append(StreamEvent("content", delta=delta["content"]))
    for key in ("reasoning", "reasoning_content"):
        if delta.get(key):
            events.append(StreamEvent("reasoning", delta=delta[key]))
    details = reasoning_details_text(delta.get("reasoning_details"))
    if details:
        events.append(StreamEvent("reasoning", delta=details))

    usage = decode_usage(chunk.get("usage"))
    if usage is not None:
        events.append(StreamEvent("usage", usage=usage))
    return events


def decode_completion(data: dict) -> ChatResult:
    choices = data.get("choices") or []
    message = (choices[0].get("message") or {}) if choices else {}
    reasoning = (
        message.get("reasoning")
        or message.get("reasoning_content")
        or reasoning_details_text(message.get("reasoning_details"))
        or None
    )
    return ChatResult(
        content=message.get("content") or "",
        reasoning=reasoning,
        usage=decode_usage(data.get("usage")),
    )


class OpenAIProvider(ProviderAdapter):
    """OpenAI provider via openai SDK."""

    def __init__(self, config: ProviderConfig, api_key: str) -> None:
        super().__init__(config, api_key)
        self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url)

    def _request_options(self, model: str, messages: list[dict], native_web_search: bool = False) -> dict:
        """Keyword arguments for chat.completions.create."""
        options: dict[str, Any] = {"model": model, "messages": messages}
        if self._config.max_tokens:
            options["max_tokens"] = self._config.max_tokens
        if native_web_search:
            options["web_search_options"] = {}
        return options

    def _client_for(self, client_api_key: str | None) -> AsyncOpenAI:
        return self._client

    def _wrap_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, ProviderError):
            return exc
        if isinstance(exc, openai.APIStatusError):
            status = exc.status_code
            body = exc.response.text if exc.response is not None else None
            return ProviderError(
                self.name, body or f"HTTP {status}", kind=error_kind_for_status(status), status=status, body=body
            )
        return ProviderError(self.name, f"API call failed: {exc}")

    async def complete(
        self,
        model: str,
        messages: list[dict],
        client_api_key: str | None = None,
        native_web_search: bool = False,
    ) -> ChatResult:
        start = time.monotonic()
        client = self._client_for(client_api_key)
        try:
            response = await asyncio.wait_for(
                client.chat.completions.create(**self._request_options(model, messages, native_web_search)),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise self._wrap_error(exc) from exc

        result = decode_completion(response.model_dump())
        result.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "%s %s: %.2fs, %s tokens",
            self.name,
            model,
            result.duration_ms / 1000,
            result.usage.total_tokens if result.usage else None,
        )
        return result

    async def stream(
        self,
        model: str,
        messages: list[dict],
        client_api_key: str | None = None,
        native_web_search: bool = False,
    ) -> AsyncIterator[StreamEvent]:
        client = self._client_for(client_api_key)
        try:
            upstream = await asyncio.wait_for(
                client.chat.completions.create(
                    **self._request_options(model, messages, native_web_search),
                    stream=True,
                    stream_options={"include_usage": True},
                ),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise self._wrap_error(exc) from exc

        try:
            async for chunk in upstream:
                for event in decode_chunk(chunk.model_dump()):
                    yield event
        except Exception as exc:
            raise self._wrap_error(exc) from exc
        finally:
            await upstream.close()
