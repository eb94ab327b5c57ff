"""Anthropic Claude provider using anthropic SDK with native async."""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import anthropic as anthropic_sdk

from config.config_loader import ProviderConfig
from consensus.models import ChatResult, StreamEvent, Usage
from consensus.providers.base import (
    ProviderAdapter,
    ProviderError,
    error_kind_for_status,
    normalize_parts,
    parse_data_url,
    split_system_messages,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 64000
WEB_SEARCH_TOOL_TYPE = "web_search_20250305"
WEB_SEARCH_BETA = "web-search-2025-03-05"


def build_anthropic_messages(messages: list[dict]) -> list[dict]:
    """Convert chat messages (no system entries) to Messages API blocks."""
    converted = []
    for message in messages:
        blocks = []
        for part in normalize_parts(message.get("content")):
            if part.get("type") == "text":
                blocks.append({"type": "text", "text": part.get("text") or ""})
            elif part.get("type") == "image_url":
                parsed = parse_data_url((part.get("image_url") or {}).get("url"))
                if parsed:
                    media_type, data = parsed
                    blocks.append(
                        {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}
                    )
        converted.append({"role": message.get("role"), "content": blocks})
    return converted


def _usage(raw: dict | None, previous: Usage | None = None) -> Usage | None:
    if not raw:
        return previous
    prompt = raw.get("input_tokens")
    if prompt is None and previous is not None:
        prompt = previous.prompt_tokens
    completion = raw.get("output_tokens")
    total = prompt + completion if prompt is not None and completion is not None else None
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


class AnthropicStreamDecoder:
    """Stateful decoder for Messages API stream events.

    Text deltas are routed by the type of the content block they belong to,
    so a ``text_delta`` inside a ``thinking`` block is reasoning.
    """

    def __init__(self) -> None:
        self.block_types: dict[int, str] = {}
        self.usage: Usage | None = None

    def feed(self, event: dict) -> list[StreamEvent]:
        kind = event.get("type")
        if kind == "message_start":
            self.usage = _usage((event.get("message") or {}).get("usage"), self.usage)
            return [StreamEvent("usage", usage=self.usage)] if self.usage else []

        if kind == "content_block_start":
            index = event.get("index")
            block_type = (event.get("content_block") or {}).get("type")
            if isinstance(index, int) and block_type:
                self.block_types[index] = block_type
            return []

        if kind == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                if self.block_types.get(event.get("index")) == "thinking":
                    return [StreamEvent("reasoning", delta=delta["text"])]
                return [StreamEvent("content", delta=delta["text"])]
            if delta.get("type") == "thinking_delta" and delta.get("thinking"):
                return [StreamEvent("reasoning", delta=delta["thinking"])]
            return []

        if kind == "message_delta":
            self.usage = _usage(event.get("usage"), self.usage)
            return [StreamEvent("usage", usage=self.usage)] if self.usage else []

        return []


def decode_message(data: dict) -> ChatResult:
    blocks = data.get("content") or []
    content = "".join(b.get("text") or "" for b in blocks if b.get("type") == "text")
    reasoning = "".join(b.get("thinking") or "" for b in blocks if b.get("type") == "thinking")
    return ChatResult(content=content, reasoning=reasoning or None, usage=_usage(data.get("usage")))


class AnthropicProvider(ProviderAdapter):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: ProviderConfig, api_key: str) -> None:
        super().__init__(config, api_key)
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key)

    def _request_options(self, model: str, messages: list[dict], native_web_search: bool = False) -> dict:
        system, rest = split_system_messages(messages)
        options: dict[str, Any] = {
            "model": model,
            "max_tokens": self._config.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": build_anthropic_messages(rest),
        }
        if system:
            options["system"] = system
        if native_web_search:
            options["tools"] = [{"type": WEB_SEARCH_TOOL_TYPE, "name": "web_search"}]
            options["extra_headers"] = {"anthropic-beta": WEB_SEARCH_BETA}
        return options

    def _wrap_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, ProviderError):
            return exc
        if isinstance(exc, anthropic_sdk.APIStatusError):
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
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(**self._request_options(model, messages, native_web_search)),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise self._wrap_error(exc) from exc

        result = decode_message(response.model_dump())
        result.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Anthropic %s: %.2fs, %s tokens",
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
        try:
            upstream = await asyncio.wait_for(
                self._client.messages.create(
                    **self._request_options(model, messages, native_web_search), stream=True
                ),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise self._wrap_error(exc) from exc

        decoder = AnthropicStreamDecoder()
        try:
            async for event in upstream:
                for normalized in decoder.feed(event.model_dump()):
                    yield normalized
        except Exception as exc:
            raise self._wrap_error(exc) from exc
        finally:
            await upstream.close()
