"""Gemini provider using google-genai SDK with native async."""

import asyncio
import base64
import logging
import time
from collections.abc import AsyncIterator

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

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


def build_gemini_contents(messages: list[dict]) -> list[dict]:
    """Chat messages (no system entries) as Gemini contents; assistant -> model."""
    contents = []
    for message in messages:
        role = "model" if message.get("role") == "assistant" else "user"
        parts = []
        for part in normalize_parts(message.get("content")):
            if part.get("type") == "text":
                parts.append({"text": part.get("text") or ""})
            elif part.get("type") == "image_url":
                parsed = parse_data_url((part.get("image_url") or {}).get("url"))
                if parsed:
                    mime_type, data = parsed
                    parts.append({"inline_data": {"mime_type": mime_type, "data": base64.b64decode(data)}})
        contents.append({"role": role, "parts": parts})
    return contents


def decode_usage(raw: dict | None) -> Usage | None:
    if not raw:
        return None
    return Usage(
        prompt_tokens=raw.get("prompt_token_count"),
        completion_tokens=raw.get("candidates_token_count"),
        total_tokens=raw.get("total_token_count"),
        reasoning_tokens=raw.get("thoughts_token_count"),
    )


def decode_response(data: dict) -> list[StreamEvent]:
    """One generate-content response (or stream chunk) as normalized events."""
    events: list[StreamEvent] = []
    candidates = data.get("candidates") or []
    parts = ((candidates[0].get("content") or {}).get("parts") or []) if candidates else []

    thoughts = "".join(p.get("text") or "" for p in parts if p.get("thought"))
    text = "".join(p.get("text") or "" for p in parts if not p.get("thought"))
    if thoughts:
        events.append(StreamEvent("reasoning", delta=thoughts))
    if text:
        events.append(StreamEvent("content", delta=text))

    usage = decode_usage(data.get("usage_metadata"))
    if usage is not None:
        events.append(StreamEvent("usage", usage=usage))
    return events


class GeminiProvider(ProviderAdapter):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ProviderConfig, api_key: str) -> None:
        super().__init__(config, api_key)
        self._client = genai.Client(api_key=api_key)

    def _request(
        self, messages: list[dict], native_web_search: bool = False
    ) -> tuple[list[dict], genai_types.GenerateContentConfig]:
        system, rest = split_system_messages(messages)
        config = genai_types.GenerateContentConfig(
            system_instruction=system,
            max_output_tokens=self._config.max_tokens,
            tools=[genai_types.Tool(google_search=genai_types.GoogleSearch())] if native_web_search else None,
        )
        return build_gemini_contents(rest), config

    def _wrap_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, ProviderError):
            return exc
        if isinstance(exc, genai_errors.APIError):
            status = exc.code
            body = str(exc.message or exc)
            return ProviderError(self.name, body, kind=error_kind_for_status(status), status=status, body=body)
        return ProviderError(self.name, f"API call failed: {exc}")

    async def complete(
        self,
        model: str,
        messages: list[dict],
        client_api_key: str | None = None,
        native_web_search: bool = False,
    ) -> ChatResult:
        start = time.monotonic()
        contents, config = self._request(messages, native_web_search)
        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(model=model, contents=contents, config=config),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise self._wrap_error(exc) from exc

        result = ChatResult(content="", duration_ms=int((time.monotonic() - start) * 1000))
        for event in decode_response(response.model_dump(exclude_none=True)):
            if event.type == "content":
                result.content += event.delta or ""
            elif event.type == "reasoning":
                result.reasoning = (result.reasoning or "") + (event.delta or "")
            elif event.type == "usage":
                result.usage = event.usage

        logger.info(
            "Gemini %s: %.2fs, %s tokens",
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
        contents, config = self._request(messages, native_web_search)
        try:
            upstream = await asyncio.wait_for(
                self._client.aio.models.generate_content_stream(model=model, contents=contents, config=config),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise self._wrap_error(exc) from exc

        try:
            async for chunk in upstream:
                for event in decode_response(chunk.model_dump(exclude_none=True)):
                    yield event
        except Exception as exc:
            raise self._wrap_error(exc) from exc
        finally:
            await upstream.aclose()
