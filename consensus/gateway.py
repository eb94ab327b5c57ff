"""Provider gateway: one request shape in, one event vocabulary out.

Routes each request to the adapter chosen by the model id and normalizes the
result. Streams always finish with exactly one ``done`` or ``error`` event.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass

import httpx

from config.config_loader import AppConfig, provider_api_key
from consensus.models import ChatResult, StreamEvent, Usage
from consensus.providers.anthropic import AnthropicProvider
from consensus.providers.base import INVALID_KEY, ProviderAdapter, ProviderError, error_kind_for_status
from consensus.providers.gemini import GeminiProvider
from consensus.providers.openai_provider import OpenAIProvider
from consensus.providers.openrouter import DEFAULT_BASE_URL, OpenRouterProvider
from consensus.targets import AGGREGATOR, parse_model_target

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[str, type[ProviderAdapter]] = {
    "openrouter": OpenRouterProvider,
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
}

MAX_SEARCH_LIMIT = 500
DEFAULT_SEARCH_LIMIT = 200


@dataclass
class ChatRequest:
    model: str
    messages: list[dict]
    stream: bool = False
    client_api_key: str | None = None
    native_web_search: bool = False


def build_adapters(config: AppConfig) -> dict[str, ProviderAdapter]:
    """Build adapters for every provider with a key. Returns dict keyed by name."""
    adapters: dict[str, ProviderAdapter] = {}
    for name in sorted(config.available_providers):
        if name not in PROVIDER_CLASSES:
            logger.warning("Provider '%s' unknown, skipping", name)
            continue
        provider_cfg = config.providers[name]
        try:
            adapters[name] = PROVIDER_CLASSES[name](provider_cfg, provider_api_key(provider_cfg))
        except Exception as exc:
            logger.warning("Failed to instantiate provider '%s': %s", name, exc)
    return adapters


def filter_models(
    models: list[dict],
    query: str = "",
    provider: str = "",
    limit: int | None = None,
    offset: int | None = None,
) -> tuple[list[dict], int]:
    """Filter a model catalog and return (page, total matches).

    ``provider`` keeps ids starting with ``<provider>/``; ``query`` is a
    case-insensitive substring match on id, name or description. ``limit`` is
    clamped to [0, 500] (default 200) and ``offset`` to >= 0.
    """
    query = (query or "").lower().strip()
    provider = (provider or "").lower().strip()
    limit = DEFAULT_SEARCH_LIMIT if limit is None else min(max(int(limit), 0), MAX_SEARCH_LIMIT)
    offset = 0 if offset is None else max(int(offset), 0)

    if provider:
        models = [m for m in models if str(m.get("id") or "").lower().startswith(f"{provider}/")]
    if query:
        models = [
            m
            for m in models
            if query in str(m.get("id") or "").lower()
            or query in str(m.get("name") or "").lower()
            or query in str(m.get("description") or "").lower()
        ]
    return models[offset:offset + limit], len(models)


class Gateway:
    """In-process gateway over the configured provider adapters."""

    def __init__(
        self,
        config: AppConfig,
        adapters: dict[str, ProviderAdapter] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._adapters = adapters if adapters is not None else build_adapters(config)
        self._http = http_client

    @property
    def adapters(self) -> dict[str, ProviderAdapter]:
        return self._adapters

    def providers_status(self) -> dict[str, bool]:
        """Which of the four providers have server-side credentials."""
        return {name: name in self._adapters for name in PROVIDER_CLASSES}

    def _adapter_for(self, provider: str, client_api_key: str | None) -> ProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is not None:
            return adapter
        if provider == AGGREGATOR and client_api_key and AGGREGATOR in self._config.providers:
            return OpenRouterProvider(self._config.providers[AGGREGATOR], client_api_key)
        if provider not in PROVIDER_CLASSES:
            raise ProviderError(provider, f"Unsupported provider: {provider}")
        raise ProviderError(provider, f"Missing {provider} API key", kind=INVALID_KEY, status=401)

    async def send(self, request: ChatRequest) -> ChatResult | AsyncIterator[StreamEvent]:
        if request.stream:
            return self.stream(request)
        return await self.complete(request)

    async def complete(self, request: ChatRequest) -> ChatResult:
        """Run a non-streaming request.

        Raises:
            ProviderError: Missing credentials or upstream failure.
        """
        target = parse_model_target(request.model)
        adapter = self._adapter_for(target.provider, request.client_api_key)
        logger.debug("complete %s -> %s/%s", request.model, target.provider, target.model)
        try:
            return await adapter.complete(
                target.model, request.messages, request.client_api_key, native_web_search=request.native_web_search
            )
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(target.provider, f"Unexpected error: {exc}") from exc

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """Stream a request as content/reasoning events plus one terminal event.

        Failures never raise out of the iterator; they arrive as an ``error``
        event. Closing the iterator closes the upstream stream.
        """
        target = parse_model_target(request.model)
        logger.debug("stream %s -> %s/%s", request.model, target.provider, target.model)
        usage: Usage | None = None
        try:
            adapter = self._adapter_for(target.provider, request.client_api_key)
            upstream_events = adapter.stream(
                target.model, request.messages, request.client_api_key, native_web_search=request.native_web_search
            )
            async with aclosing(upstream_events) as upstream:
                async for event in upstream:
                    if event.type == "usage":
                        usage = event.usage
                    elif event.type in ("content", "reasoning") and event.delta:
                        yield event
        except ProviderError as exc:
            logger.warning("Stream failed for %s: %s", request.model, exc)
            yield StreamEvent("error", message=exc.message, kind=exc.kind, status=exc.status)
            return
        except Exception as exc:
            logger.warning("Stream failed for %s: %s", request.model, exc)
            yield StreamEvent("error", message=f"Unexpected error: {exc}", kind="stream_error")
            return
        yield StreamEvent("done", usage=usage)

    async def list_models(self, client_api_key: str | None = None) -> list[dict]:
        """Fetch the aggregator's model catalog. Empty when no key is available.

        Raises:
            ProviderError: When the catalog request fails.
        """
        provider_cfg = self._config.providers.get(AGGREGATOR)
        api_key = client_api_key or (provider_api_key(provider_cfg) if provider_cfg else "")
        if not api_key:
            return []

        base_url = (provider_cfg.base_url if provider_cfg else None) or DEFAULT_BASE_URL
        url = f"{base_url.rstrip('/')}/models"
        headers = {"Authorization": f"Bearer {api_key}"}
        try:
            if self._http is not None:
                response = await self._http.get(url, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise ProviderError(AGGREGATOR, f"Failed to fetch models: {exc}") from exc

        if response.status_code >= 400:
            body = response.text
            raise ProviderError(
                AGGREGATOR,
                body or "Failed to fetch models",
                kind=error_kind_for_status(response.status_code),
                status=response.status_code,
                body=body,
            )
        return list(response.json().get("data") or [])

    async def search_models(
        self,
        query: str = "",
        provider: str = "",
        limit: int | None = None,
        offset: int | None = None,
        client_api_key: str | None = None,
    ) -> tuple[list[dict], int]:
        models = await self.list_models(client_api_key)
        return filter_models(models, query=query, provider=provider, limit=limit, offset=offset)
