"""OpenRouter aggregator provider using openai SDK (OpenAI-compatible API)."""

import logging
import os

from openai import AsyncOpenAI

from config.config_loader import ProviderConfig
from consensus.providers.openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
WEB_PLUGIN_ID = "web"


class OpenRouterProvider(OpenAIProvider):
    """Any model the aggregator lists, via its OpenAI-compatible API.

    Asks for reasoning tokens, sends the referer/title attribution headers,
    and lets a caller substitute its own key per request.
    """

    def __init__(self, config: ProviderConfig, api_key: str) -> None:
        super().__init__(config, api_key)
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=config.base_url or DEFAULT_BASE_URL,
            default_headers={
                "HTTP-Referer": os.environ.get("OPENROUTER_REFERER", "http://localhost"),
                "X-Title": os.environ.get("OPENROUTER_TITLE", "Consensus"),
            },
        )

    def _request_options(self, model: str, messages: list[dict], native_web_search: bool = False) -> dict:
        options = {**super()._request_options(model, messages), "extra_body": {"include_reasoning": True}}
        if native_web_search:
            options["extra_body"]["plugins"] = [{"id": WEB_PLUGIN_ID}]
        return options

    def _client_for(self, client_api_key: str | None) -> AsyncOpenAI:
        if client_api_key:
            logger.debug("Using client-supplied key for %s", self.name)
            return self._client.with_options(api_key=client_api_key)
        return self._client
