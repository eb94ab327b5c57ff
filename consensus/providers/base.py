"""Abstract base for the provider adapters behind the gateway."""

import re
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from config.config_loader import ProviderConfig
from consensus.models import ChatResult, StreamEvent

# Error kinds carried on ProviderError and on terminal "error" events
INVALID_KEY = "invalid_key"
RATE_LIMIT = "rate_limit"
INSUFFICIENT_CREDITS = "insufficient_credits"
STREAM_STALLED = "stream_stalled"
STREAM_ERROR = "stream_error"
UPSTREAM_HTTP_ERROR = "upstream_http_error"
PARSE_ERROR = "parse_error"
CANCELLED = "cancelled"

RETRYABLE_KINDS = frozenset({RATE_LIMIT, STREAM_STALLED, STREAM_ERROR, UPSTREAM_HTTP_ERROR})

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)

_STATUS_KINDS = {
    401: INVALID_KEY,
    402: INSUFFICIENT_CREDITS,
    429: RATE_LIMIT,
    504: STREAM_STALLED,
}


def error_kind_for_status(status: int | None) -> str:
    return _STATUS_KINDS.get(status or 0, UPSTREAM_HTTP_ERROR)


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(
        self,
        provider_name: str,
        message: str,
        kind: str = UPSTREAM_HTTP_ERROR,
        status: int | None = None,
        body: str | None = None,
    ) -> None:
        self.provider_name = provider_name
        self.message = message
        self.kind = kind
        self.status = status
        self.body = body
        super().__init__(f"[{provider_name}] {message}")

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


def split_system_messages(messages: list[dict]) -> tuple[str | None, list[dict]]:
    """Pull system-role messages out of ``messages``.

    Returns the system texts joined by blank lines (None when there are none)
    and the remaining messages in order.
    """
    system_parts: list[str] = []
    rest: list[dict] = []
    for message in messages:
        if message.get("role") == "system":
            content = message.get("content")
            if isinstance(content, str):
                system_parts.append(content)
            elif isinstance(content, list):
                system_parts.extend(p.get("text", "") for p in content if p.get("type") == "text")
        else:
            rest.append(message)
    return ("\n\n".join(system_parts) if system_parts else None), rest


def normalize_parts(content: str | list[dict] | None) -> list[dict]:
    """Message content as a list of chat-completions style parts."""
    if isinstance(content, list):
        return content
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return []


def parse_data_url(url: str | None) -> tuple[str, str] | None:
    """Split ``data:<mime>;base64,<data>`` into (mime, data)."""
    if not isinstance(url, str):
        return None
    match = _DATA_URL_RE.match(url)
    if not match:
        return None
    return match.group(1), match.group(2)


class ProviderAdapter(ABC):
    """One vendor API, spoken in the gateway's normalized vocabulary.

    ``stream`` yields only ``content``, ``reasoning`` and ``usage`` events;
    the gateway adds the terminal ``done``/``error``.
    """

    def __init__(self, config: ProviderConfig, api_key: str) -> None:
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}", kind=INVALID_KEY, status=401)
        self._config = config
        self._api_key = api_key

    @property
    def name(self) -> str:
        return self._config.name

    @abstractmethod
    async def complete(
        self,
        model: str,
        messages: list[dict],
        client_api_key: str | None = None,
        native_web_search: bool = False,
    ) -> ChatResult:
        """Run one non-streaming completion.

        Raises:
            ProviderError: On API failure, timeout, or empty response.
        """
        ...

    @abstractmethod
    def stream(
        self,
        model: str,
        messages: list[dict],
        client_api_key: str | None = None,
        native_web_search: bool = False,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one completion as normalized events.

        Closing the returned iterator closes the upstream connection.
        """
        ...
