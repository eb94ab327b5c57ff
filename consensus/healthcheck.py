"""Provider health checks: ping each configured provider before starting a turn."""

import asyncio
import logging

from config.config_loader import AppConfig
from consensus.client import ChatClient
from consensus.models import Message

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."
_TIMEOUT_SEC = 15.0

# Ping ids route to the provider directly (see targets.parse_model_target)
_PING_PREFIX = {
    "openrouter": "openrouter/",
    "openai": "openai:",
    "anthropic": "anthropic:",
    "gemini": "gemini:",
}


def ping_targets(config: AppConfig) -> dict[str, str]:
    """Provider name -> model id to ping, for providers with a key and a ping_model."""
    targets = {}
    for name in sorted(config.available_providers):
        provider_cfg = config.providers.get(name)
        if provider_cfg is None or not provider_cfg.ping_model or name not in _PING_PREFIX:
            continue
        targets[name] = _PING_PREFIX[name] + provider_cfg.ping_model
    return targets


async def _check_one(client: ChatClient, name: str, model: str) -> tuple[str, bool, str]:
    """Ping a single provider. Returns (name, ok, error_message)."""
    try:
        await asyncio.wait_for(
            client.complete(model, [Message("user", _PING_PROMPT)]),
            timeout=_TIMEOUT_SEC,
        )
        return name, True, ""
    except TimeoutError:
        return name, False, f"No reply within {_TIMEOUT_SEC:.0f}s"
    except Exception as exc:
        return name, False, str(exc)


async def run_health_checks(client: ChatClient, targets: dict[str, str]) -> dict[str, tuple[bool, str]]:
    """Ping all targets in parallel.

    Returns:
        Dict mapping provider name -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(client, n, m) for n, m in targets.items()))
    for name, ok, err in results:
        if not ok:
            logger.debug("Health check failed for %s: %s", name, err)
    return {name: (ok, err) for name, ok, err in results}
