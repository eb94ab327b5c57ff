"""Conversation title and description from the first turn."""

import logging
from dataclasses import dataclass

from consensus.client import ChatClient
from consensus.models import Message
from consensus.verdicts import extract_json_object

logger = logging.getLogger(__name__)

MAX_TITLE_CHARS = 100
MAX_DESCRIPTION_CHARS = 200
FALLBACK_TITLE_CHARS = 50


@dataclass
class TitleResult:
    title: str
    description: str = ""


def _clean(value: object) -> str:
    return str(value or "").strip().strip("\"'").strip()


def parse_title_response(text: str | None) -> TitleResult | None:
    """JSON ``{title, description}`` or, failing that, a bare one-line title."""
    if not text:
        return None
    parsed = extract_json_object(text, required_key="title")
    if parsed is not None:
        title = _clean(parsed.get("title"))
        if 0 < len(title) < MAX_TITLE_CHARS:
            return TitleResult(title, _clean(parsed.get("description"))[:MAX_DESCRIPTION_CHARS])
        return None

    plain = _clean(text)
    if 0 < len(plain) < MAX_TITLE_CHARS and "{" not in plain:
        return TitleResult(plain)
    return None


def fallback_title(prompt: str) -> TitleResult:
    if len(prompt) > FALLBACK_TITLE_CHARS:
        return TitleResult(prompt[:FALLBACK_TITLE_CHARS] + "...")
    return TitleResult(prompt)


async def generate_title(
    client: ChatClient,
    model: str,
    system_prompt: str,
    user_prompt: str,
    synthesis: str | None = None,
) -> TitleResult:
    """Ask ``model`` for a title. Never raises; falls back to the truncated prompt."""
    asked = user_prompt[:500]
    answer = (synthesis or "")[:1000]
    content = f'User asked: "{asked}"'
    if answer:
        content += f'\n\nSynthesized answer: "{answer}"'

    try:
        result = await client.complete(model, [Message("system", system_prompt.strip()), Message("user", content)])
    except Exception as exc:
        logger.warning("Title generation failed: %s", exc)
        return fallback_title(user_prompt)

    return parse_title_response(result.content) or fallback_title(user_prompt)
