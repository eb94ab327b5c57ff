"""Fold a gateway event stream into accumulated content, reasoning and usage."""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from consensus.models import StreamEvent, Usage
from consensus.providers.base import STREAM_ERROR, STREAM_STALLED, ProviderError

logger = logging.getLogger(__name__)


class StreamStalledError(ProviderError):
    """No event arrived within the stall window."""

    def __init__(self, provider_name: str, stall_timeout_sec: float) -> None:
        super().__init__(
            provider_name,
            f"Stream stalled: no data for {stall_timeout_sec:.0f}s",
            kind=STREAM_STALLED,
            status=504,
        )


@dataclass
class StreamOutcome:
    content: str
    reasoning: str | None
    usage: Usage | None
    duration_ms: int


def merge_reasoning(accumulated: str, incoming: str) -> str:
    """Merge a reasoning fragment that may repeat what is already held.

    Some providers resend the whole reasoning so far, some send deltas, and
    some overlap the two. Idempotent for repeated fragments.
    """
    if not incoming:
        return accumulated
    if not accumulated:
        return incoming
    if incoming.startswith(accumulated):
        return incoming
    if accumulated.startswith(incoming):
        return accumulated
    for size in range(min(len(accumulated), len(incoming)), 0, -1):
        if accumulated.endswith(incoming[:size]):
            return accumulated + incoming[size:]
    return accumulated + incoming


async def read_stream(
    events: AsyncIterator[StreamEvent],
    stall_timeout_sec: float,
    on_content: Callable[[str, str], None] | None = None,
    on_reasoning: Callable[[str], None] | None = None,
    source: str = "gateway",
) -> StreamOutcome:
    """Consume ``events`` until ``done``.

    ``on_content(delta, accumulated)`` and ``on_reasoning(accumulated)`` fire
    per event. The stall watchdog covers the wait for the first event too.

    Raises:
        StreamStalledError: No event within ``stall_timeout_sec``.
        ProviderError: The stream delivered an ``error`` event or ended early.
    """
    start = time.monotonic()
    content = ""
    reasoning = ""
    usage: Usage | None = None
    iterator = aiter(events)
    try:
        while True:
            try:
                event = await asyncio.wait_for(anext(iterator), timeout=stall_timeout_sec)
            except StopAsyncIteration:
                raise ProviderError(source, "Stream ended before completion", kind=STREAM_ERROR) from None
            except TimeoutError:
                logger.warning("%s stream stalled after %.0fs", source, stall_timeout_sec)
                raise StreamStalledError(source, stall_timeout_sec) from None

            if event.type == "content" and event.delta:
                content += event.delta
                if on_content:
                    on_content(event.delta, content)
            elif event.type == "reasoning" and event.delta:
                reasoning = merge_reasoning(reasoning, event.delta)
                if on_reasoning:
                    on_reasoning(reasoning)
            elif event.type == "usage":
                usage = event.usage or usage
            elif event.type == "done":
                usage = event.usage or usage
                break
            elif event.type == "error":
                raise ProviderError(
                    source,
                    event.message or "Request failed",
                    kind=event.kind or STREAM_ERROR,
                    status=event.status,
                )
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()

    return StreamOutcome(
        content=content,
        reasoning=reasoning or None,
        usage=usage,
        duration_ms=int((time.monotonic() - start) * 1000),
    )
