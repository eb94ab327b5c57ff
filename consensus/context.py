"""Conversation history under a context budget, with rolling summaries."""

import logging
import math
from dataclasses import dataclass, field

from config.config_loader import ContextConfig
from consensus.models import Conversation, Message, Turn
from consensus.targets import display_name

logger = logging.getLogger(__name__)

WEB_SEARCH_MARKER = "[Web search was performed for this query]"
_SUMMARY_PROMPT_CHARS = 200
_SUMMARY_ANSWER_CHARS = 800


@dataclass
class ContextWindow:
    messages: list[Message] = field(default_factory=list)
    needs_summary: bool = False
    turns_to_summarize: int = 0


def truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."


def estimate_tokens(text: str | None, chars_per_token: int = 4) -> int:
    """Rough token count: ceil(len / chars_per_token)."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def estimate_message_tokens(message: Message, settings: ContextConfig) -> int:
    content = message.content if isinstance(message.content, str) else ""
    return estimate_tokens(content, settings.chars_per_token) + settings.message_overhead_tokens


def summarize_turn_for_context(turn: Turn, position_chars: int = 500) -> str:
    """Assistant-side digest of a finished turn.

    Carries the final round's positions (truncated), the debate outcome when
    more than one round ran, and the synthesized answer.
    """
    parts: list[str] = []

    web = turn.web_search_result
    if web is not None and web.content and web.status == "complete":
        parts.append(WEB_SEARCH_MARKER)

    if turn.rounds:
        final_round = turn.rounds[-1]
        positions = "\n".join(
            f"{display_name(s.model)}: {truncate(s.content, position_chars)}"
            for s in final_round.streams
            if s.content and s.status == "complete"
        )
        if positions:
            parts.append(f"Model positions ({final_round.label}):\n{positions}")

    meta = turn.debate_metadata
    if meta.total_rounds > 1:
        outcome = "converged" if meta.converged else meta.termination_reason
        parts.append(f"[Debate: {meta.total_rounds} rounds, {outcome}]")

    if turn.synthesis.content and turn.synthesis.status == "complete":
        parts.append(f"Synthesized answer:\n{turn.synthesis.content}")

    return "\n\n".join(parts)


def build_conversation_context(
    conversation: Conversation,
    settings: ContextConfig | None = None,
    turns: list[Turn] | None = None,
) -> ContextWindow:
    """History messages for the next turn.

    ``turns`` defaults to every turn in the conversation; pass a prefix to
    build the context a given turn was asked with. When the estimate exceeds
    the threshold, the newest messages that fit are kept (always the latest
    user/assistant pair) and the older turns are flagged for summarization.
    """
    settings = settings or ContextConfig()
    turns = conversation.turns if turns is None else turns
    if not turns:
        return ContextWindow()

    preamble: list[Message] = []
    if conversation.running_summary:
        preamble.append(Message("system", f"Previous conversation summary:\n{conversation.running_summary}"))

    turn_messages: list[Message] = []
    for turn in turns:
        turn_messages.append(Message("user", turn.user_prompt))
        digest = summarize_turn_for_context(turn, settings.position_preview_chars)
        if digest:
            turn_messages.append(Message("assistant", digest))

    preamble_tokens = sum(estimate_message_tokens(m, settings) for m in preamble)
    total = preamble_tokens + sum(estimate_message_tokens(m, settings) for m in turn_messages)
    threshold = settings.summary_threshold_tokens

    if total <= threshold:
        return ContextWindow(messages=preamble + turn_messages)

    kept_tokens = preamble_tokens
    keep_from = len(turn_messages)
    for index in range(len(turn_messages) - 1, -1, -1):
        cost = estimate_message_tokens(turn_messages[index], settings)
        if kept_tokens + cost > threshold:
            break
        kept_tokens += cost
        keep_from = index

    keep_from = min(keep_from, max(0, len(turn_messages) - 2))
    turns_to_summarize = math.ceil(keep_from / 2)
    logger.info(
        "Context over budget (%d > %d tokens): keeping %d messages, %d turns to summarize",
        total,
        threshold,
        len(turn_messages) - keep_from,
        turns_to_summarize,
    )
    return ContextWindow(
        messages=preamble + turn_messages[keep_from:],
        needs_summary=turns_to_summarize > 0,
        turns_to_summarize=turns_to_summarize,
    )


def build_summary_messages(
    system_prompt: str,
    turns: list[Turn],
    existing_summary: str | None = None,
) -> list[Message]:
    """Messages asking a model to fold ``turns`` into the running summary."""
    blocks = []
    for i, turn in enumerate(turns, start=1):
        lines = [f"Turn {i}:", f"User: {truncate(turn.user_prompt, _SUMMARY_PROMPT_CHARS)}"]
        if turn.synthesis.content:
            lines.append(f"Answer: {truncate(turn.synthesis.content, _SUMMARY_ANSWER_CHARS)}")
        meta = turn.debate_metadata
        if meta.total_rounds > 1:
            outcome = "converged" if meta.converged else "did not converge"
            lines.append(f"({meta.total_rounds} debate rounds, {outcome})")
        blocks.append("\n".join(lines))
    turn_text = "\n\n---\n\n".join(blocks)

    if existing_summary:
        user = (
            f"Here is the existing conversation summary:\n{existing_summary}\n\n"
            f"Here are new conversation turns to incorporate:\n{turn_text}\n\n"
            "Create an updated summary that incorporates all of this information."
        )
    else:
        user = f"Summarize the following conversation turns, preserving all key information:\n\n{turn_text}"

    return [Message("system", system_prompt.strip()), Message("user", user)]
