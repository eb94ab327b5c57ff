"""Debate rounds: labels, round construction, and per-round message builders."""

import logging

from consensus.models import Attachment, Message, Round, Stream, Turn
from consensus.targets import display_name

logger = logging.getLogger(__name__)

MAX_ATTACHMENT_CHARS = 50000
INDEPENDENT_LABEL = "Independent Analyses"
CARRIED_FORWARD_NOTE = "Failed this round, showing previous response"


def round_label(round_number: int, mode: str = "debate") -> str:
    if mode != "debate":
        return INDEPENDENT_LABEL
    if round_number == 1:
        return "Initial Responses"
    return f"Rebuttal Round {round_number - 1}"


def create_round(round_number: int, label: str, models: list[str]) -> Round:
    """Empty round with one pending stream per model, in model order."""
    return Round(
        round_number=round_number,
        label=label,
        streams=[Stream(model=model) for model in models],
    )


def completed_streams(round_: Round) -> list[Stream]:
    """Streams holding a usable position: status complete and non-empty content."""
    return [s for s in round_.streams if s.content and s.status == "complete"]


def format_responses(streams: list[Stream], own_model: str | None = None) -> str:
    blocks = []
    for stream in streams:
        header = f"### {display_name(stream.model)} ({stream.model})"
        if own_model is not None and stream.model == own_model:
            header += " [your previous response]"
        blocks.append(f"{header}\n{stream.content}")
    return "\n\n---\n\n".join(blocks)


def _truncate_attachment(content: str) -> str:
    if len(content) <= MAX_ATTACHMENT_CHARS:
        return content
    return content[:MAX_ATTACHMENT_CHARS] + "\n... (truncated)"


def _inline_text_attachments(text: str, attachments: list[Attachment]) -> str:
    for attachment in attachments:
        if attachment.category == "image":
            continue
        text += f"\n\n---\n**Attached file: {attachment.name}**\n```\n{_truncate_attachment(attachment.content)}\n```"
    return text


def build_attachment_content(text: str, attachments: list[Attachment]) -> str | list[dict]:
    """User content with text attachments inline and images as multimodal parts."""
    if not attachments:
        return text
    text = _inline_text_attachments(text, attachments)
    images = [a for a in attachments if a.category == "image"]
    if not images:
        return text
    parts: list[dict] = [{"type": "text", "text": text}]
    parts.extend({"type": "image_url", "image_url": {"url": image.content}} for image in images)
    return parts


def build_attachment_text(text: str, attachments: list[Attachment]) -> str:
    """Text-only rendering of the prompt and its attachments (images by name)."""
    text = _inline_text_attachments(text, attachments)
    for attachment in attachments:
        if attachment.category == "image":
            text += f"\n\n[Attached image: {attachment.name}]"
    return text


def build_user_content(turn: Turn) -> str | list[dict]:
    """The turn's user message: prompt, web search context, attachments."""
    text = turn.user_prompt
    web = turn.web_search_result
    if web is not None and web.status == "complete" and web.content:
        text = f"{text}\n\n---\n**Web Search Context (from {web.model}):**\n{web.content}"
    return build_attachment_content(text, turn.attachments)


def build_initial_messages(history: list[Message], turn: Turn) -> list[Message]:
    return [*history, Message("user", build_user_content(turn))]


def build_rebuttal_messages(
    system_prompt: str,
    user_prompt: str,
    previous_streams: list[Stream],
    round_number: int,
    history: list[Message],
    own_model: str | None = None,
) -> list[Message]:
    """Rebuttal prompt for one model.

    ``previous_streams`` is the completed set of round ``round_number - 1``;
    the model's own earlier answer is marked when ``own_model`` is given.
    """
    responses = format_responses(previous_streams, own_model=own_model)
    user = (
        f'Original question: "{user_prompt}"\n\n'
        f"Here are the responses from Round {round_number - 1} of the debate:\n\n"
        f"{responses}\n\n"
        f"Now provide your rebuttal and revised position for Round {round_number}."
    )
    return [Message("system", system_prompt.strip()), *history, Message("user", user)]


def build_convergence_messages(
    system_prompt: str,
    user_prompt: str,
    streams: list[Stream],
    round_number: int,
) -> list[Message]:
    user = (
        f'The user asked: "{user_prompt}"\n\n'
        f"Here are the model responses from Round {round_number} of the debate:\n\n"
        f"{format_responses(streams)}\n\n"
        "Have the models converged on a consensus answer? Respond with JSON only."
    )
    return [Message("system", system_prompt.strip()), Message("user", user)]
