"""Synthesis and ensemble-vote message builders."""

import json
import logging

from consensus.models import EnsembleResult, Message, Stream
from consensus.targets import display_name

logger = logging.getLogger(__name__)


def final_positions_label(total_rounds: int) -> str:
    return f"Final positions after {total_rounds} round(s)"


def _format_section(label: str, streams: list[Stream], converged: bool) -> str:
    responses = "\n\n".join(f"#### {display_name(s.model)}\n{s.content}" for s in streams if s.content)
    section = f"### {label}\n{responses}"
    if converged:
        section += "\n\n**Convergence check:** Converged. Models converged"
    return section


def build_debate_synthesis_messages(
    system_prompt: str,
    user_prompt: str,
    final_streams: list[Stream],
    total_rounds: int,
    converged: bool,
    history: list[Message],
) -> list[Message]:
    """Synthesis over the final positions of a debate.

    Only the last round's completed (or carried-forward) streams are sent.
    """
    section = _format_section(final_positions_label(total_rounds), final_streams, converged)
    user = (
        f'User\'s query: "{user_prompt}"\n\n'
        f"Here is the full debate history:\n\n{section}\n\n"
        "Now synthesize the best possible answer from this debate."
    )
    return [Message("system", system_prompt.strip()), *history, Message("user", user)]


def _format_answers(streams: list[Stream]) -> str:
    return "\n\n---\n\n".join(f"### Model: {s.model}\n{s.content}" for s in streams)


def build_ensemble_vote_messages(system_prompt: str, user_prompt: str, streams: list[Stream]) -> list[Message]:
    model_ids = ", ".join(s.model for s in streams)
    user = (
        f'The user asked: "{user_prompt}"\n\n'
        f"Here are the independent answers ({len(streams)} models: {model_ids}):\n\n"
        f"{_format_answers(streams)}\n\n"
        "Analyze these answers and respond with JSON only."
    )
    return [Message("system", system_prompt.strip()), Message("user", user)]


def _format_vote(vote: EnsembleResult) -> str:
    lines = [f"Confidence: {vote.confidence if vote.confidence is not None else 'unknown'}/100"]
    if vote.model_weights:
        lines.append("Model weights: " + json.dumps(vote.model_weights))
    if vote.outliers:
        lines.append("Outliers:")
        lines.extend(f"- {o.model}: {o.reason}" for o in vote.outliers)
    if vote.agreement_areas:
        lines.append("Areas of agreement:")
        lines.extend(f"- {a}" for a in vote.agreement_areas)
    if vote.disagreement_areas:
        lines.append("Areas of disagreement:")
        lines.extend(f"- {d}" for d in vote.disagreement_areas)
    return "\n".join(lines)


def build_ensemble_synthesis_messages(
    system_prompt: str,
    user_prompt: str,
    streams: list[Stream],
    vote: EnsembleResult,
    history: list[Message],
) -> list[Message]:
    """Synthesis over independent answers, conditioned on the judge's analysis."""
    answers = "\n\n---\n\n".join(f"### {display_name(s.model)} ({s.model})\n{s.content}" for s in streams)
    user = (
        f'User\'s query: "{user_prompt}"\n\n'
        f"Independent answers:\n\n{answers}\n\n"
        f"Judge analysis:\n{_format_vote(vote)}\n\n"
        "Now synthesize the best possible answer, weighting each model as the analysis suggests."
    )
    return [Message("system", system_prompt.strip()), *history, Message("user", user)]
