"""Tests for consensus/synthesis.py."""

from consensus.models import EnsembleResult, Message, Outlier, Stream
from consensus.synthesis import (
    build_debate_synthesis_messages,
    build_ensemble_synthesis_messages,
    build_ensemble_vote_messages,
    final_positions_label,
)


def _streams() -> list[Stream]:
    return [
        Stream("openai/gpt-4o", content="Use YAML.", status="complete"),
        Stream("anthropic/claude-3.5-sonnet", content="Use JSON.", status="complete"),
    ]


def test_final_positions_label():
    assert final_positions_label(3) == "Final positions after 3 round(s)"


def test_debate_synthesis_uses_final_positions():
    history = [Message("user", "before"), Message("assistant", "earlier answer")]
    messages = build_debate_synthesis_messages("Synthesize.", "YAML or JSON?", _streams(), 2, False, history)

    assert messages[0] == Message("system", "Synthesize.")
    assert messages[1:3] == history
    user = messages[-1].content
    assert "### Final positions after 2 round(s)" in user
    assert "#### gpt-4o\nUse YAML." in user
    assert "Convergence check" not in user


def test_debate_synthesis_notes_convergence():
    messages = build_debate_synthesis_messages("Synthesize.", "Q", _streams(), 2, True, [])
    assert "**Convergence check:** Converged." in messages[-1].content


def test_ensemble_vote_lists_every_answer():
    messages = build_ensemble_vote_messages("Vote.", "YAML or JSON?", _streams())
    user = messages[1].content
    assert "(2 models: openai/gpt-4o, anthropic/claude-3.5-sonnet)" in user
    assert "### Model: openai/gpt-4o\nUse YAML." in user
    assert user.endswith("respond with JSON only.")


def test_ensemble_synthesis_includes_judge_analysis():
    vote = EnsembleResult(
        status="complete",
        confidence=70,
        outliers=[Outlier("anthropic/claude-3.5-sonnet", "prefers JSON")],
        agreement_areas=["readability"],
        model_weights={"openai/gpt-4o": 0.9},
    )
    messages = build_ensemble_synthesis_messages("Ensemble.", "YAML or JSON?", _streams(), vote, [])
    user = messages[-1].content
    assert "Confidence: 70/100" in user
    assert '"openai/gpt-4o": 0.9' in user
    assert "- anthropic/claude-3.5-sonnet: prefers JSON" in user
    assert "- readability" in user


def test_ensemble_synthesis_with_neutral_vote():
    messages = build_ensemble_synthesis_messages("Ensemble.", "Q", _streams(), EnsembleResult(status="error"), [])
    assert "Confidence: unknown/100" in messages[-1].content
