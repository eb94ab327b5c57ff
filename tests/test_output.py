"""Tests for consensus/output.py."""

from pathlib import Path

import pytest
from rich.console import Console

from consensus.debate import CARRIED_FORWARD_NOTE, create_round
from consensus.models import (
    ConvergenceCheck,
    Conversation,
    DebateMetadata,
    EnsembleResult,
    Outlier,
    Synthesis,
    Turn,
    Usage,
    WebSearchResult,
)
from consensus.orchestrator import OrchestratorEvent
from consensus.output import (
    ConsoleRenderer,
    _slug,
    format_duration,
    format_token_count,
    save_to_file,
    turn_to_markdown,
)


def test_slug_basic():
    assert _slug("Should we use YAML or JSON?") == "should-we-use-yaml-or-json"


def test_slug_max_len():
    assert len(_slug("a" * 100)) <= 40


def test_slug_special_chars():
    result = _slug("API vs. SDK (2024)")
    assert "." not in result
    assert "(" not in result
    assert ")" not in result


def test_format_token_count():
    assert format_token_count(None) == "-"
    assert format_token_count(950) == "950"
    assert format_token_count(1234) == "1.2k"
    assert format_token_count(2_500_000) == "2.5M"


def test_format_duration():
    assert format_duration(None) == "-"
    assert format_duration(420) == "420ms"
    assert format_duration(4200) == "4.2s"
    assert format_duration(125_000) == "2m 5s"


@pytest.fixture
def debate_turn() -> Turn:
    turn = Turn(user_prompt="Should we use YAML or JSON?", mode="debate", synthesis=Synthesis(model="test/synth"))
    turn.web_search_result = WebSearchResult(model="test/search", status="complete", content="YAML 1.2 is current.")

    first = create_round(1, "Initial Responses", ["openai/gpt-4o", "anthropic/claude-3.5-sonnet"])
    first.streams[0].content, first.streams[0].status = "YAML reads better.", "complete"
    first.streams[0].usage = Usage(total_tokens=1500, cost=0.0021)
    first.streams[1].content, first.streams[1].status = "JSON is stricter.", "complete"
    first.status = "complete"
    first.convergence_check = ConvergenceCheck(converged=False, reason="Still split")

    second = create_round(2, "Rebuttal Round 1", ["openai/gpt-4o", "anthropic/claude-3.5-sonnet"])
    second.streams[0].content, second.streams[0].status = "Still YAML.", "complete"
    second.streams[1].content, second.streams[1].status = "JSON is stricter.", "complete"
    second.streams[1].carried_forward, second.streams[1].error = True, CARRIED_FORWARD_NOTE
    second.status = "complete"
    second.convergence_check = ConvergenceCheck(converged=True, reason="Both accept YAML")

    turn.rounds = [first, second]
    turn.synthesis.content, turn.synthesis.status = "## Decision\nUse YAML.", "complete"
    turn.debate_metadata = DebateMetadata(total_rounds=2, converged=True, termination_reason="converged")
    return turn


def test_turn_markdown_sections(debate_turn):
    content = "\n".join(turn_to_markdown(debate_turn))
    assert "## Should we use YAML or JSON?" in content
    assert "**Converged:** yes" in content
    assert "### Web search (test/search)" in content
    assert "### Round 1: Initial Responses" in content
    assert "#### gpt-4o (openai/gpt-4o)" in content
    assert "1.5k tokens" in content
    assert "$0.0021" in content
    assert "**Convergence:** converged - Both accept YAML" in content
    assert f"*{CARRIED_FORWARD_NOTE}*" in content
    assert "### Synthesis (by test/synth)" in content
    assert "## Decision\nUse YAML." in content


def test_turn_markdown_failed_stream_and_synthesis():
    turn = Turn(user_prompt="Q", mode="ensemble", synthesis=Synthesis(model="test/synth"))
    rnd = create_round(1, "Independent Responses", ["openai/gpt-4o"])
    rnd.streams[0].status, rnd.streams[0].error = "error", "Rate limited"
    turn.rounds = [rnd]
    turn.ensemble_result = EnsembleResult(
        status="complete", confidence=40, outliers=[Outlier("openai/gpt-4o", "no answer")], model_weights={"openai/gpt-4o": 0.5}
    )
    turn.synthesis.status, turn.synthesis.error = "error", "All models failed. Cannot synthesize."

    content = "\n".join(turn_to_markdown(turn))

    assert "*error: Rate limited*" in content
    assert "### Ensemble analysis (confidence 40/100)" in content
    assert "- Outlier openai/gpt-4o: no answer" in content
    assert "- Weight openai/gpt-4o: 0.50" in content
    assert "*Failed: All models failed. Cannot synthesize.*" in content


def test_save_to_file_creates_output_dir(tmp_path: Path, debate_turn):
    output_dir = tmp_path / "nested" / "output"
    saved = save_to_file(Conversation(title="Formats", turns=[debate_turn]), output_dir)
    assert output_dir.exists()
    assert saved.exists()
    assert saved.suffix == ".md"
    assert "should-we-use-yaml-or-json" in saved.name


def test_save_to_file_content(tmp_path: Path, debate_turn):
    conversation = Conversation(title="Formats", description="Config format choice", turns=[debate_turn, debate_turn])
    content = save_to_file(conversation, tmp_path).read_text(encoding="utf-8")
    assert content.startswith("# Formats")
    assert f"**Conversation:** {conversation.id}" in content
    assert "**Turns:** 2" in content
    assert "**Description:** Config format choice" in content
    assert content.count("### Round 2: Rebuttal Round 1") == 2


def test_save_to_file_slug_override(tmp_path: Path, debate_turn):
    saved = save_to_file(Conversation(turns=[debate_turn]), tmp_path, slug_override="custom")
    assert saved.name.endswith("_custom.md")


def test_save_to_file_empty_conversation_uses_title(tmp_path: Path):
    saved = save_to_file(Conversation(title="Empty chat"), tmp_path)
    assert saved.name.endswith("_empty-chat.md")


def _event(event_type: str, round_index=None, stream_index=None, **data) -> OrchestratorEvent:
    return OrchestratorEvent(event_type, "conv", "turn", round_index, stream_index, data)


def test_console_renderer_prints_progress(debate_turn):
    out = Console(record=True, width=120)
    render = ConsoleRenderer(out=out, show_rounds=False)

    render(_event("turn_started", mode="debate", models=["a", "b"]))
    render(_event("stream_complete", 0, 1, carried_forward=False))
    render(_event("stream_error", 1, 0, error="Rate limited"))
    render(_event("synthesis_started", model="test/synth"))
    render(_event("round_status", 0, status="complete", round=debate_turn.rounds[0]))

    text = out.export_text()
    assert "[debate] 2 models" in text
    assert "OK round 1 stream 2 done" in text
    assert "FAIL round 2 stream 1: Rate limited" in text
    assert "Synthesizing with test/synth" in text
    assert "Initial Responses" not in text
