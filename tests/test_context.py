"""Tests for consensus/context.py."""

from config.config_loader import ContextConfig
from consensus.context import (
    WEB_SEARCH_MARKER,
    build_conversation_context,
    build_summary_messages,
    estimate_tokens,
    summarize_turn_for_context,
    truncate,
)
from consensus.debate import create_round
from consensus.models import Conversation, DebateMetadata, Synthesis, Turn, WebSearchResult


def _turn(prompt: str = "YAML or JSON?", answer: str = "Use YAML.", rounds: int = 1) -> Turn:
    turn = Turn(user_prompt=prompt, mode="debate", synthesis=Synthesis(model="test/synth"))
    for n in range(1, rounds + 1):
        rnd = create_round(n, f"Round {n}", ["test/alpha", "test/beta"])
        for stream in rnd.streams:
            stream.content = f"{stream.model} round {n}"
            stream.status = "complete"
        rnd.status = "complete"
        turn.rounds.append(rnd)
    turn.synthesis.content = answer
    turn.synthesis.status = "complete"
    turn.debate_metadata = DebateMetadata(total_rounds=rounds, converged=False, termination_reason="max_rounds_reached")
    return turn


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens("abcd", chars_per_token=2) == 2


def test_truncate():
    assert truncate("short", 10) == "short"
    assert truncate("abcdefghij", 4) == "abcd..."


def test_digest_uses_final_round_and_synthesis():
    digest = summarize_turn_for_context(_turn(rounds=2))
    assert "alpha: test/alpha round 2" in digest
    assert "round 1" not in digest
    assert "[Debate: 2 rounds, max_rounds_reached]" in digest
    assert digest.endswith("Synthesized answer:\nUse YAML.")


def test_digest_marks_web_search():
    turn = _turn()
    turn.web_search_result = WebSearchResult(model="test/search", status="complete", content="facts")
    assert summarize_turn_for_context(turn).startswith(WEB_SEARCH_MARKER)


def test_digest_truncates_positions():
    turn = _turn()
    turn.rounds[0].streams[0].content = "x" * 50
    digest = summarize_turn_for_context(turn, position_chars=10)
    assert "alpha: " + "x" * 10 + "..." in digest


def test_empty_conversation_has_no_context():
    window = build_conversation_context(Conversation())
    assert window.messages == []
    assert window.needs_summary is False


def test_context_pairs_user_and_assistant_messages():
    conversation = Conversation(turns=[_turn("first"), _turn("second")])
    window = build_conversation_context(conversation)
    assert [m.role for m in window.messages] == ["user", "assistant", "user", "assistant"]
    assert window.messages[2].content == "second"
    assert window.needs_summary is False


def test_running_summary_leads_the_context():
    conversation = Conversation(turns=[_turn()], running_summary="We discussed formats.")
    window = build_conversation_context(conversation)
    assert window.messages[0].role == "system"
    assert "We discussed formats." in window.messages[0].content


def test_turns_argument_limits_history():
    conversation = Conversation(turns=[_turn("first"), _turn("second")])
    window = build_conversation_context(conversation, turns=conversation.turns[:1])
    assert [m.content for m in window.messages if m.role == "user"] == ["first"]


def test_over_budget_keeps_newest_pair_and_flags_summary():
    conversation = Conversation(turns=[_turn(f"q{i}", "y" * 400) for i in range(4)])
    settings = ContextConfig(summary_threshold_tokens=50)

    window = build_conversation_context(conversation, settings)

    assert window.needs_summary is True
    assert window.turns_to_summarize == 3
    assert [m.role for m in window.messages] == ["user", "assistant"]
    assert window.messages[0].content == "q3"


def test_summary_messages_fold_existing_summary():
    messages = build_summary_messages("Summarize.", [_turn("q1", rounds=2)], existing_summary="Old summary.")
    assert messages[0].role == "system"
    assert "Old summary." in messages[1].content
    assert "User: q1" in messages[1].content
    assert "(2 debate rounds, did not converge)" in messages[1].content


def test_summary_messages_without_existing_summary():
    messages = build_summary_messages("Summarize.", [_turn("q1")])
    assert messages[1].content.startswith("Summarize the following conversation turns")
