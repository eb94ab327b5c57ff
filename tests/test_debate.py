"""Tests for consensus/debate.py."""

from consensus.debate import (
    CARRIED_FORWARD_NOTE,
    INDEPENDENT_LABEL,
    MAX_ATTACHMENT_CHARS,
    build_attachment_content,
    build_attachment_text,
    build_convergence_messages,
    build_initial_messages,
    build_rebuttal_messages,
    completed_streams,
    create_round,
    format_responses,
    round_label,
)
from consensus.models import Attachment, Message, Stream, Synthesis, Turn, WebSearchResult

_IMAGE = Attachment("diagram.png", "data:image/png;base64,iVBORw0KGgo=", category="image", mime_type="image/png")


def _streams() -> list[Stream]:
    return [
        Stream("openai/gpt-4o", content="Use YAML.", status="complete"),
        Stream("anthropic/claude-3.5-sonnet", content="Use JSON.", status="complete"),
    ]


def test_round_labels():
    assert round_label(1) == "Initial Responses"
    assert round_label(2) == "Rebuttal Round 1"
    assert round_label(4) == "Rebuttal Round 3"
    assert round_label(1, "direct") == INDEPENDENT_LABEL
    assert round_label(1, "parallel") == INDEPENDENT_LABEL


def test_create_round_has_one_pending_stream_per_model():
    rnd = create_round(1, "Initial Responses", ["a/x", "b/y", "a/x"])
    assert [s.model for s in rnd.streams] == ["a/x", "b/y", "a/x"]
    assert all(s.status == "pending" and s.content == "" for s in rnd.streams)
    assert rnd.status == "pending"
    assert rnd.convergence_check is None


def test_completed_streams_needs_status_and_content():
    rnd = create_round(2, "Rebuttal Round 1", ["a", "b", "c", "d"])
    rnd.streams[0].status, rnd.streams[0].content = "complete", "yes"
    rnd.streams[1].status, rnd.streams[1].content = "complete", ""
    rnd.streams[2].status, rnd.streams[2].content = "error", "partial"
    rnd.streams[3].status, rnd.streams[3].content = "complete", "carried"
    rnd.streams[3].carried_forward, rnd.streams[3].error = True, CARRIED_FORWARD_NOTE
    assert [s.model for s in completed_streams(rnd)] == ["a", "d"]


def test_format_responses_marks_own_model():
    text = format_responses(_streams(), own_model="openai/gpt-4o")
    assert "### gpt-4o (openai/gpt-4o) [your previous response]\nUse YAML." in text
    assert "### claude-3.5-sonnet (anthropic/claude-3.5-sonnet)\nUse JSON." in text
    assert "\n\n---\n\n" in text


def test_attachment_content_plain_prompt_without_attachments():
    assert build_attachment_content("Question?", []) == "Question?"


def test_attachment_content_inlines_text_files():
    content = build_attachment_content("Review this.", [Attachment("app.py", "print('hi')")])
    assert isinstance(content, str)
    assert "**Attached file: app.py**" in content
    assert "print('hi')" in content


def test_attachment_content_truncates_large_files():
    content = build_attachment_content("Review.", [Attachment("big.txt", "z" * (MAX_ATTACHMENT_CHARS + 10))])
    assert "... (truncated)" in content
    assert "z" * (MAX_ATTACHMENT_CHARS + 1) not in content


def test_attachment_content_images_become_parts():
    content = build_attachment_content("What is this?", [Attachment("notes.md", "# Notes"), _IMAGE])
    assert isinstance(content, list)
    assert content[0]["type"] == "text"
    assert "**Attached file: notes.md**" in content[0]["text"]
    assert content[1] == {"type": "image_url", "image_url": {"url": _IMAGE.content}}


def test_attachment_text_names_images():
    text = build_attachment_text("What is this?", [_IMAGE])
    assert text.endswith("[Attached image: diagram.png]")


def test_initial_messages_append_web_context_after_history():
    turn = Turn(user_prompt="Latest Python?", mode="debate", synthesis=Synthesis(model="s"))
    turn.web_search_result = WebSearchResult(model="perplexity/sonar", status="complete", content="3.13")
    history = [Message("user", "earlier"), Message("assistant", "answer")]

    messages = build_initial_messages(history, turn)

    assert messages[:2] == history
    assert messages[2].role == "user"
    assert messages[2].content.startswith("Latest Python?")
    assert "Web Search Context (from perplexity/sonar)" in messages[2].content


def test_initial_messages_skip_failed_web_search():
    turn = Turn(user_prompt="Latest Python?", mode="debate", synthesis=Synthesis(model="s"))
    turn.web_search_result = WebSearchResult(model="perplexity/sonar", status="error", error="down")
    assert build_initial_messages([], turn)[0].content == "Latest Python?"


def test_rebuttal_messages():
    messages = build_rebuttal_messages(
        "Rebut.", "YAML or JSON?", _streams(), round_number=3, history=[], own_model="anthropic/claude-3.5-sonnet"
    )
    assert messages[0] == Message("system", "Rebut.")
    user = messages[-1].content
    assert 'Original question: "YAML or JSON?"' in user
    assert "responses from Round 2" in user
    assert "revised position for Round 3" in user
    assert "(anthropic/claude-3.5-sonnet) [your previous response]" in user


def test_convergence_messages_have_no_history():
    messages = build_convergence_messages("Judge.", "YAML or JSON?", _streams(), round_number=2)
    assert [m.role for m in messages] == ["system", "user"]
    assert "Round 2" in messages[1].content
    assert "[your previous response]" not in messages[1].content
