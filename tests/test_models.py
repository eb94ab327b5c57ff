"""Tests for consensus/models.py wire helpers."""

from consensus.models import ChatResult, StreamEvent, Usage


def test_usage_from_dict_accepts_both_spellings():
    assert Usage.from_dict({"promptTokens": 1, "completion_tokens": 2, "totalTokens": 3}) == Usage(1, 2, 3)
    assert Usage.from_dict(None) is None
    assert Usage.from_dict("junk") is None


def test_content_event_payload():
    assert StreamEvent("content", delta="Hi").to_payload() == {"type": "content", "delta": "Hi"}


def test_done_event_payload_without_usage():
    assert StreamEvent("done").to_payload() == {"type": "done", "usage": None}


def test_error_event_payload_defaults_message():
    assert StreamEvent("error").to_payload() == {"type": "error", "message": "Request failed"}
    payload = StreamEvent("error", message="slow down", kind="rate_limit", status=429).to_payload()
    assert payload == {"type": "error", "message": "slow down", "kind": "rate_limit", "status": 429}


def test_event_from_payload():
    event = StreamEvent.from_payload({"type": "done", "usage": {"total_tokens": 12, "cost": 0.01}})
    assert event.type == "done"
    assert event.usage.total_tokens == 12
    assert event.usage.cost == 0.01


def test_chat_result_payload():
    result = ChatResult(content="Yes", usage=Usage(total_tokens=4), duration_ms=20)
    assert result.to_payload() == {
        "content": "Yes",
        "reasoning": None,
        "usage": {
            "prompt_tokens": None,
            "completion_tokens": None,
            "total_tokens": 4,
            "cost": None,
            "reasoning_tokens": None,
        },
    }
