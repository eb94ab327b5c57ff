"""Tests for consensus/store.py."""

import json

import pytest

from consensus.debate import create_round
from consensus.models import (
    ConvergenceCheck,
    Conversation,
    DebateMetadata,
    EnsembleResult,
    Outlier,
    Synthesis,
    Turn,
    Usage,
)
from consensus.store import (
    LEGACY_LABEL,
    SCHEMA_VERSION,
    ConversationStore,
    conversation_from_dict,
    conversation_to_dict,
    migrate_conversations,
    migrate_turn,
)

_LEGACY_TURN = {
    "id": "t1",
    "userPrompt": "YAML or JSON?",
    "mode": "debate",
    "timestamp": 1700000000000,
    "streams": [
        {"model": "openai/gpt-4o", "content": "YAML.", "status": "complete"},
        {"model": "anthropic/claude-3.5-sonnet", "content": "JSON.", "status": "complete"},
    ],
    "synthesis": {"model": "openai/gpt-4o", "content": "YAML.", "status": "complete"},
}


def _conversation() -> Conversation:
    turn = Turn(user_prompt="YAML or JSON?", mode="ensemble", synthesis=Synthesis(model="test/synth"))
    rnd = create_round(1, "Independent Responses", ["openai/gpt-4o", "anthropic/claude-3.5-sonnet"])
    rnd.streams[0].content, rnd.streams[0].status = "YAML.", "complete"
    rnd.streams[0].usage = Usage(prompt_tokens=10, completion_tokens=20, total_tokens=30, cost=0.001)
    rnd.streams[1].status, rnd.streams[1].error = "error", "Rate limited"
    rnd.status = "complete"
    rnd.convergence_check = ConvergenceCheck(converged=False, reason="split", agreements=["both readable"])
    turn.rounds.append(rnd)
    turn.ensemble_result = EnsembleResult(
        status="complete",
        confidence=80,
        outliers=[Outlier("anthropic/claude-3.5-sonnet", "failed")],
        model_weights={"openai/gpt-4o": 1.0, "anthropic/claude-3.5-sonnet": 0.2},
    )
    turn.synthesis.content, turn.synthesis.status = "Use YAML.", "complete"
    turn.debate_metadata = DebateMetadata(total_rounds=1, converged=False, termination_reason="ensemble_complete")
    return Conversation(title="Formats", turns=[turn], running_summary="Earlier chat.")


def test_to_dict_uses_camel_case_but_keeps_model_id_keys():
    data = conversation_to_dict(_conversation())
    turn = data["turns"][0]
    assert "userPrompt" in turn
    assert turn["debateMetadata"]["terminationReason"] == "ensemble_complete"
    assert turn["rounds"][0]["streams"][0]["usage"]["totalTokens"] == 30
    assert turn["ensembleResult"]["modelWeights"] == {"openai/gpt-4o": 1.0, "anthropic/claude-3.5-sonnet": 0.2}
    assert data["runningSummary"] == "Earlier chat."


def test_from_dict_restores_dataclasses():
    original = _conversation()
    restored = conversation_from_dict(json.loads(json.dumps(conversation_to_dict(original))))
    assert restored == original


def test_from_dict_ignores_unknown_keys():
    data = conversation_to_dict(_conversation())
    data["turns"][0]["rounds"][0]["streams"][0]["futureField"] = 1
    data["someNewThing"] = True
    restored = conversation_from_dict(data)
    assert restored.turns[0].rounds[0].streams[0].content == "YAML."


def test_migrate_legacy_turn():
    migrated, changed = migrate_turn(_LEGACY_TURN)
    assert changed is True
    assert "streams" not in migrated
    assert migrated["rounds"][0]["label"] == LEGACY_LABEL
    assert len(migrated["rounds"][0]["streams"]) == 2
    assert migrated["debateMetadata"]["terminationReason"] == "legacy_single_round"


def test_migrate_current_turn_is_untouched():
    turn = {"rounds": [], "userPrompt": "hi"}
    assert migrate_turn(turn) == (turn, False)


def test_migrate_version_one_list():
    conversations, changed = migrate_conversations([{"id": "c1", "createdAt": 5, "turns": [_LEGACY_TURN]}])
    assert changed is True
    assert conversations[0]["updatedAt"] == 5
    assert "rounds" in conversations[0]["turns"][0]


def test_migrate_current_document_unchanged():
    document = {"version": SCHEMA_VERSION, "conversations": [{"id": "c1", "updatedAt": 9, "turns": []}]}
    assert migrate_conversations(document) == ([{"id": "c1", "updatedAt": 9, "turns": []}], False)


def test_migrate_rejects_unknown_layout():
    with pytest.raises(ValueError):
        migrate_conversations("nope")


def test_store_round_trip(tmp_path):
    path = tmp_path / "data" / "conversations.json"
    conversation = _conversation()
    ConversationStore(path).save(conversation)

    reloaded = ConversationStore(path).get(conversation.id)

    assert reloaded == conversation
    assert json.loads(path.read_text(encoding="utf-8"))["version"] == SCHEMA_VERSION
    assert not path.with_suffix(".json.tmp").exists()


def test_store_lists_most_recent_first(tmp_path):
    store = ConversationStore(tmp_path / "c.json")
    older, newer = Conversation(title="old"), Conversation(title="new")
    store.save(older)
    store.save(newer)
    newer.updated_at, older.updated_at = 2, 1
    assert [c.title for c in store.list_conversations()] == ["new", "old"]


def test_store_migrates_and_rewrites_legacy_file(tmp_path):
    path = tmp_path / "conversations.json"
    path.write_text(json.dumps([{"id": "c1", "title": "Old", "turns": [_LEGACY_TURN]}]), encoding="utf-8")

    conversation = ConversationStore(path).get("c1")

    assert conversation.turns[0].rounds[0].streams[1].content == "JSON."
    assert conversation.turns[0].debate_metadata.termination_reason == "legacy_single_round"
    rewritten = json.loads(path.read_text(encoding="utf-8"))
    assert rewritten["version"] == SCHEMA_VERSION
    assert "rounds" in rewritten["conversations"][0]["turns"][0]


def test_store_delete(tmp_path):
    store = ConversationStore(tmp_path / "c.json")
    conversation = Conversation()
    store.save(conversation)
    assert store.delete(conversation.id) is True
    assert store.delete(conversation.id) is False
    assert ConversationStore(tmp_path / "c.json").get(conversation.id) is None


def test_missing_file_is_empty(tmp_path):
    assert ConversationStore(tmp_path / "absent.json").list_conversations() == []
