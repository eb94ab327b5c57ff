"""JSON file persistence for conversations, with legacy-format migration.

File layout: ``{"version": 2, "conversations": [...]}`` using camelCase keys.
A bare JSON list is the version 1 layout and is migrated on load.
"""

import dataclasses
import json
import logging
import os
import re
from pathlib import Path
from typing import Any

from consensus.models import (
    Attachment,
    ConvergenceCheck,
    Conversation,
    DebateMetadata,
    EnsembleResult,
    Outlier,
    Round,
    Stream,
    Synthesis,
    Turn,
    Usage,
    WebSearchResult,
    new_id,
    now_ms,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
LEGACY_LABEL = "Initial Responses"

# Keys whose values are maps keyed by model id; their keys are left alone
_OPAQUE_KEY_MAPS = {"model_weights"}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _camelize(value: Any) -> Any:
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            out[_camel(key)] = item if key in _OPAQUE_KEY_MAPS else _camelize(item)
        return out
    if isinstance(value, list):
        return [_camelize(item) for item in value]
    return value


def _snakify(value: Any) -> Any:
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            snake = _snake(key)
            out[snake] = item if snake in _OPAQUE_KEY_MAPS else _snakify(item)
        return out
    if isinstance(value, list):
        return [_snakify(item) for item in value]
    return value


def conversation_to_dict(conversation: Conversation) -> dict:
    return _camelize(dataclasses.asdict(conversation))


def _build(cls: type, raw: dict | None, **overrides: Any) -> Any:
    """Construct ``cls`` from a snake_case dict, ignoring unknown keys."""
    raw = raw or {}
    names = {f.name for f in dataclasses.fields(cls)}
    kwargs = {k: v for k, v in raw.items() if k in names}
    kwargs.update(overrides)
    return cls(**kwargs)


def _usage(raw: dict | None) -> Usage | None:
    return _build(Usage, raw) if raw else None


def _stream(raw: dict) -> Stream:
    return _build(Stream, raw, usage=_usage(raw.get("usage")), content=raw.get("content") or "")


def _round(raw: dict) -> Round:
    check = raw.get("convergence_check")
    return _build(
        Round,
        raw,
        streams=[_stream(s) for s in raw.get("streams") or []],
        convergence_check=_build(ConvergenceCheck, check) if check else None,
    )


def _turn(raw: dict) -> Turn:
    ensemble = raw.get("ensemble_result")
    web = raw.get("web_search_result")
    synthesis = raw.get("synthesis") or {}
    return _build(
        Turn,
        raw,
        id=raw.get("id") or new_id(),
        user_prompt=raw.get("user_prompt") or "",
        mode=raw.get("mode") or "debate",
        attachments=[_build(Attachment, a) for a in raw.get("attachments") or []],
        rounds=[_round(r) for r in raw.get("rounds") or []],
        synthesis=_build(
            Synthesis,
            synthesis,
            model=synthesis.get("model") or "",
            content=synthesis.get("content") or "",
            usage=_usage(synthesis.get("usage")),
        ),
        ensemble_result=_build(
            EnsembleResult,
            ensemble,
            outliers=[_build(Outlier, o) for o in ensemble.get("outliers") or []],
            usage=_usage(ensemble.get("usage")),
        )
        if ensemble
        else None,
        web_search_result=_build(WebSearchResult, web) if web else None,
        debate_metadata=_build(DebateMetadata, raw.get("debate_metadata")),
    )


def conversation_from_dict(raw: dict) -> Conversation:
    data = _snakify(raw)
    return _build(
        Conversation,
        data,
        turns=[_turn(t) for t in data.get("turns") or []],
        description=data.get("description") or "",
    )


def migrate_turn(turn: dict) -> tuple[dict, bool]:
    """Turn a legacy flat ``streams`` turn into a single-round turn."""
    if "rounds" in turn or "streams" not in turn:
        return turn, False
    migrated = {k: v for k, v in turn.items() if k != "streams"}
    migrated["rounds"] = [
        {
            "roundNumber": 1,
            "label": LEGACY_LABEL,
            "status": "complete",
            "streams": turn.get("streams") or [],
            "convergenceCheck": None,
        }
    ]
    migrated["debateMetadata"] = {
        "totalRounds": 1,
        "converged": False,
        "terminationReason": "legacy_single_round",
    }
    return migrated, True


def migrate_conversations(raw: Any) -> tuple[list[dict], bool]:
    """Bring a loaded document up to the current layout.

    Returns (conversation dicts, whether anything changed).
    """
    changed = False
    if isinstance(raw, list):
        conversations = raw
        changed = True
    elif isinstance(raw, dict):
        conversations = raw.get("conversations") or []
        if raw.get("version") != SCHEMA_VERSION:
            changed = True
    else:
        raise ValueError(f"Unrecognized conversation file layout: {type(raw).__name__}")

    result = []
    for conversation in conversations:
        conversation = dict(conversation)
        turns = []
        for turn in conversation.get("turns") or []:
            turn, turn_changed = migrate_turn(turn)
            changed = changed or turn_changed
            turns.append(turn)
        conversation["turns"] = turns
        if not conversation.get("updatedAt"):
            conversation["updatedAt"] = conversation.get("createdAt") or now_ms()
            changed = True
        result.append(conversation)
    return result, changed


class ConversationStore:
    """Conversations kept in one JSON file, rewritten whole on each save."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._conversations: dict[str, Conversation] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Conversation]:
        if self._conversations is not None:
            return self._conversations
        self._conversations = {}
        if not self._path.exists():
            return self._conversations

        with self._path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
        conversations, migrated = migrate_conversations(raw)
        for data in conversations:
            conversation = conversation_from_dict(data)
            self._conversations[conversation.id] = conversation
        if migrated:
            logger.info("Migrated conversation file %s to version %d", self._path, SCHEMA_VERSION)
            self._write()
        return self._conversations

    def _write(self) -> None:
        conversations = self._conversations or {}
        document = {
            "version": SCHEMA_VERSION,
            "conversations": [conversation_to_dict(c) for c in conversations.values()],
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(document, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp_path, self._path)

    def list_conversations(self) -> list[Conversation]:
        """Conversations, most recently updated first."""
        return sorted(self._load().values(), key=lambda c: c.updated_at, reverse=True)

    def get(self, conversation_id: str) -> Conversation | None:
        return self._load().get(conversation_id)

    def save(self, conversation: Conversation) -> None:
        conversation.updated_at = now_ms()
        self._load()[conversation.id] = conversation
        self._write()
        logger.debug("Saved conversation %s (%d turns)", conversation.id, len(conversation.turns))

    def delete(self, conversation_id: str) -> bool:
        removed = self._load().pop(conversation_id, None) is not None
        if removed:
            self._write()
        return removed
