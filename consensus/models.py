"""Dataclasses for conversations, turns, rounds and gateway events. No I/O."""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["system", "user", "assistant"]
Status = Literal["pending", "streaming", "complete", "error"]
Mode = Literal["debate", "direct", "parallel"]

TERMINATION_REASONS = (
    "converged",
    "max_rounds_reached",
    "cancelled",
    "all_models_failed",
    "parallel_only",
    "ensemble_vote",
    "legacy_single_round",
)


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class Usage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    cost: float | None = None
    reasoning_tokens: int | None = None

    @classmethod
    def from_dict(cls, raw: dict | None) -> "Usage | None":
        """Build from a wire dict. Accepts snake_case or camelCase keys."""
        if not isinstance(raw, dict):
            return None

        def pick(*keys: str) -> Any:
            for key in keys:
                if raw.get(key) is not None:
                    return raw[key]
            return None

        return cls(
            prompt_tokens=pick("prompt_tokens", "promptTokens"),
            completion_tokens=pick("completion_tokens", "completionTokens"),
            total_tokens=pick("total_tokens", "totalTokens"),
            cost=pick("cost"),
            reasoning_tokens=pick("reasoning_tokens", "reasoningTokens"),
        )


@dataclass
class Message:
    role: Role
    content: str | list[dict]  # list form carries multimodal parts

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass
class Attachment:
    name: str
    content: str              # extracted text, or a data: URL for images
    category: str = "text"    # "text" or "image"
    mime_type: str | None = None


@dataclass
class StreamEvent:
    """One normalized gateway event."""

    type: str                 # "content", "reasoning", "usage", "done", "error"
    delta: str | None = None
    usage: Usage | None = None
    message: str | None = None
    kind: str | None = None   # error kind, see providers.base
    status: int | None = None

    def to_payload(self) -> dict:
        payload: dict[str, Any] = {"type": self.type}
        if self.type in ("content", "reasoning"):
            payload["delta"] = self.delta or ""
        elif self.type in ("done", "usage"):
            payload["usage"] = _usage_dict(self.usage)
        elif self.type == "error":
            payload["message"] = self.message or "Request failed"
            if self.kind:
                payload["kind"] = self.kind
            if self.status:
                payload["status"] = self.status
        return payload

    @classmethod
    def from_payload(cls, payload: dict) -> "StreamEvent":
        return cls(
            type=str(payload.get("type", "")),
            delta=payload.get("delta"),
            usage=Usage.from_dict(payload.get("usage")),
            message=payload.get("message"),
            kind=payload.get("kind"),
            status=payload.get("status"),
        )


@dataclass
class ChatResult:
    content: str
    reasoning: str | None = None
    usage: Usage | None = None
    duration_ms: int | None = None

    def to_payload(self) -> dict:
        return {"content": self.content, "reasoning": self.reasoning, "usage": _usage_dict(self.usage)}


def _usage_dict(usage: Usage | None) -> dict | None:
    if usage is None:
        return None
    return {
        "prompt_tokens": usage.prompt_tokens,
        "completion_tokens": usage.completion_tokens,
        "total_tokens": usage.total_tokens,
        "cost": usage.cost,
        "reasoning_tokens": usage.reasoning_tokens,
    }


@dataclass
class Stream:
    model: str
    content: str = ""
    status: Status = "pending"
    error: str | None = None
    usage: Usage | None = None
    duration_ms: int | None = None
    reasoning: str | None = None
    carried_forward: bool = False


@dataclass
class ConvergenceCheck:
    converged: bool | None = None   # None while the check is running
    reason: str = ""
    confidence: int | None = None
    agreements: list[str] = field(default_factory=list)
    disagreements: list[str] = field(default_factory=list)
    raw_response: str | None = None


@dataclass
class Round:
    round_number: int
    label: str
    streams: list[Stream] = field(default_factory=list)
    status: Status = "pending"
    convergence_check: ConvergenceCheck | None = None


@dataclass
class Outlier:
    model: str
    reason: str = ""


@dataclass
class EnsembleResult:
    status: str = "analyzing"       # "analyzing", "complete", "error"
    confidence: int | None = None
    outliers: list[Outlier] = field(default_factory=list)
    agreement_areas: list[str] = field(default_factory=list)
    disagreement_areas: list[str] = field(default_factory=list)
    model_weights: dict[str, float] = field(default_factory=dict)
    raw_analysis: str = ""
    usage: Usage | None = None
    duration_ms: int | None = None
    error: str | None = None


@dataclass
class Synthesis:
    model: str
    content: str = ""
    status: Status = "pending"
    error: str | None = None
    usage: Usage | None = None
    duration_ms: int | None = None
    completed_at: int | None = None


@dataclass
class WebSearchResult:
    model: str
    status: str = "searching"       # "searching", "complete", "error"
    content: str = ""
    error: str | None = None
    duration_ms: int | None = None


@dataclass
class DebateMetadata:
    total_rounds: int = 0
    converged: bool = False
    termination_reason: str | None = None


@dataclass
class Turn:
    user_prompt: str
    mode: Mode
    synthesis: Synthesis
    id: str = field(default_factory=new_id)
    timestamp: int = field(default_factory=now_ms)
    attachments: list[Attachment] = field(default_factory=list)
    rounds: list[Round] = field(default_factory=list)
    ensemble_result: EnsembleResult | None = None
    web_search_result: WebSearchResult | None = None
    debate_metadata: DebateMetadata = field(default_factory=DebateMetadata)


@dataclass
class Conversation:
    id: str = field(default_factory=new_id)
    title: str = "New Debate"
    description: str = ""
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    turns: list[Turn] = field(default_factory=list)
    running_summary: str | None = None
