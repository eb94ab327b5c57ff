"""Parse judge replies (convergence checks, ensemble votes) without ever raising.

Judges are asked for bare JSON but often wrap it in prose or code fences.
Parsing tries, in order: the whole reply, the reply with fences stripped, the
first non-greedy ``{...}`` containing the expected key, then the widest
``{...}`` span. Anything else falls back to safe defaults.
"""

import json
import logging
import re
from typing import Any

from consensus.models import ConvergenceCheck, EnsembleResult, Outlier

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

NEUTRAL_CONFIDENCE = 50
UNPARSEABLE_CONVERGENCE = "Could not parse convergence response"


def _loads_object(text: str) -> dict | None:
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_json_object(text: str | None, required_key: str | None = None) -> dict | None:
    """Best-effort JSON object from a model reply; None when nothing parses."""
    if not text or not isinstance(text, str):
        return None
    stripped = text.strip()

    for candidate in (stripped, _FENCE_RE.sub("", stripped).strip()):
        parsed = _loads_object(candidate)
        if parsed is not None:
            return parsed

    patterns = []
    if required_key:
        patterns.append(re.compile(r"\{[\s\S]*?\"" + re.escape(required_key) + r"\"[\s\S]*?\}"))
    patterns.append(re.compile(r"\{[\s\S]*\}"))
    for pattern in patterns:
        match = pattern.search(stripped)
        if match:
            parsed = _loads_object(match.group(0))
            if parsed is not None:
                return parsed
    return None


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None and str(v).strip()]


def _clamp_confidence(value: Any) -> int | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    return int(round(min(max(number, 0.0), 100.0)))


def parse_convergence_response(text: str | None) -> ConvergenceCheck:
    """Read a convergence verdict. Unparseable replies count as not converged."""
    parsed = extract_json_object(text, required_key="converged")
    if parsed is None or "converged" not in parsed:
        logger.warning("Unparseable convergence response: %.200s", text or "")
        return ConvergenceCheck(converged=False, reason=UNPARSEABLE_CONVERGENCE, raw_response=text)

    return ConvergenceCheck(
        converged=parsed.get("converged") is True or str(parsed.get("converged")).lower() == "true",
        reason=str(parsed.get("reason") or "No reason provided"),
        confidence=_clamp_confidence(parsed.get("confidence")),
        agreements=_as_str_list(parsed.get("agreements")),
        disagreements=_as_str_list(parsed.get("disagreements")),
        raw_response=text,
    )


def _parse_weights(raw: Any, answered: set[str] | None) -> dict[str, float]:
    if not isinstance(raw, dict):
        return {}
    weights: dict[str, float] = {}
    for model, value in raw.items():
        if answered is not None and model not in answered:
            continue
        try:
            weight = float(value)
        except (TypeError, ValueError):
            continue
        if weight != weight:
            continue
        weights[str(model)] = min(max(weight, 0.0), 1.0)
    return weights


def _parse_outliers(raw: Any) -> list[Outlier]:
    if not isinstance(raw, list):
        return []
    outliers = []
    for item in raw:
        if isinstance(item, dict) and item.get("model"):
            outliers.append(Outlier(model=str(item["model"]), reason=str(item.get("reason") or "")))
        elif isinstance(item, str) and item.strip():
            outliers.append(Outlier(model=item.strip()))
    return outliers


def parse_ensemble_vote_response(text: str | None, answered_models: list[str] | None = None) -> EnsembleResult:
    """Read an ensemble vote.

    Weights are kept only for ``answered_models`` (when given) and clamped to
    [0, 1]; confidence is clamped to [0, 100]. An unparseable reply yields the
    neutral result with confidence 50.
    """
    answered = set(answered_models) if answered_models is not None else None
    parsed = extract_json_object(text, required_key="confidence")
    if parsed is None:
        logger.warning("Unparseable ensemble vote: %.200s", text or "")
        return EnsembleResult(status="complete", confidence=NEUTRAL_CONFIDENCE, raw_analysis=text or "")

    confidence = _clamp_confidence(parsed.get("confidence"))
    return EnsembleResult(
        status="complete",
        confidence=NEUTRAL_CONFIDENCE if confidence is None else confidence,
        outliers=_parse_outliers(parsed.get("outliers")),
        agreement_areas=_as_str_list(parsed.get("agreementAreas", parsed.get("agreement_areas"))),
        disagreement_areas=_as_str_list(parsed.get("disagreementAreas", parsed.get("disagreement_areas"))),
        model_weights=_parse_weights(parsed.get("modelWeights", parsed.get("model_weights")), answered),
        raw_analysis=text or "",
    )


def neutral_vote(error: str | None = None) -> EnsembleResult:
    """Defaults used when the judge call itself fails."""
    return EnsembleResult(status="error", confidence=NEUTRAL_CONFIDENCE, error=error)
