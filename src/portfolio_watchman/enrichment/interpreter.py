"""Optional interpretation of registry changes.

The interpreter itself (an LLM behind some API) lives outside this package.
Its output is stored on the detection as an opaque annotation and is never
used for scoring or policy decisions.
"""
from __future__ import annotations

import logging
from typing import Any, Protocol

from portfolio_watchman.models.schemas import Detection, PortfolioState, enum_value

logger = logging.getLogger(__name__)

FIELD_PATH_ALLOWLIST = (
    "overall_status",
    "overallstatus",
    "why_stopped",
    "primary_completion_date",
    "primarycompletiondate",
    "completion_date",
    "completiondate",
    "enrollment",
    "has_results",
    "phase",
)
INTERPRET_SCORE_THRESHOLD = 30
NOISE_FLAGS = {"low", "medium", "high"}
MAX_VALUE_LENGTH = 200


class Interpreter(Protocol):
    def interpret(self, evidence: dict[str, Any]) -> Any:
        ...


def should_interpret(
    detection: Detection,
    *,
    calls_this_run: int = 0,
    ticker_calls_today: int = 0,
    ticker_state: PortfolioState | None = None,
    max_per_run: int = 10,
    max_per_ticker: int = 2,
) -> tuple[bool, str]:
    if enum_value(detection.source_tier) != "primary_registry":
        return False, "not_registry"
    if not detection.nct_id:
        return False, "no_nct_id"
    if detection.annotation:
        return False, "already_interpreted"
    if calls_this_run >= max_per_run:
        return False, "max_calls_per_run"
    if ticker_calls_today >= max_per_ticker:
        return False, "max_calls_per_ticker"

    field_path = (detection.field_path or "").lower()
    if any(allowed in field_path for allowed in FIELD_PATH_ALLOWLIST):
        return True, "allowlist_field"
    if detection.score_final >= INTERPRET_SCORE_THRESHOLD:
        return True, "high_score"
    if ticker_state in (PortfolioState.LOOK, PortfolioState.PAUSE):
        return True, "elevated_state"
    return False, "below_threshold"


def _truncate(value: str | None, max_len: int = MAX_VALUE_LENGTH) -> str | None:
    if not value:
        return None
    if len(value) <= max_len:
        return value
    return value[:max_len] + "..."


def build_evidence_pack(
    detection: Detection,
    trial_meta: dict[str, str] | None = None,
) -> dict[str, Any]:
    meta = trial_meta or {}
    return {
        "ticker": detection.ticker,
        "nct_id": detection.nct_id or "",
        "field_path": detection.field_path or "",
        "old_value": _truncate(detection.old_value),
        "new_value": _truncate(detection.new_value),
        "official_title": meta.get("official_title"),
        "condition": meta.get("condition"),
        "phase": meta.get("phase"),
        "detected_at": detection.detected_at,
    }


def fallback_interpretation(field_path: str) -> dict[str, Any]:
    return {
        "why_it_matters": [
            f"Trial record changed: {field_path}",
            "Review context in the registry for details",
        ],
        "benign_explanation": "Could be routine administrative update",
        "bear_case": "May indicate substantive change to trial conduct",
        "next_checks": [
            "Check the registry history tab",
            "Review company press releases",
        ],
        "noise_flag": "high",
        "confidence": 0.2,
    }


def validate_interpretation(obj: Any) -> dict[str, Any] | None:
    if not isinstance(obj, dict):
        return None

    why = obj.get("why_it_matters")
    checks = obj.get("next_checks")
    if not isinstance(why, list) or not why:
        return None
    if not isinstance(checks, list) or not checks:
        return None
    if not isinstance(obj.get("benign_explanation"), str):
        return None
    if not isinstance(obj.get("bear_case"), str):
        return None

    noise_flag = obj.get("noise_flag")
    if noise_flag not in NOISE_FLAGS:
        noise_flag = "medium"

    confidence = obj.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = 0.5
    confidence = max(0.0, min(1.0, float(confidence)))

    return {
        "why_it_matters": [str(item) for item in why][:4],
        "benign_explanation": obj["benign_explanation"],
        "bear_case": obj["bear_case"],
        "next_checks": [str(item) for item in checks][:3],
        "noise_flag": noise_flag,
        "confidence": confidence,
    }


def enrich_detection(
    detection: Detection,
    interpreter: Interpreter,
    trial_meta: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Attach an annotation to the detection; failures use the fallback."""
    evidence = build_evidence_pack(detection, trial_meta)
    try:
        annotation = validate_interpretation(interpreter.interpret(evidence))
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "Interpretation failed for %s %s: %s",
            detection.ticker,
            detection.nct_id,
            exc,
        )
        annotation = None

    if annotation is None:
        annotation = fallback_interpretation(detection.field_path or "unknown")
    detection.annotation = annotation
    return annotation
