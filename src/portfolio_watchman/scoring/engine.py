import math

from portfolio_watchman.models.schemas import (
    ScoringContext,
    ScoringResult,
    enum_value,
)

BASE_SCORES: dict[str, int] = {
    "filing_new": 40,
    "filing_amended": 30,
    "pdufa_changed": 90,
    "trial_termination": 95,
    "halt": 100,
    "price_gap": 50,
    "misc": 10,
    "trial_status_change": 80,
    "trial_endpoint_change": 70,
    "trial_date_change": 50,
    "enrollment_change": 40,
}

NOISE_PENALTIES: dict[str, int] = {
    "primary_filing": 0,
    "primary_company": 2,
    "primary_registry": 2,
    "primary_regulator": 0,
    "secondary_news": 10,
    "tertiary_social": 20,
}

DEFAULT_BASE_SCORE = 10
DEFAULT_NOISE_PENALTY = 0
MAX_MARKET_SHOCK = 20


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _fmt(value: float) -> str:
    return f"{value:g}"


def compute_score(
    change_type: str,
    source_tier: str,
    context: ScoringContext,
) -> ScoringResult:
    """Score one detected change on a 0-100 scale.

    The noise penalty is a flat deduction applied after dependency scaling.
    Unknown change types and tiers fall back to the defaults above.
    """
    base = BASE_SCORES.get(enum_value(change_type), DEFAULT_BASE_SCORE)
    # Reserved slots: catalyst proximity and friction.
    proximity = 0
    friction = 0
    market_shock = 0.0
    if context.market_move is not None:
        market_shock = _clamp(abs(context.market_move) * 100, 0, MAX_MARKET_SHOCK)
    dependency = context.dependency
    noise = NOISE_PENALTIES.get(enum_value(source_tier), DEFAULT_NOISE_PENALTY)

    score_raw = base + proximity + friction + market_shock
    importance = _round_half_up(score_raw * dependency)
    score_final = int(_clamp(importance - noise, 0, 100))

    explanation = (
        f"Raw {_fmt(score_raw)} x {_fmt(dependency)} = {importance} "
        f"- {noise} = {score_final}"
    )
    if score_final == 0:
        explanation += " (suppressed by score)"

    return ScoringResult(
        base=base,
        proximity=proximity,
        friction=friction,
        market_shock=_round_half_up(market_shock),
        dependency=dependency,
        noise_penalty=noise,
        score_raw=score_raw,
        importance=importance,
        score_final=score_final,
        explanation=explanation,
    )
