from portfolio_watchman.models.schemas import (
    DailyState,
    Detection,
    EngineSettings,
    PortfolioState,
)

DEFAULT_DEPENDENCY = 0.6
WATCH_FLOOR = 40


def _summary(state: PortfolioState, ticker_count: int) -> str:
    templates = {
        PortfolioState.CONTAINED: (
            f"Contained: no action needed for your {ticker_count} holdings."
        ),
        PortfolioState.WATCH: (
            f"Watch: one item worth monitoring across {ticker_count} holdings."
        ),
        PortfolioState.LOOK: "Look: one item needs a 60-second review.",
        PortfolioState.PAUSE: "Pause: something moved fast; open triage.",
    }
    return templates[state]


def select_top_detection(
    detections: list[Detection],
    dependency_map: dict[str, float],
) -> Detection | None:
    """Pick the single most important active detection.

    Weighted by portfolio dependency; on ties the earliest detection wins.
    """
    top: Detection | None = None
    top_score = -1.0
    for detection in detections:
        if detection.is_quiet:
            continue
        dependency = dependency_map.get(detection.ticker, DEFAULT_DEPENDENCY)
        weighted = detection.score_final * dependency
        if weighted > top_score:
            top_score = weighted
            top = detection
    return top


def resolve_state(
    detections: list[Detection],
    alert_threshold: int,
) -> PortfolioState:
    # Hard alerts count even when the detection was also quieted.
    if any(d.hard_alert for d in detections):
        return PortfolioState.PAUSE

    active = [d for d in detections if not d.is_quiet]
    if any(d.score_final >= alert_threshold for d in active):
        return PortfolioState.LOOK
    if any(WATCH_FLOOR <= d.score_final < alert_threshold for d in active):
        return PortfolioState.WATCH
    return PortfolioState.CONTAINED


def compute_daily_state(
    detections: list[Detection],
    dependency_map: dict[str, float],
    settings: EngineSettings,
    ticker_count: int,
    date: str,
) -> DailyState:
    state = resolve_state(detections, settings.alert_threshold)
    quiet_count = sum(1 for d in detections if d.is_quiet)
    top = select_top_detection(detections, dependency_map)

    return DailyState(
        date=date,
        state=state,
        summary=_summary(state, ticker_count),
        top_detection_id=top.detection_id if top and top.detection_id else None,
        quiet_log_count=quiet_count,
    )
