import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from portfolio_watchman.alerts.dispatcher import dispatch_cycle_notifications
from portfolio_watchman.config import AppConfig, load_config, setup_logging
from portfolio_watchman.enrichment.interpreter import (
    Interpreter,
    enrich_detection,
    should_interpret,
)
from portfolio_watchman.errors import PolicyValidationError, SourceFetchError
from portfolio_watchman.models.schemas import (
    ChangeType,
    DailyState,
    Detection,
    EngineSettings,
    PolicyContext,
    PollRun,
    PortfolioState,
    ScoringContext,
    SourceTier,
    TrialMapping,
    WatchlistItem,
)
from portfolio_watchman.policy.engine import Policy, evaluate_detection, parse_policy
from portfolio_watchman.registry.diff import (
    NO_CATALYST_DAYS,
    diff_snapshots,
    snapshot_hash,
    time_to_catalyst,
)
from portfolio_watchman.scoring.engine import compute_score
from portfolio_watchman.sources import ctgov, edgar
from portfolio_watchman.sources.market import StubMarketProvider
from portfolio_watchman.state.machine import (
    DEFAULT_DEPENDENCY,
    compute_daily_state,
    select_top_detection,
)
from portfolio_watchman.storage.store import WatchmanStore

logger = logging.getLogger(__name__)

MISS_LOG_MOVE = 0.12


@dataclass
class CycleCounts:
    tickers_polled: int = 0
    new_detections: int = 0
    suppressed: int = 0
    quarantined: int = 0
    inserted: list[Detection] = field(default_factory=list)

    def record(self, detection: Detection) -> None:
        self.new_detections += 1
        if detection.suppressed:
            self.suppressed += 1
        if detection.quarantined:
            self.quarantined += 1
        self.inserted.append(detection)


def _iso(moment: datetime) -> str:
    return moment.isoformat()


def _load_policy(store: WatchmanStore) -> Policy:
    text = store.get_active_policy_text()
    if not text:
        return Policy()
    return parse_policy(text)


def build_detection(
    *,
    ticker: str,
    source_tier: SourceTier,
    change_type: ChangeType,
    title: str,
    policy: Policy,
    settings: EngineSettings,
    dependency: float,
    market_move: float | None,
    catalyst_days: int,
    detected_at: datetime,
    **fields: Any,
) -> Detection:
    """Evaluate policy and score for one raw change and wrap it as a detection."""
    detection = Detection(
        ticker=ticker,
        detected_at=_iso(detected_at),
        detected_date=detected_at.date().isoformat(),
        source_tier=source_tier.value,
        change_type=change_type.value,
        title=title,
        **fields,
    )
    decision = evaluate_detection(
        detection,
        policy,
        PolicyContext(market_gap=market_move, time_to_catalyst_days=catalyst_days),
        settings,
    )
    detection.apply_policy(decision)

    result = compute_score(
        change_type,
        source_tier,
        ScoringContext(
            dependency=dependency,
            market_move=market_move,
            time_to_catalyst_days=catalyst_days,
        ),
    )
    detection.score_raw = result.score_raw
    detection.score_final = result.score_final
    return detection


def poll_edgar_item(
    item: WatchlistItem,
    store: WatchmanStore,
    market: StubMarketProvider,
    policy: Policy,
    settings: EngineSettings,
    config: AppConfig,
    now: datetime,
    counts: CycleCounts,
) -> None:
    filings = edgar.fetch_submissions(item.cik, user_agent=config.sec_user_agent)
    new_filings = edgar.detect_new_filings(filings, item.last_filing_accession)
    today = now.date().isoformat()

    for filing in new_filings:
        change_type = (
            ChangeType.FILING_AMENDED if filing.is_amendment else ChangeType.FILING_NEW
        )
        detection = build_detection(
            ticker=item.ticker,
            source_tier=SourceTier.PRIMARY_FILING,
            change_type=change_type,
            title=f"{filing.form} filed {filing.filing_date}",
            policy=policy,
            settings=settings,
            dependency=item.dependency,
            market_move=market.daily_move(item.ticker, today),
            catalyst_days=NO_CATALYST_DAYS,
            detected_at=now,
            url=edgar.build_filing_url(
                item.cik, filing.accession_number, filing.primary_document
            ),
            accession=filing.accession_number,
        )
        if store.upsert_detection(detection):
            counts.record(detection)

    if new_filings:
        item.last_filing_accession = new_filings[0].accession_number


def poll_trial(
    mapping: TrialMapping,
    store: WatchmanStore,
    market: StubMarketProvider,
    policy: Policy,
    settings: EngineSettings,
    dependency_map: dict[str, float],
    now: datetime,
    counts: CycleCounts,
) -> None:
    study = ctgov.fetch_study(mapping.nct_id)
    if study is None:
        logger.info("No registry record for %s", mapping.nct_id)
        return

    new_hash = snapshot_hash(study)
    old_snapshot = store.load_snapshot(mapping.nct_id)
    # The first fetch only records a baseline.
    if mapping.last_hash and mapping.last_hash != new_hash and old_snapshot:
        catalyst_days = time_to_catalyst(study, now)
        today = now.date().isoformat()
        for diff in diff_snapshots(old_snapshot, study):
            detection = build_detection(
                ticker=mapping.ticker,
                source_tier=SourceTier.PRIMARY_REGISTRY,
                change_type=diff.change_type,
                title=f"CT.gov {diff.description}: {mapping.nct_id}",
                policy=policy,
                settings=settings,
                dependency=dependency_map.get(mapping.ticker, DEFAULT_DEPENDENCY),
                market_move=market.daily_move(mapping.ticker, today),
                catalyst_days=catalyst_days,
                detected_at=now,
                url=ctgov.study_url(mapping.nct_id),
                nct_id=mapping.nct_id,
                field_path=diff.field_path,
                old_value=diff.old_value,
                new_value=diff.new_value,
            )
            if store.upsert_detection(detection):
                counts.record(detection)

    store.update_trial_snapshot(mapping, new_hash, study, _iso(now))


def _trial_meta(snapshot: dict[str, Any] | None) -> dict[str, str]:
    protocol = (snapshot or {}).get("protocolSection") or {}
    identification = protocol.get("identificationModule") or {}
    conditions = (protocol.get("conditionsModule") or {}).get("conditions") or []
    phases = (protocol.get("designModule") or {}).get("phases") or []
    return {
        "official_title": identification.get("officialTitle") or "",
        "condition": ", ".join(conditions),
        "phase": ", ".join(phases),
    }


def enrich_new_detections(
    detections: list[Detection],
    store: WatchmanStore,
    interpreter: Interpreter,
    config: AppConfig,
    ticker_state: PortfolioState | None = None,
) -> int:
    """Annotate registry detections within the call budgets.

    ``ticker_state`` is the previous day's portfolio state; Look or Pause lets
    low-scoring changes through.
    """
    calls = 0
    per_ticker: dict[str, int] = {}
    for detection in detections:
        allowed, reason = should_interpret(
            detection,
            calls_this_run=calls,
            ticker_calls_today=per_ticker.get(detection.ticker, 0),
            ticker_state=ticker_state,
            max_per_run=config.max_llm_calls_per_run,
            max_per_ticker=config.max_llm_calls_per_ticker_per_day,
        )
        if not allowed:
            logger.debug("Skipping interpretation of %s: %s", detection.detection_id, reason)
            continue

        meta = _trial_meta(store.load_snapshot(detection.nct_id or ""))
        annotation = enrich_detection(detection, interpreter, meta)
        store.update_detection_annotation(detection.detection_id, annotation)
        calls += 1
        per_ticker[detection.ticker] = per_ticker.get(detection.ticker, 0) + 1
    return calls


def log_suppressed_moves(
    detections: list[Detection],
    store: WatchmanStore,
    market: StubMarketProvider,
    date: str,
) -> int:
    """Record suppressed detections whose ticker still moved sharply."""
    logged = 0
    for detection in detections:
        if not detection.suppressed:
            continue
        move = market.daily_move(detection.ticker, date)
        if move is None or abs(move) <= MISS_LOG_MOVE:
            continue
        if store.add_miss_log(
            detection.ticker,
            detection.detection_id,
            date,
            "suppressed-but-moved",
            move,
        ):
            logged += 1
    return logged


def run_poll(
    config: AppConfig,
    store: WatchmanStore | None = None,
    market: StubMarketProvider | None = None,
    now: datetime | None = None,
    interpreter: Interpreter | None = None,
) -> PollRun:
    """Run one poll cycle over every watched holding and trial."""
    store = store or WatchmanStore(
        config.data_dir,
        watchlist_csv=config.watchlist_csv,
        trials_csv=config.trials_csv,
        policy_path=config.policy_path,
    )
    market = market or StubMarketProvider(config.market_stub_path)
    now = now or datetime.now(timezone.utc)

    run = PollRun(run_id=str(uuid.uuid4()), started_at=_iso(now))
    store.record_poll_run(run)

    try:
        run = _run_cycle(run, config, store, market, now, interpreter)
    except PolicyValidationError as exc:
        logger.error("Active policy is invalid: %s", exc)
        _record_failure(store, run, f"Policy: {exc}")
        raise
    except Exception as exc:
        logger.exception("Poll run %s failed", run.run_id)
        _record_failure(store, run, str(exc))
        raise

    store.record_poll_run(run)
    return run


def _record_failure(store: WatchmanStore, run: PollRun, message: str) -> None:
    run.status = "error"
    run.finished_at = _iso(datetime.now(timezone.utc))
    run.errors = [message]
    store.record_poll_run(run)


def _run_cycle(
    run: PollRun,
    config: AppConfig,
    store: WatchmanStore,
    market: StubMarketProvider,
    now: datetime,
    interpreter: Interpreter | None,
) -> PollRun:
    today = now.date().isoformat()
    settings = config.engine_settings()
    counts = CycleCounts()
    errors: list[str] = []

    policy = _load_policy(store)
    items = store.load_watchlist()
    dependency_map = {item.ticker: item.dependency for item in items}

    for item in items:
        counts.tickers_polled += 1
        if item.cik:
            try:
                poll_edgar_item(
                    item, store, market, policy, settings, config, now, counts
                )
            except (SourceFetchError, ValueError) as exc:
                logger.warning("EDGAR poll failed for %s: %s", item.ticker, exc)
                errors.append(f"EDGAR {item.ticker}: {exc}")

        item.last_poll_at = _iso(now)
        item.next_check_in_at = _iso(now + timedelta(hours=item.poll_interval_hours))
        store.update_watchlist_item(item)

    for mapping in store.get_trial_mappings():
        try:
            poll_trial(
                mapping, store, market, policy, settings, dependency_map, now, counts
            )
        except (SourceFetchError, ValueError) as exc:
            logger.warning("CT.gov poll failed for %s: %s", mapping.nct_id, exc)
            errors.append(f"CT.gov {mapping.nct_id}: {exc}")

    previous = store.get_previous_daily_state(today)
    previous_state = previous.state if previous else None

    if config.enrichment_enabled and interpreter is not None:
        registry_new = [
            d
            for d in counts.inserted
            if d.source_tier == SourceTier.PRIMARY_REGISTRY.value
        ]
        enrich_new_detections(
            registry_new, store, interpreter, config, ticker_state=previous_state
        )

    detections = store.get_today_detections(today)
    daily_state = compute_daily_state(
        detections, dependency_map, settings, len(items), today
    )
    store.upsert_daily_state(daily_state)

    if settings.feedback_loop:
        log_suppressed_moves(detections, store, market, today)

    dispatch_cycle_notifications(
        store,
        daily_state,
        previous_state,
        select_top_detection(detections, dependency_map),
        config.resend_api_key,
        config.notify_from,
        now,
    )

    return replace(
        run,
        status="error" if errors else "ok",
        finished_at=_iso(datetime.now(timezone.utc)),
        tickers_polled=counts.tickers_polled,
        new_detections=counts.new_detections,
        suppressed_count=counts.suppressed,
        quarantined_count=counts.quarantined,
        resulting_state=daily_state.state.value,
        errors=errors,
    )


def _print_summary(run: PollRun, daily_state: DailyState | None) -> None:
    print(
        "Tickers polled: "
        f"{run.tickers_polled} | New detections: {run.new_detections} | "
        f"Suppressed: {run.suppressed_count} | Quarantined: {run.quarantined_count} | "
        f"State: {run.resulting_state}"
    )
    if daily_state:
        print(daily_state.summary)
    for error in run.errors:
        print(f"ERROR: {error}")


def run_daily() -> None:
    config = load_config()
    setup_logging(config.log_level)
    store = WatchmanStore(
        config.data_dir,
        watchlist_csv=config.watchlist_csv,
        trials_csv=config.trials_csv,
        policy_path=config.policy_path,
    )
    try:
        run = run_poll(config, store=store)
    except PolicyValidationError as exc:
        print(f"ERROR: active policy is invalid: {exc}")
        raise SystemExit(1)

    _print_summary(run, store.get_daily_state(run.started_at[:10]))


if __name__ == "__main__":
    run_daily()
