"""File-backed persistence for poll cycles.

Every write is keyed so a re-run of the same cycle is idempotent:
detections are insert-if-absent on their natural key, daily states are
upserted by date and poll runs by run id.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any

from portfolio_watchman.models.schemas import (
    DailyState,
    Detection,
    NotificationSettings,
    PollRun,
    PortfolioState,
    TrialMapping,
    WatchlistItem,
)
from portfolio_watchman.policy.engine import Policy, parse_policy
from portfolio_watchman.storage.csv_store import read_csv, read_json, write_csv, write_json

logger = logging.getLogger(__name__)

DAILY_STATE_FIELDS = ["date", "state", "summary", "top_detection_id", "quiet_log_count"]
MISS_LOG_FIELDS = ["ticker", "detection_id", "date", "reason", "move_1d"]


def _parse_bool(value: str | None, default: bool) -> bool:
    if not value:
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False

    return default


def _parse_float(value: str | None, default: float) -> float:
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Invalid number in store: %s", value)
        return default


def _parse_int(value: str | None, default: int) -> int:
    if not value:
        return default
    try:
        return int(float(value))
    except ValueError:
        logger.warning("Invalid integer in store: %s", value)
        return default


def _to_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(getattr(value, "value", value))


def _row(obj: Any) -> dict[str, str]:
    return {key: _to_cell(value) for key, value in asdict(obj).items()}


def _optional(value: str | None) -> str | None:
    return value if value else None


def _fieldnames(cls: type) -> list[str]:
    return [field.name for field in fields(cls)]


def detection_from_row(row: dict[str, str]) -> Detection:
    annotation_raw = row.get("annotation", "")
    return Detection(
        ticker=row.get("ticker", ""),
        detected_at=row.get("detected_at", ""),
        source_tier=row.get("source_tier", ""),
        change_type=row.get("change_type", ""),
        title=row.get("title", ""),
        detection_id=row.get("detection_id", ""),
        detected_date=row.get("detected_date", ""),
        url=_optional(row.get("url")),
        accession=_optional(row.get("accession")),
        nct_id=_optional(row.get("nct_id")),
        field_path=_optional(row.get("field_path")),
        old_value=_optional(row.get("old_value")),
        new_value=_optional(row.get("new_value")),
        confidence=_parse_float(row.get("confidence"), 1.0),
        suppressed=_parse_bool(row.get("suppressed"), False),
        quarantined=_parse_bool(row.get("quarantined"), False),
        hard_alert=_parse_bool(row.get("hard_alert"), False),
        score_raw=_parse_float(row.get("score_raw"), 0.0),
        score_final=_parse_int(row.get("score_final"), 0),
        policy_match_id=_optional(row.get("policy_match_id")),
        policy_match_label=_optional(row.get("policy_match_label")),
        annotation=json.loads(annotation_raw) if annotation_raw else None,
    )


class WatchmanStore:
    def __init__(
        self,
        data_dir: Path,
        watchlist_csv: Path | None = None,
        trials_csv: Path | None = None,
        policy_path: Path | None = None,
    ):
        self.data_dir = data_dir
        self.watchlist_csv = watchlist_csv or data_dir / "watchlist.csv"
        self.trials_csv = trials_csv or data_dir / "trials.csv"
        self.policy_path = policy_path or data_dir / "policy.yaml"
        self.detections_csv = data_dir / "detections.csv"
        self.daily_state_csv = data_dir / "daily_state.csv"
        self.notification_csv = data_dir / "notification_settings.csv"
        self.poll_runs_csv = data_dir / "poll_runs.csv"
        self.miss_log_csv = data_dir / "miss_log.csv"
        self.snapshot_dir = data_dir / "snapshots"

    # Watchlist

    def load_watchlist(self) -> list[WatchlistItem]:
        items: list[WatchlistItem] = []
        for row in read_csv(self.watchlist_csv):
            ticker = row.get("ticker", "").strip().upper()
            if not ticker:
                continue
            items.append(
                WatchlistItem(
                    ticker=ticker,
                    cik=row.get("cik", "").strip(),
                    dependency=_parse_float(row.get("dependency"), 0.6),
                    last_filing_accession=row.get("last_filing_accession", ""),
                    poll_interval_hours=_parse_int(row.get("poll_interval_hours"), 24),
                    last_poll_at=row.get("last_poll_at", ""),
                    next_check_in_at=row.get("next_check_in_at", ""),
                )
            )
        return items

    def update_watchlist_item(self, item: WatchlistItem) -> None:
        rows = [_row(existing) for existing in self.load_watchlist()]
        updated = _row(item)
        replaced = False
        for idx, row in enumerate(rows):
            if row["ticker"] == item.ticker:
                rows[idx] = updated
                replaced = True
        if not replaced:
            rows.append(updated)
        write_csv(self.watchlist_csv, rows, _fieldnames(WatchlistItem))

    # Detections

    def _load_detection_rows(self) -> list[dict[str, str]]:
        return read_csv(self.detections_csv)

    def upsert_detection(self, detection: Detection) -> bool:
        """Insert unless a detection with the same natural key exists."""
        if not detection.detected_date:
            detection.detected_date = detection.detected_at[:10]
        key = detection.natural_key()
        for row in self._load_detection_rows():
            if detection_from_row(row).natural_key() == key:
                logger.debug("Detection already stored: %s", key)
                return False

        if not detection.detection_id:
            detection.detection_id = str(uuid.uuid4())
        write_csv(
            self.detections_csv,
            [_row(detection)],
            _fieldnames(Detection),
            append=True,
        )
        return True

    def update_detection_annotation(
        self,
        detection_id: str,
        annotation: dict[str, Any],
    ) -> None:
        rows = self._load_detection_rows()
        for row in rows:
            if row.get("detection_id") == detection_id:
                row["annotation"] = _to_cell(annotation)
        write_csv(self.detections_csv, rows, _fieldnames(Detection))

    def get_today_detections(self, date: str) -> list[Detection]:
        detections: list[Detection] = []
        for row in self._load_detection_rows():
            detection = detection_from_row(row)
            day = detection.detected_date or detection.detected_at[:10]
            if day == date:
                detections.append(detection)
        return detections

    # Trials

    def get_trial_mappings(self) -> list[TrialMapping]:
        mappings: list[TrialMapping] = []
        for row in read_csv(self.trials_csv):
            nct_id = row.get("nct_id", "").strip().upper()
            if not nct_id:
                continue
            mappings.append(
                TrialMapping(
                    ticker=row.get("ticker", "").strip().upper(),
                    nct_id=nct_id,
                    label=row.get("label", ""),
                    last_hash=row.get("last_hash", ""),
                    last_fetched_at=row.get("last_fetched_at", ""),
                )
            )
        return mappings

    def _snapshot_path(self, nct_id: str) -> Path:
        return self.snapshot_dir / f"{nct_id}.json"

    def load_snapshot(self, nct_id: str) -> dict[str, Any] | None:
        return read_json(self._snapshot_path(nct_id))

    def update_trial_snapshot(
        self,
        mapping: TrialMapping,
        new_hash: str,
        snapshot: dict[str, Any],
        fetched_at: str,
    ) -> None:
        write_json(self._snapshot_path(mapping.nct_id), snapshot)
        mapping.last_hash = new_hash
        mapping.last_fetched_at = fetched_at

        rows = [_row(existing) for existing in self.get_trial_mappings()]
        for idx, row in enumerate(rows):
            if row["nct_id"] == mapping.nct_id and row["ticker"] == mapping.ticker:
                rows[idx] = _row(mapping)
        write_csv(self.trials_csv, rows, _fieldnames(TrialMapping))

    # Daily state

    def _load_daily_states(self) -> list[DailyState]:
        states: list[DailyState] = []
        for row in read_csv(self.daily_state_csv):
            try:
                state = PortfolioState(row.get("state", ""))
            except ValueError:
                logger.warning("Unknown state %r on %s", row.get("state"), row.get("date"))
                continue
            states.append(
                DailyState(
                    date=row.get("date", ""),
                    state=state,
                    summary=row.get("summary", ""),
                    top_detection_id=_optional(row.get("top_detection_id")),
                    quiet_log_count=_parse_int(row.get("quiet_log_count"), 0),
                )
            )
        return states

    def get_daily_state(self, date: str) -> DailyState | None:
        for state in self._load_daily_states():
            if state.date == date:
                return state
        return None

    def get_previous_daily_state(self, date: str) -> DailyState | None:
        earlier = [state for state in self._load_daily_states() if state.date < date]
        if not earlier:
            return None
        return max(earlier, key=lambda state: state.date)

    def upsert_daily_state(self, daily_state: DailyState) -> None:
        states = [s for s in self._load_daily_states() if s.date != daily_state.date]
        states.append(daily_state)
        states.sort(key=lambda state: state.date)
        write_csv(self.daily_state_csv, [_row(s) for s in states], DAILY_STATE_FIELDS)

    # Notifications

    def _load_notification_settings(self) -> list[NotificationSettings]:
        settings: list[NotificationSettings] = []
        for row in read_csv(self.notification_csv):
            settings.append(
                NotificationSettings(
                    user_id=row.get("user_id", "") or "default",
                    channel=(row.get("channel", "") or "none").strip().lower(),
                    email=row.get("email", ""),
                    daily_push_enabled=_parse_bool(row.get("daily_push_enabled"), True),
                    pause_push_enabled=_parse_bool(row.get("pause_push_enabled"), True),
                    quiet_push_enabled=_parse_bool(row.get("quiet_push_enabled"), False),
                    last_sent_at=_optional(row.get("last_sent_at")),
                )
            )
        return settings

    def get_notification_settings(self, user_id: str = "default") -> NotificationSettings | None:
        for settings in self._load_notification_settings():
            if settings.user_id == user_id:
                return settings
        return None

    def save_notification_settings(self, settings: NotificationSettings) -> None:
        existing = [
            s for s in self._load_notification_settings() if s.user_id != settings.user_id
        ]
        existing.append(settings)
        write_csv(
            self.notification_csv,
            [_row(s) for s in existing],
            _fieldnames(NotificationSettings),
        )

    def update_last_sent(self, user_id: str, sent_at: str) -> None:
        settings = self.get_notification_settings(user_id)
        if settings is None:
            logger.warning("No notification settings for %s", user_id)
            return
        settings.last_sent_at = sent_at
        self.save_notification_settings(settings)

    # Policy

    def get_active_policy_text(self) -> str:
        if not self.policy_path.exists():
            return ""
        return self.policy_path.read_text(encoding="utf-8")

    def activate_policy(self, text: str) -> Policy:
        """Validate and store a new policy; on failure the old one stays."""
        policy = parse_policy(text)
        self.policy_path.parent.mkdir(parents=True, exist_ok=True)
        self.policy_path.write_text(text, encoding="utf-8")
        logger.info(
            "Activated policy: %d suppression, %d hard-alert rules",
            len(policy.suppression),
            len(policy.hard_alerts),
        )
        return policy

    # Audit

    def record_poll_run(self, run: PollRun) -> None:
        rows = [row for row in read_csv(self.poll_runs_csv) if row.get("run_id") != run.run_id]
        row = _row(run)
        row["errors"] = json.dumps(run.errors)
        rows.append(row)
        write_csv(self.poll_runs_csv, rows, _fieldnames(PollRun))

    def get_poll_runs(self) -> list[PollRun]:
        runs: list[PollRun] = []
        for row in read_csv(self.poll_runs_csv):
            errors_raw = row.get("errors", "")
            runs.append(
                PollRun(
                    run_id=row.get("run_id", ""),
                    started_at=row.get("started_at", ""),
                    status=row.get("status", ""),
                    finished_at=row.get("finished_at", ""),
                    tickers_polled=_parse_int(row.get("tickers_polled"), 0),
                    new_detections=_parse_int(row.get("new_detections"), 0),
                    suppressed_count=_parse_int(row.get("suppressed_count"), 0),
                    quarantined_count=_parse_int(row.get("quarantined_count"), 0),
                    resulting_state=row.get("resulting_state", ""),
                    errors=json.loads(errors_raw) if errors_raw else [],
                )
            )
        return runs

    def add_miss_log(
        self,
        ticker: str,
        detection_id: str,
        date: str,
        reason: str,
        move: float,
    ) -> bool:
        for row in read_csv(self.miss_log_csv):
            if row.get("ticker") == ticker and row.get("date") == date:
                return False
        write_csv(
            self.miss_log_csv,
            [
                {
                    "ticker": ticker,
                    "detection_id": detection_id,
                    "date": date,
                    "reason": reason,
                    "move_1d": str(move),
                }
            ],
            MISS_LOG_FIELDS,
            append=True,
        )
        return True
