"""Field-level change detection for clinical-trial registry snapshots.

Only a fixed list of watched field paths is compared. Everything else in a
registry record (titles, contacts, locations) is ignored, both by the diff
and by the fingerprint hash used to skip unchanged records cheaply.
"""
import hashlib
import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from portfolio_watchman.models.schemas import ChangeType, DiffRecord

logger = logging.getLogger(__name__)

NO_CATALYST_DAYS = 999
MAX_CATALYST_DAYS = 365


@dataclass(frozen=True)
class WatchedField:
    path: tuple[str, ...]
    change_type: ChangeType
    label: str

    @property
    def dotted_path(self) -> str:
        return ".".join(self.path)


WATCHED_FIELDS: tuple[WatchedField, ...] = (
    WatchedField(
        ("protocolSection", "statusModule", "overallStatus"),
        ChangeType.TRIAL_STATUS_CHANGE,
        "Overall Status",
    ),
    WatchedField(
        ("protocolSection", "outcomesModule", "primaryOutcomes"),
        ChangeType.TRIAL_ENDPOINT_CHANGE,
        "Primary Outcomes",
    ),
    WatchedField(
        ("protocolSection", "statusModule", "completionDateStruct"),
        ChangeType.TRIAL_DATE_CHANGE,
        "Completion Date",
    ),
    WatchedField(
        ("protocolSection", "statusModule", "primaryCompletionDateStruct"),
        ChangeType.TRIAL_DATE_CHANGE,
        "Primary Completion Date",
    ),
    WatchedField(
        ("protocolSection", "designModule", "enrollmentInfo"),
        ChangeType.ENROLLMENT_CHANGE,
        "Enrollment Info",
    ),
)

_CATALYST_DATE_PATH = (
    "protocolSection",
    "statusModule",
    "primaryCompletionDateStruct",
)


def _get_nested(snapshot: dict[str, Any] | None, path: tuple[str, ...]) -> Any:
    current: Any = snapshot
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _canonical(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def snapshot_hash(snapshot: dict[str, Any] | None) -> str:
    """Fingerprint the watched fields of a snapshot."""
    parts = [_canonical(_get_nested(snapshot, f.path)) for f in WATCHED_FIELDS]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:16]


def diff_snapshots(
    old: dict[str, Any] | None,
    new: dict[str, Any] | None,
) -> list[DiffRecord]:
    diffs: list[DiffRecord] = []
    for watched in WATCHED_FIELDS:
        old_value = _canonical(_get_nested(old, watched.path))
        new_value = _canonical(_get_nested(new, watched.path))
        if old_value == new_value:
            continue
        diffs.append(
            DiffRecord(
                change_type=watched.change_type,
                field_path=watched.dotted_path,
                old_value=old_value,
                new_value=new_value,
                description=f"{watched.label} changed",
            )
        )
    return diffs


def _parse_registry_date(value: str) -> datetime | None:
    text = value.strip()
    try:
        return datetime.strptime(text[:10], "%Y-%m-%d")
    except ValueError:
        pass
    # Registry records often carry month precision only.
    try:
        return datetime.strptime(text, "%Y-%m")
    except ValueError:
        return None


def time_to_catalyst(
    snapshot: dict[str, Any] | None,
    now: datetime | None = None,
) -> int:
    """Days until the primary completion date, capped at a year.

    Returns 999 when the date is missing or unreadable and 0 once the date
    has been reached.
    """
    date_struct = _get_nested(snapshot, _CATALYST_DATE_PATH)
    if not isinstance(date_struct, dict) or not date_struct.get("date"):
        return NO_CATALYST_DAYS

    parsed = _parse_registry_date(str(date_struct["date"]))
    if parsed is None:
        logger.debug("Unparseable completion date: %s", date_struct["date"])
        return NO_CATALYST_DAYS

    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    target = parsed.replace(tzinfo=timezone.utc)

    seconds = (target - current).total_seconds()
    if seconds <= 0:
        return 0
    return min(math.ceil(seconds / 86400), MAX_CATALYST_DAYS)
