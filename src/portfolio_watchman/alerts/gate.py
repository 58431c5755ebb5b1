"""Decide whether a poll cycle should send an outbound notification.

Only upward state changes notify. Escalation messages and quiet-log
messages share one sliding 24-hour rate limit measured from the last
successful send; a Pause can bypass it when the recipient allows that.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from portfolio_watchman.models.schemas import (
    DailyState,
    Detection,
    NotificationSettings,
    PortfolioState,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_WINDOW = timedelta(hours=24)
QUIET_LOG_THRESHOLD = 3


@dataclass(frozen=True)
class NotificationContent:
    subject: str
    body: str
    kind: str = "escalation"


def _parse_timestamp(value: str) -> datetime | None:
    cleaned = value.strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(cleaned)
    except ValueError:
        logger.warning("Unreadable last_sent_at timestamp: %s", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def sent_recently(settings: NotificationSettings, now: datetime | None = None) -> bool:
    if not settings.last_sent_at:
        return False
    last_sent = _parse_timestamp(settings.last_sent_at)
    if last_sent is None:
        return False
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current - last_sent < RATE_LIMIT_WINDOW


def should_notify(
    current_state: PortfolioState,
    previous_state: PortfolioState | None,
    settings: NotificationSettings,
    now: datetime | None = None,
) -> bool:
    if settings.channel == "none":
        return False

    previous_rank = previous_state.rank if previous_state else 0
    if current_state.rank <= previous_rank:
        return False

    if current_state == PortfolioState.PAUSE and settings.pause_push_enabled:
        return True

    if sent_recently(settings, now):
        return False

    if not settings.daily_push_enabled and current_state != PortfolioState.PAUSE:
        return False

    return True


def should_notify_quiet_log(
    quiet_count: int,
    settings: NotificationSettings,
    threshold: int = QUIET_LOG_THRESHOLD,
    now: datetime | None = None,
) -> bool:
    if settings.channel == "none":
        return False
    if not settings.quiet_push_enabled:
        return False
    if quiet_count <= threshold:
        return False
    if sent_recently(settings, now):
        return False
    return True


def build_notification_content(
    daily_state: DailyState,
    top_detection: Detection | None,
) -> NotificationContent:
    state_label = daily_state.state.value
    subject = f"Portfolio Watchman: {state_label}"
    body = daily_state.summary

    if top_detection:
        subject = f"Portfolio Watchman: {state_label} - {top_detection.ticker}"
        body = f"{daily_state.summary}\n\nTop item: {top_detection.title}"
        if top_detection.url:
            body += f"\nSource: {top_detection.url}"

    return NotificationContent(subject=subject, body=body)


def build_quiet_log_content(quiet_count: int, date: str) -> NotificationContent:
    return NotificationContent(
        subject="Portfolio Watchman: Quiet Log Alert",
        body=(
            f"{quiet_count} items were automatically suppressed or quarantined "
            f"on {date}. Review the quiet log to ensure no important signals "
            "were missed."
        ),
        kind="quiet_log",
    )


def plan_notification(
    daily_state: DailyState,
    previous_state: PortfolioState | None,
    top_detection: Detection | None,
    settings: NotificationSettings,
    now: datetime | None = None,
) -> NotificationContent | None:
    """Choose at most one message for this recipient and cycle."""
    if should_notify(daily_state.state, previous_state, settings, now):
        return build_notification_content(daily_state, top_detection)
    if should_notify_quiet_log(daily_state.quiet_log_count, settings, now=now):
        return build_quiet_log_content(daily_state.quiet_log_count, daily_state.date)
    return None
