from __future__ import annotations

import logging
from datetime import datetime, timezone

import requests

from portfolio_watchman.alerts.gate import NotificationContent, plan_notification
from portfolio_watchman.models.schemas import (
    DailyState,
    Detection,
    NotificationSettings,
    PortfolioState,
)

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
DEFAULT_SENDER = "Portfolio Watchman <onboarding@resend.dev>"


def send_notification(
    settings: NotificationSettings,
    content: NotificationContent,
    api_key: str,
    sender: str = DEFAULT_SENDER,
) -> bool:
    """Deliver one message. Returns True only when the provider accepted it."""
    if settings.channel == "email":
        if not api_key or not settings.email:
            logger.info(
                "Email not configured, would send to %s: %s",
                settings.email or "n/a",
                content.subject,
            )
            return False

        payload = {
            "from": sender,
            "to": [settings.email],
            "subject": content.subject,
            "text": content.body,
        }
        try:
            response = requests.post(
                RESEND_URL,
                json=payload,
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10,
            )
        except requests.RequestException as exc:
            logger.error("Email send failed: %s", exc)
            return False

        if not 200 <= response.status_code < 300:
            logger.error("Email send failed: status %s", response.status_code)
            return False
        return True

    if settings.channel == "push":
        logger.info("Push delivery is not wired up; dropping: %s", content.subject)
        return False

    return False


def dispatch_cycle_notifications(
    store,
    daily_state: DailyState,
    previous_state: PortfolioState | None,
    top_detection: Detection | None,
    api_key: str,
    sender: str = DEFAULT_SENDER,
    now: datetime | None = None,
) -> NotificationContent | None:
    """Evaluate, send and record at most one notification for this cycle."""
    settings = store.get_notification_settings()
    if settings is None:
        return None

    content = plan_notification(
        daily_state, previous_state, top_detection, settings, now
    )
    if content is None:
        return None

    if not send_notification(settings, content, api_key, sender):
        return None

    sent_at = (now or datetime.now(timezone.utc)).isoformat()
    store.update_last_sent(settings.user_id, sent_at)
    logger.info("Sent %s notification: %s", content.kind, content.subject)
    return content
