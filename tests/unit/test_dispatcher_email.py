from datetime import datetime, timezone

import requests

from portfolio_watchman.alerts import dispatcher
from portfolio_watchman.alerts.gate import NotificationContent
from portfolio_watchman.models.schemas import (
    DailyState,
    NotificationSettings,
    PortfolioState,
)

NOW = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)


class FakeStore:
    def __init__(self, settings: NotificationSettings | None):
        self.settings = settings
        self.last_sent: list[tuple[str, str]] = []

    def get_notification_settings(self) -> NotificationSettings | None:
        return self.settings

    def update_last_sent(self, user_id: str, sent_at: str) -> None:
        self.last_sent.append((user_id, sent_at))


def _fake_post(calls: list, status_code: int = 200):
    def fake_post(url, json, headers, timeout):
        calls.append((url, json, headers, timeout))

        class Response:
            pass

        response = Response()
        response.status_code = status_code
        return response

    return fake_post


def _daily(state: PortfolioState) -> DailyState:
    return DailyState(
        date="2026-10-16",
        state=state,
        summary=f"{state.value}: summary",
        top_detection_id=None,
        quiet_log_count=0,
    )


def test_send_email_posts_payload(monkeypatch) -> None:
    calls: list = []
    monkeypatch.setattr(dispatcher.requests, "post", _fake_post(calls))

    sent = dispatcher.send_notification(
        NotificationSettings(channel="email", email="pm@example.com"),
        NotificationContent(subject="Portfolio Watchman: Look", body="Body"),
        api_key="re_test",
    )

    assert sent is True
    url, payload, headers, timeout = calls[0]
    assert url == dispatcher.RESEND_URL
    assert payload["to"] == ["pm@example.com"]
    assert payload["subject"] == "Portfolio Watchman: Look"
    assert headers["Authorization"] == "Bearer re_test"
    assert timeout == 10


def test_send_email_failures_return_false(monkeypatch) -> None:
    calls: list = []
    settings = NotificationSettings(channel="email", email="pm@example.com")
    content = NotificationContent(subject="s", body="b")

    monkeypatch.setattr(dispatcher.requests, "post", _fake_post(calls, 500))
    assert dispatcher.send_notification(settings, content, api_key="re_test") is False

    def broken_post(url, json, headers, timeout):
        raise requests.ConnectionError("down")

    monkeypatch.setattr(dispatcher.requests, "post", broken_post)
    assert dispatcher.send_notification(settings, content, api_key="re_test") is False


def test_send_skips_without_api_key(monkeypatch) -> None:
    calls: list = []
    monkeypatch.setattr(dispatcher.requests, "post", _fake_post(calls))

    sent = dispatcher.send_notification(
        NotificationSettings(channel="email", email="pm@example.com"),
        NotificationContent(subject="s", body="b"),
        api_key="",
    )

    assert sent is False
    assert calls == []


def test_dispatch_records_last_sent(monkeypatch) -> None:
    calls: list = []
    monkeypatch.setattr(dispatcher.requests, "post", _fake_post(calls))
    store = FakeStore(NotificationSettings(channel="email", email="pm@example.com"))

    content = dispatcher.dispatch_cycle_notifications(
        store,
        _daily(PortfolioState.LOOK),
        PortfolioState.WATCH,
        None,
        api_key="re_test",
        now=NOW,
    )

    assert content is not None
    assert content.subject == "Portfolio Watchman: Look"
    assert len(calls) == 1
    assert store.last_sent == [("default", NOW.isoformat())]


def test_dispatch_sends_nothing_on_same_state(monkeypatch) -> None:
    calls: list = []
    monkeypatch.setattr(dispatcher.requests, "post", _fake_post(calls))
    store = FakeStore(NotificationSettings(channel="email", email="pm@example.com"))

    content = dispatcher.dispatch_cycle_notifications(
        store,
        _daily(PortfolioState.LOOK),
        PortfolioState.LOOK,
        None,
        api_key="re_test",
        now=NOW,
    )

    assert content is None
    assert calls == []
    assert store.last_sent == []


def test_failed_send_keeps_last_sent(monkeypatch) -> None:
    calls: list = []
    monkeypatch.setattr(dispatcher.requests, "post", _fake_post(calls, 422))
    store = FakeStore(NotificationSettings(channel="email", email="pm@example.com"))

    content = dispatcher.dispatch_cycle_notifications(
        store,
        _daily(PortfolioState.PAUSE),
        None,
        None,
        api_key="re_test",
        now=NOW,
    )

    assert content is None
    assert store.last_sent == []
