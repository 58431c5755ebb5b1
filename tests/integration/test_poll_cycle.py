import copy
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from portfolio_watchman import pipeline
from portfolio_watchman.alerts import dispatcher
from portfolio_watchman.config import AppConfig
from portfolio_watchman.errors import PolicyValidationError, SourceFetchError
from portfolio_watchman.models.schemas import (
    DailyState,
    Detection,
    FilingRecord,
    PortfolioState,
)
from portfolio_watchman.policy.engine import DEFAULT_POLICY_YAML
from portfolio_watchman.registry.diff import snapshot_hash
from portfolio_watchman.sources.market import StubMarketProvider
from portfolio_watchman.storage.store import WatchmanStore

DAY_ONE = datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc)
DAY_TWO = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)

STUDY_V1 = {
    "protocolSection": {
        "identificationModule": {"officialTitle": "ENVISION: A Phase 3 Gene Therapy Study"},
        "conditionsModule": {"conditions": ["Duchenne Muscular Dystrophy"]},
        "statusModule": {
            "overallStatus": "RECRUITING",
            "primaryCompletionDateStruct": {"date": "2027-06-30"},
        },
        "designModule": {"phases": ["PHASE3"], "enrollmentInfo": {"count": 148}},
    }
}


def _filing(accession: str, form: str = "8-K", filing_date: str = "2026-10-14") -> FilingRecord:
    return FilingRecord(
        form=form,
        filing_date=filing_date,
        accession_number=accession,
        primary_document="doc.htm",
        is_amendment=form.endswith("/A"),
    )


class StaticInterpreter:
    def interpret(self, evidence):
        return {
            "why_it_matters": [f"{evidence['nct_id']} stopped enrolling"],
            "benign_explanation": "Enrollment target reached early",
            "bear_case": "Safety signal",
            "next_checks": ["Check the company press release"],
            "noise_flag": "low",
            "confidence": 0.7,
        }


def _write_data(data_dir: Path) -> None:
    (data_dir / "watchlist.csv").write_text(
        "ticker,cik,dependency\nSRPT,0000873303,1.0\nVRTX,0000875320,0.5\n",
        encoding="utf-8",
    )
    (data_dir / "trials.csv").write_text(
        "ticker,nct_id,label\nSRPT,NCT05096221,ENVISION\n", encoding="utf-8"
    )
    (data_dir / "policy.yaml").write_text(DEFAULT_POLICY_YAML, encoding="utf-8")
    (data_dir / "market_stub.json").write_text(
        json.dumps({"2026-10-16": {"SRPT": -0.25}}), encoding="utf-8"
    )
    (data_dir / "notification_settings.csv").write_text(
        "user_id,channel,email\ndefault,email,pm@example.com\n", encoding="utf-8"
    )


def _config(data_dir: Path, **overrides) -> AppConfig:
    values = {
        "data_dir": data_dir,
        "watchlist_csv": data_dir / "watchlist.csv",
        "trials_csv": data_dir / "trials.csv",
        "policy_path": data_dir / "policy.yaml",
        "market_stub_path": data_dir / "market_stub.json",
        "resend_api_key": "re_test",
    }
    values.update(overrides)
    return AppConfig(**values)


def test_poll_cycle_over_two_days(tmp_path: Path, monkeypatch) -> None:
    _write_data(tmp_path)
    study_v2 = copy.deepcopy(STUDY_V1)
    study_v2["protocolSection"]["statusModule"]["overallStatus"] = "ACTIVE_NOT_RECRUITING"
    source = {
        "filings": [_filing("0000873303-26-000050"), _filing("0000873303-26-000049", "10-Q/A")],
        "study": STUDY_V1,
        "vrtx_down": True,
    }

    def fake_fetch_submissions(cik, user_agent):
        if cik == "0000875320":
            if source["vrtx_down"]:
                raise SourceFetchError("edgar", "EDGAR fetch failed for CIK 875320: 503", 503)
            return []
        return source["filings"]

    posts: list[dict] = []

    def fake_post(url, json, headers, timeout):
        posts.append(json)

        class Response:
            status_code = 200

        return Response()

    monkeypatch.setattr(pipeline.edgar, "fetch_submissions", fake_fetch_submissions)
    monkeypatch.setattr(pipeline.ctgov, "fetch_study", lambda nct_id: source["study"])
    monkeypatch.setattr(dispatcher.requests, "post", fake_post)

    store = WatchmanStore(tmp_path)
    config = _config(tmp_path, enrichment_enabled=True)

    first = pipeline.run_poll(config, store=store, now=DAY_ONE)

    assert first.status == "error"
    assert first.errors == ["EDGAR VRTX: EDGAR fetch failed for CIK 875320: 503"]
    assert first.tickers_polled == 2
    assert first.new_detections == 2
    assert first.resulting_state == "Watch"
    assert store.get_daily_state("2026-10-15").state == PortfolioState.WATCH
    assert store.load_watchlist()[0].last_filing_accession == "0000873303-26-000050"
    assert store.get_trial_mappings()[0].last_hash == snapshot_hash(STUDY_V1)
    assert store.get_poll_runs()[-1].status == "error"
    assert len(posts) == 1
    assert posts[0]["subject"] == "Portfolio Watchman: Watch - SRPT"

    source["filings"] = [_filing("0000873303-26-000051", filing_date="2026-10-16")] + source[
        "filings"
    ]
    source["study"] = study_v2
    source["vrtx_down"] = False

    second = pipeline.run_poll(
        config, store=store, now=DAY_TWO, interpreter=StaticInterpreter()
    )

    assert second.status == "ok"
    assert second.errors == []
    assert second.new_detections == 2
    assert second.resulting_state == "Pause"

    today = {d.change_type: d for d in store.get_today_detections("2026-10-16")}
    registry = today["trial_status_change"]
    assert registry.title == "CT.gov Overall Status changed: NCT05096221"
    assert registry.old_value == "RECRUITING"
    assert registry.hard_alert is True
    assert registry.policy_match_id == "H2"
    assert registry.score_final == 98
    assert registry.annotation["noise_flag"] == "low"
    assert today["filing_new"].score_final == 60

    daily = store.get_daily_state("2026-10-16")
    assert daily.state == PortfolioState.PAUSE
    assert daily.top_detection_id == registry.detection_id
    assert len(posts) == 2
    assert posts[1]["subject"] == "Portfolio Watchman: Pause - SRPT"

    rerun = pipeline.run_poll(config, store=store, now=DAY_TWO)

    assert rerun.new_detections == 0
    assert rerun.resulting_state == "Pause"
    assert len(store.get_today_detections("2026-10-16")) == 2


def test_invalid_policy_stops_the_cycle(tmp_path: Path) -> None:
    _write_data(tmp_path)
    (tmp_path / "policy.yaml").write_text(
        'suppression:\n  - label: "No id"\n    if: {}\n', encoding="utf-8"
    )
    store = WatchmanStore(tmp_path)

    with pytest.raises(PolicyValidationError):
        pipeline.run_poll(_config(tmp_path), store=store, now=DAY_ONE)

    runs = store.get_poll_runs()
    assert runs[-1].status == "error"
    assert runs[-1].errors[0].startswith("Policy:")


def test_suppressed_detection_that_moved_is_logged(tmp_path: Path) -> None:
    (tmp_path / "market.json").write_text(
        json.dumps({"2026-10-16": {"SRPT": -0.18, "VRTX": 0.05}}), encoding="utf-8"
    )
    market = StubMarketProvider(tmp_path / "market.json")
    store = WatchmanStore(tmp_path)
    detections = [
        Detection(
            ticker=ticker,
            detected_at="2026-10-16T09:00:00+00:00",
            source_tier="tertiary_social",
            change_type="misc",
            title="Chatter",
            detection_id=f"d-{ticker}",
            suppressed=suppressed,
        )
        for ticker, suppressed in (("SRPT", True), ("VRTX", True), ("ALNY", False))
    ]

    logged = pipeline.log_suppressed_moves(detections, store, market, "2026-10-16")

    assert logged == 1
    miss_log = (tmp_path / "miss_log.csv").read_text(encoding="utf-8")
    assert "SRPT,d-SRPT,2026-10-16,suppressed-but-moved,-0.18" in miss_log


def test_malformed_edgar_payload_skips_only_that_ticker(tmp_path: Path, monkeypatch) -> None:
    _write_data(tmp_path)
    (tmp_path / "watchlist.csv").write_text(
        "ticker,cik,dependency\nBAD,0000000001,0.5\nSRPT,0000873303,1.0\n",
        encoding="utf-8",
    )
    good_payload = {
        "filings": {
            "recent": {
                "accessionNumber": ["0000873303-26-000050"],
                "form": ["8-K"],
                "filingDate": ["2026-10-14"],
                "primaryDocument": ["doc.htm"],
            }
        }
    }

    def fake_get(url, headers, timeout):
        class Response:
            status_code = 200

            def json(self):
                if "CIK0000000001" in url:
                    return []
                return good_payload

        return Response()

    def fake_post(url, json, headers, timeout):
        class Response:
            status_code = 200

        return Response()

    monkeypatch.setattr(pipeline.edgar.requests, "get", fake_get)
    monkeypatch.setattr(pipeline.ctgov, "fetch_study", lambda nct_id: STUDY_V1)
    monkeypatch.setattr(dispatcher.requests, "post", fake_post)
    store = WatchmanStore(tmp_path)

    run = pipeline.run_poll(_config(tmp_path), store=store, now=DAY_ONE)

    assert run.status == "error"
    assert len(run.errors) == 1
    assert run.errors[0].startswith("EDGAR BAD: EDGAR payload malformed")
    assert run.tickers_polled == 2
    assert run.new_detections == 1
    watchlist = {item.ticker: item for item in store.load_watchlist()}
    assert watchlist["SRPT"].last_filing_accession == "0000873303-26-000050"
    assert not watchlist["BAD"].last_filing_accession
    assert watchlist["BAD"].last_poll_at == DAY_ONE.isoformat()
    assert store.get_poll_runs()[-1].status == "error"


def test_unexpected_failure_is_recorded_on_the_run(tmp_path: Path, monkeypatch) -> None:
    _write_data(tmp_path)

    def broken_daily_state(*args, **kwargs):
        raise RuntimeError("daily state unavailable")

    monkeypatch.setattr(pipeline.edgar, "fetch_submissions", lambda cik, user_agent: [])
    monkeypatch.setattr(pipeline.ctgov, "fetch_study", lambda nct_id: None)
    monkeypatch.setattr(pipeline, "compute_daily_state", broken_daily_state)
    store = WatchmanStore(tmp_path)

    with pytest.raises(RuntimeError):
        pipeline.run_poll(_config(tmp_path), store=store, now=DAY_ONE)

    runs = store.get_poll_runs()
    assert len(runs) == 1
    assert runs[0].status == "error"
    assert runs[0].errors == ["daily state unavailable"]
    assert runs[0].finished_at


def test_previous_pause_day_lets_low_score_change_be_interpreted(tmp_path: Path) -> None:
    store = WatchmanStore(tmp_path)
    store.upsert_daily_state(
        DailyState(
            date="2026-10-15",
            state=PortfolioState.PAUSE,
            summary="SRPT trial halted",
            top_detection_id=None,
            quiet_log_count=0,
        )
    )
    detection = Detection(
        ticker="SRPT",
        detected_at="2026-10-16T09:00:00+00:00",
        source_tier="primary_registry",
        change_type="trial_endpoint_change",
        title="CT.gov Primary Outcomes changed: NCT05096221",
        detection_id="d-outcomes",
        nct_id="NCT05096221",
        field_path="protocolSection.outcomesModule.primaryOutcomes",
        old_value="6MWD",
        new_value="NSAA",
        score_final=12,
    )
    store.upsert_detection(detection)
    config = _config(tmp_path, enrichment_enabled=True)

    assert pipeline.enrich_new_detections([detection], store, StaticInterpreter(), config) == 0

    previous = store.get_previous_daily_state("2026-10-16")
    calls = pipeline.enrich_new_detections(
        [detection], store, StaticInterpreter(), config, ticker_state=previous.state
    )

    assert calls == 1
    stored = store.get_today_detections("2026-10-16")[0]
    assert stored.annotation["why_it_matters"] == ["NCT05096221 stopped enrolling"]
