from portfolio_watchman.enrichment.interpreter import (
    build_evidence_pack,
    enrich_detection,
    should_interpret,
    validate_interpretation,
)
from portfolio_watchman.models.schemas import Detection, PortfolioState


def _make_detection(**overrides) -> Detection:
    values = {
        "ticker": "SRPT",
        "detected_at": "2026-10-16T09:00:00+00:00",
        "source_tier": "primary_registry",
        "change_type": "trial_status_change",
        "title": "CT.gov Overall Status changed: NCT05096221",
        "detection_id": "d1",
        "nct_id": "NCT05096221",
        "field_path": "protocolSection.statusModule.overallStatus",
        "old_value": "RECRUITING",
        "new_value": "TERMINATED",
        "score_final": 10,
    }
    values.update(overrides)
    return Detection(**values)


class StaticInterpreter:
    def __init__(self, response):
        self.response = response
        self.evidence: list[dict] = []

    def interpret(self, evidence):
        self.evidence.append(evidence)
        return self.response


class BrokenInterpreter:
    def interpret(self, evidence):
        raise TimeoutError("model timed out")


def test_should_interpret_gates() -> None:
    assert should_interpret(_make_detection()) == (True, "allowlist_field")
    assert should_interpret(_make_detection(source_tier="primary_filing"))[1] == "not_registry"
    assert should_interpret(_make_detection(nct_id=None))[1] == "no_nct_id"
    assert should_interpret(_make_detection(annotation={"x": 1}))[1] == "already_interpreted"
    assert should_interpret(_make_detection(), calls_this_run=10)[1] == "max_calls_per_run"
    assert should_interpret(_make_detection(), ticker_calls_today=2)[1] == "max_calls_per_ticker"


def test_should_interpret_score_and_state() -> None:
    other_field = {"field_path": "protocolSection.outcomesModule.primaryOutcomes"}

    assert should_interpret(_make_detection(**other_field)) == (False, "below_threshold")
    assert should_interpret(_make_detection(score_final=30, **other_field)) == (
        True,
        "high_score",
    )
    assert should_interpret(
        _make_detection(**other_field), ticker_state=PortfolioState.PAUSE
    ) == (True, "elevated_state")


def test_evidence_pack_truncates_long_values() -> None:
    detection = _make_detection(new_value="x" * 500)

    evidence = build_evidence_pack(detection, {"official_title": "A Study", "phase": "PHASE3"})

    assert evidence["new_value"] == "x" * 200 + "..."
    assert evidence["official_title"] == "A Study"
    assert evidence["condition"] is None


def test_validate_normalizes_fields() -> None:
    result = validate_interpretation(
        {
            "why_it_matters": ["a", "b", "c", "d", "e"],
            "benign_explanation": "Routine",
            "bear_case": "Trial stopped",
            "next_checks": ["x"],
            "noise_flag": "unknown",
            "confidence": 3,
        }
    )

    assert len(result["why_it_matters"]) == 4
    assert result["noise_flag"] == "medium"
    assert result["confidence"] == 1.0
    assert validate_interpretation({"why_it_matters": []}) is None
    assert validate_interpretation("text") is None


def test_enrich_attaches_valid_annotation() -> None:
    interpreter = StaticInterpreter(
        {
            "why_it_matters": ["Termination ends the program"],
            "benign_explanation": "Sponsor reprioritized",
            "bear_case": "Safety signal",
            "next_checks": ["Read the 8-K"],
            "noise_flag": "low",
            "confidence": 0.8,
        }
    )
    detection = _make_detection()

    annotation = enrich_detection(detection, interpreter)

    assert detection.annotation == annotation
    assert annotation["noise_flag"] == "low"
    assert interpreter.evidence[0]["nct_id"] == "NCT05096221"
    assert detection.score_final == 10


def test_enrich_falls_back_on_failure() -> None:
    for interpreter in (BrokenInterpreter(), StaticInterpreter({"bad": True})):
        detection = _make_detection()

        annotation = enrich_detection(detection, interpreter)

        assert annotation["noise_flag"] == "high"
        assert annotation["confidence"] == 0.2
        assert "protocolSection.statusModule.overallStatus" in annotation["why_it_matters"][0]
