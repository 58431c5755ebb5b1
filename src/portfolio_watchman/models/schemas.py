from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SourceTier(str, Enum):
    """Where a detection came from, most credible first."""

    PRIMARY_FILING = "primary_filing"
    PRIMARY_COMPANY = "primary_company"
    PRIMARY_REGISTRY = "primary_registry"
    PRIMARY_REGULATOR = "primary_regulator"
    SECONDARY_NEWS = "secondary_news"
    TERTIARY_SOCIAL = "tertiary_social"


class ChangeType(str, Enum):
    FILING_NEW = "filing_new"
    FILING_AMENDED = "filing_amended"
    PDUFA_CHANGED = "pdufa_changed"
    TRIAL_TERMINATION = "trial_termination"
    HALT = "halt"
    PRICE_GAP = "price_gap"
    MISC = "misc"
    TRIAL_STATUS_CHANGE = "trial_status_change"
    TRIAL_ENDPOINT_CHANGE = "trial_endpoint_change"
    TRIAL_DATE_CHANGE = "trial_date_change"
    ENROLLMENT_CHANGE = "enrollment_change"


class PortfolioState(str, Enum):
    """Daily portfolio state, ordered Contained < Watch < Look < Pause."""

    CONTAINED = "Contained"
    WATCH = "Watch"
    LOOK = "Look"
    PAUSE = "Pause"

    @property
    def rank(self) -> int:
        return _STATE_RANKS[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, PortfolioState):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, PortfolioState):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, PortfolioState):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, PortfolioState):
            return NotImplemented
        return self.rank >= other.rank


_STATE_RANKS = {
    PortfolioState.CONTAINED: 0,
    PortfolioState.WATCH: 1,
    PortfolioState.LOOK: 2,
    PortfolioState.PAUSE: 3,
}


class PolicyAction(str, Enum):
    SUPPRESS = "suppress"
    QUARANTINE = "quarantine"
    PAUSE = "pause"
    ALLOW = "allow"


@dataclass(frozen=True)
class EngineSettings:
    alert_threshold: int = 60
    suppression_strictness: str = "high"
    panic_sensitivity: int = -20
    feedback_loop: bool = True


@dataclass(frozen=True)
class PolicyContext:
    market_gap: float | None = None
    time_to_catalyst_days: int = 999


@dataclass(frozen=True)
class PolicyDecision:
    action: PolicyAction
    rule_id: str | None = None
    rule_label: str | None = None


@dataclass(frozen=True)
class ScoringContext:
    dependency: float = 1.0
    market_move: float | None = None
    time_to_catalyst_days: int = 999


@dataclass(frozen=True)
class ScoringResult:
    base: int
    proximity: int
    friction: int
    market_shock: int
    dependency: float
    noise_penalty: int
    score_raw: float
    importance: int
    score_final: int
    explanation: str


@dataclass(frozen=True)
class DiffRecord:
    change_type: ChangeType
    field_path: str
    old_value: str
    new_value: str
    description: str


@dataclass
class Detection:
    ticker: str
    detected_at: str
    source_tier: str
    change_type: str
    title: str
    detection_id: str = ""
    detected_date: str = ""
    url: str | None = None
    accession: str | None = None
    nct_id: str | None = None
    field_path: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    confidence: float = 1.0
    suppressed: bool = False
    quarantined: bool = False
    hard_alert: bool = False
    score_raw: float = 0.0
    score_final: int = 0
    policy_match_id: str | None = None
    policy_match_label: str | None = None
    annotation: dict[str, Any] | None = None

    @property
    def is_quiet(self) -> bool:
        return self.suppressed or self.quarantined

    def apply_policy(self, decision: PolicyDecision) -> None:
        self.hard_alert = decision.action == PolicyAction.PAUSE
        self.suppressed = decision.action == PolicyAction.SUPPRESS
        self.quarantined = decision.action == PolicyAction.QUARANTINE
        self.policy_match_id = decision.rule_id
        self.policy_match_label = decision.rule_label

    def natural_key(self) -> str:
        if self.accession:
            return f"{self.ticker}|{self.accession}"
        return (
            f"{self.ticker}|{self.nct_id or ''}|"
            f"{self.field_path or ''}|{self.detected_date}"
        )


@dataclass
class DailyState:
    date: str
    state: PortfolioState
    summary: str
    top_detection_id: str | None
    quiet_log_count: int


@dataclass
class NotificationSettings:
    user_id: str = "default"
    channel: str = "none"
    email: str = ""
    daily_push_enabled: bool = True
    pause_push_enabled: bool = True
    quiet_push_enabled: bool = False
    last_sent_at: str | None = None


@dataclass
class WatchlistItem:
    ticker: str
    cik: str
    dependency: float
    last_filing_accession: str = ""
    poll_interval_hours: int = 24
    last_poll_at: str = ""
    next_check_in_at: str = ""


@dataclass
class TrialMapping:
    ticker: str
    nct_id: str
    label: str = ""
    last_hash: str = ""
    last_fetched_at: str = ""


@dataclass(frozen=True)
class FilingRecord:
    form: str
    filing_date: str
    accession_number: str
    primary_document: str | None
    is_amendment: bool


@dataclass
class PollRun:
    run_id: str
    started_at: str
    status: str = "running"
    finished_at: str = ""
    tickers_polled: int = 0
    new_detections: int = 0
    suppressed_count: int = 0
    quarantined_count: int = 0
    resulting_state: str = ""
    errors: list[str] = field(default_factory=list)


def enum_value(member: object) -> str:
    """Plain string for an enum member or an already-plain string."""
    return getattr(member, "value", member)
