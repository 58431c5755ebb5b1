import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from portfolio_watchman.models.schemas import EngineSettings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


@dataclass
class AppConfig:
    data_dir: Path = Path("data")
    watchlist_csv: Path = Path("data/watchlist.csv")
    trials_csv: Path = Path("data/trials.csv")
    policy_path: Path = Path("data/policy.yaml")
    market_stub_path: Path = Path("data/market_stub.json")
    alert_threshold: int = 60
    suppression_strictness: str = "high"
    panic_sensitivity: int = -20
    feedback_loop: bool = True
    sec_user_agent: str = "PortfolioWatchman/1.0 (ops@example.com)"
    resend_api_key: str = ""
    notify_from: str = "Portfolio Watchman <alerts@example.com>"
    enrichment_enabled: bool = False
    max_llm_calls_per_run: int = 10
    max_llm_calls_per_ticker_per_day: int = 2
    log_level: str = "INFO"

    def engine_settings(self) -> EngineSettings:
        return EngineSettings(
            alert_threshold=self.alert_threshold,
            suppression_strictness=self.suppression_strictness,
            panic_sensitivity=self.panic_sensitivity,
            feedback_loop=self.feedback_loop,
        )


def _env_path(name: str, default: Path) -> Path:
    value = os.getenv(name)
    if not value:
        return default
    return Path(value)


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return value if value else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False

    logger.warning("Invalid boolean value for %s: %s", name, value)
    return default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid integer value for %s: %s", name, value)
        return default


def load_config() -> AppConfig:
    """Load configuration from defaults and optional .env overrides.

    Data files default to locations under DATA_DIR unless set individually.
    """
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path)

    defaults = AppConfig()
    data_dir = _env_path("DATA_DIR", defaults.data_dir)

    strictness = _env_str("SUPPRESSION_STRICTNESS", defaults.suppression_strictness)
    if strictness not in {"low", "medium", "high"}:
        logger.warning("Invalid suppression strictness: %s", strictness)
        strictness = defaults.suppression_strictness

    return AppConfig(
        data_dir=data_dir,
        watchlist_csv=_env_path("WATCHLIST_CSV", data_dir / "watchlist.csv"),
        trials_csv=_env_path("TRIALS_CSV", data_dir / "trials.csv"),
        policy_path=_env_path("POLICY_PATH", data_dir / "policy.yaml"),
        market_stub_path=_env_path(
            "MARKET_STUB_PATH", data_dir / "market_stub.json"
        ),
        alert_threshold=_env_int("ALERT_THRESHOLD", defaults.alert_threshold),
        suppression_strictness=strictness,
        panic_sensitivity=_env_int(
            "PANIC_SENSITIVITY", defaults.panic_sensitivity
        ),
        feedback_loop=_env_bool("FEEDBACK_LOOP", defaults.feedback_loop),
        sec_user_agent=_env_str("SEC_USER_AGENT", defaults.sec_user_agent),
        resend_api_key=_env_str("RESEND_API_KEY", defaults.resend_api_key),
        notify_from=_env_str("NOTIFY_FROM", defaults.notify_from),
        enrichment_enabled=_env_bool(
            "ENRICHMENT_ENABLED", defaults.enrichment_enabled
        ),
        max_llm_calls_per_run=_env_int(
            "MAX_LLM_CALLS_PER_RUN", defaults.max_llm_calls_per_run
        ),
        max_llm_calls_per_ticker_per_day=_env_int(
            "MAX_LLM_CALLS_PER_TICKER_PER_DAY",
            defaults.max_llm_calls_per_ticker_per_day,
        ),
        log_level=_env_str("LOG_LEVEL", defaults.log_level).upper(),
    )


def setup_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
