"""Declarative detection policy.

A policy document is YAML with two ordered rule lists::

    suppression:
      - id: "S1"
        label: "Suppress tertiary social"
        if: { source_tier: "tertiary_social" }
        action: "suppress"
    hard_alerts:
      - id: "H1"
        label: "Hard alert on halt/termination/PDUFA"
        if: { change_type_in: ["halt", "trial_termination", "pdufa_changed"] }
        action: "pause"

Hard-alert rules are checked first and always win. Within each list the
first matching rule is authoritative, so list order must be preserved.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Union

import yaml

from portfolio_watchman.errors import PolicyValidationError
from portfolio_watchman.models.schemas import (
    Detection,
    EngineSettings,
    PolicyAction,
    PolicyContext,
    PolicyDecision,
    enum_value,
)

logger = logging.getLogger(__name__)

DEFAULT_POLICY_YAML = """\
suppression:
  - id: "S1"
    label: "Suppress tertiary social"
    if: { source_tier: "tertiary_social" }
    action: "suppress"
  - id: "S2"
    label: "Suppress misc from non-primary sources"
    if: { change_type: "misc", source_tier_not: ["primary_filing", "primary_regulator", "primary_registry"] }
    action: "suppress"
  - id: "Q1"
    label: "Quarantine low-confidence"
    if: { llm_confidence_lt: 0.7 }
    action: "quarantine"
hard_alerts:
  - id: "H1"
    label: "Hard alert on halt/termination/PDUFA"
    if: { change_type_in: ["halt", "trial_termination", "pdufa_changed"] }
    action: "pause"
  - id: "H2"
    label: "Hard alert on market gap"
    if: { market_gap_lte: -0.20 }
    action: "pause"
"""


@dataclass(frozen=True)
class SourceTierIs:
    tier: str

    def holds(
        self, detection: Detection, context: PolicyContext, settings: EngineSettings
    ) -> bool:
        return enum_value(detection.source_tier) == self.tier


@dataclass(frozen=True)
class SourceTierNotIn:
    tiers: tuple[str, ...]

    def holds(
        self, detection: Detection, context: PolicyContext, settings: EngineSettings
    ) -> bool:
        return enum_value(detection.source_tier) not in self.tiers


@dataclass(frozen=True)
class ChangeTypeIs:
    change_type: str

    def holds(
        self, detection: Detection, context: PolicyContext, settings: EngineSettings
    ) -> bool:
        return enum_value(detection.change_type) == self.change_type


@dataclass(frozen=True)
class ChangeTypeIn:
    change_types: tuple[str, ...]

    def holds(
        self, detection: Detection, context: PolicyContext, settings: EngineSettings
    ) -> bool:
        return enum_value(detection.change_type) in self.change_types


@dataclass(frozen=True)
class ChangeTypeNotIn:
    change_types: tuple[str, ...]

    def holds(
        self, detection: Detection, context: PolicyContext, settings: EngineSettings
    ) -> bool:
        return enum_value(detection.change_type) not in self.change_types


@dataclass(frozen=True)
class ConfidenceBelow:
    threshold: float

    def holds(
        self, detection: Detection, context: PolicyContext, settings: EngineSettings
    ) -> bool:
        return detection.confidence < self.threshold


@dataclass(frozen=True)
class CatalystFurtherThan:
    days: float

    def holds(
        self, detection: Detection, context: PolicyContext, settings: EngineSettings
    ) -> bool:
        return context.time_to_catalyst_days > self.days


@dataclass(frozen=True)
class MarketGapAtMost:
    """Same-day move at or below a threshold; never holds without market data.

    A rule that leaves the threshold empty uses the configured panic
    sensitivity (a percentage, so -20 means a -0.20 move).
    """

    threshold: float | None

    def holds(
        self, detection: Detection, context: PolicyContext, settings: EngineSettings
    ) -> bool:
        if context.market_gap is None:
            return False
        threshold = self.threshold
        if threshold is None:
            threshold = settings.panic_sensitivity / 100
        return context.market_gap <= threshold


@dataclass(frozen=True)
class UnknownPredicate:
    key: str
    value: Any

    def holds(
        self, detection: Detection, context: PolicyContext, settings: EngineSettings
    ) -> bool:
        return True


Predicate = Union[
    SourceTierIs,
    SourceTierNotIn,
    ChangeTypeIs,
    ChangeTypeIn,
    ChangeTypeNotIn,
    ConfidenceBelow,
    CatalystFurtherThan,
    MarketGapAtMost,
    UnknownPredicate,
]


@dataclass(frozen=True)
class PolicyRule:
    rule_id: str
    label: str
    condition: dict[str, Any]
    predicates: tuple[Predicate, ...]
    action: PolicyAction

    def matches(
        self,
        detection: Detection,
        context: PolicyContext,
        settings: EngineSettings,
    ) -> bool:
        return all(p.holds(detection, context, settings) for p in self.predicates)


@dataclass(frozen=True)
class Policy:
    suppression: tuple[PolicyRule, ...] = ()
    hard_alerts: tuple[PolicyRule, ...] = ()


def _as_strings(key: str, value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, (list, tuple)):
        raise PolicyValidationError(f"Condition {key} expects a list, got {value!r}")
    return tuple(str(item) for item in value)


def _as_number(key: str, value: Any) -> float:
    if isinstance(value, bool):
        raise PolicyValidationError(f"Condition {key} expects a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise PolicyValidationError(
            f"Condition {key} expects a number, got {value!r}"
        ) from None


def compile_predicate(key: str, value: Any) -> Predicate:
    if key == "source_tier":
        return SourceTierIs(str(value))
    if key == "source_tier_not":
        return SourceTierNotIn(_as_strings(key, value))
    if key == "change_type":
        return ChangeTypeIs(str(value))
    if key == "change_type_in":
        return ChangeTypeIn(_as_strings(key, value))
    if key == "change_type_not":
        return ChangeTypeNotIn(_as_strings(key, value))
    if key == "llm_confidence_lt":
        return ConfidenceBelow(_as_number(key, value))
    if key == "time_to_catalyst_days_gt":
        return CatalystFurtherThan(_as_number(key, value))
    if key == "market_gap_lte":
        return MarketGapAtMost(None if value is None else _as_number(key, value))
    logger.debug("Ignoring unknown policy condition: %s", key)
    return UnknownPredicate(key, value)


def _parse_rule(raw: Any, section: str) -> PolicyRule:
    if not isinstance(raw, dict):
        raise PolicyValidationError(f"Rule in {section} must be a mapping", rule=raw)
    if not raw.get("id") or not raw.get("label"):
        raise PolicyValidationError(
            f"Every rule must have an id and label. Missing on: {raw!r}", rule=raw
        )

    condition = raw.get("if")
    if not isinstance(condition, dict):
        raise PolicyValidationError(
            f"Rule {raw['id']}: 'if' must be a mapping", rule=raw
        )

    default_action = "pause" if section == "hard_alerts" else None
    action_raw = raw.get("action", default_action)
    try:
        action = PolicyAction(str(action_raw).lower())
    except ValueError:
        raise PolicyValidationError(
            f"Rule {raw['id']}: unknown action {action_raw!r}", rule=raw
        ) from None
    if action == PolicyAction.ALLOW:
        raise PolicyValidationError(
            f"Rule {raw['id']}: 'allow' is not a rule action", rule=raw
        )

    predicates = tuple(compile_predicate(key, value) for key, value in condition.items())
    return PolicyRule(
        rule_id=str(raw["id"]),
        label=str(raw["label"]),
        condition=dict(condition),
        predicates=predicates,
        action=action,
    )


def _parse_section(document: dict[str, Any], section: str) -> tuple[PolicyRule, ...]:
    rules = document.get(section)
    if rules is None:
        return ()
    if not isinstance(rules, list):
        raise PolicyValidationError(f"'{section}' must be a list of rules")
    return tuple(_parse_rule(rule, section) for rule in rules)


def parse_policy(text: str) -> Policy:
    """Parse and validate a policy document.

    Raises PolicyValidationError before any detection is evaluated when the
    document is malformed or a rule lacks an id or label.
    """
    if not text or not text.strip():
        return Policy()
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise PolicyValidationError(f"Invalid YAML: {exc}") from exc

    if document is None:
        return Policy()
    if not isinstance(document, dict):
        raise PolicyValidationError(
            f"Policy must be a mapping, got {type(document).__name__}"
        )

    return Policy(
        suppression=_parse_section(document, "suppression"),
        hard_alerts=_parse_section(document, "hard_alerts"),
    )


def _rule_to_dict(rule: PolicyRule) -> dict[str, Any]:
    return {
        "id": rule.rule_id,
        "label": rule.label,
        "if": dict(rule.condition),
        "action": rule.action.value,
    }


def dump_policy(policy: Policy) -> str:
    document = {
        "suppression": [_rule_to_dict(rule) for rule in policy.suppression],
        "hard_alerts": [_rule_to_dict(rule) for rule in policy.hard_alerts],
    }
    return yaml.safe_dump(document, sort_keys=False)


def evaluate_detection(
    detection: Detection,
    policy: Policy,
    context: PolicyContext,
    settings: EngineSettings | None = None,
) -> PolicyDecision:
    settings = settings or EngineSettings()

    for rule in policy.hard_alerts:
        if rule.matches(detection, context, settings):
            return PolicyDecision(PolicyAction.PAUSE, rule.rule_id, rule.label)

    for rule in policy.suppression:
        if rule.matches(detection, context, settings):
            return PolicyDecision(rule.action, rule.rule_id, rule.label)

    return PolicyDecision(PolicyAction.ALLOW)
