"""
Quota and rate-limit policy.

Defines which windows each action is counted in, the per-tier limits
for those windows, and the burst limits applied by the rate limiter.
The policy is loaded once at startup and validated there, so a
misconfigured action fails the process instead of a request.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from usagegate.errors import PeriodMisconfiguration
from usagegate.quota.periods import Period

logger = logging.getLogger(__name__)

UNLIMITED = -1

DEFAULT_ACTION_PERIODS: dict[str, tuple[Period, ...]] = {
    "scan": (Period.MONTH,),
    "export": (Period.MONTH,),
    "api-call": (Period.MONTH,),
    # Daily allowance, with a monthly ceiling on top
    "ai-question": (Period.DAY, Period.MONTH),
}

DEFAULT_TIER_LIMITS: dict[str, dict[str, dict[Period, int]]] = {
    "free": {
        "scan": {Period.MONTH: 25},
        "export": {Period.MONTH: 2},
        "api-call": {Period.MONTH: 1000},
        "ai-question": {Period.DAY: 3, Period.MONTH: 15},
    },
    "premium": {
        "scan": {Period.MONTH: UNLIMITED},
        "export": {Period.MONTH: 50},
        "api-call": {Period.MONTH: UNLIMITED},
        "ai-question": {Period.DAY: UNLIMITED, Period.MONTH: UNLIMITED},
    },
}


@dataclass(frozen=True)
class RateRule:
    """Fixed-window burst limit."""

    limit: int
    window_seconds: int

    def __post_init__(self) -> None:
        if self.limit <= 0 or self.window_seconds <= 0:
            raise ValueError(
                f"rate rule needs positive limit and window, got "
                f"{self.limit}/{self.window_seconds}s"
            )

    def to_dict(self) -> dict[str, int]:
        return {"limit": self.limit, "window_seconds": self.window_seconds}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RateRule:
        return cls(limit=int(data["limit"]), window_seconds=int(data["window_seconds"]))


def _default_action_rules() -> dict[str, RateRule]:
    return {
        "scan": RateRule(30, 60),
        "ai-question": RateRule(10, 60),
        "export": RateRule(5, 60),
    }


def _default_tier_rules() -> dict[str, dict[str, RateRule]]:
    return {"premium": {"*": RateRule(300, 60)}}


@dataclass
class RateLimitPolicy:
    """
    Resolves the burst limit for a request.

    Lookup order: tier + action, action, tier default (``"*"``), global
    default.

    Identifiers in ``exempt`` (admin API keys, internal callers) skip
    rate limiting entirely.
    """

    default: RateRule = field(default_factory=lambda: RateRule(100, 60))
    actions: dict[str, RateRule] = field(default_factory=_default_action_rules)
    tiers: dict[str, dict[str, RateRule]] = field(default_factory=_default_tier_rules)
    exempt: set[str] = field(default_factory=set)

    def rule_for(self, tier: str, action: str) -> RateRule:
        tier_rules = self.tiers.get(tier, {})
        if action in tier_rules:
            return tier_rules[action]
        if action in self.actions:
            return self.actions[action]
        if "*" in tier_rules:
            return tier_rules["*"]
        return self.default

    def is_exempt(self, identifier: str) -> bool:
        return identifier in self.exempt

    def to_dict(self) -> dict[str, Any]:
        return {
            "default": self.default.to_dict(),
            "actions": {a: r.to_dict() for a, r in self.actions.items()},
            "tiers": {
                t: {a: r.to_dict() for a, r in rules.items()}
                for t, rules in self.tiers.items()
            },
            "exempt": sorted(self.exempt),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], default: RateRule | None = None) -> RateLimitPolicy:
        policy = cls()
        if "default" in data:
            policy.default = RateRule.from_dict(data["default"])
        elif default is not None:
            policy.default = default
        if "actions" in data:
            policy.actions = {
                a: RateRule.from_dict(r) for a, r in data["actions"].items()
            }
        if "tiers" in data:
            policy.tiers = {
                t: {a: RateRule.from_dict(r) for a, r in rules.items()}
                for t, rules in data["tiers"].items()
            }
        if "exempt" in data:
            if not isinstance(data["exempt"], list):
                raise TypeError("exempt must be a list of identifiers")
            policy.exempt = {str(i) for i in data["exempt"]}
        return policy


def _copy_limits(
    limits: dict[str, dict[str, dict[Period, int]]],
) -> dict[str, dict[str, dict[Period, int]]]:
    return {t: {a: dict(w) for a, w in actions.items()} for t, actions in limits.items()}


@dataclass
class QuotaConfig:
    """
    Tiered quota configuration.

    ``action_periods`` maps each action to the windows it is counted in;
    the first window is the action's primary granularity. ``tiers`` maps
    tier → action → window → limit, where -1 means unlimited.
    """

    action_periods: dict[str, tuple[Period, ...]] = field(
        default_factory=lambda: dict(DEFAULT_ACTION_PERIODS)
    )
    tiers: dict[str, dict[str, dict[Period, int]]] = field(
        default_factory=lambda: _copy_limits(DEFAULT_TIER_LIMITS)
    )
    default_tier: str = "free"

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """
        Check that every action has windows and every tier a limit per window.

        Raises:
            PeriodMisconfiguration: On the first inconsistency found
        """
        if not self.action_periods:
            raise PeriodMisconfiguration("no quota actions configured")

        for action, periods in self.action_periods.items():
            if not periods:
                raise PeriodMisconfiguration(f"action '{action}' has no period configured")
            if len(set(periods)) != len(periods):
                raise PeriodMisconfiguration(f"action '{action}' lists a period twice")
            for period in periods:
                if not isinstance(period, Period):
                    raise PeriodMisconfiguration(
                        f"action '{action}' has unknown period {period!r}"
                    )

        if self.default_tier not in self.tiers:
            raise PeriodMisconfiguration(
                f"default tier '{self.default_tier}' has no limits configured"
            )

        for tier, actions in self.tiers.items():
            for action, windows in actions.items():
                if action not in self.action_periods:
                    raise PeriodMisconfiguration(
                        f"tier '{tier}' limits action '{action}', which has no period mapping"
                    )
                extra = set(windows) - set(self.action_periods[action])
                if extra:
                    raise PeriodMisconfiguration(
                        f"tier '{tier}' sets {sorted(p.value for p in extra)} limits "
                        f"for '{action}', which is not counted in those periods"
                    )
            for action, periods in self.action_periods.items():
                windows = actions.get(action, {})
                for period in periods:
                    if period not in windows:
                        raise PeriodMisconfiguration(
                            f"tier '{tier}' has no {period.value} limit for '{action}'"
                        )
                    limit = windows[period]
                    if not isinstance(limit, int) or limit < UNLIMITED:
                        raise PeriodMisconfiguration(
                            f"tier '{tier}' {period.value} limit for '{action}' must be "
                            f"an integer >= -1, got {limit!r}"
                        )

    def periods_for(self, action: str) -> tuple[Period, ...]:
        try:
            return self.action_periods[action]
        except KeyError:
            raise PeriodMisconfiguration(
                f"action '{action}' has no period mapping"
            ) from None

    def resolve_tier(self, tier: str | None) -> str:
        """Map unknown or missing tiers onto the default tier."""
        if tier in self.tiers:
            return tier
        if tier:
            logger.warning(f"Unknown tier '{tier}', applying '{self.default_tier}' limits")
        return self.default_tier

    def limit_for(self, tier: str, action: str, period: Period) -> int:
        return self.tiers[self.resolve_tier(tier)][action][period]

    def to_dict(self) -> dict[str, Any]:
        return {
            "default_tier": self.default_tier,
            "actions": {a: [p.value for p in ps] for a, ps in self.action_periods.items()},
            "tiers": {
                t: {a: {p.value: n for p, n in w.items()} for a, w in actions.items()}
                for t, actions in self.tiers.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QuotaConfig:
        try:
            action_periods = {
                action: tuple(Period(p) for p in periods)
                for action, periods in data.get("actions", {}).items()
            } or dict(DEFAULT_ACTION_PERIODS)
            tiers = {
                tier: {
                    action: {Period(p): limit for p, limit in windows.items()}
                    for action, windows in actions.items()
                }
                for tier, actions in data.get("tiers", {}).items()
            } or _copy_limits(DEFAULT_TIER_LIMITS)
        except ValueError as e:
            raise PeriodMisconfiguration(f"invalid quota configuration: {e}") from e

        return cls(
            action_periods=action_periods,
            tiers=tiers,
            default_tier=data.get("default_tier", "free"),
        )


@dataclass
class UsagePolicy:
    """Quota configuration and rate-limit policy loaded together."""

    quotas: QuotaConfig = field(default_factory=QuotaConfig)
    rate_limits: RateLimitPolicy = field(default_factory=RateLimitPolicy)

    def to_dict(self) -> dict[str, Any]:
        data = self.quotas.to_dict()
        data["rate_limits"] = self.rate_limits.to_dict()
        return data

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        default_rate_rule: RateRule | None = None,
    ) -> UsagePolicy:
        return cls(
            quotas=QuotaConfig.from_dict(data),
            rate_limits=RateLimitPolicy.from_dict(
                data.get("rate_limits", {}), default=default_rate_rule
            ),
        )


def load_policy(
    config_path: str | Path,
    default_rate_rule: RateRule | None = None,
) -> UsagePolicy:
    """
    Load the usage policy from a JSON file.

    Built-in defaults apply when the file does not exist. An unreadable
    or inconsistent file is an error: the service must not start with
    limits it cannot enforce.

    Raises:
        PeriodMisconfiguration: If the file is invalid
    """
    path = Path(config_path)
    if not path.exists():
        logger.info(f"No policy file at {path}, using built-in quota defaults")
        policy = UsagePolicy()
        if default_rate_rule is not None:
            policy.rate_limits.default = default_rate_rule
        return policy

    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise PeriodMisconfiguration(f"cannot read policy file {path}: {e}") from e

    try:
        policy = UsagePolicy.from_dict(data, default_rate_rule=default_rate_rule)
    except (KeyError, TypeError) as e:
        raise PeriodMisconfiguration(f"invalid policy file {path}: {e}") from e
    except ValueError as e:
        if isinstance(e, PeriodMisconfiguration):
            raise
        raise PeriodMisconfiguration(f"invalid policy file {path}: {e}") from e

    logger.info(f"Loaded usage policy from {path}")
    return policy


def save_policy(policy: UsagePolicy, config_path: str | Path) -> None:
    """Persist a policy to a JSON file."""
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        json.dump(policy.to_dict(), f, indent=2)

    logger.info(f"Saved usage policy to {path}")
