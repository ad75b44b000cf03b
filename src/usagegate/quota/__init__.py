"""
Quota management module for tiered usage quotas and rate limiting.

Provides period-windowed quota counters per user and action, and
fixed-window burst limiting, both on the shared key/value store.
"""

from usagegate.quota.periods import Period, period_end, period_key
from usagegate.quota.policy import (
    UNLIMITED,
    QuotaConfig,
    RateLimitPolicy,
    RateRule,
    UsagePolicy,
    load_policy,
    save_policy,
)
from usagegate.quota.ledger import LimitType, QuotaDecision, QuotaLedger
from usagegate.quota.limiter import FixedWindowRateLimiter, RateLimitResult

__all__ = [
    "FixedWindowRateLimiter",
    "LimitType",
    "Period",
    "QuotaConfig",
    "QuotaDecision",
    "QuotaLedger",
    "RateLimitPolicy",
    "RateLimitResult",
    "RateRule",
    "UNLIMITED",
    "UsagePolicy",
    "load_policy",
    "period_end",
    "period_key",
    "save_policy",
]
