"""
Request enforcement: rate limit, quota, then a success-gated charge.

Every protected action passes through ``Enforcer.run``::

    START -> RATE_CHECK -> QUOTA_CHECK -> EXECUTE -> COMMIT -> END

A rejection at either check returns before the handler runs. The quota
is charged only after the handler has returned successfully, so a failed
action never consumes quota and no charge ever needs rolling back.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from usagegate.quota.ledger import LimitType, QuotaDecision, QuotaLedger
from usagegate.quota.limiter import FixedWindowRateLimiter, RateLimitResult
from usagegate.quota.policy import UNLIMITED, RateLimitPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnforcementRequest:
    """Who is asking to do what."""

    user_id: str
    tier: str
    action: str
    identifier: str | None = None
    """Rate-limit identity (API key, IP); defaults to the user id."""

    @property
    def rate_identifier(self) -> str:
        return self.identifier or self.user_id


@dataclass
class EnforcementDecision:
    """
    Decision exposed to the caller on every path.

    ``limit_type`` names the layer the numbers come from; on a denial it
    is the layer that refused.
    """

    allowed: bool
    remaining: int
    limit: int
    reset_at: datetime | None
    limit_type: LimitType | None
    degraded: bool = False
    reason: str = ""
    quota_unlimited: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
            "limit_type": self.limit_type.value if self.limit_type else None,
            "degraded": self.degraded,
            "reason": self.reason,
        }

    @classmethod
    def from_rate(cls, result: RateLimitResult) -> EnforcementDecision:
        return cls(
            allowed=result.allowed,
            remaining=result.remaining,
            limit=result.limit,
            reset_at=result.reset_at,
            limit_type=LimitType.RATE,
            degraded=result.degraded,
            reason="" if result.allowed else "rate limit exceeded",
        )

    @classmethod
    def from_quota(cls, decision: QuotaDecision, degraded: bool = False) -> EnforcementDecision:
        reason = ""
        if not decision.allowed and decision.limit_type:
            reason = f"{decision.limit_type.value} exhausted for {decision.action}"
        return cls(
            allowed=decision.allowed,
            remaining=decision.remaining,
            limit=decision.limit,
            reset_at=decision.reset_at,
            limit_type=decision.limit_type,
            degraded=degraded or decision.degraded,
            reason=reason,
            quota_unlimited=decision.limit == UNLIMITED,
        )


@dataclass
class EnforcementResult:
    """Outcome of running a protected handler."""

    decision: EnforcementDecision
    value: Any = None
    committed: bool = False
    usage: int | None = None
    """Primary-window count after the charge, when one was recorded."""


class Enforcer:
    """
    Puts the rate limiter and quota ledger in front of action handlers.

    Holds no mutable state of its own; one instance serves every
    concurrent request.
    """

    def __init__(
        self,
        limiter: FixedWindowRateLimiter,
        ledger: QuotaLedger,
        rate_policy: RateLimitPolicy | None = None,
    ) -> None:
        self._limiter = limiter
        self._ledger = ledger
        self._rate_policy = rate_policy or RateLimitPolicy()

    async def authorize(self, request: EnforcementRequest) -> EnforcementDecision:
        """
        Run the rate check, then the quota check. Charges nothing.

        Rate-limit rejections stop here and never reach the quota ledger.
        Exempt identifiers skip the rate check but not the quota check.
        """
        if self._rate_policy.is_exempt(request.rate_identifier):
            logger.debug(f"Rate limit skipped for exempt {request.rate_identifier}")
            degraded = False
            if not self._ledger.tracks(request.action):
                return EnforcementDecision(
                    allowed=True,
                    remaining=UNLIMITED,
                    limit=UNLIMITED,
                    reset_at=None,
                    limit_type=None,
                )
        else:
            rule = self._rate_policy.rule_for(request.tier, request.action)
            rate = await self._limiter.check_and_consume(
                request.rate_identifier,
                request.action,
                rule.limit,
                rule.window_seconds,
            )
            if not rate.allowed:
                return EnforcementDecision.from_rate(rate)
            if not self._ledger.tracks(request.action):
                return EnforcementDecision.from_rate(rate)
            degraded = rate.degraded

        quota = await self._ledger.check_quota(request.user_id, request.tier, request.action)
        return EnforcementDecision.from_quota(quota, degraded=degraded)

    async def commit(
        self,
        request: EnforcementRequest,
        decision: EnforcementDecision,
    ) -> int | None:
        """
        Charge one use after the protected action succeeded.

        Nothing is charged for denied decisions, for actions without
        quota windows, or when the tier is unlimited for the action.

        Returns:
            New primary-window count, or None if nothing was recorded
        """
        if not decision.allowed or decision.quota_unlimited:
            return None
        if not self._ledger.tracks(request.action):
            return None
        return await self._ledger.increment_usage(request.user_id, request.action)

    async def run(
        self,
        request: EnforcementRequest,
        handler: Callable[..., Awaitable[Any]] | Callable[..., Any],
        *args: Any,
        is_success: Callable[[Any], bool] | None = None,
        **kwargs: Any,
    ) -> EnforcementResult:
        """
        Enforce limits around a handler call.

        Args:
            request: Who is doing what
            handler: The protected action (sync or async)
            *args: Positional arguments for the handler
            is_success: Predicate over the handler's return value; a
                False result is a failure and is not charged
            **kwargs: Keyword arguments for the handler

        Returns:
            EnforcementResult. Exceptions raised by the handler propagate
            unchanged and leave the quota untouched.
        """
        decision = await self.authorize(request)
        if not decision.allowed:
            logger.info(
                f"Denied {request.action} for {request.user_id}: {decision.reason}"
            )
            return EnforcementResult(decision=decision)

        value = handler(*args, **kwargs)
        if asyncio.iscoroutine(value):
            value = await value

        if is_success is not None and not is_success(value):
            logger.debug(f"{request.action} for {request.user_id} failed, not charged")
            return EnforcementResult(decision=decision, value=value)

        usage = await self.commit(request, decision)
        return EnforcementResult(
            decision=decision,
            value=value,
            committed=usage is not None,
            usage=usage,
        )
