"""
Quota ledger.

Counts per-user usage of each action in self-expiring period windows
(UTC days and months) and checks it against tier limits. Counters live
only in the shared store; expiry, not a sweep job, retires old periods.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from usagegate.errors import StoreUnavailable
from usagegate.quota.periods import Period, period_end, period_key, seconds_until_end
from usagegate.quota.policy import UNLIMITED, QuotaConfig
from usagegate.store.base import KeyValueStore

logger = logging.getLogger(__name__)

# Concurrent bonus grants on one counter retry their compare-and-set this often
BONUS_CAS_ATTEMPTS = 5


class LimitType(str, Enum):
    """Layer that produced an enforcement decision."""

    RATE = "rate"
    DAILY_QUOTA = "daily-quota"
    MONTHLY_QUOTA = "monthly-quota"

    @classmethod
    def for_period(cls, period: Period) -> LimitType:
        return cls.DAILY_QUOTA if period is Period.DAY else cls.MONTHLY_QUOTA


@dataclass
class QuotaDecision:
    """Result of a quota check."""

    allowed: bool
    """Whether another use of the action fits in every window."""

    action: str
    """Action that was checked."""

    remaining: int
    """Uses left in the reported window (-1 = unlimited)."""

    limit: int
    """Limit of the reported window (-1 = unlimited)."""

    reset_at: datetime | None = None
    """When the reported window's counter expires (None if unlimited)."""

    limit_type: LimitType | None = None
    """Window the numbers describe; on denial, the window that is exhausted."""

    used: int = 0
    """Current count in the reported window."""

    degraded: bool = False
    """True when the store failed and the check failed open."""

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "action": self.action,
            "remaining": self.remaining,
            "limit": self.limit,
            "used": self.used,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
            "limit_type": self.limit_type.value if self.limit_type else None,
            "degraded": self.degraded,
        }


class QuotaLedger:
    """
    Tier-aware usage counters keyed by ``(user, action, period key)``.

    Counters are only ever incremented atomically by the store. The
    increment that creates a counter (returns 1) is the one that sets
    its expiry, so concurrent first writers never race on the TTL.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: QuotaConfig | None = None,
        clock: Callable[[], float] = time.time,
        key_prefix: str = "quota:",
    ) -> None:
        """
        Initialize the quota ledger.

        Args:
            store: Shared key/value store
            config: Tier limits and action periods (validated on creation)
            clock: Source of the current time in epoch seconds
            key_prefix: Namespace for counter keys
        """
        self._store = store
        self.config = config or QuotaConfig()
        self._clock = clock
        self._key_prefix = key_prefix

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _counter_key(self, user_id: str, action: str, key: str) -> str:
        return f"{self._key_prefix}{user_id}:{action}:{key}"

    def _window_keys(
        self, user_id: str, action: str, now: datetime
    ) -> list[tuple[Period, str]]:
        return [
            (period, self._counter_key(user_id, action, period_key(period, now)))
            for period in self.config.periods_for(action)
        ]

    def tracks(self, action: str) -> bool:
        """Whether the action has quota windows configured."""
        return action in self.config.action_periods

    def period_key_for(self, action: str, now: datetime | None = None) -> str:
        """
        Period key of the action's primary window.

        Raises:
            PeriodMisconfiguration: If the action has no period mapping
        """
        primary = self.config.periods_for(action)[0]
        return period_key(primary, now or self._now())

    async def check_quota(self, user_id: str, tier: str, action: str) -> QuotaDecision:
        """
        Check whether one more use of ``action`` fits the tier's limits.

        Windows are evaluated in configured order (day before month);
        the first exhausted window produces the denial. When allowed,
        the window with the fewest uses left is reported.

        Returns:
            QuotaDecision; allowed with ``degraded=True`` if the store
            is unavailable
        """
        now = self._now()
        windows = self._window_keys(user_id, action, now)
        limits = [self.config.limit_for(tier, action, period) for period, _ in windows]

        if all(limit == UNLIMITED for limit in limits):
            return QuotaDecision(
                allowed=True,
                action=action,
                remaining=UNLIMITED,
                limit=UNLIMITED,
            )

        counted = [
            (period, key, limit)
            for (period, key), limit in zip(windows, limits)
            if limit != UNLIMITED
        ]
        try:
            values = await self._store.get_many([key for _, key, _ in counted])
        except StoreUnavailable as e:
            logger.warning(f"Quota check for {user_id}/{action} failed open: {e}")
            period, _, limit = counted[0]
            return QuotaDecision(
                allowed=True,
                action=action,
                remaining=limit,
                limit=limit,
                reset_at=period_end(period, now),
                limit_type=LimitType.for_period(period),
                degraded=True,
            )

        tightest: QuotaDecision | None = None
        for (period, _, limit), raw in zip(counted, values):
            count = int(raw) if raw is not None else 0
            decision = QuotaDecision(
                allowed=count < limit,
                action=action,
                remaining=max(0, limit - count),
                limit=limit,
                reset_at=period_end(period, now),
                limit_type=LimitType.for_period(period),
                used=count,
            )
            if not decision.allowed:
                logger.info(
                    f"Quota exceeded: {user_id} {action} {count}/{limit} per {period.value}"
                )
                return decision
            if tightest is None or decision.remaining < tightest.remaining:
                tightest = decision

        return tightest

    async def increment_usage(self, user_id: str, action: str) -> int | None:
        """
        Charge one use of ``action`` to every window it is counted in.

        A counter whose expiry was never set (the store failed between
        INCR and EXPIRE) gets it on the next increment.

        Returns:
            New count of the primary window, or None if the store is
            unavailable and the primary window went unrecorded
        """
        now = self._now()
        counts = []
        for period, key in self._window_keys(user_id, action, now):
            try:
                count = await self._store.incr(key)
            except StoreUnavailable as e:
                if not counts:
                    logger.warning(f"Usage of {action} by {user_id} not recorded: {e}")
                    return None
                logger.warning(
                    f"Usage of {action} by {user_id} not recorded in {period.value} window: {e}"
                )
                continue
            counts.append(count)
            await self._ensure_expiry(key, count, period, now)

        return counts[0]

    async def _ensure_expiry(self, key: str, count: int, period: Period, now: datetime) -> None:
        try:
            if count == 1:
                await self._store.expire(key, seconds_until_end(period, now))
                return
            ttl = await self._store.ttl(key)
            if ttl is not None and ttl < 0:
                logger.warning(f"Quota counter {key} had no expiry, restoring period end")
                await self._store.expire(key, seconds_until_end(period, now))
        except StoreUnavailable as e:
            logger.warning(f"Expiry of {key} not set, retrying on next use: {e}")

    async def reset_quota(self, user_id: str, action: str) -> int:
        """
        Delete the current period counters of ``action`` for a user.

        Returns:
            Number of counters removed
        """
        keys = [key for _, key in self._window_keys(user_id, action, self._now())]
        try:
            deleted = await self._store.delete(*keys)
        except StoreUnavailable as e:
            logger.warning(f"Quota reset for {user_id}/{action} failed: {e}")
            return 0

        logger.info(f"Reset {action} quota for {user_id} ({deleted} counters)")
        return deleted

    async def add_bonus(self, user_id: str, action: str, amount: int) -> int | None:
        """
        Give back ``amount`` uses in every current window, floored at zero.

        Applied as ``count = max(0, count - amount)`` with compare-and-set
        so concurrent grants can never push a counter negative.

        Windows are updated one at a time in configured order and nothing
        is rolled back: if a later window fails, the earlier ones keep
        the bonus. The warning names the windows that were applied.

        Returns:
            New count of the primary window, or None if the store is
            unavailable or a counter kept changing under us
        """
        if amount <= 0:
            raise ValueError("bonus amount must be positive")

        counts = []
        applied: list[str] = []
        for period, key in self._window_keys(user_id, action, self._now()):
            try:
                count = await self._apply_bonus(key, amount)
            except StoreUnavailable as e:
                logger.warning(
                    f"Bonus for {user_id}/{action} not applied to {period.value} window "
                    f"(applied: {', '.join(applied) or 'none'}): {e}"
                )
                return None
            if count is None:
                logger.warning(
                    f"Bonus for {user_id}/{action} gave up on {period.value} window "
                    f"(applied: {', '.join(applied) or 'none'})"
                )
                return None
            counts.append(count)
            applied.append(period.value)

        logger.info(f"Granted {amount} bonus {action} uses to {user_id}")
        return counts[0]

    async def _apply_bonus(self, key: str, amount: int) -> int | None:
        for _ in range(BONUS_CAS_ATTEMPTS):
            current = await self._store.get(key)
            if current is None:
                return 0
            new_count = max(0, int(current) - amount)
            if new_count == int(current):
                return new_count
            if await self._store.compare_and_set(key, current, str(new_count)):
                return new_count
        return None

    async def usage(self, user_id: str, action: str) -> dict[Period, int]:
        """
        Current counts per window (administrative).

        Raises:
            StoreUnavailable: If the store cannot be read
        """
        windows = self._window_keys(user_id, action, self._now())
        values = await self._store.get_many([key for _, key in windows])
        return {
            period: int(raw) if raw is not None else 0
            for (period, _), raw in zip(windows, values)
        }

    async def status(self, user_id: str, tier: str) -> list[QuotaDecision]:
        """Quota decision for every configured action."""
        return [
            await self.check_quota(user_id, tier, action)
            for action in self.config.action_periods
        ]
