"""Tests for the quota ledger."""

import asyncio
from datetime import datetime, timezone

import pytest

from usagegate.errors import PeriodMisconfiguration, StoreUnavailable
from usagegate.quota import LimitType, Period, QuotaDecision, QuotaLedger
from usagegate.store import InMemoryStore

from conftest import FakeClock


class TestQuotaDecision:
    """Tests for QuotaDecision dataclass."""

    def test_to_dict(self) -> None:
        decision = QuotaDecision(
            allowed=False,
            action="scan",
            remaining=0,
            limit=25,
            reset_at=datetime(2025, 4, 1, tzinfo=timezone.utc),
            limit_type=LimitType.MONTHLY_QUOTA,
            used=25,
        )
        data = decision.to_dict()
        assert data["allowed"] is False
        assert data["limit_type"] == "monthly-quota"
        assert data["reset_at"] == "2025-04-01T00:00:00+00:00"

    def test_unlimited(self) -> None:
        assert QuotaDecision(allowed=True, action="scan", remaining=-1, limit=-1).unlimited


class TestCheckQuota:
    """Tests for QuotaLedger.check_quota."""

    @pytest.mark.asyncio
    async def test_fresh_user(self, ledger: QuotaLedger) -> None:
        decision = await ledger.check_quota("u1", "free", "scan")
        assert decision.allowed is True
        assert decision.remaining == 25
        assert decision.limit == 25
        assert decision.limit_type is LimitType.MONTHLY_QUOTA
        assert decision.reset_at == datetime(2025, 4, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_exhausted_free_scan(self, ledger: QuotaLedger, store: InMemoryStore) -> None:
        """Test a free user at 25 scans is denied."""
        await store.set("quota:u1:scan:2025-03", "25")

        decision = await ledger.check_quota("u1", "free", "scan")
        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.used == 25

    @pytest.mark.asyncio
    async def test_premium_unlimited(self, ledger: QuotaLedger, store: InMemoryStore) -> None:
        """Test unlimited tiers are allowed regardless of count."""
        await store.set("quota:u1:scan:2025-03", "10000")

        decision = await ledger.check_quota("u1", "premium", "scan")
        assert decision.allowed is True
        assert decision.remaining == -1
        assert decision.limit == -1

    @pytest.mark.asyncio
    async def test_unlimited_skips_store(self, ledger: QuotaLedger, store: InMemoryStore) -> None:
        """Test unlimited checks succeed even with the store down."""
        store.offline = True
        decision = await ledger.check_quota("u1", "premium", "scan")
        assert decision.allowed is True
        assert decision.degraded is False

    @pytest.mark.asyncio
    async def test_check_does_not_charge(self, ledger: QuotaLedger) -> None:
        for _ in range(5):
            await ledger.check_quota("u1", "free", "export")
        assert (await ledger.usage("u1", "export")) == {Period.MONTH: 0}

    @pytest.mark.asyncio
    async def test_unknown_tier_gets_default_limits(self, ledger: QuotaLedger) -> None:
        decision = await ledger.check_quota("u1", "platinum", "export")
        assert decision.limit == 2

    @pytest.mark.asyncio
    async def test_unknown_action(self, ledger: QuotaLedger) -> None:
        with pytest.raises(PeriodMisconfiguration):
            await ledger.check_quota("u1", "free", "teleport")

    @pytest.mark.asyncio
    async def test_tightest_window_reported(self, ledger: QuotaLedger, store: InMemoryStore) -> None:
        """Test the window with fewest uses left is reported."""
        await store.set("quota:u1:ai-question:2025-03-14", "1")
        await store.set("quota:u1:ai-question:2025-03", "14")

        decision = await ledger.check_quota("u1", "free", "ai-question")
        assert decision.allowed is True
        assert decision.remaining == 1
        assert decision.limit_type is LimitType.MONTHLY_QUOTA

    @pytest.mark.asyncio
    async def test_monthly_cap_denies(self, ledger: QuotaLedger, store: InMemoryStore) -> None:
        await store.set("quota:u1:ai-question:2025-03", "15")

        decision = await ledger.check_quota("u1", "free", "ai-question")
        assert decision.allowed is False
        assert decision.limit_type is LimitType.MONTHLY_QUOTA

    @pytest.mark.asyncio
    async def test_store_outage_fails_open(self, ledger: QuotaLedger, store: InMemoryStore) -> None:
        store.offline = True
        decision = await ledger.check_quota("u1", "free", "scan")
        assert decision.allowed is True
        assert decision.degraded is True


class TestIncrementUsage:
    """Tests for QuotaLedger.increment_usage."""

    @pytest.mark.asyncio
    async def test_counts_monotonically(self, ledger: QuotaLedger) -> None:
        counts = [await ledger.increment_usage("u1", "scan") for _ in range(4)]
        assert counts == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_concurrent_increments(self, ledger: QuotaLedger) -> None:
        """Test no increment is lost under concurrency."""
        counts = await asyncio.gather(
            *(ledger.increment_usage("u1", "scan") for _ in range(25))
        )
        assert sorted(counts) == list(range(1, 26))
        assert (await ledger.check_quota("u1", "free", "scan")).allowed is False

    @pytest.mark.asyncio
    async def test_counter_expires_at_period_end(
        self, ledger: QuotaLedger, store: InMemoryStore
    ) -> None:
        """Test the counter TTL ends with the month."""
        await ledger.increment_usage("u1", "scan")
        # 2025-03-14 12:00 to 2025-04-01 00:00
        assert await store.ttl("quota:u1:scan:2025-03") == 17 * 86400 + 12 * 3600

    @pytest.mark.asyncio
    async def test_users_and_actions_isolated(self, ledger: QuotaLedger) -> None:
        await ledger.increment_usage("u1", "scan")
        await ledger.increment_usage("u1", "scan")
        await ledger.increment_usage("u2", "scan")
        await ledger.increment_usage("u1", "export")

        assert (await ledger.usage("u1", "scan"))[Period.MONTH] == 2
        assert (await ledger.usage("u2", "scan"))[Period.MONTH] == 1
        assert (await ledger.usage("u1", "export"))[Period.MONTH] == 1

    @pytest.mark.asyncio
    async def test_new_month_starts_fresh(self, ledger: QuotaLedger, clock: FakeClock) -> None:
        for _ in range(25):
            await ledger.increment_usage("u1", "scan")
        assert (await ledger.check_quota("u1", "free", "scan")).allowed is False

        clock.set(datetime(2025, 4, 1, 0, 0, 1, tzinfo=timezone.utc))
        decision = await ledger.check_quota("u1", "free", "scan")
        assert decision.allowed is True
        assert decision.remaining == 25

    @pytest.mark.asyncio
    async def test_store_outage_returns_none(self, ledger: QuotaLedger, store: InMemoryStore) -> None:
        store.offline = True
        assert await ledger.increment_usage("u1", "scan") is None

    @pytest.mark.asyncio
    async def test_period_key_for(self, ledger: QuotaLedger) -> None:
        assert ledger.period_key_for("scan") == "2025-03"
        assert ledger.period_key_for("ai-question") == "2025-03-14"
        with pytest.raises(PeriodMisconfiguration):
            ledger.period_key_for("teleport")


class TestDailyAndMonthlyWindows:
    """Daily allowance with a monthly ceiling."""

    @pytest.mark.asyncio
    async def test_daily_limit_then_rollover(self, ledger: QuotaLedger, clock: FakeClock) -> None:
        for _ in range(3):
            assert (await ledger.check_quota("u1", "free", "ai-question")).allowed
            await ledger.increment_usage("u1", "ai-question")

        fourth = await ledger.check_quota("u1", "free", "ai-question")
        assert fourth.allowed is False
        assert fourth.limit_type is LimitType.DAILY_QUOTA
        assert fourth.reset_at == datetime(2025, 3, 15, tzinfo=timezone.utc)

        clock.to_next_day()
        fifth = await ledger.check_quota("u1", "free", "ai-question")
        assert fifth.allowed is True

        usage = await ledger.usage("u1", "ai-question")
        assert usage == {Period.DAY: 0, Period.MONTH: 3}

        await ledger.increment_usage("u1", "ai-question")
        usage = await ledger.usage("u1", "ai-question")
        assert usage == {Period.DAY: 1, Period.MONTH: 4}


class TestAdministration:
    """Tests for reset, bonus and status."""

    @pytest.mark.asyncio
    async def test_reset_quota(self, ledger: QuotaLedger) -> None:
        for _ in range(3):
            await ledger.increment_usage("u1", "ai-question")

        assert await ledger.reset_quota("u1", "ai-question") == 2
        assert await ledger.usage("u1", "ai-question") == {Period.DAY: 0, Period.MONTH: 0}

    @pytest.mark.asyncio
    async def test_bonus_restores_uses(self, ledger: QuotaLedger) -> None:
        for _ in range(2):
            await ledger.increment_usage("u1", "export")
        assert (await ledger.check_quota("u1", "free", "export")).allowed is False

        assert await ledger.add_bonus("u1", "export", 1) == 1
        assert (await ledger.check_quota("u1", "free", "export")).allowed is True

    @pytest.mark.asyncio
    async def test_bonus_floors_at_zero(self, ledger: QuotaLedger) -> None:
        await ledger.increment_usage("u1", "scan")
        assert await ledger.add_bonus("u1", "scan", 10) == 0
        assert await ledger.add_bonus("u2", "scan", 10) == 0

    @pytest.mark.asyncio
    async def test_bonus_keeps_period_expiry(
        self, ledger: QuotaLedger, store: InMemoryStore
    ) -> None:
        for _ in range(5):
            await ledger.increment_usage("u1", "scan")
        before = await store.ttl("quota:u1:scan:2025-03")
        await ledger.add_bonus("u1", "scan", 2)
        assert await store.ttl("quota:u1:scan:2025-03") == before

    @pytest.mark.asyncio
    async def test_concurrent_bonuses_never_negative(self, ledger: QuotaLedger) -> None:
        for _ in range(3):
            await ledger.increment_usage("u1", "scan")
        await asyncio.gather(*(ledger.add_bonus("u1", "scan", 2) for _ in range(4)))
        assert (await ledger.usage("u1", "scan"))[Period.MONTH] == 0

    @pytest.mark.asyncio
    async def test_bonus_requires_positive_amount(self, ledger: QuotaLedger) -> None:
        with pytest.raises(ValueError):
            await ledger.add_bonus("u1", "scan", 0)

    @pytest.mark.asyncio
    async def test_status_covers_every_action(self, ledger: QuotaLedger) -> None:
        await ledger.increment_usage("u1", "export")
        decisions = {d.action: d for d in await ledger.status("u1", "free")}

        assert set(decisions) == {"scan", "export", "api-call", "ai-question"}
        assert decisions["export"].remaining == 1
        assert decisions["scan"].remaining == 25


class DroppedExpireStore(InMemoryStore):
    """Store whose first EXPIRE fails after the INCR went through."""

    def __init__(self, clock: FakeClock) -> None:
        super().__init__(clock=clock)
        self.expire_failures = 1

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        if self.expire_failures:
            self.expire_failures -= 1
            raise StoreUnavailable("EXPIRE", "connection reset")
        return await super().expire(key, ttl_seconds)


class StuckMonthStore(InMemoryStore):
    """Store where compare-and-set never succeeds on monthly counters."""

    async def compare_and_set(self, key: str, expected: str, new: str) -> bool:
        if key.endswith(":2025-03"):
            return False
        return await super().compare_and_set(key, expected, new)


class TestStoreFaults:
    """Partial store failures during writes."""

    @pytest.mark.asyncio
    async def test_lost_expiry_is_restored(self, clock: FakeClock) -> None:
        """Test a counter created without expiry gets it on the next use."""
        store = DroppedExpireStore(clock)
        ledger = QuotaLedger(store, clock=clock)

        assert await ledger.increment_usage("u1", "scan") == 1
        assert await store.ttl("quota:u1:scan:2025-03") == -1

        assert await ledger.increment_usage("u1", "scan") == 2
        assert await store.ttl("quota:u1:scan:2025-03") == 17 * 86400 + 12 * 3600

        clock.set(datetime(2025, 4, 1, tzinfo=timezone.utc))
        assert await store.scan("quota:") == []

    @pytest.mark.asyncio
    async def test_bonus_partially_applied(self, clock: FakeClock, caplog) -> None:
        """Test a bonus stuck on a later window keeps the earlier one."""
        store = StuckMonthStore(clock=clock)
        ledger = QuotaLedger(store, clock=clock)
        for _ in range(3):
            await ledger.increment_usage("u1", "ai-question")

        assert await ledger.add_bonus("u1", "ai-question", 2) is None
        assert await ledger.usage("u1", "ai-question") == {Period.DAY: 1, Period.MONTH: 3}
        assert "gave up on month window (applied: day)" in caplog.text
