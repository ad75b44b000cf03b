"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from usagegate.cache import AnalysisCache, CacheKeyBuilder
from usagegate.quota import FixedWindowRateLimiter, QuotaConfig, QuotaLedger
from usagegate.store import InMemoryStore

START = datetime(2025, 3, 14, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable epoch-seconds clock shared by the store and the components."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start.timestamp()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def set(self, when: datetime) -> None:
        self.now = when.timestamp()

    @property
    def current(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)

    def to_next_day(self) -> None:
        """Jump to 00:00:01 of the next UTC day."""
        today = self.current.replace(hour=0, minute=0, second=0, microsecond=0)
        self.set(today + timedelta(days=1, seconds=1))


@pytest.fixture
def clock() -> FakeClock:
    """A clock frozen at 2025-03-14 12:00 UTC."""
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStore:
    """An in-memory store driven by the fake clock."""
    return InMemoryStore(clock=clock)


@pytest.fixture
def cache(store: InMemoryStore, clock: FakeClock) -> AnalysisCache:
    """An analysis cache with a one-hour default TTL."""
    return AnalysisCache(
        store=store,
        key_builder=CacheKeyBuilder(),
        default_ttl_seconds=3600,
        clock=clock,
    )


@pytest.fixture
def ledger(store: InMemoryStore, clock: FakeClock) -> QuotaLedger:
    """A quota ledger with the built-in tier limits."""
    return QuotaLedger(store, config=QuotaConfig(), clock=clock)


@pytest.fixture
def limiter(store: InMemoryStore, clock: FakeClock) -> FixedWindowRateLimiter:
    """A fixed-window rate limiter."""
    return FixedWindowRateLimiter(store, clock=clock)
