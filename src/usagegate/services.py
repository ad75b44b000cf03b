"""Wiring of the store, cache, quota ledger, rate limiter and enforcer."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from usagegate.cache import AnalysisCache, CacheKeyBuilder
from usagegate.config import Settings, get_settings
from usagegate.enforcement import Enforcer
from usagegate.quota import (
    FixedWindowRateLimiter,
    QuotaLedger,
    RateRule,
    UsagePolicy,
    load_policy,
)
from usagegate.store import KeyValueStore, create_store, initialize_store

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Components sharing one store client. Built once per process."""

    settings: Settings
    store: KeyValueStore
    policy: UsagePolicy
    cache: AnalysisCache
    ledger: QuotaLedger
    limiter: FixedWindowRateLimiter
    enforcer: Enforcer

    async def start(self) -> None:
        await initialize_store(self.store)
        logger.info(f"Services started on {self.store.name} store")

    async def close(self) -> None:
        await self.cache.drain()
        await self.store.close()
        logger.info("Services stopped")


def build_services(
    settings: Settings | None = None,
    store: KeyValueStore | None = None,
    policy: UsagePolicy | None = None,
    clock: Callable[[], float] = time.time,
) -> Services:
    """
    Build every component from settings.

    Args:
        settings: Application settings (defaults to the cached settings)
        store: Store client to use instead of one built from settings
        policy: Usage policy to use instead of loading ``quota_config_path``
        clock: Time source shared by all components

    Returns:
        Services, not yet connected (call ``start``)

    Raises:
        PeriodMisconfiguration: If the policy file is invalid
        ValueError: If the store backend is misconfigured
    """
    settings = settings or get_settings()

    if policy is None:
        policy = load_policy(
            settings.quota_config_path,
            default_rate_rule=RateRule(
                settings.rate_limit_requests,
                settings.rate_limit_window_seconds,
            ),
        )
    policy.rate_limits.exempt.update(settings.rate_limit_exempt)
    if store is None:
        store = create_store(settings, clock=clock)

    cache = AnalysisCache(
        store=store,
        key_builder=CacheKeyBuilder(prefix=settings.cache_key_prefix),
        default_ttl_seconds=settings.cache_ttl_seconds,
        clock=clock,
    )
    ledger = QuotaLedger(store, config=policy.quotas, clock=clock)
    limiter = FixedWindowRateLimiter(store, clock=clock)

    return Services(
        settings=settings,
        store=store,
        policy=policy,
        cache=cache,
        ledger=ledger,
        limiter=limiter,
        enforcer=Enforcer(limiter, ledger, policy.rate_limits),
    )
