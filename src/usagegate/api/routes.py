"""Admin routes for quotas, rate limits and the analysis cache."""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from usagegate.services import Services

logger = logging.getLogger(__name__)
router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


# --- Request/Response Models ---

class BonusRequest(BaseModel):
    """Uses to give back to a user."""
    amount: int = Field(..., gt=0, description="Uses to restore in the current period")


class InvalidateRequest(BaseModel):
    """Cache invalidation request."""
    prefix: str = Field(..., min_length=1, description="Category or full key prefix")


class QuotaStatusResponse(BaseModel):
    """Quota status of one user across all actions."""
    user_id: str
    tier: str
    quotas: list[dict[str, Any]]


class QuotaResetResponse(BaseModel):
    user_id: str
    action: str
    counters_removed: int


class BonusResponse(BaseModel):
    user_id: str
    action: str
    amount: int
    used: int


class RateLimitResetResponse(BaseModel):
    identifier: str
    action: str
    reset: bool


class InvalidateResponse(BaseModel):
    prefix: str
    deleted: int


# --- Quotas ---

@router.get("/quota/{user_id}", response_model=QuotaStatusResponse)
async def get_quota_status(
    user_id: str,
    request: Request,
    tier: str = Query(default="free", description="Subscription tier"),
):
    """Remaining quota for every tracked action."""
    services = get_services(request)
    decisions = await services.ledger.status(user_id, tier)
    return QuotaStatusResponse(
        user_id=user_id,
        tier=services.ledger.config.resolve_tier(tier),
        quotas=[d.to_dict() for d in decisions],
    )


@router.post("/quota/{user_id}/{action}/reset", response_model=QuotaResetResponse)
async def reset_quota(user_id: str, action: str, request: Request):
    """Clear the current period counters of an action."""
    services = get_services(request)
    removed = await services.ledger.reset_quota(user_id, action)
    return QuotaResetResponse(user_id=user_id, action=action, counters_removed=removed)


@router.post("/quota/{user_id}/{action}/bonus", response_model=BonusResponse)
async def grant_bonus(user_id: str, action: str, body: BonusRequest, request: Request):
    """Give back uses in the current period."""
    services = get_services(request)
    used = await services.ledger.add_bonus(user_id, action, body.amount)
    if used is None:
        raise HTTPException(status_code=503, detail="Bonus could not be applied")
    return BonusResponse(user_id=user_id, action=action, amount=body.amount, used=used)


# --- Rate limits ---

@router.delete("/ratelimit/{identifier}/{action}", response_model=RateLimitResetResponse)
async def reset_rate_limit(identifier: str, action: str, request: Request):
    """Drop the current rate-limit window of an identifier."""
    services = get_services(request)
    reset = await services.limiter.reset(identifier, action)
    return RateLimitResetResponse(identifier=identifier, action=action, reset=reset)


@router.get("/ratelimit")
async def get_rate_limits(
    request: Request,
    action: str | None = Query(default=None, description="Restrict to one action"),
):
    """Live rate-limit windows grouped by action."""
    services = get_services(request)
    return {"windows": await services.limiter.snapshot(action)}


# --- Cache ---

@router.post("/cache/invalidate", response_model=InvalidateResponse)
async def invalidate_cache(body: InvalidateRequest, request: Request):
    """Delete cached analyses under a prefix."""
    services = get_services(request)
    deleted = await services.cache.invalidate(body.prefix)
    return InvalidateResponse(prefix=body.prefix, deleted=deleted)


@router.get("/cache/stats")
async def get_cache_stats(request: Request):
    """Live cache entries per category."""
    return await get_services(request).cache.stats()
