"""Admin router for rate limit monitoring and policy management."""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from gamegate.auth.dependencies import Principal, require_admin
from gamegate.middleware.rate_limit import get_request_limiter
from gamegate.ratelimit.errors import PolicyError, StoreError
from gamegate.ratelimit.service import GamingRateLimiter
from gamegate.ratelimit.types import EndpointClass, QuotaKey
from gamegate.schemas.admin import (
    AdaptiveStateInfo,
    QuotaSnapshotResponse,
    RateLimitStatsResponse,
    ReloadPolicyResponse,
    ResetStatsResponse,
)
from gamegate.schemas.policy import LimitView, PolicyView

router = APIRouter(prefix="/api/v1/admin/rate-limit", tags=["Admin"])


@router.get(
    "/stats",
    response_model=RateLimitStatsResponse,
    status_code=status.HTTP_200_OK,
)
async def get_rate_limit_stats(
    admin: Principal = Depends(require_admin),
    limiter: GamingRateLimiter = Depends(get_request_limiter),
) -> RateLimitStatsResponse:
    """
    Decision counters per endpoint class and outcome.

    Requires admin role.
    """
    state = limiter.adaptive.state
    return RateLimitStatsResponse(
        **limiter.analytics.snapshot(),
        degraded=limiter.ledger.degraded,
        in_flight=limiter.gauge.value,
        adaptive=AdaptiveStateInfo(
            service_load=state.service_load,
            battery_saver_active=state.battery_saver_active,
            last_sampled_at=state.last_sampled_at,
        ),
    )


@router.post(
    "/stats/reset",
    response_model=ResetStatsResponse,
    status_code=status.HTTP_200_OK,
)
async def reset_rate_limit_stats(
    admin: Principal = Depends(require_admin),
    limiter: GamingRateLimiter = Depends(get_request_limiter),
) -> ResetStatsResponse:
    """Reset the decision counters. Quota windows are not touched."""
    limiter.analytics.reset()
    return ResetStatsResponse(message="Rate limiting statistics reset successfully")


@router.get(
    "/policy",
    response_model=PolicyView,
    status_code=status.HTTP_200_OK,
)
async def get_policy(
    admin: Principal = Depends(require_admin),
    limiter: GamingRateLimiter = Depends(get_request_limiter),
) -> PolicyView:
    """Active policy table."""
    table = limiter.policy.table
    return PolicyView(
        limits=[
            LimitView(endpoint_class=cls, **limit.model_dump())
            for cls, limit in sorted(table.limits.items(), key=lambda item: item[0].value)
        ],
        gaming_session=table.gaming_session,
        tier_multipliers={tier.label: value for tier, value in table.tier_multipliers.items()},
    )


@router.post(
    "/reload",
    response_model=ReloadPolicyResponse,
    status_code=status.HTTP_200_OK,
)
async def reload_policy(
    admin: Principal = Depends(require_admin),
    limiter: GamingRateLimiter = Depends(get_request_limiter),
) -> ReloadPolicyResponse:
    """
    Reload the policy table from the configured file.

    A file that fails validation is rejected with 422 and the previous table
    stays active.
    """
    try:
        limiter.policy.reload()
    except PolicyError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "error": {
                    "code": "INVALID_POLICY",
                    "message": str(exc),
                }
            },
        ) from exc
    return ReloadPolicyResponse(reloaded=True, path=limiter.policy.path or None)


@router.get(
    "/quota",
    response_model=QuotaSnapshotResponse,
    status_code=status.HTTP_200_OK,
)
async def peek_quota(
    principal: str = Query(min_length=1, description="Principal key, e.g. user:42 or ip:203.0.113.7"),
    endpoint_class: EndpointClass = Query(),
    context: str = Query(default="base"),
    admin: Principal = Depends(require_admin),
    limiter: GamingRateLimiter = Depends(get_request_limiter),
) -> QuotaSnapshotResponse:
    """Read one quota window without incrementing it."""
    limit = limiter.policy.table.limit_for(endpoint_class)
    try:
        snapshot = await limiter.ledger.peek(QuotaKey(principal, endpoint_class, context), limit.max)
    except StoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": {
                    "code": "STORE_UNAVAILABLE",
                    "message": "Quota store is unavailable",
                }
            },
        ) from exc
    return QuotaSnapshotResponse(
        principal=principal,
        endpoint_class=endpoint_class.value,
        context=context,
        count=snapshot.count,
        window_start_ms=snapshot.window_start_ms,
        window_ms=limit.window_ms,
        base_max=snapshot.max,
    )
