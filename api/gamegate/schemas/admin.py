"""Admin-related Pydantic schemas."""

from pydantic import BaseModel


class AdaptiveStateInfo(BaseModel):
    """Current process-wide load signal."""

    service_load: float
    battery_saver_active: bool
    last_sampled_at: float


class RateLimitStatsResponse(BaseModel):
    """Response for GET /admin/rate-limit/stats."""

    since: float
    by_class: dict[str, dict[str, int]]
    totals: dict[str, int]
    degraded_decisions: int
    degraded: bool
    in_flight: int
    adaptive: AdaptiveStateInfo


class ResetStatsResponse(BaseModel):
    """Response after resetting the decision counters."""

    message: str


class ReloadPolicyResponse(BaseModel):
    """Response after reloading the policy table."""

    reloaded: bool
    path: str | None


class QuotaSnapshotResponse(BaseModel):
    """Response for GET /admin/rate-limit/quota."""

    principal: str
    endpoint_class: str
    context: str
    count: int
    window_start_ms: int
    window_ms: int
    base_max: int
