"""Pydantic schemas for request/response validation."""

from gamegate.schemas.admin import (
    AdaptiveStateInfo,
    QuotaSnapshotResponse,
    RateLimitStatsResponse,
    ReloadPolicyResponse,
    ResetStatsResponse,
)
from gamegate.schemas.policy import LimitConfig, LimitView, PolicyFile, PolicyView, SessionPolicyConfig

__all__ = [
    "AdaptiveStateInfo",
    "QuotaSnapshotResponse",
    "RateLimitStatsResponse",
    "ReloadPolicyResponse",
    "ResetStatsResponse",
    "LimitConfig",
    "LimitView",
    "PolicyFile",
    "PolicyView",
    "SessionPolicyConfig",
]
