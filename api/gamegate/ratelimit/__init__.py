"""Admission pipeline: classify, identify, enrich, commit, decide, shape."""

from gamegate.ratelimit.types import (
    Admit,
    Delay,
    Deny,
    DenyReason,
    EndpointClass,
    GamingContext,
    Identity,
    QuotaKey,
    Tier,
)

__all__ = [
    "Admit",
    "Delay",
    "Deny",
    "DenyReason",
    "EndpointClass",
    "GamingContext",
    "Identity",
    "QuotaKey",
    "Tier",
]
