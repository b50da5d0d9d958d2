"""Pydantic schemas for the rate limit policy table."""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gamegate.ratelimit.types import EndpointClass, Tier


class LimitConfig(BaseModel):
    """Base limit for one endpoint class."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    window_ms: int = Field(gt=0)
    max: int = Field(ge=0)
    count_success: bool = True
    count_failure: bool = True
    allow_admin_bypass: bool = False
    enforce_for_admin: bool = False
    tiered: bool = True

    @model_validator(mode="after")
    def check_admin_flags(self) -> "LimitConfig":
        if self.allow_admin_bypass and self.enforce_for_admin:
            raise ValueError("allow_admin_bypass and enforce_for_admin are mutually exclusive")
        if not self.count_success and not self.count_failure:
            raise ValueError("at least one of count_success/count_failure must be set")
        return self


class SessionPolicyConfig(BaseModel):
    """Window used while a user has an active gaming session."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    window_ms: int = Field(gt=0)
    max: int = Field(ge=0)


class PolicyFile(BaseModel):
    """On-disk policy document. Every section is optional and merges over defaults."""

    model_config = ConfigDict(extra="forbid")

    limits: dict[EndpointClass, LimitConfig] = Field(default_factory=dict)
    gaming_session: SessionPolicyConfig | None = None
    tier_multipliers: dict[str, float] = Field(default_factory=dict)

    @field_validator("limits")
    @classmethod
    def no_health_limit(cls, value: dict[EndpointClass, LimitConfig]) -> dict[EndpointClass, LimitConfig]:
        if EndpointClass.HEALTH in value:
            raise ValueError("health checks cannot be rate limited")
        return value

    @field_validator("tier_multipliers")
    @classmethod
    def known_tiers(cls, value: dict[str, float]) -> dict[str, float]:
        labels = {tier.label for tier in Tier}
        for name, multiplier in value.items():
            if name not in labels:
                raise ValueError(f"unknown tier {name!r}")
            if multiplier <= 0:
                raise ValueError(f"multiplier for {name!r} must be positive")
        return value


class LimitView(LimitConfig):
    """Policy entry as reported by the admin API."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    endpoint_class: EndpointClass


class PolicyView(BaseModel):
    """Response for GET /admin/rate-limit/policy."""

    limits: list[LimitView]
    gaming_session: SessionPolicyConfig
    tier_multipliers: dict[str, float]
