"""Application configuration using pydantic-settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Environment flags
    environment: str = "development"
    emergency_mode: bool = False
    rate_limit_enabled: bool = True

    # Security secrets
    jwt_secret: str = "dev-jwt-secret-change-in-production"
    access_token_expire_minutes: int = 15

    # CORS
    cors_origins: str = "http://localhost:3000"

    # Backing store (empty URL selects the in-process store)
    redis_url: str = ""
    redis_max_connections: int = 20

    # Identity
    trusted_proxies: str = ""
    ipv6_prefix_length: int = 64

    # Deadlines
    store_deadline_ms: int = 50
    admission_budget_ms: int = 100
    session_budget_ms: int = 25

    # Slow-down shaping
    slowdown_threshold: float = 0.7
    slowdown_battery_threshold: float = 0.5
    slowdown_cap_ms: int = 20_000

    # Adaptive load shedding
    load_high: float = 0.8
    load_medium: float = 0.6
    sampler_interval_s: float = 5.0
    max_in_flight: int = 512

    # Degraded mode
    degraded_window_s: float = 10.0
    degraded_min_samples: int = 5
    degraded_error_ratio: float = 0.5
    degraded_hold_s: float = 30.0
    degraded_max_keys: int = 10_000

    # Policy table (empty path selects the built-in defaults)
    policy_file: str = ""

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins, filtering empty strings."""
        if not self.cors_origins:
            return ["http://localhost:3000"]
        origins = [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        return origins if origins else ["http://localhost:3000"]

    @property
    def trusted_proxies_list(self) -> list[str]:
        """Parse trusted proxy CIDRs, filtering empty strings."""
        return [p.strip() for p in self.trusted_proxies.split(",") if p.strip()]

    @property
    def is_test(self) -> bool:
        return self.environment.lower() in {"test", "testing"}

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in {"development", "dev", "local"}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()


def validate_security_settings() -> None:
    """Ensure insecure defaults are never used in production-like environments."""
    if settings.environment.lower() not in {"production", "prod"}:
        return

    insecure = []
    if settings.jwt_secret == "dev-jwt-secret-change-in-production":
        insecure.append("JWT_SECRET")

    if insecure:
        insecure_list = ", ".join(insecure)
        raise RuntimeError(
            f"Insecure default secrets are configured for production: {insecure_list}. "
            "Set strong values in the environment before starting the API."
        )
