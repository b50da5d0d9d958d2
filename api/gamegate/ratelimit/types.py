"""Core value types shared by the admission pipeline."""

from dataclasses import dataclass, field
from enum import Enum, IntEnum


class EndpointClass(str, Enum):
    """Closed set of operation categories a request can fall into."""

    VOTING = "voting"
    CLAN = "clan"
    TOURNAMENT = "tournament"
    LEADERBOARD = "leaderboard"
    CHAT = "chat"
    WEB3 = "web3"
    COMPETITIVE = "competitive"
    AUTH = "auth"
    SEARCH = "search"
    GENERIC = "generic"
    # Sentinel for health checks; always admitted
    HEALTH = "health"


class Tier(IntEnum):
    """User privilege level, ordered from least to most privileged."""

    ANONYMOUS = 0
    REGISTERED = 1
    PREMIUM = 2
    CLAN_LEADER = 3
    VIP = 4
    TOURNAMENT = 5
    MODERATOR = 6
    ADMIN = 7

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class GamingContext:
    """Transient gaming flags derived from request headers and path."""

    tournament_mode: bool = False
    tournament_id: str | None = None
    competitive_mode: bool = False
    gaming_session: bool = False

    @property
    def context_tag(self) -> str:
        """Canonical join of the truthy flags, used in quota keys."""
        parts = []
        if self.tournament_mode:
            parts.append("tournament")
        if self.competitive_mode:
            parts.append("competitive")
        if self.gaming_session:
            parts.append("gaming")
        return "+".join(parts) if parts else "base"

    @property
    def is_protected(self) -> bool:
        return self.tournament_mode or self.competitive_mode

    def flags(self) -> dict[str, bool]:
        return {
            "tournament_mode": self.tournament_mode,
            "competitive_mode": self.competitive_mode,
            "gaming_session": self.gaming_session,
        }


@dataclass(frozen=True)
class Identity:
    """Resolved principal for a request."""

    principal_key: str
    tier: Tier
    user_id: str | None = None

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None


@dataclass(frozen=True)
class QuotaKey:
    principal_key: str
    endpoint_class: EndpointClass
    context_tag: str

    def storage_key(self) -> str:
        return f"quota:{self.principal_key}:{self.endpoint_class.value}:{self.context_tag}"


@dataclass(frozen=True)
class SessionRecord:
    """Active gaming session for a user."""

    user_id: str
    start_time: float
    endpoint_class: EndpointClass
    tournament_mode: bool
    competitive_mode: bool
    expires_at: float


@dataclass(frozen=True)
class AdaptiveState:
    """Process-wide load signal, replaced wholesale by the sampler."""

    service_load: float = 0.0
    battery_saver_active: bool = False
    last_sampled_at: float = 0.0


@dataclass(frozen=True)
class WindowSnapshot:
    count: int
    window_start_ms: int
    max: int


@dataclass(frozen=True)
class Admitted:
    count: int
    window_start_ms: int
    degraded: bool = False


@dataclass(frozen=True)
class Exceeded:
    retry_after_ms: int
    count: int
    window_start_ms: int
    degraded: bool = False


CommitResult = Admitted | Exceeded


class DenyReason(str, Enum):
    QUOTA = "quota"
    SHED = "shed"


@dataclass(frozen=True)
class Admit:
    bypassed: bool = False


@dataclass(frozen=True)
class Delay:
    delay_ms: int


@dataclass(frozen=True)
class Deny:
    reason: DenyReason
    retry_after_ms: int


Verdict = Admit | Delay | Deny


@dataclass(frozen=True)
class DenialPayload:
    """Abstract denial record; serialized by the response shaper."""

    code: str
    endpoint_class: EndpointClass
    retry_after_ms: int
    context_flags: dict[str, bool] = field(default_factory=dict)
