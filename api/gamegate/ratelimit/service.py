"""
Gaming rate limiter service.

Runs the admission pipeline for one request: classify, identify, enrich from
the session registry, commit against the ledger, decide. The ASGI middleware
owns the transport side (headers, delay, denial response); this class owns
the decision.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from gamegate.config import Settings
from gamegate.ratelimit.adaptive import AdaptiveStateHolder, InFlightGauge, LoadSampler
from gamegate.ratelimit.analytics import AdmissionAnalytics
from gamegate.ratelimit.classifier import classify
from gamegate.ratelimit.decider import (
    DeciderConfig,
    EffectiveLimit,
    compute_effective_max,
    decide,
    should_bypass,
)
from gamegate.ratelimit.errors import PolicyError
from gamegate.ratelimit.identity import IdentityResolver
from gamegate.ratelimit.ledger import QuotaLedger
from gamegate.ratelimit.policy import PolicyHolder, build_policy_table, load_policy_file
from gamegate.ratelimit.sessions import SessionRegistry
from gamegate.ratelimit.shaper import DEGRADED_HEADERS, bypass_headers, context_headers, rate_limit_headers
from gamegate.ratelimit.store import KeyValueStore, MemoryStore, RedisStore
from gamegate.ratelimit.types import (
    Admit,
    Admitted,
    CommitResult,
    EndpointClass,
    GamingContext,
    Identity,
    QuotaKey,
    SessionRecord,
    Verdict,
)

logger = logging.getLogger(__name__)


def battery_saver_hint(headers: Mapping[str, str]) -> bool:
    """Client hint that the device is saving power or data."""
    return (
        headers.get("x-battery-saver", "").strip().lower() == "true"
        or headers.get("save-data", "").strip().lower() == "on"
    )


@dataclass
class AdmissionDecision:
    endpoint_class: EndpointClass
    ctx: GamingContext
    verdict: Verdict
    identity: Identity | None = None
    key: QuotaKey | None = None
    limit: EffectiveLimit | None = None
    result: CommitResult | None = None
    headers: dict[str, str] = field(default_factory=dict)
    # Slot was reserved and may be given back once the response status is known
    deferred: bool = False
    count_success: bool = True
    count_failure: bool = True

    @property
    def degraded(self) -> bool:
        return self.result is not None and self.result.degraded

    @property
    def principal(self) -> str:
        return self.identity.principal_key if self.identity else "unknown"


class GamingRateLimiter:
    """Composition root for the admission pipeline."""

    def __init__(
        self,
        store: KeyValueStore,
        policy: PolicyHolder | None = None,
        resolver: IdentityResolver | None = None,
        config: DeciderConfig | None = None,
        clock: Callable[[], float] = time.time,
        enabled: bool = True,
        allow_bypass_header: bool = False,
        admission_budget_ms: int = 100,
        session_budget_ms: int = 25,
        ledger_options: dict[str, Any] | None = None,
    ):
        self.store = store
        self.clock = clock
        self.policy = policy or PolicyHolder()
        self.resolver = resolver or IdentityResolver()
        self.config = config or DeciderConfig()
        self.ledger = QuotaLedger(store, clock=clock, **(ledger_options or {}))
        self.sessions = SessionRegistry(store, clock=clock)
        self.adaptive = AdaptiveStateHolder()
        self.gauge = InFlightGauge()
        self.analytics = AdmissionAnalytics()
        self.enabled = enabled
        self.allow_bypass_header = allow_bypass_header
        self.admission_budget_s = admission_budget_ms / 1000
        self.session_budget_s = session_budget_ms / 1000
        self.sampler: LoadSampler | None = None

    @classmethod
    def from_settings(cls, settings: Settings, store: KeyValueStore | None = None) -> "GamingRateLimiter":
        """Build the limiter, its store and its policy table from Settings."""
        if store is None:
            if settings.redis_url:
                store = RedisStore.from_url(
                    settings.redis_url,
                    max_connections=settings.redis_max_connections,
                    deadline_ms=settings.store_deadline_ms,
                )
            else:
                store = MemoryStore()
        table = load_policy_file(settings.policy_file) if settings.policy_file else build_policy_table()
        limiter = cls(
            store=store,
            policy=PolicyHolder(table, path=settings.policy_file),
            resolver=IdentityResolver(
                trusted_proxies=settings.trusted_proxies_list,
                ipv6_prefix_length=settings.ipv6_prefix_length,
                jwt_secret=settings.jwt_secret,
            ),
            config=DeciderConfig(
                load_high=settings.load_high,
                load_medium=settings.load_medium,
                slowdown_threshold=settings.slowdown_threshold,
                slowdown_battery_threshold=settings.slowdown_battery_threshold,
                slowdown_cap_ms=settings.slowdown_cap_ms,
                emergency_mode=settings.emergency_mode,
            ),
            enabled=settings.rate_limit_enabled and not settings.is_test,
            allow_bypass_header=settings.is_development,
            admission_budget_ms=settings.admission_budget_ms,
            session_budget_ms=settings.session_budget_ms,
            ledger_options={
                "degraded_window_s": settings.degraded_window_s,
                "degraded_min_samples": settings.degraded_min_samples,
                "degraded_error_ratio": settings.degraded_error_ratio,
                "degraded_hold_s": settings.degraded_hold_s,
                "degraded_max_keys": settings.degraded_max_keys,
            },
        )
        limiter.sampler = LoadSampler(
            limiter.adaptive,
            limiter.gauge,
            interval_s=settings.sampler_interval_s,
            max_in_flight=settings.max_in_flight,
        )
        return limiter

    async def _lookup(self, identity: Identity, ctx: GamingContext) -> tuple[SessionRecord | None, bool]:
        """
        Read the session and tournament participation under one shared deadline.

        A lookup that runs out of time counts as absent so the ledger commit
        keeps its share of the admission budget.
        """
        if identity.user_id is None:
            return None, False
        user_id = identity.user_id

        async def session() -> SessionRecord | None:
            if not ctx.gaming_session:
                return None
            return await self.sessions.get_gaming_session(user_id)

        async def participant() -> bool:
            if not (ctx.tournament_mode and ctx.tournament_id):
                return False
            return await self.sessions.is_tournament_participant(user_id, ctx.tournament_id)

        try:
            record, joined = await asyncio.wait_for(
                asyncio.gather(session(), participant()), timeout=self.session_budget_s
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Session lookup exceeded its deadline; using base quota",
                extra={
                    "event_type": "session_lookup_timeout",
                    "principal": identity.principal_key,
                    "deadline_ms": self.session_budget_s * 1000,
                },
            )
            return None, False
        return record, joined

    async def _refresh(
        self,
        identity: Identity,
        endpoint_class: EndpointClass,
        ctx: GamingContext,
        session: SessionRecord | None,
    ) -> None:
        if identity.user_id is None:
            return
        writes = []
        if ctx.gaming_session:
            writes.append(self.sessions.record_gaming_session(identity.user_id, endpoint_class, ctx, existing=session))
        if ctx.tournament_mode and ctx.tournament_id:
            writes.append(self.sessions.mark_tournament_participant(identity.user_id, ctx.tournament_id))
        await asyncio.gather(*writes)

    async def evaluate(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        peer: str | None = None,
        principal: Any = None,
        body_fields: Mapping[str, Any] | None = None,
    ) -> AdmissionDecision:
        """Decide admission for one request. ``headers`` must be case-insensitive or lowercase."""
        endpoint_class, ctx = classify(method, path, headers, body_fields)
        if endpoint_class == EndpointClass.HEALTH:
            return AdmissionDecision(endpoint_class, ctx, Admit(bypassed=True))

        identity = self.resolver.resolve(headers, peer, principal)
        table = self.policy.table
        policy = table.limit_for(endpoint_class)

        if should_bypass(table, endpoint_class, identity.tier, self.config.emergency_mode):
            return AdmissionDecision(
                endpoint_class,
                ctx,
                Admit(bypassed=True),
                identity=identity,
                headers={
                    **bypass_headers(identity, endpoint_class, policy.max, policy.window_ms),
                    **context_headers(ctx),
                },
            )

        session, participant = await self._lookup(identity, ctx)
        state = self.adaptive.state
        limit = compute_effective_max(
            table,
            endpoint_class,
            ctx,
            identity.tier,
            state,
            session=session,
            tournament_participant=participant,
            config=self.config,
        )

        key = QuotaKey(identity.principal_key, endpoint_class, ctx.context_tag)
        result, _ = await asyncio.gather(
            self.ledger.commit(key, limit.window_ms, limit.effective_max),
            self._refresh(identity, endpoint_class, ctx, session),
        )
        now_ms = self.ledger.now_ms()
        verdict = decide(
            result,
            limit,
            now_ms,
            battery_saver=battery_saver_hint(headers) or state.battery_saver_active,
            config=self.config,
        )

        response_headers = rate_limit_headers(
            identity,
            endpoint_class,
            limit.effective_max,
            limit.window_ms,
            result.count,
            result.window_start_ms,
            now_ms,
            degraded=result.degraded,
        )
        response_headers.update(context_headers(ctx))

        return AdmissionDecision(
            endpoint_class,
            ctx,
            verdict,
            identity=identity,
            key=key,
            limit=limit,
            result=result,
            headers=response_headers,
            deferred=(
                isinstance(result, Admitted)
                and result.count > 0
                and not (policy.count_success and policy.count_failure)
            ),
            count_success=policy.count_success,
            count_failure=policy.count_failure,
        )

    def fail_open_headers(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        peer: str | None = None,
        principal: Any = None,
        body_fields: Mapping[str, Any] | None = None,
    ) -> dict[str, str]:
        """
        Headers for a request admitted without a decision.

        Describes the base policy of the request's class without touching any
        store. Health checks get none.
        """
        endpoint_class, ctx = classify(method, path, headers, body_fields)
        if endpoint_class == EndpointClass.HEALTH:
            return {}
        identity = self.resolver.resolve(headers, peer, principal)
        policy = self.policy.table.limit_for(endpoint_class)
        return {
            **bypass_headers(identity, endpoint_class, policy.max, policy.window_ms),
            **context_headers(ctx),
            **DEGRADED_HEADERS,
        }

    async def settle(self, decision: AdmissionDecision, status_code: int) -> None:
        """Give back a reserved slot when the response outcome is not counted."""
        if not decision.deferred or decision.key is None or decision.result is None:
            return
        success = status_code < 400
        counted = decision.count_success if success else decision.count_failure
        if counted:
            return
        logger.debug(
            "Releasing uncounted quota slot",
            extra={
                "event_type": "quota_released",
                "principal": decision.principal,
                "class": decision.endpoint_class.value,
                "status_code": status_code,
            },
        )
        await self.ledger.release(decision.key, decision.result.window_start_ms, degraded=decision.result.degraded)

    def reload_policy(self) -> bool:
        """Reload the policy table; returns False (and keeps the old table) on failure."""
        try:
            self.policy.reload()
        except PolicyError:
            return False
        return True

    async def start(self) -> None:
        if self.sampler is not None:
            self.sampler.start()

    async def close(self) -> None:
        if self.sampler is not None:
            await self.sampler.stop()
        await self.store.close()
