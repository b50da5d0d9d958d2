"""
Session registry: active gaming sessions and tournament participation.

Owns every ``sess:`` key. Best-effort throughout: a store failure is logged
and reads as "no session" / "not a participant". The registry only enriches
the admission decision, it never denies anything itself.
"""

import json
import logging
import time
from collections.abc import Callable

from gamegate.ratelimit.errors import StoreError
from gamegate.ratelimit.store import KeyValueStore
from gamegate.ratelimit.types import EndpointClass, GamingContext, SessionRecord

logger = logging.getLogger(__name__)

SESSION_TTL_S = 300
TOURNAMENT_TTL_S = 3600


def session_key(user_id: str) -> str:
    return f"sess:gaming:{user_id}"


def participant_key(user_id: str, tournament_id: str) -> str:
    return f"sess:tournament:{tournament_id}:{user_id}"


class SessionRegistry:
    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], float] = time.time,
        session_ttl_s: int = SESSION_TTL_S,
        tournament_ttl_s: int = TOURNAMENT_TTL_S,
    ):
        self.store = store
        self.clock = clock
        self.session_ttl_s = session_ttl_s
        self.tournament_ttl_s = tournament_ttl_s

    async def get_gaming_session(self, user_id: str) -> SessionRecord | None:
        try:
            raw = await self.store.get(session_key(user_id))
        except StoreError as exc:
            logger.warning(
                "Failed to read gaming session",
                extra={"event_type": "session_read_failed", "principal": user_id, "error": str(exc)},
            )
            return None
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            record = SessionRecord(
                user_id=str(data["user_id"]),
                start_time=float(data["start_time"]),
                endpoint_class=EndpointClass(data["endpoint_class"]),
                tournament_mode=bool(data["tournament_mode"]),
                competitive_mode=bool(data["competitive_mode"]),
                expires_at=float(data["expires_at"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "Discarding unreadable gaming session",
                extra={"event_type": "session_corrupt", "principal": user_id, "error": str(exc)},
            )
            return None
        if record.expires_at <= self.clock():
            return None
        return record

    async def record_gaming_session(
        self,
        user_id: str,
        endpoint_class: EndpointClass,
        ctx: GamingContext,
        existing: SessionRecord | None = None,
    ) -> SessionRecord | None:
        """Upsert the session and push its expiry out by the session TTL."""
        now = self.clock()
        record = SessionRecord(
            user_id=user_id,
            start_time=existing.start_time if existing is not None else now,
            endpoint_class=endpoint_class,
            tournament_mode=ctx.tournament_mode,
            competitive_mode=ctx.competitive_mode,
            expires_at=now + self.session_ttl_s,
        )
        payload = json.dumps(
            {
                "user_id": record.user_id,
                "start_time": record.start_time,
                "endpoint_class": record.endpoint_class.value,
                "tournament_mode": record.tournament_mode,
                "competitive_mode": record.competitive_mode,
                "expires_at": record.expires_at,
            }
        )
        try:
            await self.store.setex(session_key(user_id), self.session_ttl_s, payload)
        except StoreError as exc:
            logger.warning(
                "Failed to record gaming session",
                extra={"event_type": "session_write_failed", "principal": user_id, "error": str(exc)},
            )
            return None
        return record

    async def mark_tournament_participant(self, user_id: str, tournament_id: str) -> bool:
        try:
            await self.store.setex(
                participant_key(user_id, tournament_id),
                self.tournament_ttl_s,
                str(int(self.clock() * 1000)),
            )
        except StoreError as exc:
            logger.warning(
                "Failed to mark tournament participant",
                extra={
                    "event_type": "tournament_write_failed",
                    "principal": user_id,
                    "tournament_id": tournament_id,
                    "error": str(exc),
                },
            )
            return False
        return True

    async def is_tournament_participant(self, user_id: str, tournament_id: str) -> bool:
        try:
            return await self.store.exists(participant_key(user_id, tournament_id))
        except StoreError as exc:
            logger.warning(
                "Failed to check tournament participant",
                extra={
                    "event_type": "tournament_read_failed",
                    "principal": user_id,
                    "tournament_id": tournament_id,
                    "error": str(exc),
                },
            )
            return False
