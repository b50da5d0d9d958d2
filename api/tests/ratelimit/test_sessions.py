"""
Tests for the session registry.
"""

from gamegate.ratelimit.errors import StoreUnavailable
from gamegate.ratelimit.sessions import SessionRegistry, session_key
from gamegate.ratelimit.store import MemoryStore
from gamegate.ratelimit.types import EndpointClass, GamingContext

CTX = GamingContext(gaming_session=True, competitive_mode=True)


class BrokenStore(MemoryStore):
    """Every operation fails."""

    async def get(self, key):
        raise StoreUnavailable("get")

    async def setex(self, key, ttl_s, value):
        raise StoreUnavailable("setex")

    async def exists(self, key):
        raise StoreUnavailable("exists")


class TestGamingSession:
    """Session records."""

    async def test_record_and_read(self, memory_store, clock):
        """A recorded session reads back with its flags."""
        registry = SessionRegistry(memory_store, clock=clock)
        await registry.record_gaming_session("u1", EndpointClass.COMPETITIVE, CTX)
        session = await registry.get_gaming_session("u1")
        assert session is not None
        assert session.endpoint_class == EndpointClass.COMPETITIVE
        assert session.competitive_mode is True
        assert session.expires_at == clock() + 300

    async def test_refresh_keeps_start_time(self, memory_store, clock):
        """Refreshing extends the expiry but keeps the original start."""
        registry = SessionRegistry(memory_store, clock=clock)
        await registry.record_gaming_session("u1", EndpointClass.CHAT, CTX)
        started = clock()
        clock.advance(200)
        existing = await registry.get_gaming_session("u1")
        await registry.record_gaming_session("u1", EndpointClass.CHAT, CTX, existing=existing)
        clock.advance(200)
        session = await registry.get_gaming_session("u1")
        assert session is not None
        assert session.start_time == started

    async def test_session_lapses_after_ttl(self, memory_store, clock):
        """Without refresh the session is gone after five minutes."""
        registry = SessionRegistry(memory_store, clock=clock)
        await registry.record_gaming_session("u1", EndpointClass.CHAT, CTX)
        clock.advance(301)
        assert await registry.get_gaming_session("u1") is None

    async def test_unreadable_record_is_ignored(self, memory_store, clock):
        """A corrupt session record reads as no session."""
        registry = SessionRegistry(memory_store, clock=clock)
        await memory_store.setex(session_key("u1"), 300, "{not json")
        assert await registry.get_gaming_session("u1") is None


class TestTournamentParticipation:
    """Participation presence keys."""

    async def test_mark_and_check(self, memory_store, clock):
        """A marked participant is confirmed for that tournament only."""
        registry = SessionRegistry(memory_store, clock=clock)
        assert await registry.mark_tournament_participant("u1", "T1") is True
        assert await registry.is_tournament_participant("u1", "T1") is True
        assert await registry.is_tournament_participant("u1", "T2") is False
        assert await registry.is_tournament_participant("u2", "T1") is False

    async def test_participation_lapses_after_an_hour(self, memory_store, clock):
        """Participation expires 3600 s after the last mark."""
        registry = SessionRegistry(memory_store, clock=clock)
        await registry.mark_tournament_participant("u1", "T1")
        clock.advance(3601)
        assert await registry.is_tournament_participant("u1", "T1") is False


class TestBestEffort:
    """Store failures yield neutral values."""

    async def test_failures_are_neutral(self, clock):
        """Reads and writes against a broken store never raise."""
        registry = SessionRegistry(BrokenStore(clock=clock), clock=clock)
        assert await registry.get_gaming_session("u1") is None
        assert await registry.record_gaming_session("u1", EndpointClass.CHAT, CTX) is None
        assert await registry.mark_tournament_participant("u1", "T1") is False
        assert await registry.is_tournament_participant("u1", "T1") is False
