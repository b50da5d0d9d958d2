"""
Tests for the quota ledger: boundaries, rollover, corruption, fail-open and
degraded mode.
"""

import asyncio

from gamegate.ratelimit.errors import StoreUnavailable
from gamegate.ratelimit.ledger import ErrorRateTracker, QuotaLedger
from gamegate.ratelimit.store import MemoryStore
from gamegate.ratelimit.types import Admitted, EndpointClass, Exceeded, QuotaKey

KEY = QuotaKey("user:1", EndpointClass.VOTING, "base")
WINDOW_MS = 60_000


class UnavailableStore(MemoryStore):
    """Store whose window commits always time out."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.commit_calls = 0

    async def commit_window(self, key, now_ms, window_ms, limit):
        self.commit_calls += 1
        raise StoreUnavailable("commit_window: deadline of 50ms exceeded")


class TestCommitBoundaries:
    """Window cap and boundary behaviour."""

    async def test_count_equal_to_max_admits_next_denies(self, memory_store, clock):
        """The max-th request admits; max + 1 is refused."""
        ledger = QuotaLedger(memory_store, clock=clock)
        results = [await ledger.commit(KEY, WINDOW_MS, 5) for _ in range(6)]
        assert all(isinstance(r, Admitted) for r in results[:5])
        assert results[4].count == 5
        assert isinstance(results[5], Exceeded)

    async def test_retry_after_is_time_left_in_window(self, memory_store, clock):
        """Exceeded carries the time until the window resets."""
        ledger = QuotaLedger(memory_store, clock=clock)
        await ledger.commit(KEY, WINDOW_MS, 1)
        clock.advance(15)
        result = await ledger.commit(KEY, WINDOW_MS, 1)
        assert isinstance(result, Exceeded)
        assert result.retry_after_ms == 45_000

    async def test_window_rolls_over(self, memory_store, clock):
        """After a full window the count starts again at one."""
        ledger = QuotaLedger(memory_store, clock=clock)
        await ledger.commit(KEY, WINDOW_MS, 1)
        clock.advance(60)
        result = await ledger.commit(KEY, WINDOW_MS, 1)
        assert isinstance(result, Admitted)
        assert result.count == 1

    async def test_counters_are_monotonic_within_window(self, memory_store, clock):
        """Successive admits never decrease the count."""
        ledger = QuotaLedger(memory_store, clock=clock)
        counts = []
        for _ in range(10):
            result = await ledger.commit(KEY, WINDOW_MS, 100)
            counts.append(result.count)
            clock.advance(1)
        assert counts == sorted(counts)

    async def test_concurrent_commits_never_exceed_max(self, memory_store, clock):
        """Parallel commits against one key admit exactly max."""
        ledger = QuotaLedger(memory_store, clock=clock)
        results = await asyncio.gather(*(ledger.commit(KEY, WINDOW_MS, 7) for _ in range(30)))
        assert sum(isinstance(r, Admitted) for r in results) == 7

    async def test_keys_are_independent(self, memory_store, clock):
        """Different context tags keep separate counters."""
        ledger = QuotaLedger(memory_store, clock=clock)
        other = QuotaKey("user:1", EndpointClass.VOTING, "tournament")
        await ledger.commit(KEY, WINDOW_MS, 1)
        assert isinstance(await ledger.commit(other, WINDOW_MS, 1), Admitted)


class TestPeek:
    """Read-only window inspection."""

    async def test_peek_after_commit(self, memory_store, clock):
        """Peek sees at least what was committed and does not increment."""
        ledger = QuotaLedger(memory_store, clock=clock)
        await ledger.commit(KEY, WINDOW_MS, 10)
        await ledger.commit(KEY, WINDOW_MS, 10)
        first = await ledger.peek(KEY, 10)
        second = await ledger.peek(KEY, 10)
        assert first.count >= 2
        assert second.count == first.count
        assert first.max == 10

    async def test_peek_missing_key(self, memory_store, clock):
        """An untouched key peeks as an empty window."""
        ledger = QuotaLedger(memory_store, clock=clock)
        snapshot = await ledger.peek(KEY)
        assert snapshot.count == 0


class TestRelease:
    """Deferred-commit release."""

    async def test_release_returns_slot(self, memory_store, clock):
        """Releasing a reservation lets another request in."""
        ledger = QuotaLedger(memory_store, clock=clock)
        first = await ledger.commit(KEY, WINDOW_MS, 1)
        await ledger.release(KEY, first.window_start_ms)
        assert isinstance(await ledger.commit(KEY, WINDOW_MS, 1), Admitted)


class TestCorruptWindow:
    """A corrupt record resets only its own key."""

    async def test_corrupt_key_is_reset(self, memory_store, clock):
        """The commit restarts from an empty window."""
        ledger = QuotaLedger(memory_store, clock=clock)
        await memory_store.setex(KEY.storage_key(), 60, "garbage")
        result = await ledger.commit(KEY, WINDOW_MS, 5)
        assert isinstance(result, Admitted)
        assert result.count == 1
        assert result.degraded is False


class TestFailOpen:
    """Store outages admit and flag the decision."""

    async def test_unavailable_store_fails_open(self, clock):
        """A timed-out commit admits with the degraded flag."""
        ledger = QuotaLedger(UnavailableStore(clock), clock=clock)
        result = await ledger.commit(KEY, WINDOW_MS, 1)
        assert isinstance(result, Admitted)
        assert result.degraded is True

    async def test_error_rate_switches_to_degraded_mode(self, clock):
        """After enough failures the ledger enforces locally."""
        store = UnavailableStore(clock)
        ledger = QuotaLedger(store, clock=clock, degraded_min_samples=5, degraded_hold_s=30)
        for _ in range(5):
            await ledger.commit(KEY, WINDOW_MS, 2)
        assert ledger.degraded is True
        calls = store.commit_calls

        results = [await ledger.commit(KEY, WINDOW_MS, 2) for _ in range(3)]
        assert store.commit_calls == calls
        assert all(r.degraded for r in results)
        assert isinstance(results[1], Admitted)
        assert isinstance(results[2], Exceeded)

    async def test_degraded_mode_expires(self, clock):
        """The shared store is tried again once the hold elapses."""
        store = UnavailableStore(clock)
        ledger = QuotaLedger(store, clock=clock, degraded_min_samples=5, degraded_hold_s=30)
        for _ in range(5):
            await ledger.commit(KEY, WINDOW_MS, 2)
        clock.advance(31)
        assert ledger.degraded is False
        calls = store.commit_calls
        await ledger.commit(KEY, WINDOW_MS, 2)
        assert store.commit_calls == calls + 1


class TestErrorRateTracker:
    """Sliding error-rate window."""

    def test_needs_minimum_samples(self):
        """A couple of failures alone do not trip."""
        tracker = ErrorRateTracker(window_s=10, min_samples=5, threshold=0.5)
        tracker.record(False, 0)
        tracker.record(False, 1)
        assert tracker.tripped(1) is False

    def test_old_samples_age_out(self):
        """Samples older than the window are forgotten."""
        tracker = ErrorRateTracker(window_s=10, min_samples=1, threshold=0.5)
        tracker.record(False, 0)
        assert tracker.error_rate(5) == 1.0
        assert tracker.error_rate(11) == 0.0
