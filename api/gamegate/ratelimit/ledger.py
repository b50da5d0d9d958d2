"""
Quota ledger.

Owns every ``quota:`` key. Each commit is an atomic check-and-increment on a
fixed window; the store guarantees it is linearizable per key.

When the backing store misbehaves the ledger fails open, and once the error
rate crosses a threshold it switches to an in-process approximation for a
while (degraded mode). Every decision made without the shared store is
flagged so the response can say so.
"""

import logging
import time
from collections import deque
from collections.abc import Callable

from gamegate.ratelimit.errors import CorruptWindowError, StoreError
from gamegate.ratelimit.store import KeyValueStore, MemoryStore
from gamegate.ratelimit.types import Admitted, CommitResult, Exceeded, QuotaKey, WindowSnapshot

logger = logging.getLogger(__name__)


class ErrorRateTracker:
    """Sliding window of store call outcomes."""

    def __init__(self, window_s: float = 10.0, min_samples: int = 5, threshold: float = 0.5):
        self.window_s = window_s
        self.min_samples = min_samples
        self.threshold = threshold
        self._samples: deque[tuple[float, bool]] = deque()

    def _trim(self, now: float) -> None:
        cutoff = now - self.window_s
        while self._samples and self._samples[0][0] < cutoff:
            self._samples.popleft()

    def record(self, ok: bool, now: float) -> None:
        self._samples.append((now, ok))
        self._trim(now)

    def error_rate(self, now: float) -> float:
        self._trim(now)
        if not self._samples:
            return 0.0
        failures = sum(1 for _, ok in self._samples if not ok)
        return failures / len(self._samples)

    def tripped(self, now: float) -> bool:
        self._trim(now)
        return len(self._samples) >= self.min_samples and self.error_rate(now) >= self.threshold

    def clear(self) -> None:
        self._samples.clear()


class QuotaLedger:
    """Per-(principal, class, context) fixed-window counters."""

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], float] = time.time,
        degraded_window_s: float = 10.0,
        degraded_min_samples: int = 5,
        degraded_error_ratio: float = 0.5,
        degraded_hold_s: float = 30.0,
        degraded_max_keys: int = 10_000,
    ):
        self.store = store
        self.clock = clock
        self.errors = ErrorRateTracker(degraded_window_s, degraded_min_samples, degraded_error_ratio)
        self.degraded_hold_s = degraded_hold_s
        self.fallback = MemoryStore(maxsize=degraded_max_keys, clock=clock)
        self._degraded_until = 0.0

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    @property
    def degraded(self) -> bool:
        return self.clock() < self._degraded_until

    def _record(self, ok: bool) -> None:
        now = self.clock()
        self.errors.record(ok, now)
        if not ok and not self.degraded and self.errors.tripped(now):
            self._degraded_until = now + self.degraded_hold_s
            self.errors.clear()
            logger.warning(
                "Quota store error rate exceeded; serving from local approximation",
                extra={"event_type": "ledger_degraded", "hold_s": self.degraded_hold_s},
            )

    async def peek(self, key: QuotaKey, max_: int = 0) -> WindowSnapshot:
        """Read a window without incrementing it."""
        storage_key = key.storage_key()
        store = self.fallback if self.degraded else self.store
        try:
            window = await store.read_window(storage_key)
        except CorruptWindowError:
            window = None
        now = self.now_ms()
        if window is None:
            return WindowSnapshot(count=0, window_start_ms=now, max=max_)
        count, start = window
        return WindowSnapshot(count=count, window_start_ms=start, max=max_)

    async def commit(self, key: QuotaKey, window_ms: int, effective_max: int) -> CommitResult:
        """
        Atomic check-and-increment.

        Returns Admitted(count) when the request fits in the window, otherwise
        Exceeded(retry_after_ms). Store outages fail open.
        """
        storage_key = key.storage_key()
        now = self.now_ms()

        if self.degraded:
            outcome = await self.fallback.commit_window(storage_key, now, window_ms, effective_max)
            return self._to_result(outcome, now, window_ms, degraded=True)

        try:
            try:
                outcome = await self.store.commit_window(storage_key, now, window_ms, effective_max)
            except CorruptWindowError as exc:
                logger.error(
                    "Corrupt quota window; resetting key",
                    extra={"event_type": "ledger_corrupt_key", "key": storage_key, "error": str(exc)},
                )
                await self.store.delete(storage_key)
                outcome = await self.store.commit_window(storage_key, now, window_ms, effective_max)
        except StoreError as exc:
            self._record(False)
            logger.warning(
                "Quota store unavailable; failing open",
                extra={"event_type": "ledger_fail_open", "key": storage_key, "error": str(exc)},
            )
            return Admitted(count=0, window_start_ms=now, degraded=True)

        self._record(True)
        return self._to_result(outcome, now, window_ms, degraded=False)

    @staticmethod
    def _to_result(outcome, now: int, window_ms: int, degraded: bool) -> CommitResult:
        if outcome.admitted:
            return Admitted(count=outcome.count, window_start_ms=outcome.window_start_ms, degraded=degraded)
        retry_after = max(0, outcome.window_start_ms + window_ms - now)
        return Exceeded(
            retry_after_ms=retry_after,
            count=outcome.count,
            window_start_ms=outcome.window_start_ms,
            degraded=degraded,
        )

    async def release(self, key: QuotaKey, window_start_ms: int, degraded: bool = False) -> None:
        """Give back a reserved slot (deferred commit) if its window is still current."""
        store = self.fallback if degraded else self.store
        try:
            await store.release_window(key.storage_key(), window_start_ms)
        except StoreError as exc:
            logger.warning(
                "Failed to release reserved quota slot",
                extra={"event_type": "ledger_release_failed", "key": key.storage_key(), "error": str(exc)},
            )
