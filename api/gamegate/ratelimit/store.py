"""
Key-value backing stores for the quota ledger and session registry.

Both stores satisfy the same contract: ``GET``, atomic ``INCR`` with expiry,
``EXISTS`` and ``SETEX``, plus the three quota-window operations the ledger
needs to be linearizable per key (commit, read, release).

- ``RedisStore`` runs the window operations as server-side Lua scripts and
  falls back to a bounded WATCH/MULTI loop when scripting is unavailable.
- ``MemoryStore`` keeps everything in a per-item-TTL LRU behind one lock; it
  serves single-process deployments, tests, and the ledger's degraded mode.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from cachetools import TLRUCache
from redis import asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, ResponseError, WatchError
from redis.exceptions import TimeoutError as RedisTimeoutError

from gamegate.ratelimit.errors import CorruptWindowError, StoreError, StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

CAS_MAX_ATTEMPTS = 5
BACKOFF_BASE_S = 0.005


@dataclass(frozen=True)
class WindowCommit:
    """Outcome of an atomic check-and-increment on one quota window."""

    admitted: bool
    count: int
    window_start_ms: int


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def incr(self, key: str, amount: int = 1, ttl_ms: int | None = None) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def setex(self, key: str, ttl_s: int, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def commit_window(
        self, key: str, now_ms: int, window_ms: int, limit: int
    ) -> WindowCommit: ...

    async def read_window(self, key: str) -> tuple[int, int] | None: ...

    async def release_window(self, key: str, window_start_ms: int) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def _decode_window(key: str, count: Any, start: Any) -> tuple[int, int] | None:
    if count is None and start is None:
        return None
    try:
        return int(count), int(start)
    except (TypeError, ValueError) as exc:
        raise CorruptWindowError(key, (count, start)) from exc


def _next_window(
    existing: tuple[int, int] | None, now_ms: int, window_ms: int, limit: int
) -> WindowCommit:
    """Fixed window with rollover; shared by every non-script code path."""
    count, start = existing if existing is not None else (0, now_ms)
    if now_ms - start >= window_ms:
        count, start = 0, now_ms
    if count + 1 > limit:
        return WindowCommit(admitted=False, count=count, window_start_ms=start)
    return WindowCommit(admitted=True, count=count + 1, window_start_ms=start)


# KEYS[1] = window key
# ARGV = now_ms, window_ms, limit, ttl_ms
# Returns {admitted (1/0, -1 corrupt), count, window_start_ms}
COMMIT_WINDOW_LUA = r"""
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])

local raw = redis.call('HMGET', key, 'count', 'start')
local count = 0
local start = now
if raw[1] or raw[2] then
  count = tonumber(raw[1])
  start = tonumber(raw[2])
  if count == nil or start == nil then
    return {-1, 0, 0}
  end
end

if now - start >= window then
  count = 0
  start = now
end

if count + 1 > limit then
  return {0, count, start}
end

count = count + 1
redis.call('HSET', key, 'count', count, 'start', start)
redis.call('PEXPIRE', key, ttl)
return {1, count, start}
"""

# KEYS[1] = window key
# ARGV = window_start_ms of the reservation
# Returns the count after release (-1 corrupt); unchanged if the window rolled
RELEASE_WINDOW_LUA = r"""
local key = KEYS[1]
local raw = redis.call('HMGET', key, 'count', 'start')
if not raw[1] then
  return 0
end
local count = tonumber(raw[1])
local start = tonumber(raw[2])
if count == nil or start == nil then
  return -1
end
if start ~= tonumber(ARGV[1]) or count <= 0 then
  return count
end
count = count - 1
redis.call('HSET', key, 'count', count)
return count
"""


class RedisStore:
    """Redis-backed store with per-operation deadlines and transient retries."""

    def __init__(
        self,
        client: aioredis.Redis,
        deadline_ms: int = 50,
        use_scripts: bool = True,
    ):
        self.client = client
        self.deadline_s = deadline_ms / 1000
        self.use_scripts = use_scripts
        self._commit_script = client.register_script(COMMIT_WINDOW_LUA)
        self._release_script = client.register_script(RELEASE_WINDOW_LUA)

    @classmethod
    def from_url(cls, url: str, max_connections: int = 20, deadline_ms: int = 50) -> "RedisStore":
        """Create a store over a bounded connection pool."""
        pool = aioredis.ConnectionPool.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=max_connections,
            socket_connect_timeout=2,
            socket_timeout=2,
            health_check_interval=30,
        )
        return cls(aioredis.Redis(connection_pool=pool), deadline_ms=deadline_ms)

    async def _call(self, op: str, factory: Callable[[], Awaitable[T]]) -> T:
        """
        Run one store operation under the hard deadline.

        Transient failures are retried with exponential backoff while time
        remains; anything left over surfaces as StoreUnavailable.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.deadline_s
        attempt = 0
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise StoreUnavailable(f"{op}: deadline of {self.deadline_s * 1000:.0f}ms exceeded")
            try:
                return await asyncio.wait_for(factory(), timeout=remaining)
            except (RedisConnectionError, RedisTimeoutError, asyncio.TimeoutError) as exc:
                backoff = BACKOFF_BASE_S * (2**attempt)
                attempt += 1
                if deadline - loop.time() <= backoff:
                    raise StoreUnavailable(f"{op}: {exc or 'timed out'}") from exc
                await asyncio.sleep(backoff)
            except ResponseError as exc:
                if "WRONGTYPE" in str(exc):
                    raise CorruptWindowError(op, str(exc)) from exc
                raise StoreError(f"{op}: {exc}") from exc
            except RedisError as exc:
                raise StoreError(f"{op}: {exc}") from exc

    async def get(self, key: str) -> str | None:
        return await self._call("get", lambda: self.client.get(key))

    async def incr(self, key: str, amount: int = 1, ttl_ms: int | None = None) -> int:
        async def _incr() -> int:
            async with self.client.pipeline(transaction=True) as pipe:
                # Seeding with SET NX attaches the expiry only when the key is new
                if ttl_ms is not None:
                    pipe.set(key, 0, px=ttl_ms, nx=True)
                pipe.incrby(key, amount)
                result = await pipe.execute()
            return int(result[-1])

        return await self._call("incr", _incr)

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", lambda: self.client.exists(key)))

    async def setex(self, key: str, ttl_s: int, value: str) -> None:
        await self._call("setex", lambda: self.client.set(key, value, ex=ttl_s))

    async def delete(self, key: str) -> None:
        await self._call("delete", lambda: self.client.delete(key))

    async def read_window(self, key: str) -> tuple[int, int] | None:
        count, start = await self._call("read_window", lambda: self.client.hmget(key, "count", "start"))
        return _decode_window(key, count, start)

    async def commit_window(self, key: str, now_ms: int, window_ms: int, limit: int) -> WindowCommit:
        ttl_ms = 2 * window_ms
        if self.use_scripts:
            try:
                result = await self._call(
                    "commit_window",
                    lambda: self._commit_script(keys=[key], args=[now_ms, window_ms, limit, ttl_ms]),
                )
            except StoreError as exc:
                if isinstance(exc, (StoreUnavailable, CorruptWindowError)) or not _scripting_unsupported(exc):
                    raise
                logger.warning(
                    "Store rejected scripting; switching to compare-and-set",
                    extra={"event_type": "store_cas_fallback", "error": str(exc)},
                )
                self.use_scripts = False
            else:
                admitted, count, start = (int(v) for v in result)
                if admitted < 0:
                    raise CorruptWindowError(key, result)
                return WindowCommit(admitted=bool(admitted), count=count, window_start_ms=start)

        return await self._call(
            "commit_window", lambda: self._commit_window_cas(key, now_ms, window_ms, limit, ttl_ms)
        )

    async def _commit_window_cas(
        self, key: str, now_ms: int, window_ms: int, limit: int, ttl_ms: int
    ) -> WindowCommit:
        async with self.client.pipeline(transaction=True) as pipe:
            for _ in range(CAS_MAX_ATTEMPTS):
                try:
                    await pipe.watch(key)
                    count, start = await pipe.hmget(key, "count", "start")
                    outcome = _next_window(_decode_window(key, count, start), now_ms, window_ms, limit)
                    if not outcome.admitted:
                        await pipe.unwatch()
                        return outcome
                    pipe.multi()
                    pipe.hset(key, mapping={"count": outcome.count, "start": outcome.window_start_ms})
                    pipe.pexpire(key, ttl_ms)
                    await pipe.execute()
                    return outcome
                except WatchError:
                    continue
                finally:
                    await pipe.reset()
        raise StoreUnavailable(f"commit_window: {CAS_MAX_ATTEMPTS} compare-and-set attempts lost")

    async def release_window(self, key: str, window_start_ms: int) -> int:
        if self.use_scripts:
            result = await self._call(
                "release_window",
                lambda: self._release_script(keys=[key], args=[window_start_ms]),
            )
            if int(result) < 0:
                raise CorruptWindowError(key, result)
            return int(result)

        async def _release() -> int:
            async with self.client.pipeline(transaction=True) as pipe:
                for _ in range(CAS_MAX_ATTEMPTS):
                    try:
                        await pipe.watch(key)
                        count, start = await pipe.hmget(key, "count", "start")
                        window = _decode_window(key, count, start)
                        if window is None or window[1] != window_start_ms or window[0] <= 0:
                            await pipe.unwatch()
                            return window[0] if window else 0
                        pipe.multi()
                        pipe.hset(key, "count", window[0] - 1)
                        await pipe.execute()
                        return window[0] - 1
                    except WatchError:
                        continue
                    finally:
                        await pipe.reset()
            raise StoreUnavailable(f"release_window: {CAS_MAX_ATTEMPTS} compare-and-set attempts lost")

        return await self._call("release_window", _release)

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping", self.client.ping))
        except StoreError:
            return False

    async def close(self) -> None:
        await self.client.aclose()


def _scripting_unsupported(exc: StoreError) -> bool:
    message = str(exc).lower()
    return "unknown command" in message and ("eval" in message or "script" in message)


@dataclass
class _Entry:
    value: Any
    expires_at: float


def _ttu(_key: str, entry: _Entry, _now: float) -> float:
    return entry.expires_at


class MemoryStore:
    """In-process store: an LRU with per-item TTL guarded by a single lock."""

    def __init__(self, maxsize: int = 100_000, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._cache: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_ttu, timer=clock)
        self._lock = asyncio.Lock()

    def _expiry(self, ttl_s: float | None) -> float:
        return self.clock() + ttl_s if ttl_s is not None else float("inf")

    def _lookup(self, key: str) -> Any:
        entry = self._cache.get(key)
        return entry.value if entry is not None else None

    def __len__(self) -> int:
        return len(self._cache)

    async def get(self, key: str) -> str | None:
        value = self._lookup(key)
        if value is None:
            return None
        return value if isinstance(value, str) else str(value)

    async def incr(self, key: str, amount: int = 1, ttl_ms: int | None = None) -> int:
        async with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                expiry = self._expiry(ttl_ms / 1000 if ttl_ms is not None else None)
                value = amount
            else:
                expiry = entry.expires_at
                try:
                    value = int(entry.value) + amount
                except (TypeError, ValueError) as exc:
                    raise StoreError(f"incr: value at {key!r} is not an integer") from exc
            self._cache[key] = _Entry(str(value), expiry)
            return value

    async def exists(self, key: str) -> bool:
        return self._cache.get(key) is not None

    async def setex(self, key: str, ttl_s: int, value: str) -> None:
        async with self._lock:
            self._cache[key] = _Entry(value, self._expiry(ttl_s))

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._cache.pop(key, None)

    def _window(self, key: str) -> tuple[int, int] | None:
        value = self._lookup(key)
        if value is None:
            return None
        if not isinstance(value, dict):
            raise CorruptWindowError(key, value)
        return _decode_window(key, value.get("count"), value.get("start"))

    async def read_window(self, key: str) -> tuple[int, int] | None:
        return self._window(key)

    async def commit_window(self, key: str, now_ms: int, window_ms: int, limit: int) -> WindowCommit:
        async with self._lock:
            outcome = _next_window(self._window(key), now_ms, window_ms, limit)
            if outcome.admitted:
                self._cache[key] = _Entry(
                    {"count": outcome.count, "start": outcome.window_start_ms},
                    self._expiry(2 * window_ms / 1000),
                )
            return outcome

    async def release_window(self, key: str, window_start_ms: int) -> int:
        async with self._lock:
            window = self._window(key)
            if window is None:
                return 0
            count, start = window
            if start != window_start_ms or count <= 0:
                return count
            entry = self._cache[key]
            self._cache[key] = _Entry({"count": count - 1, "start": start}, entry.expires_at)
            return count - 1

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._cache.clear()
