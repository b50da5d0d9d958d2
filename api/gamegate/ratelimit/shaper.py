"""
Response shaper: rate-limit headers, denial responses and delay enforcement.
"""

import asyncio
import math
from collections.abc import Awaitable, Callable

from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.types import Message, Receive

from gamegate.ratelimit.errors import ClientDisconnected
from gamegate.ratelimit.types import DenialPayload, DenyReason, EndpointClass, GamingContext, Identity

DENIAL_ERROR = "Gaming rate limit exceeded"

CLASS_MESSAGES: dict[EndpointClass, str] = {
    EndpointClass.VOTING: "Voting rate limit exceeded. Please wait before casting another vote.",
    EndpointClass.CLAN: "Clan operation rate limit exceeded. Please wait before performing another clan action.",
    EndpointClass.TOURNAMENT: (
        "Tournament operation rate limit exceeded. Please wait before interacting with tournaments again."
    ),
    EndpointClass.LEADERBOARD: "Leaderboard update rate limit exceeded. Please wait before updating scores again.",
    EndpointClass.CHAT: "Chat rate limit exceeded. Please slow down your messages.",
    EndpointClass.WEB3: (
        "Web3 transaction rate limit exceeded. Please wait before performing another blockchain operation."
    ),
    EndpointClass.COMPETITIVE: (
        "Competitive action rate limit exceeded. Please wait before performing another competitive action."
    ),
}

SHED_MESSAGE = "The service is under heavy load. Please retry shortly."

PROTECTED_HEADERS = {
    "X-Competitive-Mode": "true",
    "X-Rate-Limit-Enforcement": "strict",
    "X-Gaming-Integrity": "protected",
}

DEGRADED_HEADERS = {"X-RateLimit-Degraded": "true"}


def _ceil_seconds(ms: int) -> int:
    return max(1, math.ceil(ms / 1000))


def rate_limit_headers(
    identity: Identity,
    endpoint_class: EndpointClass,
    effective_max: int,
    window_ms: int,
    count: int,
    window_start_ms: int,
    now_ms: int,
    degraded: bool = False,
) -> dict[str, str]:
    reset_ms = max(0, window_start_ms + window_ms - now_ms)
    headers = {
        "X-RateLimit-Policy": f"{effective_max};w={window_ms // 1000};class={endpoint_class.value}",
        "X-RateLimit-Limit": str(effective_max),
        "X-RateLimit-Remaining": str(max(0, effective_max - count)),
        "X-RateLimit-Reset": str(math.ceil(reset_ms / 1000)),
        "X-RateLimit-User": "authenticated" if identity.authenticated else "anonymous",
    }
    if degraded:
        headers.update(DEGRADED_HEADERS)
    return headers


def bypass_headers(identity: Identity, endpoint_class: EndpointClass, base_max: int, window_ms: int) -> dict[str, str]:
    """Headers for a request admitted without a commit: the full base quota remains."""
    return {
        "X-RateLimit-Policy": f"{base_max};w={window_ms // 1000};class={endpoint_class.value}",
        "X-RateLimit-Limit": str(base_max),
        "X-RateLimit-Remaining": str(base_max),
        "X-RateLimit-User": "authenticated" if identity.authenticated else "anonymous",
    }


def context_headers(ctx: GamingContext) -> dict[str, str]:
    """Integrity headers for competitive and tournament traffic."""
    return dict(PROTECTED_HEADERS) if ctx.is_protected else {}


def denial_payload(endpoint_class: EndpointClass, ctx: GamingContext, retry_after_ms: int) -> DenialPayload:
    return DenialPayload(
        code=f"GAMING_RATE_LIMITED_{endpoint_class.value.upper()}",
        endpoint_class=endpoint_class,
        retry_after_ms=retry_after_ms,
        context_flags=ctx.flags(),
    )


def denial_body(payload: DenialPayload, reason: DenyReason = DenyReason.QUOTA) -> dict:
    if reason == DenyReason.SHED:
        message = SHED_MESSAGE
    else:
        message = CLASS_MESSAGES.get(
            payload.endpoint_class,
            f"Rate limit exceeded for {payload.endpoint_class.value} operations. "
            "Please wait before trying again.",
        )
    return {
        "error": DENIAL_ERROR,
        "code": payload.code,
        "type": payload.endpoint_class.value,
        "retryAfter": _ceil_seconds(payload.retry_after_ms),
        "message": message,
        "gaming_context": dict(payload.context_flags),
    }


def _quality(accept: str, *media_types: str) -> float:
    """Highest q value the Accept header gives any of ``media_types``."""
    best = 0.0
    for part in accept.split(","):
        fields = [f.strip() for f in part.split(";")]
        media = fields[0].lower()
        if media not in media_types:
            continue
        q = 1.0
        for param in fields[1:]:
            name, _, value = param.partition("=")
            if name.strip().lower() == "q":
                try:
                    q = float(value)
                except ValueError:
                    q = 0.0
        best = max(best, q)
    return best


def prefers_text(accept: str | None) -> bool:
    if not accept:
        return False
    text_q = _quality(accept, "text/plain", "text/*")
    json_q = _quality(accept, "application/json", "application/*", "*/*")
    return text_q > json_q


def denial_response(
    reason: DenyReason,
    payload: DenialPayload,
    headers: dict[str, str] | None = None,
    accept: str | None = None,
) -> Response:
    """429 for quota exhaustion, 503 when load shedding caused the denial."""
    status_code = 503 if reason == DenyReason.SHED else 429
    body = denial_body(payload, reason)
    response_headers = dict(headers or {})
    response_headers["Retry-After"] = str(body["retryAfter"])
    if prefers_text(accept):
        text = f"{body['error']}: {body['message']} Retry after {body['retryAfter']}s."
        return PlainTextResponse(text, status_code=status_code, headers=response_headers)
    return JSONResponse(status_code=status_code, content=body, headers=response_headers)


async def wait_or_disconnect(
    delay_ms: int,
    receive: Receive,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> list[Message]:
    """
    Hold the request for ``delay_ms`` while watching for the client leaving.

    Request body messages that arrive during the wait are returned so they
    can be replayed downstream.

    Raises:
        ClientDisconnected: the client disconnected before the delay elapsed
    """
    buffered: list[Message] = []

    async def watch() -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                return
            buffered.append(message)

    sleeper = asyncio.ensure_future(sleep(delay_ms / 1000))
    watcher = asyncio.ensure_future(watch())
    try:
        done, _ = await asyncio.wait({sleeper, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sleeper, watcher):
            if not task.done():
                task.cancel()
        await asyncio.gather(sleeper, watcher, return_exceptions=True)

    if watcher in done and not watcher.cancelled():
        watcher.result()
        raise ClientDisconnected(f"client disconnected during {delay_ms}ms delay")
    return buffered
