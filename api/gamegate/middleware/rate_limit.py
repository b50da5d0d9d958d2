"""
Gaming-aware rate limiting middleware.

Pure ASGI so the request can be held (slow-down) or answered (denial) before
the application sees it, and so the response status can be observed for the
deferred-commit classes.
"""

import asyncio
import json
import logging
import time
from collections.abc import Mapping
from typing import Any

from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from gamegate.config import settings
from gamegate.ratelimit.analytics import Outcome
from gamegate.ratelimit.errors import ClientDisconnected
from gamegate.ratelimit.service import AdmissionDecision, GamingRateLimiter
from gamegate.ratelimit.shaper import DEGRADED_HEADERS, denial_payload, denial_response, wait_or_disconnect
from gamegate.ratelimit.store import MemoryStore
from gamegate.ratelimit.types import Admit, Delay, Deny, DenyReason

logger = logging.getLogger(__name__)

BODY_SNIFF_LIMIT = 64 * 1024
BODY_HINT_FIELDS = ("transactionId", "walletAddress")
BODY_METHODS = {"POST", "PUT", "PATCH"}

_limiter: GamingRateLimiter | None = None


def get_limiter() -> GamingRateLimiter:
    """Get the global limiter instance, creating an in-process one on first use."""
    global _limiter
    if _limiter is None:
        _limiter = GamingRateLimiter.from_settings(settings, store=MemoryStore())
    return _limiter


def get_request_limiter(request: Request) -> GamingRateLimiter:
    """FastAPI dependency: the limiter installed on the running app."""
    limiter = getattr(request.app.state, "rate_limiter", None)
    return limiter if limiter is not None else get_limiter()


def set_limiter(limiter: GamingRateLimiter | None) -> None:
    global _limiter
    _limiter = limiter


def reset_limiter() -> None:
    """Drop the global limiter. Used in tests to clear rate limit state."""
    set_limiter(None)


def _replay(messages: list[Message], receive: Receive) -> Receive:
    """Serve already-consumed messages first, then fall through to the transport."""
    pending = list(messages)

    async def replay_receive() -> Message:
        if pending:
            return pending.pop(0)
        return await receive()

    return replay_receive


async def _sniff_body(receive: Receive) -> tuple[list[Message], dict[str, Any] | None]:
    """
    Read up to BODY_SNIFF_LIMIT bytes of a JSON body.

    Only the top-level hint fields are returned; the consumed messages are
    handed back for replay whatever the outcome.
    """
    messages: list[Message] = []
    chunks: list[bytes] = []
    size = 0
    while True:
        message = await receive()
        messages.append(message)
        if message["type"] != "http.request":
            return messages, None
        chunk = message.get("body", b"")
        size += len(chunk)
        if size > BODY_SNIFF_LIMIT:
            return messages, None
        chunks.append(chunk)
        if not message.get("more_body", False):
            break
    try:
        document = json.loads(b"".join(chunks) or b"null")
    except ValueError:
        return messages, None
    if not isinstance(document, dict):
        return messages, None
    return messages, {name: document[name] for name in BODY_HINT_FIELDS if name in document}


def _wants_body_sniff(method: str, headers: Headers) -> bool:
    if method not in BODY_METHODS:
        return False
    if "json" not in headers.get("content-type", "").lower():
        return False
    length = headers.get("content-length")
    if length is not None:
        try:
            return 0 < int(length) <= BODY_SNIFF_LIMIT
        except ValueError:
            return False
    return True


def _with_headers(send: Send, extra: Mapping[str, str]) -> Send:
    async def send_with_headers(message: Message) -> None:
        if message["type"] == "http.response.start":
            response_headers = MutableHeaders(scope=message)
            for name, value in extra.items():
                response_headers[name] = value
        await send(message)

    return send_with_headers


def _peer(scope: Scope) -> str | None:
    client = scope.get("client")
    if isinstance(client, (tuple, list)) and client:
        host = client[0]
        if isinstance(host, str) and host:
            return host
    return None


def _state_principal(scope: Scope) -> Any:
    state = scope.get("state")
    if isinstance(state, Mapping):
        return state.get("principal")
    return None


class GamingRateLimitMiddleware:
    """
    Runs the admission pipeline in front of the application.

    Any failure inside the pipeline is logged and the request is admitted:
    rate limiting never turns into a 5xx.
    """

    def __init__(self, app: ASGIApp, limiter: GamingRateLimiter | None = None) -> None:
        self.app = app
        self._limiter = limiter

    @property
    def limiter(self) -> GamingRateLimiter:
        return self._limiter or get_limiter()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        limiter = self.limiter
        if not limiter.enabled:
            await self.app(scope, receive, send)
            return

        method = scope.get("method", "GET").upper()
        headers = Headers(scope=scope)

        # Development escape hatch for load tests and local tooling
        if limiter.allow_bypass_header and headers.get("x-bypass-gaming-rate-limit", "").lower() == "true":
            await self.app(scope, receive, send)
            return

        # CORS preflight never counts against a quota
        if method == "OPTIONS":
            await self.app(scope, receive, send)
            return

        body_fields = None
        if _wants_body_sniff(method, headers):
            consumed, body_fields = await _sniff_body(receive)
            receive = _replay(consumed, receive)

        with limiter.gauge:
            await self._admit(limiter, scope, receive, send, method, headers, body_fields)

    async def _admit(
        self,
        limiter: GamingRateLimiter,
        scope: Scope,
        receive: Receive,
        send: Send,
        method: str,
        headers: Headers,
        body_fields: dict[str, Any] | None,
    ) -> None:
        path = scope.get("path", "/")
        started = time.perf_counter()
        try:
            decision = await asyncio.wait_for(
                limiter.evaluate(
                    method,
                    path,
                    headers,
                    peer=_peer(scope),
                    principal=_state_principal(scope),
                    body_fields=body_fields,
                ),
                timeout=limiter.admission_budget_s,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Admission decision exceeded its budget; admitting",
                extra={
                    "event_type": "admission_timeout",
                    "path": path,
                    "budget_ms": limiter.admission_budget_s * 1000,
                },
            )
            decision = None
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "Admission pipeline failed; admitting",
                extra={"event_type": "admission_error", "path": path, "error": str(exc)},
            )
            decision = None

        if decision is None:
            fallback = self._fail_open_headers(limiter, scope, method, headers, body_fields)
            await self.app(scope, receive, _with_headers(send, fallback))
            return

        elapsed_ms = (time.perf_counter() - started) * 1000
        verdict = decision.verdict
        context_tag = decision.ctx.context_tag

        if isinstance(verdict, Deny):
            outcome = Outcome.DENIED_SHED if verdict.reason == DenyReason.SHED else Outcome.DENIED_QUOTA
            limiter.analytics.record(
                decision.endpoint_class, outcome, decision.principal, context_tag, elapsed_ms, decision.degraded
            )
            response = denial_response(
                verdict.reason,
                denial_payload(decision.endpoint_class, decision.ctx, verdict.retry_after_ms),
                headers=decision.headers,
                accept=headers.get("accept"),
            )
            await response(scope, receive, send)
            return

        if isinstance(verdict, Delay):
            try:
                buffered = await wait_or_disconnect(verdict.delay_ms, receive)
            except ClientDisconnected:
                logger.info(
                    "Client disconnected during slow-down",
                    extra={
                        "event_type": "delay_cancelled",
                        "principal": decision.principal,
                        "class": decision.endpoint_class.value,
                        "delay_ms": verdict.delay_ms,
                    },
                )
                limiter.analytics.record(
                    decision.endpoint_class, Outcome.DISCONNECTED, decision.principal, context_tag, elapsed_ms
                )
                return
            receive = _replay(buffered, receive)
            outcome = Outcome.DELAYED
        elif isinstance(verdict, Admit) and verdict.bypassed:
            outcome = Outcome.BYPASSED
        elif decision.result is not None and decision.result.degraded and decision.result.count == 0:
            outcome = Outcome.FAIL_OPEN
        else:
            outcome = Outcome.ADMITTED

        limiter.analytics.record(
            decision.endpoint_class, outcome, decision.principal, context_tag, elapsed_ms, decision.degraded
        )
        await self._forward(limiter, decision, scope, receive, send)

    @staticmethod
    def _fail_open_headers(
        limiter: GamingRateLimiter,
        scope: Scope,
        method: str,
        headers: Headers,
        body_fields: dict[str, Any] | None,
    ) -> dict[str, str]:
        try:
            return limiter.fail_open_headers(
                method,
                scope.get("path", "/"),
                headers,
                peer=_peer(scope),
                principal=_state_principal(scope),
                body_fields=body_fields,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Could not describe fail-open request",
                extra={"event_type": "fail_open_headers_error", "error": str(exc)},
            )
            return dict(DEGRADED_HEADERS)

    async def _forward(
        self,
        limiter: GamingRateLimiter,
        decision: AdmissionDecision,
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        status_code: int | None = None

        async def send_with_headers(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                response_headers = MutableHeaders(scope=message)
                for name, value in decision.headers.items():
                    response_headers[name] = value
            await send(message)

        try:
            await self.app(scope, receive, send_with_headers)
        finally:
            if decision.deferred:
                # An app that crashes before responding is a failure outcome
                await limiter.settle(decision, status_code if status_code is not None else 500)
