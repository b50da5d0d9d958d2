"""
Context classifier.

Derives the endpoint class and gaming context from method, path, headers
and (optionally) a couple of top-level body fields. Pure function: no I/O,
and the only place in the pipeline that reads gaming headers.
"""

import re
from collections.abc import Mapping

from gamegate.ratelimit.types import EndpointClass, GamingContext

HEALTH_PATH = re.compile(r"^(/api(/v\d+)?)?/(health|status)/?$", re.IGNORECASE)
WEB3_BODY_FIELDS = ("transactionId", "walletAddress")

# First match wins
_PATH_RULES: tuple[tuple[tuple[str, ...], EndpointClass], ...] = (
    (("/voting/",), EndpointClass.VOTING),
    (("/clans/",), EndpointClass.CLAN),
    (("/tournaments/",), EndpointClass.TOURNAMENT),
    (("/leaderboards/",), EndpointClass.LEADERBOARD),
    (("/chat/",), EndpointClass.CHAT),
    (("/web3/", "/wallet/"), EndpointClass.WEB3),
    (("/competitive/",), EndpointClass.COMPETITIVE),
    (("/auth/",), EndpointClass.AUTH),
    (("/search",), EndpointClass.SEARCH),
)

# Header values that switch on a class at the precedence of its path rule
_HEADER_RULES: dict[EndpointClass, str] = {
    EndpointClass.TOURNAMENT: "x-tournament-mode",
    EndpointClass.COMPETITIVE: "x-competitive-mode",
}


def _lower_keys(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(k).lower(): str(v).strip() for k, v in headers.items()}


def _is_true(value: str | None) -> bool:
    return (value or "").lower() == "true"


def _tournament_id_from_path(path: str) -> str | None:
    segments = [s for s in path.split("/") if s]
    for index, segment in enumerate(segments[:-1]):
        if segment.lower() == "tournaments":
            return segments[index + 1]
    return None


def detect_context(path: str, headers: Mapping[str, str]) -> GamingContext:
    """Build the gaming context flags for a request."""
    lowered = path.lower()
    h = _lower_keys(headers)
    tournament_mode = _is_true(h.get("x-tournament-mode")) or "/tournaments/" in lowered
    tournament_id = h.get("x-tournament-id") or None
    if tournament_id is None and "/tournaments/" in lowered:
        tournament_id = _tournament_id_from_path(path)
    return GamingContext(
        tournament_mode=tournament_mode,
        tournament_id=tournament_id,
        competitive_mode=_is_true(h.get("x-competitive-mode")) or "/competitive/" in lowered,
        gaming_session=bool(h.get("x-gaming-session")),
    )


def classify_endpoint(
    method: str,
    path: str,
    headers: Mapping[str, str],
    body_fields: Mapping[str, object] | None = None,
) -> EndpointClass:
    """Map a request onto its endpoint class."""
    if HEALTH_PATH.match(path):
        return EndpointClass.HEALTH

    lowered = path.lower()
    h = _lower_keys(headers)
    for needles, endpoint_class in _PATH_RULES:
        if any(needle in lowered for needle in needles):
            return endpoint_class
        header = _HEADER_RULES.get(endpoint_class)
        if header and _is_true(h.get(header)):
            return endpoint_class
        if endpoint_class is EndpointClass.WEB3 and body_fields:
            if any(body_fields.get(name) for name in WEB3_BODY_FIELDS):
                return endpoint_class

    return EndpointClass.GENERIC


def classify(
    method: str,
    path: str,
    headers: Mapping[str, str],
    body_fields: Mapping[str, object] | None = None,
) -> tuple[EndpointClass, GamingContext]:
    """
    Classify a request.

    Never raises: anything unexpected yields GENERIC with an empty context so
    that a malformed request is still admitted under the generic limit.
    """
    try:
        return (
            classify_endpoint(method, path, headers, body_fields),
            detect_context(path, headers),
        )
    except (AttributeError, TypeError, ValueError):
        return EndpointClass.GENERIC, GamingContext()
