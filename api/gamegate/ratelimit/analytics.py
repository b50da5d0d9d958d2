"""
Admission analytics.

In-process counters per endpoint class and outcome, plus structured log lines
for the decisions worth alerting on (denials, slow checks).
"""

import logging
import time
from collections import Counter, defaultdict
from enum import Enum

from gamegate.ratelimit.types import EndpointClass

logger = logging.getLogger(__name__)

SLOW_CHECK_MS = 100


class Outcome(str, Enum):
    ADMITTED = "admitted"
    BYPASSED = "bypassed"
    DELAYED = "delayed"
    DENIED_QUOTA = "denied_quota"
    DENIED_SHED = "denied_shed"
    FAIL_OPEN = "fail_open"
    DISCONNECTED = "disconnected"


class AdmissionAnalytics:
    """Decision counters; reset on demand from the admin API."""

    def __init__(self):
        self._counts: dict[EndpointClass, Counter] = defaultdict(Counter)
        self._degraded_decisions = 0
        self._since = time.time()

    def record(
        self,
        endpoint_class: EndpointClass,
        outcome: Outcome,
        principal: str,
        context_tag: str,
        elapsed_ms: float = 0.0,
        degraded: bool = False,
    ) -> None:
        self._counts[endpoint_class][outcome] += 1
        if degraded:
            self._degraded_decisions += 1

        if outcome in (Outcome.DENIED_QUOTA, Outcome.DENIED_SHED):
            logger.warning(
                "Gaming rate limit hit",
                extra={
                    "event_type": "rate_limit_exceeded",
                    "principal": principal,
                    "class": endpoint_class.value,
                    "context": context_tag,
                    "outcome": outcome.value,
                },
            )
        if elapsed_ms > SLOW_CHECK_MS:
            logger.warning(
                "Slow admission decision",
                extra={
                    "event_type": "slow_rate_limit_check",
                    "principal": principal,
                    "class": endpoint_class.value,
                    "elapsed_ms": round(elapsed_ms, 2),
                },
            )

    def count(self, endpoint_class: EndpointClass, outcome: Outcome) -> int:
        return self._counts[endpoint_class][outcome]

    def snapshot(self) -> dict:
        by_class = {
            cls.value: {outcome.value: counter[outcome] for outcome in Outcome if counter[outcome]}
            for cls, counter in self._counts.items()
        }
        totals: Counter = Counter()
        for counter in self._counts.values():
            totals.update(counter)
        return {
            "since": self._since,
            "by_class": by_class,
            "totals": {outcome.value: totals[outcome] for outcome in Outcome},
            "degraded_decisions": self._degraded_decisions,
        }

    def reset(self) -> None:
        self._counts.clear()
        self._degraded_decisions = 0
        self._since = time.time()
        logger.info("Admission analytics reset", extra={"event_type": "analytics_reset"})
