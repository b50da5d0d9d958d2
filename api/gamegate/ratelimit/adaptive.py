"""
Process-wide adaptive state.

A single writer (the LoadSampler task) replaces the AdaptiveState reference
every few seconds; request handlers read whatever reference is current
without taking a lock.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import replace

import psutil

from gamegate.ratelimit.types import AdaptiveState

logger = logging.getLogger(__name__)


class AdaptiveStateHolder:
    """Reference cell for the current AdaptiveState."""

    def __init__(self, state: AdaptiveState | None = None):
        self._state = state or AdaptiveState()

    @property
    def state(self) -> AdaptiveState:
        return self._state

    def swap(self, state: AdaptiveState) -> None:
        self._state = state

    def set(
        self,
        service_load: float | None = None,
        battery_saver_active: bool | None = None,
    ) -> AdaptiveState:
        """Replace selected fields; used by operators and tests."""
        current = self._state
        state = replace(
            current,
            service_load=current.service_load if service_load is None else _clamp(service_load),
            battery_saver_active=(
                current.battery_saver_active if battery_saver_active is None else battery_saver_active
            ),
            last_sampled_at=time.time(),
        )
        self._state = state
        return state


class InFlightGauge:
    """Count of requests currently inside the admission middleware."""

    def __init__(self):
        self.value = 0

    def __enter__(self) -> "InFlightGauge":
        self.value += 1
        return self

    def __exit__(self, *exc) -> None:
        self.value -= 1


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class LoadSampler:
    """
    Periodically samples CPU and request pressure into the holder.

    Load is the larger of CPU utilisation and in-flight requests relative to
    ``max_in_flight``, clamped to [0, 1].
    """

    def __init__(
        self,
        holder: AdaptiveStateHolder,
        gauge: InFlightGauge,
        interval_s: float = 5.0,
        max_in_flight: int = 512,
        cpu_percent: Callable[[], float] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.holder = holder
        self.gauge = gauge
        self.interval_s = interval_s
        self.max_in_flight = max(1, max_in_flight)
        self.cpu_percent = cpu_percent or (lambda: psutil.cpu_percent(interval=None))
        self.clock = clock
        self._task: asyncio.Task | None = None

    def sample(self) -> AdaptiveState:
        """Take one sample and publish it."""
        cpu = self.cpu_percent() / 100.0
        pressure = self.gauge.value / self.max_in_flight
        current = self.holder.state
        state = AdaptiveState(
            service_load=_clamp(max(cpu, pressure)),
            battery_saver_active=current.battery_saver_active,
            last_sampled_at=self.clock(),
        )
        self.holder.swap(state)
        return state

    async def _run(self) -> None:
        while True:
            try:
                state = self.sample()
                logger.debug(
                    "Load sampled",
                    extra={"event_type": "load_sampled", "service_load": state.service_load},
                )
            except (OSError, RuntimeError) as exc:
                # Keep the previous state; a missing sample is not an overload
                logger.warning(
                    "Load sampling failed",
                    extra={"event_type": "load_sample_failed", "error": str(exc)},
                )
            await asyncio.sleep(self.interval_s)

    def start(self) -> None:
        if self._task is None or self._task.done():
            # Prime psutil so the first non-blocking reading is meaningful
            psutil.cpu_percent(interval=None)
            self._task = asyncio.create_task(self._run(), name="gamegate_load_sampler")
            logger.info("Load sampler started", extra={"interval_s": self.interval_s})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Load sampler stopped")
