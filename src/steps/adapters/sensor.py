"""Device motion-sensor adapter.

Holds one long-lived subscription to a ``StepSensor`` and turns every
callback into a ``sensor`` observation for the local user.  The latest
value is an owned field exposed through ``latest_steps`` rather than a
process-wide variable.
"""

from __future__ import annotations

import logging
import threading
from datetime import tzinfo
from typing import Callable

from src.steps.base import (
    Clock,
    Observation,
    ObservationSource,
    StepSensor,
    Unsubscribe,
    local_today,
    utc_now,
)

logger = logging.getLogger("stepsync.steps.adapters.sensor")

ObservationSink = Callable[[Observation], object]


class DeviceSensorAdapter:
    """Bridge between a step sensor's callback and the reconciliation engine."""

    def __init__(
        self,
        sensor: StepSensor,
        user_id: str,
        on_observation: ObservationSink,
        tz: tzinfo | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._sensor = sensor
        self._user_id = user_id
        self._on_observation = on_observation
        self._tz = tz
        self._clock = clock
        self._unsubscribe: Unsubscribe | None = None
        self._latest_steps = 0

    @property
    def latest_steps(self) -> int:
        """Most recent total reported by the sensor (0 before the first callback)."""
        return self._latest_steps

    @property
    def is_running(self) -> bool:
        return self._unsubscribe is not None

    def start(self) -> bool:
        """Subscribe to the sensor.

        Returns:
            False if the device has no usable sensor; tracking then relies on
            the health source alone.
        """
        if self._unsubscribe is not None:
            return True
        if not self._sensor.is_available():
            logger.warning("Step sensor not available on this device; using health data only")
            return False
        self._unsubscribe = self._sensor.subscribe(self._handle)
        logger.info("Step sensor subscribed for %s", self._user_id)
        return True

    def stop(self) -> None:
        """Remove the subscription.  Safe to call more than once."""
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()
            logger.info("Step sensor unsubscribed for %s", self._user_id)

    def _handle(self, total_steps_today: int) -> None:
        now = self._clock()
        self._latest_steps = max(0, int(total_steps_today))
        self._on_observation(
            Observation(
                source=ObservationSource.sensor,
                user_id=self._user_id,
                date=local_today(now, self._tz),
                count=self._latest_steps,
                observed_at=now,
            )
        )


class PushedStepSensor(StepSensor):
    """Step sensor fed from outside the process.

    The companion device posts its running total to the HTTP API, which
    calls ``push``; every subscriber receives the value.
    """

    def __init__(self) -> None:
        self._callbacks: list[Callable[[int], None]] = []
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        return True

    def subscribe(self, on_step_count_changed: Callable[[int], None]) -> Unsubscribe:
        with self._lock:
            self._callbacks.append(on_step_count_changed)

        def _unsubscribe() -> None:
            with self._lock:
                if on_step_count_changed in self._callbacks:
                    self._callbacks.remove(on_step_count_changed)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks)

    def push(self, total_steps_today: int) -> int:
        """Deliver a running total to every subscriber; return how many got it."""
        if total_steps_today < 0:
            raise ValueError("Step total cannot be negative")
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback(total_steps_today)
        return len(callbacks)
