"""Platform health-data adapter.

Polls a ``HealthSource`` for "start of local day → now" once on start and
then on a fixed interval.  Permission and availability failures are mapped
to 0 and logged; they never escape the adapter, and they are not retried
faster than the poll interval.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import tzinfo
from typing import Callable

from src.steps.base import (
    Clock,
    HealthPermissionError,
    HealthSource,
    HealthSourceError,
    Observation,
    ObservationSource,
    local_today,
    start_of_local_day,
    utc_now,
)

logger = logging.getLogger("stepsync.steps.adapters.health")


class PlatformHealthAdapter:
    """Timer-driven health query feeding ``health_api`` observations.

    Attributes:
        interval_seconds: Spacing between polls.
        last_error:       Message of the most recent failed poll, if any.
    """

    def __init__(
        self,
        source: HealthSource,
        user_id: str,
        on_observation: Callable[[Observation], object],
        interval_seconds: float = 60,
        on_tick: Callable[[], object] | None = None,
        tz: tzinfo | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the adapter.

        Args:
            source:           Health platform to query.
            user_id:          Local user the totals belong to.
            on_observation:   Receives every poll result.
            interval_seconds: Poll period (60 s recommended).
            on_tick:          Called after every poll, successful or not.
            tz:               User's local time zone.
            clock:            Source of "now".
        """
        self._source = source
        self._user_id = user_id
        self._on_observation = on_observation
        self.interval_seconds = interval_seconds
        self._on_tick = on_tick
        self._tz = tz
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self.last_error: str | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll_once(self) -> int:
        """Query today's total and emit it.

        Returns:
            Steps reported by the platform, or 0 when it is unavailable.
        """
        now = self._clock()
        start = start_of_local_day(now, self._tz)
        try:
            steps = int(await self._source.query_steps_in_range(start, now))
            self.last_error = None
        except HealthPermissionError as exc:
            self.last_error = str(exc) or "permission denied"
            logger.info("%s: step permission not granted (%s)", self._source.SOURCE_ID, exc)
            steps = 0
        except HealthSourceError as exc:
            self.last_error = str(exc) or "unavailable"
            logger.warning("%s: health data unavailable (%s)", self._source.SOURCE_ID, exc)
            steps = 0

        self._on_observation(
            Observation(
                source=ObservationSource.health_api,
                user_id=self._user_id,
                date=local_today(now, self._tz),
                count=max(0, steps),
                observed_at=now,
            )
        )
        return steps

    def start(self) -> None:
        """Start polling: one eager poll, then one per interval."""
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(
            "%s: polling every %ss", self._source.SOURCE_ID, self.interval_seconds
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception as exc:
                logger.error("%s: poll failed: %s", self._source.SOURCE_ID, exc)
            if self._on_tick is not None:
                try:
                    self._on_tick()
                except Exception as exc:
                    logger.error("Health poll tick handler failed: %s", exc)
            await asyncio.sleep(self.interval_seconds)
