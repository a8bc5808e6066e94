"""Canonical day-record store.

Holds one ``DailyStepRecord`` per (user, date) and folds observations into
it.  ``apply`` is the only write path; it is synchronous so that, on the
single event-loop thread the engine runs on, no two observations can
interleave mid-merge.

Merge policy by source:

    sensor       local user only; replace the count unconditionally
    health_api   local user only; adopt when positive and canonical is 0
    remote_echo  ignored when it echoes a value this session sent,
                 otherwise handled like peer_push
    peer_push    replace the count unconditionally

Observations that the policy ignores return the unchanged record; nothing
here raises on a policy mismatch.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from src.steps.base import (
    Clock,
    DailyStepRecord,
    Observation,
    ObservationSource,
    utc_now,
)
from src.steps.sync.dedup import StepKey, step_record_key

logger = logging.getLogger("stepsync.steps.day_store")


class DayRecordStore:
    """In-memory canonical step counts for the local user and their partner."""

    def __init__(
        self,
        local_user_id: str,
        history_days: int = 30,
        clock: Clock = utc_now,
    ) -> None:
        self.local_user_id = local_user_id
        self._history_days = history_days
        self._clock = clock
        self._records: dict[StepKey, DailyStepRecord] = {}
        # Counts sent to the ledger per key, oldest first, for echo suppression.
        self._sent: dict[StepKey, list[int]] = {}
        self._latest_date: date | None = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, user_id: str, day: date) -> DailyStepRecord | None:
        return self._records.get(step_record_key(user_id, day))

    def count(self, user_id: str, day: date) -> int:
        record = self.get(user_id, day)
        return record.count if record else 0

    def history(self, user_id: str, today: date, days: int | None = None) -> list[DailyStepRecord]:
        """Return the user's records from ``today`` backwards, newest first."""
        if days is None:
            days = self._history_days
        oldest = today - timedelta(days=days - 1)
        records = [
            r for (uid, d), r in self._records.items()
            if uid == user_id and oldest <= d <= today
        ]
        return sorted(records, key=lambda r: r.date, reverse=True)

    def last_sent(self, user_id: str, day: date) -> int | None:
        """Return the most recent count sent for (user, day), if any."""
        sent = self._sent.get(step_record_key(user_id, day))
        return sent[-1] if sent else None

    def __len__(self) -> int:
        return len(self._records)

    # ------------------------------------------------------------------
    # Single write path
    # ------------------------------------------------------------------

    def apply(self, observation: Observation) -> DailyStepRecord | None:
        """Fold one observation into the store.

        Returns:
            The updated record, the unchanged record if the observation was
            ignored, or None if it was ignored and no record exists.
        """
        key = step_record_key(observation.user_id, observation.date)
        current = self._records.get(key)
        count = max(0, int(observation.count))
        source = observation.source
        is_local = observation.user_id == self.local_user_id

        if source is ObservationSource.sensor:
            if not is_local:
                return self._ignore(observation, current, "sensor for non-local user")
            return self._write(key, observation, count, current)

        if source is ObservationSource.health_api:
            if not is_local:
                return self._ignore(observation, current, "health data for non-local user")
            if count > 0 and (current is None or current.count == 0):
                return self._write(key, observation, count, current)
            return self._ignore(observation, current, "sensor value takes precedence")

        if source is ObservationSource.remote_echo and count in self._sent.get(key, ()):
            return self._ignore(observation, current, "echo of own write")

        # peer_push, or an echo carrying a value this session never sent
        return self._write(key, observation, count, current)

    def mark_sent(self, user_id: str, day: date, count: int) -> None:
        """Record that ``count`` is being written to the ledger for (user, day).

        Called before the write is issued so that an echo racing the write's
        completion is still recognised.
        """
        sent = self._sent.setdefault(step_record_key(user_id, day), [])
        if not sent or sent[-1] != count:
            sent.append(count)

    def mark_synced(self, user_id: str, day: date, at: datetime) -> None:
        """Stamp the record after the ledger acknowledged a write."""
        record = self._records.get(step_record_key(user_id, day))
        if record is not None:
            record.last_synced_at = at

    def reset(self) -> None:
        self._records.clear()
        self._sent.clear()
        self._latest_date = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _write(
        self,
        key: StepKey,
        observation: Observation,
        count: int,
        current: DailyStepRecord | None,
    ) -> DailyStepRecord:
        if current is None:
            current = DailyStepRecord(user_id=observation.user_id, date=observation.date)
            self._records[key] = current
            self._on_new_date(observation.date)

        if current.count != count:
            logger.debug(
                "%s: %s/%s %d → %d",
                observation.source.value, observation.user_id, observation.date,
                current.count, count,
            )
            current.count = count
            current.last_local_update_at = self._clock()
        return current

    def _ignore(
        self,
        observation: Observation,
        current: DailyStepRecord | None,
        reason: str,
    ) -> DailyStepRecord | None:
        logger.debug(
            "Ignored %s observation for %s/%s (%d): %s",
            observation.source.value, observation.user_id, observation.date,
            observation.count, reason,
        )
        return current

    def _on_new_date(self, day: date) -> None:
        """Drop records that fell out of the history window after a rollover."""
        if self._latest_date is not None and day <= self._latest_date:
            return
        self._latest_date = day
        cutoff = day - timedelta(days=self._history_days)
        stale = [k for k in self._records if k[1] <= cutoff]
        for k in stale:
            del self._records[k]
            self._sent.pop(k, None)
        if stale:
            logger.debug("Pruned %d records older than %s", len(stale), cutoff)
