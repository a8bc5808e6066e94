"""Daily-goal streaks over the local user's step history.

Pure functions over ``DailyStepRecord`` lists: no I/O, no clock access.

A day *counts* when its record exists and ``count >= threshold``.  Today is
special: if it has not reached the threshold yet it does not break the
current streak, because the user may still get there before midnight.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Iterable

from src.steps.base import DailyStepRecord, StreakResult

logger = logging.getLogger("stepsync.steps.streaks")

DEFAULT_DAILY_GOAL = 5000
DEFAULT_WINDOW_DAYS = 30


def _counts_by_date(records: Iterable[DailyStepRecord]) -> dict[date, int]:
    by_date: dict[date, int] = {}
    for record in records:
        by_date[record.date] = max(by_date.get(record.date, 0), record.count)
    return by_date


def compute_streak(
    records: Iterable[DailyStepRecord],
    today: date,
    threshold: int = DEFAULT_DAILY_GOAL,
    window_days: int = DEFAULT_WINDOW_DAYS,
) -> StreakResult:
    """Compute the current and highest streak within the look-back window.

    Args:
        records:     The user's day records (any order, gaps allowed).
        today:       The user's local calendar date.
        threshold:   Steps needed for a day to count.
        window_days: Days examined, today included.

    Returns:
        StreakResult with ``current_streak`` and ``highest_streak``.
    """
    by_date = _counts_by_date(records)

    current = 0
    current_open = True
    highest = 0
    run = 0

    for offset in range(window_days):
        day = today - timedelta(days=offset)
        counts = by_date.get(day, 0) >= threshold

        if counts:
            run += 1
            highest = max(highest, run)
        else:
            run = 0

        if not current_open:
            continue
        if counts:
            current += 1
        elif offset > 0:
            current_open = False

    return StreakResult(current_streak=current, highest_streak=highest)


def history_for_chart(
    records: Iterable[DailyStepRecord],
    today: date,
    days: int = 7,
) -> list[tuple[date, int]]:
    """Return ``days`` consecutive (date, count) pairs ending today, oldest first.

    Days without a record are reported as 0.
    """
    by_date = _counts_by_date(records)
    start = today - timedelta(days=days - 1)
    return [
        (start + timedelta(days=i), by_date.get(start + timedelta(days=i), 0))
        for i in range(days)
    ]
