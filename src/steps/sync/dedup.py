"""Deduplication keys and idempotent write helpers for step data.

Dedup keys:
    - in-memory day records: (user_id, date)
    - daily_steps ledger table: (user_id, date) — UNIQUE constraint

Repeated upserts of the same (user_id, date, count) are no-ops server-side,
which is what lets the sync engine coalesce writes without bookkeeping.
"""

from __future__ import annotations

from datetime import date

StepKey = tuple[str, date]

#: Conflict target for the daily_steps table.
DAILY_STEPS_CONFLICT_KEY: tuple[str, ...] = ("user_id", "date")


def step_record_key(user_id: str, day: date) -> StepKey:
    """Return the key matching the UNIQUE (user_id, date) constraint."""
    return (str(user_id), day)


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    On conflict the non-key columns are overwritten and ``updated_at`` is
    bumped (to the supplied value when the row carries one, else NOW()).
    The update is skipped when nothing changed, so a repeated write does
    not touch the row and does not fire a change notification.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [
            c for c in columns if c not in conflict_columns and c != "updated_at"
        ]
    touch = (
        "updated_at = EXCLUDED.updated_at" if "updated_at" in columns else "updated_at = NOW()"
    )

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
        update_set += f", {touch}"
        changed = " OR ".join(
            f"{table}.{col} IS DISTINCT FROM EXCLUDED.{col}" for col in update_columns
        )
        do_clause = f"DO UPDATE SET {update_set} WHERE {changed}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )
