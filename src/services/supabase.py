"""Supabase Postgres access and the remote step ledger.

Uses ``asyncpg`` for direct database access.  ``PostgresLedger`` implements
the engine's ``RemoteLedger`` contract on top of the module-level pool:
equality-filtered reads, idempotent upserts, conditional updates, and a
row-change feed delivered over ``LISTEN/NOTIFY``.

The change feed expects a trigger that publishes each row change as JSON on
the configured channel::

    CREATE OR REPLACE FUNCTION stepsync_notify() RETURNS trigger AS $$
    BEGIN
      PERFORM pg_notify('stepsync_changes', json_build_object(
        'type', TG_OP, 'table', TG_TABLE_NAME, 'record', row_to_json(NEW)
      )::text);
      RETURN NEW;
    END $$ LANGUAGE plpgsql;

    CREATE TRIGGER daily_steps_notify AFTER INSERT OR UPDATE ON daily_steps
      FOR EACH ROW EXECUTE FUNCTION stepsync_notify();

    CREATE TRIGGER nudges_notify AFTER INSERT OR UPDATE ON nudges
      FOR EACH ROW EXECUTE FUNCTION stepsync_notify();
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, AsyncIterator

import asyncpg

from src.config import Settings, get_settings
from src.steps.base import LedgerChange, LedgerError, RemoteLedger
from src.steps.sync.dedup import build_upsert_query

logger = logging.getLogger("stepsync.db")

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.supabase_db_url,
        min_size=2,
        max_size=10,
        command_timeout=30,
    )
    logger.info("Database pool initialized (min=2, max=10)")
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized, call init_pool() first")
    return _pool


def _ident(name: str) -> str:
    """Reject anything that is not a plain SQL identifier."""
    if not _IDENTIFIER.match(name):
        raise LedgerError(f"Invalid identifier: {name!r}")
    return name


def _where(filters: dict[str, Any] | None, start: int = 1) -> tuple[str, list[Any]]:
    """Build ``WHERE a = $n AND b = $n+1`` from equality filters."""
    if not filters:
        return "", []
    clauses = []
    params: list[Any] = []
    for i, (column, value) in enumerate(filters.items(), start=start):
        clauses.append(f"{_ident(column)} = ${i}")
        params.append(value)
    return " WHERE " + " AND ".join(clauses), params


def _rows_changed(status: str) -> int:
    """Parse the row count out of an asyncpg status string (``UPDATE 3``)."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


def parse_notification(payload: str) -> LedgerChange | None:
    """Decode one NOTIFY payload; returns None if it is not a row change."""
    try:
        data = json.loads(payload)
    except (TypeError, ValueError) as exc:
        logger.warning("Ignoring undecodable change payload: %s", exc)
        return None
    if not isinstance(data, dict) or not isinstance(data.get("record"), dict):
        return None
    return LedgerChange(
        event_type=str(data.get("type", "")).upper(),
        table=str(data.get("table", "")),
        row=data["record"],
    )


class PostgresLedger(RemoteLedger):
    """``RemoteLedger`` backed by the Supabase Postgres database."""

    def __init__(self, pool: asyncpg.Pool | None = None, channel: str = "stepsync_changes") -> None:
        self._pool = pool
        self.channel = channel

    @property
    def pool(self) -> asyncpg.Pool:
        return self._pool or get_pool()

    async def upsert(
        self, table: str, row: dict[str, Any], conflict_key: tuple[str, ...]
    ) -> None:
        columns = [_ident(c) for c in row]
        query = build_upsert_query(_ident(table), columns, [_ident(c) for c in conflict_key])
        try:
            await self.pool.execute(query, *row.values())
        except (asyncpg.PostgresError, OSError) as exc:
            raise LedgerError(f"Upsert into {table} failed: {exc}") from exc

    async def query(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        where, params = _where(filters)
        sql = f"SELECT * FROM {_ident(table)}{where}"
        if order_by:
            sql += f" ORDER BY {_ident(order_by)} {'DESC' if descending else 'ASC'}"
        if limit is not None:
            params.append(int(limit))
            sql += f" LIMIT ${len(params)}"
        try:
            rows = await self.pool.fetch(sql, *params)
        except (asyncpg.PostgresError, OSError) as exc:
            raise LedgerError(f"Query on {table} failed: {exc}") from exc
        return [dict(r) for r in rows]

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        columns = ", ".join(_ident(c) for c in row)
        placeholders = ", ".join(f"${i}" for i in range(1, len(row) + 1))
        sql = f"INSERT INTO {_ident(table)} ({columns}) VALUES ({placeholders}) RETURNING *"
        try:
            stored = await self.pool.fetchrow(sql, *row.values())
        except (asyncpg.PostgresError, OSError) as exc:
            raise LedgerError(f"Insert into {table} failed: {exc}") from exc
        return dict(stored) if stored else dict(row)

    async def update(
        self, table: str, values: dict[str, Any], filters: dict[str, Any]
    ) -> int:
        if not values:
            return 0
        set_clauses = []
        params: list[Any] = []
        for i, (column, value) in enumerate(values.items(), start=1):
            set_clauses.append(f"{_ident(column)} = ${i}")
            params.append(value)
        where, where_params = _where(filters, start=len(params) + 1)
        sql = f"UPDATE {_ident(table)} SET {', '.join(set_clauses)}{where}"
        try:
            status = await self.pool.execute(sql, *params, *where_params)
        except (asyncpg.PostgresError, OSError) as exc:
            raise LedgerError(f"Update on {table} failed: {exc}") from exc
        return _rows_changed(status)

    async def subscribe(
        self, table: str, event_types: tuple[str, ...] = ("INSERT", "UPDATE")
    ) -> AsyncIterator[LedgerChange]:
        """Yield row changes for ``table`` until the consumer stops iterating.

        Holds one pooled connection for the lifetime of the subscription.

        Raises:
            LedgerError: If listening cannot start or the listening connection
                is terminated.
        """
        wanted = {e.upper() for e in event_types}
        queue: asyncio.Queue[str | None] = asyncio.Queue()

        def _on_notify(_conn: Any, _pid: int, _channel: str, payload: str) -> None:
            queue.put_nowait(payload)

        def _on_terminate(_conn: Any) -> None:
            queue.put_nowait(None)

        try:
            conn = await self.pool.acquire()
        except (asyncpg.PostgresError, OSError) as exc:
            raise LedgerError(f"Could not listen for {table} changes: {exc}") from exc
        conn.add_termination_listener(_on_terminate)
        try:
            try:
                await conn.add_listener(self.channel, _on_notify)
            except (asyncpg.PostgresError, OSError) as exc:
                raise LedgerError(f"Could not listen for {table} changes: {exc}") from exc
            logger.info("LISTEN %s (table=%s)", self.channel, table)
            try:
                while True:
                    payload = await queue.get()
                    if payload is None:
                        raise LedgerError(f"Connection listening for {table} changes was lost")
                    change = parse_notification(payload)
                    if change is None or change.table != table or change.event_type not in wanted:
                        continue
                    yield change
            finally:
                await conn.remove_listener(self.channel, _on_notify)
        finally:
            conn.remove_termination_listener(_on_terminate)
            await self.pool.release(conn)
