"""Outbound sync for the local user's step count.

Modules:
    throttle — Minimum spacing between ledger writes (idle / pending / sent)
    engine   — Single entry point for observations; schedules throttled upserts
    dedup    — (user_id, date) keys and idempotent upsert SQL
"""
