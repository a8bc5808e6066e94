"""Partner nudges: send, list, unread count and mark-read.

Nudges live in the ``nudges`` ledger table.  The service keeps a cached
list of the user's most recent nudges (sent and received, newest first)
and the unread count for received ones.  Change events on the table that
involve the user trigger a reload, which is how a nudge sent from the
partner's device shows up here.
"""

from __future__ import annotations

import inspect
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

from src.steps.base import (
    Clock,
    LedgerChange,
    LedgerError,
    Nudge,
    NudgeType,
    RemoteLedger,
    utc_now,
)

logger = logging.getLogger("stepsync.steps.nudges")

NudgeCallback = Callable[[Nudge], "Awaitable[None] | None"]

DEFAULT_MESSAGES: dict[NudgeType, str] = {
    NudgeType.poke: "Time to get moving!",
    NudgeType.heart: "Thinking of you on your walk.",
    NudgeType.wave: "Hey there, how are your steps going?",
    NudgeType.motivate: "You've got this! Keep moving forward.",
    NudgeType.challenge: "Think you can beat my 10k steps today?",
    NudgeType.cheer: "You're absolutely crushing it today!",
    NudgeType.one_k: "Come on, just 1k more steps today",
}

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _newest_first(nudge: Nudge) -> datetime:
    created = nudge.created_at or _EPOCH
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created


class NudgeService:
    def __init__(
        self,
        ledger: RemoteLedger,
        user_id: str,
        partner_id: str | None = None,
        table: str = "nudges",
        limit: int = 50,
        clock: Clock = utc_now,
        on_received: NudgeCallback | None = None,
    ) -> None:
        self._ledger = ledger
        self.user_id = user_id
        self.partner_id = partner_id
        self.table = table
        self._limit = limit
        self._clock = clock
        self._on_received = on_received
        self.nudges: list[Nudge] = []
        self.unread_count = 0

    async def refresh(self) -> list[Nudge]:
        """Reload recent nudges and the unread count from the ledger."""
        received = await self._ledger.query(
            self.table, {"receiver_id": self.user_id},
            order_by="created_at", descending=True, limit=self._limit,
        )
        sent = await self._ledger.query(
            self.table, {"sender_id": self.user_id},
            order_by="created_at", descending=True, limit=self._limit,
        )
        unread = await self._ledger.query(
            self.table, {"receiver_id": self.user_id, "read": False}
        )
        by_id = {n.nudge_id: n for n in map(Nudge.from_row, received + sent)}
        self.nudges = sorted(by_id.values(), key=_newest_first, reverse=True)[: self._limit]
        self.unread_count = len(unread)
        return self.nudges

    async def send(
        self,
        nudge_type: NudgeType = NudgeType.motivate,
        message: str | None = None,
        receiver_id: str | None = None,
    ) -> Nudge:
        """Send a nudge, to the partner unless ``receiver_id`` is given.

        Raises:
            ValueError: If there is nobody to send to.
            LedgerError: If the insert fails.
        """
        receiver = receiver_id or self.partner_id
        if not receiver or receiver == self.user_id:
            raise ValueError("No partner to nudge")
        row = {
            "sender_id": self.user_id,
            "receiver_id": receiver,
            "type": nudge_type.value,
            "message": message or DEFAULT_MESSAGES[nudge_type],
            "read": False,
            "created_at": self._clock(),
        }
        nudge = Nudge.from_row(await self._ledger.insert(self.table, row))
        self._remember(nudge)
        logger.info("Nudge %s (%s) sent to %s", nudge.nudge_id, nudge.type.value, receiver)
        return nudge

    async def mark_as_read(self, nudge_id: str) -> bool:
        """Mark a received nudge read; False if it was not unread for this user."""
        changed = await self._ledger.update(
            self.table,
            {"read": True},
            {"id": nudge_id, "receiver_id": self.user_id, "read": False},
        )
        if not changed:
            return False
        for nudge in self.nudges:
            if nudge.nudge_id == str(nudge_id):
                nudge.read = True
        self.unread_count = max(0, self.unread_count - 1)
        return True

    async def handle_change(self, change: LedgerChange) -> None:
        """Reload when a change on the nudges table involves this user."""
        row = change.row
        if self.user_id not in (str(row.get("sender_id")), str(row.get("receiver_id"))):
            return
        known = any(n.nudge_id == str(row.get("id")) for n in self.nudges)
        try:
            await self.refresh()
        except LedgerError as exc:
            logger.warning("Could not reload nudges for %s: %s", self.user_id, exc)
            return
        if (
            change.event_type.upper() == "INSERT"
            and str(row.get("receiver_id")) == self.user_id
            and not known
        ):
            await self._notify(Nudge.from_row(row))

    def _remember(self, nudge: Nudge) -> None:
        self.nudges = [n for n in self.nudges if n.nudge_id != nudge.nudge_id]
        self.nudges.insert(0, nudge)
        del self.nudges[self._limit:]

    async def _notify(self, nudge: Nudge) -> None:
        if self._on_received is None:
            return
        try:
            result = self._on_received(nudge)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error("Nudge notification for %s failed: %s", nudge.nudge_id, exc)

