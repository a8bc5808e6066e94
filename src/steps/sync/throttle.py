"""Outbound write throttle for the local user's step count.

The throttle is a three-state machine::

    IDLE ──try_acquire──▶ PENDING_SEND ──mark_sent──▶ SENT
                                                       │
            ◀──────────── try_acquire (window elapsed) ┘

``try_acquire`` admits a send only when no send is in flight and at least
``window_seconds`` have passed since the last admitted send.  Rejected
updates are dropped, not queued: the next admitted update carries the
latest canonical value, so values are coalesced rather than lost.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum

logger = logging.getLogger("stepsync.steps.sync.throttle")


class ThrottleState(str, Enum):
    idle = "idle"
    pending_send = "pending_send"
    sent = "sent"


class SyncThrottle:
    """Per-session spacing between ledger writes.

    Attributes:
        window_seconds: Minimum spacing between two admitted sends.
        last_sync_at:   When the last send was admitted (None = never).
        state:          Current ThrottleState.
    """

    def __init__(self, window_seconds: float = 60) -> None:
        self.window_seconds = window_seconds
        self.last_sync_at: datetime | None = None
        self.state = ThrottleState.idle
        self.dropped = 0

    def try_acquire(self, now: datetime) -> bool:
        """Admit a send at ``now`` or drop it.

        Returns:
            True if the caller should send now (state becomes PENDING_SEND).
        """
        if self.state is ThrottleState.pending_send:
            self.dropped += 1
            return False
        if self.last_sync_at is not None:
            elapsed = (now - self.last_sync_at).total_seconds()
            if elapsed < self.window_seconds:
                self.dropped += 1
                logger.debug(
                    "Sync dropped: %.1fs since last send (< %ss)",
                    elapsed, self.window_seconds,
                )
                return False
        self.state = ThrottleState.pending_send
        self.last_sync_at = now
        return True

    def mark_sent(self) -> None:
        """Finish the in-flight send, successful or not."""
        if self.state is ThrottleState.pending_send:
            self.state = ThrottleState.sent

    def reset(self) -> None:
        """Forget all history; used when the user session changes."""
        self.state = ThrottleState.idle
        self.last_sync_at = None
        self.dropped = 0
