"""Challenge-completion state machine.

States::

    active ──(aggregated >= goal)──▶ completed      (terminal)
    active ──(another challenge selected)──▶ paused ──▶ active

The authoritative status lives in the remote ledger; the tracker mirrors
it.  Completion is a single write conditioned on the row still being
``active``, and an in-process guard keeps a second concurrent check from
issuing a duplicate.  The completion notification is delivered once and is
not retried if delivery fails.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable

from src.steps.base import (
    Challenge,
    ChallengeAssignment,
    ChallengeKind,
    ChallengeProgress,
    ChallengeStatus,
    Clock,
    Milestone,
    RemoteLedger,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger("stepsync.steps.challenges")

CompletionCallback = Callable[[ChallengeAssignment], "Awaitable[None] | None"]

# Owner column per challenge kind.
_OWNER_COLUMN: dict[ChallengeKind, str] = {
    ChallengeKind.couple: "couple_id",
    ChallengeKind.solo: "user_id",
}


def aggregate_steps(kind: ChallengeKind, local_steps: int, partner_steps: int) -> int:
    """Steps that count toward a challenge of the given kind."""
    if kind is ChallengeKind.couple:
        return local_steps + partner_steps
    return local_steps


def next_milestone(challenge: Challenge, steps: int) -> Milestone | None:
    for milestone in challenge.milestones:
        if milestone.steps > steps:
            return milestone
    return None


class ChallengeTracker:
    """Mirror and drive the active challenge for a couple or a solo user."""

    def __init__(
        self,
        ledger: RemoteLedger,
        owner_id: str,
        kind: ChallengeKind,
        challenges_table: str = "challenges",
        assignments_table: str = "couple_challenges",
        on_completed: CompletionCallback | None = None,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the tracker.

        Args:
            ledger:            Remote ledger holding the authoritative status.
            owner_id:          Couple id (couple kind) or user id (solo kind).
            kind:              Couple or solo; decides how steps aggregate.
            challenges_table:  Catalogue table.
            assignments_table: Table of owner ↔ challenge assignments.
            on_completed:      One-time completion notification.
            clock:             Source of "now".
        """
        self.ledger = ledger
        self.owner_id = owner_id
        self.kind = kind
        self.challenges_table = challenges_table
        self.assignments_table = assignments_table
        self._on_completed = on_completed
        self._clock = clock
        self._owner_column = _OWNER_COLUMN[kind]
        self._completing = False
        self.assignment: ChallengeAssignment | None = None
        self.aggregated_steps = 0

    @property
    def status(self) -> ChallengeStatus | None:
        return self.assignment.status if self.assignment else None

    # ------------------------------------------------------------------
    # Catalogue
    # ------------------------------------------------------------------

    async def list_challenges(self) -> list[Challenge]:
        rows = await self.ledger.query(self.challenges_table)
        challenges = [Challenge.from_row(r) for r in rows]
        return sorted(challenges, key=lambda c: c.goal)

    async def get_challenge(self, challenge_id: str) -> Challenge | None:
        rows = await self.ledger.query(self.challenges_table, {"id": challenge_id}, limit=1)
        return Challenge.from_row(rows[0]) if rows else None

    async def list_completed(self) -> list[ChallengeAssignment]:
        """Completed assignments for this owner, newest first."""
        rows = await self.ledger.query(
            self.assignments_table,
            {self._owner_column: self.owner_id, "status": ChallengeStatus.completed.value},
            order_by="end_date",
            descending=True,
        )
        catalogue = {c.challenge_id: c for c in await self.list_challenges()}
        completed = []
        for row in rows:
            challenge = catalogue.get(str(row.get("challenge_id")))
            if challenge is None:
                logger.warning("Completed assignment %s references unknown challenge", row.get("id"))
                continue
            completed.append(self._assignment_from_row(row, challenge))
        return completed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load(self, default_to_first: bool = True) -> ChallengeAssignment | None:
        """Mirror the owner's active assignment from the ledger.

        Solo users without an active challenge get the first catalogue
        entry when ``default_to_first`` is set.
        """
        rows = await self.ledger.query(
            self.assignments_table,
            {self._owner_column: self.owner_id, "status": ChallengeStatus.active.value},
            order_by="start_date",
            descending=True,
            limit=1,
        )
        if rows:
            challenge = await self.get_challenge(str(rows[0].get("challenge_id")))
            if challenge is not None:
                self.assignment = self._assignment_from_row(rows[0], challenge)
                logger.info(
                    "Active %s challenge for %s: %s (goal %d)",
                    self.kind.value, self.owner_id, challenge.title, challenge.goal,
                )
                return self.assignment
            logger.warning("Active assignment %s references unknown challenge", rows[0].get("id"))

        self.assignment = None
        if self.kind is ChallengeKind.solo and default_to_first:
            catalogue = await self.list_challenges()
            if catalogue:
                await self.select_challenge(catalogue[0])
        return self.assignment

    async def select_challenge(self, challenge: Challenge) -> bool:
        """Pause the current assignment and start ``challenge``.

        Returns:
            False if either ledger write failed; the mirror is left unchanged.
        """
        now = self._clock()
        try:
            await self.ledger.update(
                self.assignments_table,
                {"status": ChallengeStatus.paused.value},
                {self._owner_column: self.owner_id, "status": ChallengeStatus.active.value},
            )
            row = await self.ledger.insert(
                self.assignments_table,
                {
                    self._owner_column: self.owner_id,
                    "challenge_id": challenge.challenge_id,
                    "status": ChallengeStatus.active.value,
                    "start_date": now,
                },
            )
        except Exception as exc:
            logger.error("Could not activate challenge %s: %s", challenge.challenge_id, exc)
            return False

        if self.assignment is not None and self.assignment.status is ChallengeStatus.active:
            self.assignment.status = ChallengeStatus.paused
        self.assignment = self._assignment_from_row(row, challenge)
        logger.info("Challenge %s now active for %s", challenge.title, self.owner_id)
        return True

    async def evaluate(self, aggregated_steps: int) -> bool:
        """Complete the active challenge if ``aggregated_steps`` reached the goal.

        Returns:
            True only for the call that performed the completion write.
        """
        self.aggregated_steps = aggregated_steps
        assignment = self.assignment
        if assignment is None or assignment.status is not ChallengeStatus.active:
            return False
        if aggregated_steps < assignment.challenge.goal:
            return False
        if self._completing:
            return False

        self._completing = True
        try:
            completed_at = self._clock()
            try:
                changed = await self.ledger.update(
                    self.assignments_table,
                    {"status": ChallengeStatus.completed.value, "end_date": completed_at},
                    {"id": assignment.assignment_id, "status": ChallengeStatus.active.value},
                )
            except Exception as exc:
                logger.warning(
                    "Completion write for %s failed, will retry on next change: %s",
                    assignment.assignment_id, exc,
                )
                return False

            if not changed:
                await self._refresh_status(assignment)
                return False

            assignment.status = ChallengeStatus.completed
            assignment.end_date = completed_at
            logger.info(
                "Challenge '%s' completed! Steps: %d/%d",
                assignment.challenge.title, aggregated_steps, assignment.challenge.goal,
            )
        finally:
            self._completing = False

        await self._notify(assignment)
        return True

    def progress(self, aggregated_steps: int | None = None) -> ChallengeProgress | None:
        assignment = self.assignment
        if assignment is None:
            return None
        challenge = assignment.challenge
        steps = self.aggregated_steps if aggregated_steps is None else aggregated_steps
        pct = 100.0 if challenge.goal <= 0 else min(100.0, steps / challenge.goal * 100)
        return ChallengeProgress(
            challenge_id=challenge.challenge_id,
            title=challenge.title,
            goal=challenge.goal,
            status=assignment.status,
            aggregated_steps=steps,
            pct_complete=round(pct, 1),
            next_milestone=next_milestone(challenge, steps),
            completed_at=assignment.end_date if assignment.status is ChallengeStatus.completed else None,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _refresh_status(self, assignment: ChallengeAssignment) -> None:
        """Re-read the row after a conditional write matched nothing."""
        try:
            rows = await self.ledger.query(
                self.assignments_table, {"id": assignment.assignment_id}, limit=1
            )
        except Exception as exc:
            logger.warning("Could not refresh assignment %s: %s", assignment.assignment_id, exc)
            return
        if rows:
            assignment.status = ChallengeStatus(rows[0].get("status", assignment.status.value))
            assignment.end_date = rows[0].get("end_date") or assignment.end_date
            logger.debug(
                "Assignment %s already left 'active' (now %s)",
                assignment.assignment_id, assignment.status.value,
            )

    async def _notify(self, assignment: ChallengeAssignment) -> None:
        if self._on_completed is None:
            return
        try:
            result = self._on_completed(assignment)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error("Completion notification for %s failed: %s", assignment.assignment_id, exc)

    def _assignment_from_row(self, row: dict[str, Any], challenge: Challenge) -> ChallengeAssignment:
        return ChallengeAssignment(
            assignment_id=str(row.get("id")),
            owner_id=str(row.get(self._owner_column, self.owner_id)),
            challenge=challenge,
            status=ChallengeStatus(row.get("status", ChallengeStatus.active.value)),
            start_date=parse_timestamp(row.get("start_date")),
            end_date=parse_timestamp(row.get("end_date")),
        )
