"""Challenge endpoints: catalogue, active progress, selection and history."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, HTTPException

from src.dependencies import ActiveSession
from src.models.steps import (
    ChallengeProgressRead,
    ChallengeRead,
    ChallengeSelect,
    CompletedChallengeRead,
)
from src.steps.base import ChallengeProgress, LedgerError

router = APIRouter(prefix="/challenges", tags=["challenges"])


def _progress_dict(progress: ChallengeProgress) -> dict[str, Any]:
    data = asdict(progress)
    data["status"] = progress.status.value
    return data


@router.get("", response_model=list[ChallengeRead])
async def list_challenges(session: ActiveSession) -> Any:
    try:
        challenges = await session.challenges.list_challenges()
    except LedgerError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return [asdict(c) for c in challenges]


@router.get("/active", response_model=ChallengeProgressRead)
async def get_active_challenge(session: ActiveSession) -> Any:
    progress = session.get_challenge_progress()
    if progress is None:
        raise HTTPException(status_code=404, detail="No active challenge")
    return _progress_dict(progress)


@router.post("/active", response_model=ChallengeProgressRead)
async def select_challenge(body: ChallengeSelect, session: ActiveSession) -> Any:
    try:
        challenge = await session.challenges.get_challenge(body.challenge_id)
    except LedgerError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if challenge is None:
        raise HTTPException(status_code=404, detail="Challenge not found")
    if not await session.select_challenge(challenge):
        raise HTTPException(status_code=502, detail="Could not activate challenge")
    return _progress_dict(session.get_challenge_progress())


@router.get("/completed", response_model=list[CompletedChallengeRead])
async def list_completed(session: ActiveSession) -> Any:
    try:
        completed = await session.challenges.list_completed()
    except LedgerError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return [
        {
            "assignment_id": a.assignment_id,
            "challenge": asdict(a.challenge),
            "start_date": a.start_date,
            "end_date": a.end_date,
        }
        for a in completed
    ]
