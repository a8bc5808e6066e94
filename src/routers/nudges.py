"""Nudge endpoints: inbox, unread count, sending and mark-read."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException

from src.dependencies import ActiveSession
from src.models.steps import NudgeCreate, NudgeRead, UnreadNudgesRead
from src.steps.base import LedgerError, Nudge

router = APIRouter(prefix="/nudges", tags=["nudges"])


def _nudge_dict(nudge: Nudge) -> dict[str, Any]:
    return {
        "nudge_id": nudge.nudge_id,
        "sender_id": nudge.sender_id,
        "receiver_id": nudge.receiver_id,
        "type": nudge.type.value,
        "message": nudge.message,
        "read": nudge.read,
        "created_at": nudge.created_at,
    }


@router.get("", response_model=list[NudgeRead])
async def list_nudges(session: ActiveSession) -> Any:
    return [_nudge_dict(n) for n in session.get_nudges()]


@router.get("/unread", response_model=UnreadNudgesRead)
async def unread_count(session: ActiveSession) -> Any:
    return {"unread": session.unread_nudge_count()}


@router.post("", response_model=NudgeRead, status_code=201)
async def send_nudge(body: NudgeCreate, session: ActiveSession) -> Any:
    try:
        nudge = await session.send_nudge(body.type, body.message)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except LedgerError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return _nudge_dict(nudge)


@router.post("/{nudge_id}/read", response_model=UnreadNudgesRead)
async def mark_read(nudge_id: str, session: ActiveSession) -> Any:
    try:
        changed = await session.mark_nudge_read(nudge_id)
    except LedgerError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if not changed:
        raise HTTPException(status_code=404, detail="No unread nudge with that id")
    return {"unread": session.unread_nudge_count()}
