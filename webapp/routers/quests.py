"""API router for quest boards.

Prefix: /api/quest/{workspace_id}
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from backend.quest.tracking import QuestTracker

from .helpers import _uid, ok, read_body

router = APIRouter(prefix="/api/quest/{workspace_id}", tags=["quests"])

_TRACKER: Optional[QuestTracker] = None


def init(*, tracker: QuestTracker) -> None:
    global _TRACKER
    _TRACKER = tracker


@router.get("")
def my_quest(workspace_id: str, request: Request) -> JSONResponse:
    return ok({"quest": _TRACKER.get_user_quest(workspace_id, _uid(request))})


@router.patch("/tasks/{task_id}/status")
async def change_status(workspace_id: str, task_id: str, request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    entry = _TRACKER.change_task_status(workspace_id, uid, task_id, body.get("newStatus"))
    return ok({"entry": entry})


@router.post("/tasks/{task_id}/comments")
async def add_comment(workspace_id: str, task_id: str, request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    comment = _TRACKER.add_comment(workspace_id, uid, task_id, body.get("content"), body.get("menteeId"))
    return ok({"comment": comment}, status_code=201)


@router.get("/mentee/{mentee_id}")
def mentee_quest(workspace_id: str, mentee_id: str, request: Request) -> JSONResponse:
    return ok({"quest": _TRACKER.get_mentee_quest(workspace_id, _uid(request), mentee_id)})


@router.patch("/mentee/{mentee_id}/tasks/{task_id}/status")
async def mentor_change_status(workspace_id: str, mentee_id: str, task_id: str, request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    entry = _TRACKER.mentor_change_task_status(workspace_id, uid, mentee_id, task_id, body.get("newStatus"))
    return ok({"entry": entry})
