"""API router for the workspace backlog.

Prefix: /api/workspace/{workspace_id}
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from backend.errors import ValidationError
from backend.quest.tasks import TaskBacklog

from .helpers import _uid, ok, read_body

router = APIRouter(prefix="/api/workspace/{workspace_id}", tags=["tasks"])

_BACKLOG: Optional[TaskBacklog] = None


def init(*, backlog: TaskBacklog) -> None:
    global _BACKLOG
    _BACKLOG = backlog


@router.get("/tasks")
def list_tasks(workspace_id: str, request: Request) -> JSONResponse:
    return ok({"tasks": _BACKLOG.list_tasks(workspace_id, _uid(request))})


@router.post("/tasks")
async def create_task(workspace_id: str, request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    task = _BACKLOG.create_task(workspace_id, uid, body)
    return ok({"task": task}, status_code=201)


@router.post("/tasks/personal")
async def create_personal_task(workspace_id: str, request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    task = _BACKLOG.create_personal_task(workspace_id, uid, body)
    return ok({"task": task}, status_code=201)


@router.get("/tasks/{task_id}")
def get_task(workspace_id: str, task_id: str, request: Request) -> JSONResponse:
    return ok({"task": _BACKLOG.get_task(workspace_id, task_id, _uid(request))})


@router.patch("/tasks/{task_id}")
async def update_task(workspace_id: str, task_id: str, request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    task = _BACKLOG.update_task(workspace_id, task_id, uid, body)
    return ok({"task": task})


@router.delete("/tasks/{task_id}")
def delete_task(workspace_id: str, task_id: str, request: Request) -> Response:
    _BACKLOG.delete_task(workspace_id, task_id, _uid(request))
    return Response(status_code=204)


@router.post("/tasks/{task_id}/assign")
async def assign_task(workspace_id: str, task_id: str, request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    user_id = body.get("userId")
    if not isinstance(user_id, str) or not user_id:
        raise ValidationError("User ID is required")
    entry = _BACKLOG.assign_task_to_user(workspace_id, task_id, user_id, uid)
    return ok({"entry": entry}, status_code=201)


@router.get("/progress/{user_id}")
def user_progress(workspace_id: str, user_id: str, request: Request) -> JSONResponse:
    return ok({"progress": _BACKLOG.user_task_progress(workspace_id, user_id, _uid(request))})
