from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from backend.quest.directory import WorkspaceStore
from webapp.auth.accounts import AccountService

from .helpers import _uid, current_user, ok, read_body

router = APIRouter(prefix="/api/users", tags=["users"])

_accounts: Optional[AccountService] = None
_workspaces: Optional[WorkspaceStore] = None


def init(accounts: AccountService, workspace_store: WorkspaceStore) -> None:
    global _accounts, _workspaces
    _accounts = accounts
    _workspaces = workspace_store


@router.get("/me")
def get_me(request: Request) -> JSONResponse:
    assert _workspaces
    user = current_user(request)
    data = user.public()
    data["workspaces"] = _workspaces.list_user_workspaces(user.user_id)
    return ok({"user": data})


@router.patch("/updateMe")
async def update_me(request: Request) -> JSONResponse:
    assert _accounts
    uid = _uid(request)
    body = await read_body(request)
    user = _accounts.update_me(uid, body)
    return ok({"user": user.public()})


@router.delete("/deleteMe")
def delete_me(request: Request) -> Response:
    assert _accounts
    _accounts.delete_me(_uid(request))
    return Response(status_code=204)


# =====================================================================
# PLATFORM ADMIN
# =====================================================================

@router.get("")
def list_users(request: Request) -> JSONResponse:
    assert _accounts
    users = [u.public() for u in _accounts.list_users(_uid(request))]
    return ok({"users": users, "results": len(users)})


@router.get("/{user_id}")
def get_user(user_id: str, request: Request) -> JSONResponse:
    assert _accounts
    return ok({"user": _accounts.get_user(_uid(request), user_id).public()})


@router.patch("/{user_id}")
async def update_user(user_id: str, request: Request) -> JSONResponse:
    assert _accounts
    uid = _uid(request)
    body = await read_body(request)
    return ok({"user": _accounts.update_user(uid, user_id, body).public()})


@router.delete("/{user_id}")
def delete_user(user_id: str, request: Request) -> Response:
    assert _accounts
    _accounts.delete_user(_uid(request), user_id)
    return Response(status_code=204)
