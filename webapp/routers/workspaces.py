"""API router for workspaces, positions, members, leaderboard and direct invites.

Prefix: /api/workspace

NOTE: Static paths (/my-workspaces, /send-invitation, /accept-invitation)
MUST be registered before parametric paths (/{workspace_id}) so FastAPI does
not take them for a workspace id.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from backend.errors import ValidationError
from backend.quest.directory import WorkspaceStore
from backend.quest.invitations import InvitationService

from .helpers import _uid, ok, read_body

router = APIRouter(prefix="/api/workspace", tags=["workspaces"])

# Injected from server.py
_STORE: Optional[WorkspaceStore] = None
_INVITATIONS: Optional[InvitationService] = None


def init(*, workspace_store: WorkspaceStore, invitations: InvitationService) -> None:
    global _STORE, _INVITATIONS
    _STORE = workspace_store
    _INVITATIONS = invitations


# =====================================================================
# STATIC PATHS
# =====================================================================

@router.post("")
async def create_workspace(request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request, required=False)
    ws = _STORE.create_workspace(
        uid,
        name=body.get("name"),
        description=body.get("description"),
        rules=body.get("rules"),
        planets=body.get("planets"),
    )
    return ok({"workspace": ws}, status_code=201)


@router.get("/my-workspaces")
def my_workspaces(request: Request) -> JSONResponse:
    workspaces = _STORE.list_user_workspaces(_uid(request))
    return ok({"workspaces": workspaces})


@router.post("/send-invitation")
async def send_invitation(request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    workspace_id = body.get("workspaceId")
    if not isinstance(workspace_id, str) or not workspace_id:
        raise ValidationError("Workspace ID is required")
    result = _INVITATIONS.send_invitation(uid, workspace_id, body)
    result.pop("token", None)
    message = ("Existing user invited to the workspace" if result["type"] == "existing_user"
               else "Pending invitation created")
    return ok({"invitation": result}, message=message, status_code=201)


@router.post("/accept-invitation/{invitation_token}")
def accept_invitation(invitation_token: str, request: Request) -> JSONResponse:
    member = _INVITATIONS.accept_workspace_invitation(_uid(request), invitation_token)
    return ok({"member": member}, message="You have joined the workspace")


# =====================================================================
# WORKSPACE
# =====================================================================

@router.get("/{workspace_id}")
def get_workspace(workspace_id: str, request: Request) -> JSONResponse:
    return ok({"workspace": _STORE.get_workspace(workspace_id, _uid(request))})


@router.delete("/{workspace_id}")
def delete_workspace(workspace_id: str, request: Request) -> Response:
    _STORE.delete_workspace(workspace_id, _uid(request))
    return Response(status_code=204)


# =====================================================================
# POSITIONS
# =====================================================================

@router.post("/{workspace_id}/positions")
async def create_position(workspace_id: str, request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    position = _STORE.create_position(workspace_id, uid, body.get("name"), body.get("color"))
    return ok({"position": position}, status_code=201)


@router.get("/{workspace_id}/positions")
def list_positions(workspace_id: str, request: Request) -> JSONResponse:
    return ok({"positions": _STORE.list_positions(workspace_id, _uid(request))})


# =====================================================================
# MEMBERS
# =====================================================================

@router.get("/{workspace_id}/users")
def list_users(workspace_id: str, request: Request) -> JSONResponse:
    return ok({"users": _STORE.list_workspace_users(workspace_id, _uid(request))})


@router.patch("/{workspace_id}/users/{user_id}")
async def update_member(workspace_id: str, user_id: str, request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    updates = {k: body[k] for k in ("role", "position", "planet") if k in body}
    member = _STORE.update_member(workspace_id, uid, user_id, updates)
    return ok({"member": member})


@router.post("/{workspace_id}/reconcile")
def reconcile(workspace_id: str, request: Request) -> JSONResponse:
    return ok({"result": _STORE.reconcile(workspace_id, _uid(request))})


@router.get("/{workspace_id}/leaderboard")
def leaderboard(workspace_id: str, request: Request) -> JSONResponse:
    return ok({"leaderboard": _STORE.leaderboard(workspace_id, _uid(request))})
