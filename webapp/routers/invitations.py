"""API router for invitations to unregistered emails.

Prefix: /api/invitations

Static paths (/pending, /token/...) come before /{invitation_id}.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from backend.quest.invitations import InvitationService

from .helpers import _uid, ok

router = APIRouter(prefix="/api/invitations", tags=["invitations"])

_SERVICE: Optional[InvitationService] = None


def init(*, invitations: InvitationService) -> None:
    global _SERVICE
    _SERVICE = invitations


@router.get("/pending")
def all_pending(request: Request) -> JSONResponse:
    invitations = _SERVICE.get_all_pending_invitations(_uid(request))
    return ok({"invitations": invitations, "count": len(invitations)})


@router.get("/token/{token}")
def by_token(token: str) -> JSONResponse:
    """Public: lets the signup page show what the link is for."""
    return ok({"invitation": _SERVICE.get_invitation_by_token(token)})


@router.post("/token/{token}/accept")
def accept_by_token(token: str, request: Request) -> JSONResponse:
    result = _SERVICE.accept_invitation_by_token(token, _uid(request))
    return ok(result, message="Invitation accepted")


@router.get("/workspace/{workspace_id}")
def workspace_invitations(workspace_id: str, request: Request, status: Optional[str] = None) -> JSONResponse:
    invitations = _SERVICE.get_workspace_invitations(workspace_id, _uid(request), status)
    return ok({"invitations": invitations, "count": len(invitations)})


@router.patch("/{invitation_id}/cancel")
def cancel(invitation_id: str, request: Request) -> JSONResponse:
    invitation = _SERVICE.cancel_invitation(invitation_id, _uid(request))
    invitation.pop("token", None)
    return ok({"invitation": invitation}, message="Invitation cancelled")


@router.post("/{invitation_id}/resend")
def resend(invitation_id: str, request: Request) -> JSONResponse:
    invitation = _SERVICE.resend_invitation(invitation_id, _uid(request))
    invitation.pop("token", None)
    return ok({"invitation": invitation}, message="Invitation resent")
