"""Invitation lifecycle: direct invites, pending invitations, auto-join on signup.

Two ways into a workspace:

* the invitee already has an account: a member row is added unverified with
  a short-lived token; the invitee confirms it through
  ``accept_workspace_invitation``.
* the invitee has no account yet: an ``invitations`` row is created
  (pending, 7 days). When somebody registers with that email,
  ``process_pending_invitations`` turns every pending row into a
  membership; ``accept_invitation_by_token`` consumes one row explicitly.

Mail is always sent after the transaction that produced it has committed.
"""
from __future__ import annotations

import logging
import secrets
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from backend.errors import AppError, ConflictError, ForbiddenError, InternalError, NotFoundError, ValidationError
from backend.mailer import Mailer
from backend.settings import INVITATION_STATUSES, WORKSPACE_ROLES, Settings

from . import fanout
from .common import _conn, _id, _now, get_member, normalize_email, require_choice, require_member, require_workspace
from .directory import check_planet, check_position, insert_member, link_user_workspace, member_display_name

log = logging.getLogger("starquest.invitations")

# Which roles each workspace role may hand out
_GRANTABLE = {
    "admin": ("admin", "mentor", "mentee"),
    "mentor": ("mentee",),
    "mentee": (),
}


class InvitationService:

    def __init__(self, mailer: Mailer, settings: Settings) -> None:
        self._mailer = mailer
        self._settings = settings

    # =================================================================
    # Sending
    # =================================================================

    def send_invitation(self, inviter_id: str, workspace_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Invite an email address to a workspace.

        Returns ``{"type": "existing_user" | "pending_invitation", ...}``.
        The inviter gets a notification about the outcome either way.
        """
        email = normalize_email(data.get("inviteeEmail"), "Invitee email")
        role = require_choice(data.get("inviteeRole"), WORKSPACE_ROLES, "invitee role")

        with _conn() as conn:
            inviter = require_member(conn, workspace_id, inviter_id)
            if role not in _GRANTABLE[inviter["role"]]:
                raise ForbiddenError(f"You do not have permission to invite a {role}")
            inviter_row = conn.execute("SELECT email FROM users WHERE id = ?", (inviter_id,)).fetchone()
        inviter_email = inviter_row["email"] if inviter_row else None

        try:
            result = self._create_invitation(inviter_id, workspace_id, email, role, data)
            self._send_invitation_mail(result)
        except AppError as exc:
            self._notify_inviter(inviter_email, email, result_name=None, success=False, reason=exc.message)
            raise
        self._notify_inviter(inviter_email, email, result_name=result["workspace_name"], success=True)
        log.info("Invitation (%s) for %s to %s sent by %s", result["type"], email, workspace_id, inviter_id)
        return result

    def _create_invitation(
        self, inviter_id: str, workspace_id: str, email: str, role: str, data: Dict[str, Any],
    ) -> Dict[str, Any]:
        self.expire_stale_invitations()
        with _conn() as conn:
            ws = require_workspace(conn, workspace_id)
            position_id = check_position(conn, workspace_id, data.get("positionId"))
            planet = check_planet(conn, workspace_id, data.get("planet"))
            user = conn.execute(
                "SELECT id FROM users WHERE email = ? COLLATE NOCASE AND is_active = 1", (email,)
            ).fetchone()

            if user is not None:
                if get_member(conn, workspace_id, user["id"]) is not None:
                    raise ConflictError("User already exists in the workspace")
                token = secrets.token_hex(20)
                expires = (datetime.now() + timedelta(hours=self._settings.direct_invite_token_hours)).isoformat()
                insert_member(
                    conn, workspace_id, user["id"], role,
                    verified=False, inviter_id=inviter_id, position_id=position_id, planet=planet,
                    verification_token=token, verification_expires=expires,
                )
                return {
                    "type": "existing_user",
                    "workspace_id": workspace_id,
                    "workspace_name": ws["name"],
                    "user_id": user["id"],
                    "invitee_email": email,
                    "invitee_role": role,
                    "token": token,
                    "token_expires": expires,
                }

            pending = conn.execute(
                "SELECT 1 FROM invitations WHERE workspace_id = ? AND invitee_email = ? AND status = 'pending'",
                (workspace_id, email),
            ).fetchone()
            if pending:
                raise ConflictError("A pending invitation already exists for this email")

            token = secrets.token_hex(32)
            expires = (datetime.now() + timedelta(days=self._settings.invitation_expiry_days)).isoformat()
            invitation_id = _id()
            try:
                conn.execute(
                    """INSERT INTO invitations
                       (id, workspace_id, inviter_id, invitee_email, invitee_role, token, token_expires,
                        status, position_id, planet, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?)""",
                    (invitation_id, workspace_id, inviter_id, email, role, token, expires,
                     position_id, planet, _now()),
                )
            except sqlite3.IntegrityError as exc:
                # a concurrent request won the race for the pending slot
                raise ConflictError("A pending invitation already exists for this email") from exc
            return {
                "type": "pending_invitation",
                "id": invitation_id,
                "workspace_id": workspace_id,
                "workspace_name": ws["name"],
                "invitee_email": email,
                "invitee_role": role,
                "token": token,
                "token_expires": expires,
            }

    def _send_invitation_mail(self, result: Dict[str, Any]) -> None:
        base = self._settings.client_url.rstrip("/")
        token = result["token"]
        is_new_user = result["type"] == "pending_invitation"
        try:
            self._mailer.send(
                result["invitee_email"],
                f"Invitation to join {result['workspace_name']}",
                "workspace_invitation",
                is_new_user=is_new_user,
                workspace_name=result["workspace_name"],
                role=result["invitee_role"],
                signup_url=f"{base}/signup?invitationToken={token}",
                accept_url=(f"{base}/invitation/{token}" if is_new_user
                            else f"{base}/accept-invitation/{token}"),
            )
        except Exception as exc:
            log.exception("Invitation mail to %s failed", result["invitee_email"])
            raise InternalError("There was an error sending the email. Try again later!") from exc

    def _notify_inviter(
        self, inviter_email: Optional[str], invitee_email: str,
        result_name: Optional[str], success: bool, reason: str = "",
    ) -> None:
        if not inviter_email:
            return
        try:
            self._mailer.send(
                inviter_email,
                "Invitation sent" if success else "Invitation failed",
                "inviter_notification",
                success=success,
                reason=reason,
                invitee_email=invitee_email,
                workspace_name=result_name or "",
            )
        except Exception:
            log.exception("Could not notify inviter %s", inviter_email)

    # =================================================================
    # Direct invite of a registered user
    # =================================================================

    def accept_workspace_invitation(self, user_id: str, token: str) -> Dict[str, Any]:
        now = _now()
        with _conn() as conn:
            row = conn.execute(
                "SELECT * FROM workspace_members WHERE verification_token = ? AND is_verified = 0",
                (token,),
            ).fetchone()
            if row is None or (row["verification_expires"] or "") <= now:
                raise ValidationError("Invitation token is invalid or has expired")
            if row["user_id"] != user_id:
                raise ForbiddenError("This invitation was issued to another user")
            workspace_id = row["workspace_id"]
            conn.execute(
                """UPDATE workspace_members
                   SET is_verified = 1, verification_token = NULL, verification_expires = NULL, joined_at = ?
                   WHERE workspace_id = ? AND user_id = ?""",
                (now, workspace_id, user_id),
            )
            link_user_workspace(conn, user_id, workspace_id)
            quest = fanout.reconcile_member(conn, workspace_id, user_id) if row["role"] == "mentee" else None
            ws = require_workspace(conn, workspace_id)
            member = get_member(conn, workspace_id, user_id)
            invitee = conn.execute("SELECT email FROM users WHERE id = ?", (user_id,)).fetchone()
            inviter = None
            if row["inviter_id"]:
                inviter = conn.execute("SELECT email FROM users WHERE id = ?", (row["inviter_id"],)).fetchone()

        log.info("User %s accepted direct invitation to %s", user_id, workspace_id)
        self._mailer.send(
            invitee["email"], f"Welcome to {ws['name']}", "invitee_joined",
            role=member["role"], workspace_name=ws["name"],
        )
        if inviter is not None:
            self._mailer.send(
                inviter["email"], f"{invitee['email']} joined {ws['name']}", "inviter_notification",
                event="joined", invitee_email=invitee["email"], workspace_name=ws["name"],
            )
        member["quest_changes"] = quest
        return member

    # =================================================================
    # Pending invitations (unregistered emails)
    # =================================================================

    def process_pending_invitations(self, email: str, user_id: str) -> List[str]:
        """Apply every live pending invitation for ``email``; returns joined workspace ids.

        Each invitation is its own transaction. A failing one is logged and
        skipped; the rest still go through and registration is never aborted.
        """
        email = (email or "").strip().lower()
        try:
            self.expire_stale_invitations()
            with _conn() as conn:
                rows = conn.execute(
                    """SELECT * FROM invitations
                       WHERE invitee_email = ? AND status = 'pending' AND token_expires > ?
                       ORDER BY created_at""",
                    (email, _now()),
                ).fetchall()
        except sqlite3.Error:
            log.exception("Could not load pending invitations for %s", email)
            return []

        joined: List[str] = []
        for inv in rows:
            try:
                with _conn() as conn:
                    self._apply_invitation(conn, dict(inv), user_id)
                joined.append(inv["workspace_id"])
            except (AppError, sqlite3.Error):
                log.exception("Pending invitation %s for %s could not be applied", inv["id"], email)
        if joined:
            log.info("User %s auto-joined %d workspace(s)", user_id, len(joined))
        return joined

    def get_invitation_by_token(self, token: str) -> Dict[str, Any]:
        self.expire_stale_invitations()
        with _conn() as conn:
            inv = self._live_invitation(conn, token)
            ws = require_workspace(conn, inv["workspace_id"])
            inviter_name = member_display_name(conn, inv["inviter_id"])
        return {
            "id": inv["id"],
            "workspace": {"id": ws["id"], "name": ws["name"], "description": ws["description"]},
            "inviter_name": inviter_name,
            "invitee_email": inv["invitee_email"],
            "invitee_role": inv["invitee_role"],
            "token_expires": inv["token_expires"],
        }

    def accept_invitation_by_token(self, token: str, user_id: str) -> Dict[str, Any]:
        """Consume one invitation for a signed-in user, all in one transaction."""
        with _conn() as conn:
            inv = self._live_invitation(conn, token)
            user = conn.execute("SELECT email FROM users WHERE id = ?", (user_id,)).fetchone()
            if user is None:
                raise NotFoundError("User not found")
            if user["email"].lower() != inv["invitee_email"]:
                raise ForbiddenError("This invitation was issued to a different email address")
            if get_member(conn, inv["workspace_id"], user_id) is not None:
                raise ValidationError("User already exists in the workspace")
            self._apply_invitation(conn, inv, user_id)
        log.info("Invitation %s accepted by %s", inv["id"], user_id)
        return {"workspace_id": inv["workspace_id"], "role": inv["invitee_role"], "invitation_id": inv["id"]}

    def _apply_invitation(self, conn: sqlite3.Connection, inv: Dict[str, Any], user_id: str) -> None:
        """Membership + user list + invitation status + fan-out, on one connection."""
        workspace_id = inv["workspace_id"]
        position_id = inv["position_id"]
        if position_id and conn.execute(
            "SELECT 1 FROM positions WHERE id = ? AND workspace_id = ?", (position_id, workspace_id)
        ).fetchone() is None:
            log.warning("Invitation %s: position %s no longer exists, joining without one", inv["id"], position_id)
            position_id = None

        added = insert_member(
            conn, workspace_id, user_id, inv["invitee_role"],
            verified=True, inviter_id=inv["inviter_id"], position_id=position_id, planet=inv["planet"],
        )
        link_user_workspace(conn, user_id, workspace_id)
        conn.execute(
            "UPDATE invitations SET status = 'accepted', accepted_at = ? WHERE id = ?",
            (_now(), inv["id"]),
        )
        if added and inv["invitee_role"] == "mentee":
            fanout.reconcile_member(conn, workspace_id, user_id)

    def _live_invitation(self, conn: sqlite3.Connection, token: str) -> Dict[str, Any]:
        row = conn.execute("SELECT * FROM invitations WHERE token = ?", (token or "",)).fetchone()
        if row is None or row["status"] != "pending" or row["token_expires"] <= _now():
            raise ValidationError("Invitation is invalid or has expired")
        return dict(row)

    # =================================================================
    # Management
    # =================================================================

    def cancel_invitation(self, invitation_id: str, actor_id: str) -> Dict[str, Any]:
        with _conn() as conn:
            inv = self._managed_invitation(conn, invitation_id, actor_id)
            if inv["status"] != "pending":
                raise ValidationError(f"Cannot cancel an invitation with status '{inv['status']}'")
            conn.execute(
                "UPDATE invitations SET status = 'cancelled', cancelled_at = ? WHERE id = ?",
                (_now(), invitation_id),
            )
            row = conn.execute("SELECT * FROM invitations WHERE id = ?", (invitation_id,)).fetchone()
        log.info("Invitation %s cancelled by %s", invitation_id, actor_id)
        return dict(row)

    def resend_invitation(self, invitation_id: str, actor_id: str) -> Dict[str, Any]:
        expired = False
        with _conn() as conn:
            inv = self._managed_invitation(conn, invitation_id, actor_id)
            if inv["status"] != "pending":
                raise ValidationError(f"Cannot resend an invitation with status '{inv['status']}'")
            if inv["token_expires"] <= _now():
                conn.execute("UPDATE invitations SET status = 'expired' WHERE id = ?", (invitation_id,))
                expired = True
            else:
                ws = require_workspace(conn, inv["workspace_id"])
        if expired:
            raise ValidationError("Invitation has expired. Please create a new invitation")

        self._send_invitation_mail({
            "type": "pending_invitation",
            "workspace_name": ws["name"],
            "invitee_email": inv["invitee_email"],
            "invitee_role": inv["invitee_role"],
            "token": inv["token"],
        })
        log.info("Invitation %s resent by %s", invitation_id, actor_id)
        return inv

    def _managed_invitation(self, conn: sqlite3.Connection, invitation_id: str, actor_id: str) -> Dict[str, Any]:
        row = conn.execute("SELECT * FROM invitations WHERE id = ?", (invitation_id,)).fetchone()
        if row is None:
            raise NotFoundError("Invitation not found")
        inv = dict(row)
        member = get_member(conn, inv["workspace_id"], actor_id)
        is_admin = bool(member and member["is_verified"] and member["role"] == "admin")
        if not is_admin and inv["inviter_id"] != actor_id:
            raise ForbiddenError("Only the workspace admin or the inviter can manage this invitation")
        return inv

    # =================================================================
    # Listings (degrade to [] on query errors)
    # =================================================================

    def get_workspace_invitations(
        self, workspace_id: str, actor_id: str, status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        if status is not None:
            require_choice(status, INVITATION_STATUSES, "status")
        with _conn() as conn:
            require_member(conn, workspace_id, actor_id, roles=("admin", "mentor"))

        try:
            self.expire_stale_invitations()
            sql = """SELECT i.*, u.first_name AS inviter_first_name, u.last_name AS inviter_last_name
                     FROM invitations i LEFT JOIN users u ON u.id = i.inviter_id
                     WHERE i.workspace_id = ?"""
            params: list = [workspace_id]
            if status:
                sql += " AND i.status = ?"
                params.append(status)
            sql += " ORDER BY i.created_at DESC"
            with _conn() as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error:
            log.exception("Listing invitations of workspace %s failed; returning none", workspace_id)
            return []
        return [self._listing_row(r) for r in rows]

    def get_all_pending_invitations(self, actor_id: str) -> List[Dict[str, Any]]:
        """Live pending invitations across every workspace the actor administers."""
        try:
            self.expire_stale_invitations()
            with _conn() as conn:
                rows = conn.execute(
                    """SELECT i.*, w.name AS workspace_name,
                              u.first_name AS inviter_first_name, u.last_name AS inviter_last_name
                       FROM invitations i
                       JOIN workspaces w ON w.id = i.workspace_id
                       JOIN workspace_members m
                            ON m.workspace_id = i.workspace_id AND m.user_id = ?
                               AND m.role = 'admin' AND m.is_verified = 1
                       LEFT JOIN users u ON u.id = i.inviter_id
                       WHERE i.status = 'pending' AND i.token_expires > ?
                       ORDER BY i.created_at DESC""",
                    (actor_id, _now()),
                ).fetchall()
        except sqlite3.Error:
            log.exception("Listing pending invitations for %s failed; returning none", actor_id)
            return []
        return [self._listing_row(r) for r in rows]

    def _listing_row(self, row: sqlite3.Row) -> Dict[str, Any]:
        d = dict(row)
        d.pop("token", None)
        first = d.pop("inviter_first_name", None) or ""
        last = d.pop("inviter_last_name", None) or ""
        d["inviter_name"] = f"{first} {last}".strip()
        return d

    # =================================================================
    # Expiry
    # =================================================================

    def expire_stale_invitations(self) -> int:
        with _conn() as conn:
            count = conn.execute(
                "UPDATE invitations SET status = 'expired' WHERE status = 'pending' AND token_expires <= ?",
                (_now(),),
            ).rowcount
        if count:
            log.info("Expired %d overdue invitation(s)", count)
        return count
