"""Tests for the invitation lifecycle and auto-join at signup."""
from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from backend.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError


@pytest.fixture
def invitations(mailer, settings):
    from backend.quest.invitations import InvitationService
    return InvitationService(mailer, settings)


@pytest.fixture
def accounts(invitations, mailer, settings):
    from backend.quest.directory import WorkspaceStore
    from webapp.auth.accounts import AccountService
    from webapp.auth.user_store import UserStore
    return AccountService(UserStore(), WorkspaceStore(), invitations, mailer, settings)


@pytest.fixture
def team(make_user, add_member):
    from backend.quest.directory import WorkspaceStore
    store = WorkspaceStore()
    admin = make_user("admin@x.com", first_name="Ada", last_name="Admin")
    ws = store.create_workspace(admin, "Crew")
    pos = store.create_position(ws["id"], admin, "Backend")
    mentor = make_user("mentor@x.com", first_name="Max")
    mentee = make_user("mentee@x.com", first_name="Mia")
    add_member(ws["id"], mentor, "mentor")
    add_member(ws["id"], mentee, "mentee")
    return {"ws": ws["id"], "admin": admin, "mentor": mentor, "mentee": mentee, "pos": pos["id"]}


def _signup(accounts, email, token=None):
    data = {
        "firstName": "Alice",
        "lastName": "Liddell",
        "email": email,
        "password": "Wonder1and",
        "passwordConfirm": "Wonder1and",
    }
    if token:
        data["invitationToken"] = token
    return accounts.signup(data)


def _expire(invitation_id):
    from backend.db.engine import get_conn
    past = (datetime.now() - timedelta(minutes=1)).isoformat()
    with get_conn() as conn:
        conn.execute("UPDATE invitations SET token_expires = ? WHERE id = ?", (past, invitation_id))


# ===========================================================================
# Sending
# ===========================================================================

class TestSend:
    def test_pending_invitation_for_new_email(self, invitations, team, mailer):
        result = invitations.send_invitation(team["admin"], team["ws"], {
            "inviteeEmail": "Alice@X.com", "inviteeRole": "mentee",
            "positionId": team["pos"], "planet": "Nebulae",
        })
        assert result["type"] == "pending_invitation"
        assert result["invitee_email"] == "alice@x.com"
        assert len(result["token"]) == 64

        mail = mailer.outbox("alice@x.com")
        assert len(mail) == 1
        assert mail[0]["template"] == "workspace_invitation"
        assert result["token"] in mail[0]["body"]
        notices = mailer.outbox("admin@x.com")
        assert notices[-1]["subject"] == "Invitation sent"

    def test_duplicate_pending_conflicts(self, invitations, team, mailer):
        data = {"inviteeEmail": "alice@x.com", "inviteeRole": "mentee"}
        invitations.send_invitation(team["admin"], team["ws"], data)
        with pytest.raises(ConflictError):
            invitations.send_invitation(team["admin"], team["ws"], data)
        assert mailer.outbox("admin@x.com")[-1]["subject"] == "Invitation failed"

    def test_mentor_may_only_invite_mentees(self, invitations, team):
        invitations.send_invitation(team["mentor"], team["ws"], {"inviteeEmail": "a@x.com", "inviteeRole": "mentee"})
        with pytest.raises(ForbiddenError):
            invitations.send_invitation(team["mentor"], team["ws"], {"inviteeEmail": "b@x.com", "inviteeRole": "mentor"})

    def test_mentee_cannot_invite(self, invitations, team):
        with pytest.raises(ForbiddenError):
            invitations.send_invitation(team["mentee"], team["ws"], {"inviteeEmail": "a@x.com", "inviteeRole": "mentee"})

    def test_outsider_cannot_invite(self, invitations, team, make_user):
        outsider = make_user("outsider@x.com")
        with pytest.raises(ForbiddenError):
            invitations.send_invitation(outsider, team["ws"], {"inviteeEmail": "a@x.com", "inviteeRole": "mentee"})

    def test_invalid_email_rejected(self, invitations, team):
        with pytest.raises(ValidationError):
            invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "not-an-email", "inviteeRole": "mentee"})

    def test_existing_member_conflicts(self, invitations, team):
        with pytest.raises(ConflictError):
            invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "mentee@x.com", "inviteeRole": "mentee"})


# ===========================================================================
# Direct invitation of a registered user
# ===========================================================================

class TestDirectInvite:
    def test_accept(self, invitations, team, make_user, mailer):
        from backend.db.engine import fetch_one
        bob = make_user("bob@x.com")
        result = invitations.send_invitation(team["admin"], team["ws"], {
            "inviteeEmail": "bob@x.com", "inviteeRole": "mentee", "positionId": team["pos"],
        })
        assert result["type"] == "existing_user"
        assert len(result["token"]) == 40
        member = fetch_one("SELECT * FROM workspace_members WHERE user_id = ?", (bob,))
        assert member["is_verified"] == 0

        joined = invitations.accept_workspace_invitation(bob, result["token"])
        assert joined["is_verified"] == 1
        assert joined["position_id"] == team["pos"]
        assert fetch_one("SELECT * FROM user_workspaces WHERE user_id = ?", (bob,)) is not None
        assert mailer.outbox("bob@x.com")[-1]["template"] == "invitee_joined"
        assert mailer.outbox("admin@x.com")[-1]["template"] == "inviter_notification"

    def test_token_of_another_user(self, invitations, team, make_user):
        make_user("bob@x.com")
        carol = make_user("carol@x.com")
        result = invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "bob@x.com", "inviteeRole": "mentee"})
        with pytest.raises(ForbiddenError):
            invitations.accept_workspace_invitation(carol, result["token"])

    def test_expired_token(self, invitations, team, make_user):
        from backend.db.engine import get_conn
        bob = make_user("bob@x.com")
        result = invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "bob@x.com", "inviteeRole": "mentee"})
        with get_conn() as conn:
            conn.execute("UPDATE workspace_members SET verification_expires = '2000-01-01' WHERE user_id = ?", (bob,))
        with pytest.raises(ValidationError):
            invitations.accept_workspace_invitation(bob, result["token"])


# ===========================================================================
# Pending invitations and signup
# ===========================================================================

class TestAutoJoin:
    def test_signup_joins_invited_workspace(self, invitations, accounts, team):
        from backend.db.engine import fetch_one
        from backend.quest.directory import WorkspaceStore
        from backend.quest.tasks import TaskBacklog

        TaskBacklog().create_task(team["ws"], team["admin"], {
            "title": "Onboarding", "description": "Read the docs", "category": "Mandatory sessions",
            "starsEarned": 2, "isGlobal": True,
        })
        invitations.send_invitation(team["admin"], team["ws"], {
            "inviteeEmail": "alice@x.com", "inviteeRole": "mentee",
            "positionId": team["pos"], "planet": "Nebulae",
        })

        alice = _signup(accounts, "alice@x.com")
        names = sorted(w["name"] for w in WorkspaceStore().list_user_workspaces(alice.user_id))
        assert names == ["Crew", "Default Workspace"]

        member = fetch_one(
            "SELECT * FROM workspace_members WHERE workspace_id = ? AND user_id = ?", (team["ws"], alice.user_id),
        )
        assert member["role"] == "mentee"
        assert member["is_verified"] == 1
        assert member["planet"] == "Nebulae"
        inv = fetch_one("SELECT * FROM invitations WHERE invitee_email = 'alice@x.com'")
        assert inv["status"] == "accepted"
        assert inv["accepted_at"]
        entries = fetch_one("SELECT COUNT(*) AS c FROM quest_entries WHERE user_id = ?", (alice.user_id,))
        assert entries["c"] == 1

    def test_signup_with_token_does_not_fail(self, invitations, accounts, team):
        result = invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "alice@x.com", "inviteeRole": "mentor"})
        alice = _signup(accounts, "alice@x.com", token=result["token"])
        from backend.quest.directory import WorkspaceStore
        assert len(WorkspaceStore().list_user_workspaces(alice.user_id)) == 2

    def test_expired_invitation_not_applied(self, invitations, accounts, team):
        result = invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "alice@x.com", "inviteeRole": "mentee"})
        _expire(result["id"])
        alice = _signup(accounts, "alice@x.com")
        from backend.quest.directory import WorkspaceStore
        names = [w["name"] for w in WorkspaceStore().list_user_workspaces(alice.user_id)]
        assert names == ["Default Workspace"]

    def test_failing_invitation_is_skipped(self, invitations, team, make_user, monkeypatch):
        from backend.db.engine import fetch_one
        from backend.quest.directory import WorkspaceStore
        other = WorkspaceStore().create_workspace(team["admin"], "Other")
        invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "alice@x.com", "inviteeRole": "mentee"})
        invitations.send_invitation(team["admin"], other["id"], {"inviteeEmail": "alice@x.com", "inviteeRole": "mentee"})

        original = invitations._apply_invitation

        def _apply(conn, inv, user_id):
            if inv["workspace_id"] == team["ws"]:
                raise ValidationError("broken invitation")
            return original(conn, inv, user_id)

        monkeypatch.setattr(invitations, "_apply_invitation", _apply)
        alice = make_user("alice@x.com")
        joined = invitations.process_pending_invitations("alice@x.com", alice)
        assert joined == [other["id"]]
        still = fetch_one("SELECT status FROM invitations WHERE workspace_id = ?", (team["ws"],))
        assert still["status"] == "pending"


# ===========================================================================
# Token lookup and explicit acceptance
# ===========================================================================

class TestTokenFlow:
    def test_lookup(self, invitations, team):
        result = invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "alice@x.com", "inviteeRole": "mentee"})
        info = invitations.get_invitation_by_token(result["token"])
        assert info["workspace"]["name"] == "Crew"
        assert info["inviter_name"] == "Ada Admin"
        assert info["invitee_role"] == "mentee"
        assert "token" not in info

    def test_lookup_expired(self, invitations, team):
        from backend.db.engine import fetch_one
        result = invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "alice@x.com", "inviteeRole": "mentee"})
        _expire(result["id"])
        with pytest.raises(ValidationError):
            invitations.get_invitation_by_token(result["token"])
        assert fetch_one("SELECT status FROM invitations WHERE id = ?", (result["id"],))["status"] == "expired"

    def test_lookup_unknown(self, invitations):
        with pytest.raises(ValidationError):
            invitations.get_invitation_by_token("deadbeef")

    def test_accept_requires_matching_email(self, invitations, team, make_user):
        result = invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "alice@x.com", "inviteeRole": "mentee"})
        eve = make_user("eve@x.com")
        with pytest.raises(ForbiddenError):
            invitations.accept_invitation_by_token(result["token"], eve)

    def test_accept(self, invitations, team, make_user):
        result = invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "alice@x.com", "inviteeRole": "mentor"})
        alice = make_user("alice@x.com")
        accepted = invitations.accept_invitation_by_token(result["token"], alice)
        assert accepted == {"workspace_id": team["ws"], "role": "mentor", "invitation_id": result["id"]}
        with pytest.raises(ValidationError):
            invitations.accept_invitation_by_token(result["token"], alice)


# ===========================================================================
# Management and listings
# ===========================================================================

class TestManagement:
    def test_cancel_by_inviter(self, invitations, team):
        result = invitations.send_invitation(team["mentor"], team["ws"], {"inviteeEmail": "alice@x.com", "inviteeRole": "mentee"})
        cancelled = invitations.cancel_invitation(result["id"], team["mentor"])
        assert cancelled["status"] == "cancelled"
        assert cancelled["cancelled_at"]
        with pytest.raises(ValidationError):
            invitations.cancel_invitation(result["id"], team["admin"])

    def test_cancel_forbidden_for_others(self, invitations, team):
        result = invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "alice@x.com", "inviteeRole": "mentee"})
        with pytest.raises(ForbiddenError):
            invitations.cancel_invitation(result["id"], team["mentee"])

    def test_cancel_unknown(self, invitations, team):
        with pytest.raises(NotFoundError):
            invitations.cancel_invitation("missing", team["admin"])

    def test_resend_mails_again(self, invitations, team, mailer):
        result = invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "alice@x.com", "inviteeRole": "mentee"})
        invitations.resend_invitation(result["id"], team["admin"])
        assert len(mailer.outbox("alice@x.com")) == 2

    def test_resend_expired(self, invitations, team):
        from backend.db.engine import fetch_one
        result = invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "alice@x.com", "inviteeRole": "mentee"})
        _expire(result["id"])
        with pytest.raises(ValidationError, match="expired"):
            invitations.resend_invitation(result["id"], team["admin"])
        assert fetch_one("SELECT status FROM invitations WHERE id = ?", (result["id"],))["status"] == "expired"

    def test_workspace_listing(self, invitations, team):
        first = invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "a@x.com", "inviteeRole": "mentee"})
        invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "b@x.com", "inviteeRole": "mentee"})
        invitations.cancel_invitation(first["id"], team["admin"])

        rows = invitations.get_workspace_invitations(team["ws"], team["admin"])
        assert len(rows) == 2
        assert all("token" not in r for r in rows)
        assert rows[0]["inviter_name"] == "Ada Admin"
        pending = invitations.get_workspace_invitations(team["ws"], team["mentor"], status="pending")
        assert [r["invitee_email"] for r in pending] == ["b@x.com"]
        with pytest.raises(ForbiddenError):
            invitations.get_workspace_invitations(team["ws"], team["mentee"])

    def test_all_pending_for_admin(self, invitations, team):
        invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "a@x.com", "inviteeRole": "mentee"})
        rows = invitations.get_all_pending_invitations(team["admin"])
        assert [r["workspace_name"] for r in rows] == ["Crew"]
        assert invitations.get_all_pending_invitations(team["mentor"]) == []

    def test_expire_stale(self, invitations, team):
        result = invitations.send_invitation(team["admin"], team["ws"], {"inviteeEmail": "a@x.com", "inviteeRole": "mentee"})
        _expire(result["id"])
        assert invitations.expire_stale_invitations() == 1
        assert invitations.expire_stale_invitations() == 0
