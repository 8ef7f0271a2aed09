"""Workspace directory: workspaces, planets, positions, members, leaderboard."""
from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from backend.errors import ForbiddenError, NotFoundError, ValidationError
from backend.settings import PLANETS, WORKSPACE_ROLES

from . import fanout
from .common import (
    _conn, _id, _now, get_member, optional_text, require_choice, require_member,
    require_text, require_workspace, string_list,
)

log = logging.getLogger("starquest.workspaces")

DEFAULT_NAME = "New Workspace"
DEFAULT_DESCRIPTION = "A newly created workspace awaiting description."
DEFAULT_RULES = "Standard workspace rules apply. Customize as needed."
DEFAULT_POSITION_COLOR = "#4a6cf7"


# =====================================================================
# Connection-level helpers (shared with the invitation lifecycle)
# =====================================================================

def insert_member(
    conn: sqlite3.Connection,
    workspace_id: str,
    user_id: str,
    role: str,
    *,
    verified: bool,
    inviter_id: Optional[str] = None,
    position_id: Optional[str] = None,
    planet: Optional[str] = None,
    verification_token: Optional[str] = None,
    verification_expires: Optional[str] = None,
) -> bool:
    """Add a member row. Returns False if the user is already a member."""
    cursor = conn.execute(
        """INSERT OR IGNORE INTO workspace_members
           (workspace_id, user_id, inviter_id, role, position_id, planet, is_verified,
            verification_token, verification_expires, stars, joined_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)""",
        (workspace_id, user_id, inviter_id, role, position_id, planet, int(verified),
         verification_token, verification_expires, _now()),
    )
    return cursor.rowcount > 0


def link_user_workspace(conn: sqlite3.Connection, user_id: str, workspace_id: str) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO user_workspaces (user_id, workspace_id, joined_at) VALUES (?, ?, ?)",
        (user_id, workspace_id, _now()),
    )


def check_position(conn: sqlite3.Connection, workspace_id: str, position_id: Optional[str]) -> Optional[str]:
    if not position_id:
        return None
    row = conn.execute(
        "SELECT 1 FROM positions WHERE id = ? AND workspace_id = ?", (position_id, workspace_id)
    ).fetchone()
    if row is None:
        raise ValidationError("Position does not belong to this workspace")
    return position_id


def check_planet(conn: sqlite3.Connection, workspace_id: str, planet: Optional[str]) -> Optional[str]:
    if not planet:
        return None
    require_choice(planet, PLANETS, "planet")
    row = conn.execute(
        "SELECT 1 FROM workspace_planets WHERE workspace_id = ? AND planet = ?", (workspace_id, planet)
    ).fetchone()
    if row is None:
        raise ValidationError(f"Planet '{planet}' is not available in this workspace")
    return planet


def member_display_name(conn: sqlite3.Connection, user_id: str) -> str:
    row = conn.execute("SELECT first_name, last_name, email FROM users WHERE id = ?", (user_id,)).fetchone()
    if row is None:
        return "?"
    name = f"{row['first_name']} {row['last_name']}".strip()
    return name or row["email"]


# =====================================================================
# WORKSPACE STORE
# =====================================================================

class WorkspaceStore:

    # --- Workspaces ---

    def create_workspace(
        self,
        user_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        rules: Optional[str] = None,
        planets: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Create a workspace with the creator as its verified admin."""
        planets = string_list(planets, "planets") or list(PLANETS)
        for p in planets:
            require_choice(p, PLANETS, "planet")
        wid = _id()
        now = _now()
        with _conn() as conn:
            conn.execute(
                """INSERT INTO workspaces (id, name, description, rules, created_by, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (wid, (name or "").strip() or DEFAULT_NAME,
                 (description or "").strip() or DEFAULT_DESCRIPTION,
                 (rules or "").strip() or DEFAULT_RULES,
                 user_id, now, now),
            )
            conn.executemany(
                "INSERT INTO workspace_planets (workspace_id, planet) VALUES (?, ?)",
                [(wid, p) for p in planets],
            )
            insert_member(conn, wid, user_id, "admin", verified=True)
            link_user_workspace(conn, user_id, wid)
        log.info("Workspace %s created by %s", wid, user_id)
        return self.get_workspace(wid, user_id)

    def get_workspace(self, workspace_id: str, user_id: str) -> Dict[str, Any]:
        with _conn() as conn:
            member = require_member(conn, workspace_id, user_id)
            ws = require_workspace(conn, workspace_id)
            ws["planets"] = self._planets(conn, workspace_id)
            ws["positions"] = self._positions(conn, workspace_id)
            ws["member_count"] = self._count_members(conn, workspace_id)
            ws["my_role"] = member["role"]
            return ws

    def list_user_workspaces(self, user_id: str) -> List[Dict[str, Any]]:
        """Workspaces on the user's list where the membership is verified."""
        with _conn() as conn:
            rows = conn.execute(
                """SELECT w.*, m.role AS my_role, m.stars AS my_stars
                   FROM user_workspaces uw
                   JOIN workspaces w ON w.id = uw.workspace_id
                   JOIN workspace_members m ON m.workspace_id = w.id AND m.user_id = uw.user_id
                   WHERE uw.user_id = ? AND m.is_verified = 1
                   ORDER BY uw.joined_at""",
                (user_id,),
            ).fetchall()
            result = []
            for r in rows:
                ws = dict(r)
                ws["member_count"] = self._count_members(conn, ws["id"])
                result.append(ws)
            return result

    def delete_workspace(self, workspace_id: str, user_id: str) -> bool:
        """Hard delete. Members, positions, tasks, quests, invitations and
        reports go with it through ON DELETE CASCADE."""
        with _conn() as conn:
            require_member(conn, workspace_id, user_id, roles=("admin",))
            deleted = conn.execute("DELETE FROM workspaces WHERE id = ?", (workspace_id,)).rowcount > 0
        log.info("Workspace %s deleted by %s", workspace_id, user_id)
        return deleted

    # --- Positions ---

    def create_position(self, workspace_id: str, user_id: str, name: Any, color: Any = None) -> Dict[str, Any]:
        name = require_text({"name": name}, "name", "Position name")
        color = optional_text({"color": color}, "color") or DEFAULT_POSITION_COLOR
        pid = _id()
        with _conn() as conn:
            require_member(conn, workspace_id, user_id, roles=("admin", "mentor"))
            dup = conn.execute(
                "SELECT 1 FROM positions WHERE workspace_id = ? AND LOWER(name) = ?",
                (workspace_id, name.lower()),
            ).fetchone()
            if dup:
                raise ValidationError(f"Position '{name}' already exists in this workspace")
            conn.execute(
                "INSERT INTO positions (id, workspace_id, name, color, created_at) VALUES (?, ?, ?, ?, ?)",
                (pid, workspace_id, name, color, _now()),
            )
        return {"id": pid, "workspace_id": workspace_id, "name": name, "color": color}

    def list_positions(self, workspace_id: str, user_id: str) -> List[Dict[str, Any]]:
        with _conn() as conn:
            require_member(conn, workspace_id, user_id)
            return self._positions(conn, workspace_id)

    # --- Members ---

    def list_workspace_users(self, workspace_id: str, user_id: str) -> List[Dict[str, Any]]:
        """Admins see everybody; mentors see mentees only.

        ``status`` is ``confirm`` for verified members and ``pending`` for
        direct invites not yet accepted.
        """
        with _conn() as conn:
            me = require_member(conn, workspace_id, user_id, roles=("admin", "mentor"))
            sql = """SELECT m.user_id, m.role, m.planet, m.stars, m.is_verified, m.joined_at,
                            u.first_name, u.last_name, u.email,
                            p.id AS position_id, p.name AS position_name, p.color AS position_color
                     FROM workspace_members m
                     JOIN users u ON u.id = m.user_id
                     LEFT JOIN positions p ON p.id = m.position_id
                     WHERE m.workspace_id = ?"""
            params: list = [workspace_id]
            if me["role"] == "mentor":
                sql += " AND m.role = 'mentee'"
            sql += """ ORDER BY CASE m.role WHEN 'admin' THEN 0 WHEN 'mentor' THEN 1 ELSE 2 END,
                               u.first_name, u.last_name"""
            rows = conn.execute(sql, params).fetchall()
            result = []
            for r in rows:
                d = dict(r)
                d["status"] = "confirm" if d.pop("is_verified") else "pending"
                d["position"] = (
                    {"id": d["position_id"], "name": d["position_name"], "color": d["position_color"]}
                    if d["position_id"] else None
                )
                for k in ("position_id", "position_name", "position_color"):
                    d.pop(k)
                result.append(d)
            return result

    def update_member(
        self, workspace_id: str, actor_id: str, user_id: str, updates: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Change a member's role, position or planet, then reconcile their quest list."""
        with _conn() as conn:
            require_member(conn, workspace_id, actor_id, roles=("admin",))
            member = get_member(conn, workspace_id, user_id)
            if member is None:
                raise NotFoundError("User not found in workspace")

            sql_updates: Dict[str, Any] = {}
            if "role" in updates:
                role = require_choice(updates["role"], WORKSPACE_ROLES, "role")
                if (member["role"] == "admin" and role != "admin" and member["is_verified"]
                        and self._other_verified_admins(conn, workspace_id, user_id) == 0):
                    raise ValidationError("A workspace must keep at least one admin")
                sql_updates["role"] = role
            if "position" in updates:
                sql_updates["position_id"] = check_position(conn, workspace_id, updates["position"])
            if "planet" in updates:
                sql_updates["planet"] = check_planet(conn, workspace_id, updates["planet"])
            if not sql_updates:
                raise ValidationError("Nothing to update")

            set_clause = ", ".join(f"{k} = ?" for k in sql_updates)
            conn.execute(
                f"UPDATE workspace_members SET {set_clause} WHERE workspace_id = ? AND user_id = ?",
                list(sql_updates.values()) + [workspace_id, user_id],
            )
            result = fanout.reconcile_member(conn, workspace_id, user_id)
            updated = get_member(conn, workspace_id, user_id)
        updated["quest_changes"] = result
        return updated

    def reconcile(self, workspace_id: str, actor_id: str) -> Dict[str, Any]:
        with _conn() as conn:
            require_member(conn, workspace_id, actor_id, roles=("admin",))
            return fanout.reconcile_workspace(conn, workspace_id)

    # --- Leaderboard ---

    def leaderboard(self, workspace_id: str, user_id: str) -> List[Dict[str, Any]]:
        """Verified mentees by stars (desc), ranked from 1; ``me`` marks the caller."""
        with _conn() as conn:
            require_member(conn, workspace_id, user_id)
            rows = conn.execute(
                """SELECT m.user_id, m.stars, m.planet,
                          u.first_name, u.last_name,
                          p.name AS position, p.color AS position_color,
                          (SELECT COUNT(*) FROM quest_entries q
                           WHERE q.workspace_id = m.workspace_id AND q.user_id = m.user_id
                             AND q.status = 'Done') AS completed_tasks
                   FROM workspace_members m
                   JOIN users u ON u.id = m.user_id
                   LEFT JOIN positions p ON p.id = m.position_id
                   WHERE m.workspace_id = ? AND m.role = 'mentee' AND m.is_verified = 1
                   ORDER BY m.stars DESC, u.first_name, u.last_name""",
                (workspace_id,),
            ).fetchall()
        board = []
        for rank, r in enumerate(rows, start=1):
            d = dict(r)
            d["name"] = f"{d.pop('first_name')} {d.pop('last_name')}".strip()
            d["rank"] = rank
            d["me"] = d["user_id"] == user_id
            board.append(d)
        return board

    # --- Internal helpers ---

    def _planets(self, conn, workspace_id: str) -> List[str]:
        rows = conn.execute(
            "SELECT planet FROM workspace_planets WHERE workspace_id = ?", (workspace_id,)
        ).fetchall()
        present = {r["planet"] for r in rows}
        return [p for p in PLANETS if p in present]

    def _positions(self, conn, workspace_id: str) -> List[Dict[str, Any]]:
        rows = conn.execute(
            "SELECT id, name, color FROM positions WHERE workspace_id = ? ORDER BY created_at, name",
            (workspace_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    def _count_members(self, conn, workspace_id: str) -> int:
        row = conn.execute(
            "SELECT COUNT(*) AS cnt FROM workspace_members WHERE workspace_id = ? AND is_verified = 1",
            (workspace_id,),
        ).fetchone()
        return row["cnt"] if row else 0

    def _other_verified_admins(self, conn, workspace_id: str, user_id: str) -> int:
        # unaccepted admin invites do not count
        row = conn.execute(
            """SELECT COUNT(*) AS cnt FROM workspace_members
               WHERE workspace_id = ? AND role = 'admin' AND is_verified = 1 AND user_id != ?""",
            (workspace_id, user_id),
        ).fetchone()
        return row["cnt"] if row else 0
