"""Quest tracking: per-member task status, comments and star rewards."""
from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from backend.errors import NotFoundError, ValidationError
from backend.settings import QUEST_STATUSES

from .common import _conn, _id, _now, get_member, require_choice, require_member, require_text

log = logging.getLogger("starquest.quests")

# Statuses a member may set on their own entries
SELF_SERVICE_STATUSES = ("In Progress", "In Review")


class QuestTracker:

    # --- Board ---

    def get_user_quest(self, workspace_id: str, user_id: str) -> Dict[str, List[Dict[str, Any]]]:
        """The caller's quest list grouped by status (all five keys present)."""
        with _conn() as conn:
            member = get_member(conn, workspace_id, user_id)
            if member is None or not member["is_verified"]:
                raise NotFoundError("User not found in workspace")
            return self._board(conn, workspace_id, user_id)

    def get_mentee_quest(self, workspace_id: str, actor_id: str, mentee_id: str) -> Dict[str, List[Dict[str, Any]]]:
        with _conn() as conn:
            require_member(conn, workspace_id, actor_id, roles=("admin", "mentor"))
            if get_member(conn, workspace_id, mentee_id) is None:
                raise NotFoundError("User not found in workspace")
            return self._board(conn, workspace_id, mentee_id)

    # --- Status changes ---

    def change_task_status(
        self, workspace_id: str, user_id: str, task_id: str, new_status: Any,
    ) -> Dict[str, Any]:
        """Self-service move. Only In Progress and In Review are allowed here."""
        if new_status not in SELF_SERVICE_STATUSES:
            raise ValidationError("Status must be one of: " + ", ".join(SELF_SERVICE_STATUSES))
        with _conn() as conn:
            require_member(conn, workspace_id, user_id)
            entry = self._entry(conn, workspace_id, user_id, task_id)
            conn.execute(
                "UPDATE quest_entries SET status = ?, updated_at = ? WHERE id = ?",
                (new_status, _now(), entry["id"]),
            )
            return self._entry(conn, workspace_id, user_id, task_id)

    def mentor_change_task_status(
        self, workspace_id: str, actor_id: str, mentee_id: str, task_id: str, new_status: Any,
    ) -> Dict[str, Any]:
        """Set any status on a member's entry.

        The first move to Done adds the task's stars to the member; the entry
        remembers the award so a repeated Done does not pay out again.
        """
        require_choice(new_status, QUEST_STATUSES, "status")
        with _conn() as conn:
            require_member(conn, workspace_id, actor_id, roles=("admin", "mentor"))
            target = get_member(conn, workspace_id, mentee_id)
            if target is None or target["role"] != "mentee":
                raise NotFoundError("Mentee not found in workspace")
            entry = self._entry(conn, workspace_id, mentee_id, task_id)
            awarded = 0
            if new_status == "Done" and not entry["stars_awarded"]:
                awarded = entry["stars_earned"]
                conn.execute(
                    "UPDATE workspace_members SET stars = stars + ? WHERE workspace_id = ? AND user_id = ?",
                    (awarded, workspace_id, mentee_id),
                )
                conn.execute("UPDATE quest_entries SET stars_awarded = 1 WHERE id = ?", (entry["id"],))
            conn.execute(
                "UPDATE quest_entries SET status = ?, updated_at = ? WHERE id = ?",
                (new_status, _now(), entry["id"]),
            )
            updated = self._entry(conn, workspace_id, mentee_id, task_id)
            updated["stars"] = get_member(conn, workspace_id, mentee_id)["stars"]
        updated["stars_added"] = awarded
        if awarded:
            log.info("%s earned %d star(s) for task %s in %s", mentee_id, awarded, task_id, workspace_id)
        return updated

    # --- Comments ---

    def add_comment(
        self, workspace_id: str, actor_id: str, task_id: str, content: Any,
        mentee_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Comment on the caller's own entry, or on a mentee's when ``mentee_id`` is given."""
        text = require_text({"content": content}, "content", "Comment content")
        owner_id = mentee_id or actor_id
        with _conn() as conn:
            if owner_id != actor_id:
                require_member(conn, workspace_id, actor_id, roles=("admin", "mentor"))
            else:
                require_member(conn, workspace_id, actor_id)
            entry = self._entry(conn, workspace_id, owner_id, task_id)
            comment = {
                "id": _id(),
                "entry_id": entry["id"],
                "user_id": actor_id,
                "content": text,
                "created_at": _now(),
            }
            conn.execute(
                "INSERT INTO quest_comments (id, entry_id, user_id, content, created_at) VALUES (?, ?, ?, ?, ?)",
                (comment["id"], comment["entry_id"], actor_id, text, comment["created_at"]),
            )
        return comment

    # --- Internal helpers ---

    def _entry(self, conn: sqlite3.Connection, workspace_id: str, user_id: str, task_id: str) -> Dict[str, Any]:
        row = conn.execute(
            """SELECT q.*, t.title, t.description, t.category, t.stars_earned, t.link
               FROM quest_entries q JOIN tasks t ON t.id = q.task_id
               WHERE q.workspace_id = ? AND q.user_id = ? AND q.task_id = ?""",
            (workspace_id, user_id, task_id),
        ).fetchone()
        if row is None:
            raise NotFoundError("Task not found in the user's quest")
        return dict(row)

    def _board(self, conn: sqlite3.Connection, workspace_id: str, user_id: str) -> Dict[str, List[Dict[str, Any]]]:
        rows = conn.execute(
            """SELECT q.id, q.task_id, q.status, q.source, q.stars_awarded, q.created_at, q.updated_at,
                      t.title, t.description, t.category, t.stars_earned, t.link
               FROM quest_entries q JOIN tasks t ON t.id = q.task_id
               WHERE q.workspace_id = ? AND q.user_id = ?
               ORDER BY q.created_at, q.rowid""",
            (workspace_id, user_id),
        ).fetchall()
        comments: Dict[str, List[Dict[str, Any]]] = {}
        for c in conn.execute(
            """SELECT c.*, u.first_name, u.last_name
               FROM quest_comments c
               JOIN quest_entries q ON q.id = c.entry_id
               LEFT JOIN users u ON u.id = c.user_id
               WHERE q.workspace_id = ? AND q.user_id = ?
               ORDER BY c.created_at, c.rowid""",
            (workspace_id, user_id),
        ).fetchall():
            d = dict(c)
            d["author"] = f"{d.pop('first_name') or ''} {d.pop('last_name') or ''}".strip()
            comments.setdefault(d["entry_id"], []).append(d)

        board: Dict[str, List[Dict[str, Any]]] = {s: [] for s in QUEST_STATUSES}
        for r in rows:
            entry = dict(r)
            entry["comments"] = comments.get(entry["id"], [])
            board[entry["status"]].append(entry)
        return board
