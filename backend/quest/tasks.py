"""Workspace backlog: task CRUD with fan-out into member quest lists."""
from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from backend.errors import ConflictError, NotFoundError, ValidationError
from backend.settings import PLANETS, QUEST_STATUSES, TASK_CATEGORIES

from . import fanout
from .common import (
    _conn, _id, _now, get_member, optional_text, require_bool, require_choice, require_member,
    require_number, require_text, string_list,
)

log = logging.getLogger("starquest.tasks")

_MANAGERS = ("admin", "mentor")


def task_dict(conn: sqlite3.Connection, task_id: str) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if row is None:
        return None
    task = dict(row)
    task["is_global"] = bool(task["is_global"])
    task["positions"] = [
        dict(r) for r in conn.execute(
            """SELECT p.id, p.name, p.color FROM task_positions tp
               JOIN positions p ON p.id = tp.position_id
               WHERE tp.task_id = ? ORDER BY p.name""",
            (task_id,),
        ).fetchall()
    ]
    present = {
        r["planet"] for r in conn.execute(
            "SELECT planet FROM task_planets WHERE task_id = ?", (task_id,)
        ).fetchall()
    }
    task["planets"] = [p for p in PLANETS if p in present]
    task["assigned_count"] = conn.execute(
        "SELECT COUNT(*) AS cnt FROM quest_entries WHERE task_id = ?", (task_id,)
    ).fetchone()["cnt"]
    return task


def _check_positions(conn: sqlite3.Connection, workspace_id: str, position_ids: List[str]) -> List[str]:
    for pid in position_ids:
        row = conn.execute(
            "SELECT 1 FROM positions WHERE id = ? AND workspace_id = ?", (pid, workspace_id)
        ).fetchone()
        if row is None:
            raise ValidationError(f"Position {pid} does not belong to this workspace")
    return position_ids


def _check_planets(conn: sqlite3.Connection, workspace_id: str, planets: List[str]) -> List[str]:
    available = {
        r["planet"] for r in conn.execute(
            "SELECT planet FROM workspace_planets WHERE workspace_id = ?", (workspace_id,)
        ).fetchall()
    }
    for planet in planets:
        require_choice(planet, PLANETS, "planet name")
        if planet not in available:
            raise ValidationError(f"Planet '{planet}' is not available in this workspace")
    return planets


def _stars(data: Dict[str, Any]) -> int:
    value = require_number(data, "starsEarned", "Stars earned", minimum=0)
    if int(value) != value:
        raise ValidationError("Stars earned must be a whole number")
    return int(value)


class TaskBacklog:

    # --- Create ---

    def create_task(self, workspace_id: str, actor_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Append a task to the backlog and fan it out to matching mentees."""
        fields = self._base_fields(data)
        is_global = require_bool(data, "isGlobal", default=False)
        positions = string_list(data.get("positions"), "positions")
        planets = string_list(data.get("planets", data.get("planet")), "planets")

        with _conn() as conn:
            require_member(conn, workspace_id, actor_id, roles=_MANAGERS)
            _check_positions(conn, workspace_id, positions)
            _check_planets(conn, workspace_id, planets)
            task_id = self._insert(conn, workspace_id, fields, is_global, None, positions, planets)
            result = fanout.reconcile_task(conn, task_id)
            task = task_dict(conn, task_id)
        log.info("Task %s added to %s by %s (%d quest entries)", task_id, workspace_id, actor_id, result["added"])
        return task

    def create_personal_task(self, workspace_id: str, actor_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Backlog task owned by one mentee; only that mentee receives it."""
        fields = self._base_fields(data)
        owner_id = require_text(data, "userId", "User ID")
        positions = string_list(data.get("positions"), "positions")
        planets = string_list(data.get("planets", data.get("planet")), "planets")
        if len(positions) != 1:
            raise ValidationError("A personal task needs exactly one position")
        if not planets:
            raise ValidationError("Planet is required")

        with _conn() as conn:
            require_member(conn, workspace_id, actor_id, roles=_MANAGERS)
            owner = get_member(conn, workspace_id, owner_id)
            if owner is None or owner["role"] != "mentee":
                raise NotFoundError("Mentee not found in workspace")
            _check_positions(conn, workspace_id, positions)
            _check_planets(conn, workspace_id, planets)
            task_id = self._insert(conn, workspace_id, fields, False, owner_id, positions, planets[:1])
            result = fanout.reconcile_task(conn, task_id)
            task = task_dict(conn, task_id)
        if not result["added"]:
            log.warning("Personal task %s: position/planet of %s do not match, nothing assigned",
                        task_id, owner_id)
        return task

    # --- Read ---

    def get_task(self, workspace_id: str, task_id: str, actor_id: str) -> Dict[str, Any]:
        with _conn() as conn:
            require_member(conn, workspace_id, actor_id)
            return self._require_task(conn, workspace_id, task_id)

    def list_tasks(self, workspace_id: str, actor_id: str) -> List[Dict[str, Any]]:
        with _conn() as conn:
            require_member(conn, workspace_id, actor_id, roles=_MANAGERS)
            rows = conn.execute(
                "SELECT id FROM tasks WHERE workspace_id = ? ORDER BY created_at, rowid",
                (workspace_id,),
            ).fetchall()
            return [task_dict(conn, r["id"]) for r in rows]

    # --- Update ---

    def update_task(
        self, workspace_id: str, task_id: str, actor_id: str, data: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Partial update; target changes are applied as add/remove lists.

        Ends with a task reconcile: removed (position, planet) pairs drop the
        task from the matching mentees, added pairs add it, and an isGlobal
        flip adds it everywhere or shrinks back to the explicit target set.
        """
        updates: Dict[str, Any] = {}
        if "title" in data:
            updates["title"] = require_text(data, "title", "Title")
        if "description" in data:
            updates["description"] = require_text(data, "description", "Description")
        if "category" in data:
            updates["category"] = require_choice(data["category"], TASK_CATEGORIES, "category")
        if "starsEarned" in data:
            updates["stars_earned"] = _stars(data)
        if "link" in data:
            updates["link"] = optional_text(data, "link")
        if "isGlobal" in data:
            updates["is_global"] = int(require_bool(data, "isGlobal"))

        new_positions = string_list(data.get("newPositions"), "newPositions")
        new_planets = string_list(data.get("newPlanets"), "newPlanets")
        positions_to_remove = string_list(data.get("positionsToRemove"), "positionsToRemove")
        planets_to_remove = string_list(data.get("planetsToRemove"), "planetsToRemove")

        with _conn() as conn:
            require_member(conn, workspace_id, actor_id, roles=_MANAGERS)
            task = self._require_task(conn, workspace_id, task_id)
            if task["user_id"] and updates.get("is_global"):
                raise ValidationError("A personal task cannot be global")
            _check_positions(conn, workspace_id, new_positions)
            _check_planets(conn, workspace_id, new_planets)

            if positions_to_remove:
                conn.executemany(
                    "DELETE FROM task_positions WHERE task_id = ? AND position_id = ?",
                    [(task_id, p) for p in positions_to_remove],
                )
            if planets_to_remove:
                conn.executemany(
                    "DELETE FROM task_planets WHERE task_id = ? AND planet = ?",
                    [(task_id, p) for p in planets_to_remove],
                )
            conn.executemany(
                "INSERT OR IGNORE INTO task_positions (task_id, position_id) VALUES (?, ?)",
                [(task_id, p) for p in new_positions],
            )
            conn.executemany(
                "INSERT OR IGNORE INTO task_planets (task_id, planet) VALUES (?, ?)",
                [(task_id, p) for p in new_planets],
            )

            updates["updated_at"] = _now()
            set_clause = ", ".join(f"{k} = ?" for k in updates)
            conn.execute(
                f"UPDATE tasks SET {set_clause} WHERE id = ?", list(updates.values()) + [task_id]
            )
            result = fanout.reconcile_task(conn, task_id)
            task = task_dict(conn, task_id)
        task["quest_changes"] = result
        return task

    # --- Delete ---

    def delete_task(self, workspace_id: str, task_id: str, actor_id: str) -> bool:
        """Remove the task from the backlog and from every quest list."""
        with _conn() as conn:
            require_member(conn, workspace_id, actor_id, roles=_MANAGERS)
            self._require_task(conn, workspace_id, task_id)
            removed = conn.execute(
                "DELETE FROM quest_entries WHERE task_id = ?", (task_id,)
            ).rowcount
            conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        log.info("Task %s deleted from %s (%d quest entries removed)", task_id, workspace_id, removed)
        return True

    # --- Manual assignment & progress ---

    def assign_task_to_user(
        self, workspace_id: str, task_id: str, user_id: str, actor_id: str,
    ) -> Dict[str, Any]:
        with _conn() as conn:
            require_member(conn, workspace_id, actor_id, roles=_MANAGERS)
            self._require_task(conn, workspace_id, task_id)
            member = get_member(conn, workspace_id, user_id)
            if member is None or not member["is_verified"]:
                raise NotFoundError("User not found in workspace")
            if not fanout.insert_entry(conn, workspace_id, user_id, task_id, source="manual"):
                raise ConflictError("Task is already assigned to this user")
            row = conn.execute(
                "SELECT * FROM quest_entries WHERE workspace_id = ? AND user_id = ? AND task_id = ?",
                (workspace_id, user_id, task_id),
            ).fetchone()
        return dict(row)

    def user_task_progress(self, workspace_id: str, user_id: str, actor_id: str) -> Dict[str, Any]:
        with _conn() as conn:
            require_member(conn, workspace_id, actor_id, roles=_MANAGERS)
            member = get_member(conn, workspace_id, user_id)
            if member is None:
                raise NotFoundError("User not found in workspace")
            rows = conn.execute(
                """SELECT status, COUNT(*) AS cnt FROM quest_entries
                   WHERE workspace_id = ? AND user_id = ? GROUP BY status""",
                (workspace_id, user_id),
            ).fetchall()
        by_status = {s: 0 for s in QUEST_STATUSES}
        for r in rows:
            by_status[r["status"]] = r["cnt"]
        total = sum(by_status.values())
        return {
            "user_id": user_id,
            "workspace_id": workspace_id,
            "total": total,
            "by_status": by_status,
            "completion": round(by_status["Done"] * 100 / total, 2) if total else 0.0,
            "stars": member["stars"],
        }

    # --- Internal helpers ---

    def _base_fields(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "title": require_text(data, "title", "Title"),
            "description": require_text(data, "description", "Description"),
            "category": require_choice(data.get("category"), TASK_CATEGORIES, "category"),
            "stars_earned": _stars(data),
            "link": optional_text(data, "link"),
        }

    def _insert(
        self, conn, workspace_id: str, fields: Dict[str, Any], is_global: bool,
        owner_id: Optional[str], positions: List[str], planets: List[str],
    ) -> str:
        task_id = _id()
        now = _now()
        conn.execute(
            """INSERT INTO tasks
               (id, workspace_id, title, description, category, stars_earned, is_global,
                user_id, link, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (task_id, workspace_id, fields["title"], fields["description"], fields["category"],
             fields["stars_earned"], int(is_global), owner_id, fields["link"], now, now),
        )
        conn.executemany(
            "INSERT INTO task_positions (task_id, position_id) VALUES (?, ?)",
            [(task_id, p) for p in positions],
        )
        conn.executemany(
            "INSERT INTO task_planets (task_id, planet) VALUES (?, ?)",
            [(task_id, p) for p in planets],
        )
        return task_id

    def _require_task(self, conn, workspace_id: str, task_id: str) -> Dict[str, Any]:
        task = task_dict(conn, task_id)
        if task is None or task["workspace_id"] != workspace_id:
            raise NotFoundError("Task not found")
        return task
