"""Task fan-out: keep every mentee's quest list consistent with the backlog.

All functions take an open connection so callers can run them inside the
same transaction as the mutation that triggered them. Every operation is a
reconcile (compute the target set, insert what is missing, drop what no
longer matches), so re-running one is harmless.

Targeting rules for a backlog task:
  personal task  -> its owner, if that mentee's (position, planet) is one of
                    the task's pairs
  global task    -> every verified mentee of the workspace
  otherwise      -> every verified mentee whose (position, planet) is in
                    task.positions x task.planets

Entries created by manual assignment (source = 'manual') are never removed
by reconciliation.
"""
from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, Set

from .common import _id, _now

log = logging.getLogger("starquest.fanout")

_MATCHES_PAIR = """
    EXISTS (SELECT 1 FROM task_positions tp WHERE tp.task_id = t.id AND tp.position_id = m.position_id)
    AND EXISTS (SELECT 1 FROM task_planets tl WHERE tl.task_id = t.id AND tl.planet = m.planet)
"""

# A (task t, member m) pair is a target when this holds.
_TARGET_CONDITION = f"""
    m.workspace_id = t.workspace_id
    AND m.role = 'mentee'
    AND m.is_verified = 1
    AND (
        (t.user_id IS NULL AND t.is_global = 1)
        OR (t.user_id IS NULL AND {_MATCHES_PAIR})
        OR (t.user_id = m.user_id AND {_MATCHES_PAIR})
    )
"""


def task_targets(conn: sqlite3.Connection, task_id: str) -> Set[str]:
    rows = conn.execute(
        f"""SELECT m.user_id FROM tasks t, workspace_members m
            WHERE t.id = ? AND {_TARGET_CONDITION}""",
        (task_id,),
    ).fetchall()
    return {r["user_id"] for r in rows}


def member_targets(conn: sqlite3.Connection, workspace_id: str, user_id: str) -> Set[str]:
    """Backlog task ids that should be in this member's quest list."""
    rows = conn.execute(
        f"""SELECT t.id FROM tasks t, workspace_members m
            WHERE m.workspace_id = ? AND m.user_id = ? AND {_TARGET_CONDITION}""",
        (workspace_id, user_id),
    ).fetchall()
    return {r["id"] for r in rows}


def insert_entry(
    conn: sqlite3.Connection, workspace_id: str, user_id: str, task_id: str,
    source: str = "fanout",
) -> bool:
    """Add a Backlog entry; returns False when the member already holds the task."""
    now = _now()
    cursor = conn.execute(
        """INSERT OR IGNORE INTO quest_entries
           (id, workspace_id, user_id, task_id, status, source, stars_awarded, created_at, updated_at)
           VALUES (?, ?, ?, ?, 'Backlog', ?, 0, ?, ?)""",
        (_id(), workspace_id, user_id, task_id, source, now, now),
    )
    return cursor.rowcount > 0


def reconcile_task(conn: sqlite3.Connection, task_id: str) -> Dict[str, int]:
    """Bring every member's quest list in line with one backlog task."""
    task = conn.execute("SELECT id, workspace_id FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if task is None:
        return {"added": 0, "removed": 0}
    workspace_id = task["workspace_id"]

    targets = task_targets(conn, task_id)
    current = {
        r["user_id"]: r["source"]
        for r in conn.execute(
            "SELECT user_id, source FROM quest_entries WHERE task_id = ?", (task_id,)
        ).fetchall()
    }

    added = 0
    for user_id in sorted(targets - current.keys()):
        if insert_entry(conn, workspace_id, user_id, task_id):
            added += 1

    stale = [uid for uid, source in current.items() if source == "fanout" and uid not in targets]
    for user_id in stale:
        conn.execute(
            "DELETE FROM quest_entries WHERE task_id = ? AND user_id = ? AND source = 'fanout'",
            (task_id, user_id),
        )

    if added or stale:
        log.info("Task %s fan-out: +%d / -%d quest entries", task_id, added, len(stale))
    return {"added": added, "removed": len(stale)}


def reconcile_member(conn: sqlite3.Connection, workspace_id: str, user_id: str) -> Dict[str, int]:
    """Bring one member's quest list in line with the whole backlog.

    Used when a member joins (nothing to remove then) and when their role,
    position or planet changes.
    """
    wanted = member_targets(conn, workspace_id, user_id)
    current = {
        r["task_id"]: r["source"]
        for r in conn.execute(
            "SELECT task_id, source FROM quest_entries WHERE workspace_id = ? AND user_id = ?",
            (workspace_id, user_id),
        ).fetchall()
    }

    added = 0
    for task_id in sorted(wanted - current.keys()):
        if insert_entry(conn, workspace_id, user_id, task_id):
            added += 1

    stale = [tid for tid, source in current.items() if source == "fanout" and tid not in wanted]
    for task_id in stale:
        conn.execute(
            """DELETE FROM quest_entries
               WHERE workspace_id = ? AND user_id = ? AND task_id = ? AND source = 'fanout'""",
            (workspace_id, user_id, task_id),
        )

    if added or stale:
        log.info("Member %s in %s fan-out: +%d / -%d quest entries",
                 user_id, workspace_id, added, len(stale))
    return {"added": added, "removed": len(stale)}


def reconcile_workspace(conn: sqlite3.Connection, workspace_id: str) -> Dict[str, Any]:
    """Re-run the task reconcile for the whole backlog of a workspace."""
    totals = {"tasks": 0, "added": 0, "removed": 0}
    rows = conn.execute("SELECT id FROM tasks WHERE workspace_id = ?", (workspace_id,)).fetchall()
    for r in rows:
        result = reconcile_task(conn, r["id"])
        totals["tasks"] += 1
        totals["added"] += result["added"]
        totals["removed"] += result["removed"]
    return totals
