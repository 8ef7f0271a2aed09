"""Reports: personal daily and weekly check-ins, custom workspace reports."""
from __future__ import annotations

import json
import logging
import re
import sqlite3
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from backend.errors import ConflictError, NotFoundError, ValidationError
from backend.settings import ACTIVITY_CATEGORIES, WEEKDAYS

from .common import _conn, _id, _now, require_bool, require_member, require_number, require_text

log = logging.getLogger("starquest.reports")

_HHMM = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")
_GOALS_MSG = "Please provide between 3 to 5 daily goals"

# Weekly reports are open Tuesday..Thursday (date.weekday(): Monday == 0)
WEEKLY_REPORT_DAYS = (1, 2, 3)
SCHEDULE_FREQUENCIES = ("always", "daily", "weekly", "specific_days")


def week_start(day: date) -> date:
    """Sunday that opens the week containing ``day``."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def _parse_day(value: Any) -> date:
    if isinstance(value, str) and len(value) >= 10:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            pass
    raise ValidationError("date must be an ISO date (YYYY-MM-DD)")


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ValidationError(f"{key} is required")
    return value


def _goals(value: Any, with_completed: bool = False) -> List[Dict[str, Any]]:
    if not isinstance(value, list) or not 3 <= len(value) <= 5:
        raise ValidationError(_GOALS_MSG)
    goals = []
    for g in value:
        if not isinstance(g, dict):
            raise ValidationError(_GOALS_MSG)
        description = require_text(g, "description", "Goal description")
        if with_completed or "completed" in g:
            completed = require_bool(g, "completed")
        else:
            completed = False
        goals.append({"description": description, "completed": completed})
    return goals


def _activities(value: Any, label: str) -> List[Dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{label} must be a list")
    out = []
    for a in value:
        if not isinstance(a, dict):
            raise ValidationError(f"{label} entries must be objects")
        duration = require_number(a, "duration", "Activity duration", minimum=0)
        category = a.get("category")
        if category not in ACTIVITY_CATEGORIES:
            raise ValidationError(f"Invalid activity category: {category!r}")
        out.append({"duration": duration, "category": category})
    return out


# =====================================================================
# DAILY REPORTS
# =====================================================================

_DAILY_JSON = ("daily_goals", "expected_activity", "actual_activity")


def _daily_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    d = dict(row)
    for key in _DAILY_JSON:
        d[key] = json.loads(d[key] or "[]")
    d["routine_completed"] = bool(d["routine_completed"])
    return d


class DailyReportStore:

    def submit(self, user_id: str, data: Dict[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
        """Morning check-in; one per user per calendar day."""
        wakeup = data.get("wakeupTime")
        if not isinstance(wakeup, str) or not _HHMM.match(wakeup):
            raise ValidationError("Please provide time in HH:mm format")
        mood = require_number(_section(data, "mood"), "startOfDay", "Start of day mood")
        routine = require_text(_section(data, "morningRoutine"), "routine", "Morning routine")
        goals = _goals(data.get("dailyGoals"))
        expected = _activities(data.get("expectedActivity"), "expectedActivity")
        day = _parse_day(data["date"]) if data.get("date") else (today or date.today())

        report_id = _id()
        now = _now()
        with _conn() as conn:
            exists = conn.execute(
                "SELECT 1 FROM daily_reports WHERE user_id = ? AND report_date = ?",
                (user_id, day.isoformat()),
            ).fetchone()
            if exists:
                raise ConflictError("A report already exists for this user on the specified date")
            try:
                conn.execute(
                    """INSERT INTO daily_reports
                       (id, user_id, report_date, wakeup_time, mood_start, mood_end, routine,
                        routine_completed, daily_goals, expected_activity, actual_activity,
                        created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, '[]', ?, ?)""",
                    (report_id, user_id, day.isoformat(), wakeup, mood, mood, routine,
                     json.dumps(goals), json.dumps(expected), now, now),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError("A report already exists for this user on the specified date") from exc
            return self._get(conn, report_id, user_id)

    def update(self, report_id: str, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        updates: Dict[str, Any] = {}
        if "wakeupTime" in data:
            if not isinstance(data["wakeupTime"], str) or not _HHMM.match(data["wakeupTime"]):
                raise ValidationError("Please provide time in HH:mm format")
            updates["wakeup_time"] = data["wakeupTime"]
        if isinstance(data.get("mood"), dict) and "startOfDay" in data["mood"]:
            updates["mood_start"] = require_number(data["mood"], "startOfDay", "Start of day mood")
        if isinstance(data.get("morningRoutine"), dict) and "routine" in data["morningRoutine"]:
            updates["routine"] = require_text(data["morningRoutine"], "routine", "Morning routine")
        if data.get("dailyGoals"):
            updates["daily_goals"] = json.dumps(_goals(data["dailyGoals"]))
        if "expectedActivity" in data:
            updates["expected_activity"] = json.dumps(_activities(data["expectedActivity"], "expectedActivity"))
        return self._update(report_id, user_id, updates)

    def submit_end_of_day(self, report_id: str, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Evening half: end mood, goal completion, actual activity."""
        updates: Dict[str, Any] = {
            "mood_end": require_number(_section(data, "mood"), "endOfDay", "End of day mood"),
            "daily_goals": json.dumps(_goals(data.get("dailyGoals"), with_completed=True)),
            "actual_activity": json.dumps(_activities(data.get("actualActivity"), "actualActivity")),
        }
        routine = data.get("morningRoutine")
        if isinstance(routine, dict) and "completed" in routine:
            updates["routine_completed"] = int(require_bool(routine, "completed"))
        return self._update(report_id, user_id, updates)

    def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        with _conn() as conn:
            rows = conn.execute(
                "SELECT * FROM daily_reports WHERE user_id = ? ORDER BY report_date DESC, created_at DESC",
                (user_id,),
            ).fetchall()
            return [_daily_from_row(r) for r in rows]

    def get(self, report_id: str, user_id: str) -> Dict[str, Any]:
        """A single report; other users' reports are reported as missing."""
        with _conn() as conn:
            return self._get(conn, report_id, user_id)

    def _update(self, report_id: str, user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        with _conn() as conn:
            self._get(conn, report_id, user_id)
            if updates:
                updates["updated_at"] = _now()
                set_clause = ", ".join(f"{k} = ?" for k in updates)
                conn.execute(
                    f"UPDATE daily_reports SET {set_clause} WHERE id = ?",
                    list(updates.values()) + [report_id],
                )
            return self._get(conn, report_id, user_id)

    def _get(self, conn: sqlite3.Connection, report_id: str, user_id: str) -> Dict[str, Any]:
        row = conn.execute(
            "SELECT * FROM daily_reports WHERE id = ? AND user_id = ?", (report_id, user_id)
        ).fetchone()
        if row is None:
            raise NotFoundError("No report found with that ID")
        return _daily_from_row(row)


# =====================================================================
# WEEKLY REPORTS
# =====================================================================

_STATUS_DETAIL_FIELDS = (
    "maintainWeeklyRoutine", "freeTime", "learningGoalAchievement",
    "mentorInteraction", "supportInteraction",
)
_FREE_TEXT_FIELDS = (
    "significantEvent", "newInterestingLearning", "productProgress",
    "courseChapter", "additionalSupport", "openQuestions",
)


def _status_detail(data: Dict[str, Any], key: str, strict: bool) -> Dict[str, Any]:
    value = _section(data, key)
    status = require_bool(value, "status")
    details = value.get("details")
    if not isinstance(details, str) or (strict and not details.strip()):
        raise ValidationError(f"{key}.details is required")
    return {"status": status, "details": details}


def _weekly_payload(data: Dict[str, Any], partial: bool) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    strict = not partial

    if not partial or "moodExplanation" in data:
        value = data.get("moodExplanation")
        if not isinstance(value, str) or (strict and not value.strip()):
            raise ValidationError("moodExplanation is required")
        payload["moodExplanation"] = value
    for key in _STATUS_DETAIL_FIELDS:
        if not partial or key in data:
            payload[key] = _status_detail(data, key, strict)
    if not partial or "achievedGoals" in data:
        goals = _section(data, "achievedGoals")
        items = goals.get("goals")
        if not isinstance(items, list) or not all(isinstance(g, str) for g in items) or (strict and not items):
            raise ValidationError("achievedGoals.goals must be a non-empty list of strings")
        payload["achievedGoals"] = {"goals": items, "shared": require_bool(goals, "shared")}
    for key in _FREE_TEXT_FIELDS:
        if key in data:
            if not isinstance(data[key], str):
                raise ValidationError(f"{key} must be a string")
            payload[key] = data[key]
        elif not partial:
            payload[key] = ""
    return payload


def _mood_rating(data: Dict[str, Any]) -> int:
    value = require_number(data, "moodRating", "Mood rating", minimum=1, maximum=5)
    if int(value) != value:
        raise ValidationError("Mood rating must be a whole number")
    return int(value)


def _weekly_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    d = dict(row)
    d.update(json.loads(d.pop("payload") or "{}"))
    return d


class WeeklyReportStore:

    def create(self, user_id: str, data: Dict[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
        today = today or date.today()
        if today.weekday() not in WEEKLY_REPORT_DAYS:
            raise ValidationError("Weekly reports can only be created on Tuesday, Wednesday or Thursday")
        rating = _mood_rating(data)
        payload = _weekly_payload(data, partial=False)
        start = week_start(today).isoformat()

        report_id = _id()
        now = _now()
        with _conn() as conn:
            try:
                conn.execute(
                    """INSERT INTO weekly_reports (id, user_id, week_start, mood_rating, payload, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (report_id, user_id, start, rating, json.dumps(payload), now, now),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError("A weekly report has already been created this week.") from exc
            return self._get(conn, report_id, user_id)

    def update(self, report_id: str, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        payload = _weekly_payload(data, partial=True)
        with _conn() as conn:
            current = self._get(conn, report_id, user_id)
            rating = current["mood_rating"]
            if "moodRating" in data:
                rating = _mood_rating(data)
            merged = {k: v for k, v in current.items() if k not in (
                "id", "user_id", "week_start", "mood_rating", "created_at", "updated_at")}
            merged.update(payload)
            conn.execute(
                "UPDATE weekly_reports SET mood_rating = ?, payload = ?, updated_at = ? WHERE id = ?",
                (rating, json.dumps(merged), _now(), report_id),
            )
            return self._get(conn, report_id, user_id)

    def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        with _conn() as conn:
            rows = conn.execute(
                "SELECT * FROM weekly_reports WHERE user_id = ? ORDER BY week_start DESC",
                (user_id,),
            ).fetchall()
            return [_weekly_from_row(r) for r in rows]

    def get(self, report_id: str, user_id: str) -> Dict[str, Any]:
        with _conn() as conn:
            return self._get(conn, report_id, user_id)

    def _get(self, conn: sqlite3.Connection, report_id: str, user_id: str) -> Dict[str, Any]:
        row = conn.execute(
            "SELECT * FROM weekly_reports WHERE id = ? AND user_id = ?", (report_id, user_id)
        ).fetchone()
        if row is None:
            raise NotFoundError("No report found with that ID")
        return _weekly_from_row(row)


# =====================================================================
# CUSTOM WORKSPACE REPORTS
# =====================================================================

def _report_fields(value: Any, require_expected: bool) -> List[Dict[str, Any]]:
    if not isinstance(value, list) or not value:
        raise ValidationError("At least one report field is required")
    fields = []
    for f in value:
        if not isinstance(f, dict):
            raise ValidationError("Report fields must be objects")
        name = require_text(f, "fieldName", "Field name")
        expected = f.get("expected")
        if require_expected and (expected is None or expected == ""):
            raise ValidationError(f"Field '{name}' needs an expected value")
        fields.append({"fieldName": name, "expected": expected})
    return fields


def _schedule(value: Any) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ValidationError("schedule is required")
    frequency = value.get("frequency")
    if frequency not in SCHEDULE_FREQUENCIES:
        raise ValidationError(f"Invalid schedule frequency: {frequency!r}")
    days = value.get("specificDays") or []
    if not isinstance(days, list) or any(d not in WEEKDAYS for d in days):
        raise ValidationError("specificDays must be a list of weekday names")
    if frequency == "specific_days" and not days:
        raise ValidationError("specificDays is required for the specific_days schedule")
    times = value.get("timesPerDay", 1)
    if isinstance(times, bool) or not isinstance(times, int) or times < 1:
        raise ValidationError("timesPerDay must be a positive whole number")
    return {"frequency": frequency, "specificDays": days, "timesPerDay": times}


def _report_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    d = dict(row)
    d["fields"] = json.loads(d["fields"] or "[]")
    d["schedule"] = json.loads(d["schedule"] or "{}")
    d["require_expected"] = bool(d["require_expected"])
    return d


class WorkspaceReportStore:
    """Report templates defined by admins/mentors and submitted by members."""

    def create(self, workspace_id: str, actor_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        name = require_text(data, "reportName", "Report name")
        description = require_text(data, "description", "Description")
        require_expected = require_bool(data, "requireExpected", default=False)
        fields = _report_fields(data.get("fields"), require_expected)
        schedule = _schedule(data.get("schedule"))

        report_id = _id()
        now = _now()
        with _conn() as conn:
            require_member(conn, workspace_id, actor_id, roles=("admin", "mentor"))
            conn.execute(
                """INSERT INTO reports
                   (id, workspace_id, report_name, description, created_by, fields, require_expected,
                    schedule, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (report_id, workspace_id, name, description, actor_id, json.dumps(fields),
                 int(require_expected), json.dumps(schedule), now, now),
            )
            report = self._require(conn, report_id)
        log.info("Report %s created in %s by %s", report_id, workspace_id, actor_id)
        return report

    def get(self, report_id: str, actor_id: str) -> Dict[str, Any]:
        with _conn() as conn:
            report = self._require(conn, report_id)
            require_member(conn, report["workspace_id"], actor_id)
            return report

    def update(self, report_id: str, actor_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        with _conn() as conn:
            report = self._require(conn, report_id)
            require_member(conn, report["workspace_id"], actor_id, roles=("admin", "mentor"))
            updates: Dict[str, Any] = {}
            require_expected = report["require_expected"]
            if "requireExpected" in data:
                require_expected = require_bool(data, "requireExpected")
                updates["require_expected"] = int(require_expected)
            if "reportName" in data:
                updates["report_name"] = require_text(data, "reportName", "Report name")
            if "description" in data:
                updates["description"] = require_text(data, "description", "Description")
            if "fields" in data or "requireExpected" in data:
                updates["fields"] = json.dumps(
                    _report_fields(data.get("fields", report["fields"]), require_expected)
                )
            if "schedule" in data:
                updates["schedule"] = json.dumps(_schedule(data["schedule"]))
            if updates:
                updates["updated_at"] = _now()
                set_clause = ", ".join(f"{k} = ?" for k in updates)
                conn.execute(
                    f"UPDATE reports SET {set_clause} WHERE id = ?", list(updates.values()) + [report_id]
                )
            return self._require(conn, report_id)

    def delete(self, report_id: str, actor_id: str) -> bool:
        with _conn() as conn:
            report = self._require(conn, report_id)
            require_member(conn, report["workspace_id"], actor_id, roles=("admin", "mentor"))
            conn.execute("DELETE FROM reports WHERE id = ?", (report_id,))
        log.info("Report %s deleted by %s", report_id, actor_id)
        return True

    def list_for_workspace(self, workspace_id: str, actor_id: str) -> List[Dict[str, Any]]:
        with _conn() as conn:
            require_member(conn, workspace_id, actor_id)
            rows = conn.execute(
                "SELECT * FROM reports WHERE workspace_id = ? ORDER BY created_at", (workspace_id,)
            ).fetchall()
            return [_report_from_row(r) for r in rows]

    def submit(
        self, report_id: str, user_id: str, data: Dict[str, Any], now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Record one submission, honouring the report's schedule."""
        now = now or datetime.now()
        answers = data.get("fields")
        if not isinstance(answers, list):
            raise ValidationError("fields must be a list")

        with _conn() as conn:
            report = self._require(conn, report_id)
            require_member(conn, report["workspace_id"], user_id)
            by_name = {f["fieldName"]: f for f in report["fields"]}
            submitted = []
            for a in answers:
                if not isinstance(a, dict) or a.get("fieldName") not in by_name:
                    raise ValidationError(f"Unknown report field: {a.get('fieldName') if isinstance(a, dict) else a!r}")
                submitted.append({
                    "fieldName": a["fieldName"],
                    "expected": by_name[a["fieldName"]].get("expected"),
                    "actual": a.get("actual"),
                })
            missing = set(by_name) - {s["fieldName"] for s in submitted}
            if missing:
                raise ValidationError("Missing value for field(s): " + ", ".join(sorted(missing)))

            self._check_schedule(conn, report, user_id, now)
            submission = {
                "id": _id(),
                "report_id": report_id,
                "user_id": user_id,
                "fields": submitted,
                "submitted_at": now.isoformat(),
            }
            conn.execute(
                "INSERT INTO report_submissions (id, report_id, user_id, fields, submitted_at) VALUES (?, ?, ?, ?, ?)",
                (submission["id"], report_id, user_id, json.dumps(submitted), submission["submitted_at"]),
            )
        return submission

    def list_submissions(self, report_id: str, actor_id: str) -> List[Dict[str, Any]]:
        with _conn() as conn:
            report = self._require(conn, report_id)
            require_member(conn, report["workspace_id"], actor_id, roles=("admin", "mentor"))
            rows = conn.execute(
                """SELECT s.*, u.first_name, u.last_name FROM report_submissions s
                   LEFT JOIN users u ON u.id = s.user_id
                   WHERE s.report_id = ? ORDER BY s.submitted_at DESC""",
                (report_id,),
            ).fetchall()
        return [self._submission(r) for r in rows]

    def list_my_submissions(self, workspace_id: str, user_id: str) -> List[Dict[str, Any]]:
        with _conn() as conn:
            require_member(conn, workspace_id, user_id)
            rows = conn.execute(
                """SELECT s.*, r.report_name FROM report_submissions s
                   JOIN reports r ON r.id = s.report_id
                   WHERE r.workspace_id = ? AND s.user_id = ?
                   ORDER BY s.submitted_at DESC""",
                (workspace_id, user_id),
            ).fetchall()
        return [self._submission(r) for r in rows]

    def _check_schedule(self, conn: sqlite3.Connection, report: Dict[str, Any], user_id: str, now: datetime) -> None:
        schedule = report["schedule"]
        frequency = schedule.get("frequency", "always")
        today = now.date()
        if frequency == "daily":
            count = self._count_since(conn, report["id"], user_id, today)
            if count >= schedule.get("timesPerDay", 1):
                raise ConflictError("You have reached today's submission limit for this report")
        elif frequency == "weekly":
            if self._count_since(conn, report["id"], user_id, week_start(today)):
                raise ConflictError("This report has already been submitted this week")
        elif frequency == "specific_days":
            if WEEKDAYS[today.weekday()] not in schedule.get("specificDays", []):
                raise ValidationError("This report cannot be submitted today")

    def _count_since(self, conn: sqlite3.Connection, report_id: str, user_id: str, since: date) -> int:
        row = conn.execute(
            "SELECT COUNT(*) AS cnt FROM report_submissions WHERE report_id = ? AND user_id = ? AND submitted_at >= ?",
            (report_id, user_id, since.isoformat()),
        ).fetchone()
        return row["cnt"]

    def _submission(self, row: sqlite3.Row) -> Dict[str, Any]:
        d = dict(row)
        d["fields"] = json.loads(d["fields"] or "[]")
        if "first_name" in d:
            d["user_name"] = f"{d.pop('first_name') or ''} {d.pop('last_name') or ''}".strip()
        return d

    def _require(self, conn: sqlite3.Connection, report_id: str) -> Dict[str, Any]:
        row = conn.execute("SELECT * FROM reports WHERE id = ?", (report_id,)).fetchone()
        if row is None:
            raise NotFoundError("Report not found")
        return _report_from_row(row)
