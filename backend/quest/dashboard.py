"""Dashboard aggregates over a user's daily reports."""
from __future__ import annotations

import json
from collections import defaultdict
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from .common import _conn
from .reports import week_start


def _round(value: float) -> float:
    return round(value, 2)


def _load_reports(user_id: str, first: date, last: date) -> List[Dict[str, Any]]:
    with _conn() as conn:
        rows = conn.execute(
            """SELECT * FROM daily_reports
               WHERE user_id = ? AND report_date >= ? AND report_date <= ?
               ORDER BY report_date""",
            (user_id, first.isoformat(), last.isoformat()),
        ).fetchall()
    reports = []
    for r in rows:
        d = dict(r)
        for key in ("daily_goals", "expected_activity", "actual_activity"):
            d[key] = json.loads(d[key] or "[]")
        d["day"] = date.fromisoformat(d["report_date"])
        reports.append(d)
    return reports


def _year_week(day: date) -> str:
    # Sunday-based week number, same as strftime %U
    return day.strftime("%Y-%U")


def dashboard_stats(reports: List[Dict[str, Any]]) -> Dict[str, Any]:
    total = len(reports)
    if not total:
        return {
            "averageMood": None,
            "averageWakeupHour": None,
            "morningRoutineSuccessRate": 0.0,
            "goalsAchievedDays": 0,
            "totalDays": 0,
            "averageStudyHoursPerWeek": 0.0,
        }
    moods = [r["mood_end"] if r["mood_end"] is not None else r["mood_start"] for r in reports]
    hours = [int(r["wakeup_time"].split(":")[0]) for r in reports]
    routine_days = sum(1 for r in reports if r["routine_completed"])
    goal_days = sum(
        1 for r in reports
        if r["daily_goals"] and all(g.get("completed") for g in r["daily_goals"])
    )
    study_minutes = sum(a["duration"] for r in reports for a in r["actual_activity"])
    return {
        "averageMood": _round(sum(moods) / total),
        "averageWakeupHour": _round(sum(hours) / total),
        "morningRoutineSuccessRate": _round(routine_days * 100 / total),
        "goalsAchievedDays": goal_days,
        "totalDays": total,
        "averageStudyHoursPerWeek": _round(study_minutes / total / 60),
    }


def category_percentages(reports: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    minutes: Dict[str, float] = defaultdict(float)
    for r in reports:
        for a in r["actual_activity"]:
            minutes[a["category"]] += a["duration"]
    overall = sum(minutes.values())
    return [
        {
            "category": category,
            "totalHours": _round(total / 60),
            "percentage": _round(total * 100 / overall) if overall else 0.0,
        }
        for category, total in sorted(minutes.items())
    ]


def category_time_investment(reports: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Actual vs expected minutes per (week, category) where time was logged."""
    actual: Dict[tuple, float] = defaultdict(float)
    expected: Dict[tuple, float] = defaultdict(float)
    for r in reports:
        week = _year_week(r["day"])
        for a in r["actual_activity"]:
            actual[(week, a["category"])] += a["duration"]
        for a in r["expected_activity"]:
            expected[(week, a["category"])] += a["duration"]
    result = []
    for (week, category), spent in sorted(actual.items()):
        planned = expected.get((week, category), 0)
        diff = spent - planned
        result.append({
            "yearWeek": week,
            "category": category,
            "totalMinutesActual": spent,
            "totalMinutesExpected": planned,
            "differenceMinutes": diff,
            "differenceHours": _round(diff / 60),
        })
    return result


class DashboardService:

    def weekly(self, user_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        first = week_start(today or date.today())
        reports = _load_reports(user_id, first, first + timedelta(days=6))
        return {
            "dashboardStats": dashboard_stats(reports),
            "categoryPercentages": category_percentages(reports),
            "categoryTimeInvestment": category_time_investment(reports),
        }

    def monthly(self, user_id: str, today: Optional[date] = None) -> List[Dict[str, Any]]:
        """Hours per category per month for the current month and the six before it."""
        today = today or date.today()
        month = today.month - 6
        year = today.year
        while month < 1:
            month += 12
            year -= 1
        first = date(year, month, 1)
        next_month = date(today.year + today.month // 12, today.month % 12 + 1, 1)
        reports = _load_reports(user_id, first, next_month - timedelta(days=1))

        minutes: Dict[str, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
        month_totals: Dict[str, float] = defaultdict(float)
        for r in reports:
            year_month = r["report_date"][:7]
            for a in r["actual_activity"]:
                minutes[a["category"]][year_month] += a["duration"]
                month_totals[year_month] += a["duration"]

        return [
            {
                "category": category,
                "monthlyStats": [
                    {
                        "yearMonth": ym,
                        "totalHours": _round(total / 60),
                        "percentage": _round(total * 100 / month_totals[ym]) if month_totals[ym] else 0.0,
                    }
                    for ym, total in sorted(per_month.items())
                ],
            }
            for category, per_month in sorted(minutes.items())
        ]
