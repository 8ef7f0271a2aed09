"""Tests for daily/weekly check-ins, custom workspace reports and the dashboard."""
from __future__ import annotations

from datetime import date, datetime

import pytest

from backend.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError

TUESDAY = date(2024, 5, 7)
FRIDAY = date(2024, 5, 10)


def _daily(**overrides):
    data = {
        "wakeupTime": "06:30",
        "mood": {"startOfDay": 3},
        "morningRoutine": {"routine": "Run and stretch"},
        "dailyGoals": [{"description": "Read"}, {"description": "Code"}, {"description": "Review"}],
        "expectedActivity": [{"duration": 90, "category": "learning"}],
    }
    data.update(overrides)
    return data


def _end_of_day(completed=True, actual=None, mood=5):
    return {
        "mood": {"endOfDay": mood},
        "morningRoutine": {"completed": completed},
        "dailyGoals": [
            {"description": "Read", "completed": completed},
            {"description": "Code", "completed": completed},
            {"description": "Review", "completed": completed},
        ],
        "actualActivity": actual or [],
    }


def _weekly(**overrides):
    detail = {"status": True, "details": "Went fine"}
    data = {
        "moodRating": 4,
        "moodExplanation": "Good week",
        "maintainWeeklyRoutine": detail,
        "freeTime": detail,
        "learningGoalAchievement": detail,
        "mentorInteraction": detail,
        "supportInteraction": {"status": False, "details": "Not needed"},
        "achievedGoals": {"goals": ["Finished chapter 3"], "shared": True},
        "significantEvent": "Hackathon",
    }
    data.update(overrides)
    return data


# ===========================================================================
# Daily reports
# ===========================================================================

class TestDaily:
    def _store(self):
        from backend.quest.reports import DailyReportStore
        return DailyReportStore()

    def test_submit(self, make_user):
        uid = make_user("a@x.com")
        report = self._store().submit(uid, _daily(), today=TUESDAY)
        assert report["report_date"] == "2024-05-07"
        assert report["mood_start"] == 3
        assert report["mood_end"] == 3
        assert report["routine_completed"] is False
        assert [g["completed"] for g in report["daily_goals"]] == [False, False, False]
        assert report["actual_activity"] == []

    def test_one_per_day(self, make_user):
        uid = make_user("a@x.com")
        store = self._store()
        store.submit(uid, _daily(), today=TUESDAY)
        with pytest.raises(ConflictError):
            store.submit(uid, _daily(), today=TUESDAY)
        store.submit(uid, _daily(date="2024-05-08"), today=TUESDAY)
        assert len(store.list_for_user(uid)) == 2

    @pytest.mark.parametrize("goals", [[], [{"description": "a"}] * 2, [{"description": "a"}] * 6])
    def test_goal_count(self, make_user, goals):
        uid = make_user("a@x.com")
        with pytest.raises(ValidationError, match="between 3 to 5"):
            self._store().submit(uid, _daily(dailyGoals=goals), today=TUESDAY)

    @pytest.mark.parametrize("wakeup", ["6.30", "24:00", "07:60", ""])
    def test_wakeup_format(self, make_user, wakeup):
        uid = make_user("a@x.com")
        with pytest.raises(ValidationError, match="HH:mm"):
            self._store().submit(uid, _daily(wakeupTime=wakeup), today=TUESDAY)

    def test_unknown_activity_category(self, make_user):
        uid = make_user("a@x.com")
        with pytest.raises(ValidationError):
            self._store().submit(uid, _daily(expectedActivity=[{"duration": 10, "category": "gaming"}]), today=TUESDAY)

    def test_end_of_day(self, make_user):
        uid = make_user("a@x.com")
        store = self._store()
        report = store.submit(uid, _daily(), today=TUESDAY)
        done = store.submit_end_of_day(report["id"], uid, _end_of_day(
            actual=[{"duration": 45, "category": "project"}],
        ))
        assert done["mood_end"] == 5
        assert done["routine_completed"] is True
        assert all(g["completed"] for g in done["daily_goals"])
        assert done["actual_activity"] == [{"duration": 45, "category": "project"}]

    def test_get_own_report(self, make_user):
        uid = make_user("a@x.com")
        other = make_user("b@x.com")
        store = self._store()
        report = store.submit(uid, _daily(), today=TUESDAY)
        assert store.get(report["id"], uid)["routine"] == "Run and stretch"
        with pytest.raises(NotFoundError):
            store.get(report["id"], other)
        with pytest.raises(NotFoundError):
            store.get("missing", uid)

    def test_update_and_ownership(self, make_user):
        uid = make_user("a@x.com")
        other = make_user("b@x.com")
        store = self._store()
        report = store.submit(uid, _daily(), today=TUESDAY)
        updated = store.update(report["id"], uid, {"wakeupTime": "07:15"})
        assert updated["wakeup_time"] == "07:15"
        with pytest.raises(NotFoundError):
            store.update(report["id"], other, {"wakeupTime": "07:15"})


# ===========================================================================
# Weekly reports
# ===========================================================================

class TestWeekly:
    def _store(self):
        from backend.quest.reports import WeeklyReportStore
        return WeeklyReportStore()

    def test_week_start_is_sunday(self):
        from backend.quest.reports import week_start
        assert week_start(TUESDAY) == date(2024, 5, 5)
        assert week_start(date(2024, 5, 5)) == date(2024, 5, 5)
        assert week_start(date(2024, 5, 11)) == date(2024, 5, 5)

    def test_create(self, make_user):
        uid = make_user("a@x.com")
        report = self._store().create(uid, _weekly(), today=TUESDAY)
        assert report["week_start"] == "2024-05-05"
        assert report["mood_rating"] == 4
        assert report["achievedGoals"] == {"goals": ["Finished chapter 3"], "shared": True}
        assert report["significantEvent"] == "Hackathon"
        assert report["openQuestions"] == ""

    def test_only_tuesday_to_thursday(self, make_user):
        uid = make_user("a@x.com")
        with pytest.raises(ValidationError):
            self._store().create(uid, _weekly(), today=FRIDAY)

    def test_one_per_week(self, make_user):
        uid = make_user("a@x.com")
        store = self._store()
        store.create(uid, _weekly(), today=TUESDAY)
        with pytest.raises(ConflictError):
            store.create(uid, _weekly(), today=date(2024, 5, 9))
        store.create(uid, _weekly(), today=date(2024, 5, 14))
        assert [r["week_start"] for r in store.list_for_user(uid)] == ["2024-05-12", "2024-05-05"]

    def test_mood_rating_range(self, make_user):
        uid = make_user("a@x.com")
        with pytest.raises(ValidationError):
            self._store().create(uid, _weekly(moodRating=6), today=TUESDAY)

    def test_mood_rating_whole_number(self, make_user):
        uid = make_user("a@x.com")
        store = self._store()
        with pytest.raises(ValidationError, match="whole number"):
            store.create(uid, _weekly(moodRating=2.5), today=TUESDAY)
        report = store.create(uid, _weekly(moodRating=3.0), today=TUESDAY)
        assert report["mood_rating"] == 3
        with pytest.raises(ValidationError, match="whole number"):
            store.update(report["id"], uid, {"moodRating": 4.5})

    def test_get_own_report(self, make_user):
        uid = make_user("a@x.com")
        other = make_user("b@x.com")
        store = self._store()
        report = store.create(uid, _weekly(), today=TUESDAY)
        assert store.get(report["id"], uid)["moodExplanation"] == "Good week"
        with pytest.raises(NotFoundError):
            store.get(report["id"], other)

    def test_missing_detail(self, make_user):
        uid = make_user("a@x.com")
        with pytest.raises(ValidationError):
            self._store().create(uid, _weekly(freeTime={"status": True, "details": ""}), today=TUESDAY)

    def test_partial_update(self, make_user):
        uid = make_user("a@x.com")
        store = self._store()
        report = store.create(uid, _weekly(), today=TUESDAY)
        updated = store.update(report["id"], uid, {"moodRating": 2, "openQuestions": "Deploy flow?"})
        assert updated["mood_rating"] == 2
        assert updated["openQuestions"] == "Deploy flow?"
        assert updated["moodExplanation"] == "Good week"


# ===========================================================================
# Custom workspace reports
# ===========================================================================

@pytest.fixture
def crew(make_user, add_member):
    from backend.quest.directory import WorkspaceStore
    admin = make_user("admin@x.com")
    ws = WorkspaceStore().create_workspace(admin, "Crew")
    mentee = make_user("mentee@x.com", first_name="Mia", last_name="Mentee")
    add_member(ws["id"], mentee, "mentee")
    return {"ws": ws["id"], "admin": admin, "mentee": mentee}


def _report_body(schedule, **overrides):
    data = {
        "reportName": "Standup",
        "description": "What did you do",
        "fields": [{"fieldName": "Hours coded", "expected": "4"}, {"fieldName": "Blockers"}],
        "schedule": schedule,
    }
    data.update(overrides)
    return data


class TestWorkspaceReports:
    def _store(self):
        from backend.quest.reports import WorkspaceReportStore
        return WorkspaceReportStore()

    def _answers(self):
        return {"fields": [{"fieldName": "Hours coded", "actual": "5"}, {"fieldName": "Blockers", "actual": "none"}]}

    def test_create_and_list(self, crew):
        store = self._store()
        report = store.create(crew["ws"], crew["admin"], _report_body({"frequency": "always"}))
        assert report["schedule"] == {"frequency": "always", "specificDays": [], "timesPerDay": 1}
        assert [r["id"] for r in store.list_for_workspace(crew["ws"], crew["mentee"])] == [report["id"]]

    def test_mentee_cannot_create(self, crew):
        with pytest.raises(ForbiddenError):
            self._store().create(crew["ws"], crew["mentee"], _report_body({"frequency": "always"}))

    def test_require_expected(self, crew):
        with pytest.raises(ValidationError):
            self._store().create(crew["ws"], crew["admin"], _report_body({"frequency": "always"}, requireExpected=True))

    def test_bad_schedule(self, crew):
        store = self._store()
        with pytest.raises(ValidationError):
            store.create(crew["ws"], crew["admin"], _report_body({"frequency": "hourly"}))
        with pytest.raises(ValidationError):
            store.create(crew["ws"], crew["admin"], _report_body({"frequency": "specific_days"}))

    def test_submit_records_expected(self, crew):
        store = self._store()
        report = store.create(crew["ws"], crew["admin"], _report_body({"frequency": "always"}))
        sub = store.submit(report["id"], crew["mentee"], self._answers(), now=datetime(2024, 5, 7, 9))
        assert sub["fields"][0] == {"fieldName": "Hours coded", "expected": "4", "actual": "5"}

        listed = store.list_submissions(report["id"], crew["admin"])
        assert listed[0]["user_name"] == "Mia Mentee"
        mine = store.list_my_submissions(crew["ws"], crew["mentee"])
        assert mine[0]["report_name"] == "Standup"
        with pytest.raises(ForbiddenError):
            store.list_submissions(report["id"], crew["mentee"])

    def test_submit_unknown_or_missing_field(self, crew):
        store = self._store()
        report = store.create(crew["ws"], crew["admin"], _report_body({"frequency": "always"}))
        with pytest.raises(ValidationError):
            store.submit(report["id"], crew["mentee"], {"fields": [{"fieldName": "Mood", "actual": "ok"}]})
        with pytest.raises(ValidationError):
            store.submit(report["id"], crew["mentee"], {"fields": [{"fieldName": "Blockers", "actual": "none"}]})

    def test_daily_limit(self, crew):
        store = self._store()
        report = store.create(crew["ws"], crew["admin"], _report_body({"frequency": "daily", "timesPerDay": 2}))
        store.submit(report["id"], crew["mentee"], self._answers(), now=datetime(2024, 5, 7, 9))
        store.submit(report["id"], crew["mentee"], self._answers(), now=datetime(2024, 5, 7, 12))
        with pytest.raises(ConflictError):
            store.submit(report["id"], crew["mentee"], self._answers(), now=datetime(2024, 5, 7, 18))
        store.submit(report["id"], crew["mentee"], self._answers(), now=datetime(2024, 5, 8, 9))

    def test_weekly_limit(self, crew):
        store = self._store()
        report = store.create(crew["ws"], crew["admin"], _report_body({"frequency": "weekly"}))
        store.submit(report["id"], crew["mentee"], self._answers(), now=datetime(2024, 5, 7, 9))
        with pytest.raises(ConflictError):
            store.submit(report["id"], crew["mentee"], self._answers(), now=datetime(2024, 5, 10, 9))
        store.submit(report["id"], crew["mentee"], self._answers(), now=datetime(2024, 5, 12, 9))

    def test_specific_days(self, crew):
        store = self._store()
        report = store.create(crew["ws"], crew["admin"], _report_body(
            {"frequency": "specific_days", "specificDays": ["Monday", "Wednesday"]},
        ))
        with pytest.raises(ValidationError):
            store.submit(report["id"], crew["mentee"], self._answers(), now=datetime(2024, 5, 7, 9))
        store.submit(report["id"], crew["mentee"], self._answers(), now=datetime(2024, 5, 8, 9))

    def test_update_and_delete(self, crew):
        store = self._store()
        report = store.create(crew["ws"], crew["admin"], _report_body({"frequency": "always"}))
        updated = store.update(report["id"], crew["admin"], {"reportName": "Daily standup"})
        assert updated["report_name"] == "Daily standup"
        assert store.delete(report["id"], crew["admin"]) is True
        with pytest.raises(NotFoundError):
            store.get(report["id"], crew["admin"])


# ===========================================================================
# Dashboard
# ===========================================================================

class TestDashboard:
    @pytest.fixture
    def history(self, make_user):
        from backend.quest.reports import DailyReportStore
        store = DailyReportStore()
        uid = make_user("a@x.com")

        first = store.submit(uid, _daily(date="2024-05-06"))
        store.submit_end_of_day(first["id"], uid, _end_of_day(actual=[
            {"duration": 60, "category": "learning"},
            {"duration": 30, "category": "project"},
        ]))
        store.submit(uid, _daily(date="2024-05-07", wakeupTime="08:00", mood={"startOfDay": 4}, expectedActivity=[]))

        march = store.submit(uid, _daily(date="2024-03-12"))
        store.submit_end_of_day(march["id"], uid, _end_of_day(actual=[{"duration": 120, "category": "learning"}]))
        old = store.submit(uid, _daily(date="2023-10-15"))
        store.submit_end_of_day(old["id"], uid, _end_of_day(actual=[{"duration": 600, "category": "networking"}]))
        return uid

    def test_weekly(self, history):
        from backend.quest.dashboard import DashboardService
        data = DashboardService().weekly(history, today=TUESDAY)

        assert data["dashboardStats"] == {
            "averageMood": 4.5,
            "averageWakeupHour": 7.0,
            "morningRoutineSuccessRate": 50.0,
            "goalsAchievedDays": 1,
            "totalDays": 2,
            "averageStudyHoursPerWeek": 0.75,
        }
        assert data["categoryPercentages"] == [
            {"category": "learning", "totalHours": 1.0, "percentage": 66.67},
            {"category": "project", "totalHours": 0.5, "percentage": 33.33},
        ]
        week = date(2024, 5, 6).strftime("%Y-%U")
        assert data["categoryTimeInvestment"] == [
            {"yearWeek": week, "category": "learning", "totalMinutesActual": 60,
             "totalMinutesExpected": 90, "differenceMinutes": -30, "differenceHours": -0.5},
            {"yearWeek": week, "category": "project", "totalMinutesActual": 30,
             "totalMinutesExpected": 0, "differenceMinutes": 30, "differenceHours": 0.5},
        ]

    def test_weekly_empty(self, make_user):
        from backend.quest.dashboard import DashboardService
        uid = make_user("a@x.com")
        data = DashboardService().weekly(uid, today=TUESDAY)
        assert data["dashboardStats"]["totalDays"] == 0
        assert data["categoryPercentages"] == []
        assert data["categoryTimeInvestment"] == []

    def test_monthly(self, history):
        from backend.quest.dashboard import DashboardService
        data = DashboardService().monthly(history, today=date(2024, 5, 20))
        assert data == [
            {"category": "learning", "monthlyStats": [
                {"yearMonth": "2024-03", "totalHours": 2.0, "percentage": 100.0},
                {"yearMonth": "2024-05", "totalHours": 1.0, "percentage": 66.67},
            ]},
            {"category": "project", "monthlyStats": [
                {"yearMonth": "2024-05", "totalHours": 0.5, "percentage": 33.33},
            ]},
        ]
