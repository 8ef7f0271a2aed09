"""API routers for daily reports, weekly reports, custom reports and the dashboard."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from backend.quest.dashboard import DashboardService
from backend.quest.reports import DailyReportStore, WeeklyReportStore, WorkspaceReportStore

from .helpers import _uid, ok, read_body

daily_router = APIRouter(prefix="/api/daily-reports", tags=["reports"])
weekly_router = APIRouter(prefix="/api/weekly-reports", tags=["reports"])
router = APIRouter(prefix="/api/reports", tags=["reports"])
dashboard_router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

_DAILY: Optional[DailyReportStore] = None
_WEEKLY: Optional[WeeklyReportStore] = None
_REPORTS: Optional[WorkspaceReportStore] = None
_DASHBOARD: Optional[DashboardService] = None


def init(
    *,
    daily: DailyReportStore,
    weekly: WeeklyReportStore,
    reports: WorkspaceReportStore,
    dashboard: DashboardService,
) -> None:
    global _DAILY, _WEEKLY, _REPORTS, _DASHBOARD
    _DAILY = daily
    _WEEKLY = weekly
    _REPORTS = reports
    _DASHBOARD = dashboard


# =====================================================================
# DAILY
# =====================================================================

@daily_router.post("")
async def submit_daily(request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    return ok({"report": _DAILY.submit(uid, body)}, status_code=201)


@daily_router.get("/me")
def my_daily(request: Request) -> JSONResponse:
    reports = _DAILY.list_for_user(_uid(request))
    return ok({"reports": reports, "results": len(reports)})


@daily_router.get("/{report_id}")
def get_daily(report_id: str, request: Request) -> JSONResponse:
    return ok({"report": _DAILY.get(report_id, _uid(request))})


@daily_router.patch("/{report_id}")
async def update_daily(report_id: str, request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    return ok({"report": _DAILY.update(report_id, uid, body)})


@daily_router.patch("/{report_id}/end-of-day")
async def end_of_day(report_id: str, request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    return ok({"report": _DAILY.submit_end_of_day(report_id, uid, body)})


# =====================================================================
# WEEKLY
# =====================================================================

@weekly_router.post("")
async def create_weekly(request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    return ok({"report": _WEEKLY.create(uid, body)}, status_code=201)


@weekly_router.get("/me")
def my_weekly(request: Request) -> JSONResponse:
    reports = _WEEKLY.list_for_user(_uid(request))
    return ok({"reports": reports, "results": len(reports)})


@weekly_router.get("/{report_id}")
def get_weekly(report_id: str, request: Request) -> JSONResponse:
    return ok({"report": _WEEKLY.get(report_id, _uid(request))})


@weekly_router.patch("/{report_id}")
async def update_weekly(report_id: str, request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    return ok({"report": _WEEKLY.update(report_id, uid, body)})


# =====================================================================
# CUSTOM WORKSPACE REPORTS
# =====================================================================

@router.post("/workspace/{workspace_id}")
async def create_report(workspace_id: str, request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    return ok({"report": _REPORTS.create(workspace_id, uid, body)}, status_code=201)


@router.get("/workspace/{workspace_id}")
def workspace_reports(workspace_id: str, request: Request) -> JSONResponse:
    return ok({"reports": _REPORTS.list_for_workspace(workspace_id, _uid(request))})


@router.get("/workspace/{workspace_id}/my-submissions")
def my_submissions(workspace_id: str, request: Request) -> JSONResponse:
    return ok({"submissions": _REPORTS.list_my_submissions(workspace_id, _uid(request))})


@router.get("/{report_id}")
def get_report(report_id: str, request: Request) -> JSONResponse:
    return ok({"report": _REPORTS.get(report_id, _uid(request))})


@router.patch("/{report_id}")
async def update_report(report_id: str, request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    return ok({"report": _REPORTS.update(report_id, uid, body)})


@router.delete("/{report_id}")
def delete_report(report_id: str, request: Request) -> Response:
    _REPORTS.delete(report_id, _uid(request))
    return Response(status_code=204)


@router.post("/{report_id}/submit")
async def submit_report(report_id: str, request: Request) -> JSONResponse:
    uid = _uid(request)
    body = await read_body(request)
    return ok({"submission": _REPORTS.submit(report_id, uid, body)}, status_code=201)


@router.get("/{report_id}/submissions")
def report_submissions(report_id: str, request: Request) -> JSONResponse:
    return ok({"submissions": _REPORTS.list_submissions(report_id, _uid(request))})


# =====================================================================
# DASHBOARD
# =====================================================================

@dashboard_router.get("/weekly")
def weekly_dashboard(request: Request) -> JSONResponse:
    return ok(_DASHBOARD.weekly(_uid(request)))


@dashboard_router.get("/monthly")
def monthly_dashboard(request: Request) -> JSONResponse:
    return ok({"categories": _DASHBOARD.monthly(_uid(request))})
