from __future__ import annotations

import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.db.engine import get_system_config, init_db
from backend.errors import AppError, UnauthorizedError
from backend.mailer import Mailer
from backend.quest.dashboard import DashboardService
from backend.quest.directory import WorkspaceStore
from backend.quest.invitations import InvitationService
from backend.quest.reports import DailyReportStore, WeeklyReportStore, WorkspaceReportStore
from backend.quest.tasks import TaskBacklog
from backend.quest.tracking import QuestTracker
from backend.settings import APP_NAME, APP_VERSION
from backend.settings_store import load_settings

from webapp.auth.accounts import AccountService
from webapp.auth.identity import TokenService
from webapp.auth.user_store import UserStore
from webapp.routers import auth as auth_router
from webapp.routers import invitations as invitations_router
from webapp.routers import quests as quests_router
from webapp.routers import reports as reports_router
from webapp.routers import tasks as tasks_router
from webapp.routers import users as users_router
from webapp.routers import workspaces as workspaces_router
from webapp.routers.helpers import ok

SETTINGS = load_settings()

logging.basicConfig(
    level=getattr(logging, str(SETTINGS.log_level).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
log = logging.getLogger("starquest.server")

# ---------- services (one instance each, injected into the routers) ----------

USER_STORE = UserStore()
MAILER = Mailer(sender=SETTINGS.mail_from)
WORKSPACES = WorkspaceStore()
INVITATIONS = InvitationService(MAILER, SETTINGS)
BACKLOG = TaskBacklog()
TRACKER = QuestTracker()
TOKENS = TokenService(SETTINGS, USER_STORE)
ACCOUNTS = AccountService(USER_STORE, WORKSPACES, INVITATIONS, MAILER, SETTINGS)

auth_router.init(ACCOUNTS, TOKENS)
users_router.init(ACCOUNTS, WORKSPACES)
workspaces_router.init(workspace_store=WORKSPACES, invitations=INVITATIONS)
tasks_router.init(backlog=BACKLOG)
invitations_router.init(invitations=INVITATIONS)
quests_router.init(tracker=TRACKER)
reports_router.init(
    daily=DailyReportStore(),
    weekly=WeeklyReportStore(),
    reports=WorkspaceReportStore(),
    dashboard=DashboardService(),
)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    init_db()
    INVITATIONS.expire_stale_invitations()
    log.info("%s %s started (%s)", APP_NAME, APP_VERSION, SETTINGS.environment)
    yield


app = FastAPI(title=APP_NAME, version=APP_VERSION, lifespan=_lifespan)


# ---------- auth ----------

@app.middleware("http")
async def _auth_middleware(request: Request, call_next):
    """Resolve the ``jwt`` cookie into ``request.state.user`` (None when absent or invalid)."""
    request.state.user = None
    token = request.cookies.get(TokenService.COOKIE_NAME)
    if token and token != TokenService.LOGGED_OUT:
        try:
            request.state.user = TOKENS.resolve(token)
        except UnauthorizedError as exc:
            request.state.auth_error = exc.message
    return await call_next(request)


# ---------- errors ----------

@app.exception_handler(AppError)
async def _app_error(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.message)
    else:
        log.info("%s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse({"status": "error", "message": exc.message}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def _request_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse({"status": "error", "message": "Invalid request"}, status_code=400)


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    log.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    if SETTINGS.is_production:
        return JSONResponse({"status": "error", "message": "Something went very wrong!"}, status_code=500)
    return JSONResponse(
        {
            "status": "error",
            "message": str(exc),
            "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        },
        status_code=500,
    )


# ---------- routes ----------

@app.get("/api/health")
def health() -> JSONResponse:
    return ok({"app": APP_NAME, "version": APP_VERSION, "db_version": get_system_config("db_version")})


app.include_router(auth_router.router)
app.include_router(users_router.router)
app.include_router(workspaces_router.router)
app.include_router(tasks_router.router)
app.include_router(invitations_router.router)
app.include_router(quests_router.router)
app.include_router(reports_router.daily_router)
app.include_router(reports_router.weekly_router)
app.include_router(reports_router.router)
app.include_router(reports_router.dashboard_router)
