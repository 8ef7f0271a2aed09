from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from webapp.auth.accounts import AccountService
from webapp.auth.identity import TokenService
from webapp.auth.user_store import UserRecord

from .helpers import _uid, current_user, ok, read_body

log = logging.getLogger("starquest.api.auth")

router = APIRouter(prefix="/api/auth", tags=["auth"])

# Module-level references (injected via init())
_accounts: Optional[AccountService] = None
_tokens: Optional[TokenService] = None


def init(accounts: AccountService, tokens: TokenService) -> None:
    global _accounts, _tokens
    _accounts = accounts
    _tokens = tokens


def _signed_in(user: UserRecord, status_code: int = 200, message: Optional[str] = None) -> JSONResponse:
    assert _tokens
    token = _tokens.sign(user.user_id)
    response = ok({"user": user.public()}, message=message, status_code=status_code)
    _tokens.set_cookie(response, token)
    return response


@router.post("/signup")
async def signup(request: Request) -> JSONResponse:
    assert _accounts
    body = await read_body(request)
    user = _accounts.signup(body)
    return _signed_in(user, status_code=201)


@router.post("/login")
async def login(request: Request) -> JSONResponse:
    assert _accounts
    body = await read_body(request)
    user = _accounts.login(body.get("email"), body.get("password"))
    log.info("User %s logged in", user.user_id)
    return _signed_in(user)


@router.api_route("/logout", methods=["GET", "POST"])
def logout(request: Request) -> JSONResponse:
    assert _tokens
    response = ok()
    _tokens.clear_cookie(response)
    return response


@router.post("/verifyEmail")
async def verify_email(request: Request) -> JSONResponse:
    assert _accounts
    body = await read_body(request)
    user = _accounts.verify_email(body.get("email"), body.get("code"))
    return ok({"user": user.public()}, message="Email verified")


@router.post("/resendVerification")
def resend_verification(request: Request) -> JSONResponse:
    assert _accounts
    user = current_user(request)
    _accounts.send_verification_code(user)
    return ok(message="Verification code sent to email!")


@router.post("/forgotPassword")
async def forgot_password(request: Request) -> JSONResponse:
    assert _accounts
    body = await read_body(request)
    _accounts.forgot_password(body.get("email"))
    return ok(message="Token sent to email!")


@router.api_route("/resetPassword/{token}", methods=["POST", "PATCH"])
async def reset_password(token: str, request: Request) -> JSONResponse:
    assert _accounts
    body = await read_body(request)
    user = _accounts.reset_password(token, body.get("password"), body.get("passwordConfirm"))
    return _signed_in(user)


@router.patch("/updateMyPassword")
async def update_my_password(request: Request) -> JSONResponse:
    assert _accounts
    uid = _uid(request)
    body = await read_body(request)
    user = _accounts.update_password(
        uid, body.get("passwordCurrent"), body.get("password"), body.get("passwordConfirm"),
    )
    return _signed_in(user)
