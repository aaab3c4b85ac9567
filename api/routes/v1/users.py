"""
api/routes/v1/users.py -- Registration, login and account recovery endpoints.

Routes (mounted under /api/v1/users):
  POST /register                 -- multipart signup; 201 with userId
  POST /verify-email/{user_id}   -- confirm the registration OTP
  POST /login                    -- password login; sets session cookies
  POST /logout                   -- access token required; retires refresh token
  POST /refresh-token            -- rotate the session from the refresh cookie
  POST /sendOtp                  -- email a login code
  POST /verifyOtp                -- exchange a login code for a session
  GET  /getUser/{user_id}        -- sanitized account lookup
  POST /forgot-password          -- email a reset link
  POST /reset-password           -- set a new password with a reset token

Every handler is a thin adapter: parse input (pydantic does the schema work
before any handler code runs), call CredentialService, wrap the result in the
envelope. Failures raised by the service are CredentialError subclasses and
are turned into envelopes by the handlers in api/main.py.

Security:
  Credential-guessing endpoints are rate-limited per IP
    (Settings.auth_rate_limit, 10/minute by default, read per request).
    @limiter.limit sits directly above the def, under @router.post, so the
    router registers the limited wrapper.
  This module avoids "from __future__ import annotations": FastAPI resolves
    the wrapped handlers' annotations against slowapi's globals, so they
    must be real objects.
  Cache-Control: no-store on every response from this router.
"""

from typing import Annotated, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Path, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import EmailStr

from api.limiter import limiter
from api.models import (
    AccountOut,
    AccountResponse,
    EmailRequest,
    Envelope,
    LoginRequest,
    RegisterResponse,
    ResetPasswordRequest,
    VerifyEmailRequest,
    VerifyOtpRequest,
)
from auth.dependencies import require_session
from auth.models import Account, TokenPair
from auth.service import CredentialService, LogoutOutcome
from auth.tokens import REFRESH_COOKIE, clear_session_cookies, set_session_cookies
from auth.uploads import MAX_IMAGE_SIZE_BYTES
from core.config import get_settings

router = APIRouter()

# SQLite INTEGER is a signed 64-bit value; larger ids cannot match a row.
AccountId = Annotated[int, Path(ge=1, le=2**63 - 1)]


def _auth_rate_limit() -> str:
    return get_settings().auth_rate_limit


def _service(request: Request) -> CredentialService:
    return request.app.state.credentials


def _respond(body: Envelope, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _session_response(account: Account, tokens: TokenPair, message: str) -> JSONResponse:
    resp = _respond(AccountResponse(message=message, user=AccountOut.from_account(account)))
    set_session_cookies(resp, tokens)
    return resp


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post("/register", response_model=RegisterResponse, status_code=201)
def register(
    request: Request,
    fullname: Annotated[str, Form(min_length=1, max_length=255)],
    email: Annotated[EmailStr, Form()],
    username: Annotated[str, Form(min_length=5, max_length=12)],
    password: Annotated[str, Form(min_length=6, max_length=12)],
    background_tasks: BackgroundTasks,
    file: Annotated[Optional[UploadFile], File()] = None,
) -> JSONResponse:
    """Create an account, email the verification code, upload the image in the background.

    Multipart form: fullname, email, username, password and an optional
    "file" part holding the profile image.
    """
    image: Optional[bytes] = None
    if file is not None:
        # One byte past the cap is enough for the service to reject it.
        image = file.file.read(MAX_IMAGE_SIZE_BYTES + 1)
    account_id = _service(request).register(
        fullname=fullname,
        email=email,
        username=username,
        password=password,
        tasks=background_tasks,
        image=image,
        image_filename=file.filename if file is not None else None,
        image_content_type=file.content_type if file is not None else None,
    )
    return _respond(RegisterResponse(message="User registered successfully", user_id=account_id), 201)


@router.post("/verify-email/{user_id}", response_model=Envelope)
def verify_email(request: Request, user_id: AccountId, body: VerifyEmailRequest) -> JSONResponse:
    _service(request).verify_email(user_id, body.otp)
    return _respond(Envelope(message="Email verified successfully"))


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/login", response_model=AccountResponse)
@limiter.limit(_auth_rate_limit)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    account, tokens = _service(request).login(body.username, body.password)
    return _session_response(account, tokens, "User logged in")


@router.post("/logout", response_model=Envelope)
def logout(request: Request, session: dict = Depends(require_session)) -> JSONResponse:
    """Retire the caller's refresh token.

    Missing refresh cookie is not an error: 200 with success=false. A cookie
    that matches no account still gets its cookies cleared.
    """
    outcome = _service(request).logout(request.cookies.get(REFRESH_COOKIE))
    if outcome is LogoutOutcome.NO_TOKEN:
        return _respond(Envelope(success=False, message="No token present"))
    if outcome is LogoutOutcome.UNKNOWN_TOKEN:
        resp = _respond(Envelope(success=False, message="No user present"))
    else:
        resp = _respond(Envelope(message="User logged out successfully"))
    clear_session_cookies(resp)
    return resp


@router.post("/refresh-token", response_model=AccountResponse)
def refresh_token(request: Request) -> JSONResponse:
    account, tokens = _service(request).refresh(request.cookies.get(REFRESH_COOKIE))
    return _session_response(account, tokens, "Session refreshed")


# ---------------------------------------------------------------------------
# OTP login
# ---------------------------------------------------------------------------


@router.post("/sendOtp", response_model=Envelope)
@limiter.limit(_auth_rate_limit)
def send_otp(request: Request, body: EmailRequest, background_tasks: BackgroundTasks) -> JSONResponse:
    _service(request).request_login_code(body.email, tasks=background_tasks)
    return _respond(Envelope(message="OTP sent"))


@router.post("/verifyOtp", response_model=AccountResponse)
@limiter.limit(_auth_rate_limit)
def verify_otp(request: Request, body: VerifyOtpRequest) -> JSONResponse:
    account, tokens = _service(request).verify_login_code(body.email, body.otp)
    return _session_response(account, tokens, "User logged in successfully")


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


@router.get("/getUser/{user_id}", response_model=AccountResponse)
def get_user(request: Request, user_id: AccountId) -> JSONResponse:
    account = _service(request).get_account(user_id)
    return _respond(AccountResponse(message="User fetched successfully", user=AccountOut.from_account(account)))


# ---------------------------------------------------------------------------
# Password recovery
# ---------------------------------------------------------------------------


@router.post("/forgot-password", response_model=Envelope)
@limiter.limit(_auth_rate_limit)
def forgot_password(request: Request, body: EmailRequest, background_tasks: BackgroundTasks) -> JSONResponse:
    _service(request).forgot_password(body.email, tasks=background_tasks)
    return _respond(Envelope(message="Password reset link sent to your email"))


@router.post("/reset-password", response_model=Envelope)
@limiter.limit(_auth_rate_limit)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    _service(request).reset_password(body.token, body.new_password)
    return _respond(Envelope(message="Password has been reset successfully"))
