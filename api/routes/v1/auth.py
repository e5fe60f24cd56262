"""
api/routes/v1/auth.py -- Registration and session REST endpoints.

Routes:
  POST /api/v1/auth/signup             -- start registration; emails a verification link
  GET  /api/v1/auth/signup/verify      -- consume link token; 302 to the completion page/app
  POST /api/v1/auth/signup/complete    -- set password + profile; account becomes verified
  POST /api/v1/auth/signin             -- password sign-in; returns token pair + user info
  POST /api/v1/auth/google             -- Google ID token sign-in (provisions on first use)
  POST /api/v1/auth/refresh            -- new access token for a live refresh token
  POST /api/v1/auth/signout            -- revoke a refresh token
  GET  /api/v1/auth/me                 -- claims of the presented access token

Security:
  [H2] POST /signin is rate-limited per client IP (SIGNIN_RATE_LIMIT).
  [C1] SessionService.sign_in() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries tokens.

Handlers are plain `def` because the services block on the database; FastAPI
runs them on its threadpool. AuthError subclasses raised by the services are
turned into the error envelope by the handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse

from api.limiter import limiter
from api.models import (
    CompleteSignupRequest,
    GoogleSignInRequest,
    MeResponse,
    MessageResponse,
    RefreshTokenRequest,
    SignInRequest,
    SignInResponse,
    SignupRequest,
    TokenPairResponse,
)
from auth.dependencies import get_current_user
from auth.models import AccessTokenPayload, RegistrationProfile
from auth.registration import RegistrationService
from auth.session import SessionService
from core.config import get_settings

# Auth policy:
# - everything except GET /auth/me is public -- these endpoints ARE the way in
# - GET /auth/me: requires a Bearer access token (get_current_user)
router = APIRouter()

_SIGNIN_LIMIT = get_settings().signin_rate_limit


def _registration(request: Request) -> RegistrationService:
    return request.app.state.registration


def _sessions(request: Request) -> SessionService:
    return request.app.state.sessions


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"  # [M5]


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post("/auth/signup", response_model=MessageResponse, status_code=202)
def initiate_signup(request: Request, body: SignupRequest) -> MessageResponse:
    """Send a verification email. 409 if the email already has a verified account."""
    result = _registration(request).initiate_registration(body.email, body.mobile)
    return MessageResponse(**result)


@router.get("/auth/signup/verify")
def verify_signup(
    request: Request,
    token: str = Query(min_length=1),
    mobile: bool = Query(default=False),
) -> RedirectResponse:
    """Target of the emailed link. Redirects to the web form or the app deep link."""
    url = _registration(request).verify_email(token, mobile)
    resp = RedirectResponse(url, status_code=302)
    _no_store(resp)
    return resp


@router.post("/auth/signup/complete", response_model=MessageResponse)
def complete_signup(request: Request, body: CompleteSignupRequest) -> MessageResponse:
    profile = RegistrationProfile(
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        phone_number=body.phone_number,
        dormitory=body.dormitory,
        building=body.building,
        room=body.room,
    )
    result = _registration(request).complete_registration(body.token, profile)
    return MessageResponse(**result)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/auth/signin", response_model=SignInResponse)
@limiter.limit(_SIGNIN_LIMIT)  # [H2] brute-force mitigation
def signin(request: Request, response: Response, body: SignInRequest) -> SignInResponse:
    """Authenticate with email and password.

    Unknown email and wrong password return the same invalid_credentials
    error to avoid leaking which emails have accounts.
    """
    result = _sessions(request).sign_in(body.email, body.password)
    _no_store(response)
    return SignInResponse.from_result(result)


@router.post("/auth/google", response_model=SignInResponse)
def google_signin(request: Request, response: Response, body: GoogleSignInRequest) -> SignInResponse:
    result = _sessions(request).sign_in_with_google(body.id_token)
    _no_store(response)
    return SignInResponse.from_result(result)


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, response: Response, body: RefreshTokenRequest) -> TokenPairResponse:
    """Exchange a refresh token for a new access token. The refresh token is returned unchanged."""
    pair = _sessions(request).refresh_tokens(body.refresh_token)
    _no_store(response)
    return TokenPairResponse.from_pair(pair)


@router.post("/auth/signout", response_model=MessageResponse)
def signout(request: Request, body: RefreshTokenRequest) -> MessageResponse:
    result = _sessions(request).sign_out(body.refresh_token)
    return MessageResponse(**result)


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: AccessTokenPayload = Depends(get_current_user)) -> MeResponse:
    """Return the identity carried by the presented access token."""
    return MeResponse(id=current_user.id, email=current_user.email, role=current_user.role)
