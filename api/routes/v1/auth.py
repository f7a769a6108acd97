"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register  -- self-service registration (if enabled); 201
  POST /api/v1/auth/login     -- email/password login; returns access + refresh token
  POST /api/v1/auth/refresh   -- rotate a refresh token; returns a new pair
  POST /api/v1/auth/logout    -- revoke a refresh token; 204
  GET  /api/v1/auth/me        -- current account (requires access token)

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  Unknown email and wrong password produce the same 401 body, and every kind
  of bad refresh token produces the same 401 body.
  Cache-Control: no-store on every response that carries tokens.

Handlers are plain `def`: the engine and stores are blocking, so FastAPI runs
them in its threadpool, one request per worker.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import AccountResponse, LoginRequest, RefreshRequest, RegisterRequest, TokenResponse
from auth.accounts import AccountService
from auth.dependencies import get_current_account
from auth.engine import AuthEngine
from auth.errors import InvalidCredentials, InvalidRefreshToken
from auth.models import Account, TokenPair
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/register: public, unless SELF_REGISTRATION_ENABLED=false
# - POST /api/v1/auth/login:    public
# - POST /api/v1/auth/refresh:  public -- the refresh token is the credential
# - POST /api/v1/auth/logout:   public -- the refresh token is the credential
# - GET  /api/v1/auth/me:       requires access token (get_current_account)
router = APIRouter()


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def _unauthorized(exc: InvalidCredentials | InvalidRefreshToken) -> HTTPException:
    return HTTPException(status_code=401, detail={"code": exc.code, "message": exc.message})


def _token_response(request: Request, pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=request.app.state.settings.access_token_ttl_seconds,
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AccountResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> AccountResponse:
    """Create a user-role account.

    Returns 403 when self-registration is disabled, 409 if the email is taken,
    422 if the email or password fails the account policy.
    """
    if not request.app.state.settings.self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    service: AccountService = request.app.state.account_service
    account = service.register(body.email, body.password)
    return AccountResponse.from_account(account)


@limiter.limit(_login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return an access/refresh pair."""
    engine: AuthEngine = request.app.state.auth_engine
    try:
        pair = engine.login(body.email, body.password)
    except InvalidCredentials as exc:
        raise _unauthorized(exc) from exc
    return _token_response(request, pair)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is consumed."""
    engine: AuthEngine = request.app.state.auth_engine
    try:
        pair = engine.refresh(body.refresh_token)
    except InvalidRefreshToken as exc:
        raise _unauthorized(exc) from exc
    return _token_response(request, pair)


@router.post("/auth/logout", status_code=204)
def logout(request: Request, body: RefreshRequest) -> Response:
    """Revoke the refresh session behind the token.

    Logging out a token that is already revoked returns 401, not 204.
    """
    engine: AuthEngine = request.app.state.auth_engine
    try:
        engine.logout(body.refresh_token)
    except InvalidRefreshToken as exc:
        raise _unauthorized(exc) from exc
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=AccountResponse)
def me(current_account: Account = Depends(get_current_account)) -> AccountResponse:
    """Return the account behind the access token."""
    return AccountResponse.from_account(current_account)
