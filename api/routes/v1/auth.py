"""
api/routes/v1/auth.py -- Authentication endpoints.

Routes:
  POST /api/v1/auth/login   -- password login; sets JWT cookie, returns bearer token
  POST /api/v1/auth/logout  -- clears cookie; 200
  GET  /api/v1/auth/me      -- the caller's identity and tenant (requires auth)

Security:
  [H2] POST /login is rate-limited per IP (Settings.login_rate_limit).
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on login responses.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import LoginRequest, LoginResponse, MeResponse
from auth.dependencies import get_current_user
from auth.tokens import authenticate_user, create_access_token, set_auth_cookie
from core.config import get_settings
from ledger.models import User
from ledger.store import LedgerStore

# Auth policy:
# - POST /api/v1/auth/login:   public
# - POST /api/v1/auth/logout:  public -- clearing a cookie needs no prior auth
# - GET  /api/v1/auth/me:      requires auth (get_current_user)
router = APIRouter()


@limiter.limit(get_settings().login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with login and password; set JWT cookie.

    Returns the same generic error for an unknown login and a wrong password
    so the response does not reveal which logins exist.
    """
    store: LedgerStore = request.app.state.store
    user = authenticate_user(store, body.login, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid login or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    expires_in = get_settings().token_expire_seconds
    token = create_access_token(user.id, user.login, user.tenant_id, user.role)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=expires_in,
            login=user.login,
            tenant_id=user.tenant_id,
            role=user.role,
        ).model_dump(),
    )
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout")
async def logout() -> JSONResponse:
    """Clear the JWT cookie and end the session."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(user: User = Depends(get_current_user)) -> MeResponse:
    return MeResponse(
        user_id=user.id,
        login=user.login,
        display_name=user.display_name,
        tenant_id=user.tenant_id,
        role=user.role,
    )
