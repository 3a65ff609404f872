"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token transports are checked in priority order:
  1. JWT cookie ("access_token") -- set by POST /auth/login.
  2. Authorization: Bearer <token> header -- API clients and scripts.

Both converge on the stored User row. The RequestContext handed to route
handlers is built from that row, not from the token claims, so tenant and
role always reflect the directory as it is now.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
get_request_context() turns the user into the per-request RequestContext.
require_admin() raises HTTP 403 unless the context carries the admin role.

Route handlers receive the context as an argument and pass it explicitly to
every store call. Sync dependencies and sync routes run in different worker
threads with copied contextvars, so an ambient binding made here would not
reliably reach the handler; explicit passing has no such gap.

Layer rule: may import from fastapi, core/, auth/ and ledger/; never from api/.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.tokens import decode_access_token
from core.context import RequestContext
from ledger import policy
from ledger.models import User


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request via cookie or Bearer header. Never raises."""
    store = request.app.state.store

    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]

    if not token:
        return None
    payload = decode_access_token(token)
    if not payload:
        return None
    user = store.get_user(payload["user_id"])
    if user is None or not user.is_active:
        return None
    # A token issued for another tenant is stale (user moved or id reused).
    if user.tenant_id != payload["tenant_id"]:
        return None
    return user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated."""
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def get_request_context(user: User = Depends(get_current_user)) -> RequestContext:
    """Build the RequestContext for this request from the authenticated user.

    Use as a FastAPI dependency:
        @router.get("/accounts")
        def route(request: Request, ctx: RequestContext = Depends(get_request_context)): ...
    """
    return RequestContext(tenant_id=user.tenant_id, user_id=user.id, role=user.role)


def require_admin(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
    """Require the admin role. 401 if unauthenticated, 403 otherwise."""
    if not policy.is_admin(ctx):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return ctx
