"""
core/context.py -- Per-operation identity carrier (tenant, user, role).

The hosting layer (HTTP dependency, CLI command) binds one RequestContext per
logical operation; the store and the policy evaluator read it. The value lives
in a contextvars.ContextVar, so every thread, asyncio task and request handler
sees only its own binding. A new thread starts with no binding at all.

Fail-closed: current() returns NO_ACCESS when nothing is bound. NO_ACCESS
carries -1 for both ids, which matches no tenant and no grant, so an unbound
caller sees zero rows instead of an exception that might be caught and
turned into an allow.

Prefer passing the context explicitly (every store method takes ctx=...).
The ambient binding is the fallback for callers that do not.

Usage:
    with scope(RequestContext(tenant_id=1001, user_id=501, role="user")):
        store.list_visible_transactions()

    token = set(1001, 501, "user")
    try:
        ...
    finally:
        reset(token)

Layer rule: stdlib only.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass

from core.errors import ContextError

NO_ACCESS_ID = -1
NO_ACCESS_ROLE = "none"


@dataclass(frozen=True)
class RequestContext:
    """Ambient identity of one operation."""

    tenant_id: int
    user_id: int
    role: str

    @property
    def is_anonymous(self) -> bool:
        return self.tenant_id == NO_ACCESS_ID or self.user_id == NO_ACCESS_ID


NO_ACCESS = RequestContext(tenant_id=NO_ACCESS_ID, user_id=NO_ACCESS_ID, role=NO_ACCESS_ROLE)

_current: ContextVar[RequestContext | None] = ContextVar("ledgerguard_request_context", default=None)


def set(tenant_id: int, user_id: int, role: str) -> Token:  # noqa: A001 -- mirrors the carrier's public name
    """Bind the identity for the current operation and return a reset token.

    Raises ContextError if an identity is already bound here: an operation
    sets its context exactly once, and a second set() would mean one request
    is about to run under someone else's identity.
    """
    if _current.get() is not None:
        raise ContextError("Request context is already set for this operation.")
    return _current.set(RequestContext(tenant_id=int(tenant_id), user_id=int(user_id), role=str(role)))


def bind(ctx: RequestContext) -> Token:
    """set() for an already-built RequestContext."""
    return set(ctx.tenant_id, ctx.user_id, ctx.role)


def current() -> RequestContext:
    """Return the bound context, or NO_ACCESS when nothing is bound."""
    ctx = _current.get()
    return ctx if ctx is not None else NO_ACCESS


def reset(token: Token) -> None:
    """Restore the binding that was active before the matching set()."""
    _current.reset(token)


def clear() -> None:
    """Drop the binding for the rest of this execution context."""
    _current.set(None)


def resolve(ctx: RequestContext | None) -> RequestContext:
    """Return ctx if given explicitly, else the ambient binding."""
    return ctx if ctx is not None else current()


@contextmanager
def scope(ctx: RequestContext) -> Iterator[RequestContext]:
    """Bind ctx for the duration of the with-block, then always unbind."""
    token = bind(ctx)
    try:
        yield ctx
    finally:
        reset(token)
