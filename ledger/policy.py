"""
ledger/policy.py -- Row visibility and mutation rules for the ledger.

Pure functions: no I/O, no ambient state. The store looks up the grant for
(ctx.user_id, account_id) inside its own DB transaction and hands it in,
so the decision and the write that follows see the same grant row.

Rules:
  Account visible      iff account.tenant == ctx.tenant and a grant exists.
  Transaction visible  iff tx.tenant == ctx.tenant and a grant exists on tx.account.
  Insert permitted     iff tenant == ctx.tenant, the account belongs to that
                       tenant, created_by == ctx.user, and the grant carries
                       can_mutate.
  Amend permitted      iff original.created_by == ctx.user, the grant carries
                       can_mutate, and neither tenant nor creator changes.
  Account mutation     admin only, unconditionally denied otherwise.

Default-deny: a missing grant, an anonymous context or a tenant mismatch all
resolve to deny. Every _*_denial() helper returns None only when each
condition has been positively established.

Layer rule: imports from core/ and ledger.models only.
"""

from __future__ import annotations

import logging
from typing import Optional

from core.config import get_settings
from core.context import RequestContext
from core.errors import AccessDenied
from ledger.models import AccessGrant, Account, Transaction

logger = logging.getLogger("ledgerguard.policy")


def is_admin(ctx: RequestContext) -> bool:
    """True only for a bound, non-anonymous context carrying the admin role."""
    return not ctx.is_anonymous and ctx.role == get_settings().admin_role


def _grant_matches(ctx: RequestContext, account_id: int, grant: Optional[AccessGrant]) -> bool:
    return grant is not None and grant.user_id == ctx.user_id and grant.account_id == account_id


# ---------------------------------------------------------------------------
# Read visibility
# ---------------------------------------------------------------------------


def can_read_account(ctx: RequestContext, account: Account, grant: Optional[AccessGrant]) -> bool:
    if ctx.is_anonymous:
        return False
    return account.tenant_id == ctx.tenant_id and _grant_matches(ctx, account.id, grant)


def can_read_transaction(ctx: RequestContext, tx: Transaction, grant: Optional[AccessGrant]) -> bool:
    if ctx.is_anonymous:
        return False
    return tx.tenant_id == ctx.tenant_id and _grant_matches(ctx, tx.account_id, grant)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def _insert_denial(
    ctx: RequestContext,
    tx: Transaction,
    account: Optional[Account],
    grant: Optional[AccessGrant],
) -> Optional[str]:
    if ctx.is_anonymous:
        return "no request context"
    if tx.tenant_id != ctx.tenant_id:
        return f"tenant {tx.tenant_id} does not match context tenant {ctx.tenant_id}"
    # Unknown and foreign accounts are reported the same way.
    if account is None or account.id != tx.account_id or account.tenant_id != tx.tenant_id:
        return f"account {tx.account_id} is not in tenant {tx.tenant_id}"
    if tx.created_by != ctx.user_id:
        return f"created_by {tx.created_by} does not match context user {ctx.user_id}"
    if not _grant_matches(ctx, tx.account_id, grant):
        return f"user {ctx.user_id} holds no grant on account {tx.account_id}"
    if not grant.can_mutate:
        return f"grant for user {ctx.user_id} on account {tx.account_id} is read-only"
    return None


def _amend_denial(
    ctx: RequestContext,
    original: Transaction,
    amended: Transaction,
    grant: Optional[AccessGrant],
) -> Optional[str]:
    if ctx.is_anonymous:
        return "no request context"
    if original.tenant_id != ctx.tenant_id:
        return f"transaction {original.id} is outside context tenant {ctx.tenant_id}"
    if original.created_by != ctx.user_id:
        return f"transaction {original.id} was created by user {original.created_by}"
    if amended.tenant_id != original.tenant_id:
        return "tenant reassignment is not allowed"
    if amended.created_by != original.created_by:
        return "creator reassignment is not allowed"
    if not _grant_matches(ctx, original.account_id, grant):
        return f"user {ctx.user_id} holds no grant on account {original.account_id}"
    if not grant.can_mutate:
        return f"grant for user {ctx.user_id} on account {original.account_id} is read-only"
    return None


def can_insert_transaction(
    ctx: RequestContext,
    tx: Transaction,
    account: Optional[Account],
    grant: Optional[AccessGrant],
) -> bool:
    """Check an insert of tx. account is what tx.account_id resolved to, or None."""
    return _insert_denial(ctx, tx, account, grant) is None


def can_amend_transaction(
    ctx: RequestContext,
    original: Transaction,
    amended: Transaction,
    grant: Optional[AccessGrant],
) -> bool:
    """Check an amendment of original into amended.

    grant is the caller's grant on original.account_id. When the amendment
    moves the entry to another account the store runs require_insert on the
    target account as well, so both ends need a mutate grant.
    """
    return _amend_denial(ctx, original, amended, grant) is None


def can_mutate_account(ctx: RequestContext) -> bool:
    return is_admin(ctx)


# ---------------------------------------------------------------------------
# Raising variants -- used by the store on write paths
# ---------------------------------------------------------------------------


def _deny(ctx: RequestContext, action: str, reason: str) -> AccessDenied:
    logger.warning(
        "Denied %s for tenant=%s user=%s role=%s: %s",
        action,
        ctx.tenant_id,
        ctx.user_id,
        ctx.role,
        reason,
    )
    return AccessDenied(reason)


def require_insert(
    ctx: RequestContext,
    tx: Transaction,
    account: Optional[Account],
    grant: Optional[AccessGrant],
) -> None:
    reason = _insert_denial(ctx, tx, account, grant)
    if reason is not None:
        raise _deny(ctx, "transaction insert", reason)


def require_amend(
    ctx: RequestContext,
    original: Transaction,
    amended: Transaction,
    grant: Optional[AccessGrant],
) -> None:
    reason = _amend_denial(ctx, original, amended, grant)
    if reason is not None:
        raise _deny(ctx, "transaction amend", reason)


def require_admin(ctx: RequestContext, action: str = "provisioning") -> None:
    if not is_admin(ctx):
        raise _deny(ctx, action, "administrative role required")
