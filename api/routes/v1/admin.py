"""
api/routes/v1/admin.py -- Provisioning routes (tenants, users, accounts, grants).

Routes:
  GET    /admin/tenants                          -- all tenants
  POST   /admin/tenants                          -- create tenant (201)
  GET    /admin/users                            -- users (?tenant_id= filters)
  POST   /admin/users                            -- create user (201)
  POST   /admin/accounts                         -- create account (201)
  POST   /admin/accounts/bulk                    -- CSV upload (tenant_id,number,currency)
  PATCH  /admin/accounts/{account_id}            -- change number and/or currency
  GET    /admin/grants                           -- grants (?user_id= filters)
  PUT    /admin/grants                           -- create or replace a grant
  DELETE /admin/grants/{user_id}/{account_id}    -- revoke (204)

Every route requires the admin role (require_admin -> 403). The store repeats
the check through ledger/policy.py, so a route added here without the
dependency still cannot provision anything.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, UploadFile

from api.limiter import limiter
from api.models import (
    AccountCreate,
    AccountResponse,
    AccountUpdate,
    BulkLoadResponse,
    ErrorDetail,
    GrantRequest,
    GrantResponse,
    TenantCreate,
    TenantResponse,
    UserCreate,
    UserResponse,
)
from auth.dependencies import require_admin
from auth.tokens import hash_password
from core.context import RequestContext
from ledger.ingest import load_accounts, parse_accounts_csv
from ledger.models import AccessGrant, Account, Tenant, User
from ledger.store import LedgerStore

router = APIRouter(prefix="/admin")

_MAX_UPLOAD_BYTES = 1 * 1024 * 1024  # 1 MB


def _unknown_account(number: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail=ErrorDetail(code="account_not_found", message=f"Account {number} not found.").model_dump(),
    )


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


@router.get("/tenants", response_model=list[TenantResponse])
def list_tenants(request: Request, ctx: RequestContext = Depends(require_admin)) -> list[TenantResponse]:
    store: LedgerStore = request.app.state.store
    return [TenantResponse.from_tenant(t) for t in store.list_tenants()]


@limiter.limit("30/minute")
@router.post("/tenants", response_model=TenantResponse, status_code=201)
def create_tenant(
    request: Request,
    body: TenantCreate,
    ctx: RequestContext = Depends(require_admin),
) -> TenantResponse:
    store: LedgerStore = request.app.state.store
    tenant_id = store.create_tenant(Tenant(id=body.id, name=body.name), ctx=ctx)
    return TenantResponse.from_tenant(store.get_tenant(tenant_id))


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    tenant_id: Optional[int] = None,
    ctx: RequestContext = Depends(require_admin),
) -> list[UserResponse]:
    store: LedgerStore = request.app.state.store
    return [UserResponse.from_user(u) for u in store.list_users(tenant_id=tenant_id)]


@limiter.limit("30/minute")
@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    ctx: RequestContext = Depends(require_admin),
) -> UserResponse:
    """Create a user. Without a password the user exists for grants and seeding but cannot log in."""
    store: LedgerStore = request.app.state.store
    user_id = store.create_user(
        User(
            id=body.id,
            login=body.login,
            display_name=body.display_name,
            tenant_id=body.tenant_id,
            role=body.role,
            hashed_password=hash_password(body.password) if body.password else None,
        ),
        ctx=ctx,
    )
    return UserResponse.from_user(store.get_user(user_id))


# ---------------------------------------------------------------------------
# Accounts (bulk route registered before /accounts/{account_id})
# ---------------------------------------------------------------------------


@limiter.limit("30/minute")
@router.post("/accounts", response_model=AccountResponse, status_code=201)
def create_account(
    request: Request,
    body: AccountCreate,
    ctx: RequestContext = Depends(require_admin),
) -> AccountResponse:
    store: LedgerStore = request.app.state.store
    account_id = store.create_account(
        Account(tenant_id=body.tenant_id, number=body.number, currency=body.currency),
        ctx=ctx,
    )
    return AccountResponse.from_account(store.get_account(account_id))


@limiter.limit("5/minute")
@router.post("/accounts/bulk", response_model=BulkLoadResponse)
async def bulk_load_accounts(
    request: Request,
    file: UploadFile,
    ctx: RequestContext = Depends(require_admin),
) -> BulkLoadResponse:
    """Create accounts from a CSV upload with columns tenant_id,number,currency.

    Existing account numbers are skipped. Malformed rows and rows the store
    rejects are reported in errors; the rest of the file still loads.
    """
    # Size guard -- read up to 1 MB + 1 byte; reject if over limit
    raw = await file.read(_MAX_UPLOAD_BYTES + 1)
    if len(raw) > _MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=ErrorDetail(
                code="file_too_large",
                message="Upload must be 1 MB or smaller.",
            ).model_dump(),
        )
    records, errors = parse_accounts_csv(raw.decode("utf-8", errors="replace"))
    store: LedgerStore = request.app.state.store
    summary = load_accounts(store, records, ctx)
    return BulkLoadResponse(
        accounts_created=summary.accounts_created,
        accounts_skipped=summary.accounts_skipped,
        errors=errors + summary.errors,
    )


@limiter.limit("30/minute")
@router.patch("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    request: Request,
    account_id: int,
    body: AccountUpdate,
    ctx: RequestContext = Depends(require_admin),
) -> AccountResponse:
    store: LedgerStore = request.app.state.store
    fields = body.model_dump(exclude_none=True)
    store.update_account(account_id, ctx=ctx, **fields)
    account = store.get_account(account_id)
    if account is None:
        raise _unknown_account(str(account_id))
    return AccountResponse.from_account(account)


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------


@router.get("/grants", response_model=list[GrantResponse])
def list_grants(
    request: Request,
    user_id: Optional[int] = None,
    ctx: RequestContext = Depends(require_admin),
) -> list[GrantResponse]:
    store: LedgerStore = request.app.state.store
    numbers: dict[int, str] = {}
    rows = []
    for g in store.list_grants(user_id=user_id):
        if g.account_id not in numbers:
            account = store.get_account(g.account_id)
            numbers[g.account_id] = account.number if account else ""
        rows.append(
            GrantResponse(
                user_id=g.user_id,
                account_id=g.account_id,
                account=numbers[g.account_id],
                can_mutate=g.can_mutate,
                granted_at=g.granted_at,
            )
        )
    return rows


@limiter.limit("30/minute")
@router.put("/grants", response_model=GrantResponse)
def put_grant(
    request: Request,
    body: GrantRequest,
    ctx: RequestContext = Depends(require_admin),
) -> GrantResponse:
    """Create the grant, or overwrite can_mutate on an existing one."""
    store: LedgerStore = request.app.state.store
    account = store.get_account_by_number(body.account)
    if account is None:
        raise _unknown_account(body.account)
    grant = store.grant_access(
        AccessGrant(user_id=body.user_id, account_id=account.id, can_mutate=body.can_mutate),
        ctx=ctx,
    )
    return GrantResponse(
        user_id=grant.user_id,
        account_id=grant.account_id,
        account=account.number,
        can_mutate=grant.can_mutate,
        granted_at=grant.granted_at,
    )


@limiter.limit("30/minute")
@router.delete("/grants/{user_id}/{account_id}", status_code=204)
def delete_grant(
    request: Request,
    user_id: int,
    account_id: int,
    ctx: RequestContext = Depends(require_admin),
) -> Response:
    """Revoke a grant. Effective for the very next request."""
    store: LedgerStore = request.app.state.store
    if not store.revoke_access(user_id, account_id, ctx=ctx):
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="grant_not_found", message="No such grant.").model_dump(),
        )
    return Response(status_code=204)
