"""
api/routes/v1/accounts.py -- Read-only account listing for the caller's context.

Routes:
  GET /accounts -- accounts in the caller's tenant that the caller holds a grant on

Accounts are created and changed through api/routes/v1/admin.py only. No
route here mutates an account.
"""

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter
from api.models import AccountResponse
from auth.dependencies import get_request_context
from core.context import RequestContext
from ledger.store import LedgerStore

router = APIRouter()


@limiter.limit("60/minute")
@router.get("/accounts", response_model=list[AccountResponse])
def list_accounts(
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
) -> list[AccountResponse]:
    """Return the accounts visible to the caller. Empty when none are."""
    store: LedgerStore = request.app.state.store
    return [AccountResponse.from_account(a) for a in store.list_visible_accounts(ctx)]
