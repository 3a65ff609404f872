"""
api/routes/v1/transactions.py -- Ledger routes for the LedgerGuard REST API.

Routes (in registration order to avoid FastAPI path capture conflicts):
  GET   /transactions              -- visible transactions (?account= filters)
  POST  /transactions              -- insert; 201, 403 or 422
  GET   /transactions/{tx_id}      -- one visible transaction; 404 when hidden or absent
  PATCH /transactions/{tx_id}      -- amend; 200, 403, 404 or 422

Every handler takes the RequestContext from get_request_context() and passes
it to the store explicitly. AccessDenied and ConstraintViolation raised by the
store are mapped to 403 / 422 by the exception handlers in api/main.py.

Account numbers are resolved with an unfiltered lookup; an unknown number
becomes account id -1, which the policy denies exactly like an account in
another tenant. A client cannot tell the two apart.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from api.limiter import limiter
from api.models import ErrorDetail, TransactionAmend, TransactionCreate, TransactionResponse
from auth.dependencies import get_request_context
from core.context import NO_ACCESS_ID, RequestContext
from ledger.models import Transaction
from ledger.store import LedgerStore

router = APIRouter()


def _account_id_for(store: LedgerStore, number: str) -> int:
    account = store.get_account_by_number(number)
    return account.id if account is not None else NO_ACCESS_ID


def _not_found(tx_id: int) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail=ErrorDetail(
            code="transaction_not_found",
            message=f"Transaction {tx_id} not found.",
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# GET /transactions -- list visible transactions
# ---------------------------------------------------------------------------


@limiter.limit("60/minute")
@router.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    request: Request,
    account: Optional[str] = None,
    ctx: RequestContext = Depends(get_request_context),
) -> list[TransactionResponse]:
    """Return transactions the caller may see, oldest first.

    Query params:
      account -- restrict to one account number
    """
    store: LedgerStore = request.app.state.store
    return [
        TransactionResponse.from_transaction(tx)
        for tx in store.list_visible_transactions(ctx, account_number=account)
    ]


# ---------------------------------------------------------------------------
# POST /transactions -- insert
# ---------------------------------------------------------------------------


@limiter.limit("30/minute")
@router.post("/transactions", response_model=TransactionResponse, status_code=201)
def create_transaction(
    request: Request,
    body: TransactionCreate,
    ctx: RequestContext = Depends(get_request_context),
) -> TransactionResponse:
    """Insert a transaction on an account the caller holds a mutate grant on."""
    store: LedgerStore = request.app.state.store
    tx = Transaction(
        tenant_id=body.tenant_id if body.tenant_id is not None else ctx.tenant_id,
        account_id=_account_id_for(store, body.account),
        kind=body.kind.value,
        amount=body.amount,
        created_by=body.created_by if body.created_by is not None else ctx.user_id,
        occurred_at=body.occurred_at or "",
    )
    stored = store.insert_transaction(tx, ctx)
    return TransactionResponse.from_transaction(stored)


# ---------------------------------------------------------------------------
# GET /transactions/{tx_id}
# ---------------------------------------------------------------------------


@limiter.limit("60/minute")
@router.get("/transactions/{tx_id}", response_model=TransactionResponse)
def get_transaction(
    request: Request,
    tx_id: int,
    ctx: RequestContext = Depends(get_request_context),
) -> TransactionResponse:
    store: LedgerStore = request.app.state.store
    tx = store.get_visible_transaction(tx_id, ctx)
    if tx is None:
        raise _not_found(tx_id)
    return TransactionResponse.from_transaction(tx)


# ---------------------------------------------------------------------------
# PATCH /transactions/{tx_id} -- amend
# ---------------------------------------------------------------------------


@limiter.limit("30/minute")
@router.patch("/transactions/{tx_id}", response_model=TransactionResponse)
def amend_transaction(
    request: Request,
    tx_id: int,
    body: TransactionAmend,
    ctx: RequestContext = Depends(get_request_context),
) -> TransactionResponse:
    """Amend a transaction the caller created and still holds a mutate grant for.

    A transaction the caller cannot see is a 404. A visible one the caller
    may not change (read-only grant, someone else's entry, tenant or creator
    reassignment) is a 403.
    """
    store: LedgerStore = request.app.state.store
    if store.get_visible_transaction(tx_id, ctx) is None:
        raise _not_found(tx_id)

    changes: dict = {}
    if body.account is not None:
        changes["account_id"] = _account_id_for(store, body.account)
    if body.kind is not None:
        changes["kind"] = body.kind.value
    if body.amount is not None:
        changes["amount"] = body.amount
    if body.occurred_at is not None:
        changes["occurred_at"] = body.occurred_at
    if body.tenant_id is not None:
        changes["tenant_id"] = body.tenant_id
    if body.created_by is not None:
        changes["created_by"] = body.created_by

    stored = store.amend_transaction(tx_id, ctx, **changes)
    return TransactionResponse.from_transaction(stored)
