"""
API request and response models for LedgerGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in ledger/models.py, which
own the internal domain representation. Route handlers map between the two.

Amounts cross the wire as strings ("-1234.56") so no client ever sees a
float rendering of a ledger value.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ledger.models import Account, Tenant, Transaction, User

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TransactionKindEnum(str, Enum):
    deposit = "deposit"
    withdrawal = "withdrawal"
    fee = "fee"
    dividend = "dividend"
    trade = "trade"


# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    login: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str
    expires_in: int
    login: str
    tenant_id: int
    role: str


class MeResponse(BaseModel):
    """The caller's identity as the policy evaluator sees it."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    login: str
    display_name: str
    tenant_id: int
    role: str


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountCreate(BaseModel):
    """Request body for POST /api/v1/admin/accounts.

    Currency shape is validated by the store so bulk loads and the API reject
    the same inputs with the same message.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    tenant_id: int
    number: str = Field(min_length=1, max_length=64)
    currency: str = Field(min_length=1, max_length=10)


class AccountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    tenant_id: int
    number: str
    currency: str
    created_at: str

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            tenant_id=account.tenant_id,
            number=account.number,
            currency=account.currency,
            created_at=account.created_at,
        )


class AccountUpdate(BaseModel):
    """Request body for PATCH /api/v1/admin/accounts/{id}. Omitted fields are unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    number: Optional[str] = Field(default=None, min_length=1, max_length=64)
    currency: Optional[str] = Field(default=None, min_length=1, max_length=10)


class BulkLoadResponse(BaseModel):
    """Response for POST /api/v1/admin/accounts/bulk."""

    model_config = ConfigDict(frozen=True)

    accounts_created: int
    accounts_skipped: int
    errors: list[str]


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TransactionCreate(BaseModel):
    """Request body for POST /api/v1/transactions.

    tenant_id and created_by default to the caller's context. They are
    accepted so a client that sends them explicitly gets the same policy
    answer the ledger would give any mismatched write: 403.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    account: str = Field(min_length=1, max_length=64, description="Account number, e.g. ACC-ACME-001")
    kind: TransactionKindEnum
    amount: Decimal = Field(description="Signed amount, at most two decimal places")
    occurred_at: Optional[str] = Field(default=None, max_length=40, description="ISO 8601; defaults to now")
    tenant_id: Optional[int] = None
    created_by: Optional[int] = None


class TransactionAmend(BaseModel):
    """Request body for PATCH /api/v1/transactions/{id}. Omitted fields are unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    account: Optional[str] = Field(default=None, min_length=1, max_length=64)
    kind: Optional[TransactionKindEnum] = None
    amount: Optional[Decimal] = None
    occurred_at: Optional[str] = Field(default=None, max_length=40)
    tenant_id: Optional[int] = None
    created_by: Optional[int] = None


class TransactionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    tenant_id: int
    account: str
    kind: str
    amount: str
    occurred_at: str
    created_by: int
    updated_at: Optional[str] = None

    @classmethod
    def from_transaction(cls, tx: Transaction) -> "TransactionResponse":
        return cls(
            id=tx.id,
            tenant_id=tx.tenant_id,
            account=tx.account_number,
            kind=tx.kind,
            amount=str(tx.amount),
            occurred_at=tx.occurred_at,
            created_by=tx.created_by,
            updated_at=tx.updated_at,
        )


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


class TenantCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    id: Optional[int] = Field(default=None, ge=1)
    name: str = Field(min_length=1, max_length=255)


class TenantResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    created_at: str

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "TenantResponse":
        return cls(id=tenant.id, name=tenant.name, created_at=tenant.created_at)


class UserCreate(BaseModel):
    """Request body for POST /api/v1/admin/users. password is optional: no password, no login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    id: Optional[int] = Field(default=None, ge=1)
    login: str = Field(min_length=1, max_length=255)
    display_name: str = Field(min_length=1, max_length=255)
    tenant_id: int
    role: str = Field(default="user", min_length=1, max_length=30)
    password: Optional[str] = Field(default=None, min_length=8, max_length=255)


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    login: str
    display_name: str
    tenant_id: int
    role: str
    is_active: bool
    created_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            login=user.login,
            display_name=user.display_name,
            tenant_id=user.tenant_id,
            role=user.role,
            is_active=user.is_active,
            created_at=user.created_at,
        )


class GrantRequest(BaseModel):
    """Request body for PUT /api/v1/admin/grants (create or update)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: int
    account: str = Field(min_length=1, max_length=64)
    can_mutate: bool = False


class GrantResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    account_id: int
    account: str
    can_mutate: bool
    granted_at: str
