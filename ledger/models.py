"""
ledger/models.py -- Domain dataclasses for the LedgerGuard ledger.

Pure data containers with zero logic. Visibility and mutation rules live in
ledger/policy.py; persistence and validation live in ledger/store.py.

id is None on every entity before the record is written to the database,
except where the caller provisions explicit ids (tenants and users keep the
identifiers their upstream directory assigned, e.g. tenant 1001, user 501).
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

# ISO 4217 shape only (three uppercase letters); the code list itself is not checked.
CURRENCY_PATTERN = r"^[A-Z]{3}$"

TRANSACTION_KINDS: tuple[str, ...] = ("deposit", "withdrawal", "fee", "dividend", "trade")

# Amounts are exact to the cent.
AMOUNT_QUANTUM = Decimal("0.01")


@dataclass
class Tenant:
    """An isolated customer boundary. Immutable once created."""

    name: str
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class User:
    """An identity that belongs to exactly one tenant.

    role is the label copied into the request context at login. The admin
    label (Settings.admin_role) unlocks provisioning; every other label is an
    ordinary application user whose reach is defined entirely by grants.

    hashed_password is None for users that only exist as seed identities and
    cannot log in over HTTP.
    """

    login: str
    display_name: str
    tenant_id: int
    role: str = "user"
    id: Optional[int] = None
    hashed_password: Optional[str] = None
    is_active: bool = True
    created_at: str = ""


@dataclass
class Account:
    """A tenant-scoped ledger account. Mutated by administrators only."""

    tenant_id: int
    number: str  # unique across all tenants, e.g. "ACC-ACME-001"
    currency: str  # three-letter code, e.g. "USD"
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class AccessGrant:
    """Links one user to one account. (user_id, account_id) is the identity.

    can_mutate=False is a read-only grant: the holder sees the account and its
    transactions but can never insert or amend.
    """

    user_id: int
    account_id: int
    can_mutate: bool = False
    granted_at: str = ""


@dataclass
class Transaction:
    """A signed ledger entry on one account.

    tenant_id must equal the account's tenant. created_by is the acting user
    at insert time and never changes afterwards.
    """

    tenant_id: int
    account_id: int
    kind: str  # one of TRANSACTION_KINDS
    amount: Decimal  # signed; negative for fees, withdrawals, buys
    created_by: int
    occurred_at: str = ""  # ISO 8601, defaulted to now by the store
    id: Optional[int] = None
    updated_at: Optional[str] = None
    account_number: str = ""  # denormalized for display, filled by the store
