"""
ledger/ingest.py -- Bulk loaders for accounts and seed data.

Parsers normalize input to records; loaders push records through
LedgerStore under an explicit context, so bulk data passes the same
admin check and the same transaction policy as live traffic.

Supported formats:
  - Accounts CSV  (tenant_id,number,currency)
  - Seed JSON     ({"tenants", "users", "accounts", "grants", "transactions"})

Pipeline:
  file content -> parse_*() -> records -> load_*(store, ..., admin_ctx)
  -> LedgerStore.create_* / grant_access / insert_transaction

Parsers never raise on malformed input: bad rows are skipped and reported
in the returned errors list, like a scanner import that keeps going past a
broken line.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import dataclass, field

from core.context import RequestContext
from core.errors import LedgerError
from ledger.models import AccessGrant, Account, Tenant, Transaction, User
from ledger.store import LedgerStore

logger = logging.getLogger("ledgerguard.ingest")


@dataclass
class AccountRecord:
    """One account row from a bulk file. raw keeps the source row for error reports."""

    tenant_id: int
    number: str
    currency: str
    raw: dict = field(default_factory=dict)


@dataclass
class SeedGrant:
    user_id: int
    account_number: str
    can_mutate: bool = False


@dataclass
class SeedTransaction:
    account_number: str
    kind: str
    amount: str
    created_by: int
    occurred_at: str = ""


@dataclass
class SeedData:
    tenants: list[Tenant] = field(default_factory=list)
    users: list[User] = field(default_factory=list)
    accounts: list[AccountRecord] = field(default_factory=list)
    grants: list[SeedGrant] = field(default_factory=list)
    transactions: list[SeedTransaction] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class LoadSummary:
    """Counts reported back to the CLI or the admin API after a bulk load."""

    tenants_created: int = 0
    users_created: int = 0
    accounts_created: int = 0
    accounts_skipped: int = 0
    grants_applied: int = 0
    transactions_created: int = 0
    errors: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Accounts CSV parser
# ---------------------------------------------------------------------------


def parse_accounts_csv(content: str) -> tuple[list[AccountRecord], list[str]]:
    """Parse a CSV of tenant_id,number,currency rows.

    Extra columns are ignored. Rows with a missing field or a non-integer
    tenant_id are skipped and reported. Currency format is validated later
    by the store, which owns that rule.
    """
    records: list[AccountRecord] = []
    errors: list[str] = []
    reader = csv.DictReader(io.StringIO(content))
    for line_no, row in enumerate(reader, start=2):
        tenant_raw = (row.get("tenant_id") or "").strip()
        number = (row.get("number") or "").strip()
        currency = (row.get("currency") or "").strip().upper()
        if not tenant_raw or not number or not currency:
            errors.append(f"line {line_no}: missing tenant_id, number or currency")
            continue
        try:
            tenant_id = int(tenant_raw)
        except ValueError:
            errors.append(f"line {line_no}: tenant_id {tenant_raw[:20]!r} is not an integer")
            continue
        records.append(AccountRecord(tenant_id=tenant_id, number=number, currency=currency, raw=dict(row)))
    return records, errors


# ---------------------------------------------------------------------------
# Seed JSON parser
# ---------------------------------------------------------------------------


def parse_seed_json(content: str) -> SeedData:
    """Parse a seed document.

    Schema:
    {
      "tenants":  [{"id": 1001, "name": "ACME Corp"}],
      "users":    [{"id": 501, "login": "alice@acme.test", "display_name": "Alice",
                    "tenant_id": 1001, "role": "user"}],
      "accounts": [{"tenant_id": 1001, "number": "ACC-ACME-001", "currency": "USD"}],
      "grants":   [{"user_id": 501, "account_number": "ACC-ACME-001", "can_mutate": true}],
      "transactions": [{"account_number": "ACC-ACME-001", "kind": "deposit",
                        "amount": "10000.00", "created_by": 501,
                        "occurred_at": "2024-01-02T09:00:00+00:00"}]
    }

    Returns SeedData with an error entry for the whole document if the
    content is not a JSON object; individual malformed entries are skipped.
    """
    seed = SeedData()
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, ValueError):
        seed.errors.append("seed is not valid JSON")
        return seed
    if not isinstance(data, dict):
        seed.errors.append("seed must be a JSON object")
        return seed

    for i, item in enumerate(data.get("tenants") or []):
        try:
            seed.tenants.append(Tenant(id=int(item["id"]), name=str(item["name"])))
        except (KeyError, TypeError, ValueError):
            seed.errors.append(f"tenants[{i}]: needs integer id and name")

    for i, item in enumerate(data.get("users") or []):
        try:
            seed.users.append(
                User(
                    id=int(item["id"]),
                    login=str(item["login"]),
                    display_name=str(item.get("display_name") or item["login"]),
                    tenant_id=int(item["tenant_id"]),
                    role=str(item.get("role") or "user"),
                )
            )
        except (KeyError, TypeError, ValueError):
            seed.errors.append(f"users[{i}]: needs integer id, login and integer tenant_id")

    for i, item in enumerate(data.get("accounts") or []):
        try:
            seed.accounts.append(
                AccountRecord(
                    tenant_id=int(item["tenant_id"]),
                    number=str(item["number"]).strip(),
                    currency=str(item["currency"]).strip().upper(),
                    raw=dict(item),
                )
            )
        except (KeyError, TypeError, ValueError):
            seed.errors.append(f"accounts[{i}]: needs integer tenant_id, number and currency")

    for i, item in enumerate(data.get("grants") or []):
        try:
            seed.grants.append(
                SeedGrant(
                    user_id=int(item["user_id"]),
                    account_number=str(item["account_number"]).strip(),
                    can_mutate=bool(item.get("can_mutate", False)),
                )
            )
        except (KeyError, TypeError, ValueError):
            seed.errors.append(f"grants[{i}]: needs integer user_id and account_number")

    for i, item in enumerate(data.get("transactions") or []):
        try:
            seed.transactions.append(
                SeedTransaction(
                    account_number=str(item["account_number"]).strip(),
                    kind=str(item["kind"]),
                    amount=str(item["amount"]),
                    created_by=int(item["created_by"]),
                    occurred_at=str(item.get("occurred_at") or ""),
                )
            )
        except (KeyError, TypeError, ValueError):
            seed.errors.append(f"transactions[{i}]: needs account_number, kind, amount and integer created_by")

    return seed


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------


def load_accounts(
    store: LedgerStore,
    records: list[AccountRecord],
    admin_ctx: RequestContext,
    summary: LoadSummary | None = None,
) -> LoadSummary:
    """Create each account; existing numbers are skipped, bad rows reported."""
    summary = summary or LoadSummary()
    for rec in records:
        if store.get_account_by_number(rec.number) is not None:
            summary.accounts_skipped += 1
            continue
        try:
            store.create_account(Account(tenant_id=rec.tenant_id, number=rec.number, currency=rec.currency), ctx=admin_ctx)
            summary.accounts_created += 1
        except LedgerError as exc:
            summary.errors.append(f"account {rec.number}: {exc}")
    return summary


def load_seed(store: LedgerStore, seed: SeedData, admin_ctx: RequestContext) -> LoadSummary:
    """Provision a seed document. Safe to re-run.

    Existing tenants, logins and account numbers are skipped. Transactions are
    only inserted on accounts created by this run, so a second run does not
    double the ledger. Each transaction is written under its creator's own
    context, so a seed that lists an entry for a read-only user fails exactly
    like the live request would.
    """
    summary = LoadSummary(errors=list(seed.errors))

    for tenant in seed.tenants:
        if store.get_tenant(tenant.id) is not None:
            continue
        try:
            store.create_tenant(tenant, ctx=admin_ctx)
            summary.tenants_created += 1
        except LedgerError as exc:
            summary.errors.append(f"tenant {tenant.id}: {exc}")

    for user in seed.users:
        if store.get_user_by_login(user.login) is not None:
            continue
        try:
            store.create_user(user, ctx=admin_ctx)
            summary.users_created += 1
        except LedgerError as exc:
            summary.errors.append(f"user {user.login}: {exc}")

    before = {rec.number for rec in seed.accounts if store.get_account_by_number(rec.number) is not None}
    load_accounts(store, seed.accounts, admin_ctx, summary)
    fresh_numbers = {rec.number for rec in seed.accounts} - before

    accounts: dict[str, Account] = {}
    for number in {g.account_number for g in seed.grants} | {t.account_number for t in seed.transactions}:
        account = store.get_account_by_number(number)
        if account is not None:
            accounts[number] = account

    for g in seed.grants:
        account = accounts.get(g.account_number)
        if account is None:
            summary.errors.append(f"grant for user {g.user_id}: unknown account {g.account_number}")
            continue
        try:
            store.grant_access(AccessGrant(user_id=g.user_id, account_id=account.id, can_mutate=g.can_mutate), ctx=admin_ctx)
            summary.grants_applied += 1
        except LedgerError as exc:
            summary.errors.append(f"grant user {g.user_id} on {g.account_number}: {exc}")

    for t in seed.transactions:
        if t.account_number not in fresh_numbers:
            continue
        account = accounts.get(t.account_number)
        creator = store.get_user(t.created_by)
        if account is None or creator is None:
            summary.errors.append(f"transaction on {t.account_number}: unknown account or creator {t.created_by}")
            continue
        creator_ctx = RequestContext(tenant_id=creator.tenant_id, user_id=creator.id, role=creator.role)
        try:
            store.insert_transaction(
                Transaction(
                    tenant_id=account.tenant_id,
                    account_id=account.id,
                    kind=t.kind,
                    amount=t.amount,
                    created_by=creator.id,
                    occurred_at=t.occurred_at,
                ),
                ctx=creator_ctx,
            )
            summary.transactions_created += 1
        except LedgerError as exc:
            summary.errors.append(f"transaction {t.kind} {t.amount} on {t.account_number}: {exc}")

    logger.info(
        "Seed loaded: %d tenants, %d users, %d accounts, %d grants, %d transactions, %d errors",
        summary.tenants_created,
        summary.users_created,
        summary.accounts_created,
        summary.grants_applied,
        summary.transactions_created,
        len(summary.errors),
    )
    return summary


# ---------------------------------------------------------------------------
# Demo data -- the two-tenant brokerage used in the walkthrough and tests
# ---------------------------------------------------------------------------

DEMO_SEED_JSON = """
{
  "tenants": [
    {"id": 1001, "name": "ACME Capital"},
    {"id": 1002, "name": "Globex Securities"}
  ],
  "users": [
    {"id": 501, "login": "alice@acme.test", "display_name": "Alice Trader", "tenant_id": 1001},
    {"id": 502, "login": "bob@acme.test", "display_name": "Bob Auditor", "tenant_id": 1001},
    {"id": 601, "login": "carol@globex.test", "display_name": "Carol Trader", "tenant_id": 1002}
  ],
  "accounts": [
    {"tenant_id": 1001, "number": "ACC-ACME-001", "currency": "USD"},
    {"tenant_id": 1001, "number": "ACC-ACME-002", "currency": "USD"},
    {"tenant_id": 1002, "number": "ACC-GLOBEX-001", "currency": "EUR"}
  ],
  "grants": [
    {"user_id": 501, "account_number": "ACC-ACME-001", "can_mutate": true},
    {"user_id": 501, "account_number": "ACC-ACME-002", "can_mutate": true},
    {"user_id": 502, "account_number": "ACC-ACME-001", "can_mutate": false},
    {"user_id": 502, "account_number": "ACC-ACME-002", "can_mutate": false},
    {"user_id": 601, "account_number": "ACC-GLOBEX-001", "can_mutate": true}
  ],
  "transactions": [
    {"account_number": "ACC-ACME-001", "kind": "deposit", "amount": "10000.00",
     "created_by": 501, "occurred_at": "2024-01-02T09:00:00+00:00"},
    {"account_number": "ACC-ACME-001", "kind": "fee", "amount": "-25.00",
     "created_by": 501, "occurred_at": "2024-01-03T09:00:00+00:00"},
    {"account_number": "ACC-GLOBEX-001", "kind": "deposit", "amount": "5000.00",
     "created_by": 601, "occurred_at": "2024-01-02T10:00:00+00:00"}
  ]
}
"""


def demo_seed() -> SeedData:
    return parse_seed_json(DEMO_SEED_JSON)
