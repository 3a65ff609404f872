"""
ledger/store.py -- SQLAlchemy-backed persistence layer for LedgerGuard.

Uses SQLAlchemy Core (not ORM) so the domain dataclasses in ledger/models.py
remain the authoritative domain representation. Swapping SQLite for
PostgreSQL is a connection string change, not a rewrite.

Pattern: Repository + Data Mapper. LedgerStore is the repository (one clean
interface per entity). The _row_to_* functions are the mappers. Route
handlers and CLI commands never touch SQL directly.

Row filtering: the database does not enforce visibility here. Every
tenant-scoped query fetches candidate rows for ctx.tenant_id together with
the caller's grant (outer join), and ledger/policy.py decides row by row.
Nothing leaves the store without passing the evaluator.

Write atomicity: insert and amend open one DB transaction (engine.begin()),
read the caller's grant inside it (SELECT ... FOR UPDATE where the backend
supports it), run the policy check, then write. A concurrent revoke either
commits before our read (we deny) or waits/fails against our transaction; it
can never land between check and write. A failed write is rolled back and
reported as AccessDenied("concurrent grant change"), never retried.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = LedgerStore()                               # SQLite default
    store = LedgerStore("postgresql://user:pw@host/db") # PostgreSQL
    store.create_tenant(Tenant(id=1001, name="ACME"), ctx=admin_ctx)
    store.list_visible_transactions(ctx)
    store.insert_transaction(tx, ctx)
    store.close()
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from core import context
from core.config import get_settings
from core.context import RequestContext
from core.errors import AccessDenied, ConstraintViolation
from ledger import policy
from ledger.models import (
    AMOUNT_QUANTUM,
    CURRENCY_PATTERN,
    TRANSACTION_KINDS,
    AccessGrant,
    Account,
    Tenant,
    Transaction,
    User,
)

logger = logging.getLogger("ledgerguard.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_tenants = Table(
    "tenants",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("login", String(255), nullable=False, unique=True),
    Column("display_name", String(255), nullable=False),
    Column("tenant_id", Integer, ForeignKey("tenants.id"), nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("hashed_password", Text),  # NULL for seed identities without a login
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", Integer, ForeignKey("tenants.id"), nullable=False),
    Column("number", String(64), nullable=False, unique=True),
    Column("currency", String(3), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_grants = Table(
    "access_grants",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), primary_key=True),
    Column("can_mutate", Integer, nullable=False, server_default="0"),  # boolean stored as 0/1
    Column("granted_at", String(32), nullable=False),
)

_transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", Integer, ForeignKey("tenants.id"), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("occurred_at", String(32), nullable=False),
    Column("kind", String(20), nullable=False),
    Column("amount", String(40), nullable=False),  # Decimal serialized as text, never float
    Column("created_by", Integer, ForeignKey("users.id"), nullable=False),
    Column("updated_at", String(32)),
    Index("ix_transactions_tenant_account", "tenant_id", "account_id"),
)

# Fields a caller may pass to amend_transaction(). tenant_id and created_by are
# accepted only so the policy can reject a reassignment explicitly.
_AMENDABLE_FIELDS = {"kind", "amount", "occurred_at", "account_id", "tenant_id", "created_by"}


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _on_sqlite_connect(dbapi_conn, connection_record) -> None:
    """Per-connection SQLite setup.

    isolation_level=None hands transaction control to SQLAlchemy's "begin"
    event below; pysqlite's own implicit BEGIN is deferred until the first DML
    statement, which would leave the grant SELECT outside the write
    transaction. WAL lets readers proceed during writes. PRAGMAs are not
    inherited by new pooled connections, so set them on every connect.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def _on_sqlite_begin(conn) -> None:
    conn.exec_driver_sql("BEGIN")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_currency(currency: str) -> str:
    normalized = (currency or "").strip().upper()
    if not re.match(CURRENCY_PATTERN, normalized):
        raise ConstraintViolation("currency", f"{currency!r} is not a three-letter currency code")
    return normalized


def _check_kind(kind: str) -> str:
    normalized = (kind or "").strip().lower()
    if normalized not in TRANSACTION_KINDS:
        raise ConstraintViolation("kind", f"{kind!r} is not one of: {', '.join(TRANSACTION_KINDS)}")
    return normalized


def _parse_amount(value) -> Decimal:
    """Return value as a Decimal quantized to the cent.

    Floats are converted through str() so 0.1 stays 0.1. NaN, infinities and
    values with more than two decimal places are rejected rather than rounded:
    a ledger must not silently change an amount.
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ConstraintViolation("amount", f"{value!r} is not a decimal number") from None
    if not amount.is_finite():
        raise ConstraintViolation("amount", "must be a finite number")
    try:
        quantized = amount.quantize(AMOUNT_QUANTUM)
    except InvalidOperation:
        raise ConstraintViolation("amount", "out of range") from None
    if quantized != amount:
        raise ConstraintViolation("amount", "at most two decimal places are allowed")
    return quantized


def _check_timestamp(value: str, required: bool = False) -> str:
    """Normalize an ISO 8601 timestamp to UTC. Empty means now unless required."""
    if not value:
        if required:
            raise ConstraintViolation("occurred_at", "must not be empty")
        return _now_iso()
    try:
        dt = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ConstraintViolation("occurred_at", f"{value!r} is not an ISO 8601 timestamp") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _check_not_empty(field: str, value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        raise ConstraintViolation(field, "must not be empty")
    return stripped


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class LedgerStore:
    """Repository for tenants, users, accounts, grants and transactions.

    Every method that touches tenant data takes ctx explicitly; when ctx is
    omitted the ambient binding from core.context is used, which is NO_ACCESS
    unless the caller bound one.
    """

    def __init__(self, db_url: Optional[str] = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # Route handlers run in a thread pool; the pool may hand the same
            # connection to different threads.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _on_sqlite_connect)
            event.listen(self.engine, "begin", _on_sqlite_begin)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    def create_tenant(self, tenant: Tenant, ctx: Optional[RequestContext] = None) -> int:
        """Register a tenant and return its id. Admin only.

        An explicit tenant.id is kept as-is so upstream identifiers survive.
        """
        ctx = context.resolve(ctx)
        policy.require_admin(ctx, "tenant create")
        name = _check_not_empty("name", tenant.name)
        values = {"name": name, "created_at": _now_iso()}
        if tenant.id is not None:
            values["id"] = tenant.id
        try:
            with self.engine.begin() as conn:
                if tenant.id is not None and self._tenant_exists(conn, tenant.id):
                    raise ConstraintViolation("id", f"tenant {tenant.id} already exists")
                result = conn.execute(_tenants.insert().values(**values))
                tenant_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise ConstraintViolation("id", f"tenant {tenant.id} already exists") from exc
        logger.info("Tenant %s (%s) created by user %s", tenant_id, name, ctx.user_id)
        return tenant_id

    def get_tenant(self, tenant_id: int) -> Optional[Tenant]:
        with self.engine.connect() as conn:
            row = conn.execute(_tenants.select().where(_tenants.c.id == tenant_id)).fetchone()
        return _row_to_tenant(row) if row is not None else None

    def list_tenants(self) -> list[Tenant]:
        with self.engine.connect() as conn:
            rows = conn.execute(_tenants.select().order_by(_tenants.c.id)).fetchall()
        return [_row_to_tenant(r) for r in rows]

    def _tenant_exists(self, conn, tenant_id: int) -> bool:
        return conn.execute(select(_tenants.c.id).where(_tenants.c.id == tenant_id)).first() is not None

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User, ctx: Optional[RequestContext] = None) -> int:
        """Insert a user and return its id. Admin only.

        Raises ConstraintViolation for an unknown tenant or a duplicate login.
        """
        ctx = context.resolve(ctx)
        policy.require_admin(ctx, "user create")
        user_id = self._insert_user(user)
        logger.info("User %s (%s) created in tenant %s by user %s", user_id, user.login, user.tenant_id, ctx.user_id)
        return user_id

    def bootstrap_admin(self, user: User, tenant: Tenant) -> int:
        """Create the first administrator, and its tenant if missing.

        First-run path for the CLI: there is no admin context yet to authorize
        the write, so this refuses once any active admin exists.
        """
        if self.has_admin():
            raise AccessDenied("an administrator already exists")
        admin_role = get_settings().admin_role
        with self.engine.begin() as conn:
            if tenant.id is None or not self._tenant_exists(conn, tenant.id):
                values = {"name": _check_not_empty("name", tenant.name), "created_at": _now_iso()}
                if tenant.id is not None:
                    values["id"] = tenant.id
                tenant_id = conn.execute(_tenants.insert().values(**values)).inserted_primary_key[0]
            else:
                tenant_id = tenant.id
        user_id = self._insert_user(replace(user, tenant_id=tenant_id, role=admin_role))
        logger.info("Bootstrap administrator %s (%s) created in tenant %s", user_id, user.login, tenant_id)
        return user_id

    def _insert_user(self, user: User) -> int:
        login = _check_not_empty("login", user.login)
        display_name = _check_not_empty("display_name", user.display_name)
        role = _check_not_empty("role", user.role)
        values = {
            "login": login,
            "display_name": display_name,
            "tenant_id": user.tenant_id,
            "role": role,
            "hashed_password": user.hashed_password,
            "is_active": 1 if user.is_active else 0,
            "created_at": _now_iso(),
        }
        if user.id is not None:
            values["id"] = user.id
        try:
            with self.engine.begin() as conn:
                if not self._tenant_exists(conn, user.tenant_id):
                    raise ConstraintViolation("tenant_id", f"unknown tenant {user.tenant_id}")
                if conn.execute(select(_users.c.id).where(_users.c.login == login)).first() is not None:
                    raise ConstraintViolation("login", f"{login!r} is already taken")
                result = conn.execute(_users.insert().values(**values))
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise ConstraintViolation("id", f"user {user.id} already exists") from exc

    def get_user(self, user_id: int) -> Optional[User]:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_login(self, login: str) -> Optional[User]:
        """Look up a user by exact login (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.login == login)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self, tenant_id: Optional[int] = None) -> list[User]:
        stmt = _users.select().order_by(_users.c.login)
        if tenant_id is not None:
            stmt = stmt.where(_users.c.tenant_id == tenant_id)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_user(r) for r in rows]

    def has_admin(self) -> bool:
        admin_role = get_settings().admin_role
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_users.c.id).where((_users.c.role == admin_role) & (_users.c.is_active == 1))
            ).first()
        return row is not None

    # ------------------------------------------------------------------
    # Accounts (administrative writes only)
    # ------------------------------------------------------------------

    def create_account(self, account: Account, ctx: Optional[RequestContext] = None) -> int:
        """Insert an account and return its id.

        Ordinary users can never create accounts: the admin check runs before
        anything else, so a denied caller learns nothing about the input.
        """
        ctx = context.resolve(ctx)
        policy.require_admin(ctx, "account create")
        number = _check_not_empty("number", account.number)
        currency = _check_currency(account.currency)
        try:
            with self.engine.begin() as conn:
                if not self._tenant_exists(conn, account.tenant_id):
                    raise ConstraintViolation("tenant_id", f"unknown tenant {account.tenant_id}")
                if conn.execute(select(_accounts.c.id).where(_accounts.c.number == number)).first() is not None:
                    raise ConstraintViolation("number", f"account {number!r} already exists")
                result = conn.execute(
                    _accounts.insert().values(
                        tenant_id=account.tenant_id,
                        number=number,
                        currency=currency,
                        created_at=_now_iso(),
                    )
                )
                account_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise ConstraintViolation("number", f"account {number!r} already exists") from exc
        logger.info("Account %s (%s %s) created in tenant %s", account_id, number, currency, account.tenant_id)
        return account_id

    def update_account(self, account_id: int, ctx: Optional[RequestContext] = None, **fields) -> bool:
        """Update number and/or currency on an account. Admin only.

        tenant_id is not accepted: moving an account would strand its grants
        and transactions in the old tenant.

        Returns True if a row was updated, False if account_id was not found.
        """
        ctx = context.resolve(ctx)
        policy.require_admin(ctx, "account update")
        unknown = set(fields) - {"number", "currency"}
        if unknown:
            raise ConstraintViolation("fields", f"cannot update {', '.join(sorted(unknown))}")
        values: dict = {}
        if "number" in fields:
            values["number"] = _check_not_empty("number", fields["number"])
        if "currency" in fields:
            values["currency"] = _check_currency(fields["currency"])
        if not values:
            return False
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**values))
        except IntegrityError as exc:
            raise ConstraintViolation("number", f"account {values.get('number')!r} already exists") from exc
        return result.rowcount > 0

    def get_account(self, account_id: int) -> Optional[Account]:
        """Unfiltered lookup for provisioning code. Never expose to users directly."""
        with self.engine.connect() as conn:
            return self._get_account(conn, account_id)

    def get_account_by_number(self, number: str) -> Optional[Account]:
        """Unfiltered lookup for provisioning code. Never expose to users directly."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.number == (number or "").strip())).fetchone()
        return _row_to_account(row) if row is not None else None

    def _get_account(self, conn, account_id: int) -> Optional[Account]:
        row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_visible_accounts(self, ctx: Optional[RequestContext] = None) -> list[Account]:
        """Return accounts in ctx's tenant that ctx's user holds a grant on.

        Returns an empty list for an anonymous context; never raises.
        """
        ctx = context.resolve(ctx)
        if ctx.is_anonymous:
            return []
        stmt = (
            select(
                _accounts,
                _grants.c.user_id.label("grant_user_id"),
                _grants.c.can_mutate,
                _grants.c.granted_at,
            )
            .select_from(
                _accounts.outerjoin(
                    _grants,
                    (_grants.c.account_id == _accounts.c.id) & (_grants.c.user_id == ctx.user_id),
                )
            )
            .where(_accounts.c.tenant_id == ctx.tenant_id)
            .order_by(_accounts.c.number)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        visible = []
        for row in rows:
            account = _row_to_account(row)
            if policy.can_read_account(ctx, account, _row_to_joined_grant(row, account.id)):
                visible.append(account)
        return visible

    # ------------------------------------------------------------------
    # Access grants (administrative writes only)
    # ------------------------------------------------------------------

    def grant_access(self, grant: AccessGrant, ctx: Optional[RequestContext] = None) -> AccessGrant:
        """Create or update the grant for (user, account). Admin only.

        Re-granting an existing pair overwrites can_mutate, so one call both
        upgrades a read-only grant and downgrades a mutate grant.
        """
        ctx = context.resolve(ctx)
        policy.require_admin(ctx, "grant")
        now = _now_iso()
        with self.engine.begin() as conn:
            user_row = conn.execute(select(_users.c.tenant_id).where(_users.c.id == grant.user_id)).first()
            if user_row is None:
                raise ConstraintViolation("user_id", f"unknown user {grant.user_id}")
            account = self._get_account(conn, grant.account_id)
            if account is None:
                raise ConstraintViolation("account_id", f"unknown account {grant.account_id}")
            if account.tenant_id != user_row.tenant_id:
                raise ConstraintViolation("account_id", "account and user belong to different tenants")
            where = (_grants.c.user_id == grant.user_id) & (_grants.c.account_id == grant.account_id)
            existing = conn.execute(select(_grants.c.user_id).where(where).with_for_update()).first()
            if existing is None:
                conn.execute(
                    _grants.insert().values(
                        user_id=grant.user_id,
                        account_id=grant.account_id,
                        can_mutate=1 if grant.can_mutate else 0,
                        granted_at=now,
                    )
                )
            else:
                conn.execute(_grants.update().where(where).values(can_mutate=1 if grant.can_mutate else 0, granted_at=now))
        logger.info(
            "Grant user=%s account=%s can_mutate=%s by user %s",
            grant.user_id,
            grant.account_id,
            grant.can_mutate,
            ctx.user_id,
        )
        return AccessGrant(user_id=grant.user_id, account_id=grant.account_id, can_mutate=grant.can_mutate, granted_at=now)

    def revoke_access(self, user_id: int, account_id: int, ctx: Optional[RequestContext] = None) -> bool:
        """Delete the grant for (user, account). Admin only.

        Takes effect on the next evaluation: nothing caches grants.
        Returns True if a grant was removed.
        """
        ctx = context.resolve(ctx)
        policy.require_admin(ctx, "revoke")
        with self.engine.begin() as conn:
            result = conn.execute(
                _grants.delete().where((_grants.c.user_id == user_id) & (_grants.c.account_id == account_id))
            )
        if result.rowcount:
            logger.info("Revoked grant user=%s account=%s by user %s", user_id, account_id, ctx.user_id)
        return result.rowcount > 0

    def get_grant(self, user_id: int, account_id: int) -> Optional[AccessGrant]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _grants.select().where((_grants.c.user_id == user_id) & (_grants.c.account_id == account_id))
            ).fetchone()
        return _row_to_grant(row) if row is not None else None

    def list_grants(self, user_id: Optional[int] = None) -> list[AccessGrant]:
        stmt = _grants.select().order_by(_grants.c.user_id, _grants.c.account_id)
        if user_id is not None:
            stmt = stmt.where(_grants.c.user_id == user_id)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_grant(r) for r in rows]

    @contextmanager
    def _guarded_write(self, ctx: RequestContext, action: str):
        """Open the check-then-write transaction.

        A concurrent grant change that invalidates our read (SQLite reports
        "database is locked", server backends a serialization or lock failure)
        surfaces as AccessDenied. The write is rolled back and not retried.
        """
        try:
            with self.engine.begin() as conn:
                yield conn
        except OperationalError as exc:
            logger.warning("%s by user %s aborted by a concurrent change: %s", action, ctx.user_id, exc.orig)
            raise AccessDenied("concurrent grant change") from exc

    def _lock_grant(self, conn, user_id: int, account_id: int) -> Optional[AccessGrant]:
        """Read the grant inside the caller's transaction, locking it where supported."""
        row = conn.execute(
            _grants.select()
            .where((_grants.c.user_id == user_id) & (_grants.c.account_id == account_id))
            .with_for_update()
        ).fetchone()
        return _row_to_grant(row) if row is not None else None

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _visible_transactions_stmt(self, ctx: RequestContext):
        return (
            select(
                _transactions,
                _accounts.c.number.label("account_number"),
                _grants.c.user_id.label("grant_user_id"),
                _grants.c.can_mutate,
                _grants.c.granted_at,
            )
            .select_from(
                _transactions.join(_accounts, _accounts.c.id == _transactions.c.account_id).outerjoin(
                    _grants,
                    (_grants.c.account_id == _transactions.c.account_id) & (_grants.c.user_id == ctx.user_id),
                )
            )
            .where(_transactions.c.tenant_id == ctx.tenant_id)
        )

    def list_visible_transactions(
        self,
        ctx: Optional[RequestContext] = None,
        account_number: Optional[str] = None,
    ) -> list[Transaction]:
        """Return transactions visible to ctx, oldest first.

        account_number narrows the listing to one account; an account the
        caller cannot see yields an empty list, the same as an unknown one.
        """
        ctx = context.resolve(ctx)
        if ctx.is_anonymous:
            return []
        stmt = self._visible_transactions_stmt(ctx).order_by(_transactions.c.occurred_at, _transactions.c.id)
        if account_number:
            stmt = stmt.where(_accounts.c.number == account_number.strip())
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        visible = []
        for row in rows:
            tx = _row_to_transaction(row)
            if policy.can_read_transaction(ctx, tx, _row_to_joined_grant(row, tx.account_id)):
                visible.append(tx)
        return visible

    def get_visible_transaction(self, tx_id: int, ctx: Optional[RequestContext] = None) -> Optional[Transaction]:
        """Return one transaction if ctx may see it, else None (hidden and absent look alike)."""
        ctx = context.resolve(ctx)
        if ctx.is_anonymous:
            return None
        stmt = self._visible_transactions_stmt(ctx).where(_transactions.c.id == tx_id)
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        if row is None:
            return None
        tx = _row_to_transaction(row)
        return tx if policy.can_read_transaction(ctx, tx, _row_to_joined_grant(row, tx.account_id)) else None

    def insert_transaction(self, tx: Transaction, ctx: Optional[RequestContext] = None) -> Transaction:
        """Validate, authorize and insert tx. Returns the stored transaction.

        Order matters: input constraints (kind, amount, timestamp, tenant
        existence) are checked first and raise ConstraintViolation; then the
        policy runs against the grant read inside the same DB transaction and
        raises AccessDenied.
        """
        ctx = context.resolve(ctx)
        candidate = replace(
            tx,
            kind=_check_kind(tx.kind),
            amount=_parse_amount(tx.amount),
            occurred_at=_check_timestamp(tx.occurred_at),
            updated_at=None,
        )
        with self._guarded_write(ctx, "insert") as conn:
            if not self._tenant_exists(conn, candidate.tenant_id):
                raise ConstraintViolation("tenant_id", f"unknown tenant {candidate.tenant_id}")
            account = self._get_account(conn, candidate.account_id)
            grant = self._lock_grant(conn, ctx.user_id, candidate.account_id)
            policy.require_insert(ctx, candidate, account, grant)
            result = conn.execute(
                _transactions.insert().values(
                    tenant_id=candidate.tenant_id,
                    account_id=candidate.account_id,
                    occurred_at=candidate.occurred_at,
                    kind=candidate.kind,
                    amount=str(candidate.amount),
                    created_by=candidate.created_by,
                )
            )
            tx_id = result.inserted_primary_key[0]
        logger.info(
            "Transaction %s inserted: tenant=%s account=%s kind=%s amount=%s by user %s",
            tx_id,
            candidate.tenant_id,
            account.number,
            candidate.kind,
            candidate.amount,
            ctx.user_id,
        )
        return replace(candidate, id=tx_id, account_number=account.number)

    def amend_transaction(self, tx_id: int, ctx: Optional[RequestContext] = None, **changes) -> Transaction:
        """Apply changes to an existing transaction. Returns the amended record.

        Accepted keys: kind, amount, occurred_at, account_id. tenant_id and
        created_by may be passed but any value other than the original is
        denied. A transaction the caller cannot see is reported as
        AccessDenied, never as "exists but forbidden".
        """
        ctx = context.resolve(ctx)
        unknown = set(changes) - _AMENDABLE_FIELDS
        if unknown:
            raise ConstraintViolation("fields", f"cannot amend {', '.join(sorted(unknown))}")
        if "kind" in changes:
            changes["kind"] = _check_kind(changes["kind"])
        if "amount" in changes:
            changes["amount"] = _parse_amount(changes["amount"])
        if "occurred_at" in changes:
            changes["occurred_at"] = _check_timestamp(changes["occurred_at"], required=True)

        now = _now_iso()
        with self._guarded_write(ctx, f"amend of transaction {tx_id}") as conn:
            row = conn.execute(
                select(_transactions, _accounts.c.number.label("account_number"))
                .select_from(_transactions.join(_accounts, _accounts.c.id == _transactions.c.account_id))
                .where(_transactions.c.id == tx_id)
            ).fetchone()
            original = _row_to_transaction(row) if row is not None else None
            grant = self._lock_grant(conn, ctx.user_id, original.account_id) if original is not None else None
            if original is None or not policy.can_read_transaction(ctx, original, grant):
                raise AccessDenied(f"transaction {tx_id} not found")

            amended = replace(original, **changes)
            policy.require_amend(ctx, original, amended, grant)

            account_number = original.account_number
            if amended.account_id != original.account_id:
                target = self._get_account(conn, amended.account_id)
                target_grant = self._lock_grant(conn, ctx.user_id, amended.account_id)
                policy.require_insert(ctx, amended, target, target_grant)
                account_number = target.number

            conn.execute(
                _transactions.update()
                .where(_transactions.c.id == tx_id)
                .values(
                    account_id=amended.account_id,
                    occurred_at=amended.occurred_at,
                    kind=amended.kind,
                    amount=str(amended.amount),
                    updated_at=now,
                )
            )
        logger.info("Transaction %s amended by user %s: %s", tx_id, ctx.user_id, sorted(changes))
        return replace(amended, updated_at=now, account_number=account_number)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_tenant(row) -> Tenant:
    return Tenant(id=row.id, name=row.name, created_at=row.created_at)


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        login=row.login,
        display_name=row.display_name,
        tenant_id=row.tenant_id,
        role=row.role,
        hashed_password=row.hashed_password,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        tenant_id=row.tenant_id,
        number=row.number,
        currency=row.currency,
        created_at=row.created_at,
    )


def _row_to_grant(row) -> AccessGrant:
    return AccessGrant(
        user_id=row.user_id,
        account_id=row.account_id,
        can_mutate=bool(row.can_mutate),
        granted_at=row.granted_at,
    )


def _row_to_joined_grant(row, account_id: int) -> Optional[AccessGrant]:
    # Outer-joined grant columns are all NULL when the caller holds no grant.
    if row.grant_user_id is None:
        return None
    return AccessGrant(
        user_id=row.grant_user_id,
        account_id=account_id,
        can_mutate=bool(row.can_mutate),
        granted_at=row.granted_at,
    )


def _row_to_transaction(row) -> Transaction:
    return Transaction(
        id=row.id,
        tenant_id=row.tenant_id,
        account_id=row.account_id,
        occurred_at=row.occurred_at,
        kind=row.kind,
        amount=Decimal(row.amount),
        created_by=row.created_by,
        updated_at=row.updated_at,
        account_number=getattr(row, "account_number", "") or "",
    )
