#!/usr/bin/env python3
"""
LedgerGuard — multi-tenant account ledger with row-level access control.

Every command that reads or writes ledger data runs under an explicit
(tenant, user) context, the same context the HTTP API derives from a login.
Nothing is visible without one.

Usage:
  python main.py init
  python main.py create-admin --login admin@ops.test --tenant-name Operations
  python main.py seed
  python main.py seed --file seed.json
  python main.py load-accounts accounts.csv
  python main.py accounts --tenant 1001 --user 501
  python main.py transactions --tenant 1001 --user 501 --account ACC-ACME-001
  python main.py insert --tenant 1001 --user 501 --account ACC-ACME-002 --kind trade --amount -1234.56
  python main.py amend --tenant 1001 --user 501 --id 4 --amount -1200.00
  python main.py serve --port 8000

Environment variables:
  DATABASE_URL  SQLAlchemy URL (default: sqlite:///ledgerguard.db beside this file)
  SECRET_KEY    JWT signing key for `serve` (>= 32 chars; generated when DEBUG=true)
"""

import argparse
import getpass
import logging
import sys
from pathlib import Path
from typing import Optional

from core import context
from core.config import get_settings
from core.context import NO_ACCESS_ID, RequestContext
from core.errors import AccessDenied, ConstraintViolation, LedgerError
from core.formatter import disable_color, print_accounts, print_transactions, to_csv, to_json
from ledger.ingest import demo_seed, load_accounts, load_seed, parse_accounts_csv, parse_seed_json
from ledger.models import Tenant, Transaction, User
from ledger.store import LedgerStore

logger = logging.getLogger("ledgerguard.cli")


def _read_file(path: str) -> Optional[str]:
    """Read a UTF-8 text file. Returns None (after printing why) if it can't be read.

    Resolves symlinks and verifies the path is a regular file before reading.
    """
    file_path = Path(path).resolve()
    if not file_path.is_file():
        print(f"  [!] '{path}' is not a readable file.")
        return None
    try:
        return file_path.read_text(encoding="utf-8")
    except OSError as e:
        print(f"  [!] Could not read file '{path}': {e}")
        return None


def _admin_context(store: LedgerStore, login: Optional[str]) -> Optional[RequestContext]:
    """Context for provisioning commands: the named admin, or the only active one."""
    admin_role = get_settings().admin_role
    if login:
        admins = [u for u in [store.get_user_by_login(login)] if u is not None]
    else:
        admins = store.list_users()
    admins = [u for u in admins if u.role == admin_role and u.is_active]
    if len(admins) != 1:
        if login:
            print(f"  [!] '{login}' is not an active administrator.")
        elif not admins:
            print("  [!] No administrator exists. Run: python main.py create-admin")
        else:
            print("  [!] Several administrators exist; pass --as LOGIN.")
        return None
    admin = admins[0]
    return RequestContext(tenant_id=admin.tenant_id, user_id=admin.id, role=admin.role)


def _user_context(store: LedgerStore, tenant_id: int, user_id: int) -> RequestContext:
    """Context for ledger commands.

    The role comes from the directory. An unknown user still gets a context
    (with role "user") so the policy, not the CLI, answers the request.
    """
    user = store.get_user(user_id)
    role = user.role if user is not None else "user"
    return RequestContext(tenant_id=tenant_id, user_id=user_id, role=role)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_init(store: LedgerStore, args: argparse.Namespace) -> int:
    print(f"  Ledger schema ready at {get_settings().database_url}")
    return 0


def cmd_create_admin(store: LedgerStore, args: argparse.Namespace) -> int:
    from auth.tokens import hash_password

    password = args.password or getpass.getpass("  Admin password (min 8 chars): ")
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 2
    user_id = store.bootstrap_admin(
        User(
            login=args.login,
            display_name=args.display_name or args.login,
            tenant_id=args.tenant_id or 0,
            hashed_password=hash_password(password),
        ),
        Tenant(id=args.tenant_id, name=args.tenant_name),
    )
    print(f"  Administrator {args.login} created (user id {user_id}).")
    return 0


def cmd_seed(store: LedgerStore, args: argparse.Namespace) -> int:
    admin_ctx = _admin_context(store, args.as_login)
    if admin_ctx is None:
        return 2
    if args.file:
        content = _read_file(args.file)
        if content is None:
            return 2
        seed = parse_seed_json(content)
    else:
        seed = demo_seed()
    summary = load_seed(store, seed, admin_ctx)
    print(
        f"  Seeded {summary.tenants_created} tenants, {summary.users_created} users, "
        f"{summary.accounts_created} accounts, {summary.grants_applied} grants, "
        f"{summary.transactions_created} transactions."
    )
    for err in summary.errors:
        print(f"  [!] {err}")
    return 1 if summary.errors else 0


def cmd_load_accounts(store: LedgerStore, args: argparse.Namespace) -> int:
    admin_ctx = _admin_context(store, args.as_login)
    if admin_ctx is None:
        return 2
    content = _read_file(args.path)
    if content is None:
        return 2
    records, errors = parse_accounts_csv(content)
    summary = load_accounts(store, records, admin_ctx)
    print(f"  {summary.accounts_created} accounts created, {summary.accounts_skipped} already present.")
    for err in errors + summary.errors:
        print(f"  [!] {err}")
    return 1 if errors or summary.errors else 0


def cmd_accounts(store: LedgerStore, args: argparse.Namespace) -> int:
    with context.scope(_user_context(store, args.tenant, args.user)):
        accounts = store.list_visible_accounts()
    if args.output == "json":
        print(to_json(accounts))
    else:
        print_accounts(accounts)
    return 0


def cmd_transactions(store: LedgerStore, args: argparse.Namespace) -> int:
    with context.scope(_user_context(store, args.tenant, args.user)):
        transactions = store.list_visible_transactions(account_number=args.account)
    if args.output == "json":
        print(to_json(transactions))
    elif args.output == "csv":
        print(to_csv(transactions), end="")
    else:
        print_transactions(transactions)
    return 0


def cmd_insert(store: LedgerStore, args: argparse.Namespace) -> int:
    account = store.get_account_by_number(args.account)
    with context.scope(_user_context(store, args.tenant, args.user)) as ctx:
        tx = store.insert_transaction(
            Transaction(
                tenant_id=ctx.tenant_id,
                account_id=account.id if account is not None else NO_ACCESS_ID,
                kind=args.kind,
                amount=args.amount,
                created_by=ctx.user_id,
                occurred_at=args.occurred_at or "",
            )
        )
    if args.output == "json":
        print(to_json([tx]))
    else:
        print(f"  Transaction {tx.id} recorded: {tx.kind} {tx.amount} on {tx.account_number}.")
    return 0


def cmd_amend(store: LedgerStore, args: argparse.Namespace) -> int:
    changes: dict = {}
    if args.kind is not None:
        changes["kind"] = args.kind
    if args.amount is not None:
        changes["amount"] = args.amount
    if args.occurred_at is not None:
        changes["occurred_at"] = args.occurred_at
    if args.account is not None:
        account = store.get_account_by_number(args.account)
        changes["account_id"] = account.id if account is not None else NO_ACCESS_ID
    if not changes:
        print("  [!] Nothing to amend. Pass --kind, --amount, --occurred-at or --account.")
        return 2
    with context.scope(_user_context(store, args.tenant, args.user)):
        tx = store.amend_transaction(args.id, **changes)
    if args.output == "json":
        print(to_json([tx]))
    else:
        print(f"  Transaction {tx.id} amended: {tx.kind} {tx.amount} on {tx.account_number}.")
    return 0


def cmd_serve(store: LedgerStore, args: argparse.Namespace) -> int:
    import uvicorn

    store.close()
    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _add_context_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--tenant", type=int, required=True, metavar="ID", help="Tenant id of the caller")
    p.add_argument("--user", type=int, required=True, metavar="ID", help="User id of the caller")


def _add_output_args(p: argparse.ArgumentParser, formats: list[str]) -> None:
    p.add_argument(
        "--json",
        action="store_true",
        help="Output structured JSON (shorthand for --format json)",
    )
    p.add_argument(
        "--format",
        choices=formats,
        default=None,
        metavar="FORMAT",
        help=f"Output format: {', '.join(formats)}",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledgerguard",
        description="Multi-tenant account ledger with row-level access control.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --login admin@ops.test --tenant-name Operations
  python main.py seed
  python main.py transactions --tenant 1001 --user 502
  python main.py insert --tenant 1001 --user 501 --account ACC-ACME-002 --kind trade --amount -1234.56
  python main.py transactions --tenant 1001 --user 501 --format csv > ledger.csv
        """,
    )
    parser.add_argument("--no-color", action="store_true", help="Disable ANSI color codes in terminal output")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log store and policy decisions to stderr")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("init", help="Create the database schema")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("create-admin", help="Create the first administrator (and its tenant)")
    p.add_argument("--login", required=True)
    p.add_argument("--display-name", default=None)
    p.add_argument("--tenant-id", type=int, default=None, help="Existing or new tenant id (default: auto)")
    p.add_argument("--tenant-name", default="Operations")
    p.add_argument("--password", default=None, help="Prompted for when omitted")
    p.set_defaults(func=cmd_create_admin)

    p = sub.add_parser("seed", help="Load seed JSON (default: the built-in demo brokerage)")
    p.add_argument("--file", metavar="PATH", default=None)
    p.add_argument("--as", dest="as_login", metavar="LOGIN", default=None, help="Administrator login")
    p.set_defaults(func=cmd_seed)

    p = sub.add_parser("load-accounts", help="Create accounts from a tenant_id,number,currency CSV")
    p.add_argument("path", metavar="FILE")
    p.add_argument("--as", dest="as_login", metavar="LOGIN", default=None, help="Administrator login")
    p.set_defaults(func=cmd_load_accounts)

    p = sub.add_parser("accounts", help="List accounts visible to the caller")
    _add_context_args(p)
    _add_output_args(p, ["terminal", "json"])
    p.set_defaults(func=cmd_accounts)

    p = sub.add_parser("transactions", help="List transactions visible to the caller")
    _add_context_args(p)
    p.add_argument("--account", metavar="NUMBER", default=None)
    _add_output_args(p, ["terminal", "json", "csv"])
    p.set_defaults(func=cmd_transactions)

    p = sub.add_parser("insert", help="Record a transaction")
    _add_context_args(p)
    p.add_argument("--account", metavar="NUMBER", required=True)
    p.add_argument("--kind", required=True)
    p.add_argument("--amount", required=True, help="Signed decimal, e.g. -1234.56")
    p.add_argument("--occurred-at", default=None, help="ISO 8601 timestamp (default: now)")
    _add_output_args(p, ["terminal", "json"])
    p.set_defaults(func=cmd_insert)

    p = sub.add_parser("amend", help="Amend a transaction the caller created")
    _add_context_args(p)
    p.add_argument("--id", type=int, required=True)
    p.add_argument("--account", metavar="NUMBER", default=None)
    p.add_argument("--kind", default=None)
    p.add_argument("--amount", default=None)
    p.add_argument("--occurred-at", default=None)
    _add_output_args(p, ["terminal", "json"])
    p.set_defaults(func=cmd_amend)

    p = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.add_argument("--reload", action="store_true")
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.ERROR,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if args.no_color:
        disable_color()

    # --json is a shorthand for --format json
    args.output = getattr(args, "format", None) or ("json" if getattr(args, "json", False) else "terminal")

    store = LedgerStore()
    try:
        return args.func(store, args)
    except AccessDenied:
        # Same answer for "forbidden" and "does not exist"; -v shows the reason.
        print("  [!] Operation not permitted.")
        return 3
    except ConstraintViolation as exc:
        print(f"  [!] Invalid input -- {exc}")
        return 2
    except LedgerError as exc:
        logger.error("Command %s failed: %s", args.command, exc)
        print(f"  [!] {exc}")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
