"""
formatter.py — Renders ledger rows to terminal tables, JSON or CSV.
"""

import csv
import io
import json
import os
import sys
from dataclasses import asdict
from decimal import Decimal
from typing import Optional

from ledger.models import Account, Transaction

W = 68  # output width

# ---------------------------------------------------------------------------
# ANSI color control
# ---------------------------------------------------------------------------


def _use_color() -> bool:
    """Return True if stdout is a TTY and color has not been disabled.

    Respects NO_COLOR env var (https://no-color.org) and checks sys.stdout.isatty().
    Can be overridden by calling disable_color().
    """
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


_color_enabled: Optional[bool] = None  # None = auto-detect


def disable_color() -> None:
    """Force-disable color output (called when --no-color flag is set)."""
    global _color_enabled
    _color_enabled = False


def _color_active() -> bool:
    if _color_enabled is not None:
        return _color_enabled
    return _use_color()


def _reset() -> str:
    return "\033[0m" if _color_active() else ""


def _bold() -> str:
    return "\033[1m" if _color_active() else ""


def _red() -> str:
    return "\033[91m" if _color_active() else ""


def _green() -> str:
    return "\033[92m" if _color_active() else ""


def _bar(char: str = "═") -> str:
    return char * W


# ---------------------------------------------------------------------------
# Terminal renderers
# ---------------------------------------------------------------------------


def print_accounts(accounts: list[Account]) -> None:
    bold = _bold()
    reset = _reset()
    print(f"\n{bold}{_bar()}{reset}")
    print(f"  {bold}ACCOUNTS — {len(accounts)} visible{reset}")
    print(f"{bold}{_bar()}{reset}")
    for a in accounts:
        print(f"  {a.number:<24} {a.currency:<4} tenant {a.tenant_id}")
    print(f"\n{_bar()}\n")


def print_transactions(transactions: list[Transaction]) -> None:
    """Print a ledger table, oldest first, with a per-account running total."""
    bold = _bold()
    reset = _reset()
    print(f"\n{bold}{_bar()}{reset}")
    print(f"  {bold}TRANSACTIONS — {len(transactions)} visible{reset}")
    print(f"{bold}{_bar()}{reset}")

    totals: dict[str, Decimal] = {}
    for tx in transactions:
        color = _red() if tx.amount < 0 else _green()
        day = tx.occurred_at[:10]
        print(f"  {tx.id:>5}  {day}  {tx.account_number:<18} {tx.kind:<10} {color}{tx.amount:>12}{reset}")
        totals[tx.account_number] = totals.get(tx.account_number, Decimal("0.00")) + tx.amount

    if totals:
        print(f"  {'─' * (W - 2)}")
        for number in sorted(totals):
            print(f"  {'':>5}  {'balance':<10}  {number:<18} {'':<10} {bold}{totals[number]:>12}{reset}")
    print(f"\n{_bar()}\n")


# ---------------------------------------------------------------------------
# JSON export
# ---------------------------------------------------------------------------


def to_json(rows: list) -> str:
    """Serialize dataclass rows. Decimals are written as strings, never floats."""
    return json.dumps([asdict(r) for r in rows], indent=2, default=str)


# ---------------------------------------------------------------------------
# CSV export
# ---------------------------------------------------------------------------

_FORMULA_PREFIXES = ("=", "+", "-", "@")


def _sanitize_csv_cell(value: str) -> str:
    """Prefix a tab to text cells a spreadsheet would evaluate as a formula (CWE-1236)."""
    if value and value.startswith(_FORMULA_PREFIXES):
        return "\t" + value
    return value


def to_csv(transactions: list[Transaction]) -> str:
    """Render transactions as CSV.

    Columns: id, tenant_id, account, kind, amount, occurred_at, created_by, updated_at

    Only free-text columns are sanitized; amounts are numeric and keep their sign.
    """
    headers = ["id", "tenant_id", "account", "kind", "amount", "occurred_at", "created_by", "updated_at"]

    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(headers)
    for tx in transactions:
        writer.writerow(
            [
                tx.id,
                tx.tenant_id,
                _sanitize_csv_cell(tx.account_number),
                tx.kind,
                str(tx.amount),
                tx.occurred_at,
                tx.created_by,
                tx.updated_at or "",
            ]
        )
    return buf.getvalue()
