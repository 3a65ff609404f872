"""
core/errors.py -- Exception taxonomy for LedgerGuard.

  AccessDenied         -- a write was rejected by the policy evaluator
                          (grant, ownership or tenant conditions failed).
  ConstraintViolation  -- input or referential checks failed before any
                          policy evaluation (unknown tenant, bad currency,
                          unknown kind, duplicate key).
  ContextError         -- the context carrier was misused (set twice in one
                          operation).

Reads never raise for "nothing visible": they return an empty result so a
hidden row and a missing row look the same to the caller.

None of these are transient. Callers report them; nobody retries them.

Layer rule: stdlib only.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all LedgerGuard errors."""


class AccessDenied(LedgerError):
    """Raised when the policy evaluator rejects a write.

    reason is for logs. The HTTP layer returns a generic message so clients
    cannot probe which condition failed.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ConstraintViolation(LedgerError):
    """Raised when input fails validation before any visibility check."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class ContextError(LedgerError):
    """Raised when the request context is set twice within one operation."""
