"""Unit tests for ledger/policy.py -- pure visibility and mutation rules.

No store, no DB: every decision is made from the context, the row and the
caller's grant, so the rules can be exercised with plain dataclasses.
"""

from decimal import Decimal

import pytest

from core.context import NO_ACCESS, RequestContext
from core.errors import AccessDenied
from ledger import policy
from ledger.models import AccessGrant, Account, Transaction

ALICE = RequestContext(tenant_id=1001, user_id=501, role="user")
BOB = RequestContext(tenant_id=1001, user_id=502, role="user")
ALICE_WRONG_TENANT = RequestContext(tenant_id=1002, user_id=501, role="user")
ADMIN = RequestContext(tenant_id=1, user_id=1, role="admin")

ACME_1 = Account(id=1, tenant_id=1001, number="ACC-ACME-001", currency="USD")
GLOBEX_1 = Account(id=3, tenant_id=1002, number="ACC-GLOBEX-001", currency="EUR")

ALICE_MUTATE = AccessGrant(user_id=501, account_id=1, can_mutate=True)
BOB_READ = AccessGrant(user_id=502, account_id=1, can_mutate=False)


def _tx(**overrides) -> Transaction:
    fields = dict(
        id=10,
        tenant_id=1001,
        account_id=1,
        kind="trade",
        amount=Decimal("-1234.56"),
        created_by=501,
        occurred_at="2024-01-04T09:00:00+00:00",
    )
    fields.update(overrides)
    return Transaction(**fields)


# ---------------------------------------------------------------------------
# Read visibility
# ---------------------------------------------------------------------------


class TestReadVisibility:
    def test_grant_holder_sees_account_and_transactions(self):
        assert policy.can_read_account(ALICE, ACME_1, ALICE_MUTATE)
        assert policy.can_read_transaction(ALICE, _tx(), ALICE_MUTATE)

    def test_read_only_grant_is_enough_to_read(self):
        assert policy.can_read_account(BOB, ACME_1, BOB_READ)
        assert policy.can_read_transaction(BOB, _tx(), BOB_READ)

    def test_no_grant_hides_rows(self):
        assert not policy.can_read_account(ALICE, ACME_1, None)
        assert not policy.can_read_transaction(ALICE, _tx(), None)

    def test_someone_elses_grant_does_not_count(self):
        assert not policy.can_read_account(ALICE, ACME_1, BOB_READ)

    def test_tenant_mismatch_hides_rows_even_with_grant(self):
        assert not policy.can_read_account(ALICE_WRONG_TENANT, ACME_1, ALICE_MUTATE)
        assert not policy.can_read_transaction(ALICE_WRONG_TENANT, _tx(), ALICE_MUTATE)

    def test_anonymous_context_sees_nothing(self):
        assert not policy.can_read_account(NO_ACCESS, ACME_1, ALICE_MUTATE)
        assert not policy.can_read_transaction(NO_ACCESS, _tx(), ALICE_MUTATE)

    def test_admin_role_grants_no_implicit_visibility(self):
        assert not policy.can_read_account(ADMIN, ACME_1, None)


# ---------------------------------------------------------------------------
# Insert
# ---------------------------------------------------------------------------


class TestInsert:
    def test_mutate_grant_in_own_tenant_allows_insert(self):
        assert policy.can_insert_transaction(ALICE, _tx(id=None), ACME_1, ALICE_MUTATE)

    def test_read_only_grant_denies_insert(self):
        assert not policy.can_insert_transaction(BOB, _tx(id=None, created_by=502), ACME_1, BOB_READ)

    def test_created_by_must_be_caller(self):
        assert not policy.can_insert_transaction(ALICE, _tx(id=None, created_by=502), ACME_1, ALICE_MUTATE)

    def test_tenant_must_match_context(self):
        tx = _tx(id=None, tenant_id=1002)
        assert not policy.can_insert_transaction(ALICE, tx, ACME_1, ALICE_MUTATE)

    def test_account_from_another_tenant_is_denied(self):
        tx = _tx(id=None, account_id=GLOBEX_1.id)
        grant = AccessGrant(user_id=501, account_id=GLOBEX_1.id, can_mutate=True)
        assert not policy.can_insert_transaction(ALICE, tx, GLOBEX_1, grant)

    def test_unknown_account_is_denied(self):
        assert not policy.can_insert_transaction(ALICE, _tx(id=None), None, ALICE_MUTATE)

    def test_context_in_other_tenant_is_denied(self):
        tx = _tx(id=None, tenant_id=1002)
        assert not policy.can_insert_transaction(ALICE_WRONG_TENANT, tx, ACME_1, ALICE_MUTATE)

    def test_require_insert_raises_access_denied_with_reason(self):
        with pytest.raises(AccessDenied) as exc_info:
            policy.require_insert(BOB, _tx(id=None, created_by=502), ACME_1, BOB_READ)
        assert "read-only" in exc_info.value.reason

    def test_require_insert_passes_silently(self):
        policy.require_insert(ALICE, _tx(id=None), ACME_1, ALICE_MUTATE)


# ---------------------------------------------------------------------------
# Amend
# ---------------------------------------------------------------------------


class TestAmend:
    def test_creator_with_mutate_grant_may_amend_amount(self):
        original = _tx()
        amended = _tx(amount=Decimal("-1200.00"))
        assert policy.can_amend_transaction(ALICE, original, amended, ALICE_MUTATE)

    def test_non_creator_may_not_amend(self):
        bob_mutate = AccessGrant(user_id=502, account_id=1, can_mutate=True)
        assert not policy.can_amend_transaction(BOB, _tx(), _tx(amount=Decimal("1")), bob_mutate)

    def test_tenant_reassignment_denied_even_for_creator(self):
        assert not policy.can_amend_transaction(ALICE, _tx(), _tx(tenant_id=1002), ALICE_MUTATE)

    def test_creator_reassignment_denied_even_for_creator(self):
        assert not policy.can_amend_transaction(ALICE, _tx(), _tx(created_by=502), ALICE_MUTATE)

    def test_downgraded_grant_denies_amend(self):
        read_only = AccessGrant(user_id=501, account_id=1, can_mutate=False)
        assert not policy.can_amend_transaction(ALICE, _tx(), _tx(kind="fee"), read_only)

    def test_revoked_grant_denies_amend(self):
        assert not policy.can_amend_transaction(ALICE, _tx(), _tx(kind="fee"), None)

    def test_require_amend_names_the_reassignment(self):
        with pytest.raises(AccessDenied, match="tenant reassignment"):
            policy.require_amend(ALICE, _tx(), _tx(tenant_id=1002), ALICE_MUTATE)


# ---------------------------------------------------------------------------
# Account mutation / administration
# ---------------------------------------------------------------------------


class TestAdministration:
    def test_only_admin_may_mutate_accounts(self):
        assert policy.can_mutate_account(ADMIN)
        assert not policy.can_mutate_account(ALICE)
        assert not policy.can_mutate_account(NO_ACCESS)

    def test_anonymous_context_with_admin_role_is_not_admin(self):
        assert not policy.is_admin(RequestContext(tenant_id=-1, user_id=-1, role="admin"))

    def test_require_admin_raises_for_users(self):
        with pytest.raises(AccessDenied):
            policy.require_admin(ALICE, "account create")
        policy.require_admin(ADMIN, "account create")
