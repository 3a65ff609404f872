"""Unit tests for ledger/store.py -- policy-filtered queries and guarded writes.

Covers:
- The two-tenant walkthrough: (1001, 501) reads and inserts, (1001, 502)
  reads only, (1002, 501) sees nothing and inserts nothing
- Tenant isolation regardless of grants
- Revocation and downgrade take effect on the next call
- Insert/amend denials: created_by mismatch, tenant and creator reassignment
- Amend to another account needs a mutate grant on both
- A revoke committed between the grant check and the write aborts the write
- Input constraints raise ConstraintViolation before any policy check
- Provisioning is admin only
- Ambient context fallback when ctx is omitted
"""

from decimal import Decimal

import pytest

from core import context
from core.context import NO_ACCESS_ID, RequestContext
from core.errors import AccessDenied, ConstraintViolation
from ledger import policy
from ledger.models import AccessGrant, Account, Tenant, Transaction, User
from ledger.store import LedgerStore

ALICE = RequestContext(tenant_id=1001, user_id=501, role="user")
BOB = RequestContext(tenant_id=1001, user_id=502, role="user")
CAROL = RequestContext(tenant_id=1002, user_id=601, role="user")
ALICE_IN_GLOBEX = RequestContext(tenant_id=1002, user_id=501, role="user")


def _acct(store, number: str) -> Account:
    return store.get_account_by_number(number)


def _trade(store, ctx: RequestContext, number: str = "ACC-ACME-002", amount: str = "-1234.56", **overrides) -> Transaction:
    fields = dict(
        tenant_id=ctx.tenant_id,
        account_id=_acct(store, number).id,
        kind="trade",
        amount=Decimal(amount),
        created_by=ctx.user_id,
    )
    fields.update(overrides)
    return Transaction(**fields)


# ---------------------------------------------------------------------------
# The walkthrough scenario
# ---------------------------------------------------------------------------


class TestWalkthrough:
    def test_alice_sees_seeded_entries_on_acme_001(self, seeded_store):
        rows = seeded_store.list_visible_transactions(ALICE, account_number="ACC-ACME-001")
        assert [(r.kind, r.amount) for r in rows] == [
            ("deposit", Decimal("10000.00")),
            ("fee", Decimal("-25.00")),
        ]
        assert all(r.account_number == "ACC-ACME-001" for r in rows)

    def test_alice_inserts_trade_on_acme_002(self, seeded_store):
        stored = seeded_store.insert_transaction(_trade(seeded_store, ALICE), ALICE)
        assert stored.id is not None
        assert stored.amount == Decimal("-1234.56")
        assert stored.account_number == "ACC-ACME-002"
        rows = seeded_store.list_visible_transactions(ALICE, account_number="ACC-ACME-002")
        assert [r.id for r in rows] == [stored.id]

    def test_bob_reads_the_same_listing(self, seeded_store):
        alice_rows = seeded_store.list_visible_transactions(ALICE, account_number="ACC-ACME-001")
        bob_rows = seeded_store.list_visible_transactions(BOB, account_number="ACC-ACME-001")
        assert [r.id for r in bob_rows] == [r.id for r in alice_rows]

    def test_bob_cannot_insert_anything(self, seeded_store):
        for number in ("ACC-ACME-001", "ACC-ACME-002"):
            with pytest.raises(AccessDenied):
                seeded_store.insert_transaction(_trade(seeded_store, BOB, number), BOB)
        assert len(seeded_store.list_visible_transactions(ALICE)) == 2

    def test_alice_in_wrong_tenant_sees_nothing(self, seeded_store):
        assert seeded_store.list_visible_transactions(ALICE_IN_GLOBEX) == []
        assert seeded_store.list_visible_accounts(ALICE_IN_GLOBEX) == []

    def test_alice_in_wrong_tenant_cannot_insert(self, seeded_store):
        with pytest.raises(AccessDenied):
            seeded_store.insert_transaction(_trade(seeded_store, ALICE_IN_GLOBEX), ALICE_IN_GLOBEX)
        globex = _acct(seeded_store, "ACC-GLOBEX-001")
        with pytest.raises(AccessDenied):
            seeded_store.insert_transaction(
                _trade(seeded_store, ALICE_IN_GLOBEX, "ACC-GLOBEX-001", account_id=globex.id),
                ALICE_IN_GLOBEX,
            )


# ---------------------------------------------------------------------------
# Visibility
# ---------------------------------------------------------------------------


class TestVisibility:
    def test_accounts_listing_follows_grants(self, seeded_store):
        assert [a.number for a in seeded_store.list_visible_accounts(ALICE)] == ["ACC-ACME-001", "ACC-ACME-002"]
        assert [a.number for a in seeded_store.list_visible_accounts(CAROL)] == ["ACC-GLOBEX-001"]

    def test_tenants_never_see_each_other(self, seeded_store):
        acme = {r.tenant_id for r in seeded_store.list_visible_transactions(ALICE)}
        globex = {r.tenant_id for r in seeded_store.list_visible_transactions(CAROL)}
        assert acme == {1001}
        assert globex == {1002}

    def test_cross_tenant_grant_cannot_be_created(self, seeded_store, admin_ctx):
        globex = _acct(seeded_store, "ACC-GLOBEX-001")
        with pytest.raises(ConstraintViolation):
            seeded_store.grant_access(AccessGrant(user_id=501, account_id=globex.id, can_mutate=True), admin_ctx)

    def test_user_without_grant_sees_empty_listing(self, seeded_store, admin_ctx):
        seeded_store.create_user(User(id=503, login="dave@acme.test", display_name="Dave", tenant_id=1001), admin_ctx)
        dave = RequestContext(tenant_id=1001, user_id=503, role="user")
        assert seeded_store.list_visible_accounts(dave) == []
        assert seeded_store.list_visible_transactions(dave) == []

    def test_hidden_and_missing_transactions_look_alike(self, seeded_store):
        carol_tx = seeded_store.list_visible_transactions(CAROL)[0]
        assert seeded_store.get_visible_transaction(carol_tx.id, ALICE) is None
        assert seeded_store.get_visible_transaction(999_999, ALICE) is None
        assert seeded_store.get_visible_transaction(carol_tx.id, CAROL).id == carol_tx.id

    def test_unknown_account_filter_returns_empty(self, seeded_store):
        assert seeded_store.list_visible_transactions(ALICE, account_number="ACC-NOPE") == []
        assert seeded_store.list_visible_transactions(ALICE, account_number="ACC-GLOBEX-001") == []

    def test_admin_has_no_implicit_visibility(self, seeded_store, admin_ctx):
        assert seeded_store.list_visible_transactions(admin_ctx) == []

    def test_unbound_ambient_context_sees_nothing(self, seeded_store):
        assert seeded_store.list_visible_transactions() == []
        assert seeded_store.list_visible_accounts() == []

    def test_ambient_context_is_used_when_ctx_omitted(self, seeded_store):
        with context.scope(ALICE):
            assert len(seeded_store.list_visible_transactions()) == 2


# ---------------------------------------------------------------------------
# Revocation / downgrade
# ---------------------------------------------------------------------------


class TestGrantChanges:
    def test_revocation_hides_rows_on_next_call(self, seeded_store, admin_ctx):
        acme_1 = _acct(seeded_store, "ACC-ACME-001")
        assert len(seeded_store.list_visible_transactions(BOB)) == 2
        assert seeded_store.revoke_access(502, acme_1.id, admin_ctx) is True
        assert seeded_store.get_grant(502, acme_1.id) is None
        assert seeded_store.list_visible_transactions(BOB) == []
        assert [a.number for a in seeded_store.list_visible_accounts(BOB)] == ["ACC-ACME-002"]

    def test_revoking_missing_grant_returns_false(self, seeded_store, admin_ctx):
        assert seeded_store.revoke_access(502, 999, admin_ctx) is False

    def test_downgrade_blocks_next_insert(self, seeded_store, admin_ctx):
        acme_2 = _acct(seeded_store, "ACC-ACME-002")
        seeded_store.grant_access(AccessGrant(user_id=501, account_id=acme_2.id, can_mutate=False), admin_ctx)
        with pytest.raises(AccessDenied):
            seeded_store.insert_transaction(_trade(seeded_store, ALICE), ALICE)

    def test_upgrade_allows_insert(self, seeded_store, admin_ctx):
        acme_2 = _acct(seeded_store, "ACC-ACME-002")
        grant = seeded_store.grant_access(AccessGrant(user_id=502, account_id=acme_2.id, can_mutate=True), admin_ctx)
        assert grant.can_mutate is True
        assert seeded_store.get_grant(502, acme_2.id).can_mutate is True
        stored = seeded_store.insert_transaction(_trade(seeded_store, BOB), BOB)
        assert stored.created_by == 502

    def test_revoke_blocks_amend(self, seeded_store, admin_ctx):
        fee = seeded_store.list_visible_transactions(ALICE, account_number="ACC-ACME-001")[1]
        seeded_store.revoke_access(501, fee.account_id, admin_ctx)
        with pytest.raises(AccessDenied):
            seeded_store.amend_transaction(fee.id, ALICE, amount="-30.00")


# ---------------------------------------------------------------------------
# Insert rules
# ---------------------------------------------------------------------------


class TestInsert:
    def test_created_by_mismatch_is_denied(self, seeded_store):
        with pytest.raises(AccessDenied):
            seeded_store.insert_transaction(_trade(seeded_store, ALICE, created_by=502), ALICE)

    def test_tenant_mismatch_is_denied(self, seeded_store):
        with pytest.raises(AccessDenied):
            seeded_store.insert_transaction(_trade(seeded_store, ALICE, tenant_id=1002), ALICE)

    def test_unknown_account_is_denied(self, seeded_store):
        with pytest.raises(AccessDenied):
            seeded_store.insert_transaction(_trade(seeded_store, ALICE, account_id=NO_ACCESS_ID), ALICE)

    def test_unbound_context_is_denied(self, seeded_store):
        with pytest.raises(AccessDenied):
            seeded_store.insert_transaction(_trade(seeded_store, ALICE))

    def test_denied_insert_writes_nothing(self, seeded_store):
        before = len(seeded_store.list_visible_transactions(ALICE))
        with pytest.raises(AccessDenied):
            seeded_store.insert_transaction(_trade(seeded_store, ALICE, created_by=502), ALICE)
        assert len(seeded_store.list_visible_transactions(ALICE)) == before

    def test_occurred_at_defaults_to_now_and_is_utc(self, seeded_store):
        stored = seeded_store.insert_transaction(_trade(seeded_store, ALICE), ALICE)
        assert stored.occurred_at.endswith("+00:00")

    def test_naive_timestamp_is_treated_as_utc(self, seeded_store):
        stored = seeded_store.insert_transaction(
            _trade(seeded_store, ALICE, occurred_at="2024-02-01T12:00:00"), ALICE
        )
        assert stored.occurred_at == "2024-02-01T12:00:00+00:00"


class TestConstraints:
    @pytest.mark.parametrize(
        ("overrides", "field"),
        [
            ({"kind": "refund"}, "kind"),
            ({"amount": "12.345"}, "amount"),
            ({"amount": "NaN"}, "amount"),
            ({"amount": "abc"}, "amount"),
            ({"amount": "1" + "0" * 29}, "amount"),
            ({"occurred_at": "yesterday"}, "occurred_at"),
            ({"tenant_id": 4242}, "tenant_id"),
        ],
    )
    def test_bad_input_raises_constraint_violation(self, seeded_store, overrides, field):
        with pytest.raises(ConstraintViolation) as exc_info:
            seeded_store.insert_transaction(_trade(seeded_store, ALICE, **overrides), ALICE)
        assert exc_info.value.field == field

    def test_kind_is_case_insensitive(self, seeded_store):
        stored = seeded_store.insert_transaction(_trade(seeded_store, ALICE, kind="TRADE"), ALICE)
        assert stored.kind == "trade"

    def test_bad_currency_rejected(self, store, admin_ctx):
        store.create_tenant(Tenant(id=1001, name="ACME Capital"), admin_ctx)
        with pytest.raises(ConstraintViolation, match="currency"):
            store.create_account(Account(tenant_id=1001, number="ACC-X", currency="US"), admin_ctx)

    def test_account_in_unknown_tenant_rejected(self, store, admin_ctx):
        with pytest.raises(ConstraintViolation, match="tenant"):
            store.create_account(Account(tenant_id=4242, number="ACC-X", currency="USD"), admin_ctx)

    def test_duplicate_account_number_rejected(self, seeded_store, admin_ctx):
        with pytest.raises(ConstraintViolation, match="already exists"):
            seeded_store.create_account(Account(tenant_id=1001, number="ACC-ACME-001", currency="USD"), admin_ctx)

    def test_duplicate_login_rejected(self, seeded_store, admin_ctx):
        with pytest.raises(ConstraintViolation, match="already taken"):
            seeded_store.create_user(
                User(login="alice@acme.test", display_name="Alice 2", tenant_id=1001), admin_ctx
            )


# ---------------------------------------------------------------------------
# Amend rules
# ---------------------------------------------------------------------------


class TestAmend:
    def _fee(self, store) -> Transaction:
        return store.list_visible_transactions(ALICE, account_number="ACC-ACME-001")[1]

    def test_creator_amends_amount_and_kind(self, seeded_store):
        fee = self._fee(seeded_store)
        amended = seeded_store.amend_transaction(fee.id, ALICE, amount="-30.00", kind="withdrawal")
        assert amended.amount == Decimal("-30.00")
        assert amended.kind == "withdrawal"
        assert amended.updated_at is not None
        assert seeded_store.get_visible_transaction(fee.id, ALICE).amount == Decimal("-30.00")

    def test_read_only_user_cannot_amend(self, seeded_store):
        with pytest.raises(AccessDenied):
            seeded_store.amend_transaction(self._fee(seeded_store).id, BOB, amount="-30.00")

    def test_tenant_reassignment_denied_for_creator(self, seeded_store):
        with pytest.raises(AccessDenied):
            seeded_store.amend_transaction(self._fee(seeded_store).id, ALICE, tenant_id=1002)

    def test_creator_reassignment_denied_for_creator(self, seeded_store):
        with pytest.raises(AccessDenied):
            seeded_store.amend_transaction(self._fee(seeded_store).id, ALICE, created_by=502)

    def test_hidden_transaction_reported_as_denied(self, seeded_store):
        carol_tx = seeded_store.list_visible_transactions(CAROL)[0]
        with pytest.raises(AccessDenied, match="not found"):
            seeded_store.amend_transaction(carol_tx.id, ALICE, amount="1.00")

    def test_move_to_account_with_mutate_grant(self, seeded_store):
        fee = self._fee(seeded_store)
        acme_2 = _acct(seeded_store, "ACC-ACME-002")
        moved = seeded_store.amend_transaction(fee.id, ALICE, account_id=acme_2.id)
        assert moved.account_number == "ACC-ACME-002"

    def test_move_to_read_only_account_denied(self, seeded_store, admin_ctx):
        fee = self._fee(seeded_store)
        acme_2 = _acct(seeded_store, "ACC-ACME-002")
        seeded_store.grant_access(AccessGrant(user_id=501, account_id=acme_2.id, can_mutate=False), admin_ctx)
        with pytest.raises(AccessDenied):
            seeded_store.amend_transaction(fee.id, ALICE, account_id=acme_2.id)

    def test_move_to_other_tenant_account_denied(self, seeded_store):
        globex = _acct(seeded_store, "ACC-GLOBEX-001")
        with pytest.raises(AccessDenied):
            seeded_store.amend_transaction(self._fee(seeded_store).id, ALICE, account_id=globex.id)

    def test_unknown_field_rejected(self, seeded_store):
        with pytest.raises(ConstraintViolation):
            seeded_store.amend_transaction(self._fee(seeded_store).id, ALICE, memo="hi")

    def test_empty_timestamp_rejected_on_amend(self, seeded_store):
        fee = self._fee(seeded_store)
        with pytest.raises(ConstraintViolation) as exc_info:
            seeded_store.amend_transaction(fee.id, ALICE, occurred_at="")
        assert exc_info.value.field == "occurred_at"
        assert seeded_store.get_visible_transaction(fee.id, ALICE).occurred_at == fee.occurred_at


# ---------------------------------------------------------------------------
# Revoke racing a write
# ---------------------------------------------------------------------------


class TestConcurrentRevoke:
    """A second store revokes the grant right after the policy check passes."""

    def _revoke_after(self, monkeypatch, store, admin_ctx, check_name: str, user_id: int, account_id: int) -> None:
        check = getattr(policy, check_name)

        def check_then_revoke(*args, **kwargs):
            check(*args, **kwargs)
            other = LedgerStore(db_url=str(store.engine.url))
            try:
                assert other.revoke_access(user_id, account_id, admin_ctx) is True
            finally:
                other.close()

        monkeypatch.setattr(policy, check_name, check_then_revoke)

    def test_insert_is_rolled_back_and_denied(self, seeded_file_store, monkeypatch):
        store, admin_ctx = seeded_file_store
        acme_2 = _acct(store, "ACC-ACME-002")
        before = store.list_visible_transactions(BOB, account_number="ACC-ACME-002")
        self._revoke_after(monkeypatch, store, admin_ctx, "require_insert", 501, acme_2.id)

        with pytest.raises(AccessDenied, match="concurrent grant change"):
            store.insert_transaction(_trade(store, ALICE), ALICE)

        assert store.list_visible_transactions(BOB, account_number="ACC-ACME-002") == before
        assert store.get_grant(501, acme_2.id) is None

    def test_amend_is_rolled_back_and_denied(self, seeded_file_store, monkeypatch):
        store, admin_ctx = seeded_file_store
        fee = store.list_visible_transactions(ALICE, account_number="ACC-ACME-001")[1]
        self._revoke_after(monkeypatch, store, admin_ctx, "require_amend", 501, fee.account_id)

        with pytest.raises(AccessDenied, match="concurrent grant change"):
            store.amend_transaction(fee.id, ALICE, amount="-30.00")

        unchanged = store.get_visible_transaction(fee.id, BOB)
        assert unchanged.amount == Decimal("-25.00")
        assert unchanged.updated_at is None
        assert store.get_grant(501, fee.account_id) is None


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


class TestProvisioning:
    def test_users_cannot_create_accounts(self, seeded_store):
        with pytest.raises(AccessDenied):
            seeded_store.create_account(Account(tenant_id=1001, number="ACC-ACME-009", currency="USD"), ALICE)

    def test_users_cannot_update_accounts(self, seeded_store):
        acme_1 = _acct(seeded_store, "ACC-ACME-001")
        with pytest.raises(AccessDenied):
            seeded_store.update_account(acme_1.id, ALICE, currency="EUR")

    def test_users_cannot_grant_themselves(self, seeded_store):
        acme_1 = _acct(seeded_store, "ACC-ACME-001")
        with pytest.raises(AccessDenied):
            seeded_store.grant_access(AccessGrant(user_id=502, account_id=acme_1.id, can_mutate=True), BOB)

    def test_admin_updates_account_currency(self, seeded_store, admin_ctx):
        acme_1 = _acct(seeded_store, "ACC-ACME-001")
        assert seeded_store.update_account(acme_1.id, admin_ctx, currency="eur") is True
        assert seeded_store.get_account(acme_1.id).currency == "EUR"

    def test_account_tenant_cannot_be_changed(self, seeded_store, admin_ctx):
        acme_1 = _acct(seeded_store, "ACC-ACME-001")
        with pytest.raises(ConstraintViolation):
            seeded_store.update_account(acme_1.id, admin_ctx, tenant_id=1002)

    def test_bootstrap_admin_refuses_second_admin(self, seeded_store):
        with pytest.raises(AccessDenied):
            seeded_store.bootstrap_admin(
                User(login="root2@ops.test", display_name="Root 2", tenant_id=1), Tenant(id=1, name="Operations")
            )

    def test_list_users_by_tenant(self, seeded_store):
        logins = [u.login for u in seeded_store.list_users(tenant_id=1001)]
        assert logins == ["alice@acme.test", "bob@acme.test"]
