"""
Credit / kickback ledger tests.

Verifies:
- available == limit - used and outstanding <= used after every operation
- Rejected operations leave balances and history untouched
- History grows by exactly one row per successful mutation
- Kind-specific operations (payments on credit, usage reset on kickback)
- Overdue detection, auto-suspension and low-balance reporting
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from conftest import seed_account
from topup.exceptions import (
    AccountExists,
    AccountNotFound,
    InsufficientBalance,
    InvalidState,
    OperationTimeout,
    ValidationError,
)
from topup.extensions import db
from topup.models import LedgerAccount
from topup.services import ledger_service
from topup.time_utils import utcnow


def snapshot(kind="CREDIT", retailer_id="R-1"):
    a = ledger_service.get_account(kind, retailer_id)
    return {
        "limit": a.limit_cents,
        "used": a.used_cents,
        "available": a.available_cents,
        "outstanding": a.outstanding_cents,
        "status": a.status,
    }


def assert_balanced(kind="CREDIT", retailer_id="R-1"):
    s = snapshot(kind, retailer_id)
    assert s["available"] == s["limit"] - s["used"]
    assert 0 <= s["outstanding"] <= s["used"]
    assert min(s["limit"], s["used"], s["available"]) >= 0


def history_types(kind="CREDIT", retailer_id="R-1"):
    return [tx.transaction_type for tx in ledger_service.history(kind, retailer_id)]


# =============================================================================
# ACCOUNTS
# =============================================================================


class TestOpenAccount:

    def test_open_sets_balances_and_history(self, db_session):
        account = seed_account(limit_cents=1000)
        assert (account.limit_cents, account.used_cents, account.available_cents) == (1000, 0, 1000)
        assert account.payment_terms_days == 30
        assert history_types() == ["CREDIT_INCREASE"]

    def test_duplicate_account_rejected(self, credit_account):
        with pytest.raises(AccountExists):
            seed_account()
        assert len(ledger_service.list_accounts("credit")) == 1

    def test_same_retailer_can_hold_both_kinds(self, credit_account):
        seed_account("KICKBACK", limit_cents=500)
        assert ledger_service.get_account("kickback", "R-1").limit_cents == 500
        assert ledger_service.get_account("credit", "R-1").limit_cents == 1000

    def test_unknown_account(self, db_session):
        with pytest.raises(AccountNotFound):
            ledger_service.get_account("CREDIT", "missing")

    @pytest.mark.parametrize("kind", ["", "LOYALTY"])
    def test_unknown_kind(self, db_session, kind):
        with pytest.raises(ValidationError):
            ledger_service.open_account(kind, "R-1", 100)

    @pytest.mark.parametrize("limit", [-1, 10.5, "100", True])
    def test_limit_must_be_integer_cents(self, db_session, limit):
        with pytest.raises(ValidationError):
            ledger_service.open_account("CREDIT", "R-1", limit)

    def test_payment_terms_bounds(self, db_session):
        with pytest.raises(ValidationError):
            seed_account(payment_terms_days=0)
        with pytest.raises(ValidationError):
            seed_account(payment_terms_days=366)


# =============================================================================
# DEBIT
# =============================================================================


class TestDebit:

    def test_debit_then_reject_scenario(self, credit_account):
        tx = ledger_service.debit("CREDIT", "R-1", 700, order_id="ORD-1")
        assert tx.transaction_type == "ORDER_PLACED"
        assert tx.balance_after_cents == 300
        assert snapshot() == {"limit": 1000, "used": 700, "available": 300, "outstanding": 700, "status": "ACTIVE"}

        before = snapshot()
        with pytest.raises(InsufficientBalance) as exc:
            ledger_service.debit("CREDIT", "R-1", 400, order_id="ORD-2")
        assert exc.value.details["available_cents"] == 300
        assert snapshot() == before
        assert history_types() == ["CREDIT_INCREASE", "ORDER_PLACED"]

    def test_debit_exact_available(self, credit_account):
        ledger_service.debit("CREDIT", "R-1", 1000)
        assert snapshot()["available"] == 0
        assert_balanced()

    @pytest.mark.parametrize("amount", [0, -5])
    def test_amount_must_be_positive(self, credit_account, amount):
        with pytest.raises(ValidationError):
            ledger_service.debit("CREDIT", "R-1", amount)

    def test_suspended_account_cannot_be_debited(self, credit_account):
        ledger_service.set_status("CREDIT", "R-1", "SUSPENDED", reason="manual")
        with pytest.raises(InvalidState):
            ledger_service.debit("CREDIT", "R-1", 10)
        assert snapshot()["used"] == 0

    def test_kickback_debit_leaves_outstanding_zero(self, db_session):
        seed_account("KICKBACK", limit_cents=500)
        ledger_service.debit("KICKBACK", "R-1", 200)
        s = snapshot("KICKBACK")
        assert (s["used"], s["available"], s["outstanding"]) == (200, 300, 0)

    def test_credit_debit_starts_due_date(self, credit_account):
        ledger_service.debit("CREDIT", "R-1", 100)
        account = ledger_service.get_account("CREDIT", "R-1")
        assert account.next_due_at is not None
        assert account.next_due_at > utcnow() + timedelta(days=29)

    def test_expired_deadline_applies_nothing(self, credit_account):
        with pytest.raises(OperationTimeout):
            ledger_service.debit("CREDIT", "R-1", 100, timeout=0)
        assert snapshot()["used"] == 0
        assert len(history_types()) == 1

    def test_low_balance_alert_logged(self, db_session, caplog):
        seed_account(low_balance_threshold_cents=200)
        with caplog.at_level("WARNING"):
            ledger_service.debit("CREDIT", "R-1", 850)
        assert "Low credit balance" in caplog.text
        assert [a.retailer_id for a in ledger_service.low_balance_accounts("CREDIT")] == ["R-1"]


# =============================================================================
# LIMIT / PAYMENT / REFUND
# =============================================================================


class TestBalanceChanges:

    def test_limit_increase_scenario(self, credit_account):
        ledger_service.debit("CREDIT", "R-1", 700)
        tx = ledger_service.adjust_limit("CREDIT", "R-1", 1500, operator_id="ops", reason="good payer")
        assert tx.transaction_type == "CREDIT_INCREASE"
        assert tx.amount_cents == 500
        assert tx.balance_after_cents == 800
        assert snapshot()["available"] == 800
        assert_balanced()

    def test_limit_decrease(self, credit_account):
        tx = ledger_service.adjust_limit("CREDIT", "R-1", 600)
        assert tx.transaction_type == "CREDIT_DECREASE"
        assert tx.amount_cents == 400
        assert snapshot()["available"] == 600

    def test_limit_decrease_below_used_rejected(self, credit_account):
        ledger_service.debit("CREDIT", "R-1", 700)
        with pytest.raises(InvalidState):
            ledger_service.adjust_limit("CREDIT", "R-1", 500)
        assert snapshot()["limit"] == 1000
        assert_balanced()

    def test_refund_scenario(self, db_session):
        seed_account(limit_cents=700)
        ledger_service.debit("CREDIT", "R-1", 700)
        tx = ledger_service.refund("CREDIT", "R-1", 200, order_id="ORD-1")
        assert tx.transaction_type == "REFUND"
        s = snapshot()
        assert (s["used"], s["available"], s["outstanding"]) == (500, 200, 500)
        assert_balanced()

    def test_refund_floors_at_zero(self, credit_account):
        ledger_service.debit("CREDIT", "R-1", 100)
        ledger_service.refund("CREDIT", "R-1", 500)
        s = snapshot()
        assert (s["used"], s["available"], s["outstanding"]) == (0, 1000, 0)

    def test_payment_reduces_outstanding_and_used(self, credit_account):
        ledger_service.debit("CREDIT", "R-1", 600)
        tx = ledger_service.receive_payment("CREDIT", "R-1", 250, operator_id="ops")
        assert tx.transaction_type == "PAYMENT_RECEIVED"
        s = snapshot()
        assert (s["used"], s["available"], s["outstanding"]) == (350, 650, 350)
        account = ledger_service.get_account("CREDIT", "R-1")
        assert account.last_payment_at is not None
        assert account.next_due_at is not None

    def test_full_payment_clears_due_date(self, credit_account):
        ledger_service.debit("CREDIT", "R-1", 600)
        ledger_service.receive_payment("CREDIT", "R-1", 900)
        account = ledger_service.get_account("CREDIT", "R-1")
        assert (account.used_cents, account.outstanding_cents, account.available_cents) == (0, 0, 1000)
        assert account.next_due_at is None

    def test_payment_on_kickback_rejected(self, db_session):
        seed_account("KICKBACK", limit_cents=500)
        with pytest.raises(InvalidState):
            ledger_service.receive_payment("KICKBACK", "R-1", 100)
        assert len(history_types("KICKBACK")) == 1


# =============================================================================
# STATUS / RESET / SETTINGS
# =============================================================================


class TestAdministration:

    def test_status_change_appends_zero_adjustment(self, credit_account):
        before = snapshot()
        tx = ledger_service.set_status("CREDIT", "R-1", "BLOCKED", operator_id="ops", reason="fraud check")
        assert tx.transaction_type == "ADJUSTMENT"
        assert tx.amount_cents == 0
        assert "ACTIVE to BLOCKED" in tx.description
        after = snapshot()
        assert after["status"] == "BLOCKED"
        assert {k: v for k, v in after.items() if k != "status"} == {
            k: v for k, v in before.items() if k != "status"
        }

    def test_unknown_status_rejected(self, credit_account):
        with pytest.raises(ValidationError):
            ledger_service.set_status("CREDIT", "R-1", "CLOSED")

    def test_kickback_reset(self, db_session):
        seed_account("KICKBACK", limit_cents=500)
        ledger_service.debit("KICKBACK", "R-1", 450)
        tx = ledger_service.reset_usage("KICKBACK", "R-1", operator_id="ops")
        assert tx.transaction_type == "ADJUSTMENT"
        assert tx.amount_cents == 450
        s = snapshot("KICKBACK")
        assert (s["used"], s["available"]) == (0, 500)

    def test_reset_on_credit_rejected(self, credit_account):
        with pytest.raises(InvalidState):
            ledger_service.reset_usage("CREDIT", "R-1")

    def test_update_settings_leaves_history_alone(self, credit_account):
        account = ledger_service.update_settings(
            "CREDIT", "R-1",
            {"payment_terms_days": 14, "low_balance_threshold_cents": 100, "notes": "VIP"},
            operator_id="ops",
        )
        assert account.payment_terms_days == 14
        assert account.low_balance_threshold_cents == 100
        assert account.notes == "VIP"
        assert len(history_types()) == 1

    def test_update_settings_rejects_balance_fields(self, credit_account):
        with pytest.raises(ValidationError):
            ledger_service.update_settings("CREDIT", "R-1", {"used_cents": 0})

    def test_has_sufficient_balance(self, credit_account):
        assert ledger_service.has_sufficient_balance("CREDIT", "R-1", 1000)
        assert not ledger_service.has_sufficient_balance("CREDIT", "R-1", 1001)
        assert not ledger_service.has_sufficient_balance("CREDIT", "nobody", 1)
        ledger_service.set_status("CREDIT", "R-1", "SUSPENDED")
        assert not ledger_service.has_sufficient_balance("CREDIT", "R-1", 1)

    def test_usage_percentage(self, credit_account):
        ledger_service.debit("CREDIT", "R-1", 333)
        assert str(ledger_service.usage_percentage("CREDIT", "R-1")) == "33.30"

    def test_history_sequence_is_dense(self, credit_account):
        ledger_service.debit("CREDIT", "R-1", 100)
        ledger_service.refund("CREDIT", "R-1", 50)
        ledger_service.receive_payment("CREDIT", "R-1", 10)
        ledger_service.set_status("CREDIT", "R-1", "PENDING_REVIEW")
        rows = ledger_service.history("CREDIT", "R-1")
        assert [r.sequence for r in rows] == [1, 2, 3, 4, 5]
        assert len({r.transaction_ref for r in rows}) == 5
        assert_balanced()


# =============================================================================
# MONITORING
# =============================================================================


class TestMonitoring:

    def _make_overdue(self, retailer_id, days_overdue):
        ledger_service.debit("CREDIT", retailer_id, 100)
        db.session.execute(
            update(LedgerAccount)
            .where(LedgerAccount.retailer_id == retailer_id, LedgerAccount.kind == "CREDIT")
            .values(next_due_at=utcnow() - timedelta(days=days_overdue), version_id=LedgerAccount.version_id + 1)
        )
        db.session.commit()

    def test_overdue_accounts(self, db_session):
        seed_account(retailer_id="R-1")
        seed_account(retailer_id="R-2")
        seed_account(retailer_id="R-3")
        self._make_overdue("R-1", 5)
        ledger_service.debit("CREDIT", "R-2", 100)
        assert [a.retailer_id for a in ledger_service.overdue_accounts()] == ["R-1"]

    def test_suspend_overdue_after_grace(self, db_session):
        seed_account(retailer_id="R-1")
        seed_account(retailer_id="R-2")
        self._make_overdue("R-1", 45)
        self._make_overdue("R-2", 10)

        suspended = ledger_service.suspend_overdue(grace_days=30)
        assert [a.retailer_id for a in suspended] == ["R-1"]
        assert snapshot(retailer_id="R-1")["status"] == "SUSPENDED"
        assert snapshot(retailer_id="R-2")["status"] == "ACTIVE"
        assert history_types(retailer_id="R-1")[-1] == "ADJUSTMENT"

        assert ledger_service.suspend_overdue(grace_days=30) == []

    def test_ledger_statistics(self, db_session):
        seed_account(retailer_id="R-1", limit_cents=1000)
        seed_account(retailer_id="R-2", limit_cents=3000)
        ledger_service.debit("CREDIT", "R-1", 1000)
        ledger_service.set_status("CREDIT", "R-2", "SUSPENDED")

        stats = ledger_service.ledger_statistics("credit")
        assert stats["accounts"] == 2
        assert stats["by_status"]["ACTIVE"] == 1
        assert stats["by_status"]["SUSPENDED"] == 1
        assert stats["total_limit_cents"] == 4000
        assert stats["total_used_cents"] == 1000
        assert stats["total_available_cents"] == 3000
        assert stats["usage_percentage"] == "25.00"
        assert stats["overdue_accounts"] == 0
