"""
CLI command tests (flask stock / ledger / system groups).
"""

from datetime import timedelta

from cryptography.fernet import Fernet
from sqlalchemy import update

from conftest import seed_account, seed_pool
from topup.extensions import db
from topup.models import LedgerAccount, StockPool
from topup.services import ledger_service
from topup.time_utils import utcnow


class TestStockCommands:

    def test_list_and_stats(self, app, db_session):
        seed_pool()
        runner = app.test_cli_runner()

        result = runner.invoke(args=["stock", "list"])
        assert result.exit_code == 0
        assert "Telia 100 batch" in result.output

        result = runner.invoke(args=["stock", "stats"])
        assert result.exit_code == 0
        assert "PIN" in result.output

    def test_list_empty(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["stock", "list"])
        assert "No stock pools found." in result.output

    def test_low(self, app, db_session):
        seed_pool()
        result = app.test_cli_runner().invoke(args=["stock", "low", "--threshold", "5"])
        assert "WARN pool" in result.output

    def test_reconcile_fix(self, app, db_session):
        pool = seed_pool()
        db.session.execute(update(StockPool).where(StockPool.id == pool.id).values(available_quantity=9))
        db.session.commit()
        runner = app.test_cli_runner()

        result = runner.invoke(args=["stock", "reconcile"])
        assert "FAIL pool" in result.output
        assert "--fix" in result.output

        result = runner.invoke(args=["stock", "reconcile", "--fix"])
        assert "FIXED 1 pool(s)." in result.output

        result = runner.invoke(args=["stock", "reconcile"])
        assert "PASS" in result.output

    def test_rotate_keys_noop_when_current(self, app, db_session):
        seed_pool()
        result = app.test_cli_runner().invoke(args=["stock", "rotate-keys"])
        assert "Rotated 0 payload(s); 0 unreadable." in result.output

    def test_purge_requires_confirmation(self, app, db_session):
        seed_pool()
        runner = app.test_cli_runner()
        result = runner.invoke(args=["stock", "purge"], input="n\n")
        assert result.exit_code != 0
        assert db.session.query(StockPool).count() == 1

        result = runner.invoke(args=["stock", "purge", "--yes"])
        assert "Removed 1 pool(s)." in result.output
        assert db.session.query(StockPool).count() == 0

    def test_generate_key(self, app):
        result = app.test_cli_runner().invoke(args=["stock", "generate-key"])
        Fernet(result.output.strip().encode())


class TestLedgerCommands:

    def test_list(self, app, db_session):
        seed_account(retailer_id="SHOP-42", limit_cents=12345)
        result = app.test_cli_runner().invoke(args=["ledger", "list", "--kind", "credit"])
        assert result.exit_code == 0
        assert "SHOP-42" in result.output
        assert "123.45" in result.output

    def test_overdue_and_suspend(self, app, db_session):
        seed_account()
        ledger_service.debit("CREDIT", "R-1", 100)
        db.session.execute(
            update(LedgerAccount)
            .where(LedgerAccount.retailer_id == "R-1")
            .values(next_due_at=utcnow() - timedelta(days=40))
        )
        db.session.commit()
        runner = app.test_cli_runner()

        result = runner.invoke(args=["ledger", "overdue"])
        assert "WARN R-1" in result.output

        result = runner.invoke(args=["ledger", "overdue", "--suspend"])
        assert "SUSPENDED 1 account(s)." in result.output
        assert ledger_service.get_account("CREDIT", "R-1").status == "SUSPENDED"

    def test_overdue_bad_date(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["ledger", "overdue", "--as-of", "yesterday"])
        assert result.exit_code != 0

    def test_low_balance(self, app, db_session):
        seed_account(low_balance_threshold_cents=500)
        ledger_service.debit("CREDIT", "R-1", 600)
        result = app.test_cli_runner().invoke(args=["ledger", "low-balance"])
        assert "WARN R-1" in result.output


class TestSystemCommands:

    def test_init_db_is_idempotent(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["system", "init-db"])
        assert result.exit_code == 0
        assert "PASS" in result.output

    def test_reset_db_wipes_data(self, app, db_session):
        seed_pool()
        seed_account()
        runner = app.test_cli_runner()

        result = runner.invoke(args=["system", "reset-db"], input="n\n")
        assert result.exit_code != 0
        assert db.session.query(StockPool).count() == 1

        result = runner.invoke(args=["system", "reset-db", "--yes"])
        assert "PASS Database reset complete." in result.output
        assert db.session.query(StockPool).count() == 0
        assert db.session.query(LedgerAccount).count() == 0
