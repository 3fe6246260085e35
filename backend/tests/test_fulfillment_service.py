"""
Sale fulfilment tests: claim-then-debit with release on failure.
"""

import pytest

from conftest import seed_account, seed_pool
from topup.exceptions import InsufficientBalance, InvalidState, OutOfStock, ValidationError
from topup.services import fulfillment_service, ledger_service, stock_service


def order(**overrides):
    params = {
        "bucket_id": "telia-100",
        "credential_type": "PIN",
        "quantity": 2,
        "retailer_id": "R-1",
        "unit_price_cents": 100,
        "payment_mode": "credit",
        "order_id": "ORD-1",
        "claimant_email": "shop@example.com",
    }
    params.update(overrides)
    return fulfillment_service.fulfil_order(**params)


class TestRecordSale:

    def test_credit_sale_debits_credit_ledger(self, credit_account):
        tx = fulfillment_service.record_sale("R-1", 250, "ORD-1", "credit", "Telia 250")
        assert tx.transaction_type == "ORDER_PLACED"
        assert tx.order_id == "ORD-1"
        assert ledger_service.get_account("CREDIT", "R-1").available_cents == 750

    def test_kickback_sale_debits_kickback_ledger(self, credit_account):
        seed_account("KICKBACK", limit_cents=300)
        fulfillment_service.record_sale("R-1", 100, "ORD-2", "KICKBACK")
        assert ledger_service.get_account("KICKBACK", "R-1").used_cents == 100
        assert ledger_service.get_account("CREDIT", "R-1").used_cents == 0

    def test_unknown_payment_mode(self, credit_account):
        with pytest.raises(ValidationError):
            fulfillment_service.record_sale("R-1", 100, "ORD-1", "cash")


class TestFulfilOrder:

    def test_claims_and_charges(self, pool, credit_account):
        result = order()
        assert len(result.items) == 2
        assert {i.order_id for i in result.items} == {"ORD-1"}
        assert result.transaction.amount_cents == 200

        payload = result.to_dict()
        assert payload["account"]["available_cents"] == 800
        assert [i["secret"] for i in payload["items"]] == ["****1111", "****2222"]
        assert stock_service.get_pool(pool.id).available_quantity == 1

    def test_insufficient_balance_claims_nothing(self, pool, db_session):
        seed_account(limit_cents=150)
        with pytest.raises(InsufficientBalance):
            order()
        assert stock_service.get_pool(pool.id).available_quantity == 3

    def test_suspended_account_claims_nothing(self, pool, credit_account):
        ledger_service.set_status("CREDIT", "R-1", "SUSPENDED")
        with pytest.raises(InvalidState):
            order()
        assert stock_service.get_pool(pool.id).available_quantity == 3

    def test_out_of_stock_releases_partial_claims(self, pool, credit_account):
        with pytest.raises(OutOfStock):
            order(quantity=4)
        p = stock_service.get_pool(pool.id)
        assert (p.available_quantity, p.used_quantity, p.status) == (3, 0, "ACTIVE")
        assert ledger_service.get_account("CREDIT", "R-1").used_cents == 0

    def test_failed_debit_releases_claims(self, pool, credit_account, monkeypatch):
        def refuse(*args, **kwargs):
            raise InsufficientBalance("CREDIT", "R-1", 200, 0)

        monkeypatch.setattr(ledger_service, "debit", refuse)
        with pytest.raises(InsufficientBalance):
            order()
        p = stock_service.get_pool(pool.id)
        assert (p.available_quantity, p.used_quantity) == (3, 0)
        assert all(item.order_id is None for item in p.items)

    def test_unreleasable_item_keeps_original_error(self, pool, credit_account, monkeypatch, caplog):
        def use_then_refuse(*args, **kwargs):
            first = next(i for i in stock_service.get_pool(pool.id).items if i.status == "ASSIGNED")
            stock_service.mark_used(pool.id, first.item_id, operator_id="ops")
            raise InsufficientBalance("CREDIT", "R-1", 200, 0)

        monkeypatch.setattr(ledger_service, "debit", use_then_refuse)
        with caplog.at_level("WARNING"):
            with pytest.raises(InsufficientBalance):
                order()

        p = stock_service.get_pool(pool.id)
        assert sorted(i.status for i in p.items) == ["AVAILABLE", "AVAILABLE", "USED"]
        assert (p.available_quantity, p.used_quantity) == (2, 1)
        assert "could not release item" in caplog.text
        assert "released 1 of 2 claimed item(s)" in caplog.text

    def test_free_order_skips_ledger(self, db_session):
        seed_pool(["FREE-0000-01"])
        result = order(quantity=1, unit_price_cents=0, retailer_id="no-account")
        assert result.transaction is None
        assert len(result.items) == 1

    @pytest.mark.parametrize("quantity", [0, 101, True])
    def test_quantity_bounds(self, pool, credit_account, quantity):
        with pytest.raises(ValidationError):
            order(quantity=quantity)
