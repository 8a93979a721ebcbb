# 支付编排测试

import sqlite3

import pytest

from utils.errors import (AuthorizationError, ExternalServiceError, IllegalStateTransition,
                          QRAlreadyUsed, ValidationError)


@pytest.fixture
def small_order(ops, marketplace, place_order):
    """应付金额恰好为5000的自取订单（4762 + 5% 平台费 238）"""
    product = ops.support.create_product(marketplace["business_id"], "Hawawshi", 4762)
    order = place_order(items=[{"product_id": product["product_id"], "quantity": 1}],
                        order_type="pickup")
    assert order["final_amount"] == 5000
    return order


def _order_row(test_db, order_id):
    return dict(test_db.conn.execute("SELECT * FROM orders WHERE order_id = ?", [order_id]).fetchone())


def _payment_rows(test_db, order_id):
    return test_db.conn.execute("""
        SELECT amount, wallet_id, payment_method, gateway_reference FROM transactions
        WHERE reference_type = 'order' AND reference_id = ? AND transaction_type = 'payment'
        ORDER BY transaction_id
    """, [order_id]).fetchall()


class TestPayOrder:
    """混合支付"""

    def test_wallet_then_gateway(self, ops, marketplace, small_order, gateway, test_db):
        customer = marketplace["customer_id"]
        ops.wallet.credit(customer, 3000)

        result = ops.payments.pay_order(small_order["order_id"], customer)
        assert result["wallet_deduction"] == 3000
        assert result["payment_amount"] == 2000
        assert result["wallet_balance"] == 0
        assert result["gateway_reference"] == "CHG-1"
        assert len(result["transactions"]) == 2
        assert gateway.charges[0]["amount"] == 2000

        rows = _payment_rows(test_db, small_order["order_id"])
        assert [row["amount"] for row in rows] == [-3000, -2000]
        assert rows[0]["wallet_id"] is not None
        assert rows[1]["wallet_id"] is None
        assert rows[1]["gateway_reference"] == "CHG-1"

        row = _order_row(test_db, small_order["order_id"])
        assert row["payment_status"] == "paid"
        assert row["payment_method"] == "online"
        assert ops.wallet.reconcile(customer)["consistent"]

    def test_wallet_covers_everything(self, ops, marketplace, small_order, gateway, test_db):
        customer = marketplace["customer_id"]
        ops.wallet.credit(customer, 8000)

        result = ops.payments.pay_order(small_order["order_id"], customer)
        assert result["payment_amount"] == 0
        assert result["wallet_balance"] == 3000
        assert gateway.charges == []
        assert _order_row(test_db, small_order["order_id"])["payment_method"] == "wallet"

    def test_skip_wallet(self, ops, marketplace, small_order, gateway):
        customer = marketplace["customer_id"]
        ops.wallet.credit(customer, 8000)

        result = ops.payments.pay_order(small_order["order_id"], customer, use_wallet=False)
        assert result["wallet_deduction"] == 0
        assert result["payment_amount"] == 5000
        assert ops.wallet.get_balance(customer) == 8000

    def test_gateway_failure_changes_nothing(self, ops, marketplace, small_order, gateway, test_db):
        customer = marketplace["customer_id"]
        ops.wallet.credit(customer, 3000)
        gateway.fail_charge = True

        with pytest.raises(ExternalServiceError) as exc_info:
            ops.payments.pay_order(small_order["order_id"], customer)
        assert exc_info.value.code == "PAYMENT_FAILED"
        assert ops.wallet.get_balance(customer) == 3000
        assert _payment_rows(test_db, small_order["order_id"]) == []
        assert _order_row(test_db, small_order["order_id"])["payment_status"] == "pending"

    def test_ledger_failure_compensates_charge(self, ops, marketplace, small_order, gateway,
                                               test_db, monkeypatch):
        def broken_record(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(ops.wallet, "record_transaction", broken_record)

        with pytest.raises(sqlite3.OperationalError):
            ops.payments.pay_order(small_order["order_id"], marketplace["customer_id"], use_wallet=False)

        assert gateway.refunds == [{"original_reference": "CHG-1", "amount": 5000, "reference": "RFD-1"}]
        assert _order_row(test_db, small_order["order_id"])["payment_status"] == "pending"

    def test_cannot_pay_twice(self, ops, marketplace, small_order, gateway):
        customer = marketplace["customer_id"]
        ops.payments.pay_order(small_order["order_id"], customer)

        with pytest.raises(ValidationError) as exc_info:
            ops.payments.pay_order(small_order["order_id"], customer)
        assert exc_info.value.code == "ORDER_ALREADY_PAID"
        assert len(gateway.charges) == 1

    def test_cannot_pay_cancelled_order(self, ops, marketplace, small_order, gateway):
        customer = marketplace["customer_id"]
        ops.orders.cancel_order(small_order["order_id"], customer)
        with pytest.raises(IllegalStateTransition):
            ops.payments.pay_order(small_order["order_id"], customer)
        assert gateway.charges == []

    def test_only_owner_pays(self, ops, marketplace, small_order):
        with pytest.raises(AuthorizationError):
            ops.payments.pay_order(small_order["order_id"], marketplace["other_customer_id"])


class TestPaymentQR:
    """收银台支付码"""

    def test_scan_uses_wallet_then_cash(self, ops, marketplace, small_order, test_db, notifier):
        customer = marketplace["customer_id"]
        ops.wallet.credit(customer, 3000)
        qr = ops.payments.issue_payment_qr(small_order["order_id"], customer)
        assert qr["qr_type"] == "payment"
        assert qr["metadata"]["amount"] == 5000

        scan = ops.qr.consume(qr["token"], {"user_id": marketplace["owner_id"], "role": "business"})
        assert scan["result"]["wallet_deduction"] == 3000
        assert scan["result"]["cash_amount"] == 2000

        row = _order_row(test_db, small_order["order_id"])
        assert row["payment_status"] == "paid"
        assert row["payment_method"] == "cash"
        assert ops.wallet.get_balance(customer) == 0
        assert "payment_received" in notifier.events()

        with pytest.raises(QRAlreadyUsed):
            ops.qr.consume(qr["token"], {"user_id": marketplace["owner_id"], "role": "business"})

    def test_scan_by_unrelated_business(self, ops, marketplace, small_order, test_db):
        qr = ops.payments.issue_payment_qr(small_order["order_id"], marketplace["customer_id"])
        with pytest.raises(AuthorizationError):
            ops.qr.consume(qr["token"], {"user_id": marketplace["owner_b_id"], "role": "business"})

        assert not ops.qr.get_by_token(qr["token"])["is_used"]
        assert _order_row(test_db, small_order["order_id"])["payment_status"] == "pending"

    def test_short_lived_code(self, ops, marketplace, small_order):
        qr = ops.payments.issue_payment_qr(small_order["order_id"], marketplace["customer_id"],
                                           short_lived=True)
        stored = ops.qr.get_by_token(qr["token"])
        assert not stored["is_expired"]

    def test_paid_order_gets_no_code(self, ops, marketplace, small_order):
        ops.payments.pay_order(small_order["order_id"], marketplace["customer_id"])
        with pytest.raises(ValidationError):
            ops.payments.issue_payment_qr(small_order["order_id"], marketplace["customer_id"])
