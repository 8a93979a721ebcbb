# 支付、钱包与积分API测试

import pytest


@pytest.fixture
def customer(api_market, auth_headers):
    return auth_headers(api_market["customer_id"])


@pytest.fixture
def order_id(client, api_market, customer, order_payload):
    response = client.post("/api/orders", json=order_payload(api_market["koshary"]), headers=customer)
    return response.json()["data"]["order_id"]


class TestWalletApi:
    """钱包接口"""

    def test_topup_and_balance(self, client, customer, gateway):
        response = client.post("/api/wallet/topup", json={"amount": 20000}, headers=customer)
        assert response.status_code == 200
        assert response.json()["data"]["balance_after"] == 20000
        assert gateway.charges[0]["amount"] == 20000

        wallet = client.get("/api/wallet", headers=customer).json()["data"]
        assert wallet["balance"] == 20000

        history = client.get("/api/wallet/transactions", headers=customer).json()["data"]
        assert history["pagination"]["total_count"] == 1
        assert history["items"][0]["transaction_type"] == "wallet_topup"

    def test_topup_below_minimum(self, client, customer):
        response = client.post("/api/wallet/topup", json={"amount": 100}, headers=customer)
        assert response.status_code == 400
        assert response.json()["code"] == "BELOW_MINIMUM_TOPUP"

    def test_topup_gateway_failure(self, client, customer, gateway):
        gateway.fail_charge = True
        response = client.post("/api/wallet/topup", json={"amount": 5000}, headers=customer)
        assert response.status_code == 502
        assert response.json()["code"] == "PAYMENT_FAILED"


class TestPaymentApi:
    """订单支付接口"""

    def test_pay_with_wallet_and_card(self, client, api_ops, api_market, customer, order_id, gateway):
        api_ops.wallet.credit(api_market["customer_id"], 6000)

        response = client.post(f"/api/payments/orders/{order_id}", json={}, headers=customer)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["wallet_deduction"] == 6000
        assert data["payment_amount"] == 9000
        assert gateway.charges[0]["amount"] == 9000

        again = client.post(f"/api/payments/orders/{order_id}", json={}, headers=customer)
        assert again.status_code == 400
        assert again.json()["code"] == "ORDER_ALREADY_PAID"

    def test_declined_card(self, client, api_market, customer, order_id, gateway, auth_headers):
        gateway.fail_charge = True
        response = client.post(f"/api/payments/orders/{order_id}", json={"use_wallet": False},
                               headers=customer)
        assert response.status_code == 502
        assert response.json()["code"] == "PAYMENT_FAILED"

        detail = client.get(f"/api/orders/{order_id}", headers=customer).json()["data"]
        assert detail["order"]["payment_status"] == "pending"

    def test_paying_someone_elses_order(self, client, api_market, order_id, auth_headers):
        response = client.post(f"/api/payments/orders/{order_id}", json={},
                               headers=auth_headers(api_market["other_customer_id"]))
        assert response.status_code == 403

    def test_payment_qr(self, client, customer, order_id):
        response = client.post(f"/api/payments/orders/{order_id}/qr", json={"short_lived": True},
                               headers=customer)
        assert response.status_code == 200
        assert response.json()["data"]["qr_type"] == "payment"

    def test_cancel_paid_order_refunds(self, client, customer, order_id, gateway):
        client.post(f"/api/payments/orders/{order_id}", json={"use_wallet": False}, headers=customer)
        response = client.post(f"/api/orders/{order_id}/cancel", json={}, headers=customer)

        data = response.json()["data"]
        assert data["refunded_amount"] == 15000
        assert data["payment_status"] == "refunded"
        assert gateway.refunds[0]["amount"] == 15000


class TestPointsApi:
    """积分接口"""

    def test_summary_history_and_redeem(self, client, api_ops, api_market, customer):
        api_ops.points.award(api_market["customer_id"], 250, "bonus")

        summary = client.get("/api/points", headers=customer).json()["data"]
        assert summary["balance"] == 250

        history = client.get("/api/points/history", headers=customer).json()["data"]
        assert history["pagination"]["total_count"] == 1

        redeemed = client.post("/api/points/redeem", json={"points": 200}, headers=customer)
        assert redeemed.status_code == 200
        assert redeemed.json()["data"]["credited_amount"] == 20000
        assert client.get("/api/wallet", headers=customer).json()["data"]["balance"] == 20000

    @pytest.mark.parametrize("points,code", [
        (50, "INVALID_POINTS_REDEMPTION"),
        (105, "INVALID_POINTS_REDEMPTION"),
        (1000, "INSUFFICIENT_POINTS"),
    ])
    def test_redeem_failures(self, client, api_ops, api_market, customer, points, code):
        api_ops.points.award(api_market["customer_id"], 250, "bonus")
        response = client.post("/api/points/redeem", json={"points": points}, headers=customer)
        assert response.status_code == 400
        assert response.json()["code"] == code
