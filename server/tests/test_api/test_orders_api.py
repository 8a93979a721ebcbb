# 订单API测试

import pytest


class TestAuthentication:
    """认证与角色校验"""

    def test_missing_token(self, client):
        response = client.get("/api/orders/my")
        assert response.status_code in (401, 403)
        assert response.json()["success"] is False

    def test_invalid_token(self, client):
        response = client.get("/api/orders/my", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_unknown_user(self, client, auth_headers):
        response = client.get("/api/orders/my", headers=auth_headers(999))
        assert response.status_code == 401

    def test_suspended_user(self, client, api_ops, api_market, auth_headers):
        api_ops.support.set_user_status(api_market["customer_id"], "suspended")
        response = client.get("/api/orders/my", headers=auth_headers(api_market["customer_id"]))
        assert response.status_code == 401

    def test_role_comes_from_database(self, client, api_market, auth_headers):
        """令牌中的角色声明不能提升权限"""
        response = client.get("/api/businesses/orders",
                              headers=auth_headers(api_market["customer_id"], role="business"))
        assert response.status_code == 403


class TestOrderEndpoints:
    """下单、查询与取消"""

    def test_quote(self, client, api_market, auth_headers, order_payload):
        response = client.post("/api/orders/quote", json=order_payload(api_market["koshary"]),
                               headers=auth_headers(api_market["customer_id"]))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["final_amount"] == 15000
        assert data["delivery_fee"] == 4500
        assert data["currency"] == "EGP"

    def test_create_and_read_order(self, client, api_market, auth_headers, order_payload):
        headers = auth_headers(api_market["customer_id"])
        created = client.post("/api/orders", json=order_payload(api_market["koshary"], notes="no onions"),
                              headers=headers)
        assert created.status_code == 200
        order = created.json()["data"]
        assert order["order_number"].startswith("ORD-")
        assert order["final_amount"] == 15000
        assert order["status"] == "pending"

        detail = client.get(f"/api/orders/{order['order_id']}", headers=headers)
        assert detail.status_code == 200
        assert detail.json()["data"]["order"]["notes"] == "no onions"
        assert len(detail.json()["data"]["items"]) == 1

        listing = client.get("/api/orders/my", headers=headers)
        body = listing.json()["data"]
        assert body["pagination"]["total_count"] == 1
        assert body["items"][0]["order_id"] == order["order_id"]

    def test_other_user_cannot_read_order(self, client, api_market, auth_headers, order_payload):
        created = client.post("/api/orders", json=order_payload(api_market["koshary"]),
                              headers=auth_headers(api_market["customer_id"]))
        order_id = created.json()["data"]["order_id"]

        response = client.get(f"/api/orders/{order_id}",
                              headers=auth_headers(api_market["other_customer_id"]))
        assert response.status_code == 403
        assert response.json()["code"] == "UNAUTHORIZED_ACCESS"

    def test_missing_order(self, client, api_market, auth_headers):
        response = client.get("/api/orders/404", headers=auth_headers(api_market["customer_id"]))
        assert response.status_code == 404
        assert response.json()["code"] == "ORDER_NOT_FOUND"

    def test_unavailable_product(self, client, api_market, auth_headers, order_payload):
        response = client.post("/api/orders", json=order_payload(api_market["sold_out"]),
                               headers=auth_headers(api_market["customer_id"]))
        assert response.status_code == 400
        assert response.json()["code"] == "PRODUCT_NOT_AVAILABLE"
        assert response.json()["data"]["product_id"] == api_market["sold_out"]

    def test_request_body_validation(self, client, api_market, auth_headers):
        response = client.post("/api/orders", json={"items": []},
                               headers=auth_headers(api_market["customer_id"]))
        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_cancel(self, client, api_market, auth_headers, order_payload):
        headers = auth_headers(api_market["customer_id"])
        order_id = client.post("/api/orders", json=order_payload(api_market["koshary"]),
                               headers=headers).json()["data"]["order_id"]

        response = client.post(f"/api/orders/{order_id}/cancel", json={"cancel_reason": "太慢了"},
                               headers=headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "cancelled"
        assert data["cancel_reason"] == "太慢了"

        again = client.post(f"/api/orders/{order_id}/cancel", json={}, headers=headers)
        assert again.status_code == 409
        assert again.json()["code"] == "ILLEGAL_TRANSITION"
        assert again.json()["data"] == {"from_status": "cancelled", "event": "cancel"}


class TestDeliveryOverApi:
    """通过API走完配送流程"""

    def test_lifecycle(self, client, api_ops, api_market, auth_headers, order_payload, gateway):
        customer = auth_headers(api_market["customer_id"])
        owner = auth_headers(api_market["owner_id"], role="business")
        driver = auth_headers(api_market["driver_user_id"], role="driver")

        order_id = client.post("/api/orders", json=order_payload(api_market["koshary"]),
                               headers=customer).json()["data"]["order_id"]
        paid = client.post(f"/api/payments/orders/{order_id}", json={"use_wallet": False}, headers=customer)
        assert paid.status_code == 200
        assert gateway.charges[0]["amount"] == 15000

        assert client.post(f"/api/businesses/orders/{order_id}/accept", headers=owner).status_code == 200
        assert client.post(f"/api/businesses/orders/{order_id}/prepare", headers=owner).status_code == 200
        dispatched = client.post(f"/api/businesses/orders/{order_id}/request-driver", json={}, headers=owner)
        assert dispatched.json()["data"]["driver_id"] == api_market["driver_id"]

        incoming = client.get("/api/drivers/orders/incoming", headers=driver)
        assert [o["order_id"] for o in incoming.json()["data"]["orders"]] == [order_id]

        tracking = client.get(f"/api/orders/{order_id}/track", headers=customer)
        assert tracking.json()["data"]["estimate"] is not None

        assert client.post(f"/api/drivers/orders/{order_id}/accept", headers=driver).status_code == 200
        delivered = client.post(f"/api/drivers/orders/{order_id}/deliver", headers=driver)
        assert delivered.status_code == 200
        assert delivered.json()["data"]["driver_earnings"] == 3150

        assert api_ops.wallet.get_balance(api_market["driver_user_id"]) == 3150
        detail = client.get(f"/api/orders/{order_id}", headers=customer).json()["data"]
        assert detail["order"]["status"] == "completed"

    def test_customer_cannot_call_business_endpoints(self, client, api_market, auth_headers, order_payload):
        customer = auth_headers(api_market["customer_id"])
        order_id = client.post("/api/orders", json=order_payload(api_market["koshary"]),
                               headers=customer).json()["data"]["order_id"]

        response = client.post(f"/api/businesses/orders/{order_id}/accept", headers=customer)
        assert response.status_code == 403

    def test_accept_twice_conflicts(self, client, api_market, auth_headers, order_payload):
        owner = auth_headers(api_market["owner_id"], role="business")
        order_id = client.post("/api/orders", json=order_payload(api_market["koshary"]),
                               headers=auth_headers(api_market["customer_id"])).json()["data"]["order_id"]

        assert client.post(f"/api/businesses/orders/{order_id}/accept", headers=owner).status_code == 200
        response = client.post(f"/api/businesses/orders/{order_id}/accept", headers=owner)
        assert response.status_code == 409

    def test_business_order_listing(self, client, api_market, auth_headers, order_payload):
        client.post("/api/orders", json=order_payload(api_market["koshary"]),
                    headers=auth_headers(api_market["customer_id"]))

        mine = client.get("/api/businesses/orders", headers=auth_headers(api_market["owner_id"], "business"))
        other = client.get("/api/businesses/orders", headers=auth_headers(api_market["owner_b_id"], "business"))
        assert mine.json()["data"]["pagination"]["total_count"] == 1
        assert other.json()["data"]["pagination"]["total_count"] == 0

    def test_driver_location(self, client, api_market, auth_headers):
        driver = auth_headers(api_market["driver_user_id"], role="driver")
        response = client.put("/api/drivers/location", json={"latitude": 30.1, "longitude": 31.3},
                              headers=driver)
        assert response.status_code == 200

        response = client.put("/api/drivers/location", json={"latitude": 120, "longitude": 31.3},
                              headers=driver)
        assert response.status_code == 422


class TestServiceEndpoints:
    """健康检查与服务信息"""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_info(self, client):
        response = client.get("/api/info")
        assert response.json()["endpoints"]["orders"] == "/api/orders"

    @pytest.mark.parametrize("header", ["X-Content-Type-Options", "X-Request-ID"])
    def test_response_headers(self, client, header):
        assert header in client.get("/health").headers

    def test_rate_limit(self, config, services):
        from fastapi.testclient import TestClient
        from api.main import create_app

        config.config["server"]["rate_limit_per_minute"] = 2
        with TestClient(create_app(config, services=services)) as limited:
            statuses = [limited.get("/api/info").status_code for _ in range(3)]
            assert statuses[-1] == 429
            assert limited.get("/api/info").json()["code"] == "RATE_LIMITED"

    def test_request_id_is_propagated(self, client):
        response = client.get("/api/info", headers={"X-Request-ID": "trace-42"})
        assert response.headers["X-Request-ID"] == "trace-42"
        assert response.headers["Cache-Control"] == "no-store"
