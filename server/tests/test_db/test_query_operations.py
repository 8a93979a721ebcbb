# 订单查询测试

import pytest

from utils.errors import AuthorizationError, NotFoundError, ValidationError


class TestOrderDetails:
    """订单详情"""

    def test_details_include_items_and_transactions(self, ops, place_order, marketplace):
        customer = marketplace["customer_id"]
        order = place_order(items=[{"product_id": marketplace["koshary"], "quantity": 2,
                                    "add_ons": [{"name": "Crispy onions", "price": 200}]}])
        ops.payments.pay_order(order["order_id"], customer, use_wallet=False)

        details = ops.queries.get_order_details(order["order_id"], customer)
        assert details["order"]["order_number"] == order["order_number"]
        assert details["order"]["status_text"] == "待接单"
        assert details["order"]["delivery_address"]["street"] == "Tahrir St 1"
        assert details["items"][0]["business_name"] == "Koshary House"
        assert details["items"][0]["add_ons"] == [{"name": "Crispy onions", "price": 200}]
        assert details["driver"] is None
        assert [t["amount"] for t in details["transactions"]] == [-order["final_amount"]]

    def test_details_list_each_business_once(self, ops, place_order, marketplace):
        """多商家订单按商家去重列出名称与坐标"""
        order = place_order(items=[{"product_id": marketplace["koshary"], "quantity": 1},
                                   {"product_id": marketplace["juice"], "quantity": 1},
                                   {"product_id": marketplace["falafel"], "quantity": 1}])

        details = ops.queries.get_order_details(order["order_id"], marketplace["customer_id"])
        assert len(details["items"]) == 3
        assert details["businesses"] == [
            {"business_id": marketplace["business_id"], "name": "Koshary House",
             "latitude": 30.0444, "longitude": 31.2357},
            {"business_id": marketplace["business_b_id"], "name": "Falafel Corner",
             "latitude": 30.0450, "longitude": 31.2300},
        ]

    def test_other_user_is_rejected(self, ops, place_order, marketplace):
        order = place_order()
        with pytest.raises(AuthorizationError):
            ops.queries.get_order_details(order["order_id"], marketplace["other_customer_id"])

    def test_missing_order(self, ops, marketplace):
        with pytest.raises(NotFoundError):
            ops.queries.get_order_details(404, marketplace["customer_id"])


class TestOrderLists:
    """订单列表"""

    def test_user_orders_filter_and_paginate(self, ops, place_order, marketplace):
        customer = marketplace["customer_id"]
        first = place_order()
        place_order(order_type="pickup", payment_method="cash")
        place_order()
        ops.orders.cancel_order(first["order_id"], customer)

        page = ops.queries.list_user_orders(customer, per_page=2)
        assert page["pagination"]["total_count"] == 3
        assert page["pagination"]["total_pages"] == 2
        assert page["pagination"]["has_next"]
        assert len(page["orders"]) == 2

        cancelled = ops.queries.list_user_orders(customer, status="cancelled")
        assert [o["order_id"] for o in cancelled["orders"]] == [first["order_id"]]

        pickups = ops.queries.list_user_orders(customer, order_type="pickup")
        assert pickups["pagination"]["total_count"] == 1

        assert ops.queries.list_user_orders(marketplace["other_customer_id"])["orders"] == []

    def test_invalid_filters(self, ops, marketplace):
        with pytest.raises(ValidationError) as exc_info:
            ops.queries.list_user_orders(marketplace["customer_id"], status="lost")
        assert exc_info.value.code == "INVALID_STATUS"
        with pytest.raises(ValidationError) as exc_info:
            ops.queries.list_user_orders(marketplace["customer_id"], page=0)
        assert exc_info.value.code == "INVALID_PAGINATION"

    def test_business_sees_only_its_orders(self, ops, place_order, marketplace):
        place_order()
        place_order(items=[{"product_id": marketplace["falafel"], "quantity": 1}])
        place_order(items=[{"product_id": marketplace["koshary"], "quantity": 1},
                           {"product_id": marketplace["falafel"], "quantity": 1}])

        owner_a = ops.queries.get_business_orders(marketplace["owner_id"])
        owner_b = ops.queries.get_business_orders(marketplace["owner_b_id"])
        assert owner_a["pagination"]["total_count"] == 2
        assert owner_b["pagination"]["total_count"] == 2
        assert all(order["items"] for order in owner_a["orders"])

        pending = ops.queries.get_business_orders(marketplace["owner_id"], status="accepted")
        assert pending["orders"] == []


class TestDriverViews:
    """司机订单与配送追踪"""

    def _dispatch(self, ops, place_order, marketplace):
        order = place_order(payment_method="cash")
        ops.orders.accept_order(order["order_id"], marketplace["owner_id"])
        ops.orders.start_preparing(order["order_id"], marketplace["owner_id"])
        ops.orders.request_driver(order["order_id"], marketplace["owner_id"])
        return order

    def test_driver_orders(self, ops, place_order, marketplace):
        order = self._dispatch(ops, place_order, marketplace)
        place_order()

        result = ops.queries.get_driver_orders(marketplace["driver_user_id"])
        assert result["driver_id"] == marketplace["driver_id"]
        assert [o["order_id"] for o in result["orders"]] == [order["order_id"]]

    def test_non_driver(self, ops, marketplace):
        with pytest.raises(NotFoundError):
            ops.queries.get_driver_orders(marketplace["customer_id"])

    def test_track_in_delivery(self, ops, place_order, marketplace):
        order = self._dispatch(ops, place_order, marketplace)
        ops.orders.driver_accept(order["order_id"], marketplace["driver_user_id"])

        tracking = ops.queries.track_order(order["order_id"], marketplace["customer_id"])
        assert tracking["status"] == "in_delivery"
        assert tracking["driver"]["name"] == "司机"
        assert tracking["driver_location"] == {"latitude": 30.046, "longitude": 31.236}
        assert tracking["estimate"]["distance_km"] < 1
        assert tracking["estimate"]["preparation_time_min"] == 15

    def test_track_pending_has_no_estimate(self, ops, place_order, marketplace):
        order = place_order()
        tracking = ops.queries.track_order(order["order_id"], marketplace["customer_id"])
        assert tracking["estimate"] is None
        assert tracking["driver_location"] is None

    def test_track_pickup_order(self, ops, place_order, marketplace):
        order = place_order(order_type="pickup", payment_method="cash")
        with pytest.raises(ValidationError) as exc_info:
            ops.queries.track_order(order["order_id"], marketplace["customer_id"])
        assert exc_info.value.code == "NOT_DELIVERY_ORDER"
