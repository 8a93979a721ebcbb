# 外部服务客户端测试（httpx.MockTransport 模拟远端）

import json

import httpx
import pytest

from services.maps_service import MapsService
from services.notification_service import NotificationService
from services.payment_gateway import PaymentGateway
from utils.config import Config
from utils.errors import ExternalServiceError
from utils.geo import haversine_distance

CAIRO = {"latitude": 30.0444, "longitude": 31.2357}
GIZA = {"latitude": 30.0131, "longitude": 31.2089}


@pytest.fixture
def remote_config():
    """配置了远端地址的测试配置"""
    config = Config('test')
    config.config["payment_gateway"].update(base_url="https://pay.example.com/v1", api_key="sk_test")
    config.config["notifications"].update(webhook_url="https://hooks.example.com/notify", api_key="nk")
    config.config["maps"].update(base_url="https://maps.example.com/distancematrix", api_key="mk")
    return config


def mock_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestPaymentGateway:

    def test_mock_mode_without_settings(self):
        gateway = PaymentGateway(Config('test'))
        assert gateway.mock_mode

        charge = gateway.charge(1500, "EGP")
        assert charge["success"]
        assert charge["reference"].startswith("MOCK-CHG-")
        assert gateway.refund(charge["reference"], 1500)["reference"].startswith("MOCK-RFD-")

    def test_charge_posts_amount(self, remote_config):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"id": "ch_1", "status": "succeeded"})

        gateway = PaymentGateway(remote_config, client=mock_client(handler))
        result = gateway.charge(9000, "EGP", "订单支付")

        assert result == {"success": True, "reference": "ch_1", "error": None}
        assert str(requests[0].url) == "https://pay.example.com/v1/charges"
        assert requests[0].headers["Authorization"] == "Bearer sk_test"
        assert json.loads(requests[0].content)["amount"] == 9000

    def test_declined_charge(self, remote_config):
        def handler(request):
            return httpx.Response(200, json={"id": "ch_2", "status": "failed", "error": "card declined"})

        result = PaymentGateway(remote_config, client=mock_client(handler)).charge(100, "EGP")
        assert not result["success"]
        assert result["error"] == "card declined"

    def test_transport_error_is_reported_not_raised(self, remote_config):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway = PaymentGateway(remote_config, client=mock_client(handler))
        assert not gateway.charge(100, "EGP")["success"]
        assert not gateway.refund("ch_1", 100)["success"]

    def test_refund_references_original_charge(self, remote_config):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"id": "re_1", "status": "refunded"})

        result = PaymentGateway(remote_config, client=mock_client(handler)).refund("ch_1", 4000)
        assert result["reference"] == "re_1"
        assert bodies[0] == {"charge": "ch_1", "amount": 4000}


class TestNotificationService:

    def test_mock_mode_returns_message(self):
        message = NotificationService(Config('test')).notify("user", 1, "order_created", {"order_id": 3})
        assert message["title"] == "新订单"
        assert message["payload"] == {"order_id": 3}

    def test_webhook_delivery(self, remote_config):
        received = []

        def handler(request):
            received.append(json.loads(request.content))
            return httpx.Response(204)

        service = NotificationService(remote_config, client=mock_client(handler))
        service.notify("driver", 7, "driver_assigned")
        assert received[0]["recipient_type"] == "driver"
        assert received[0]["title"] == "新配送任务"

    def test_webhook_failure_raises(self, remote_config):
        def handler(request):
            return httpx.Response(500)

        service = NotificationService(remote_config, client=mock_client(handler))
        with pytest.raises(ExternalServiceError) as exc_info:
            service.notify("user", 1, "order_cancelled")
        assert exc_info.value.code == "NOTIFICATION_FAILED"


class TestMapsService:

    def test_haversine_without_remote(self):
        maps = MapsService(Config('test'))
        expected = haversine_distance(30.0444, 31.2357, 30.0131, 31.2089)
        assert maps.distance(CAIRO, GIZA) == pytest.approx(expected)

    def test_missing_coordinates(self):
        assert MapsService(Config('test')).distance(CAIRO, {"street": "unknown"}) is None

    def test_distance_matrix(self, remote_config):
        def handler(request):
            assert request.url.params["origins"] == "30.0444,31.2357"
            return httpx.Response(200, json={"rows": [{"elements": [
                {"status": "OK", "distance": {"value": 6200}}
            ]}]})

        maps = MapsService(remote_config, client=mock_client(handler))
        assert maps.distance(CAIRO, GIZA) == pytest.approx(6.2)

    def test_distance_matrix_failure_falls_back(self, remote_config):
        def handler(request):
            return httpx.Response(200, json={"rows": [{"elements": [{"status": "ZERO_RESULTS"}]}]})

        maps = MapsService(remote_config, client=mock_client(handler))
        expected = haversine_distance(30.0444, 31.2357, 30.0131, 31.2089)
        assert maps.distance(CAIRO, GIZA) == pytest.approx(expected)
