# 测试配置和固定装置

import pytest
import os
import sys
from pathlib import Path

# 添加项目路径
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# 设置测试环境
os.environ['CONFIG_ENV'] = 'test'

from fastapi.testclient import TestClient

from api.dependencies import Services, build_operations
from api.main import create_app
from db.manager import DatabaseManager
from utils.config import Config
from utils.errors import ExternalServiceError
from utils.geo import calculate_delivery_time
from utils.security import JWTManager

DELIVERY_ADDRESS = {"latitude": 30.0500, "longitude": 31.2400, "street": "Tahrir St 1"}


class FakeGateway:
    """记录调用的支付网关"""

    def __init__(self):
        self.charges = []
        self.refunds = []
        self.fail_charge = False
        self.fail_refund = False

    def charge(self, amount, currency, description=None):
        if self.fail_charge:
            return {"success": False, "reference": None, "error": "card declined"}
        reference = f"CHG-{len(self.charges) + 1}"
        self.charges.append({"amount": amount, "currency": currency, "reference": reference})
        return {"success": True, "reference": reference, "error": None}

    def refund(self, original_reference, amount):
        if self.fail_refund:
            return {"success": False, "reference": None, "error": "gateway down"}
        reference = f"RFD-{len(self.refunds) + 1}"
        self.refunds.append({"original_reference": original_reference, "amount": amount,
                             "reference": reference})
        return {"success": True, "reference": reference, "error": None}


class FakeNotifier:
    """记录通知；fail=True 时模拟通知服务故障"""

    def __init__(self):
        self.sent = []
        self.fail = False

    def notify(self, recipient_type, recipient_id, event_type, payload=None):
        if self.fail:
            raise ExternalServiceError("webhook down", code="NOTIFICATION_FAILED")
        self.sent.append((recipient_type, recipient_id, event_type))
        return {"event_type": event_type}

    def events(self):
        return [event for _, _, event in self.sent]


class FakeMaps:
    """固定返回配置的距离"""

    def __init__(self, distance_km=5.0):
        self.distance_km = distance_km

    def distance(self, point_a, point_b):
        return self.distance_km

    def estimate_delivery(self, distance_km):
        return calculate_delivery_time(distance_km)


def seed_marketplace(support):
    """
    基础数据：顾客、商家A（两个商品、一个下架商品）、商家B、停业商家C、司机
    """
    customer = support.create_user("顾客", role="user", phone="01000000001")
    other_customer = support.create_user("另一位顾客", role="user", phone="01000000002")
    owner = support.create_user("商家老板", role="business", phone="01000000003")
    owner_b = support.create_user("第二商家老板", role="business", phone="01000000004")
    driver_user = support.create_user("司机", role="driver", phone="01000000005")

    business = support.create_business(owner["user_id"], "Koshary House", 30.0444, 31.2357)
    business_b = support.create_business(owner_b["user_id"], "Falafel Corner", 30.0450, 31.2300)
    closed_business = support.create_business(owner["user_id"], "Closed Cafe", 30.0400, 31.2200,
                                              is_active=False)

    koshary = support.create_product(business["business_id"], "Koshary", 5000)
    juice = support.create_product(business["business_id"], "Mango Juice", 3000)
    sold_out = support.create_product(business["business_id"], "Feteer", 4000, is_available=False)
    falafel = support.create_product(business_b["business_id"], "Falafel", 2000)
    closed_item = support.create_product(closed_business["business_id"], "Coffee", 1500)

    driver = support.create_driver(driver_user["user_id"], vehicle_type="motorbike",
                                   latitude=30.0460, longitude=31.2360)

    return {
        "customer_id": customer["user_id"],
        "other_customer_id": other_customer["user_id"],
        "owner_id": owner["user_id"],
        "owner_b_id": owner_b["user_id"],
        "driver_user_id": driver_user["user_id"],
        "driver_id": driver["driver_id"],
        "business_id": business["business_id"],
        "business_b_id": business_b["business_id"],
        "closed_business_id": closed_business["business_id"],
        "koshary": koshary["product_id"],
        "juice": juice["product_id"],
        "sold_out": sold_out["product_id"],
        "falafel": falafel["product_id"],
        "closed_item": closed_item["product_id"],
    }


@pytest.fixture
def config():
    """测试配置（内存数据库，外部服务未配置）"""
    return Config('test')


@pytest.fixture
def test_db():
    """测试数据库实例（内存数据库）"""
    db = DatabaseManager(":memory:", auto_connect=True)
    db.create_schema()
    yield db
    db.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def maps():
    return FakeMaps()


@pytest.fixture
def services(gateway, notifier, maps):
    return Services(gateway=gateway, notifier=notifier, maps=maps)


@pytest.fixture
def ops(test_db, config, services):
    """装配好的业务操作"""
    return build_operations(test_db, config, services)


@pytest.fixture
def marketplace(ops):
    return seed_marketplace(ops.support)


@pytest.fixture
def delivery_address():
    return dict(DELIVERY_ADDRESS)


@pytest.fixture
def place_order(ops, marketplace):
    """下单辅助函数，默认顾客购买2份Koshary配送"""
    def _place(items=None, order_type="delivery", payment_method="online", user_id=None, **kwargs):
        if items is None:
            items = [{"product_id": marketplace["koshary"], "quantity": 2}]
        if order_type == "delivery":
            kwargs.setdefault("delivery_address", dict(DELIVERY_ADDRESS))
        return ops.orders.create_order(user_id or marketplace["customer_id"], items, order_type,
                                       payment_method, **kwargs)
    return _place


# API测试
@pytest.fixture
def client(config, services):
    """API测试客户端（应用生命周期内使用同一内存数据库）"""
    app = create_app(config, services=services)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def api_ops(client, config, services):
    """与API共享数据库的业务操作，用于准备数据"""
    return build_operations(client.app.state.db, config, services)


@pytest.fixture
def api_market(api_ops):
    return seed_marketplace(api_ops.support)


@pytest.fixture
def auth_headers(config):
    """按用户与角色生成 Authorization 请求头"""
    jwt_manager = JWTManager(config.get("auth.jwt_secret_key"))

    def _headers(user_id, role="user"):
        token = jwt_manager.create_access_token({"user_id": user_id, "role": role})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def order_payload():
    """默认下单请求：2份Koshary配送"""
    def _payload(product_id, quantity=2, order_type="delivery", payment_method="online", **extra):
        payload = {
            "items": [{"product_id": product_id, "quantity": quantity}],
            "order_type": order_type,
            "payment_method": payment_method,
        }
        if order_type == "delivery":
            payload["delivery_address"] = dict(DELIVERY_ADDRESS)
        payload.update(extra)
        return payload
    return _payload
