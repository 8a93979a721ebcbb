# 依赖注入：数据库、外部服务与业务操作的装配

from dataclasses import dataclass
from typing import Any

from fastapi import Depends, Request

from db.manager import DatabaseManager
from db.order_operations import OrderOperations
from db.payment_operations import PaymentOperations
from db.points_operations import PointsOperations
from db.qr_operations import QROperations
from db.query_operations import QueryOperations
from db.supporting_operations import SupportingOperations
from db.wallet_operations import WalletOperations
from services.maps_service import MapsService
from services.notification_service import NotificationService
from services.payment_gateway import PaymentGateway
from utils.config import Config


@dataclass
class Services:
    """外部服务（测试中可替换为假实现）"""
    gateway: Any
    notifier: Any
    maps: Any


@dataclass
class Operations:
    support: SupportingOperations
    wallet: WalletOperations
    points: PointsOperations
    qr: QROperations
    orders: OrderOperations
    payments: PaymentOperations
    queries: QueryOperations


def build_services(config: Config) -> Services:
    return Services(
        gateway=PaymentGateway(config),
        notifier=NotificationService(config),
        maps=MapsService(config)
    )


def build_operations(db: DatabaseManager, config: Config, services: Services) -> Operations:
    """
    按依赖顺序装配业务操作，并为各类二维码注册扫描处理函数
    """
    fees = config.get_fee_settings()

    wallet = WalletOperations(db, fees, services.gateway)
    points = PointsOperations(db, fees, wallet_ops=wallet)
    qr = QROperations(db, expiry_seconds=config.get("qr.expiry_seconds"),
                      pos_payment_seconds=config.get("qr.pos_payment_seconds", 60))
    support = SupportingOperations(db, fees, qr_ops=qr, points_ops=points, notifier=services.notifier)
    qr.register_handler('reservation', support.handle_reservation_scan)

    orders = OrderOperations(
        db, fees, wallet_ops=wallet, points_ops=points, qr_ops=qr, notifier=services.notifier,
        maps=services.maps, payment_gateway=services.gateway, support_ops=support,
        max_order_number_attempts=config.get("order_number.max_attempts", 10000)
    )
    payments = PaymentOperations(db, orders, wallet_ops=wallet, payment_gateway=services.gateway,
                                 qr_ops=qr, notifier=services.notifier, fee_settings=fees)
    queries = QueryOperations(db, maps=services.maps)

    return Operations(support=support, wallet=wallet, points=points, qr=qr,
                      orders=orders, payments=payments, queries=queries)


def get_config(request: Request) -> Config:
    return request.app.state.config


def get_database(request: Request) -> DatabaseManager:
    """应用级数据库连接（在 lifespan 中创建）"""
    return request.app.state.db


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_operations(
    db: DatabaseManager = Depends(get_database),
    config: Config = Depends(get_config),
    services: Services = Depends(get_services)
) -> Operations:
    return build_operations(db, config, services)
