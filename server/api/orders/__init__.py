# 订单模块

from .routes import router as orders_router
from .models import CreateOrderRequest, CancelOrderRequest, CreateOrderResponse

__all__ = [
    "orders_router",
    "CreateOrderRequest",
    "CancelOrderRequest",
    "CreateOrderResponse"
]
