# 支付模块

from .routes import router as payments_router

__all__ = ["payments_router"]
