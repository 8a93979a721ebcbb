# 二维码模块

from .routes import router as qr_router

__all__ = ["qr_router"]
