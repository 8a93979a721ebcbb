# 商家模块

from .routes import router as businesses_router

__all__ = ["businesses_router"]
