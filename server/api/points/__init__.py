# 积分模块

from .routes import router as points_router

__all__ = ["points_router"]
