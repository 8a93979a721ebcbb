# 司机模块

from .routes import router as drivers_router

__all__ = ["drivers_router"]
