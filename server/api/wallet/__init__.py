# 钱包模块

from .routes import router as wallet_router

__all__ = ["wallet_router"]
