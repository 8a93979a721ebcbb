# 认证模块

from .dependencies import get_current_user, require_role, get_jwt_manager
from .models import TokenData

__all__ = [
    "get_current_user",
    "require_role",
    "get_jwt_manager",
    "TokenData"
]
