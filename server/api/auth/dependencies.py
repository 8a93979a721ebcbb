# 认证依赖：解析 Bearer 令牌并校验操作者角色

import logging
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from .models import TokenData
from api.dependencies import get_config, get_database
from db.manager import DatabaseManager
from db.supporting_operations import SupportingOperations
from utils.config import Config
from utils.security import JWTManager

logger = logging.getLogger(__name__)
security = HTTPBearer()


def get_jwt_manager(config: Config = Depends(get_config)) -> JWTManager:
    return JWTManager(
        secret_key=config.get("auth.jwt_secret_key"),
        algorithm=config.get("auth.jwt_algorithm", "HS256"),
        access_token_expire_minutes=config.get("auth.jwt_expire_hours", 24) * 60
    )


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    jwt_manager: JWTManager = Depends(get_jwt_manager),
    db: DatabaseManager = Depends(get_database)
) -> TokenData:
    """获取当前用户信息"""
    payload = jwt_manager.verify_token(credentials.credentials)
    if not payload or "user_id" not in payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="认证失败，请重新登录"
        )

    user_info = SupportingOperations(db).get_user_by_id(payload["user_id"])
    if not user_info or user_info["status"] != "active":
        logger.warning(f"令牌对应的用户不可用: {payload['user_id']}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="用户不存在或已被禁用"
        )

    return TokenData(user_id=user_info["user_id"], role=user_info["role"])


def require_role(*roles: str):
    """限定角色的依赖，如 Depends(require_role("business"))"""
    def role_checker(current_user: TokenData = Depends(get_current_user)) -> TokenData:
        if current_user.role not in roles and current_user.role != "admin":
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"需要 {'/'.join(roles)} 角色"
            )
        return current_user

    return role_checker
