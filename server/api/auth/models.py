# 认证相关的数据模型

from pydantic import BaseModel, Field


class TokenData(BaseModel):
    """令牌中解析出的操作者身份"""
    user_id: int = Field(..., description="用户ID")
    role: str = Field("user", description="角色：user/business/driver/admin")
