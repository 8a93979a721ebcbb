# 二维码相关的数据模型

from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


class IssueQRRequest(BaseModel):
    """签发二维码请求模型"""
    qr_type: str = Field(..., description="二维码类型：discount/payment")
    reference_id: Optional[int] = Field(None, description="绑定实体ID（支付码为订单ID）")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="附加数据，如 discount_amount")
    user_id: Optional[int] = Field(None, description="折扣码限定的用户")
    short_lived: bool = Field(False, description="收银台支付码")


class ScanQRRequest(BaseModel):
    """扫描二维码请求模型"""
    token: str = Field(..., min_length=1, max_length=64, description="二维码令牌")
