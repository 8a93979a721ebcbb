# 商家操作的数据模型

from typing import Optional
from pydantic import BaseModel, Field


class RejectOrderRequest(BaseModel):
    """商家拒单请求模型"""
    reason: str = Field("商家拒单", max_length=200, description="拒单原因")


class RequestDriverRequest(BaseModel):
    """呼叫司机请求模型，不指定司机时自动选择最近的空闲司机"""
    driver_id: Optional[int] = Field(None, description="指定司机ID")
