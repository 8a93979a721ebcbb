# 钱包相关的数据模型

from pydantic import BaseModel, Field


class TopupRequest(BaseModel):
    """钱包充值请求模型"""
    amount: int = Field(..., description="充值金额（最小货币单位）")
