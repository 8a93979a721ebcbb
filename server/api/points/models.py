# 积分相关的数据模型

from pydantic import BaseModel, Field


class RedeemPointsRequest(BaseModel):
    """积分兑换请求模型（兑换为钱包余额）"""
    points: int = Field(..., description="兑换积分数")
