# 支付相关的数据模型

from pydantic import BaseModel, Field


class PayOrderRequest(BaseModel):
    """订单支付请求模型"""
    use_wallet: bool = Field(True, description="是否优先使用钱包余额抵扣")


class PaymentQRRequest(BaseModel):
    """生成支付码请求模型"""
    short_lived: bool = Field(False, description="收银台场景，1分钟有效")
