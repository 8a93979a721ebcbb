# 订单相关的数据模型

from typing import List, Optional
from pydantic import BaseModel, Field


class AddOnRequest(BaseModel):
    """加料"""
    name: str = Field(..., description="加料名称")
    price: int = Field(0, description="加料单价（最小货币单位）")


class OrderItemRequest(BaseModel):
    """订单项"""
    product_id: str = Field(..., description="商品ID（UUID）")
    quantity: int = Field(..., description="数量")
    add_ons: List[AddOnRequest] = Field(default_factory=list, description="加料列表")


class DeliveryAddress(BaseModel):
    latitude: float = Field(..., description="纬度")
    longitude: float = Field(..., description="经度")
    street: Optional[str] = Field(None, max_length=200, description="街道地址")
    building: Optional[str] = Field(None, max_length=100, description="楼栋")
    notes: Optional[str] = Field(None, max_length=200, description="配送备注")


class QuoteOrderRequest(BaseModel):
    """购物车试算请求模型"""
    items: List[OrderItemRequest] = Field(default_factory=list, description="订单项")
    order_type: str = Field(..., description="订单类型：delivery/pickup")
    payment_method: str = Field("cash", description="支付方式：cash/online")
    delivery_address: Optional[DeliveryAddress] = Field(None, description="配送地址")
    coupon_code: Optional[str] = Field(None, description="折扣码")


class CreateOrderRequest(QuoteOrderRequest):
    """创建订单请求模型"""
    notes: Optional[str] = Field(None, max_length=500, description="订单备注")


class CancelOrderRequest(BaseModel):
    """取消订单请求模型"""
    cancel_reason: str = Field("用户主动取消", max_length=200, description="取消原因")


class OrderPricingInfo(BaseModel):
    """订单定价"""
    total_amount: int
    discount_amount: int
    delivery_fee: int
    platform_fee: int
    final_amount: int
    distance_km: float
    business_count: int
    subscription_applied: bool
    coupon_discount: int
    currency: str


class CreateOrderResponse(OrderPricingInfo):
    """创建订单响应模型"""
    order_id: int
    order_number: str
    status: str
    payment_status: str
    order_type: str
    payment_method: str
    qr_code: Optional[str] = None
    distance_estimated: bool = False


class CancelOrderResponse(BaseModel):
    """取消订单响应模型"""
    order_id: int
    status: str
    payment_status: str
    cancellation_fee: int
    refunded_amount: int
    wallet_refund: int
    cancel_reason: str
