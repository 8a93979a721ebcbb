# 支付API路由

import logging
from typing import Any, Dict
from fastapi import APIRouter, Depends, Path

from .models import PayOrderRequest, PaymentQRRequest
from api.auth import get_current_user, TokenData
from api.dependencies import Operations, get_operations
from utils.response import create_success_response

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/payments", tags=["支付"])


@router.post("/orders/{order_id}", response_model=Dict[str, Any])
async def pay_order(
    pay_request: PayOrderRequest,
    order_id: int = Path(..., description="订单ID"),
    current_user: TokenData = Depends(get_current_user),
    ops: Operations = Depends(get_operations)
):
    """
    订单支付：钱包余额优先抵扣，不足部分在线支付
    """
    result = ops.payments.pay_order(order_id, current_user.user_id, use_wallet=pay_request.use_wallet)
    return create_success_response(data=result, message=result["message"])


@router.post("/orders/{order_id}/qr", response_model=Dict[str, Any])
async def create_payment_qr(
    qr_request: PaymentQRRequest,
    order_id: int = Path(..., description="订单ID"),
    current_user: TokenData = Depends(get_current_user),
    ops: Operations = Depends(get_operations)
):
    """生成订单支付码，商家扫码收款"""
    qr = ops.payments.issue_payment_qr(order_id, current_user.user_id, short_lived=qr_request.short_lived)
    return create_success_response(data=qr, message="支付码已生成")
