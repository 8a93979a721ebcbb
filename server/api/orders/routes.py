# 订单相关API路由

import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Query, Path

from .models import (QuoteOrderRequest, CreateOrderRequest, CancelOrderRequest,
                     CreateOrderResponse, CancelOrderResponse, OrderPricingInfo)
from api.auth import get_current_user, TokenData
from api.dependencies import Operations, get_operations
from utils.response import create_success_response, create_pagination_response

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/orders", tags=["订单"])


def _order_arguments(request: QuoteOrderRequest) -> Dict[str, Any]:
    return {
        "items": [item.model_dump() for item in request.items],
        "order_type": request.order_type,
        "payment_method": request.payment_method,
        "delivery_address": request.delivery_address.model_dump() if request.delivery_address else None,
        "coupon_code": request.coupon_code
    }


@router.post("/quote", response_model=Dict[str, Any])
async def quote_order(
    quote_request: QuoteOrderRequest,
    current_user: TokenData = Depends(get_current_user),
    ops: Operations = Depends(get_operations)
):
    """购物车试算（不创建订单）"""
    quote = ops.orders.quote_order(current_user.user_id, **_order_arguments(quote_request))
    pricing = OrderPricingInfo(**quote)
    return create_success_response(
        data={**pricing.model_dump(), "items": quote["items"],
              "distance_estimated": quote["distance_estimated"]},
        message=quote["message"]
    )


@router.post("", response_model=Dict[str, Any])
async def create_order(
    order_request: CreateOrderRequest,
    current_user: TokenData = Depends(get_current_user),
    ops: Operations = Depends(get_operations)
):
    """创建订单"""
    order_result = ops.orders.create_order(
        current_user.user_id, notes=order_request.notes, **_order_arguments(order_request)
    )

    response_data = CreateOrderResponse(**order_result)
    return create_success_response(
        data={**response_data.model_dump(), "items": order_result["items"]},
        message=order_result["message"]
    )


@router.get("/my", response_model=Dict[str, Any])
async def get_my_orders(
    status: Optional[str] = Query(None, description="订单状态筛选"),
    order_type: Optional[str] = Query(None, description="订单类型筛选"),
    page: int = Query(1, ge=1, description="页码"),
    per_page: int = Query(20, ge=1, le=100, description="每页条数"),
    current_user: TokenData = Depends(get_current_user),
    ops: Operations = Depends(get_operations)
):
    """我的订单列表"""
    result = ops.queries.list_user_orders(current_user.user_id, status=status, order_type=order_type,
                                          page=page, per_page=per_page)
    return create_pagination_response(
        items=result["orders"],
        total_count=result["pagination"]["total_count"],
        current_page=page,
        per_page=per_page,
        message=result["message"]
    )


@router.get("/{order_id}", response_model=Dict[str, Any])
async def get_order_detail(
    order_id: int = Path(..., description="订单ID"),
    current_user: TokenData = Depends(get_current_user),
    ops: Operations = Depends(get_operations)
):
    """订单详情（仅下单用户可查看）"""
    details = ops.queries.get_order_details(order_id, current_user.user_id)
    message = details.pop("message")
    return create_success_response(data=details, message=message)


@router.post("/{order_id}/cancel", response_model=Dict[str, Any])
async def cancel_order(
    cancel_request: CancelOrderRequest,
    order_id: int = Path(..., description="订单ID"),
    current_user: TokenData = Depends(get_current_user),
    ops: Operations = Depends(get_operations)
):
    """取消订单"""
    cancel_result = ops.orders.cancel_order(order_id, current_user.user_id, cancel_request.cancel_reason)
    logger.info(f"用户 {current_user.user_id} 取消订单 {order_id}，退款 {cancel_result['refunded_amount']}")

    response_data = CancelOrderResponse(**cancel_result)
    return create_success_response(data=response_data.model_dump(), message=cancel_result["message"])


@router.get("/{order_id}/track", response_model=Dict[str, Any])
async def track_order(
    order_id: int = Path(..., description="订单ID"),
    current_user: TokenData = Depends(get_current_user),
    ops: Operations = Depends(get_operations)
):
    """配送追踪"""
    tracking = ops.queries.track_order(order_id, current_user.user_id)
    message = tracking.pop("message")
    return create_success_response(data=tracking, message=message)
