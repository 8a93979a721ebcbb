# 商家订单操作API路由

import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Path, Query

from .models import RejectOrderRequest, RequestDriverRequest
from api.auth import require_role, TokenData
from api.dependencies import Operations, get_operations
from utils.response import create_success_response, create_pagination_response

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/businesses", tags=["商家"])


@router.get("/orders", response_model=Dict[str, Any])
async def get_business_orders(
    status: Optional[str] = Query(None, description="订单状态筛选"),
    page: int = Query(1, ge=1, description="页码"),
    per_page: int = Query(20, ge=1, le=100, description="每页条数"),
    current_user: TokenData = Depends(require_role("business")),
    ops: Operations = Depends(get_operations)
):
    """商家名下店铺的订单列表"""
    result = ops.queries.get_business_orders(current_user.user_id, status=status,
                                             page=page, per_page=per_page)
    return create_pagination_response(
        items=result["orders"],
        total_count=result["pagination"]["total_count"],
        current_page=page,
        per_page=per_page,
        message=result["message"]
    )


@router.post("/orders/{order_id}/accept", response_model=Dict[str, Any])
async def accept_order(
    order_id: int = Path(..., description="订单ID"),
    current_user: TokenData = Depends(require_role("business")),
    ops: Operations = Depends(get_operations)
):
    """商家接单"""
    result = ops.orders.accept_order(order_id, current_user.user_id)
    return create_success_response(data=result, message=result["message"])


@router.post("/orders/{order_id}/reject", response_model=Dict[str, Any])
async def reject_order(
    reject_request: RejectOrderRequest,
    order_id: int = Path(..., description="订单ID"),
    current_user: TokenData = Depends(require_role("business")),
    ops: Operations = Depends(get_operations)
):
    """商家拒单（已支付订单全额退款）"""
    result = ops.orders.reject_order(order_id, current_user.user_id, reject_request.reason)
    return create_success_response(data=result, message=result["message"])


@router.post("/orders/{order_id}/prepare", response_model=Dict[str, Any])
async def start_preparing(
    order_id: int = Path(..., description="订单ID"),
    current_user: TokenData = Depends(require_role("business")),
    ops: Operations = Depends(get_operations)
):
    """开始制作"""
    result = ops.orders.start_preparing(order_id, current_user.user_id)
    return create_success_response(data=result, message=result["message"])


@router.post("/orders/{order_id}/request-driver", response_model=Dict[str, Any])
async def request_driver(
    driver_request: RequestDriverRequest,
    order_id: int = Path(..., description="订单ID"),
    current_user: TokenData = Depends(require_role("business")),
    ops: Operations = Depends(get_operations)
):
    """呼叫司机取餐（仅配送订单）"""
    result = ops.orders.request_driver(order_id, current_user.user_id, driver_request.driver_id)
    logger.info(f"订单 {order_id} 指派司机 {result['driver_id']}")
    return create_success_response(data=result, message=result["message"])
