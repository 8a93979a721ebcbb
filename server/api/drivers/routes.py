# 司机配送API路由

import logging
from typing import Any, Dict
from fastapi import APIRouter, Depends, Path

from .models import DriverLocationRequest
from api.auth import require_role, TokenData
from api.dependencies import Operations, get_operations
from utils.errors import NotFoundError
from utils.response import create_success_response

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/drivers", tags=["司机"])


@router.get("/orders/incoming", response_model=Dict[str, Any])
async def get_incoming_orders(
    current_user: TokenData = Depends(require_role("driver")),
    ops: Operations = Depends(get_operations)
):
    """指派给当前司机的待取餐与配送中订单"""
    result = ops.queries.get_driver_orders(current_user.user_id)
    return create_success_response(
        data={"driver_id": result["driver_id"], "orders": result["orders"]},
        message=result["message"]
    )


@router.put("/location", response_model=Dict[str, Any])
async def update_location(
    location: DriverLocationRequest,
    current_user: TokenData = Depends(require_role("driver")),
    ops: Operations = Depends(get_operations)
):
    """上报当前位置"""
    driver = ops.support.get_driver_by_user(current_user.user_id)
    if not driver:
        raise NotFoundError("当前用户不是司机", code="DRIVER_NOT_FOUND")
    result = ops.support.update_driver_location(driver["driver_id"], location.latitude, location.longitude)
    return create_success_response(data=result, message=result["message"])


@router.post("/orders/{order_id}/accept", response_model=Dict[str, Any])
async def accept_delivery(
    order_id: int = Path(..., description="订单ID"),
    current_user: TokenData = Depends(require_role("driver")),
    ops: Operations = Depends(get_operations)
):
    """司机接单"""
    result = ops.orders.driver_accept(order_id, current_user.user_id)
    return create_success_response(data=result, message=result["message"])


@router.post("/orders/{order_id}/reject", response_model=Dict[str, Any])
async def reject_delivery(
    order_id: int = Path(..., description="订单ID"),
    current_user: TokenData = Depends(require_role("driver")),
    ops: Operations = Depends(get_operations)
):
    """司机拒单"""
    result = ops.orders.driver_reject(order_id, current_user.user_id)
    return create_success_response(data=result, message=result["message"])


@router.post("/orders/{order_id}/deliver", response_model=Dict[str, Any])
async def deliver_order(
    order_id: int = Path(..., description="订单ID"),
    current_user: TokenData = Depends(require_role("driver")),
    ops: Operations = Depends(get_operations)
):
    """确认送达"""
    result = ops.orders.deliver_order(order_id, current_user.user_id)
    logger.info(f"司机 {current_user.user_id} 送达订单 {order_id}，收益 {result['driver_earnings']}")
    return create_success_response(data=result, message=result["message"])
