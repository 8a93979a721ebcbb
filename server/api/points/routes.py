# 积分API路由

import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Query

from .models import RedeemPointsRequest
from api.auth import get_current_user, TokenData
from api.dependencies import Operations, get_operations
from utils.response import create_success_response, create_pagination_response

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/points", tags=["积分"])


@router.get("", response_model=Dict[str, Any])
async def get_points_summary(
    current_user: TokenData = Depends(get_current_user),
    ops: Operations = Depends(get_operations)
):
    """积分概览"""
    summary = ops.points.get_summary(current_user.user_id)
    return create_success_response(data=summary, message="积分查询成功")


@router.get("/history", response_model=Dict[str, Any])
async def get_points_history(
    activity_type: Optional[str] = Query(None, description="积分活动类型筛选"),
    page: int = Query(1, ge=1, description="页码"),
    per_page: int = Query(20, ge=1, le=100, description="每页条数"),
    current_user: TokenData = Depends(get_current_user),
    ops: Operations = Depends(get_operations)
):
    """积分明细"""
    history = ops.points.get_history(current_user.user_id, activity_type=activity_type,
                                     limit=per_page, offset=(page - 1) * per_page)
    return create_pagination_response(
        items=history["entries"],
        total_count=history["total_count"],
        current_page=page,
        per_page=per_page
    )


@router.post("/redeem", response_model=Dict[str, Any])
async def redeem_points(
    redeem_request: RedeemPointsRequest,
    current_user: TokenData = Depends(get_current_user),
    ops: Operations = Depends(get_operations)
):
    """积分兑换为钱包余额"""
    result = ops.points.redeem_to_wallet(current_user.user_id, redeem_request.points)
    logger.info(f"用户 {current_user.user_id} 兑换 {redeem_request.points} 积分")
    return create_success_response(data=result, message=result["message"])
