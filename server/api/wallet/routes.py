# 钱包API路由

import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Query

from .models import TopupRequest
from api.auth import get_current_user, TokenData
from api.dependencies import Operations, get_operations
from utils.response import create_success_response, create_pagination_response

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/wallet", tags=["钱包"])


@router.get("", response_model=Dict[str, Any])
async def get_wallet(
    current_user: TokenData = Depends(get_current_user),
    ops: Operations = Depends(get_operations)
):
    """钱包余额"""
    wallet = ops.wallet.get_wallet(current_user.user_id)
    return create_success_response(data=wallet, message="钱包查询成功")


@router.post("/topup", response_model=Dict[str, Any])
async def topup_wallet(
    topup_request: TopupRequest,
    current_user: TokenData = Depends(get_current_user),
    ops: Operations = Depends(get_operations)
):
    """通过在线支付充值钱包"""
    result = ops.wallet.topup(current_user.user_id, topup_request.amount)
    return create_success_response(data=result, message=result["message"])


@router.get("/transactions", response_model=Dict[str, Any])
async def get_transactions(
    transaction_type: Optional[str] = Query(None, description="交易类型筛选"),
    page: int = Query(1, ge=1, description="页码"),
    per_page: int = Query(20, ge=1, le=100, description="每页条数"),
    current_user: TokenData = Depends(get_current_user),
    ops: Operations = Depends(get_operations)
):
    """交易记录"""
    result = ops.wallet.get_transactions(current_user.user_id, limit=per_page,
                                         offset=(page - 1) * per_page,
                                         transaction_type=transaction_type)
    return create_pagination_response(
        items=result["transactions"],
        total_count=result["total_count"],
        current_page=page,
        per_page=per_page,
        message=f"查询成功，共 {result['total_count']} 条交易记录"
    )
