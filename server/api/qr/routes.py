# 二维码API路由

import logging
from typing import Any, Dict
from fastapi import APIRouter, Depends, Path

from .models import IssueQRRequest, ScanQRRequest
from api.auth import get_current_user, TokenData
from api.dependencies import Operations, get_operations
from utils.errors import ValidationError, AuthorizationError
from utils.response import create_success_response

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/qr", tags=["二维码"])


@router.post("/issue", response_model=Dict[str, Any])
async def issue_qr(
    issue_request: IssueQRRequest,
    current_user: TokenData = Depends(get_current_user),
    ops: Operations = Depends(get_operations)
):
    """
    签发二维码

    支付码由订单用户生成；折扣码由商家或管理员发放。
    订单码、取餐码、预约码随业务流程自动签发，不能在此生成。
    """
    if issue_request.qr_type == "payment":
        if issue_request.reference_id is None:
            raise ValidationError("支付码需要订单ID", code="MISSING_REFERENCE")
        qr = ops.payments.issue_payment_qr(issue_request.reference_id, current_user.user_id,
                                           short_lived=issue_request.short_lived)
    elif issue_request.qr_type == "discount":
        if current_user.role not in ("business", "admin"):
            raise AuthorizationError("只有商家或管理员可以发放折扣码")
        qr = ops.qr.issue("discount", issue_request.reference_id, issue_request.metadata,
                          user_id=issue_request.user_id)
    else:
        raise ValidationError(f"二维码类型 {issue_request.qr_type} 不能手动签发",
                              code="QR_TYPE_NOT_ISSUABLE")

    logger.info(f"用户 {current_user.user_id} 签发 {issue_request.qr_type} 二维码")
    return create_success_response(data=qr, message="二维码已生成")


@router.post("/scan", response_model=Dict[str, Any])
async def scan_qr(
    scan_request: ScanQRRequest,
    current_user: TokenData = Depends(get_current_user),
    ops: Operations = Depends(get_operations)
):
    """扫描二维码，按类型触发取餐、收款、预约签到等操作"""
    scanner = {"user_id": current_user.user_id, "role": current_user.role}
    result = ops.qr.consume(scan_request.token, scanner)
    return create_success_response(data=result, message=result["message"])


@router.get("/{token}", response_model=Dict[str, Any])
async def get_qr(
    token: str = Path(..., description="二维码令牌"),
    current_user: TokenData = Depends(get_current_user),
    ops: Operations = Depends(get_operations)
):
    """查询二维码状态（不核销）"""
    qr = ops.qr.get_by_token(token)
    return create_success_response(data={
        "token": qr["token"],
        "qr_type": qr["qr_type"],
        "reference_id": qr["reference_id"],
        "expires_at": qr["expires_at"],
        "is_used": qr["is_used"],
        "is_expired": qr["is_expired"],
        "single_use": qr["single_use"],
        "scan_count": qr["scan_count"]
    }, message="二维码查询成功")
