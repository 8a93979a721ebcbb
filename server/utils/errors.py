# 业务异常体系
# 每个异常都带有原因码(code)和可读消息，API层据此映射HTTP状态码

from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    """
    业务异常基类

    Args:
        message: 可读错误消息
        code: 原因码，供客户端区分失败类型
        details: 附加数据
    """
    code = "MARKETPLACE_ERROR"
    http_status = 400

    def __init__(self, message: str, code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        data = {"code": self.code}
        data.update(self.details)
        return data


class ValidationError(MarketplaceError, ValueError):
    """输入数据不合法，在任何写操作之前拒绝"""
    code = "VALIDATION_ERROR"
    http_status = 400


class ProductUnavailableError(ValidationError):
    """商品下架或所属商家停业"""
    code = "PRODUCT_NOT_AVAILABLE"


class NotFoundError(MarketplaceError, LookupError):
    """引用的实体不存在"""
    code = "NOT_FOUND"
    http_status = 404


class AuthorizationError(MarketplaceError, PermissionError):
    """操作者不拥有或不控制该资源"""
    code = "UNAUTHORIZED_ACCESS"
    http_status = 403


class IllegalStateTransition(MarketplaceError):
    """当前状态下不允许的状态迁移"""
    code = "ILLEGAL_TRANSITION"
    http_status = 409

    def __init__(self, from_status: str, event: str, message: Optional[str] = None):
        super().__init__(
            message or f"订单状态为 {from_status}，不允许执行 {event}",
            details={"from_status": from_status, "event": event}
        )
        self.from_status = from_status
        self.event = event


class InsufficientBalance(MarketplaceError):
    """钱包余额不足"""
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, balance: int, requested: int):
        super().__init__(
            f"余额不足，需要 {requested}，当前余额 {balance}",
            details={"balance": balance, "requested": requested}
        )


class InsufficientPoints(MarketplaceError):
    """积分余额不足"""
    code = "INSUFFICIENT_POINTS"

    def __init__(self, balance: int, requested: int):
        super().__init__(
            f"积分不足，需要 {requested}，当前积分 {balance}",
            details={"balance": balance, "requested": requested}
        )


class QRExpired(MarketplaceError):
    """二维码已过期"""
    code = "QR_EXPIRED"
    http_status = 410


class QRAlreadyUsed(MarketplaceError):
    """一次性二维码已被使用"""
    code = "QR_ALREADY_USED"
    http_status = 409


class ExternalServiceError(MarketplaceError):
    """第三方服务（支付、地图、通知）调用失败"""
    code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502
