# 数据验证器

import re
from datetime import datetime
from typing import Any, Optional

ORDER_TYPES = ('delivery', 'pickup')
ORDER_PAYMENT_METHODS = ('cash', 'online')
PAYMENT_METHODS = ('cash', 'online', 'wallet')
PAYMENT_STATUSES = ('pending', 'paid', 'refunded')
ORDER_STATUSES = ('pending', 'accepted', 'preparing', 'waiting_driver',
                  'in_delivery', 'completed', 'cancelled')
TRANSACTION_TYPES = ('payment', 'refund', 'wallet_topup', 'discount', 'earnings')
REFERENCE_TYPES = ('order', 'reservation', 'wallet')
TRANSACTION_STATUSES = ('pending', 'completed', 'failed', 'refunded')
QR_TYPES = ('discount', 'payment', 'reservation', 'order', 'driver_pickup')
ROLES = ('user', 'business', 'driver', 'admin')

_UUID_RE = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE)


def validate_date(date_str: str, format_str: str = "%Y-%m-%d") -> bool:
    """
    验证日期格式

    Args:
        date_str: 日期字符串
        format_str: 日期格式
    """
    try:
        datetime.strptime(date_str, format_str)
        return True
    except (TypeError, ValueError):
        return False


def validate_uuid(value: Any) -> bool:
    """验证UUID格式的标识符（商品ID等）"""
    if not isinstance(value, str):
        return False
    return bool(_UUID_RE.match(value.strip()))


def validate_order_type(order_type: str) -> bool:
    return order_type in ORDER_TYPES


def validate_order_payment_method(payment_method: str) -> bool:
    """下单时仅允许现金或在线支付，钱包在支付环节抵扣"""
    return payment_method in ORDER_PAYMENT_METHODS


def validate_order_status(status: str) -> bool:
    return status in ORDER_STATUSES


def validate_qr_type(qr_type: str) -> bool:
    return qr_type in QR_TYPES


def validate_role(role: str) -> bool:
    return role in ROLES


def validate_positive_integer(value: Any) -> bool:
    """
    验证正整数（布尔值不视为整数）
    """
    if isinstance(value, bool):
        return False
    try:
        return int(value) > 0 and int(value) == value
    except (ValueError, TypeError):
        return False


def validate_non_negative_integer(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    try:
        return int(value) >= 0 and int(value) == value
    except (ValueError, TypeError):
        return False


def validate_string_length(value: str, min_length: int = 0, max_length: Optional[int] = None) -> bool:
    """
    验证字符串长度
    """
    if not isinstance(value, str):
        return False

    if len(value) < min_length:
        return False

    if max_length is not None and len(value) > max_length:
        return False

    return True
