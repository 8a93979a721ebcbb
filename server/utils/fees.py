# 费用计算工具
# 纯函数：平台费、配送费、司机分成、积分、税费、取消费、钱包手续费
# 所有金额均为整数最小货币单位（如皮阿斯特/分）

import math
from dataclasses import dataclass, field, asdict
from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR
from typing import Any, Dict, Iterable, List, Optional

from .errors import ValidationError


@dataclass(frozen=True)
class FeeSettings:
    """
    费率配置

    默认值即线上费率，配置文件 fees 段可覆盖任意字段
    """
    platform_fee_percentage: float = 0.05
    delivery_base_fee: int = 1500
    delivery_per_km_fee: int = 1500
    delivery_free_radius_km: float = 3
    multi_establishment_surcharge: int = 5000
    fallback_distance_km: float = 5
    partner_discount_percentage: float = 0.0
    driver_platform_fee_percentage: float = 0.30
    business_commission_percentage: float = 0.10
    tax_rate: float = 0.14
    cancellation_fee_percentage: float = 0.10
    points_per_major_unit: float = 1
    minor_units_per_major_unit: int = 100
    minor_units_per_point: int = 100
    points_expiry_days: int = 365
    points_redemption_min: int = 100
    points_redemption_max: int = 10000
    points_redemption_multiple: int = 10
    minimum_wallet_topup: int = 5000
    qualifying_subscription_app_types: tuple = ("go", "pass_go", "care_go")
    currency: str = "EGP"

    @classmethod
    def from_config(cls, fees_config: Optional[Dict[str, Any]]) -> "FeeSettings":
        """从配置字典构建，未知键忽略"""
        if not fees_config:
            return cls()

        values = {}
        known = cls.__dataclass_fields__.keys()
        for key, value in fees_config.items():
            if key == "points_redemption" and isinstance(value, dict):
                values["points_redemption_min"] = value.get("min", cls.points_redemption_min)
                values["points_redemption_max"] = value.get("max", cls.points_redemption_max)
                values["points_redemption_multiple"] = value.get("multiple_of", cls.points_redemption_multiple)
            elif key == "qualifying_subscription_app_types":
                values[key] = tuple(value)
            elif key in known:
                values[key] = value
        return cls(**values)


DEFAULT_FEES = FeeSettings()


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _percent_of(amount: int, rate: float) -> int:
    """amount × rate，四舍五入到整数最小单位"""
    return _round_half_up(Decimal(amount) * Decimal(str(rate)))


def calculate_platform_fee(subtotal: int, settings: FeeSettings = DEFAULT_FEES) -> int:
    """平台费：对（小计 - 折扣）按百分比收取"""
    return _percent_of(subtotal, settings.platform_fee_percentage)


def calculate_partner_discount(total_amount: int, settings: FeeSettings = DEFAULT_FEES) -> int:
    """合作商折扣，仅在订阅免配送费未生效时使用"""
    return _percent_of(total_amount, settings.partner_discount_percentage)


def calculate_delivery_fee(distance_km: float, business_count: int = 1,
                           settings: FeeSettings = DEFAULT_FEES) -> int:
    """
    配送费 = 基础费 + 超出免费半径的每公里费 + 多商家附加费

    Args:
        distance_km: 配送距离（公里）
        business_count: 订单涉及的不同商家数量
        settings: 费率配置

    Returns:
        配送费
    """
    if distance_km < 0:
        raise ValidationError("配送距离不能为负数", code="INVALID_DISTANCE")
    if business_count < 1:
        raise ValidationError("订单至少涉及一个商家", code="INVALID_BUSINESS_COUNT")

    fee = settings.delivery_base_fee

    if distance_km > settings.delivery_free_radius_km:
        extra_km = math.ceil(distance_km - settings.delivery_free_radius_km)
        fee += extra_km * settings.delivery_per_km_fee

    fee += calculate_multi_establishment_surcharge(business_count, settings)
    return fee


def calculate_multi_establishment_surcharge(business_count: int,
                                            settings: FeeSettings = DEFAULT_FEES) -> int:
    """每多一个商家收取一次附加费"""
    return max(0, business_count - 1) * settings.multi_establishment_surcharge


def calculate_driver_earnings(delivery_fee: int,
                              platform_fee_percentage: Optional[float] = None,
                              settings: FeeSettings = DEFAULT_FEES) -> Dict[str, int]:
    """
    司机配送收益拆分

    司机收益 + 平台抽成 恒等于 配送费
    """
    if delivery_fee < 0:
        raise ValidationError("配送费不能为负数", code="INVALID_AMOUNT")

    cut = settings.driver_platform_fee_percentage if platform_fee_percentage is None else platform_fee_percentage
    driver_earnings = _round_half_up(Decimal(delivery_fee) * (Decimal(1) - Decimal(str(cut))))
    platform_cut = delivery_fee - driver_earnings

    return {
        "total_delivery_fee": delivery_fee,
        "driver_earnings": driver_earnings,
        "platform_fee": platform_cut,
        "earnings_percentage": round(driver_earnings * 100 / delivery_fee) if delivery_fee else 0
    }


def calculate_points_earned(amount: int, settings: FeeSettings = DEFAULT_FEES) -> int:
    """积分 = floor(主货币单位金额 × 积分率)"""
    if amount <= 0:
        return 0
    major = Decimal(amount) / Decimal(settings.minor_units_per_major_unit)
    points = (major * Decimal(str(settings.points_per_major_unit))).to_integral_value(rounding=ROUND_FLOOR)
    return int(points)


def calculate_points_redemption(points: int, settings: FeeSettings = DEFAULT_FEES) -> int:
    """积分兑换价值（最小货币单位）"""
    return _round_half_up(Decimal(points) * Decimal(str(settings.minor_units_per_point)))


def calculate_required_points(amount: int, settings: FeeSettings = DEFAULT_FEES) -> int:
    """抵扣指定金额所需积分（向上取整）"""
    return math.ceil(amount / settings.minor_units_per_point)


def validate_points_redemption(points: int, settings: FeeSettings = DEFAULT_FEES) -> bool:
    """校验兑换积分的最小值、最大值和倍数约束"""
    if points < settings.points_redemption_min:
        raise ValidationError(f"至少需要 {settings.points_redemption_min} 积分才能兑换",
                              code="INVALID_POINTS_REDEMPTION")
    if points > settings.points_redemption_max:
        raise ValidationError(f"单次最多兑换 {settings.points_redemption_max} 积分",
                              code="INVALID_POINTS_REDEMPTION")
    if points % settings.points_redemption_multiple != 0:
        raise ValidationError(f"兑换积分必须是 {settings.points_redemption_multiple} 的倍数",
                              code="INVALID_POINTS_REDEMPTION")
    return True


def calculate_business_commission(order_total: int,
                                  commission_percentage: Optional[float] = None,
                                  settings: FeeSettings = DEFAULT_FEES) -> Dict[str, int]:
    """商家佣金拆分"""
    rate = settings.business_commission_percentage if commission_percentage is None else commission_percentage
    commission = _percent_of(order_total, rate)
    return {
        "order_total": order_total,
        "commission": commission,
        "commission_percentage": round(rate * 100),
        "business_earnings": order_total - commission
    }


def calculate_tax(amount: int, tax_rate: Optional[float] = None,
                  settings: FeeSettings = DEFAULT_FEES) -> Dict[str, int]:
    """税费计算（默认14%增值税）"""
    rate = settings.tax_rate if tax_rate is None else tax_rate
    tax_amount = _percent_of(amount, rate)
    return {
        "original_amount": amount,
        "tax_amount": tax_amount,
        "tax_rate": round(rate * 100),
        "total_with_tax": amount + tax_amount
    }


def calculate_cancellation_fee(order_status: str, order_total: int,
                               cancellation_fee_percentage: Optional[float] = None,
                               settings: FeeSettings = DEFAULT_FEES) -> Dict[str, Any]:
    """
    取消费按订单状态分级

    pending 免费；accepted/preparing 标准费率；
    waiting_driver/in_delivery 双倍费率
    """
    rate = settings.cancellation_fee_percentage if cancellation_fee_percentage is None else cancellation_fee_percentage

    if order_status == "pending":
        fee = 0
        reason = "待接单订单取消免费"
    elif order_status in ("accepted", "preparing"):
        fee = _percent_of(order_total, rate)
        reason = f"{order_status} 状态订单收取取消费"
    elif order_status in ("waiting_driver", "in_delivery"):
        fee = _percent_of(order_total, rate * 2)
        reason = f"{order_status} 状态订单收取双倍取消费"
    else:
        fee = 0
        reason = "当前阶段订单无法取消"

    return {
        "order_status": order_status,
        "order_total": order_total,
        "cancellation_fee": fee,
        "fee_percentage": round(rate * 100),
        "reason": reason
    }


def calculate_wallet_fees(amount: int, transaction_type: str) -> Dict[str, Any]:
    """钱包手续费：提现2%（最低500），转账固定100，充值免费"""
    if transaction_type == "withdrawal":
        fee = max(500, _percent_of(amount, 0.02))
        fee_type = "percentage"
    elif transaction_type == "transfer":
        fee = 100
        fee_type = "fixed"
    else:
        fee = 0
        fee_type = "none"

    return {
        "original_amount": amount,
        "fee": fee,
        "fee_type": fee_type,
        "final_amount": amount - fee
    }


def calculate_item_total(unit_price: int, quantity: int,
                         add_ons: Optional[Iterable[Dict[str, Any]]] = None) -> int:
    """单项小计 = 单价×数量 + Σ(加料价×数量)"""
    total = unit_price * quantity
    for add_on in add_ons or []:
        price = add_on.get("price") or 0
        total += int(price) * quantity
    return total


@dataclass
class OrderPricing:
    """订单定价结果"""
    total_amount: int
    discount_amount: int
    delivery_fee: int
    platform_fee: int
    distance_km: float
    business_count: int
    subscription_applied: bool = False
    coupon_discount: int = 0
    final_amount: int = field(init=False)

    def __post_init__(self):
        self.final_amount = self.total_amount - self.discount_amount + self.delivery_fee + self.platform_fee

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def calculate_order_pricing(item_totals: List[int], order_type: str, distance_km: float,
                            business_count: int, has_qualifying_subscription: bool = False,
                            coupon_discount: int = 0,
                            settings: FeeSettings = DEFAULT_FEES) -> OrderPricing:
    """
    订单定价

    1. total_amount = Σ 单项小计
    2. 配送单：配送费 = 基础费 + 超距费 + 多商家附加费
    3. 订阅且在免费半径内的配送单：配送费为0且跳过合作商折扣
    4. 其余情况按合作商折扣，再叠加优惠券折扣；折扣总额不超过 total_amount
       （订阅生效时优惠券不使用，coupon_discount 置0）
    5. 平台费按 (total_amount - discount_amount) 计算
    """
    total_amount = sum(item_totals)
    delivery_fee = 0
    discount_amount = 0
    subscription_applied = False

    if order_type == "delivery":
        delivery_fee = calculate_delivery_fee(distance_km, business_count, settings)

    if (has_qualifying_subscription and order_type == "delivery"
            and distance_km <= settings.delivery_free_radius_km):
        delivery_fee = 0
        subscription_applied = True
        coupon_discount = 0
    else:
        coupon_discount = max(0, coupon_discount)
        discount_amount = min(total_amount,
                              calculate_partner_discount(total_amount, settings) + coupon_discount)

    platform_fee = calculate_platform_fee(total_amount - discount_amount, settings)

    return OrderPricing(
        total_amount=total_amount,
        discount_amount=discount_amount,
        delivery_fee=delivery_fee,
        platform_fee=platform_fee,
        distance_km=distance_km,
        business_count=business_count,
        subscription_applied=subscription_applied,
        coupon_discount=coupon_discount
    )
