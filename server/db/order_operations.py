# 订单生命周期引擎
# 下单定价、状态迁移与迁移触发的副作用（二维码、钱包、积分、通知）

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .manager import DatabaseManager, to_db_time
from .supporting_operations import SupportingOperations
from .wallet_operations import WalletOperations
from utils.errors import (MarketplaceError, ValidationError, NotFoundError, AuthorizationError,
                          ProductUnavailableError, IllegalStateTransition, ExternalServiceError)
from utils.fees import (FeeSettings, DEFAULT_FEES, OrderPricing, calculate_item_total,
                        calculate_order_pricing, calculate_cancellation_fee,
                        calculate_driver_earnings)
from utils.geo import extract_coordinates, haversine_distance
from utils.validators import (validate_uuid, validate_positive_integer, validate_non_negative_integer,
                              validate_order_type, validate_order_payment_method)

# (当前状态, 事件) -> 目标状态；表外组合一律视为非法迁移
TRANSITIONS = {
    ('pending', 'accept'): 'accepted',
    ('accepted', 'prepare'): 'preparing',
    ('preparing', 'request_driver'): 'waiting_driver',
    ('waiting_driver', 'driver_accept'): 'in_delivery',
    ('waiting_driver', 'driver_reject'): 'preparing',
    ('in_delivery', 'deliver'): 'completed',
    ('preparing', 'pickup_scan'): 'completed',
    ('pending', 'cancel'): 'cancelled',
    ('accepted', 'cancel'): 'cancelled',
    ('pending', 'reject'): 'cancelled',
    ('accepted', 'reject'): 'cancelled',
}

# 仅适用于特定订单类型的事件
EVENT_ORDER_TYPES = {
    'request_driver': 'delivery',
    'driver_accept': 'delivery',
    'driver_reject': 'delivery',
    'deliver': 'delivery',
    'pickup_scan': 'pickup',
}

ORDER_NUMBER_PREFIX = "ORD"


def resolve_transition(status: str, event: str, order_type: Optional[str] = None) -> str:
    """
    查迁移表得到目标状态

    Raises:
        IllegalStateTransition: 当前状态或订单类型不允许该事件
    """
    target = TRANSITIONS.get((status, event))
    if target is None:
        raise IllegalStateTransition(status, event)

    required_type = EVENT_ORDER_TYPES.get(event)
    if required_type and order_type and order_type != required_type:
        raise IllegalStateTransition(status, event, f"{order_type} 订单不支持 {event}")

    return target


class OrderOperations:
    """
    订单生命周期引擎

    所有状态变更都经过 _transition，先查迁移表再以 "WHERE status = 旧状态" 条件更新；
    每个操作是一个数据库事务，通知在提交后发送，失败只记录日志。
    """

    def __init__(self, db_manager: DatabaseManager, fee_settings: FeeSettings = DEFAULT_FEES,
                 wallet_ops: Optional[WalletOperations] = None, points_ops=None, qr_ops=None,
                 notifier=None, maps=None, payment_gateway=None,
                 support_ops: Optional[SupportingOperations] = None,
                 max_order_number_attempts: int = 10000):
        self.db = db_manager
        self.fees = fee_settings
        self.wallet_ops = wallet_ops or WalletOperations(db_manager, fee_settings, payment_gateway)
        self.points_ops = points_ops
        self.qr_ops = qr_ops
        self.notifier = notifier
        self.maps = maps
        self.gateway = payment_gateway
        self.support = support_ops or SupportingOperations(db_manager, fee_settings)
        self.max_order_number_attempts = max_order_number_attempts
        self.logger = logging.getLogger(self.__class__.__name__)

        if self.qr_ops is not None:
            self.qr_ops.register_handler('order', self.handle_order_scan)
            self.qr_ops.register_handler('driver_pickup', self.handle_driver_pickup_scan)

    # 公共查询与校验
    def _get_order(self, order_id: int) -> Dict[str, Any]:
        row = self.db.conn.execute("SELECT * FROM orders WHERE order_id = ?", [order_id]).fetchone()
        if not row:
            raise NotFoundError(f"订单ID {order_id} 不存在", code="ORDER_NOT_FOUND")
        order = dict(row)
        order['delivery_address'] = json.loads(order['delivery_address']) if order['delivery_address'] else None
        return order

    def _get_order_business_ids(self, order_id: int) -> List[int]:
        rows = self.db.conn.execute("""
            SELECT DISTINCT business_id FROM order_items WHERE order_id = ? ORDER BY business_id
        """, [order_id]).fetchall()
        return [row['business_id'] for row in rows]

    def _verify_order_owner(self, order: Dict[str, Any], user_id: int):
        if order['user_id'] != user_id:
            raise AuthorizationError("无权操作该订单")

    def _verify_business_actor(self, order: Dict[str, Any], user_id: int) -> List[int]:
        """操作者必须拥有订单涉及的某个商家"""
        owned = set(self.support.get_businesses_owned_by(user_id))
        order_businesses = self._get_order_business_ids(order['order_id'])
        if not owned.intersection(order_businesses):
            raise AuthorizationError("商家无权操作该订单")
        return order_businesses

    def _verify_assigned_driver(self, order: Dict[str, Any], user_id: int) -> Dict[str, Any]:
        driver = self.support.get_driver_by_user(user_id)
        if not driver or order['driver_id'] != driver['driver_id']:
            raise AuthorizationError("你不是该订单的指派司机", code="NOT_ASSIGNED_DRIVER")
        return driver

    def _notify(self, recipient_type: str, recipient_id: Any, event_type: str, payload: Dict[str, Any]):
        """提交后发送的尽力而为通知"""
        if self.notifier is None:
            return
        self.db.after_commit(
            lambda: self.notifier.notify(recipient_type, recipient_id, event_type, payload)
        )

    def _transition(self, order: Dict[str, Any], event: str, **fields) -> str:
        """
        唯一的状态变更入口

        Args:
            order: 当前订单
            event: 事件名，见 TRANSITIONS
            fields: 同时更新的其他列
        """
        target = resolve_transition(order['status'], event, order['order_type'])

        assignments = ["status = ?", "updated_at = CURRENT_TIMESTAMP"]
        params: List[Any] = [target]
        for column, value in fields.items():
            assignments.append(f"{column} = ?")
            params.append(value)

        cursor = self.db.conn.execute(f"""
            UPDATE orders SET {', '.join(assignments)}
            WHERE order_id = ? AND status = ?
        """, params + [order['order_id'], order['status']])
        if cursor.rowcount != 1:
            raise IllegalStateTransition(order['status'], event, "订单状态已被并发修改")

        self.logger.info(f"订单 {order['order_number']}: {order['status']} -> {target}（{event}）")
        order['status'] = target
        order.update(fields)
        return target

    # 下单
    def _validate_items(self, items: Any) -> List[Dict[str, Any]]:
        if not items or not isinstance(items, list):
            raise ValidationError("订单至少包含一个商品", code="MISSING_ORDER_ITEMS")

        normalized = []
        for index, item in enumerate(items):
            quantity = item.get('quantity')
            product_id = item.get('product_id')
            if not validate_positive_integer(quantity):
                raise ValidationError(f"第 {index + 1} 个商品数量必须为正整数", code="INVALID_QUANTITY")
            if not validate_uuid(product_id):
                raise ValidationError(f"商品ID格式错误: {product_id}", code="INVALID_PRODUCT_ID_FORMAT")

            add_ons = []
            for add_on in item.get('add_ons') or []:
                price = add_on.get('price', 0)
                if not validate_non_negative_integer(price):
                    raise ValidationError(f"加料价格必须为非负整数: {price}", code="INVALID_ADD_ON")
                add_ons.append({'name': add_on.get('name'), 'price': int(price)})

            normalized.append({
                'product_id': product_id.strip().lower(),
                'quantity': int(quantity),
                'add_ons': add_ons
            })
        return normalized

    def _resolve_products(self, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """查商品快照；商品不存在、已下架或商家停业均拒绝下单"""
        lines = []
        for item in items:
            product = self.support.get_product(item['product_id'])
            if not product:
                raise NotFoundError(f"商品 {item['product_id']} 不存在", code="PRODUCT_NOT_FOUND")
            if not product['is_available']:
                raise ProductUnavailableError(f"商品 {product['name']} 已下架",
                                              details={'product_id': product['product_id']})
            if not product['business_active']:
                raise ProductUnavailableError(f"商家 {product['business_name']} 已停业",
                                              code="BUSINESS_NOT_ACTIVE",
                                              details={'business_id': product['business_id']})

            lines.append({
                'product_id': product['product_id'],
                'business_id': product['business_id'],
                'product_name': product['name'],
                'quantity': item['quantity'],
                'unit_price': product['price'],
                'add_ons': item['add_ons'],
                'total_price': calculate_item_total(product['price'], item['quantity'], item['add_ons'])
            })
        return lines

    def _delivery_distance(self, business_ids: List[int], delivery_address: Dict[str, Any]) -> Dict[str, Any]:
        """
        配送距离取订单中最远商家到收货地址的距离；
        坐标缺失或地图服务不可用时使用兜底距离（仅用于估算费用）
        """
        distances = []
        for business_id in business_ids:
            business = self.support.get_business(business_id)
            if self.maps is not None:
                distance = self.maps.distance(business, delivery_address)
            else:
                origin = extract_coordinates(business)
                destination = extract_coordinates(delivery_address)
                distance = haversine_distance(*origin, *destination) if origin and destination else None
            if distance is not None:
                distances.append(distance)

        if not distances:
            return {'distance_km': self.fees.fallback_distance_km, 'estimated': True}
        return {'distance_km': round(max(distances), 2), 'estimated': False}

    def _build_quote(self, user_id: int, items: Any, order_type: str, payment_method: str,
                     delivery_address: Optional[Dict[str, Any]], coupon_code: Optional[str]) -> Dict[str, Any]:
        """
        下单校验与定价（不写库）

        校验顺序：商品列表 -> 商品与商家状态 -> 订单类型与地址 -> 支付方式
        """
        normalized = self._validate_items(items)
        lines = self._resolve_products(normalized)

        if not validate_order_type(order_type):
            raise ValidationError(f"无效的订单类型: {order_type}", code="INVALID_ORDER_TYPE")
        if order_type == 'delivery' and not extract_coordinates(delivery_address):
            raise ValidationError("配送订单需要带坐标的收货地址", code="MISSING_DELIVERY_ADDRESS")
        if not validate_order_payment_method(payment_method):
            raise ValidationError(f"无效的支付方式: {payment_method}", code="INVALID_PAYMENT_METHOD")

        business_ids = sorted({line['business_id'] for line in lines})
        distance = {'distance_km': 0, 'estimated': False}
        if order_type == 'delivery':
            distance = self._delivery_distance(business_ids, delivery_address)

        coupon = None
        total_amount = sum(line['total_price'] for line in lines)
        if coupon_code:
            if self.qr_ops is None:
                raise ValidationError("优惠券服务不可用", code="INVALID_COUPON")
            coupon = self.qr_ops.resolve_coupon(coupon_code, total_amount, user_id)

        pricing = calculate_order_pricing(
            [line['total_price'] for line in lines], order_type, distance['distance_km'],
            len(business_ids),
            has_qualifying_subscription=self.support.has_qualifying_subscription(user_id),
            coupon_discount=coupon['discount'] if coupon else 0,
            settings=self.fees
        )

        return {
            'lines': lines,
            'business_ids': business_ids,
            'pricing': pricing,
            'distance_estimated': distance['estimated'],
            'coupon': coupon
        }

    def quote_order(self, user_id: int, items: Any, order_type: str, payment_method: str = 'cash',
                    delivery_address: Optional[Dict[str, Any]] = None,
                    coupon_code: Optional[str] = None) -> Dict[str, Any]:
        """购物车试算：与下单相同的定价流程，不写库"""
        quote = self._build_quote(user_id, items, order_type, payment_method, delivery_address, coupon_code)
        pricing: OrderPricing = quote['pricing']
        return {
            'items': quote['lines'],
            'business_count': len(quote['business_ids']),
            'distance_estimated': quote['distance_estimated'],
            'currency': self.fees.currency,
            **pricing.to_dict(),
            'message': '试算成功'
        }

    def _insert_order(self, user_id: int, order_type: str, payment_method: str,
                      delivery_address: Optional[Dict[str, Any]], pricing: OrderPricing,
                      coupon_code: Optional[str], notes: Optional[str], now: datetime) -> Dict[str, Any]:
        """
        分配订单号并写入订单

        订单号 ORD-YYYYMMDD-NNNN：从当日最大序号开始，逐个尝试，
        以库中 UNIQUE 约束为准，冲突时序号加一重试
        """
        prefix = f"{ORDER_NUMBER_PREFIX}-{now.strftime('%Y%m%d')}-"
        max_seq = self.db.conn.execute("""
            SELECT MAX(CAST(SUBSTR(order_number, ?) AS INTEGER))
            FROM orders WHERE order_number LIKE ?
        """, [len(prefix) + 1, f"{prefix}%"]).fetchone()[0]
        counter = (max_seq or 0) + 1

        address_json = json.dumps(delivery_address, ensure_ascii=False) if delivery_address else None
        distance_km = pricing.distance_km if order_type == 'delivery' else None

        for _ in range(self.max_order_number_attempts):
            order_number = f"{prefix}{counter:04d}"
            exists = self.db.conn.execute(
                "SELECT 1 FROM orders WHERE order_number = ?", [order_number]
            ).fetchone()
            if exists:
                counter += 1
                continue

            try:
                cursor = self.db.conn.execute("""
                    INSERT INTO orders (order_number, user_id, order_type, payment_method, payment_status,
                                        status, delivery_address, distance_km, business_count,
                                        total_amount, discount_amount, delivery_fee, platform_fee,
                                        final_amount, coupon_code, subscription_applied, notes)
                    VALUES (?, ?, ?, ?, 'pending', 'pending', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [order_number, user_id, order_type, payment_method, address_json, distance_km,
                      pricing.business_count, pricing.total_amount, pricing.discount_amount,
                      pricing.delivery_fee, pricing.platform_fee, pricing.final_amount,
                      coupon_code if pricing.coupon_discount else None,
                      1 if pricing.subscription_applied else 0, notes])
            except sqlite3.IntegrityError as e:
                if 'order_number' not in str(e):
                    raise
                self.logger.warning(f"订单号 {order_number} 冲突，重试")
                counter += 1
                continue

            return {'order_id': cursor.lastrowid, 'order_number': order_number}

        raise MarketplaceError("无法生成唯一订单号", code="ORDER_NUMBER_EXHAUSTED")

    def create_order(self, user_id: int, items: Any, order_type: str, payment_method: str,
                     delivery_address: Optional[Dict[str, Any]] = None,
                     coupon_code: Optional[str] = None, notes: Optional[str] = None) -> Dict[str, Any]:
        """
        创建订单

        定价、订单与订单项写入、折扣码核销、自取码签发在同一事务内完成

        Args:
            user_id: 下单用户
            items: [{product_id, quantity, add_ons: [{name, price}]}]
            order_type: delivery/pickup
            payment_method: cash/online
            delivery_address: 配送地址（需包含 latitude/longitude）
            coupon_code: 折扣二维码令牌
        """
        now = datetime.now()

        def create_order_operation():
            user = self.support.get_user_by_id(user_id)
            if not user:
                raise NotFoundError(f"用户ID {user_id} 不存在", code="USER_NOT_FOUND")
            if user['status'] != 'active':
                raise AuthorizationError("用户账户已停用", code="USER_SUSPENDED")

            quote = self._build_quote(user_id, items, order_type, payment_method,
                                      delivery_address, coupon_code)
            pricing: OrderPricing = quote['pricing']

            order = self._insert_order(user_id, order_type, payment_method,
                                       delivery_address if order_type == 'delivery' else None,
                                       pricing, coupon_code, notes, now)
            order_id = order['order_id']

            for line in quote['lines']:
                self.db.conn.execute("""
                    INSERT INTO order_items (order_id, product_id, business_id, product_name, quantity,
                                             unit_price, total_price, add_ons)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, [order_id, line['product_id'], line['business_id'], line['product_name'],
                      line['quantity'], line['unit_price'], line['total_price'],
                      json.dumps(line['add_ons'], ensure_ascii=False) if line['add_ons'] else None])

            if quote['coupon'] and pricing.coupon_discount > 0:
                self.qr_ops.redeem_coupon(quote['coupon']['qr']['qr_id'], user_id, now)

            qr_code = None
            if order_type == 'pickup' and self.qr_ops is not None:
                qr = self.qr_ops.issue('order', order_id, {'order_number': order['order_number']},
                                       user_id=user_id, business_id=quote['business_ids'][0], now=now)
                qr_code = qr['token']
                self.db.conn.execute("UPDATE orders SET qr_code = ? WHERE order_id = ?", [qr_code, order_id])

            for business_id in quote['business_ids']:
                self._notify('business', business_id, 'order_created',
                             {'order_id': order_id, 'order_number': order['order_number']})

            self.logger.info(f"用户 {user_id} 创建订单 {order['order_number']}，金额 {pricing.final_amount}")
            return {
                'order_id': order_id,
                'order_number': order['order_number'],
                'status': 'pending',
                'payment_status': 'pending',
                'order_type': order_type,
                'payment_method': payment_method,
                'items': quote['lines'],
                'qr_code': qr_code,
                'distance_estimated': quote['distance_estimated'],
                'currency': self.fees.currency,
                **pricing.to_dict(),
                'message': f'订单 {order["order_number"]} 创建成功，金额 {pricing.final_amount}'
            }

        return self.db.execute_transaction([create_order_operation])[0]

    # 商家操作
    def accept_order(self, order_id: int, business_user_id: int) -> Dict[str, Any]:
        def accept_operation():
            order = self._get_order(order_id)
            self._verify_business_actor(order, business_user_id)
            self._transition(order, 'accept')
            self._notify('user', order['user_id'], 'order_accepted',
                         {'order_id': order_id, 'order_number': order['order_number']})
            return {'order_id': order_id, 'status': order['status'], 'message': '商家已接单'}

        return self.db.execute_transaction([accept_operation])[0]

    def start_preparing(self, order_id: int, business_user_id: int) -> Dict[str, Any]:
        def prepare_operation():
            order = self._get_order(order_id)
            self._verify_business_actor(order, business_user_id)
            self._transition(order, 'prepare')
            self._notify('user', order['user_id'], 'order_preparing',
                         {'order_id': order_id, 'order_number': order['order_number']})
            return {'order_id': order_id, 'status': order['status'], 'message': '订单开始制作'}

        return self.db.execute_transaction([prepare_operation])[0]

    def _active_delivery_count(self, driver_id: int, exclude_order_id: Optional[int] = None) -> int:
        """司机手上待取餐或配送中的订单数"""
        return self.db.conn.execute("""
            SELECT COUNT(*) FROM orders
            WHERE driver_id = ? AND status IN ('waiting_driver', 'in_delivery') AND order_id != ?
        """, [driver_id, exclude_order_id or 0]).fetchone()[0]

    def _verify_driver_free(self, driver: Dict[str, Any], order_id: int):
        if self._active_delivery_count(driver['driver_id'], exclude_order_id=order_id):
            raise ValidationError("司机还有未完成的配送", code="DRIVER_BUSY")

    def _select_driver(self, business_ids: List[int], driver_id: Optional[int]) -> Dict[str, Any]:
        """指定司机需空闲且手上没有订单；未指定时选择距商家最近的此类司机"""
        if driver_id is not None:
            driver = self.support.get_driver(driver_id)
            if not driver:
                raise NotFoundError(f"司机ID {driver_id} 不存在", code="DRIVER_NOT_FOUND")
            if not driver['is_available'] or self._active_delivery_count(driver_id):
                raise ValidationError("该司机当前不可接单", code="DRIVER_NOT_AVAILABLE")
            return driver

        rows = self.db.conn.execute("""
            SELECT d.driver_id FROM drivers d
            WHERE d.is_available = 1
              AND NOT EXISTS (
                  SELECT 1 FROM orders o
                  WHERE o.driver_id = d.driver_id AND o.status IN ('waiting_driver', 'in_delivery')
              )
            ORDER BY d.driver_id
        """).fetchall()
        candidates = [self.support.get_driver(row['driver_id']) for row in rows]
        if not candidates:
            raise ValidationError("暂无可用司机", code="NO_DRIVER_AVAILABLE")

        origin = extract_coordinates(self.support.get_business(business_ids[0]))
        if origin is None:
            return candidates[0]

        def distance_to_origin(driver):
            position = extract_coordinates({'latitude': driver['current_latitude'],
                                            'longitude': driver['current_longitude']})
            return haversine_distance(*origin, *position) if position else float('inf')

        return min(candidates, key=distance_to_origin)

    def request_driver(self, order_id: int, business_user_id: int,
                       driver_id: Optional[int] = None) -> Dict[str, Any]:
        """
        出餐后呼叫司机：指派司机并签发取餐码（仅配送订单）
        """
        def request_driver_operation():
            order = self._get_order(order_id)
            business_ids = self._verify_business_actor(order, business_user_id)
            resolve_transition(order['status'], 'request_driver', order['order_type'])

            driver = self._select_driver(business_ids, driver_id)
            self._transition(order, 'request_driver', driver_id=driver['driver_id'])

            pickup_token = None
            if self.qr_ops is not None:
                qr = self.qr_ops.issue('driver_pickup', order_id, {'order_number': order['order_number']},
                                       business_id=business_ids[0], driver_id=driver['driver_id'])
                pickup_token = qr['token']

            self._notify('driver', driver['driver_id'], 'driver_assigned',
                         {'order_id': order_id, 'order_number': order['order_number'],
                          'pickup_qr': pickup_token})
            return {
                'order_id': order_id,
                'status': order['status'],
                'driver_id': driver['driver_id'],
                'pickup_qr_code': pickup_token,
                'message': f'已指派司机 {driver["name"]}'
            }

        return self.db.execute_transaction([request_driver_operation])[0]

    def reject_order(self, order_id: int, business_user_id: int,
                     reason: str = "商家拒单") -> Dict[str, Any]:
        """商家拒单：系统发起的取消，不收取消费，已支付则全额退款"""
        def reject_operation():
            order = self._get_order(order_id)
            self._verify_business_actor(order, business_user_id)
            result = self._cancel(order, 'reject', reason, cancellation_fee=0)
            self._notify('user', order['user_id'], 'order_rejected',
                         {'order_id': order_id, 'reason': reason})
            result['message'] = f'订单已拒绝，{result["message"]}'
            return result

        return self.db.execute_transaction([reject_operation])[0]

    # 司机操作
    def driver_accept(self, order_id: int, driver_user_id: int) -> Dict[str, Any]:
        def driver_accept_operation():
            order = self._get_order(order_id)
            driver = self._verify_assigned_driver(order, driver_user_id)
            self._verify_driver_free(driver, order_id)
            self._transition(order, 'driver_accept')
            self.db.conn.execute(
                "UPDATE drivers SET is_available = 0, updated_at = CURRENT_TIMESTAMP WHERE driver_id = ?",
                [driver['driver_id']]
            )
            self._notify('user', order['user_id'], 'order_in_delivery',
                         {'order_id': order_id, 'driver_name': driver['name']})
            return {'order_id': order_id, 'status': order['status'], 'message': '司机已接单，开始配送'}

        return self.db.execute_transaction([driver_accept_operation])[0]

    def driver_reject(self, order_id: int, driver_user_id: int) -> Dict[str, Any]:
        """司机拒单：订单回到待取餐池，清除司机"""
        def driver_reject_operation():
            order = self._get_order(order_id)
            driver = self._verify_assigned_driver(order, driver_user_id)
            self._transition(order, 'driver_reject', driver_id=None)
            self._expire_codes('driver_pickup', order_id)
            for business_id in self._get_order_business_ids(order_id):
                self._notify('business', business_id, 'driver_rejected',
                             {'order_id': order_id, 'driver_id': driver['driver_id']})
            return {'order_id': order_id, 'status': order['status'], 'message': '已拒绝该配送'}

        return self.db.execute_transaction([driver_reject_operation])[0]

    def deliver_order(self, order_id: int, driver_user_id: int) -> Dict[str, Any]:
        """
        司机送达：记录送达时间，结算货到付款、司机收益与用户积分
        """
        def deliver_operation():
            order = self._get_order(order_id)
            driver = self._verify_assigned_driver(order, driver_user_id)
            self._verify_settled(order)
            self._transition(order, 'deliver', actual_delivery_time=to_db_time(datetime.now()))
            still_busy = self._active_delivery_count(driver['driver_id'])
            self.db.conn.execute(
                "UPDATE drivers SET is_available = ?, updated_at = CURRENT_TIMESTAMP WHERE driver_id = ?",
                [0 if still_busy else 1, driver['driver_id']]
            )

            settlement = self._settle_completion(order)

            earnings = calculate_driver_earnings(order['delivery_fee'], settings=self.fees)
            if earnings['driver_earnings'] > 0:
                self.wallet_ops.credit(
                    driver['user_id'], earnings['driver_earnings'], transaction_type='earnings',
                    reference_type='order', reference_id=order_id,
                    description=f"订单 {order['order_number']} 配送收益"
                )

            self._notify('user', order['user_id'], 'order_completed',
                         {'order_id': order_id, 'points_earned': settlement['points_earned']})
            return {
                'order_id': order_id,
                'status': order['status'],
                'actual_delivery_time': order['actual_delivery_time'],
                'driver_earnings': earnings['driver_earnings'],
                'points_earned': settlement['points_earned'],
                'message': '订单已送达'
            }

        return self.db.execute_transaction([deliver_operation])[0]

    def _verify_settled(self, order: Dict[str, Any]):
        """在线支付的订单必须先付款才能完成；现金订单在完成时收款"""
        if order['payment_status'] == 'pending' and order['payment_method'] != 'cash':
            raise ValidationError("订单尚未支付，无法完成", code="ORDER_NOT_PAID")

    def _settle_completion(self, order: Dict[str, Any]) -> Dict[str, Any]:
        """订单完成时：现金订单记录收款并标记已支付，发放积分"""
        if order['payment_status'] == 'pending' and order['payment_method'] == 'cash':
            self.wallet_ops.record_transaction(
                order['user_id'], 'payment', -order['final_amount'],
                reference_type='order', reference_id=order['order_id'], payment_method='cash',
                description=f"订单 {order['order_number']} 现金支付"
            )
            self.db.conn.execute("""
                UPDATE orders SET payment_status = 'paid', updated_at = CURRENT_TIMESTAMP
                WHERE order_id = ?
            """, [order['order_id']])
            order['payment_status'] = 'paid'

        points = 0
        if self.points_ops is not None:
            points = self.points_ops.award_order_points(order['user_id'], order['final_amount'],
                                                        order['order_id'])
        return {'points_earned': points}

    # 取消
    def cancel_order(self, order_id: int, user_id: int, reason: str = "用户主动取消") -> Dict[str, Any]:
        """
        用户取消订单（pending/accepted）

        已接单的订单按分级费率收取取消费，从退款中扣除
        """
        def cancel_operation():
            order = self._get_order(order_id)
            self._verify_order_owner(order, user_id)
            resolve_transition(order['status'], 'cancel', order['order_type'])

            fee = calculate_cancellation_fee(order['status'], order['final_amount'], settings=self.fees)
            result = self._cancel(order, 'cancel', reason, fee['cancellation_fee'])
            for business_id in self._get_order_business_ids(order_id):
                self._notify('business', business_id, 'order_cancelled',
                             {'order_id': order_id, 'reason': reason})
            self._notify('user', order['user_id'], 'order_cancelled',
                         {'order_id': order_id, 'refunded_amount': result['refunded_amount']})
            return result

        return self.db.execute_transaction([cancel_operation])[0]

    def _paid_portions(self, order_id: int) -> Dict[str, Any]:
        """订单已支付金额拆分：钱包部分、收银台现金部分与外部网关部分（含网关参考号）"""
        rows = self.db.conn.execute("""
            SELECT wallet_id, amount, gateway_reference, payment_method
            FROM transactions
            WHERE reference_type = 'order' AND reference_id = ?
              AND transaction_type = 'payment' AND status = 'completed'
        """, [order_id]).fetchall()

        wallet_paid = 0
        cash_paid = 0
        external = []
        for row in rows:
            if row['wallet_id'] is not None:
                wallet_paid += -row['amount']
            elif row['gateway_reference']:
                external.append({'reference': row['gateway_reference'], 'amount': -row['amount']})
            elif row['payment_method'] == 'cash':
                cash_paid += -row['amount']
        return {'wallet_paid': wallet_paid, 'cash_paid': cash_paid, 'external': external}

    def _cancel(self, order: Dict[str, Any], event: str, reason: str, cancellation_fee: int) -> Dict[str, Any]:
        """
        取消并退款（需在事务内调用）

        退款依次退回钱包部分、收银台现金部分（退入钱包），剩余部分经网关原路退回；
        网关退款失败或已付款项不足以覆盖应退金额时整体回滚
        """
        order_id = order['order_id']
        self._transition(order, event, cancelled_at=to_db_time(datetime.now()),
                         cancel_reason=reason, cancellation_fee=cancellation_fee)
        self._expire_codes('order', order_id)

        refunded_amount = 0
        wallet_refund = 0
        gateway_refunds = []

        if order['payment_status'] == 'paid':
            due = max(0, order['final_amount'] - cancellation_fee)
            portions = self._paid_portions(order_id)

            wallet_part = min(portions['wallet_paid'], due)
            cash_part = min(portions['cash_paid'], due - wallet_part)
            remaining = due - wallet_part - cash_part

            if wallet_part > 0:
                self.wallet_ops.credit(
                    order['user_id'], wallet_part, transaction_type='refund',
                    reference_type='order', reference_id=order_id,
                    description=f"订单 {order['order_number']} 取消退款"
                )
            if cash_part > 0:
                self.wallet_ops.credit(
                    order['user_id'], cash_part, transaction_type='refund',
                    reference_type='order', reference_id=order_id, payment_method='cash',
                    description=f"订单 {order['order_number']} 现金部分退回钱包"
                )
            wallet_refund = wallet_part + cash_part

            for charge in portions['external']:
                if remaining <= 0:
                    break
                amount = min(remaining, charge['amount'])
                if self.gateway is None:
                    raise ExternalServiceError("支付网关不可用，无法退款", code="REFUND_FAILED")
                refund = self.gateway.refund(charge['reference'], amount)
                if not refund.get('success'):
                    raise ExternalServiceError(f"网关退款失败: {refund.get('error')}", code="REFUND_FAILED")
                gateway_refunds.append({'reference': refund.get('reference'), 'amount': amount})
                remaining -= amount

            if remaining > 0:
                raise ExternalServiceError(f"订单 {order['order_number']} 有 {remaining} 无可退回的支付记录",
                                           code="REFUND_FAILED")
            refunded_amount = wallet_refund + sum(refund['amount'] for refund in gateway_refunds)

            self.wallet_ops.record_transaction(
                order['user_id'], 'refund', -refunded_amount,
                reference_type='order', reference_id=order_id,
                payment_method='online' if gateway_refunds else 'wallet',
                gateway_reference=gateway_refunds[0]['reference'] if gateway_refunds else None,
                description=f"订单 {order['order_number']} 退款（{reason}）"
            )
            self.db.conn.execute("""
                UPDATE orders SET payment_status = 'refunded', updated_at = CURRENT_TIMESTAMP
                WHERE order_id = ?
            """, [order_id])
            order['payment_status'] = 'refunded'

        message = f'订单已取消，退款 {refunded_amount}' if refunded_amount else '订单已取消'
        if cancellation_fee and order['payment_status'] == 'refunded':
            message += f'，扣除取消费 {cancellation_fee}'

        return {
            'order_id': order_id,
            'status': order['status'],
            'payment_status': order['payment_status'],
            'cancellation_fee': cancellation_fee,
            'refunded_amount': refunded_amount,
            'wallet_refund': wallet_refund,
            'gateway_refunds': gateway_refunds,
            'cancel_reason': reason,
            'message': message
        }

    def _expire_codes(self, qr_type: str, order_id: int):
        """让订单关联的未过期二维码立即失效"""
        now = datetime.now()
        self.db.conn.execute("""
            UPDATE qr_codes SET expires_at = ?
            WHERE qr_type = ? AND reference_id = ? AND expires_at > ?
        """, [to_db_time(now - timedelta(seconds=1)), qr_type, order_id, to_db_time(now)])

    # 二维码扫描处理（在 QROperations.consume 的事务内执行）
    def handle_order_scan(self, qr: Dict[str, Any], scanner: Dict[str, Any]) -> Dict[str, Any]:
        """
        自取码：订单所属商家扫描，preparing -> completed；
        已完成的订单再次扫描只返回订单信息
        """
        order = self._get_order(qr['reference_id'])
        self._verify_business_actor(order, scanner.get('user_id'))

        if order['status'] == 'completed':
            return {'type': 'order_info', 'order_id': order['order_id'], 'status': order['status'],
                    'message': f'订单状态: {order["status"]}'}

        resolve_transition(order['status'], 'pickup_scan', order['order_type'])
        self._verify_settled(order)
        self._transition(order, 'pickup_scan', picked_up_at=to_db_time(datetime.now()))
        settlement = self._settle_completion(order)

        self._notify('user', order['user_id'], 'order_completed',
                     {'order_id': order['order_id'], 'points_earned': settlement['points_earned']})
        return {
            'type': 'order_pickup',
            'order_id': order['order_id'],
            'status': order['status'],
            'payment_status': order['payment_status'],
            'points_earned': settlement['points_earned'],
            'message': '订单已取餐'
        }

    def handle_driver_pickup_scan(self, qr: Dict[str, Any], scanner: Dict[str, Any]) -> Dict[str, Any]:
        """
        取餐码：指派司机在商家处扫描。待取餐时视为司机接单并开始配送，
        配送中首次扫描记录取餐时间
        """
        order = self._get_order(qr['reference_id'])
        driver = self._verify_assigned_driver(order, scanner.get('user_id'))
        picked_up_at = to_db_time(datetime.now())

        if order['status'] == 'waiting_driver':
            self._verify_driver_free(driver, order['order_id'])
            self._transition(order, 'driver_accept', picked_up_at=picked_up_at)
            self.db.conn.execute(
                "UPDATE drivers SET is_available = 0, updated_at = CURRENT_TIMESTAMP WHERE driver_id = ?",
                [driver['driver_id']]
            )
            self._notify('user', order['user_id'], 'order_in_delivery',
                         {'order_id': order['order_id'], 'driver_name': driver['name']})
        elif order['status'] == 'in_delivery' and not order['picked_up_at']:
            self.db.conn.execute("""
                UPDATE orders SET picked_up_at = ?, updated_at = CURRENT_TIMESTAMP WHERE order_id = ?
            """, [picked_up_at, order['order_id']])
        elif order['status'] != 'in_delivery':
            raise IllegalStateTransition(order['status'], 'driver_pickup_scan')

        return {
            'type': 'driver_pickup',
            'order_id': order['order_id'],
            'status': order['status'],
            'message': '司机已取餐'
        }
