# 订单查询操作
# 用户订单详情、列表、配送追踪，以及商家与司机的待处理订单

import json
from typing import List, Optional, Dict, Any

from .manager import DatabaseManager
from utils.errors import ValidationError, NotFoundError, AuthorizationError
from utils.geo import extract_coordinates, haversine_distance, calculate_delivery_time
from utils.validators import validate_order_status

STATUS_TEXT = {
    'pending': '待接单',
    'accepted': '已接单',
    'preparing': '制作中',
    'waiting_driver': '待取餐',
    'in_delivery': '配送中',
    'completed': '已完成',
    'cancelled': '已取消'
}


class QueryOperations:
    """
    查询业务操作类

    只读；订单详情只对下单用户开放
    """
    def __init__(self, db_manager: DatabaseManager, maps=None):
        self.db = db_manager
        self.maps = maps

    def _validate_pagination(self, page: int, per_page: int, max_per_page: int):
        if page < 1:
            raise ValidationError("页码必须大于0", code="INVALID_PAGINATION")
        if per_page <= 0 or per_page > max_per_page:
            raise ValidationError(f"每页条数必须在1-{max_per_page}之间", code="INVALID_PAGINATION")

    def _format_order(self, row) -> Dict[str, Any]:
        order = dict(row)
        order['delivery_address'] = json.loads(order['delivery_address']) if order['delivery_address'] else None
        order['subscription_applied'] = bool(order['subscription_applied'])
        order['status_text'] = STATUS_TEXT.get(order['status'], order['status'])
        return order

    def _get_items(self, order_id: int) -> List[Dict[str, Any]]:
        rows = self.db.conn.execute("""
            SELECT oi.order_item_id, oi.product_id, oi.business_id, b.name AS business_name,
                   oi.product_name, oi.quantity, oi.unit_price, oi.total_price, oi.add_ons
            FROM order_items oi
            JOIN businesses b ON oi.business_id = b.business_id
            WHERE oi.order_id = ?
            ORDER BY oi.order_item_id
        """, [order_id]).fetchall()

        items = []
        for row in rows:
            item = dict(row)
            item['add_ons'] = json.loads(item['add_ons']) if item['add_ons'] else []
            items.append(item)
        return items

    def _pagination(self, total_count: int, page: int, per_page: int) -> Dict[str, Any]:
        return {
            "total_count": total_count,
            "current_page": page,
            "per_page": per_page,
            "total_pages": (total_count + per_page - 1) // per_page,
            "has_next": page * per_page < total_count,
            "has_prev": page > 1
        }

    # 1. 订单详情
    def get_order_details(self, order_id: int, user_id: int) -> Dict[str, Any]:
        """
        订单详情：订单、订单项、涉及的商家（含坐标）、司机、交易流水

        Raises:
            NotFoundError: 订单不存在
            AuthorizationError: 非下单用户
        """
        row = self.db.conn.execute("SELECT * FROM orders WHERE order_id = ?", [order_id]).fetchone()
        if not row:
            raise NotFoundError(f"订单ID {order_id} 不存在", code="ORDER_NOT_FOUND")
        order = self._format_order(row)
        if order['user_id'] != user_id:
            raise AuthorizationError("无权查看该订单")

        driver = None
        if order['driver_id']:
            driver_row = self.db.conn.execute("""
                SELECT d.driver_id, u.name, u.phone, d.vehicle_type,
                       d.current_latitude, d.current_longitude
                FROM drivers d
                JOIN users u ON d.user_id = u.user_id
                WHERE d.driver_id = ?
            """, [order['driver_id']]).fetchone()
            driver = dict(driver_row) if driver_row else None

        businesses = self.db.conn.execute("""
            SELECT DISTINCT b.business_id, b.name, b.latitude, b.longitude
            FROM order_items oi
            JOIN businesses b ON oi.business_id = b.business_id
            WHERE oi.order_id = ?
            ORDER BY b.business_id
        """, [order_id]).fetchall()

        transactions = self.db.conn.execute("""
            SELECT transaction_no, transaction_type, amount, payment_method, status, created_at
            FROM transactions
            WHERE reference_type = 'order' AND reference_id = ? AND user_id = ?
            ORDER BY transaction_id
        """, [order_id, user_id]).fetchall()

        return {
            "order": order,
            "items": self._get_items(order_id),
            "businesses": [dict(b) for b in businesses],
            "driver": driver,
            "transactions": [dict(t) for t in transactions],
            "message": f"订单 {order['order_number']} 查询成功"
        }

    # 2. 用户订单列表
    def list_user_orders(self, user_id: int, status: Optional[str] = None,
                         order_type: Optional[str] = None,
                         page: int = 1, per_page: int = 20) -> Dict[str, Any]:
        """用户订单列表，按创建时间倒序分页"""
        self._validate_pagination(page, per_page, 100)
        if status and not validate_order_status(status):
            raise ValidationError(f"无效的订单状态: {status}", code="INVALID_STATUS")

        conditions = ["user_id = ?"]
        params: List[Any] = [user_id]
        if status:
            conditions.append("status = ?")
            params.append(status)
        if order_type:
            conditions.append("order_type = ?")
            params.append(order_type)
        where_clause = " AND ".join(conditions)

        total_count = self.db.conn.execute(
            f"SELECT COUNT(*) FROM orders WHERE {where_clause}", params
        ).fetchone()[0]
        rows = self.db.conn.execute(f"""
            SELECT * FROM orders
            WHERE {where_clause}
            ORDER BY created_at DESC, order_id DESC
            LIMIT ? OFFSET ?
        """, params + [per_page, (page - 1) * per_page]).fetchall()

        orders = [self._format_order(row) for row in rows]
        return {
            "orders": orders,
            "pagination": self._pagination(total_count, page, per_page),
            "message": f"查询成功，共找到 {total_count} 个订单"
        }

    # 3. 配送追踪
    def track_order(self, order_id: int, user_id: int) -> Dict[str, Any]:
        """
        配送追踪：司机当前位置与预计送达时间

        有司机位置时按司机到收货地址的距离估算，否则按下单时的配送距离
        """
        details = self.get_order_details(order_id, user_id)
        order = details['order']
        if order['order_type'] != 'delivery':
            raise ValidationError("自取订单无配送信息", code="NOT_DELIVERY_ORDER")

        driver = details['driver']
        driver_location = None
        distance_km = order['distance_km'] or 0
        if driver:
            driver_location = extract_coordinates({'latitude': driver['current_latitude'],
                                                   'longitude': driver['current_longitude']})
            destination = extract_coordinates(order['delivery_address'])
            if driver_location and destination:
                distance_km = haversine_distance(*driver_location, *destination)

        estimate = None
        if order['status'] in ('waiting_driver', 'in_delivery'):
            if self.maps is not None:
                estimate = self.maps.estimate_delivery(distance_km)
            else:
                estimate = calculate_delivery_time(distance_km)

        return {
            "order_id": order_id,
            "order_number": order['order_number'],
            "status": order['status'],
            "status_text": order['status_text'],
            "driver": driver,
            "driver_location": ({'latitude': driver_location[0], 'longitude': driver_location[1]}
                                if driver_location else None),
            "picked_up_at": order['picked_up_at'],
            "actual_delivery_time": order['actual_delivery_time'],
            "estimate": estimate,
            "message": "追踪信息查询成功"
        }

    # 4. 商家订单
    def get_business_orders(self, business_user_id: int, status: Optional[str] = None,
                            page: int = 1, per_page: int = 20) -> Dict[str, Any]:
        """商家名下所有店铺的订单"""
        self._validate_pagination(page, per_page, 100)

        conditions = ["""o.order_id IN (
                SELECT oi.order_id FROM order_items oi
                JOIN businesses b ON oi.business_id = b.business_id
                WHERE b.owner_user_id = ?
            )"""]
        params: List[Any] = [business_user_id]
        if status:
            conditions.append("o.status = ?")
            params.append(status)

        base_query = f"FROM orders o WHERE {' AND '.join(conditions)}"
        total_count = self.db.conn.execute(f"SELECT COUNT(*) {base_query}", params).fetchone()[0]
        rows = self.db.conn.execute(f"""
            SELECT o.* {base_query}
            ORDER BY o.created_at DESC, o.order_id DESC
            LIMIT ? OFFSET ?
        """, params + [per_page, (page - 1) * per_page]).fetchall()

        orders = []
        for row in rows:
            order = self._format_order(row)
            order['items'] = self._get_items(order['order_id'])
            orders.append(order)

        return {
            "orders": orders,
            "pagination": self._pagination(total_count, page, per_page),
            "message": f"查询成功，共找到 {total_count} 个订单"
        }

    # 5. 司机订单
    def get_driver_orders(self, driver_user_id: int) -> Dict[str, Any]:
        """司机当前被指派的待取餐与配送中订单"""
        driver = self.db.conn.execute(
            "SELECT driver_id FROM drivers WHERE user_id = ?", [driver_user_id]
        ).fetchone()
        if not driver:
            raise NotFoundError("当前用户不是司机", code="DRIVER_NOT_FOUND")

        rows = self.db.conn.execute("""
            SELECT * FROM orders
            WHERE driver_id = ? AND status IN ('waiting_driver', 'in_delivery')
            ORDER BY updated_at ASC, order_id ASC
        """, [driver['driver_id']]).fetchall()

        orders = []
        for row in rows:
            order = self._format_order(row)
            order['items'] = self._get_items(order['order_id'])
            orders.append(order)

        return {
            "driver_id": driver['driver_id'],
            "orders": orders,
            "message": f"共 {len(orders)} 个进行中的配送订单"
        }
