# 周边支持业务操作：用户、商家、商品、司机、订阅、预约

import logging
import uuid
from datetime import datetime
from typing import List, Optional, Dict, Any

from .manager import DatabaseManager, to_db_time
from utils.errors import ValidationError, NotFoundError, AuthorizationError, IllegalStateTransition
from utils.fees import FeeSettings, DEFAULT_FEES
from utils.geo import validate_coordinates
from utils.validators import (validate_role, validate_string_length, validate_non_negative_integer,
                              validate_positive_integer)


class SupportingOperations:
    """
    周边支持业务操作类

    订单核心依赖的实体维护：用户、商家（含坐标）、商品（UUID）、司机、订阅与预约
    """

    def __init__(self, db_manager: DatabaseManager, fee_settings: FeeSettings = DEFAULT_FEES,
                 qr_ops=None, points_ops=None, notifier=None):
        self.db = db_manager
        self.fees = fee_settings
        self.qr_ops = qr_ops
        self.points_ops = points_ops
        self.notifier = notifier
        self.logger = logging.getLogger(self.__class__.__name__)

    def _notify(self, recipient_type: str, recipient_id: Any, event_type: str, payload: Dict[str, Any]):
        if self.notifier is None:
            return
        self.db.after_commit(
            lambda: self.notifier.notify(recipient_type, recipient_id, event_type, payload)
        )

    # 用户
    def create_user(self, name: str, role: str = 'user', phone: Optional[str] = None) -> Dict[str, Any]:
        if not validate_string_length(name, 1, 100):
            raise ValidationError("用户名长度必须在1-100字符之间", code="INVALID_NAME")
        if not validate_role(role):
            raise ValidationError(f"无效的角色: {role}", code="INVALID_ROLE")

        def create_user_operation():
            cursor = self.db.conn.execute(
                "INSERT INTO users (name, phone, role) VALUES (?, ?, ?)",
                [name.strip(), phone, role]
            )
            return {
                'user_id': cursor.lastrowid,
                'name': name.strip(),
                'role': role,
                'status': 'active',
                'message': '用户创建成功'
            }

        return self.db.execute_transaction([create_user_operation])[0]

    def get_user_by_id(self, user_id: int) -> Optional[Dict[str, Any]]:
        row = self.db.conn.execute("""
            SELECT user_id, name, phone, role, status, created_at
            FROM users WHERE user_id = ?
        """, [user_id]).fetchone()
        return dict(row) if row else None

    def set_user_status(self, user_id: int, status: str) -> Dict[str, Any]:
        if status not in ('active', 'suspended'):
            raise ValidationError(f"无效的用户状态: {status}", code="INVALID_STATUS")

        def set_status_operation():
            cursor = self.db.conn.execute("""
                UPDATE users SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE user_id = ?
            """, [status, user_id])
            if cursor.rowcount == 0:
                raise NotFoundError(f"用户ID {user_id} 不存在", code="USER_NOT_FOUND")
            return {'user_id': user_id, 'status': status, 'message': f'用户状态已更新为 {status}'}

        return self.db.execute_transaction([set_status_operation])[0]

    # 商家
    def create_business(self, owner_user_id: int, name: str, latitude: Optional[float] = None,
                        longitude: Optional[float] = None, address: Optional[str] = None,
                        is_active: bool = True) -> Dict[str, Any]:
        if not validate_string_length(name, 1, 100):
            raise ValidationError("商家名称长度必须在1-100字符之间", code="INVALID_NAME")
        if (latitude is None) != (longitude is None):
            raise ValidationError("经纬度必须同时提供", code="INVALID_COORDINATES")
        if latitude is not None and not validate_coordinates(latitude, longitude):
            raise ValidationError("经纬度超出范围", code="INVALID_COORDINATES")

        def create_business_operation():
            owner = self.get_user_by_id(owner_user_id)
            if not owner:
                raise NotFoundError(f"用户ID {owner_user_id} 不存在", code="USER_NOT_FOUND")

            cursor = self.db.conn.execute("""
                INSERT INTO businesses (owner_user_id, name, address, latitude, longitude, is_active)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [owner_user_id, name.strip(), address, latitude, longitude, 1 if is_active else 0])
            return {
                'business_id': cursor.lastrowid,
                'owner_user_id': owner_user_id,
                'name': name.strip(),
                'is_active': is_active,
                'message': '商家创建成功'
            }

        return self.db.execute_transaction([create_business_operation])[0]

    def get_business(self, business_id: int) -> Optional[Dict[str, Any]]:
        row = self.db.conn.execute("""
            SELECT business_id, owner_user_id, name, address, latitude, longitude, is_active
            FROM businesses WHERE business_id = ?
        """, [business_id]).fetchone()
        if not row:
            return None
        business = dict(row)
        business['is_active'] = bool(business['is_active'])
        return business

    def get_businesses_owned_by(self, user_id: int) -> List[int]:
        rows = self.db.conn.execute(
            "SELECT business_id FROM businesses WHERE owner_user_id = ?", [user_id]
        ).fetchall()
        return [row['business_id'] for row in rows]

    def set_business_active(self, business_id: int, is_active: bool) -> Dict[str, Any]:
        def set_active_operation():
            cursor = self.db.conn.execute("""
                UPDATE businesses SET is_active = ?, updated_at = CURRENT_TIMESTAMP
                WHERE business_id = ?
            """, [1 if is_active else 0, business_id])
            if cursor.rowcount == 0:
                raise NotFoundError(f"商家ID {business_id} 不存在", code="BUSINESS_NOT_FOUND")
            return {'business_id': business_id, 'is_active': is_active,
                    'message': '商家已营业' if is_active else '商家已停业'}

        return self.db.execute_transaction([set_active_operation])[0]

    # 商品
    def create_product(self, business_id: int, name: str, price: int,
                       is_available: bool = True) -> Dict[str, Any]:
        if not validate_string_length(name, 1, 100):
            raise ValidationError("商品名称长度必须在1-100字符之间", code="INVALID_NAME")
        if not validate_non_negative_integer(price):
            raise ValidationError(f"商品价格必须为非负整数: {price}", code="INVALID_AMOUNT")

        product_id = str(uuid.uuid4())

        def create_product_operation():
            if not self.get_business(business_id):
                raise NotFoundError(f"商家ID {business_id} 不存在", code="BUSINESS_NOT_FOUND")

            self.db.conn.execute("""
                INSERT INTO products (product_id, business_id, name, price, is_available)
                VALUES (?, ?, ?, ?, ?)
            """, [product_id, business_id, name.strip(), price, 1 if is_available else 0])
            return {
                'product_id': product_id,
                'business_id': business_id,
                'name': name.strip(),
                'price': price,
                'is_available': is_available,
                'message': '商品创建成功'
            }

        return self.db.execute_transaction([create_product_operation])[0]

    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        row = self.db.conn.execute("""
            SELECT p.product_id, p.business_id, p.name, p.price, p.is_available,
                   b.is_active AS business_active, b.name AS business_name
            FROM products p
            JOIN businesses b ON p.business_id = b.business_id
            WHERE p.product_id = ?
        """, [product_id]).fetchone()
        if not row:
            return None
        product = dict(row)
        product['is_available'] = bool(product['is_available'])
        product['business_active'] = bool(product['business_active'])
        return product

    def update_product(self, product_id: str, price: Optional[int] = None,
                       is_available: Optional[bool] = None) -> Dict[str, Any]:
        """修改商品价格或上下架状态（已下单的订单项价格不受影响）"""
        if price is not None and not validate_non_negative_integer(price):
            raise ValidationError(f"商品价格必须为非负整数: {price}", code="INVALID_AMOUNT")

        def update_product_operation():
            if not self.get_product(product_id):
                raise NotFoundError(f"商品 {product_id} 不存在", code="PRODUCT_NOT_FOUND")
            if price is not None:
                self.db.conn.execute("""
                    UPDATE products SET price = ?, updated_at = CURRENT_TIMESTAMP WHERE product_id = ?
                """, [price, product_id])
            if is_available is not None:
                self.db.conn.execute("""
                    UPDATE products SET is_available = ?, updated_at = CURRENT_TIMESTAMP WHERE product_id = ?
                """, [1 if is_available else 0, product_id])
            product = self.get_product(product_id)
            product['message'] = '商品已更新'
            return product

        return self.db.execute_transaction([update_product_operation])[0]

    # 司机
    def create_driver(self, user_id: int, vehicle_type: Optional[str] = None,
                      latitude: Optional[float] = None, longitude: Optional[float] = None) -> Dict[str, Any]:
        def create_driver_operation():
            user = self.get_user_by_id(user_id)
            if not user:
                raise NotFoundError(f"用户ID {user_id} 不存在", code="USER_NOT_FOUND")
            if user['role'] != 'driver':
                raise ValidationError("只有司机角色的用户可以注册为司机", code="INVALID_ROLE")

            cursor = self.db.conn.execute("""
                INSERT INTO drivers (user_id, vehicle_type, current_latitude, current_longitude)
                VALUES (?, ?, ?, ?)
            """, [user_id, vehicle_type, latitude, longitude])
            return {'driver_id': cursor.lastrowid, 'user_id': user_id, 'message': '司机注册成功'}

        return self.db.execute_transaction([create_driver_operation])[0]

    def get_driver(self, driver_id: int) -> Optional[Dict[str, Any]]:
        row = self.db.conn.execute("""
            SELECT d.driver_id, d.user_id, d.vehicle_type, d.current_latitude, d.current_longitude,
                   d.is_available, u.name, u.phone
            FROM drivers d
            JOIN users u ON d.user_id = u.user_id
            WHERE d.driver_id = ?
        """, [driver_id]).fetchone()
        return dict(row) if row else None

    def get_driver_by_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        row = self.db.conn.execute(
            "SELECT driver_id FROM drivers WHERE user_id = ?", [user_id]
        ).fetchone()
        return self.get_driver(row['driver_id']) if row else None

    def update_driver_location(self, driver_id: int, latitude: float, longitude: float) -> Dict[str, Any]:
        if not validate_coordinates(latitude, longitude):
            raise ValidationError("经纬度超出范围", code="INVALID_COORDINATES")

        def update_location_operation():
            cursor = self.db.conn.execute("""
                UPDATE drivers
                SET current_latitude = ?, current_longitude = ?, updated_at = CURRENT_TIMESTAMP
                WHERE driver_id = ?
            """, [latitude, longitude, driver_id])
            if cursor.rowcount == 0:
                raise NotFoundError(f"司机ID {driver_id} 不存在", code="DRIVER_NOT_FOUND")
            return {'driver_id': driver_id, 'latitude': latitude, 'longitude': longitude,
                    'message': '位置已更新'}

        return self.db.execute_transaction([update_location_operation])[0]

    # 订阅
    def create_subscription(self, user_id: int, app_type: str, ends_at: Optional[datetime] = None) -> Dict[str, Any]:
        if not validate_string_length(app_type, 1, 32):
            raise ValidationError("订阅类型不能为空", code="INVALID_SUBSCRIPTION")

        def create_subscription_operation():
            if not self.get_user_by_id(user_id):
                raise NotFoundError(f"用户ID {user_id} 不存在", code="USER_NOT_FOUND")
            cursor = self.db.conn.execute("""
                INSERT INTO subscriptions (user_id, app_type, status, ends_at)
                VALUES (?, ?, 'active', ?)
            """, [user_id, app_type, to_db_time(ends_at) if ends_at else None])
            return {'subscription_id': cursor.lastrowid, 'user_id': user_id, 'app_type': app_type,
                    'message': '订阅已开通'}

        return self.db.execute_transaction([create_subscription_operation])[0]

    def has_qualifying_subscription(self, user_id: int, now: Optional[datetime] = None) -> bool:
        """用户是否持有有效的免配送费订阅"""
        now = now or datetime.now()
        types = self.fees.qualifying_subscription_app_types
        if not types:
            return False

        placeholders = ",".join("?" * len(types))
        row = self.db.conn.execute(f"""
            SELECT 1 FROM subscriptions
            WHERE user_id = ? AND status = 'active'
              AND app_type IN ({placeholders})
              AND (ends_at IS NULL OR ends_at > ?)
            LIMIT 1
        """, [user_id, *types, to_db_time(now)]).fetchone()
        return row is not None

    # 预约
    def _get_reservation(self, reservation_id: int) -> Dict[str, Any]:
        row = self.db.conn.execute(
            "SELECT * FROM reservations WHERE reservation_id = ?", [reservation_id]
        ).fetchone()
        if not row:
            raise NotFoundError(f"预约ID {reservation_id} 不存在", code="RESERVATION_NOT_FOUND")
        return dict(row)

    def _verify_business_owner(self, business_id: int, user_id: int):
        business = self.get_business(business_id)
        if not business:
            raise NotFoundError(f"商家ID {business_id} 不存在", code="BUSINESS_NOT_FOUND")
        if business['owner_user_id'] != user_id:
            raise AuthorizationError("无权操作该商家的预约")
        return business

    def create_reservation(self, user_id: int, business_id: int, reserved_for: datetime,
                           party_size: int = 1) -> Dict[str, Any]:
        if not validate_positive_integer(party_size):
            raise ValidationError(f"预约人数必须为正整数: {party_size}", code="INVALID_PARTY_SIZE")

        def create_reservation_operation():
            business = self.get_business(business_id)
            if not business:
                raise NotFoundError(f"商家ID {business_id} 不存在", code="BUSINESS_NOT_FOUND")
            if not business['is_active']:
                raise ValidationError("商家已停业，无法预约", code="BUSINESS_NOT_ACTIVE")

            cursor = self.db.conn.execute("""
                INSERT INTO reservations (user_id, business_id, reserved_for, party_size, status)
                VALUES (?, ?, ?, ?, 'pending')
            """, [user_id, business_id, to_db_time(reserved_for), party_size])
            reservation_id = cursor.lastrowid
            self._notify('business', business_id, 'reservation_created',
                         {'reservation_id': reservation_id, 'party_size': party_size})
            return {'reservation_id': reservation_id, 'status': 'pending', 'message': '预约已提交'}

        return self.db.execute_transaction([create_reservation_operation])[0]

    def confirm_reservation(self, reservation_id: int, business_user_id: int) -> Dict[str, Any]:
        """商家确认预约并签发预约二维码"""
        def confirm_operation():
            reservation = self._get_reservation(reservation_id)
            self._verify_business_owner(reservation['business_id'], business_user_id)
            if reservation['status'] != 'pending':
                raise IllegalStateTransition(reservation['status'], 'confirm_reservation')

            qr = self.qr_ops.issue('reservation', reservation_id,
                                   user_id=reservation['user_id'],
                                   business_id=reservation['business_id'])
            self.db.conn.execute("""
                UPDATE reservations
                SET status = 'confirmed', qr_code = ?, updated_at = CURRENT_TIMESTAMP
                WHERE reservation_id = ?
            """, [qr['token'], reservation_id])
            self._notify('user', reservation['user_id'], 'reservation_confirmed',
                         {'reservation_id': reservation_id, 'qr_code': qr['token']})
            return {'reservation_id': reservation_id, 'status': 'confirmed', 'qr_code': qr['token'],
                    'expires_at': qr['expires_at'], 'message': '预约已确认'}

        return self.db.execute_transaction([confirm_operation])[0]

    def cancel_reservation(self, reservation_id: int, user_id: int) -> Dict[str, Any]:
        def cancel_operation():
            reservation = self._get_reservation(reservation_id)
            if reservation['user_id'] != user_id:
                raise AuthorizationError("只能取消自己的预约")
            if reservation['status'] not in ('pending', 'confirmed'):
                raise IllegalStateTransition(reservation['status'], 'cancel_reservation')

            self.db.conn.execute("""
                UPDATE reservations SET status = 'cancelled', updated_at = CURRENT_TIMESTAMP
                WHERE reservation_id = ?
            """, [reservation_id])
            return {'reservation_id': reservation_id, 'status': 'cancelled', 'message': '预约已取消'}

        return self.db.execute_transaction([cancel_operation])[0]

    def handle_reservation_scan(self, qr: Dict[str, Any], scanner: Dict[str, Any]) -> Dict[str, Any]:
        """
        预约二维码扫描：商家扫描已确认的预约，完成预约并奖励积分；
        已完成的预约重复扫描只返回信息
        """
        reservation = self._get_reservation(qr['reference_id'])
        self._verify_business_owner(reservation['business_id'], scanner.get('user_id'))

        if reservation['status'] == 'completed':
            return {'type': 'reservation_info', 'reservation_id': reservation['reservation_id'],
                    'status': 'completed', 'message': '预约已完成'}
        if reservation['status'] != 'confirmed':
            raise IllegalStateTransition(reservation['status'], 'scan_reservation')

        self.db.conn.execute("""
            UPDATE reservations
            SET status = 'completed', completed_at = CURRENT_TIMESTAMP, updated_at = CURRENT_TIMESTAMP
            WHERE reservation_id = ?
        """, [reservation['reservation_id']])

        points = 0
        if self.points_ops is not None:
            points = self.points_ops.award_reservation_points(reservation['user_id'],
                                                              reservation['reservation_id'])
        self._notify('user', reservation['user_id'], 'reservation_completed',
                     {'reservation_id': reservation['reservation_id'], 'points_earned': points})

        return {'type': 'reservation_completed', 'reservation_id': reservation['reservation_id'],
                'status': 'completed', 'points_earned': points, 'message': '预约签到成功'}
