# 积分账本操作
# 只追加：每次积分变动写入一条带余额快照的记录，已有记录从不修改

import logging
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional

from .manager import DatabaseManager, to_db_time, from_db_time
from utils.errors import ValidationError, InsufficientPoints
from utils.fees import (FeeSettings, DEFAULT_FEES, calculate_points_earned,
                        calculate_points_redemption, validate_points_redemption)
from utils.validators import validate_positive_integer

RESERVATION_POINTS = 50


class PointsOperations:
    """
    积分账本

    当前余额 = 最新一条记录的余额快照
    """

    def __init__(self, db_manager: DatabaseManager, fee_settings: FeeSettings = DEFAULT_FEES,
                 wallet_ops=None):
        self.db = db_manager
        self.fees = fee_settings
        self.wallet_ops = wallet_ops
        self.logger = logging.getLogger(self.__class__.__name__)

    def get_balance(self, user_id: int) -> int:
        row = self.db.conn.execute("""
            SELECT balance FROM points
            WHERE user_id = ?
            ORDER BY points_id DESC
            LIMIT 1
        """, [user_id]).fetchone()
        return row['balance'] if row else 0

    def _append_entry(self, user_id: int, points_earned: int, points_spent: int, balance: int,
                      activity_type: str, reference_id: Optional[int], description: str,
                      expires_at: Optional[str]) -> int:
        cursor = self.db.conn.execute("""
            INSERT INTO points (user_id, points_earned, points_spent, balance, activity_type,
                                reference_id, description, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, [user_id, points_earned, points_spent, balance, activity_type,
              reference_id, description, expires_at])
        return cursor.lastrowid

    def award(self, user_id: int, points: int, activity_type: str,
              reference_id: Optional[int] = None, description: str = "",
              now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        发放积分

        新余额 = 原余额 + points，有效期 now + points_expiry_days
        """
        if not validate_positive_integer(points):
            raise ValidationError(f"积分必须为正整数: {points}", code="INVALID_POINTS")

        now = now or datetime.now()
        expires_at = now + timedelta(days=self.fees.points_expiry_days)

        def award_operation():
            balance_before = self.get_balance(user_id)
            new_balance = balance_before + points
            points_id = self._append_entry(user_id, points, 0, new_balance, activity_type,
                                           reference_id, description, to_db_time(expires_at))
            self.logger.info(f"用户 {user_id} 获得 {points} 积分（{activity_type}），余额 {new_balance}")
            return {
                'points_id': points_id,
                'points_earned': points,
                'balance': new_balance,
                'expires_at': expires_at.isoformat(),
                'message': f'获得 {points} 积分'
            }

        return self.db.execute_transaction([award_operation])[0]

    def award_order_points(self, user_id: int, order_amount: int, order_id: int) -> int:
        """订单完成奖励积分，金额不足一个主货币单位时不记录"""
        points = calculate_points_earned(order_amount, self.fees)
        if points > 0:
            self.award(user_id, points, 'order_completed', order_id, f"订单 {order_id} 完成奖励")
        return points

    def award_reservation_points(self, user_id: int, reservation_id: int,
                                 points: int = RESERVATION_POINTS) -> int:
        self.award(user_id, points, 'reservation_completed', reservation_id,
                   f"预约 {reservation_id} 完成奖励")
        return points

    def redeem(self, user_id: int, points: int, reference_id: Optional[int] = None,
               description: str = "") -> Dict[str, Any]:
        """
        兑换积分

        先校验最小值/最大值/倍数，再校验余额，最后追加扣减记录

        Raises:
            ValidationError: 兑换数量不符合规则
            InsufficientPoints: 积分不足
        """
        if not validate_positive_integer(points):
            raise ValidationError(f"积分必须为正整数: {points}", code="INVALID_POINTS_REDEMPTION")
        validate_points_redemption(points, self.fees)

        def redeem_operation():
            balance_before = self.get_balance(user_id)
            if points > balance_before:
                raise InsufficientPoints(balance_before, points)

            new_balance = balance_before - points
            points_id = self._append_entry(user_id, 0, points, new_balance, 'redemption',
                                           reference_id, description or f"兑换 {points} 积分", None)
            value = calculate_points_redemption(points, self.fees)
            self.logger.info(f"用户 {user_id} 兑换 {points} 积分，价值 {value}，余额 {new_balance}")
            return {
                'points_id': points_id,
                'points_spent': points,
                'redemption_value': value,
                'balance': new_balance,
                'message': f'成功兑换 {points} 积分'
            }

        return self.db.execute_transaction([redeem_operation])[0]

    def redeem_to_wallet(self, user_id: int, points: int) -> Dict[str, Any]:
        """
        积分兑换为钱包余额（同一事务内扣积分并入账）
        """
        if self.wallet_ops is None:
            raise ValidationError("钱包服务不可用，无法兑换到钱包", code="WALLET_UNAVAILABLE")

        def redeem_to_wallet_operation():
            redemption = self.redeem(user_id, points, description=f"兑换 {points} 积分到钱包")
            credit = self.wallet_ops.credit(
                user_id, redemption['redemption_value'], transaction_type='discount',
                reference_type='wallet', reference_id=redemption['points_id'],
                description=f"积分兑换 {points} 积分"
            )
            return {
                'points_spent': points,
                'points_balance': redemption['balance'],
                'credited_amount': redemption['redemption_value'],
                'wallet_balance': credit['balance_after'],
                'transaction_no': credit['transaction_no'],
                'message': f'{points} 积分已兑换为 {redemption["redemption_value"]} 钱包余额'
            }

        return self.db.execute_transaction([redeem_to_wallet_operation])[0]

    def get_history(self, user_id: int, activity_type: Optional[str] = None,
                    limit: int = 20, offset: int = 0) -> Dict[str, Any]:
        conditions = ["user_id = ?"]
        params: List[Any] = [user_id]
        if activity_type:
            conditions.append("activity_type = ?")
            params.append(activity_type)
        where_clause = " AND ".join(conditions)

        total_count = self.db.conn.execute(
            f"SELECT COUNT(*) FROM points WHERE {where_clause}", params
        ).fetchone()[0]
        rows = self.db.conn.execute(f"""
            SELECT points_id, points_earned, points_spent, balance, activity_type,
                   reference_id, description, expires_at, created_at
            FROM points
            WHERE {where_clause}
            ORDER BY points_id DESC
            LIMIT ? OFFSET ?
        """, params + [limit, offset]).fetchall()

        return {
            'entries': [dict(row) for row in rows],
            'total_count': total_count,
            'limit': limit,
            'offset': offset
        }

    def get_expiring_points(self, user_id: int, days_ahead: int = 30,
                            now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """即将过期的积分发放记录"""
        now = now or datetime.now()
        horizon = now + timedelta(days=days_ahead)

        rows = self.db.conn.execute("""
            SELECT points_id, points_earned, activity_type, expires_at
            FROM points
            WHERE user_id = ? AND points_earned > 0
              AND expires_at > ? AND expires_at <= ?
            ORDER BY expires_at ASC
        """, [user_id, to_db_time(now), to_db_time(horizon)]).fetchall()

        result = []
        for row in rows:
            entry = dict(row)
            expires_at = from_db_time(entry["expires_at"])
            entry['days_until_expiry'] = max(0, (expires_at - now).days)
            result.append(entry)
        return result

    def get_summary(self, user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """积分概览：余额、即将过期、近30天收支、可兑换价值"""
        now = now or datetime.now()
        balance = self.get_balance(user_id)

        recent = self.db.conn.execute("""
            SELECT COALESCE(SUM(points_earned), 0) AS earned,
                   COALESCE(SUM(points_spent), 0) AS spent
            FROM points
            WHERE user_id = ? AND created_at >= ?
        """, [user_id, to_db_time(now - timedelta(days=30))]).fetchone()

        return {
            'balance': balance,
            'expiring_soon': self.get_expiring_points(user_id, 30, now),
            'recent_activity': {
                'earned': recent['earned'],
                'spent': recent['spent'],
                'net': recent['earned'] - recent['spent']
            },
            'redemption': {
                'minor_units_per_point': self.fees.minor_units_per_point,
                'max_redemption_value': calculate_points_redemption(balance, self.fees),
                'min_points': self.fees.points_redemption_min,
                'max_points': self.fees.points_redemption_max,
                'multiple_of': self.fees.points_redemption_multiple
            }
        }

    def expire_points(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        积分过期批处理（离线任务）

        先进先出：消费优先抵扣最早发放的积分。对每个用户，
        应过期数 = 已到期发放总数 - 历史扣减总数（含兑换与以往过期），不超过当前余额。
        重复执行不会重复扣减。
        """
        now = now or datetime.now()
        cutoff = to_db_time(now)

        def expire_operation():
            candidates = self.db.conn.execute("""
                SELECT user_id,
                       COALESCE(SUM(CASE WHEN points_earned > 0 AND expires_at <= ?
                                         THEN points_earned END), 0) AS matured,
                       COALESCE(SUM(points_spent), 0) AS spent
                FROM points
                GROUP BY user_id
                HAVING matured > spent
            """, [cutoff]).fetchall()

            expired_users = 0
            total_expired = 0
            for row in candidates:
                balance = self.get_balance(row['user_id'])
                to_expire = min(balance, row['matured'] - row['spent'])
                if to_expire <= 0:
                    continue
                self._append_entry(row['user_id'], 0, to_expire, balance - to_expire, 'expiry',
                                   None, f"{to_expire} 积分已过期", None)
                expired_users += 1
                total_expired += to_expire

            return {
                'expired_users': expired_users,
                'total_expired_points': total_expired,
                'message': f'过期处理完成，共 {expired_users} 个用户 {total_expired} 积分'
            }

        result = self.db.execute_transaction([expire_operation])[0]
        self.logger.info(result['message'])
        return result
