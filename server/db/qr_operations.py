# 二维码（令牌）签发与核销

import hashlib
import json
import logging
import secrets
import sqlite3
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .manager import DatabaseManager, to_db_time, from_db_time
from utils.errors import (ValidationError, NotFoundError, QRExpired, QRAlreadyUsed)
from utils.validators import validate_qr_type

SINGLE_USE_TYPES = ('discount', 'payment')

DEFAULT_EXPIRY_SECONDS = {
    'discount': 24 * 3600,
    'reservation': 24 * 3600,
    'order': 24 * 3600,
    'payment': 3600,
    'driver_pickup': 2 * 3600,
}
DEFAULT_POS_PAYMENT_SECONDS = 60

TOKEN_LENGTH = 16
MAX_TOKEN_ATTEMPTS = 5

# handler(qr, scanner) -> dict
QRHandler = Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]


def generate_qr_token(qr_type: str, reference_id: Any, length: int = TOKEN_LENGTH) -> str:
    """
    生成不可猜测的令牌：sha256(类型-引用ID-时间戳-随机盐) 取前 length 位大写十六进制
    """
    if not validate_qr_type(qr_type):
        raise ValidationError(f"无效的二维码类型: {qr_type}", code="INVALID_QR_TYPE")

    unique_string = f"{qr_type}-{reference_id}-{time.time_ns()}-{secrets.token_hex(8)}"
    return hashlib.sha256(unique_string.encode()).hexdigest()[:length].upper()


class QROperations:
    """
    二维码签发器

    discount/payment 为一次性类型，核销后再次使用返回 QRAlreadyUsed；
    其余类型可重复扫描，只累计扫描次数。扫描处理函数按类型注册，
    与令牌标记在同一事务内执行，处理失败时令牌不会被标记。
    """

    def __init__(self, db_manager: DatabaseManager, expiry_seconds: Optional[Dict[str, int]] = None,
                 pos_payment_seconds: int = DEFAULT_POS_PAYMENT_SECONDS):
        self.db = db_manager
        self.expiry_seconds = dict(DEFAULT_EXPIRY_SECONDS)
        if expiry_seconds:
            self.expiry_seconds.update(expiry_seconds)
        self.pos_payment_seconds = pos_payment_seconds
        self.handlers: Dict[str, QRHandler] = {'discount': self._handle_discount_scan}
        self.logger = logging.getLogger(self.__class__.__name__)

    def register_handler(self, qr_type: str, handler: QRHandler):
        """注册某类型二维码的扫描处理函数"""
        if not validate_qr_type(qr_type):
            raise ValidationError(f"无效的二维码类型: {qr_type}", code="INVALID_QR_TYPE")
        self.handlers[qr_type] = handler

    def _row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        qr = dict(row)
        qr['metadata'] = json.loads(qr['metadata']) if qr.get('metadata') else {}
        qr['is_used'] = bool(qr['is_used'])
        return qr

    def _load(self, token: str) -> Dict[str, Any]:
        row = self.db.conn.execute(
            "SELECT * FROM qr_codes WHERE token = ?", [(token or '').strip().upper()]
        ).fetchone()
        if not row:
            raise NotFoundError("二维码不存在", code="QR_NOT_FOUND")
        return self._row_to_dict(row)

    def issue(self, qr_type: str, reference_id: Optional[int], metadata: Optional[Dict[str, Any]] = None,
              user_id: Optional[int] = None, business_id: Optional[int] = None,
              driver_id: Optional[int] = None, short_lived: bool = False,
              now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        签发二维码

        Args:
            qr_type: discount/payment/reservation/order/driver_pickup
            reference_id: 绑定的实体ID
            metadata: 附加数据（如折扣金额）
            short_lived: 收银台场景的支付码，有效期缩短为 pos_payment_seconds

        Returns:
            {token, qr_type, reference_id, expires_at}
        """
        if not validate_qr_type(qr_type):
            raise ValidationError(f"无效的二维码类型: {qr_type}", code="INVALID_QR_TYPE")

        now = now or datetime.now()
        seconds = self.expiry_seconds[qr_type]
        if short_lived and qr_type == 'payment':
            seconds = self.pos_payment_seconds
        expires_at = now + timedelta(seconds=seconds)
        metadata_json = json.dumps(metadata, ensure_ascii=False) if metadata else None

        def issue_operation():
            for _ in range(MAX_TOKEN_ATTEMPTS):
                token = generate_qr_token(qr_type, reference_id)
                try:
                    cursor = self.db.conn.execute("""
                        INSERT INTO qr_codes (token, qr_type, reference_id, user_id, business_id,
                                              driver_id, metadata, expires_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """, [token, qr_type, reference_id, user_id, business_id, driver_id,
                          metadata_json, to_db_time(expires_at)])
                except sqlite3.IntegrityError:
                    self.logger.warning("二维码令牌冲突，重新生成")
                    continue

                self.logger.info(f"签发二维码 {qr_type}:{reference_id}，有效期至 {expires_at.isoformat()}")
                return {
                    'qr_id': cursor.lastrowid,
                    'token': token,
                    'qr_type': qr_type,
                    'reference_id': reference_id,
                    'expires_at': expires_at.isoformat(),
                    'metadata': metadata or {}
                }
            raise RuntimeError("无法生成唯一的二维码令牌")

        return self.db.execute_transaction([issue_operation])[0]

    def validate(self, token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        校验二维码

        Raises:
            NotFoundError: 令牌不存在
            QRExpired: 已过期
            QRAlreadyUsed: 一次性二维码已使用
        """
        now = now or datetime.now()
        qr = self._load(token)

        if now > from_db_time(qr['expires_at']):
            raise QRExpired("二维码已过期", details={'expires_at': qr['expires_at']})

        if qr['is_used'] and qr['qr_type'] in SINGLE_USE_TYPES:
            raise QRAlreadyUsed("二维码已被使用", details={'used_at': qr['used_at']})

        return {'valid': True, 'qr': qr}

    def check(self, token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """validate 的非抛出版本，返回 {valid, reason}"""
        try:
            self.validate(token, now)
        except (NotFoundError, QRExpired, QRAlreadyUsed) as e:
            return {'valid': False, 'reason': e.code}
        return {'valid': True, 'reason': None}

    def consume(self, token: str, scanner: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        核销二维码

        重新校验后分派给该类型的处理函数（处理函数负责扫描者鉴权和状态迁移），
        一次性类型在同一事务内标记已使用。

        Args:
            token: 二维码令牌
            scanner: 扫描者上下文 {user_id, role, ...}
        """
        now = now or datetime.now()

        def consume_operation():
            qr = self.validate(token, now)['qr']
            handler = self.handlers.get(qr['qr_type'])
            if handler is None:
                raise ValidationError(f"二维码类型 {qr['qr_type']} 暂不支持扫描", code="QR_TYPE_NOT_SCANNABLE")

            result = handler(qr, scanner)

            if qr['qr_type'] in SINGLE_USE_TYPES:
                self._mark_used(qr['qr_id'], scanner.get('user_id'), now)
            self.db.conn.execute("""
                UPDATE qr_codes
                SET scan_count = scan_count + 1, last_scanned_at = ?
                WHERE qr_id = ?
            """, [to_db_time(now), qr['qr_id']])

            self.logger.info(f"二维码 {qr['qr_type']}:{qr['reference_id']} 被用户 {scanner.get('user_id')} 扫描")
            return {
                'qr_type': qr['qr_type'],
                'reference_id': qr['reference_id'],
                'result': result,
                'message': result.get('message', '扫描成功')
            }

        return self.db.execute_transaction([consume_operation])[0]

    def _mark_used(self, qr_id: int, used_by: Optional[int], now: datetime):
        cursor = self.db.conn.execute("""
            UPDATE qr_codes
            SET is_used = 1, used_at = ?, used_by = ?
            WHERE qr_id = ? AND is_used = 0
        """, [to_db_time(now), used_by, qr_id])
        if cursor.rowcount != 1:
            raise QRAlreadyUsed("二维码已被使用")

    def resolve_coupon(self, token: str, total_amount: int, user_id: Optional[int] = None,
                       now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        解析折扣码并计算折扣金额（不核销）

        metadata 支持 discount_amount（固定金额）或 discount_percentage（0-1）
        """
        qr = self.validate(token, now)['qr']
        if qr['qr_type'] != 'discount':
            raise ValidationError("该二维码不是折扣码", code="INVALID_COUPON")
        if qr['user_id'] and user_id and qr['user_id'] != user_id:
            raise ValidationError("该折扣码不属于当前用户", code="INVALID_COUPON")

        metadata = qr['metadata']
        if 'discount_amount' in metadata:
            discount = int(metadata['discount_amount'])
        elif 'discount_percentage' in metadata:
            discount = round(total_amount * float(metadata['discount_percentage']))
        else:
            raise ValidationError("折扣码缺少折扣信息", code="INVALID_COUPON")

        return {'qr': qr, 'discount': max(0, discount)}

    def redeem_coupon(self, qr_id: int, user_id: Optional[int], now: Optional[datetime] = None):
        """核销折扣码（需在下单事务内调用）"""
        self._mark_used(qr_id, user_id, now or datetime.now())

    def _handle_discount_scan(self, qr: Dict[str, Any], scanner: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'type': 'discount',
            'discount_id': qr['reference_id'],
            'discount': qr['metadata'],
            'message': '折扣已使用'
        }

    def get_by_token(self, token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """查询二维码详情（不改变状态）"""
        now = now or datetime.now()
        qr = self._load(token)
        qr['is_expired'] = now > from_db_time(qr['expires_at'])
        qr['single_use'] = qr['qr_type'] in SINGLE_USE_TYPES
        return qr

    def list_by_reference(self, qr_type: str, reference_id: int) -> List[Dict[str, Any]]:
        rows = self.db.conn.execute("""
            SELECT * FROM qr_codes
            WHERE qr_type = ? AND reference_id = ?
            ORDER BY qr_id DESC
        """, [qr_type, reference_id]).fetchall()
        return [self._row_to_dict(row) for row in rows]

    def regenerate(self, token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        重新生成二维码：旧码立即过期，按相同类型、引用和元数据签发新码
        """
        now = now or datetime.now()

        def regenerate_operation():
            old = self._load(token)
            if old['is_used'] and old['qr_type'] in SINGLE_USE_TYPES:
                raise QRAlreadyUsed("已使用的一次性二维码不能重新生成")

            self.db.conn.execute(
                "UPDATE qr_codes SET expires_at = ? WHERE qr_id = ?",
                [to_db_time(now - timedelta(seconds=1)), old['qr_id']]
            )
            return self.issue(old['qr_type'], old['reference_id'], old['metadata'] or None,
                              user_id=old['user_id'], business_id=old['business_id'],
                              driver_id=old['driver_id'], now=now)

        return self.db.execute_transaction([regenerate_operation])[0]

    def cleanup_expired(self, older_than_days: int = 30, now: Optional[datetime] = None) -> int:
        """
        清理过期超过 older_than_days 天的二维码（离线任务）
        """
        cutoff = (now or datetime.now()) - timedelta(days=older_than_days)

        def cleanup_operation():
            cursor = self.db.conn.execute(
                "DELETE FROM qr_codes WHERE expires_at < ?", [to_db_time(cutoff)]
            )
            return cursor.rowcount

        deleted = self.db.execute_transaction([cleanup_operation])[0]
        self.logger.info(f"清理过期二维码 {deleted} 个")
        return deleted
