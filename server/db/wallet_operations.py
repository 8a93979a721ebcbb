# 钱包账本操作
# 余额只通过 credit/debit 变更，每次变更在同一事务内写入一条交易流水

import logging
import sqlite3
from datetime import datetime
from typing import Dict, Any, List, Optional

from .manager import DatabaseManager
from utils.errors import (ValidationError, NotFoundError, InsufficientBalance,
                          ExternalServiceError)
from utils.fees import FeeSettings, DEFAULT_FEES, calculate_wallet_fees
from utils.validators import validate_positive_integer, TRANSACTION_TYPES

logger = logging.getLogger(__name__)


def generate_transaction_no(conn: sqlite3.Connection) -> str:
    """
    生成交易号 TXN{YYYYMMDD}{seq:06d}

    需在写事务内调用，序号取当日最大值加一
    """
    date_prefix = f"TXN{datetime.now().strftime('%Y%m%d')}"

    max_seq = conn.execute("""
        SELECT MAX(CAST(SUBSTR(transaction_no, 12) AS INTEGER))
        FROM transactions
        WHERE transaction_no LIKE ?
    """, [f"{date_prefix}%"]).fetchone()[0]

    seq = (max_seq or 0) + 1
    return f"{date_prefix}{seq:06d}"


def compensate_charge(gateway, reference: str, amount: int):
    """
    扣款成功但本地记账失败时，尽力把款项退回原渠道；失败只记录日志
    """
    try:
        result = gateway.refund(reference, amount)
    except Exception as e:
        logger.error(f"补偿退款异常，需人工处理: 参考号 {reference}, 金额 {amount}, 错误 {e}")
        return
    if result.get("success"):
        logger.warning(f"已对扣款 {reference} 执行补偿退款 {amount}")
    else:
        logger.error(f"补偿退款失败，需人工处理: 参考号 {reference}, 金额 {amount}, 错误 {result.get('error')}")


class WalletOperations:
    """
    钱包账本

    对账不变量：钱包已完成流水（wallet_id 非空）金额之和恒等于钱包余额
    """

    def __init__(self, db_manager: DatabaseManager, fee_settings: FeeSettings = DEFAULT_FEES,
                 payment_gateway=None):
        self.db = db_manager
        self.fees = fee_settings
        self.gateway = payment_gateway
        self.logger = logging.getLogger(self.__class__.__name__)

    def _verify_amount(self, amount: int):
        if not validate_positive_integer(amount):
            raise ValidationError(f"金额必须为正整数: {amount}", code="INVALID_AMOUNT")

    def _verify_user_exists(self, user_id: int):
        user = self.db.conn.execute(
            "SELECT user_id, status FROM users WHERE user_id = ?", [user_id]
        ).fetchone()
        if not user:
            raise NotFoundError(f"用户ID {user_id} 不存在", code="USER_NOT_FOUND")
        return dict(user)

    def _get_or_create_wallet(self, user_id: int) -> Dict[str, Any]:
        """获取用户钱包，不存在时创建（需在事务内调用）"""
        wallet = self.db.conn.execute(
            "SELECT wallet_id, user_id, balance, currency FROM wallets WHERE user_id = ?",
            [user_id]
        ).fetchone()
        if wallet:
            return dict(wallet)

        self._verify_user_exists(user_id)
        cursor = self.db.conn.execute(
            "INSERT INTO wallets (user_id, balance, currency) VALUES (?, 0, ?)",
            [user_id, self.fees.currency]
        )
        self.logger.info(f"为用户 {user_id} 创建钱包 {cursor.lastrowid}")
        return {'wallet_id': cursor.lastrowid, 'user_id': user_id, 'balance': 0,
                'currency': self.fees.currency}

    def record_transaction(self, user_id: int, transaction_type: str, amount: int,
                           reference_type: Optional[str] = None, reference_id: Optional[int] = None,
                           payment_method: Optional[str] = None, description: Optional[str] = None,
                           wallet_id: Optional[int] = None, balance_before: Optional[int] = None,
                           balance_after: Optional[int] = None, gateway_reference: Optional[str] = None,
                           status: str = 'completed') -> Dict[str, Any]:
        """
        写入一条交易流水（需在事务内调用）

        wallet_id 为空的流水是订单层面记录（外部支付、订单退款），不参与钱包对账
        """
        if transaction_type not in TRANSACTION_TYPES:
            raise ValidationError(f"无效的交易类型: {transaction_type}", code="INVALID_TRANSACTION_TYPE")

        transaction_no = generate_transaction_no(self.db.conn)
        cursor = self.db.conn.execute("""
            INSERT INTO transactions (transaction_no, user_id, wallet_id, transaction_type,
                                      reference_type, reference_id, amount, balance_before,
                                      balance_after, payment_method, gateway_reference,
                                      status, description)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [transaction_no, user_id, wallet_id, transaction_type, reference_type, reference_id,
              amount, balance_before, balance_after, payment_method, gateway_reference,
              status, description])

        return {
            'transaction_id': cursor.lastrowid,
            'transaction_no': transaction_no,
            'transaction_type': transaction_type,
            'amount': amount,
            'status': status
        }

    def credit(self, user_id: int, amount: int, transaction_type: str = 'wallet_topup',
               reference_type: str = 'wallet', reference_id: Optional[int] = None,
               description: Optional[str] = None, payment_method: str = 'wallet',
               gateway_reference: Optional[str] = None) -> Dict[str, Any]:
        """
        钱包入账

        Args:
            user_id: 用户ID
            amount: 入账金额（正整数）
            transaction_type: wallet_topup/refund/earnings/discount
        """
        self._verify_amount(amount)

        def credit_operation():
            wallet = self._get_or_create_wallet(user_id)
            balance_before = wallet['balance']
            balance_after = balance_before + amount

            self.db.conn.execute("""
                UPDATE wallets
                SET balance = balance + ?, updated_at = CURRENT_TIMESTAMP
                WHERE wallet_id = ?
            """, [amount, wallet['wallet_id']])

            txn = self.record_transaction(
                user_id, transaction_type, amount,
                reference_type=reference_type, reference_id=reference_id,
                payment_method=payment_method, description=description or f"钱包入账 {amount}",
                wallet_id=wallet['wallet_id'], balance_before=balance_before,
                balance_after=balance_after, gateway_reference=gateway_reference
            )

            return {
                'wallet_id': wallet['wallet_id'],
                'transaction_no': txn['transaction_no'],
                'amount': amount,
                'balance_before': balance_before,
                'balance_after': balance_after,
                'message': f'钱包入账 {amount}，余额 {balance_after}'
            }

        return self.db.execute_transaction([credit_operation])[0]

    def debit(self, user_id: int, amount: int, transaction_type: str = 'payment',
              reference_type: str = 'order', reference_id: Optional[int] = None,
              description: Optional[str] = None) -> Dict[str, Any]:
        """
        钱包扣款

        Raises:
            InsufficientBalance: 金额大于当前余额
        """
        self._verify_amount(amount)

        def debit_operation():
            wallet = self._get_or_create_wallet(user_id)
            balance_before = wallet['balance']

            if amount > balance_before:
                raise InsufficientBalance(balance_before, amount)

            cursor = self.db.conn.execute("""
                UPDATE wallets
                SET balance = balance - ?, updated_at = CURRENT_TIMESTAMP
                WHERE wallet_id = ? AND balance >= ?
            """, [amount, wallet['wallet_id'], amount])
            if cursor.rowcount != 1:
                raise InsufficientBalance(balance_before, amount)

            balance_after = balance_before - amount
            txn = self.record_transaction(
                user_id, transaction_type, -amount,
                reference_type=reference_type, reference_id=reference_id,
                payment_method='wallet', description=description or f"钱包扣款 {amount}",
                wallet_id=wallet['wallet_id'], balance_before=balance_before,
                balance_after=balance_after
            )

            return {
                'wallet_id': wallet['wallet_id'],
                'transaction_no': txn['transaction_no'],
                'amount': -amount,
                'balance_before': balance_before,
                'balance_after': balance_after,
                'message': f'钱包扣款 {amount}，余额 {balance_after}'
            }

        return self.db.execute_transaction([debit_operation])[0]

    def get_wallet(self, user_id: int) -> Dict[str, Any]:
        """获取钱包信息，首次访问时创建空钱包"""
        def get_wallet_operation():
            return self._get_or_create_wallet(user_id)

        return self.db.execute_transaction([get_wallet_operation])[0]

    def get_balance(self, user_id: int) -> int:
        row = self.db.conn.execute(
            "SELECT balance FROM wallets WHERE user_id = ?", [user_id]
        ).fetchone()
        return row['balance'] if row else 0

    def get_transactions(self, user_id: int, limit: int = 20, offset: int = 0,
                         transaction_type: Optional[str] = None) -> Dict[str, Any]:
        """
        用户交易记录（含订单层面的外部支付与退款记录）
        """
        conditions = ["user_id = ?"]
        params: List[Any] = [user_id]
        if transaction_type:
            conditions.append("transaction_type = ?")
            params.append(transaction_type)
        where_clause = " AND ".join(conditions)

        total_count = self.db.conn.execute(
            f"SELECT COUNT(*) FROM transactions WHERE {where_clause}", params
        ).fetchone()[0]

        rows = self.db.conn.execute(f"""
            SELECT transaction_id, transaction_no, wallet_id, transaction_type, reference_type,
                   reference_id, amount, balance_before, balance_after, payment_method,
                   gateway_reference, status, description, created_at
            FROM transactions
            WHERE {where_clause}
            ORDER BY transaction_id DESC
            LIMIT ? OFFSET ?
        """, params + [limit, offset]).fetchall()

        return {
            'transactions': [dict(row) for row in rows],
            'total_count': total_count,
            'limit': limit,
            'offset': offset,
            'has_more': offset + limit < total_count
        }

    def reconcile(self, user_id: int) -> Dict[str, Any]:
        """核对钱包余额与已完成流水之和"""
        row = self.db.conn.execute("""
            SELECT w.wallet_id, w.balance,
                   COALESCE(SUM(CASE WHEN t.status = 'completed' THEN t.amount END), 0) AS ledger_sum
            FROM wallets w
            LEFT JOIN transactions t ON t.wallet_id = w.wallet_id
            WHERE w.user_id = ?
            GROUP BY w.wallet_id
        """, [user_id]).fetchone()

        if not row:
            return {'wallet_id': None, 'balance': 0, 'ledger_sum': 0, 'consistent': True}

        return {
            'wallet_id': row['wallet_id'],
            'balance': row['balance'],
            'ledger_sum': row['ledger_sum'],
            'consistent': row['balance'] == row['ledger_sum']
        }

    def topup(self, user_id: int, amount: int) -> Dict[str, Any]:
        """
        通过支付网关充值钱包

        先向网关扣款（关键步骤，失败即中止），成功后入账；
        入账失败时对网关扣款做补偿退款。
        """
        self._verify_amount(amount)
        if amount < self.fees.minimum_wallet_topup:
            raise ValidationError(f"单次充值最低 {self.fees.minimum_wallet_topup}",
                                  code="BELOW_MINIMUM_TOPUP")
        self._verify_user_exists(user_id)

        if self.gateway is None:
            raise ExternalServiceError("支付网关不可用", code="PAYMENT_FAILED")

        fee_info = calculate_wallet_fees(amount, 'topup')
        charge = self.gateway.charge(amount, self.fees.currency, f"钱包充值 用户{user_id}")
        if not charge.get('success'):
            raise ExternalServiceError(f"充值扣款失败: {charge.get('error')}", code="PAYMENT_FAILED")

        try:
            result = self.credit(
                user_id, fee_info['final_amount'], transaction_type='wallet_topup',
                reference_type='wallet', description=f"钱包充值 {amount}",
                payment_method='online', gateway_reference=charge['reference']
            )
        except Exception:
            compensate_charge(self.gateway, charge['reference'], amount)
            raise

        self.logger.info(f"用户 {user_id} 充值 {amount} 成功，参考号 {charge['reference']}")
        result['gateway_reference'] = charge['reference']
        result['fee'] = fee_info['fee']
        result['message'] = f'充值成功，余额 {result["balance_after"]}'
        return result
