# 支付编排
# 钱包抵扣 + 网关扣款的混合支付，以及收银台支付码

import logging
from typing import Any, Dict, Optional

from .manager import DatabaseManager
from .order_operations import OrderOperations
from .wallet_operations import WalletOperations, compensate_charge
from utils.errors import (ValidationError, AuthorizationError, IllegalStateTransition,
                          ExternalServiceError)
from utils.fees import FeeSettings, DEFAULT_FEES

PAYABLE_STATUSES = ('pending', 'accepted', 'preparing')


class PaymentOperations:
    """
    订单支付

    先向网关扣除钱包不足部分，网关成功后在一个事务内完成钱包扣减、
    外部支付流水和订单状态更新；事务失败时对网关扣款做补偿退款。
    """

    def __init__(self, db_manager: DatabaseManager, order_ops: OrderOperations,
                 wallet_ops: Optional[WalletOperations] = None, payment_gateway=None,
                 qr_ops=None, notifier=None, fee_settings: FeeSettings = DEFAULT_FEES):
        self.db = db_manager
        self.orders = order_ops
        self.wallet_ops = wallet_ops or order_ops.wallet_ops
        self.gateway = payment_gateway
        self.qr_ops = qr_ops
        self.notifier = notifier
        self.fees = fee_settings
        self.logger = logging.getLogger(self.__class__.__name__)

        if self.qr_ops is not None:
            self.qr_ops.register_handler('payment', self.handle_payment_scan)

    def _notify(self, recipient_type: str, recipient_id: Any, event_type: str, payload: Dict[str, Any]):
        if self.notifier is None:
            return
        self.db.after_commit(
            lambda: self.notifier.notify(recipient_type, recipient_id, event_type, payload)
        )

    def _verify_payable(self, order: Dict[str, Any]):
        if order['payment_status'] != 'pending':
            raise ValidationError(f"订单支付状态为 {order['payment_status']}，无需支付",
                                  code="ORDER_ALREADY_PAID")
        if order['status'] not in PAYABLE_STATUSES:
            raise IllegalStateTransition(order['status'], 'pay')

    def _mark_paid(self, order_id: int, payment_method: str):
        self.db.conn.execute("""
            UPDATE orders SET payment_status = 'paid', payment_method = ?, updated_at = CURRENT_TIMESTAMP
            WHERE order_id = ? AND payment_status = 'pending'
        """, [payment_method, order_id])

    def pay_order(self, order_id: int, user_id: int, use_wallet: bool = True) -> Dict[str, Any]:
        """
        混合支付

        wallet_deduction = min(钱包余额, 应付金额)，剩余部分走支付网关。

        Returns:
            {wallet_deduction, payment_amount, wallet_balance, gateway_reference, ...}

        Raises:
            ExternalServiceError: 网关扣款失败（此时未做任何变更）
        """
        order = self.orders._get_order(order_id)
        self.orders._verify_order_owner(order, user_id)
        self._verify_payable(order)

        final_amount = order['final_amount']
        balance = self.wallet_ops.get_balance(user_id) if use_wallet else 0
        wallet_deduction = min(balance, final_amount)
        payment_amount = final_amount - wallet_deduction

        gateway_reference = None
        if payment_amount > 0:
            if self.gateway is None:
                raise ExternalServiceError("支付网关不可用", code="PAYMENT_FAILED")
            charge = self.gateway.charge(payment_amount, self.fees.currency,
                                         f"订单 {order['order_number']}")
            if not charge.get('success'):
                raise ExternalServiceError(f"支付失败: {charge.get('error')}", code="PAYMENT_FAILED")
            gateway_reference = charge.get('reference')

        def pay_operation():
            current = self.orders._get_order(order_id)
            self._verify_payable(current)

            transactions = []
            wallet_balance = balance
            if wallet_deduction > 0:
                debit = self.wallet_ops.debit(
                    user_id, wallet_deduction, transaction_type='payment', reference_type='order',
                    reference_id=order_id, description=f"订单 {order['order_number']} 钱包抵扣"
                )
                wallet_balance = debit['balance_after']
                transactions.append(debit['transaction_no'])

            if payment_amount > 0:
                external = self.wallet_ops.record_transaction(
                    user_id, 'payment', -payment_amount, reference_type='order', reference_id=order_id,
                    payment_method='online', gateway_reference=gateway_reference,
                    description=f"订单 {order['order_number']} 在线支付"
                )
                transactions.append(external['transaction_no'])

            self._mark_paid(order_id, 'online' if payment_amount > 0 else 'wallet')
            self._notify('user', user_id, 'payment_received',
                         {'order_id': order_id, 'amount': final_amount})
            return {
                'order_id': order_id,
                'payment_status': 'paid',
                'final_amount': final_amount,
                'wallet_deduction': wallet_deduction,
                'payment_amount': payment_amount,
                'wallet_balance': wallet_balance,
                'gateway_reference': gateway_reference,
                'transactions': transactions,
                'message': f'支付成功，钱包抵扣 {wallet_deduction}，在线支付 {payment_amount}'
            }

        try:
            result = self.db.execute_transaction([pay_operation])[0]
        except Exception:
            if gateway_reference:
                compensate_charge(self.gateway, gateway_reference, payment_amount)
            raise

        self.logger.info(f"订单 {order['order_number']} 支付完成: 钱包 {wallet_deduction}，网关 {payment_amount}")
        return result

    def issue_payment_qr(self, order_id: int, user_id: int, short_lived: bool = False) -> Dict[str, Any]:
        """用户为订单生成支付码，由商家在收银台扫描"""
        if self.qr_ops is None:
            raise ValidationError("二维码服务不可用", code="QR_UNAVAILABLE")

        order = self.orders._get_order(order_id)
        self.orders._verify_order_owner(order, user_id)
        self._verify_payable(order)

        business_ids = self.orders._get_order_business_ids(order_id)
        return self.qr_ops.issue(
            'payment', order_id, {'order_number': order['order_number'], 'amount': order['final_amount']},
            user_id=user_id, business_id=business_ids[0] if business_ids else None,
            short_lived=short_lived
        )

    def handle_payment_scan(self, qr: Dict[str, Any], scanner: Dict[str, Any]) -> Dict[str, Any]:
        """
        支付码扫描：商家收款，优先从用户钱包扣除，不足部分按现金收取
        """
        order = self.orders._get_order(qr['reference_id'])
        self.orders._verify_business_actor(order, scanner.get('user_id'))
        if qr['user_id'] and qr['user_id'] != order['user_id']:
            raise AuthorizationError("支付码与订单用户不匹配")
        self._verify_payable(order)

        final_amount = order['final_amount']
        wallet_deduction = min(self.wallet_ops.get_balance(order['user_id']), final_amount)
        cash_amount = final_amount - wallet_deduction

        if wallet_deduction > 0:
            self.wallet_ops.debit(
                order['user_id'], wallet_deduction, transaction_type='payment', reference_type='order',
                reference_id=order['order_id'], description=f"订单 {order['order_number']} 扫码支付"
            )
        if cash_amount > 0:
            self.wallet_ops.record_transaction(
                order['user_id'], 'payment', -cash_amount, reference_type='order',
                reference_id=order['order_id'], payment_method='cash',
                description=f"订单 {order['order_number']} 现金补足"
            )

        self._mark_paid(order['order_id'], 'cash' if cash_amount > 0 else 'wallet')
        self._notify('user', order['user_id'], 'payment_received',
                     {'order_id': order['order_id'], 'amount': final_amount})
        return {
            'type': 'payment',
            'order_id': order['order_id'],
            'payment_status': 'paid',
            'wallet_deduction': wallet_deduction,
            'cash_amount': cash_amount,
            'message': f'收款成功，钱包 {wallet_deduction}，现金 {cash_amount}'
        }
