# 通知服务客户端

import httpx
import logging
from typing import Dict, Any, Optional

from utils.config import Config, resolved_setting
from utils.errors import ExternalServiceError

logger = logging.getLogger(__name__)

# 事件类型 -> 默认标题
EVENT_TITLES = {
    "order_created": "新订单",
    "order_accepted": "订单已接单",
    "order_preparing": "订单制作中",
    "order_waiting_driver": "待司机取餐",
    "order_in_delivery": "订单配送中",
    "order_completed": "订单已完成",
    "order_cancelled": "订单已取消",
    "order_rejected": "订单被商家拒绝",
    "driver_assigned": "新配送任务",
    "driver_rejected": "司机拒绝配送",
    "payment_received": "支付成功",
    "wallet_topup": "钱包充值成功",
    "points_earned": "获得积分",
    "reservation_confirmed": "预约已确认",
    "reservation_completed": "预约已完成",
}


class NotificationService:
    """
    通知服务

    notify 失败时抛出 ExternalServiceError；业务层在事务提交后调用并吞掉异常，
    通知失败从不影响主流程。
    """

    def __init__(self, config: Optional[Config] = None, client: Optional[httpx.Client] = None):
        self.config = config or Config()
        self.webhook_url = resolved_setting(self.config.get("notifications.webhook_url"))
        self.api_key = resolved_setting(self.config.get("notifications.api_key"))
        self.timeout = self.config.get("notifications.timeout_seconds", 5)
        self._client = client

        if not self.webhook_url:
            logger.warning("通知服务配置缺失，将使用模拟模式")
            self.mock_mode = True
        else:
            self.mock_mode = False

    def notify(self, recipient_type: str, recipient_id: Any, event_type: str,
               payload: Optional[Dict[str, Any]] = None):
        """
        发送通知

        Args:
            recipient_type: user/business/driver
            recipient_id: 接收方ID
            event_type: 事件类型，见 EVENT_TITLES
            payload: 模板数据
        """
        message = {
            "recipient_type": recipient_type,
            "recipient_id": recipient_id,
            "event_type": event_type,
            "title": EVENT_TITLES.get(event_type, event_type),
            "payload": payload or {}
        }

        if self.mock_mode:
            logger.info(f"模拟通知 -> {recipient_type}:{recipient_id} [{event_type}]")
            return message

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            if self._client is not None:
                response = self._client.post(self.webhook_url, json=message, headers=headers,
                                             timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.webhook_url, json=message, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"通知发送失败 {recipient_type}:{recipient_id} [{event_type}]: {str(e)}")
            raise ExternalServiceError(f"通知发送失败: {str(e)}", code="NOTIFICATION_FAILED")

        logger.debug(f"通知已发送 -> {recipient_type}:{recipient_id} [{event_type}]")
        return message
