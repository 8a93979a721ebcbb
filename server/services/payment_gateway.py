# 支付网关客户端

import httpx
import logging
import uuid
from typing import Dict, Any, Optional

from utils.config import Config, resolved_setting

logger = logging.getLogger(__name__)


class PaymentGateway:
    """
    支付网关

    charge / refund 永不抛出传输异常，统一返回
    {"success": bool, "reference": str|None, "error": str|None}，
    由调用方决定失败是否阻断业务（扣款失败必须阻断）。
    """

    def __init__(self, config: Optional[Config] = None, client: Optional[httpx.Client] = None):
        self.config = config or Config()
        self.base_url = resolved_setting(self.config.get("payment_gateway.base_url"))
        self.api_key = resolved_setting(self.config.get("payment_gateway.api_key"))
        self.timeout = self.config.get("payment_gateway.timeout_seconds", 10)
        self._client = client

        if not self.base_url or not self.api_key:
            logger.warning("支付网关配置缺失，将使用模拟模式")
            self.mock_mode = True
        else:
            self.mock_mode = False

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.base_url.rstrip('/')}/{path}"

        if self._client is not None:
            response = self._client.post(url, json=payload, headers=headers, timeout=self.timeout)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, json=payload, headers=headers)

        response.raise_for_status()
        return response.json()

    def charge(self, amount: int, currency: str, description: Optional[str] = None) -> Dict[str, Any]:
        """
        扣款

        Args:
            amount: 金额（最小货币单位）
            currency: 币种
            description: 交易描述
        """
        if self.mock_mode:
            reference = f"MOCK-CHG-{uuid.uuid4().hex[:12].upper()}"
            logger.info(f"模拟扣款成功: {amount} {currency}, 参考号 {reference}")
            return {"success": True, "reference": reference, "error": None}

        try:
            data = self._post("charges", {
                "amount": amount,
                "currency": currency,
                "description": description
            })
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"支付网关扣款请求失败: {str(e)}")
            return {"success": False, "reference": None, "error": str(e)}

        if data.get("status") not in ("succeeded", "success", "paid"):
            error = data.get("error") or data.get("message") or "支付网关拒绝扣款"
            logger.warning(f"支付网关扣款被拒绝: {error}")
            return {"success": False, "reference": data.get("id"), "error": error}

        logger.info(f"支付网关扣款成功: {amount} {currency}, 参考号 {data.get('id')}")
        return {"success": True, "reference": data.get("id"), "error": None}

    def refund(self, original_reference: str, amount: int) -> Dict[str, Any]:
        """
        退款到原支付渠道

        Args:
            original_reference: 原扣款参考号
            amount: 退款金额（最小货币单位）
        """
        if self.mock_mode:
            reference = f"MOCK-RFD-{uuid.uuid4().hex[:12].upper()}"
            logger.info(f"模拟退款成功: {amount}, 原交易 {original_reference}")
            return {"success": True, "reference": reference, "error": None}

        try:
            data = self._post("refunds", {"charge": original_reference, "amount": amount})
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"支付网关退款请求失败: {str(e)}")
            return {"success": False, "reference": None, "error": str(e)}

        if data.get("status") not in ("succeeded", "success", "refunded"):
            error = data.get("error") or data.get("message") or "支付网关拒绝退款"
            logger.warning(f"支付网关退款被拒绝: {error}")
            return {"success": False, "reference": data.get("id"), "error": error}

        logger.info(f"支付网关退款成功: {amount}, 原交易 {original_reference}")
        return {"success": True, "reference": data.get("id"), "error": None}
