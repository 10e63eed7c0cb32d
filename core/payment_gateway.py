"""
支付网关适配器

create_invoice(intent_id, amount, currency, package) -> (external_order_id, payment_url)
"""

import json
from typing import Tuple

import requests

from core.log import get_logger

logger = get_logger(__name__)


class GatewayError(Exception):
    pass


class PaymentGateway:
    channel = ""

    def create_invoice(self, intent_id: str, amount: float, currency: str, package) -> Tuple[str, str]:
        raise NotImplementedError


class LavaTopGateway(PaymentGateway):
    channel = "lava"

    def __init__(self, settings):
        self.settings = settings

    def create_invoice(self, intent_id: str, amount: float, currency: str, package) -> Tuple[str, str]:
        if not self.settings.shop_id or not self.settings.secret_key:
            raise GatewayError("payment.lava.shop_id 和 payment.lava.secret_key 未配置")

        body = {
            "sum": amount,
            "orderId": intent_id,
            "shopId": self.settings.shop_id,
            "currency": "RUB" if currency == "RUB" else "USD",
        }
        url = f"{str(self.settings.api_url or 'https://api.lava.top').rstrip('/')}/v1/invoice/create"
        try:
            resp = requests.post(
                url,
                data=json.dumps(body),
                headers={
                    "Content-Type": "application/json",
                    "Authorization": self.settings.secret_key,
                },
                timeout=self.settings.timeout_seconds,
            )
        except requests.RequestException as e:
            raise GatewayError(f"failed to send request: {e}") from e

        if resp.status_code != 200:
            raise GatewayError(f"lava top API error: {resp.text[:300]} (status: {resp.status_code})")
        try:
            payload = resp.json()
        except ValueError as e:
            raise GatewayError(f"failed to parse response: {e}") from e

        if payload.get("status") != "success":
            raise GatewayError(f"lava top error: {payload.get('message') or ''}")
        data = payload.get("data") or {}
        invoice_id = str(data.get("invoiceId") or "")
        payment_url = str(data.get("url") or "")
        if not invoice_id or not payment_url:
            raise GatewayError("lava top error: missing invoiceId or url")
        logger.info("Lava Top 账单已创建 intent=%s invoice=%s", intent_id, invoice_id)
        return invoice_id, payment_url


class MockGateway(PaymentGateway):
    """测试支付通道，直接调用 webhook 完成支付"""

    channel = "mock"

    def create_invoice(self, intent_id: str, amount: float, currency: str, package) -> Tuple[str, str]:
        return f"mock-{intent_id}", f"mockpay://{intent_id}"


def build_gateway(payment_settings) -> PaymentGateway:
    channel = str(payment_settings.channel or "lava").lower()
    if channel == "mock":
        return MockGateway()
    if channel == "lava":
        return LavaTopGateway(payment_settings)
    raise GatewayError(f"不支持的支付通道: {channel}")
