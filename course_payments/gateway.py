"""PayMob HTTP client.

Card payments take three calls (auth token, order, payment key) and end in
a hosted iframe; wallet payments take one call to the intention API and
end in the unified checkout page. Every call is bounded by the configured
timeout and a timeout always surfaces as ``GatewayTimeoutError``.
"""
import time
import uuid
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from course_payments.amounts import json_amount, parse_amount_from_cents
from course_payments.config import PaymobConfig
from course_payments.errors import (
    AuthError,
    GatewayError,
    GatewayTimeoutError,
    IntentionError,
    OrderCreationError,
    PaymentKeyError,
)
from course_payments.models import PaymentMethod
from course_payments.schemas import BillingData, OrderRequest

logger = structlog.get_logger(__name__)

INTENTION_STATUS_MESSAGES = {
    400: "بيانات الطلب غير صحيحة",
    401: "مفتاح API غير صحيح أو منتهي الصلاحية",
    404: "خدمة المحفظة الإلكترونية غير متاحة حالياً",
}


def generate_merchant_order_id(course_id: str, user_id: str) -> str:
    """Correlation key PayMob echoes back in callbacks; unique per call."""
    timestamp = int(time.time() * 1000)
    return f"crs-{course_id}-usr-{user_id}-{timestamp}-{uuid.uuid4().hex[:8]}"


def build_billing_data(name: str, email: Optional[str] = None, phone: Optional[str] = None) -> BillingData:
    # PayMob rejects billing data with empty fields, so fill the gaps
    parts = (name or "").split()
    return BillingData(
        first_name=parts[0] if parts else "مستخدم",
        last_name=" ".join(parts[1:]) or "غير محدد",
        email=email or "noemail@example.com",
        phone_number=phone or "+201000000000",
    )


class PaymobClient:
    def __init__(self, config: PaymobConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(config.timeout_seconds))

    async def __aenter__(self) -> "PaymobClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def _send(self, operation: str, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        try:
            return await self._client.post(url, json=payload, headers=headers, timeout=self.config.timeout_seconds)
        except httpx.TimeoutException as e:
            logger.error("paymob_timeout", operation=operation, timeout=self.config.timeout_seconds)
            raise GatewayTimeoutError(
                f"PayMob {operation} timed out after {self.config.timeout_seconds}s"
            ) from e

    @staticmethod
    def _json(operation: str, response: httpx.Response, error_cls: type) -> Dict[str, Any]:
        if not response.is_success:
            logger.error(
                "paymob_request_failed",
                operation=operation,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise error_cls(
                f"PayMob {operation} failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise error_cls(f"PayMob {operation} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise error_cls(f"PayMob {operation} returned an unexpected body")
        return data

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _request_token(self) -> httpx.Response:
        return await self._send(
            "authentication",
            f"{self.config.base_url}/auth/tokens",
            {"api_key": self.config.api_key.get_secret_value()},
        )

    async def authenticate(self) -> str:
        """Exchange the API key for a short-lived auth token.

        The token is only good for one payment flow; don't cache it.
        """
        try:
            response = await self._request_token()
        except httpx.TransportError as e:
            raise AuthError(f"PayMob authentication failed: {e}") from e
        data = self._json("authentication", response, AuthError)
        token = data.get("token")
        if not token:
            raise AuthError("PayMob authentication response has no token")
        return token

    async def create_order(self, auth_token: str, order: OrderRequest) -> Dict[str, Any]:
        """Register the order remotely; the provider's order id is under ``"id"``."""
        payload = {
            "auth_token": auth_token,
            "delivery_needed": False,
            **order.model_dump(),
        }
        try:
            response = await self._send("order creation", f"{self.config.base_url}/ecommerce/orders", payload)
        except httpx.TransportError as e:
            raise OrderCreationError(f"PayMob order creation failed: {e}") from e
        data = self._json("order creation", response, OrderCreationError)
        if not isinstance(data.get("id"), int):
            raise OrderCreationError("PayMob order creation response has no order id")
        logger.info("paymob_order_created", provider_order_id=data["id"], merchant_order_id=order.merchant_order_id)
        return data

    async def get_payment_key(
        self,
        auth_token: str,
        order_id: int,
        amount_cents: int,
        billing_data: BillingData,
        mode: PaymentMethod = PaymentMethod.CARD,
    ) -> str:
        integration_id = self.config.integration_id_for(PaymentMethod(mode).value)
        if integration_id is None:
            raise PaymentKeyError(
                f"No PayMob integration configured for payment method {PaymentMethod(mode).value}",
                user_message=f"فشل في تكوين طريقة الدفع {PaymentMethod(mode).value}",
            )
        payload = {
            "auth_token": auth_token,
            "amount_cents": amount_cents,
            "expiration": self.config.session_expiry_seconds,
            "order_id": order_id,
            "billing_data": billing_data.model_dump(),
            "currency": self.config.currency,
            "integration_id": integration_id,
            "lock_order_when_paid": True,
        }
        try:
            response = await self._send("payment key", f"{self.config.base_url}/acceptance/payment_keys", payload)
        except httpx.TransportError as e:
            raise PaymentKeyError(f"PayMob payment key generation failed: {e}") from e
        data = self._json("payment key", response, PaymentKeyError)
        token = data.get("token")
        if not token:
            raise PaymentKeyError("PayMob payment key response has no token")
        logger.info("paymob_payment_key_issued", provider_order_id=order_id, integration_id=integration_id)
        return token

    async def create_payment_intention(self, order: OrderRequest, course_id: str, user_id: str) -> Dict[str, Any]:
        """Create a wallet payment intention.

        The intention API takes major units while the order and payment-key
        endpoints take minor units, so amounts are divided by 100 here and
        only here.
        """
        wallet_id = self.config.integration_id_wallet
        payload = {
            "amount": json_amount(parse_amount_from_cents(order.amount_cents)),
            "currency": self.config.currency,
            "payment_methods": [wallet_id] if wallet_id is not None else ["wallets"],
            "items": [
                {
                    "name": item.name,
                    "amount": json_amount(parse_amount_from_cents(item.amount_cents)),
                    "description": item.description,
                    "quantity": item.quantity,
                }
                for item in order.items
            ],
            "billing_data": order.billing_data.model_dump(),
            "special_reference": order.merchant_order_id,
            "extras": {"course_id": course_id, "user_id": user_id},
        }
        if self.config.webhook_url:
            payload["notification_url"] = self.config.webhook_url
        headers = {"Authorization": f"Token {self.config.api_key.get_secret_value()}"}
        try:
            response = await self._send("intention creation", self.config.intention_url, payload, headers=headers)
        except httpx.TransportError as e:
            raise IntentionError(f"PayMob intention creation failed: {e}") from e
        if response.status_code in INTENTION_STATUS_MESSAGES:
            logger.error("paymob_intention_rejected", status_code=response.status_code, body=response.text[:500])
            raise IntentionError(
                f"PayMob intention creation failed: {response.status_code} {response.reason_phrase}",
                user_message=INTENTION_STATUS_MESSAGES[response.status_code],
                status_code=response.status_code,
            )
        data = self._json("intention creation", response, IntentionError)
        if not data.get("client_secret"):
            raise IntentionError("PayMob intention response has no client secret")
        logger.info("paymob_intention_created", intention_id=data.get("id"), merchant_order_id=order.merchant_order_id)
        return data

    def build_iframe_url(self, payment_key: str, course_id: Optional[str] = None) -> str:
        url = f"{self.config.base_url}/acceptance/iframes/{self.config.iframe_id}?payment_token={quote(payment_key, safe='')}"
        if self.config.return_url and course_id:
            return_url = self.config.return_url.replace("{courseId}", course_id)
            url += "&" + urlencode({"return_url": return_url})
        return url

    def public_key(self) -> str:
        api_key = self.config.api_key.get_secret_value()
        if api_key.startswith("pk_"):
            return api_key
        if not self.config.public_key:
            raise IntentionError(
                "PAYMOB_PUBLIC_KEY is required for wallet payments",
                user_message=GatewayError.user_message,
            )
        return self.config.public_key

    def build_checkout_url(self, client_secret: str) -> str:
        query = urlencode({"publicKey": self.public_key(), "clientSecret": client_secret})
        return f"{self.config.checkout_url}?{query}"
