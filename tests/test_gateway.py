import json
import re
from unittest.mock import patch

import httpx
import pytest
from pydantic import SecretStr

from course_payments.errors import (
    AuthError,
    GatewayTimeoutError,
    IntentionError,
    OrderCreationError,
    PaymentKeyError,
)
from course_payments.gateway import PaymobClient, build_billing_data, generate_merchant_order_id
from course_payments.models import PaymentMethod
from course_payments.schemas import OrderItem, OrderRequest


def make_client(config, handler):
    return PaymobClient(config, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def make_order(amount_cents=49900):
    return OrderRequest(
        amount_cents=amount_cents,
        currency="EGP",
        merchant_order_id="crs-abc-usr-123-1700000000000-deadbeef",
        items=[OrderItem(name="Python 101", amount_cents=amount_cents, description="Intro course")],
        billing_data=build_billing_data("Sara Ahmed", "sara@example.com", "+201234567890"),
    )


def test_merchant_order_id_format():
    merchant_order_id = generate_merchant_order_id("abc", "123")
    assert re.fullmatch(r"crs-abc-usr-123-\d{13}-[0-9a-f]{8}", merchant_order_id)


def test_merchant_order_ids_differ_within_the_same_millisecond():
    with patch("course_payments.gateway.time.time", return_value=1700000000.0):
        first = generate_merchant_order_id("abc", "123")
        second = generate_merchant_order_id("abc", "123")
    assert first != second
    assert first.startswith("crs-abc-usr-123-1700000000000-")


def test_build_billing_data_fills_placeholders():
    billing = build_billing_data("Sara")
    assert billing.first_name == "Sara"
    assert billing.last_name == "غير محدد"
    assert billing.email == "noemail@example.com"
    assert billing.phone_number
    assert billing.country == "EG"


@pytest.mark.asyncio
async def test_authenticate_returns_token(config):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(201, json={"token": "auth-token"})

    async with make_client(config, handler) as client:
        token = await client.authenticate()

    assert token == "auth-token"
    assert str(requests[0].url) == "https://accept.paymob.com/api/auth/tokens"
    assert json.loads(requests[0].content) == {"api_key": "sk_test_key"}


@pytest.mark.asyncio
async def test_authenticate_rejected(config):
    client = make_client(config, lambda request: httpx.Response(401, json={"detail": "bad key"}))

    with pytest.raises(AuthError) as exc_info:
        await client.authenticate()

    assert exc_info.value.status_code == 401
    assert exc_info.value.user_message == AuthError.user_message


@pytest.mark.asyncio
async def test_authenticate_without_token(config):
    client = make_client(config, lambda request: httpx.Response(200, json={}))

    with pytest.raises(AuthError):
        await client.authenticate()


@pytest.mark.asyncio
async def test_authenticate_retries_connection_errors(config):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(201, json={"token": "auth-token"})

    client = make_client(config, handler)

    assert await client.authenticate() == "auth-token"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_authenticate_gives_up_after_three_attempts(config):
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(config, handler)

    with pytest.raises(AuthError):
        await client.authenticate()
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_create_order_payload(config):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(201, json={"id": 987654, "merchant_order_id": "crs-abc"})

    client = make_client(config, handler)
    order = await client.create_order("auth-token", make_order())

    assert order["id"] == 987654
    body = json.loads(requests[0].content)
    assert requests[0].url.path == "/api/ecommerce/orders"
    assert body["auth_token"] == "auth-token"
    assert body["delivery_needed"] is False
    assert body["amount_cents"] == 49900
    assert body["currency"] == "EGP"
    assert body["merchant_order_id"] == "crs-abc-usr-123-1700000000000-deadbeef"
    assert body["items"][0]["amount_cents"] == 49900


@pytest.mark.asyncio
async def test_create_order_without_id(config):
    client = make_client(config, lambda request: httpx.Response(201, json={"status": "ok"}))

    with pytest.raises(OrderCreationError):
        await client.create_order("auth-token", make_order())


@pytest.mark.asyncio
async def test_create_order_non_json_body(config):
    client = make_client(config, lambda request: httpx.Response(200, text="<html>maintenance</html>"))

    with pytest.raises(OrderCreationError, match="non-JSON"):
        await client.create_order("auth-token", make_order())


@pytest.mark.asyncio
async def test_timeout_becomes_gateway_timeout(config):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = make_client(config, handler)

    with pytest.raises(GatewayTimeoutError) as exc_info:
        await client.create_order("auth-token", make_order())

    assert isinstance(exc_info.value, TimeoutError)


@pytest.mark.asyncio
async def test_get_payment_key_payload(config):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(201, json={"token": "payment-key"})

    client = make_client(config, handler)
    billing = build_billing_data("Sara Ahmed", "sara@example.com")
    token = await client.get_payment_key("auth-token", 987654, 49900, billing, PaymentMethod.CARD)

    assert token == "payment-key"
    body = json.loads(requests[0].content)
    assert requests[0].url.path == "/api/acceptance/payment_keys"
    assert body["integration_id"] == 111
    assert body["order_id"] == 987654
    assert body["amount_cents"] == 49900
    assert body["expiration"] == 3600
    assert body["lock_order_when_paid"] is True
    assert body["billing_data"]["first_name"] == "Sara"


@pytest.mark.asyncio
async def test_get_payment_key_uses_wallet_integration(config):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(201, json={"token": "payment-key"})

    client = make_client(config, handler)
    await client.get_payment_key("auth-token", 987654, 49900, build_billing_data("Sara"), PaymentMethod.WALLET)

    assert json.loads(requests[0].content)["integration_id"] == 222


@pytest.mark.asyncio
async def test_get_payment_key_without_integration(config):
    config = config.model_copy(update={"integration_id_wallet": None})
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(201, json={"token": "payment-key"})

    client = make_client(config, handler)

    with pytest.raises(PaymentKeyError):
        await client.get_payment_key("auth-token", 987654, 49900, build_billing_data("Sara"), PaymentMethod.WALLET)
    assert calls == []


@pytest.mark.asyncio
async def test_create_payment_intention_uses_major_units(config):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(201, json={"id": "pi_1", "intention_order_id": 555, "client_secret": "cs_123"})

    client = make_client(config, handler)
    intention = await client.create_payment_intention(make_order(1999), "abc", "123")

    assert intention["client_secret"] == "cs_123"
    request = requests[0]
    body = json.loads(request.content)
    assert str(request.url) == "https://accept.paymob.com/v1/intention/"
    assert request.headers["Authorization"] == "Token sk_test_key"
    assert body["amount"] == 19.99
    assert body["items"][0]["amount"] == 19.99
    assert body["payment_methods"] == [222]
    assert body["special_reference"] == "crs-abc-usr-123-1700000000000-deadbeef"
    assert body["extras"] == {"course_id": "abc", "user_id": "123"}
    assert body["notification_url"] == config.webhook_url


@pytest.mark.asyncio
async def test_create_payment_intention_integral_amount(config):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(201, json={"id": "pi_1", "client_secret": "cs_123"})

    client = make_client(config, handler)
    await client.create_payment_intention(make_order(49900), "abc", "123")

    assert json.loads(requests[0].content)["amount"] == 499


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, user_message", [
    (400, "بيانات الطلب غير صحيحة"),
    (401, "مفتاح API غير صحيح أو منتهي الصلاحية"),
    (404, "خدمة المحفظة الإلكترونية غير متاحة حالياً"),
])
async def test_create_payment_intention_rejected(config, status_code, user_message):
    client = make_client(config, lambda request: httpx.Response(status_code, json={"detail": "nope"}))

    with pytest.raises(IntentionError) as exc_info:
        await client.create_payment_intention(make_order(), "abc", "123")

    assert exc_info.value.status_code == status_code
    assert exc_info.value.user_message == user_message


@pytest.mark.asyncio
async def test_create_payment_intention_without_client_secret(config):
    client = make_client(config, lambda request: httpx.Response(201, json={"id": "pi_1"}))

    with pytest.raises(IntentionError, match="client secret"):
        await client.create_payment_intention(make_order(), "abc", "123")


def test_build_iframe_url(config):
    client = PaymobClient(config, http_client=httpx.AsyncClient())

    url = client.build_iframe_url("payment-key", "abc")

    assert url == (
        "https://accept.paymob.com/api/acceptance/iframes/333?payment_token=payment-key"
        "&return_url=https%3A%2F%2Facademy.example.com%2Fcourses%2Fabc%2Fpayment-result"
    )


def test_build_iframe_url_without_return_url(config):
    client = PaymobClient(config.model_copy(update={"return_url": None}), http_client=httpx.AsyncClient())

    assert client.build_iframe_url("payment-key", "abc") == (
        "https://accept.paymob.com/api/acceptance/iframes/333?payment_token=payment-key"
    )


def test_build_checkout_url(config):
    client = PaymobClient(config, http_client=httpx.AsyncClient())

    assert client.build_checkout_url("cs_123") == (
        "https://accept.paymob.com/unifiedcheckout/?publicKey=pk_test_abc&clientSecret=cs_123"
    )


def test_public_key_falls_back_to_api_key(config):
    client = PaymobClient(
        config.model_copy(update={"api_key": SecretStr("pk_live_key"), "public_key": None}),
        http_client=httpx.AsyncClient(),
    )

    assert client.public_key() == "pk_live_key"


def test_public_key_missing(config):
    client = PaymobClient(config.model_copy(update={"public_key": None}), http_client=httpx.AsyncClient())

    with pytest.raises(IntentionError):
        client.public_key()
