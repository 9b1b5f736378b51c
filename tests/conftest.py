from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from course_payments.config import PaymobConfig
from course_payments.models import Payment, PaymentMethod, PaymentStatus
from course_payments.signature import compute_signature
from course_payments.store import InMemoryPaymentStore

HMAC_SECRET = "test-hmac-secret"
MERCHANT_ORDER_ID = "crs-abc-usr-123-1700000000000"
PROVIDER_ORDER_ID = 987654


@pytest.fixture
def config():
    return PaymobConfig(
        api_key="sk_test_key",
        integration_id_card=111,
        integration_id_wallet=222,
        iframe_id="333",
        hmac_secret=HMAC_SECRET,
        public_key="pk_test_abc",
        webhook_url="https://api.academy.example.com/api/payments/webhook",
        return_url="https://academy.example.com/courses/{courseId}/payment-result",
    )


@pytest.fixture
def store():
    return InMemoryPaymentStore()


@pytest.fixture
def mock_publish_event():
    """Both publishers patched with one mock, in call order."""
    mock = AsyncMock()
    with patch("course_payments.webhook.publish_event", new=mock), \
            patch("course_payments.enrollment.publish_event", new=mock):
        yield mock


def _transaction(merchant_order_id=MERCHANT_ORDER_ID, order_id=PROVIDER_ORDER_ID, secret=HMAC_SECRET, sign=True, **overrides):
    transaction = {
        "id": 192837465,
        "pending": False,
        "amount_cents": 49900,
        "success": True,
        "is_auth": False,
        "is_capture": False,
        "is_standalone_payment": True,
        "is_voided": False,
        "is_refunded": False,
        "is_3d_secure": True,
        "integration_id": 111,
        "has_parent_transaction": False,
        "error_occured": False,
        "currency": "EGP",
        "created_at": "2026-10-19T10:15:30.123456",
        "owner": 4455,
        "order": {"id": order_id, "merchant_order_id": merchant_order_id},
        "source_data": {"pan": "2346", "type": "card", "sub_type": "MasterCard"},
        "data": {"message": "Approved", "txn_response_code": "APPROVED"},
    }
    transaction.update(overrides)
    if sign:
        transaction["hmac"] = compute_signature(transaction, secret)
    return transaction


@pytest.fixture
def make_transaction():
    """Factory for a PayMob transaction object, signed with HMAC_SECRET unless sign=False."""
    return _transaction


@pytest.fixture
def make_payment(store):
    async def factory(status=PaymentStatus.PENDING, merchant_order_id=MERCHANT_ORDER_ID, created_at=None, **values):
        now = datetime.utcnow()
        fields = dict(
            id=str(uuid4()),
            user_id="123",
            course_id="abc",
            amount=Decimal("499.00"),
            currency="EGP",
            status=status,
            payment_method=PaymentMethod.CARD,
            merchant_order_id=merchant_order_id,
            provider_order_id=str(PROVIDER_ORDER_ID),
            provider_response={},
            created_at=created_at or now,
            updated_at=now,
        )
        fields.update(values)
        return await store.create_payment(Payment(**fields))

    return factory
