"""Payment initiation.

One façade for both payment modes. The local Payment row is written in
PENDING before the first provider call, so every attempt leaves a record
that can be reconciled even if the process dies mid-flow.
"""
from datetime import datetime
from decimal import Decimal
from typing import Union
from uuid import uuid4

import structlog

from course_payments.amounts import format_amount_to_cents
from course_payments.config import PaymobConfig
from course_payments.enrollment import ensure_enrollment
from course_payments.errors import (
    AlreadyEnrolledError,
    InvalidTransitionError,
    PaymentNotFoundError,
    PendingPaymentExistsError,
)
from course_payments.gateway import PaymobClient, build_billing_data, generate_merchant_order_id
from course_payments.models import Payment, PaymentMethod, PaymentStatus
from course_payments.schemas import (
    CardPaymentHandle,
    Checkout,
    OrderItem,
    OrderRequest,
    WalletPaymentHandle,
    normalize_mode,
)
from course_payments.store import PaymentStore

logger = structlog.get_logger(__name__)


class PaymentOrchestrator:
    def __init__(self, config: PaymobConfig, store: PaymentStore, client: PaymobClient):
        self.config = config
        self.store = store
        self.client = client

    async def initiate_payment(
        self,
        checkout: Checkout,
        course_id: str,
        mode: Union[PaymentMethod, str] = PaymentMethod.CARD,
    ) -> Union[CardPaymentHandle, WalletPaymentHandle]:
        mode = normalize_mode(mode)
        await self._check_can_purchase(checkout.user_id, course_id)

        merchant_order_id = generate_merchant_order_id(course_id, checkout.user_id)
        amount_cents = format_amount_to_cents(checkout.amount)
        now = datetime.utcnow()
        payment = await self.store.create_payment(Payment(
            id=str(uuid4()),
            user_id=checkout.user_id,
            course_id=course_id,
            amount=checkout.amount.quantize(Decimal("0.01")),
            currency=checkout.currency,
            status=PaymentStatus.PENDING,
            payment_method=mode,
            merchant_order_id=merchant_order_id,
            provider_response={},
            created_at=now,
            updated_at=now,
        ))
        log = logger.bind(payment_id=payment.id, merchant_order_id=merchant_order_id, mode=mode.value)
        log.info("payment_initiated", user_id=checkout.user_id, course_id=course_id, amount_cents=amount_cents)

        order = OrderRequest(
            amount_cents=amount_cents,
            currency=checkout.currency,
            merchant_order_id=merchant_order_id,
            items=[OrderItem(
                name=checkout.course_title,
                amount_cents=amount_cents,
                description=checkout.course_description or f"دورة {checkout.course_title}",
                quantity=1,
            )],
            billing_data=build_billing_data(checkout.customer_name, checkout.email, checkout.phone),
        )

        try:
            if mode == PaymentMethod.WALLET:
                handle = await self._start_wallet_payment(payment, order, course_id)
            else:
                handle = await self._start_card_payment(payment, order, course_id)
        except Exception as e:
            log.error("payment_initiation_failed", error=str(e), error_type=type(e).__name__)
            await self._mark_failed(payment, e)
            raise

        log.info("payment_handle_issued", provider_order_id=handle.provider_order_id)
        return handle

    async def _start_card_payment(self, payment: Payment, order: OrderRequest, course_id: str) -> CardPaymentHandle:
        auth_token = await self.client.authenticate()
        remote_order = await self.client.create_order(auth_token, order)
        provider_order_id = str(remote_order["id"])
        # record the provider id as soon as we have it, so callbacks can fall back on it
        await self.store.update_payment(
            payment.id,
            provider_order_id=provider_order_id,
            provider_response={"order": remote_order},
        )
        payment_key = await self.client.get_payment_key(
            auth_token, remote_order["id"], order.amount_cents, order.billing_data, PaymentMethod.CARD
        )
        iframe_url = self.client.build_iframe_url(payment_key, course_id)
        await self.store.update_payment(
            payment.id,
            provider_response={"iframe_url": iframe_url, "initiated_at": datetime.utcnow().isoformat()},
        )
        return CardPaymentHandle(
            payment_id=payment.id,
            merchant_order_id=payment.merchant_order_id,
            provider_order_id=provider_order_id,
            payment_key=payment_key,
            iframe_url=iframe_url,
        )

    async def _start_wallet_payment(self, payment: Payment, order: OrderRequest, course_id: str) -> WalletPaymentHandle:
        # fail before talking to the provider if the checkout url can't be built
        self.client.public_key()
        intention = await self.client.create_payment_intention(order, course_id, payment.user_id)
        checkout_url = self.client.build_checkout_url(intention["client_secret"])
        provider_order_id = intention.get("intention_order_id") or intention.get("id")
        await self.store.update_payment(
            payment.id,
            provider_order_id=str(provider_order_id) if provider_order_id is not None else None,
            provider_response={
                "intention": intention,
                "checkout_url": checkout_url,
                "initiated_at": datetime.utcnow().isoformat(),
            },
        )
        return WalletPaymentHandle(
            payment_id=payment.id,
            merchant_order_id=payment.merchant_order_id,
            provider_order_id=str(provider_order_id) if provider_order_id is not None else None,
            client_secret=intention["client_secret"],
            checkout_url=checkout_url,
        )

    async def _check_can_purchase(self, user_id: str, course_id: str):
        if await self.store.get_enrollment(user_id, course_id):
            raise AlreadyEnrolledError(f"user {user_id} is already enrolled in course {course_id}")

        pending = await self.store.find_pending_payment(user_id, course_id)
        if pending is None:
            return
        timeout = self.config.payment_timeout_minutes * 60
        age = (datetime.utcnow() - pending.created_at).total_seconds()
        if age < timeout:
            raise PendingPaymentExistsError(pending.id, int(timeout - age))

        cancelled = await self.store.transition_payment(
            pending.id,
            [PaymentStatus.PENDING],
            PaymentStatus.CANCELLED,
            failure_reason=f"Payment abandoned - exceeded {self.config.payment_timeout_minutes} minute limit",
        )
        if cancelled:
            logger.info("abandoned_payment_cancelled", payment_id=pending.id, merchant_order_id=pending.merchant_order_id)

    async def _mark_failed(self, payment: Payment, error: Exception):
        try:
            await self.store.transition_payment(
                payment.id,
                [PaymentStatus.PENDING],
                PaymentStatus.FAILED,
                failure_reason=str(error) or type(error).__name__,
            )
        except Exception:
            # the caller still gets the original error; the row stays PENDING for the sweep
            logger.exception("payment_mark_failed_error", payment_id=payment.id)

    async def cancel_payment(self, payment_id: str, reason: str = "Cancelled by user") -> Payment:
        payment = await self.store.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        if not await self.store.transition_payment(
            payment_id, [PaymentStatus.PENDING], PaymentStatus.CANCELLED, failure_reason=reason
        ):
            current = await self.store.get_payment(payment_id)
            raise InvalidTransitionError(f"payment {payment_id} is {current.status.value} and cannot be cancelled")
        logger.info("payment_cancelled", payment_id=payment_id, merchant_order_id=payment.merchant_order_id)
        return await self.store.get_payment(payment_id)

    async def override_status(self, payment_id: str, status: PaymentStatus, reason: str, actor: str = "admin") -> Payment:
        """Out-of-band admin override; the only way to leave a terminal status."""
        payment = await self.store.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        previous = payment.status
        values = {"status": status}
        if status == PaymentStatus.COMPLETED:
            values["completed_at"] = payment.completed_at or datetime.utcnow()
        elif status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            values["failure_reason"] = reason
        payment = await self.store.update_payment(
            payment_id,
            provider_response={"admin_overrides": [{
                "from": previous.value,
                "to": status.value,
                "reason": reason,
                "actor": actor,
                "at": datetime.utcnow().isoformat(),
            }]},
            **values,
        )
        logger.warning("payment_status_overridden", payment_id=payment_id, previous=previous.value, status=status.value, actor=actor)
        if status == PaymentStatus.COMPLETED:
            await ensure_enrollment(self.store, payment)
        return payment
