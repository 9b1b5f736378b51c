"""PayMob transaction callback reconciliation.

Every callback is written to ``webhook_events`` before anything else
happens, so forged and malformed deliveries leave a trace too. Once the
signature checks out the provider always gets a 2xx, even when local
reconciliation fails; the failure stays on the WebhookEvent for an
operator-driven retry instead of a provider retry storm.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple, Union
from uuid import uuid4

import structlog
from pydantic import ValidationError

from course_payments.amounts import format_amount_to_cents
from course_payments.config import PaymobConfig
from course_payments.enrollment import ensure_enrollment
from course_payments.errors import (
    PaymentNotFoundError,
    ReconciliationError,
    SignatureError,
    WebhookValidationError,
)
from course_payments.messaging import PAYMENT_EXCHANGE, publish_event
from course_payments.models import (
    OPEN_STATUSES,
    Payment,
    PaymentStatus,
    TERMINAL_STATUSES,
    WebhookEvent,
    WebhookEventStatus,
)
from course_payments.schemas import TransactionCallback
from course_payments.signature import verify_signature
from course_payments.store import PaymentStore

logger = structlog.get_logger(__name__)

REQUIRED_FIELDS = (
    "id",
    "amount_cents",
    "success",
    "pending",
    "currency",
    "integration_id",
    "order",
    "created_at",
    "hmac",
)

DEFAULT_FAILURE_REASON = "Payment failed at PayMob gateway"


@dataclass(frozen=True)
class ValidPayload:
    callback: TransactionCallback
    transaction: Dict[str, Any]
    event_type: str


@dataclass(frozen=True)
class InvalidPayload:
    reason: str


@dataclass
class WebhookOutcome:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


def _unwrap(raw: Mapping[str, Any], query_hmac: Optional[str]) -> Tuple[Dict[str, Any], str, Optional[str]]:
    """Return (transaction object, callback type, claimed signature).

    PayMob posts ``{"type": "TRANSACTION", "obj": {...}}`` and passes the
    HMAC as a query parameter; a bare transaction object carrying its own
    ``hmac`` field is accepted as well.
    """
    if isinstance(raw.get("obj"), Mapping):
        transaction = dict(raw["obj"])
        event_type = str(raw.get("type") or "TRANSACTION")
        fallback = raw.get("hmac") or query_hmac
    else:
        transaction = dict(raw)
        event_type = "TRANSACTION"
        fallback = query_hmac
    # the stored signature is always the one that gets verified
    if not transaction.get("hmac") and fallback is not None:
        transaction["hmac"] = fallback
    return transaction, event_type, transaction.get("hmac")


def parse_webhook_payload(raw: Any, query_hmac: Optional[str] = None) -> Union[ValidPayload, InvalidPayload]:
    """Structural validation; nothing downstream touches an unvalidated field."""
    if not isinstance(raw, Mapping):
        return InvalidPayload("payload is not a JSON object")

    transaction, event_type, _ = _unwrap(raw, query_hmac)
    if event_type.upper() != "TRANSACTION":
        return InvalidPayload(f"unsupported callback type {event_type!r}")

    missing = [name for name in REQUIRED_FIELDS if name not in transaction]
    if missing:
        return InvalidPayload(f"missing required field(s): {', '.join(missing)}")

    order = transaction.get("order")
    if not isinstance(order, Mapping) or "id" not in order:
        return InvalidPayload("invalid or missing order object/id")

    try:
        callback = TransactionCallback.model_validate(transaction)
    except ValidationError as e:
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        return InvalidPayload(f"malformed field(s): {problems}")

    return ValidPayload(callback=callback, transaction=transaction, event_type=event_type)


def validate_webhook_payload(raw: Any, query_hmac: Optional[str] = None) -> bool:
    return isinstance(parse_webhook_payload(raw, query_hmac), ValidPayload)


def failure_reason_from(callback: TransactionCallback) -> str:
    message = callback.data.get("message")
    code = callback.data.get("txn_response_code") or callback.txn_response_code
    if message and code:
        return f"{message} (code {code})"
    if message:
        return str(message)
    if code:
        return f"PayMob declined the transaction (code {code})"
    if callback.error_occured:
        return "PayMob reported an error while processing the transaction"
    return DEFAULT_FAILURE_REASON


class WebhookProcessor:
    def __init__(self, config: PaymobConfig, store: PaymentStore):
        self._secret = config.hmac_secret.get_secret_value()
        self.store = store

    async def handle_webhook(self, raw: Any, query_hmac: Optional[str] = None) -> WebhookOutcome:
        event = await self._record(raw, query_hmac)
        log = logger.bind(webhook_event_id=event.id)
        log.info("webhook_received", event_type=event.event_type)

        try:
            callback = await self._authenticate(event, raw, query_hmac)
        except WebhookValidationError as e:
            log.warning("webhook_rejected", reason=str(e))
            return WebhookOutcome(400, {"error": "INVALID_PAYLOAD", "message": str(e), "webhook_event_id": event.id})
        except SignatureError as e:
            log.warning("webhook_signature_invalid", security_event=True, reason=str(e))
            return WebhookOutcome(401, {"error": "INVALID_SIGNATURE", "message": "Invalid webhook signature", "webhook_event_id": event.id})

        _, outcome = await self._reconcile(event, callback)
        return outcome

    async def retry_event(self, event_id: str) -> WebhookOutcome:
        """Operator retry: re-run reconciliation from the stored payload."""
        event = await self.store.get_webhook_event(event_id)
        if event is None:
            return WebhookOutcome(404, {"error": "WEBHOOK_NOT_FOUND", "message": "Webhook event not found"})
        if event.status == WebhookEventStatus.VERIFIED:
            return WebhookOutcome(409, {"error": "WEBHOOK_ALREADY_PROCESSED", "message": "This webhook has already been processed successfully"})
        if event.status == WebhookEventStatus.REJECTED:
            return WebhookOutcome(409, {"error": "WEBHOOK_REJECTED", "message": "Rejected webhooks cannot be retried"})

        logger.info("webhook_retry", webhook_event_id=event.id, attempts=event.processing_attempts)
        try:
            callback = await self._authenticate(event, event.payload, event.signature)
        except (WebhookValidationError, SignatureError) as e:
            return WebhookOutcome(409, {"error": "WEBHOOK_REJECTED", "message": str(e), "webhook_event_id": event.id})

        processed, outcome = await self._reconcile(event, callback)
        if not processed and outcome.ok:
            outcome.status_code = 500
            outcome.body["error"] = "WEBHOOK_PROCESSING_FAILED"
        return outcome

    async def _record(self, raw: Any, query_hmac: Optional[str]) -> WebhookEvent:
        if isinstance(raw, Mapping):
            payload = dict(raw)
            _, event_type, signature = _unwrap(raw, query_hmac)
        else:
            payload = {"_raw": raw if isinstance(raw, (str, int, float, bool, list)) or raw is None else repr(raw)}
            event_type, signature = "UNKNOWN", query_hmac
        now = datetime.utcnow()
        return await self.store.create_webhook_event(WebhookEvent(
            id=str(uuid4()),
            event_type=event_type,
            payload=payload,
            signature=signature if isinstance(signature, str) else None,
            status=WebhookEventStatus.RECEIVED,
            processing_attempts=0,
            created_at=now,
            updated_at=now,
        ))

    async def _authenticate(self, event: WebhookEvent, raw: Any, query_hmac: Optional[str]) -> TransactionCallback:
        parsed = parse_webhook_payload(raw, query_hmac)
        if isinstance(parsed, InvalidPayload):
            await self.store.update_webhook_event(event.id, status=WebhookEventStatus.REJECTED, last_error=parsed.reason)
            raise WebhookValidationError(parsed.reason)

        callback = parsed.callback
        await self.store.update_webhook_event(
            event.id,
            merchant_order_id=callback.order.merchant_order_id,
            provider_transaction_id=str(callback.id),
        )
        if not verify_signature(parsed.transaction, self._secret):
            await self.store.update_webhook_event(event.id, status=WebhookEventStatus.REJECTED, last_error="invalid signature")
            raise SignatureError(f"HMAC mismatch for transaction {callback.id}")
        return callback

    async def _reconcile(self, event: WebhookEvent, callback: TransactionCallback) -> Tuple[bool, WebhookOutcome]:
        attempts = (event.processing_attempts or 0) + 1
        event_id = event.id
        log = logger.bind(
            webhook_event_id=event_id,
            transaction_id=callback.id,
            merchant_order_id=callback.order.merchant_order_id,
        )
        try:
            payment, body = await self._apply(event, callback)
        except PaymentNotFoundError as e:
            await self.store.update_webhook_event(
                event_id,
                status=WebhookEventStatus.FAILED,
                processing_attempts=attempts,
                last_error=f"Payment record not found: {e}",
            )
            log.error("webhook_payment_not_found", provider_order_id=callback.order.id)
            return False, WebhookOutcome(404, {"error": "PAYMENT_NOT_FOUND", "message": "Payment record not found", "webhook_event_id": event_id})
        except Exception as e:
            await self.store.update_webhook_event(
                event_id,
                status=WebhookEventStatus.FAILED,
                processing_attempts=attempts,
                last_error=str(e) or type(e).__name__,
            )
            log.exception("webhook_reconciliation_failed")
            return False, WebhookOutcome(200, {
                "message": "Webhook received but processing failed",
                "processed": False,
                "webhook_event_id": event_id,
                "transaction_id": callback.id,
            })

        await self.store.update_webhook_event(
            event_id,
            status=WebhookEventStatus.VERIFIED,
            processing_attempts=attempts,
            last_error=None,
            payment_id=payment.id,
            processed_at=datetime.utcnow(),
        )
        log.info("webhook_processed", payment_id=payment.id, status=payment.status.value)
        body.update({"processed": True, "webhook_event_id": event_id})
        return True, WebhookOutcome(200, body)

    async def _find_payment(self, callback: TransactionCallback) -> Optional[Payment]:
        merchant_order_id = callback.order.merchant_order_id
        if merchant_order_id:
            return await self.store.get_payment_by_merchant_order_id(merchant_order_id)
        return await self.store.get_payment_by_provider_order_id(str(callback.order.id))

    async def _apply(self, event: WebhookEvent, callback: TransactionCallback) -> Tuple[Payment, Dict[str, Any]]:
        payment = await self._find_payment(callback)
        if payment is None:
            raise PaymentNotFoundError(callback.order.merchant_order_id or f"provider order {callback.order.id}")

        transaction_id = str(callback.id)
        # a pending callback and its final callback share a transaction id,
        # so only a settled payment can make a delivery a duplicate
        duplicate = None
        if payment.status in TERMINAL_STATUSES:
            duplicate = await self.store.find_verified_event(payment.merchant_order_id, transaction_id, exclude_id=event.id)
        if duplicate is not None:
            logger.info("webhook_already_processed", payment_id=payment.id, transaction_id=transaction_id, original_event_id=duplicate.id)
            return payment, {
                "message": "Webhook already processed",
                "payment_id": payment.id,
                "status": payment.status.value,
                "transaction_id": callback.id,
            }

        summary = {
            "webhook_event_id": event.id,
            "transaction_id": callback.id,
            "success": callback.success,
            "pending": callback.pending,
            "error_occured": callback.error_occured,
            "amount_cents": callback.amount_cents,
            "currency": callback.currency,
            "received_at": datetime.utcnow().isoformat(),
        }
        if callback.is_success:
            await self._complete(payment, callback, summary)
        elif callback.is_pending:
            await self._mark_processing(payment, callback, summary)
        else:
            await self._fail(payment, callback, summary)

        payment = await self.store.get_payment(payment.id)
        return payment, {
            "message": "Webhook processed successfully",
            "payment_id": payment.id,
            "status": payment.status.value,
            "transaction_id": callback.id,
        }

    async def _complete(self, payment: Payment, callback: TransactionCallback, summary: Dict[str, Any]):
        expected_cents = format_amount_to_cents(payment.amount)
        if callback.amount_cents != expected_cents or callback.currency.upper() != payment.currency.upper():
            raise ReconciliationError(
                f"amount mismatch for payment {payment.id}: callback {callback.amount_cents} {callback.currency}, "
                f"expected {expected_cents} {payment.currency}"
            )

        transaction_id = str(callback.id)
        won = await self.store.transition_payment(
            payment.id,
            OPEN_STATUSES,
            PaymentStatus.COMPLETED,
            provider_transaction_id=transaction_id,
            completed_at=datetime.utcnow(),
            failure_reason=None,
            provider_response={"webhooks": [summary]},
        )
        current = await self.store.get_payment(payment.id)
        if won:
            logger.info("payment_completed", payment_id=payment.id, merchant_order_id=payment.merchant_order_id, transaction_id=transaction_id)
            await publish_event(PAYMENT_EXCHANGE, "payment.completed", {
                "event_id": str(uuid4()),
                "event_type": "PaymentCompleted",
                "timestamp": datetime.utcnow().isoformat(),
                "payment_id": payment.id,
                "merchant_order_id": payment.merchant_order_id,
                "user_id": payment.user_id,
                "course_id": payment.course_id,
                "amount": str(payment.amount),
                "currency": payment.currency,
                "transaction_id": transaction_id,
            })
        elif current.status != PaymentStatus.COMPLETED:
            raise ReconciliationError(
                f"payment {payment.id} is {current.status.value}; successful transaction {transaction_id} needs manual review"
            )
        elif current.provider_transaction_id and current.provider_transaction_id != transaction_id:
            raise ReconciliationError(
                f"payment {payment.id} already completed by transaction {current.provider_transaction_id}; "
                f"second successful transaction {transaction_id} needs manual review"
            )

        await ensure_enrollment(self.store, current)

    async def _mark_processing(self, payment: Payment, callback: TransactionCallback, summary: Dict[str, Any]):
        moved = await self.store.transition_payment(
            payment.id,
            [PaymentStatus.PENDING],
            PaymentStatus.PROCESSING,
            provider_transaction_id=str(callback.id),
            provider_response={"webhooks": [summary]},
        )
        if moved:
            logger.info("payment_processing", payment_id=payment.id, transaction_id=callback.id)

    async def _fail(self, payment: Payment, callback: TransactionCallback, summary: Dict[str, Any]):
        reason = failure_reason_from(callback)
        won = await self.store.transition_payment(
            payment.id,
            OPEN_STATUSES,
            PaymentStatus.FAILED,
            provider_transaction_id=str(callback.id),
            failure_reason=reason,
            provider_response={"webhooks": [summary]},
        )
        if not won:
            logger.info("payment_already_terminal", payment_id=payment.id, transaction_id=callback.id)
            return
        logger.info("payment_failed", payment_id=payment.id, merchant_order_id=payment.merchant_order_id, reason=reason)
        await publish_event(PAYMENT_EXCHANGE, "payment.failed", {
            "event_id": str(uuid4()),
            "event_type": "PaymentFailed",
            "timestamp": datetime.utcnow().isoformat(),
            "payment_id": payment.id,
            "merchant_order_id": payment.merchant_order_id,
            "user_id": payment.user_id,
            "course_id": payment.course_id,
            "reason": reason,
        })
