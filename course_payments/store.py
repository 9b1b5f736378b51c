"""Durable records of payments, enrollments and webhook deliveries.

Both implementations guarantee the two properties reconciliation leans on:
status transitions are conditional and atomic, and an enrollment is unique
per (user, course).
"""
import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from course_payments.errors import DuplicateEnrollmentError, PaymentNotFoundError
from course_payments.models import Enrollment, Payment, PaymentStatus, WebhookEvent, WebhookEventStatus


def _merged(current: Optional[Dict[str, Any]], extra: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    # provider_response is append-only: lists grow, other keys are write-once
    merged = dict(current or {})
    for key, value in (extra or {}).items():
        if isinstance(merged.get(key), list) and isinstance(value, list):
            merged[key] = merged[key] + value
        else:
            merged.setdefault(key, value)
    return merged


class PaymentStore(ABC):
    @abstractmethod
    async def create_payment(self, payment: Payment) -> Payment:
        pass

    @abstractmethod
    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def get_payment_by_merchant_order_id(self, merchant_order_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def get_payment_by_provider_order_id(self, provider_order_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def find_pending_payment(self, user_id: str, course_id: str) -> Optional[Payment]:
        """Most recent PENDING payment of a user for a course."""

    @abstractmethod
    async def update_payment(self, payment_id: str, provider_response: Optional[Dict[str, Any]] = None, **values) -> Payment:
        """Unconditional update; ``provider_response`` is merged, never replaced."""

    @abstractmethod
    async def transition_payment(
        self,
        payment_id: str,
        from_statuses: Iterable[PaymentStatus],
        to_status: PaymentStatus,
        provider_response: Optional[Dict[str, Any]] = None,
        **values,
    ) -> bool:
        """Move to ``to_status`` only if the current status is in ``from_statuses``.

        Returns False, changing nothing, when another writer got there first.
        """

    @abstractmethod
    async def get_enrollment(self, user_id: str, course_id: str) -> Optional[Enrollment]:
        pass

    @abstractmethod
    async def create_enrollment(self, user_id: str, course_id: str, payment_id: Optional[str] = None) -> Enrollment:
        """Raises DuplicateEnrollmentError when the pair is already enrolled."""

    @abstractmethod
    async def create_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        pass

    @abstractmethod
    async def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        pass

    @abstractmethod
    async def update_webhook_event(self, event_id: str, **values) -> WebhookEvent:
        pass

    @abstractmethod
    async def find_verified_event(self, merchant_order_id: str, transaction_id: str, exclude_id: Optional[str] = None) -> Optional[WebhookEvent]:
        pass

    @abstractmethod
    async def list_webhook_events(self, status: Optional[WebhookEventStatus] = None, limit: int = 100) -> List[WebhookEvent]:
        pass


class SqlAlchemyPaymentStore(PaymentStore):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_payment(self, payment: Payment) -> Payment:
        self.session.add(payment)
        await self.session.commit()
        await self.session.refresh(payment)
        return payment

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        # another worker may have moved the row since it was loaded into this session
        return await self.session.get(Payment, payment_id, populate_existing=True)

    async def get_payment_by_merchant_order_id(self, merchant_order_id: str) -> Optional[Payment]:
        result = await self.session.execute(select(Payment).where(Payment.merchant_order_id == merchant_order_id))
        return result.scalar_one_or_none()

    async def get_payment_by_provider_order_id(self, provider_order_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment).where(Payment.provider_order_id == provider_order_id).limit(1)
        )
        return result.scalar_one_or_none()

    async def find_pending_payment(self, user_id: str, course_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment)
            .where(
                Payment.user_id == user_id,
                Payment.course_id == course_id,
                Payment.status == PaymentStatus.PENDING,
            )
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def update_payment(self, payment_id: str, provider_response: Optional[Dict[str, Any]] = None, **values) -> Payment:
        payment = await self.session.get(Payment, payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        for key, value in values.items():
            setattr(payment, key, value)
        if provider_response:
            payment.provider_response = _merged(payment.provider_response, provider_response)
        payment.updated_at = datetime.utcnow()
        await self.session.commit()
        await self.session.refresh(payment)
        return payment

    async def transition_payment(
        self,
        payment_id: str,
        from_statuses: Iterable[PaymentStatus],
        to_status: PaymentStatus,
        provider_response: Optional[Dict[str, Any]] = None,
        **values,
    ) -> bool:
        result = await self.session.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status.in_(list(from_statuses)))
            .values(status=to_status, updated_at=datetime.utcnow(), **values)
        )
        # no rollback: callers keep using objects loaded in this session
        await self.session.commit()
        if result.rowcount != 1:
            return False
        if provider_response:
            await self.update_payment(payment_id, provider_response=provider_response)
        return True

    async def get_enrollment(self, user_id: str, course_id: str) -> Optional[Enrollment]:
        result = await self.session.execute(
            select(Enrollment).where(Enrollment.user_id == user_id, Enrollment.course_id == course_id)
        )
        return result.scalar_one_or_none()

    async def create_enrollment(self, user_id: str, course_id: str, payment_id: Optional[str] = None) -> Enrollment:
        enrollment = Enrollment(
            id=str(uuid.uuid4()),
            user_id=user_id,
            course_id=course_id,
            payment_id=payment_id,
            enrolled_at=datetime.utcnow(),
        )
        # only the savepoint is rolled back on a duplicate, the caller's objects are untouched
        try:
            async with self.session.begin_nested():
                self.session.add(enrollment)
        except IntegrityError as e:
            raise DuplicateEnrollmentError(f"user {user_id} is already enrolled in course {course_id}") from e
        await self.session.commit()
        return enrollment

    async def create_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        self.session.add(event)
        await self.session.commit()
        return event

    async def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        return await self.session.get(WebhookEvent, event_id)

    async def update_webhook_event(self, event_id: str, **values) -> WebhookEvent:
        event = await self.session.get(WebhookEvent, event_id)
        if event is None:
            raise LookupError(f"webhook event {event_id} not found")
        for key, value in values.items():
            setattr(event, key, value)
        event.updated_at = datetime.utcnow()
        await self.session.commit()
        return event

    async def find_verified_event(self, merchant_order_id: str, transaction_id: str, exclude_id: Optional[str] = None) -> Optional[WebhookEvent]:
        query = select(WebhookEvent).where(
            WebhookEvent.merchant_order_id == merchant_order_id,
            WebhookEvent.provider_transaction_id == transaction_id,
            WebhookEvent.status == WebhookEventStatus.VERIFIED,
        )
        if exclude_id:
            query = query.where(WebhookEvent.id != exclude_id)
        result = await self.session.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def list_webhook_events(self, status: Optional[WebhookEventStatus] = None, limit: int = 100) -> List[WebhookEvent]:
        query = select(WebhookEvent)
        if status:
            query = query.where(WebhookEvent.status == status)
        result = await self.session.execute(query.order_by(WebhookEvent.created_at.desc()).limit(limit))
        return list(result.scalars().all())


class InMemoryPaymentStore(PaymentStore):
    """Process-local store, for tests and single-process development.

    One asyncio lock serializes every write, which makes the conditional
    transition and the enrollment uniqueness check atomic.
    """

    def __init__(self):
        self.payments: Dict[str, Payment] = {}
        self.enrollments: Dict[tuple, Enrollment] = {}
        self.webhook_events: Dict[str, WebhookEvent] = {}
        self._lock = asyncio.Lock()

    async def create_payment(self, payment: Payment) -> Payment:
        async with self._lock:
            if any(p.merchant_order_id == payment.merchant_order_id for p in self.payments.values()):
                raise ValueError(f"duplicate merchant_order_id {payment.merchant_order_id}")
            self.payments[payment.id] = payment
            return payment

    async def get_payment(self, payment_id: str) -> Optional[Payment]:
        return self.payments.get(payment_id)

    async def get_payment_by_merchant_order_id(self, merchant_order_id: str) -> Optional[Payment]:
        return next((p for p in self.payments.values() if p.merchant_order_id == merchant_order_id), None)

    async def get_payment_by_provider_order_id(self, provider_order_id: str) -> Optional[Payment]:
        return next((p for p in self.payments.values() if p.provider_order_id == provider_order_id), None)

    async def find_pending_payment(self, user_id: str, course_id: str) -> Optional[Payment]:
        pending = [
            p for p in self.payments.values()
            if p.user_id == user_id and p.course_id == course_id and p.status == PaymentStatus.PENDING
        ]
        return max(pending, key=lambda p: p.created_at, default=None)

    def _apply(self, payment: Payment, provider_response: Optional[Dict[str, Any]], values: Dict[str, Any]):
        for key, value in values.items():
            setattr(payment, key, value)
        if provider_response:
            payment.provider_response = _merged(payment.provider_response, provider_response)
        payment.updated_at = datetime.utcnow()

    async def update_payment(self, payment_id: str, provider_response: Optional[Dict[str, Any]] = None, **values) -> Payment:
        async with self._lock:
            payment = self.payments.get(payment_id)
            if payment is None:
                raise PaymentNotFoundError(payment_id)
            self._apply(payment, provider_response, values)
            return payment

    async def transition_payment(
        self,
        payment_id: str,
        from_statuses: Iterable[PaymentStatus],
        to_status: PaymentStatus,
        provider_response: Optional[Dict[str, Any]] = None,
        **values,
    ) -> bool:
        async with self._lock:
            payment = self.payments.get(payment_id)
            if payment is None or payment.status not in tuple(from_statuses):
                return False
            self._apply(payment, provider_response, dict(values, status=to_status))
            return True

    async def get_enrollment(self, user_id: str, course_id: str) -> Optional[Enrollment]:
        return self.enrollments.get((user_id, course_id))

    async def create_enrollment(self, user_id: str, course_id: str, payment_id: Optional[str] = None) -> Enrollment:
        async with self._lock:
            if (user_id, course_id) in self.enrollments:
                raise DuplicateEnrollmentError(f"user {user_id} is already enrolled in course {course_id}")
            enrollment = Enrollment(
                id=str(uuid.uuid4()),
                user_id=user_id,
                course_id=course_id,
                payment_id=payment_id,
                enrolled_at=datetime.utcnow(),
            )
            self.enrollments[(user_id, course_id)] = enrollment
            return enrollment

    async def create_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        async with self._lock:
            self.webhook_events[event.id] = event
            return event

    async def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        return self.webhook_events.get(event_id)

    async def update_webhook_event(self, event_id: str, **values) -> WebhookEvent:
        async with self._lock:
            event = self.webhook_events.get(event_id)
            if event is None:
                raise LookupError(f"webhook event {event_id} not found")
            for key, value in values.items():
                setattr(event, key, value)
            event.updated_at = datetime.utcnow()
            return event

    async def find_verified_event(self, merchant_order_id: str, transaction_id: str, exclude_id: Optional[str] = None) -> Optional[WebhookEvent]:
        return next(
            (
                e for e in self.webhook_events.values()
                if e.id != exclude_id
                and e.merchant_order_id == merchant_order_id
                and e.provider_transaction_id == transaction_id
                and e.status == WebhookEventStatus.VERIFIED
            ),
            None,
        )

    async def list_webhook_events(self, status: Optional[WebhookEventStatus] = None, limit: int = 100) -> List[WebhookEvent]:
        events = [e for e in self.webhook_events.values() if status is None or e.status == status]
        events.sort(key=lambda e: e.created_at, reverse=True)
        return events[:limit]
