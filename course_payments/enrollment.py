from datetime import datetime
from typing import Optional
from uuid import uuid4

import structlog

from course_payments.errors import DuplicateEnrollmentError
from course_payments.messaging import PAYMENT_EXCHANGE, publish_event
from course_payments.models import Enrollment, Payment
from course_payments.store import PaymentStore

logger = structlog.get_logger(__name__)


async def ensure_enrollment(store: PaymentStore, payment: Payment) -> Optional[Enrollment]:
    """Enroll the payment's buyer in its course.

    Returns the new enrollment, or None when the user was already enrolled;
    ``enrollment.created`` is published only in the first case.
    """
    payment_id, user_id, course_id = payment.id, payment.user_id, payment.course_id
    log = logger.bind(payment_id=payment_id, user_id=user_id, course_id=course_id)

    if await store.get_enrollment(user_id, course_id):
        return None
    try:
        enrollment = await store.create_enrollment(user_id, course_id, payment_id)
    except DuplicateEnrollmentError:
        # a concurrent delivery won the insert
        log.info("enrollment_exists")
        return None

    log.info("enrollment_created", enrollment_id=enrollment.id)
    await publish_event(PAYMENT_EXCHANGE, "enrollment.created", {
        "event_id": str(uuid4()),
        "event_type": "EnrollmentCreated",
        "timestamp": datetime.utcnow().isoformat(),
        "enrollment_id": enrollment.id,
        "payment_id": payment_id,
        "user_id": user_id,
        "course_id": course_id,
    })
    return enrollment
