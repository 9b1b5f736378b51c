from sqlalchemy import Column, String, Numeric, DateTime, Enum, Integer, Text, JSON, UniqueConstraint
from sqlalchemy.orm import declarative_base
from datetime import datetime
import enum

Base = declarative_base()


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# statuses a webhook may still move a payment out of
OPEN_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)
TERMINAL_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED)


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    WALLET = "wallet"


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "RECEIVED"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    course_id = Column(String, index=True, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)
    payment_method = Column(Enum(PaymentMethod), default=PaymentMethod.CARD, nullable=False)
    merchant_order_id = Column(String, unique=True, index=True, nullable=False)
    provider_order_id = Column(String, index=True, nullable=True)
    provider_transaction_id = Column(String, nullable=True)
    provider_response = Column(JSON, nullable=False, default=dict)
    failure_reason = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True, index=True)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    signature = Column(String, nullable=True)
    status = Column(Enum(WebhookEventStatus), default=WebhookEventStatus.RECEIVED, nullable=False)
    processing_attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    payment_id = Column(String, index=True, nullable=True)
    merchant_order_id = Column(String, index=True, nullable=True)
    provider_transaction_id = Column(String, index=True, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("user_id", "course_id", name="uq_enrollments_user_course"),)

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    course_id = Column(String, index=True, nullable=False)
    payment_id = Column(String, nullable=True)
    enrolled_at = Column(DateTime, default=datetime.utcnow, nullable=False)
