from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from decimal import Decimal
from datetime import datetime
from course_payments.models import PaymentMethod, PaymentStatus, WebhookEventStatus

# Spellings the web client historically sent for each mode
MODE_ALIASES = {
    "card": PaymentMethod.CARD,
    "credit-card": PaymentMethod.CARD,
    "wallet": PaymentMethod.WALLET,
    "e-wallet": PaymentMethod.WALLET,
}


def normalize_mode(value: Any) -> PaymentMethod:
    if isinstance(value, PaymentMethod):
        return value
    try:
        return MODE_ALIASES[str(value).lower()]
    except KeyError:
        raise ValueError(f"unsupported payment method: {value!r}")


class BillingData(BaseModel):
    first_name: str
    last_name: str
    email: str
    phone_number: str
    country: str = "EG"
    state: str = "Cairo"
    city: str = "Cairo"
    street: str = "N/A"
    building: str = "N/A"
    floor: str = "N/A"
    apartment: str = "N/A"


class OrderItem(BaseModel):
    name: str
    amount_cents: int = Field(..., ge=0)
    description: str = ""
    quantity: int = Field(1, gt=0)


class OrderRequest(BaseModel):
    """Order as registered with PayMob, amounts in minor units."""

    amount_cents: int = Field(..., gt=0)
    currency: str
    merchant_order_id: str = Field(..., min_length=1)
    items: List[OrderItem]
    billing_data: BillingData


class Checkout(BaseModel):
    user_id: str = Field(..., min_length=1, examples=["123"])
    course_title: str = Field(..., min_length=1)
    course_description: str = ""
    amount: Decimal = Field(..., gt=0, examples=["499.00"])
    currency: str = Field("EGP", min_length=3, max_length=3)
    customer_name: str = Field(..., min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None


class PaymentInitiateRequest(Checkout):
    course_id: str = Field(..., min_length=1, examples=["abc"])
    payment_method: PaymentMethod = PaymentMethod.CARD

    @field_validator("payment_method", mode="before")
    @classmethod
    def parse_mode(cls, v: Any) -> PaymentMethod:
        return normalize_mode(v)


class CardPaymentHandle(BaseModel):
    mode: Literal["card"] = "card"
    payment_id: str
    merchant_order_id: str
    provider_order_id: str
    payment_key: str
    iframe_url: str


class WalletPaymentHandle(BaseModel):
    mode: Literal["wallet"] = "wallet"
    payment_id: str
    merchant_order_id: str
    provider_order_id: Optional[str] = None
    client_secret: str
    checkout_url: str


PaymentHandle = Annotated[Union[CardPaymentHandle, WalletPaymentHandle], Field(discriminator="mode")]


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    course_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    payment_method: PaymentMethod
    merchant_order_id: str
    provider_order_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class WebhookEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event_type: str
    status: WebhookEventStatus
    processing_attempts: int
    last_error: Optional[str] = None
    payment_id: Optional[str] = None
    merchant_order_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime


class StatusOverride(BaseModel):
    status: PaymentStatus
    reason: str = Field(..., min_length=1)


class CallbackOrder(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    merchant_order_id: Optional[str] = None


class TransactionCallback(BaseModel):
    """A PayMob transaction callback that passed structural validation."""

    model_config = ConfigDict(extra="allow")

    id: int
    amount_cents: int
    success: bool
    pending: bool
    currency: str
    integration_id: int
    order: CallbackOrder
    created_at: str
    hmac: str
    error_occured: bool = False
    is_refunded: bool = False
    is_voided: bool = False
    txn_response_code: Optional[Union[str, int]] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    source_data: Optional[Dict[str, Any]] = None

    @field_validator("data", mode="before")
    @classmethod
    def none_is_empty(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def is_success(self) -> bool:
        return self.success and not self.error_occured and not self.pending

    @property
    def is_pending(self) -> bool:
        return self.pending and not self.error_occured
