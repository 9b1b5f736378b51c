"""Error taxonomy for the payment flow.

Gateway errors surface to end users, so each carries a localized
``user_message`` next to the technical message used for logs and for
``Payment.failure_reason``.
"""
from typing import Optional


class PaymentError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(PaymentError):
    pass


class GatewayError(PaymentError):
    user_message = "حدث خطأ غير متوقع في نظام الدفع"

    def __init__(self, message: str, user_message: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        if user_message:
            self.user_message = user_message
        self.status_code = status_code


class AuthError(GatewayError):
    user_message = "فشل في الاتصال بنظام الدفع"


class OrderCreationError(GatewayError):
    user_message = "فشل في إنشاء طلب الدفع"


class PaymentKeyError(GatewayError):
    user_message = "فشل في إنشاء مفتاح الدفع"


class IntentionError(GatewayError):
    user_message = "فشل في إنشاء طلب الدفع للمحفظة الإلكترونية"


class GatewayTimeoutError(GatewayError, TimeoutError):
    user_message = "انتهت مهلة الاتصال بنظام الدفع. يرجى المحاولة مرة أخرى."


class WebhookValidationError(PaymentError):
    pass


class SignatureError(PaymentError):
    pass


class ReconciliationError(PaymentError):
    pass


class PaymentNotFoundError(PaymentError):
    pass


class InvalidTransitionError(PaymentError):
    pass


class DuplicateEnrollmentError(PaymentError):
    pass


class AlreadyEnrolledError(PaymentError):
    user_message = "أنت مسجل في هذه الدورة بالفعل"


class PendingPaymentExistsError(PaymentError):
    def __init__(self, payment_id: str, remaining_seconds: int):
        minutes, seconds = divmod(max(remaining_seconds, 0), 60)
        super().__init__(f"payment {payment_id} is still pending ({remaining_seconds}s remaining)")
        self.payment_id = payment_id
        self.remaining_seconds = remaining_seconds
        self.user_message = (
            "لديك عملية دفع معلقة لهذه الدورة بالفعل. "
            f"الوقت المتبقي: {minutes} دقيقة و {seconds} ثانية"
        )


def format_gateway_error(error: BaseException) -> str:
    """Return the message an end user should see for ``error``."""
    user_message = getattr(error, "user_message", None)
    if user_message:
        return user_message
    text = str(error).lower()
    if "timeout" in text:
        return GatewayTimeoutError.user_message
    if "network" in text or "connection" in text:
        return "مشكلة في الاتصال. تأكد من اتصالك بالإنترنت."
    return GatewayError.user_message
