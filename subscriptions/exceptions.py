"""
Error taxonomy of the subscription engine.

Every error carries a stable machine-readable `kind` and an HTTP status so the
API layer can render it without knowing where it was raised.
"""
import logging

from rest_framework import exceptions as drf_exceptions
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class SubscriptionError(Exception):
    kind = "subscription_error"
    status_code = 400
    default_message = "Subscription request failed."

    def __init__(self, message=None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def as_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind, **self.details}


class ValidationError(SubscriptionError):
    kind = "validation_error"
    status_code = 400
    default_message = "Validation failed."


class NotFoundError(SubscriptionError):
    kind = "not_found"
    status_code = 404
    default_message = "Not found."


class OwnershipError(SubscriptionError):
    kind = "forbidden"
    status_code = 403
    default_message = "This subscription does not belong to you."


class ConflictError(SubscriptionError):
    kind = "conflict"
    status_code = 409
    default_message = "The subscription is not in a state that allows this change."


class PaymentError(SubscriptionError):
    kind = "payment_error"
    status_code = 402
    default_message = "Payment failed."


class PaymentDeclined(PaymentError):
    kind = "payment_declined"
    default_message = "Your payment was declined. Please use a different payment method."


class InstrumentAlreadyUsed(PaymentError):
    kind = "payment_instrument_reused"
    default_message = "This payment method has already been used. Please resubmit your payment details."


class PaymentProcessorError(PaymentError):
    kind = "payment_processor_error"
    status_code = 502
    default_message = "The payment processor could not be reached. Please try again later."


class PaymentPendingVerification(PaymentError):
    """The charge may or may not have gone through; the webhook channel will settle it."""
    kind = "payment_pending_verification"
    status_code = 502
    default_message = (
        "We could not confirm your payment yet. Do not retry; "
        "your subscription will update once the payment is verified."
    )


class PaymentOutcomeUnknown(Exception):
    """Raised by gateways when a charge request timed out or the connection dropped."""

    def __init__(self, message="", reference=""):
        self.reference = reference
        super().__init__(message)


class InternalError(SubscriptionError):
    kind = "internal_error"
    status_code = 500
    default_message = "Something went wrong while saving your subscription. Our team has been notified."


class WebhookVerificationError(SubscriptionError):
    kind = "invalid_webhook"
    status_code = 400
    default_message = "Webhook payload could not be verified."


def api_exception_handler(exc, context):
    """DRF exception handler: render SubscriptionError and re-shape DRF validation errors."""
    if isinstance(exc, SubscriptionError):
        return Response(exc.as_dict(), status=exc.status_code)

    response = exception_handler(exc, context)
    if response is None:
        return None

    if isinstance(exc, drf_exceptions.ValidationError):
        response.data = {
            "error": ValidationError.default_message,
            "kind": ValidationError.kind,
            "errors": response.data,
        }
    elif isinstance(exc, drf_exceptions.APIException):
        detail = response.data.get("detail") if isinstance(response.data, dict) else response.data
        codes = exc.get_codes()
        response.data = {
            "error": str(detail),
            "kind": codes if isinstance(codes, str) else exc.default_code,
        }
    return response
