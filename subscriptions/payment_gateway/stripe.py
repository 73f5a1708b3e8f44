import json
import logging

import stripe

from subscriptions.exceptions import (
    PaymentOutcomeUnknown,
    PaymentProcessorError,
    WebhookVerificationError,
)
from .base import ChargeResult, DeclineCode, EventKind, WebhookEvent, to_minor_units

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"

# Stripe reports a consumed or already-confirmed payment method with these codes
REUSED_INSTRUMENT_CODES = {
    "payment_method_unexpected_state",
    "payment_intent_unexpected_state",
    "payment_method_not_available",
}

EVENT_KIND_MAP = {
    "payment_intent.succeeded": EventKind.CHARGE_SUCCEEDED,
    "payment_intent.payment_failed": EventKind.CHARGE_FAILED,
    "invoice.paid": EventKind.CHARGE_SUCCEEDED,
    "invoice.payment_succeeded": EventKind.CHARGE_SUCCEEDED,
    "invoice.payment_failed": EventKind.CHARGE_FAILED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_CANCELLED,
}

SUBSCRIPTION_STATUS_KIND_MAP = {
    "canceled": EventKind.SUBSCRIPTION_CANCELLED,
    "incomplete_expired": EventKind.SUBSCRIPTION_EXPIRED,
}

_config = {}


def configure(keys: dict):
    """
    Inject Stripe API credentials dynamically.
    Called automatically by the payment router.
    """
    stripe.api_key = keys.get("secret_key")
    _config["webhook_secret"] = keys.get("webhook_secret") or ""


def find_or_create_customer(candidate_id, name, email, existing_id=None) -> str:
    """Reuse the candidate's Stripe customer when it still exists, otherwise find it by metadata or create it."""
    try:
        if existing_id:
            try:
                customer = stripe.Customer.retrieve(existing_id)
                if not getattr(customer, "deleted", False):
                    return customer.id
            except stripe.InvalidRequestError:
                logger.info("Stored Stripe customer %s no longer exists, looking it up again", existing_id)

        try:
            found = stripe.Customer.search(query=f"metadata['candidate_id']:'{candidate_id}'")
            if found.data:
                return found.data[0].id
        except stripe.InvalidRequestError as exc:
            # search is not available on every account; creating is still safe
            logger.warning("Stripe customer search failed for candidate %s: %s", candidate_id, exc)

        customer = stripe.Customer.create(
            email=email or None,
            name=name or None,
            metadata={"candidate_id": str(candidate_id)},
            idempotency_key=f"customer-{candidate_id}",
        )
        logger.info("Created Stripe customer %s for candidate %s", customer.id, candidate_id)
        return customer.id
    except stripe.StripeError as exc:
        logger.error("Stripe customer provisioning failed for candidate %s: %s", candidate_id, exc)
        raise PaymentProcessorError()


def client_token(customer_id) -> str:
    """SetupIntent client secret; Stripe.js confirms it and yields the payment method id used as the token."""
    if not stripe.api_key:
        raise PaymentProcessorError("Payment system is not configured. Please contact support.")
    try:
        intent = stripe.SetupIntent.create(
            customer=customer_id,
            automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            usage="on_session",
        )
    except stripe.StripeError as exc:
        logger.error("Stripe SetupIntent failed for customer %s: %s", customer_id, exc)
        raise PaymentProcessorError()
    return intent.client_secret


def charge(customer_id, amount, currency, instrument_token, reference, description="") -> ChargeResult:
    """
    Confirm a one-off PaymentIntent for `amount` (major units).

    `reference` doubles as the idempotency key, so retrying after a lost response
    can never charge twice.
    """
    try:
        intent = stripe.PaymentIntent.create(
            amount=to_minor_units(amount),
            currency=(currency or "usd").lower(),
            customer=customer_id,
            payment_method=instrument_token,
            confirm=True,
            automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
            description=description or None,
            metadata={"reference": str(reference)},
            idempotency_key=f"charge-{reference}",
        )
    except stripe.CardError as exc:
        return ChargeResult(
            success=False,
            reason=exc.user_message or "Your card was declined.",
            code=DeclineCode.DECLINED,
        )
    except stripe.InvalidRequestError as exc:
        if exc.code in REUSED_INSTRUMENT_CODES or "previously used" in str(exc).lower():
            return ChargeResult(
                success=False,
                reason=exc.user_message or "This payment method has already been used.",
                code=DeclineCode.INSTRUMENT_REUSED,
            )
        if exc.param == "payment_method":
            return ChargeResult(
                success=False,
                reason=exc.user_message or "The payment method is not valid.",
                code=DeclineCode.DECLINED,
            )
        logger.error("Stripe rejected charge request %s: %s", reference, exc)
        raise PaymentProcessorError()
    except (stripe.APIConnectionError, stripe.APIError) as exc:
        raise PaymentOutcomeUnknown(str(exc), reference=str(reference))
    except stripe.StripeError as exc:
        logger.error("Stripe charge %s failed before reaching the card: %s", reference, exc)
        raise PaymentProcessorError()

    if intent.status == "succeeded":
        return ChargeResult(success=True, external_charge_id=intent.id)
    if intent.status == "processing":
        raise PaymentOutcomeUnknown(f"PaymentIntent {intent.id} is still processing", reference=str(reference))
    return ChargeResult(
        success=False,
        external_charge_id=intent.id,
        reason="The payment could not be completed without additional authentication.",
        code=DeclineCode.DECLINED,
    )


def cancel_recurring(external_id):
    try:
        stripe.Subscription.cancel(external_id)
    except stripe.InvalidRequestError as exc:
        # already cancelled or never existed remotely, nothing left to stop
        logger.info("Stripe subscription %s not cancellable: %s", external_id, exc)
    except stripe.StripeError as exc:
        raise PaymentProcessorError(f"Stripe could not cancel subscription {external_id}: {exc}")


def verify_and_parse_webhook(signature, raw_payload) -> WebhookEvent:
    secret = _config.get("webhook_secret")
    if not secret:
        raise WebhookVerificationError("Stripe webhook secret is not configured.")
    try:
        stripe.Webhook.construct_event(raw_payload, signature, secret)
    except ValueError:
        raise WebhookVerificationError("Invalid payload.")
    except stripe.SignatureVerificationError:
        raise WebhookVerificationError("Invalid signature.")

    # signature checked; work from the plain JSON rather than SDK objects
    event = json.loads(raw_payload)
    return _to_event(event)


def _to_event(event: dict) -> WebhookEvent:
    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    kind = EVENT_KIND_MAP.get(event_type, EventKind.UNKNOWN)
    if event_type == "customer.subscription.updated":
        kind = SUBSCRIPTION_STATUS_KIND_MAP.get(obj.get("status"), EventKind.UNKNOWN)

    if event_type.startswith("invoice."):
        external_id = obj.get("subscription") or ""
        charge_id = obj.get("payment_intent") or ""
    else:
        external_id = obj.get("id") or ""
        charge_id = external_id if event_type.startswith("payment_intent.") else ""

    return WebhookEvent(
        event_id=event.get("id", ""),
        kind=kind,
        event_type=event_type,
        external_id=external_id,
        reference=metadata.get("reference", ""),
        charge_id=charge_id,
        data=event,
    )
