"""
Offline payment processor for local development, staging and tests.

Customers and charges get local identifiers. A few well-known instrument tokens
simulate processor outcomes, the same way processor test cards do:

    tok_declined    card declined
    tok_reused      instrument already consumed
    tok_timeout     request lost, outcome unknown

Webhooks are JSON bodies signed with HMAC-SHA256 (hex) over the raw body:

    {"id": "evt_1", "type": "charge_succeeded", "data": {"id": "<external id>", "reference": "<subscription id>"}}
"""
import hashlib
import hmac
import json
import logging

from subscriptions.exceptions import PaymentOutcomeUnknown, WebhookVerificationError
from .base import ChargeResult, DeclineCode, EventKind, WebhookEvent

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"

DECLINED_TOKEN = "tok_declined"
REUSED_TOKEN = "tok_reused"
TIMEOUT_TOKEN = "tok_timeout"

CHARGE_KINDS = {EventKind.CHARGE_SUCCEEDED, EventKind.CHARGE_FAILED}
KNOWN_KINDS = CHARGE_KINDS | {EventKind.SUBSCRIPTION_CANCELLED, EventKind.SUBSCRIPTION_EXPIRED}

_config = {}


def configure(keys: dict):
    _config["webhook_secret"] = keys.get("webhook_secret") or ""


def find_or_create_customer(candidate_id, name, email, existing_id=None) -> str:
    return existing_id or f"manual_cus_{candidate_id}"


def client_token(customer_id) -> str:
    return f"manual_ct_{customer_id}"


def charge(customer_id, amount, currency, instrument_token, reference, description="") -> ChargeResult:
    if not instrument_token or instrument_token == DECLINED_TOKEN:
        return ChargeResult(success=False, reason="Your card was declined.", code=DeclineCode.DECLINED)
    if instrument_token == REUSED_TOKEN:
        return ChargeResult(
            success=False,
            reason="This payment method has already been used.",
            code=DeclineCode.INSTRUMENT_REUSED,
        )
    if instrument_token == TIMEOUT_TOKEN:
        raise PaymentOutcomeUnknown("Manual processor timed out", reference=str(reference))

    logger.debug("Manual charge of %s %s for %s (%s)", amount, currency, customer_id, reference)
    return ChargeResult(success=True, external_charge_id=f"manual_ch_{reference}")


def cancel_recurring(external_id):
    logger.info("Manual processor: recurring billing %s stopped", external_id)


def sign_payload(raw_payload, secret=None) -> str:
    if isinstance(raw_payload, str):
        raw_payload = raw_payload.encode("utf-8")
    key = (secret or _config.get("webhook_secret") or "").encode("utf-8")
    return hmac.new(key, raw_payload, hashlib.sha256).hexdigest()


def verify_and_parse_webhook(signature, raw_payload) -> WebhookEvent:
    if not _config.get("webhook_secret"):
        raise WebhookVerificationError("Manual webhook secret is not configured.")
    if not signature or not hmac.compare_digest(sign_payload(raw_payload), signature):
        raise WebhookVerificationError("Invalid signature.")

    try:
        event = json.loads(raw_payload)
    except ValueError:
        raise WebhookVerificationError("Invalid payload.")
    if not isinstance(event, dict) or not event.get("id"):
        raise WebhookVerificationError("Invalid payload.")

    event_type = event.get("type", "")
    kind = event_type if event_type in KNOWN_KINDS else EventKind.UNKNOWN
    data = event.get("data") or {}
    external_id = str(data.get("id") or "")
    return WebhookEvent(
        event_id=str(event["id"]),
        kind=kind,
        event_type=event_type,
        external_id=external_id,
        reference=str(data.get("reference") or ""),
        charge_id=external_id if kind in CHARGE_KINDS else "",
        data=event,
    )
