"""
Shapes shared by every payment gateway module.

A gateway is a plain module resolved by name through `router.get_gateway`.
It must expose:

    SIGNATURE_HEADER                      request header carrying the webhook signature
    configure(config)                     inject credentials from `router.get_config`
    find_or_create_customer(candidate_id, name, email, existing_id=None) -> str
    client_token(customer_id) -> str         secret the client uses to collect a payment instrument
    charge(customer_id, amount, currency, instrument_token, reference, description="") -> ChargeResult
    cancel_recurring(external_id) -> None
    verify_and_parse_webhook(signature, raw_payload) -> WebhookEvent

Gateways translate their SDK errors into `subscriptions.exceptions` types so the
lifecycle services never depend on one processor's exception classes.
"""
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP


class EventKind:
    CHARGE_SUCCEEDED = "charge_succeeded"
    CHARGE_FAILED = "charge_failed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    UNKNOWN = "unknown"


class DeclineCode:
    DECLINED = "declined"
    INSTRUMENT_REUSED = "instrument_reused"


@dataclass(frozen=True)
class BillingReference:
    """Where a subscription lives at its payment processor, independent of which processor it is."""
    provider: str
    customer_id: str = ""
    charge_id: str = ""
    subscription_id: str = ""

    @property
    def recurring_id(self) -> str:
        return self.subscription_id

    def __bool__(self):
        return bool(self.provider and (self.customer_id or self.charge_id or self.subscription_id))


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    external_charge_id: str = ""
    reason: str = ""
    code: str = ""

    @property
    def instrument_reused(self) -> bool:
        return not self.success and self.code == DeclineCode.INSTRUMENT_REUSED


@dataclass(frozen=True)
class WebhookEvent:
    event_id: str
    kind: str
    event_type: str
    external_id: str = ""
    reference: str = ""
    charge_id: str = ""
    data: dict = field(default_factory=dict)


def to_minor_units(amount) -> int:
    """Decimal major units (e.g. dollars) to integer minor units (cents)."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
