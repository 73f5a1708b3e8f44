"""
Applies verified payment processor events to local subscriptions.

Events only ever move a subscription forward along its state machine, and each
event id is processed once per provider, so redelivery is harmless. An event that
matched nothing is not final: the charge it reports may belong to a subscription
or top-up whose request had not committed yet, so a redelivery is matched again.
"""
import logging
import uuid

from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from .models import PaymentEventLog, PaymentStatus, PendingTopUp, Subscription, SubscriptionStatus, TopUpStatus
from .payment_gateway import router
from .payment_gateway.base import EventKind
from .services import grant_countries, refresh_summary

logger = logging.getLogger(__name__)

TOP_UP_MARKER = ":topup:"


class Outcome:
    APPLIED = "applied"
    NO_CHANGE = "no_change"
    DUPLICATE = "duplicate"
    UNMATCHED = "unmatched"
    IGNORED = "ignored"


STATUS_FOR_KIND = {
    EventKind.CHARGE_SUCCEEDED: SubscriptionStatus.ACTIVE,
    EventKind.SUBSCRIPTION_CANCELLED: SubscriptionStatus.CANCELLED,
    EventKind.SUBSCRIPTION_EXPIRED: SubscriptionStatus.EXPIRED,
}

CHARGE_KINDS = (EventKind.CHARGE_SUCCEEDED, EventKind.CHARGE_FAILED)


def handle_webhook(provider, signature, raw_payload) -> str:
    """
    Verify and apply one webhook delivery. Raises WebhookVerificationError when the
    payload cannot be authenticated; every other case returns an Outcome value.
    """
    gateway = router.load(provider)
    event = gateway.verify_and_parse_webhook(signature, raw_payload)

    with transaction.atomic():
        log, created = PaymentEventLog.objects.select_for_update().get_or_create(
            provider=provider,
            event_id=event.event_id,
            defaults={"event_type": event.event_type, "kind": event.kind, "data": event.data},
        )
        if not created:
            if log.outcome != Outcome.UNMATCHED:
                logger.info("Webhook %s:%s already processed, skipping", provider, event.event_id)
                return Outcome.DUPLICATE
            logger.info("Webhook %s:%s matched nothing before, trying again", provider, event.event_id)

        subscription = None
        if event.kind == EventKind.UNKNOWN:
            outcome = Outcome.IGNORED
        else:
            subscription = find_subscription(provider, event)
            if subscription is None:
                logger.info(
                    "Webhook %s:%s (%s) matches no local subscription", provider, event.event_id, event.event_type
                )
                outcome = Outcome.UNMATCHED
            elif is_top_up(event):
                outcome = apply_top_up_event(subscription, event)
            else:
                outcome = apply_event(subscription, event)

        log.subscription = subscription
        log.outcome = outcome
        log.save(update_fields=["subscription", "outcome"])

    if outcome == Outcome.APPLIED:
        refresh_summary(subscription.candidate)
    return outcome


def is_top_up(event) -> bool:
    return event.kind in CHARGE_KINDS and TOP_UP_MARKER in (event.reference or "")


def find_subscription(provider, event):
    """Locked subscription for an event: by processor id first, then by the reference we sent."""
    queryset = Subscription.objects.select_for_update().filter(provider=provider)

    if event.external_id:
        subscription = queryset.filter(
            Q(external_subscription_id=event.external_id) | Q(external_charge_id=event.external_id)
        ).first()
        if subscription:
            return subscription

    # top-up references look like "<subscription id>:topup:<suffix>"
    reference = (event.reference or "").split(":")[0]
    if not reference:
        return None
    try:
        return queryset.filter(pk=uuid.UUID(reference)).first()
    except ValueError:
        return None


def apply_event(subscription, event) -> str:
    if subscription.is_terminal:
        logger.info(
            "Ignoring %s for subscription %s in terminal status %s",
            event.kind, subscription.pk, subscription.status,
        )
        return Outcome.NO_CHANGE

    updates = {}
    target = STATUS_FOR_KIND.get(event.kind)
    if target and subscription.status != target and subscription.can_transition_to(target):
        updates["status"] = target

    if event.kind == EventKind.CHARGE_SUCCEEDED:
        if subscription.payment_status != PaymentStatus.COMPLETED:
            updates["payment_status"] = PaymentStatus.COMPLETED
        if not subscription.external_charge_id and event.charge_id:
            updates["external_charge_id"] = event.charge_id
    elif event.kind == EventKind.CHARGE_FAILED and subscription.payment_status != PaymentStatus.FAILED:
        updates["payment_status"] = PaymentStatus.FAILED

    if not updates:
        return Outcome.NO_CHANGE

    previous = (subscription.status, subscription.payment_status)
    for field, value in updates.items():
        setattr(subscription, field, value)
    subscription.save(update_fields=[*updates, "updated_at"])

    logger.info(
        "Subscription %s moved %s/%s -> %s/%s on %s",
        subscription.pk, previous[0], previous[1], subscription.status, subscription.payment_status, event.kind,
    )
    return Outcome.APPLIED


def apply_top_up_event(subscription, event) -> str:
    """
    Settle a top-up left pending by an unknown charge outcome. The subscription's own
    status and payment_status belong to its first charge and are not touched.
    """
    top_up = PendingTopUp.objects.select_for_update().filter(
        subscription=subscription, reference=event.reference
    ).first()
    if top_up is None or top_up.status != TopUpStatus.PENDING:
        # top-ups charged synchronously were granted by the request itself
        return Outcome.NO_CHANGE

    if event.kind == EventKind.CHARGE_FAILED:
        top_up.status = TopUpStatus.FAILED
        top_up.resolved_at = timezone.now()
        top_up.save(update_fields=["status", "resolved_at"])
        logger.info("Top-up %s failed at the processor, nothing granted", top_up.reference)
        return Outcome.APPLIED

    if subscription.is_terminal:
        logger.warning(
            "Top-up %s of %s paid for subscription %s in terminal status %s; left pending for review",
            top_up.reference, top_up.amount, subscription.pk, subscription.status,
        )
        return Outcome.NO_CHANGE

    existing = {str(cid) for cid in subscription.country_ids()}
    new_ids = [cid for cid in top_up.country_ids if cid not in existing]
    grant_countries(subscription, new_ids, top_up.amount, top_up.created_by)

    top_up.status = TopUpStatus.APPLIED
    top_up.external_charge_id = event.charge_id
    top_up.resolved_at = timezone.now()
    top_up.save(update_fields=["status", "external_charge_id", "resolved_at"])

    logger.info(
        "Top-up %s applied to subscription %s: %d countries, amount %s",
        top_up.reference, subscription.pk, len(new_ids), top_up.amount,
    )
    return Outcome.APPLIED
