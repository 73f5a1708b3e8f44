"""
Subscription lifecycle: create, add countries, remove countries, cancel.

Every mutation runs inside one transaction holding a row lock: the candidate
profile for create, the subscription itself for the others. The lock is taken
before anything is read for pricing and held across the charge, so two requests
for the same subscription are applied one after the other.
"""
import logging
import uuid

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError, transaction
from django.db.models import F
from django.utils import timezone

from candidates.models import CandidateProfile
from candidates.projections import get_profile, refresh_candidate_summary
from .catalog import get_plan, resolve_countries
from .conf import default_currency, default_provider
from .exceptions import (
    ConflictError,
    InstrumentAlreadyUsed,
    InternalError,
    NotFoundError,
    OwnershipError,
    PaymentDeclined,
    PaymentOutcomeUnknown,
    PaymentPendingVerification,
    SubscriptionError,
    ValidationError,
)
from .models import CountryMembership, PaymentStatus, PendingTopUp, Subscription, SubscriptionStatus
from .payment_gateway import router
from .pricing import calculate_price, calculate_top_up, normalize_country_ids

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Entitlement queries
# ---------------------------------------------------------------------------

def current_entitlement(candidate, now=None) -> Subscription | None:
    return Subscription.objects.current_for(candidate, now)


def remaining_days_for(candidate, now=None) -> int:
    """Days left on the candidate's current entitlement, 0 when they have none."""
    now = now or timezone.now()
    subscription = current_entitlement(candidate, now)
    return subscription.remaining_days(now) if subscription else 0


def quote_for_candidate(candidate, plan_id, country_ids, now=None):
    """Price preview for a new subscription. Reads only."""
    now = now or timezone.now()
    plan = get_plan(plan_id)
    countries = resolve_countries(country_ids)
    return calculate_price(plan, [c.pk for c in countries], remaining_days_for(candidate, now), now=now)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_gateway(provider):
    try:
        return router.load(provider)
    except ValueError as exc:
        raise ValidationError(str(exc), provider=provider)


def _ensure_customer(gateway, provider, profile) -> str:
    """Find-or-create the processor customer and remember it on the profile."""
    user = profile.user
    customer_id = gateway.find_or_create_customer(
        user.pk,
        profile.display_name,
        user.email,
        existing_id=profile.customer_id_for(provider),
    )
    if profile.billing_provider != provider or profile.billing_customer_id != customer_id:
        profile.billing_provider = provider
        profile.billing_customer_id = customer_id
        profile.save(update_fields=["billing_provider", "billing_customer_id", "updated_on"])
    return customer_id


def _require_token(instrument_token):
    if not instrument_token:
        raise ValidationError("A payment instrument token is required.")


def _charge(gateway, customer_id, amount, instrument_token, reference, description):
    result = gateway.charge(
        customer_id,
        amount,
        default_currency(),
        instrument_token,
        reference,
        description=description,
    )
    if not result.success:
        if result.instrument_reused:
            raise InstrumentAlreadyUsed()
        raise PaymentDeclined(reason=result.reason) if result.reason else PaymentDeclined()
    return result


def refresh_summary(candidate):
    try:
        refresh_candidate_summary(candidate)
    except Exception:
        logger.warning("Could not refresh subscription summary for candidate %s", candidate.pk, exc_info=True)


def _lock_subscription(subscription_id, owner=None) -> Subscription:
    try:
        subscription = Subscription.objects.select_for_update().get(pk=subscription_id)
    except (Subscription.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError("Subscription not found.", subscription_id=str(subscription_id))
    if owner is not None and subscription.candidate_id != owner.pk:
        raise OwnershipError()
    return subscription


def _require_mutable(subscription, now):
    if subscription.status != SubscriptionStatus.ACTIVE:
        raise ConflictError(f"Subscription is {subscription.status}.", status=subscription.status)
    if subscription.has_lapsed(now):
        raise ConflictError("Subscription has expired.", status=SubscriptionStatus.EXPIRED)


def _describe(plan, count):
    return f"{plan.name} - {count} {'country' if count == 1 else 'countries'}"


# ---------------------------------------------------------------------------
# Payment setup
# ---------------------------------------------------------------------------

def issue_client_token(candidate, *, provider=None) -> dict:
    """
    Provision the candidate's processor customer and return what the client needs
    to collect a single-use payment instrument token.
    """
    provider = (provider or default_provider()).lower()
    gateway = _load_gateway(provider)

    with transaction.atomic():
        profile = CandidateProfile.objects.select_for_update().get(pk=get_profile(candidate).pk)
        customer_id = _ensure_customer(gateway, provider, profile)

    return {"provider": provider, "client_token": gateway.client_token(customer_id)}


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

def create_subscription(candidate, plan_id, country_ids, instrument_token=None, *, provider=None, actor=None, now=None):
    """
    Charge for `country_ids` on `plan_id` and grant them. Nothing is persisted
    unless the charge succeeds, except when the processor leaves the outcome
    unknown: then a pending subscription is kept for the webhook to settle and
    PaymentPendingVerification is raised.
    """
    now = now or timezone.now()
    provider = (provider or default_provider()).lower()
    actor = actor or candidate

    plan = get_plan(plan_id)
    countries = resolve_countries(country_ids)
    profile = get_profile(candidate)

    pending = False
    with transaction.atomic():
        profile = CandidateProfile.objects.select_for_update().get(pk=profile.pk)

        quote = calculate_price(plan, [c.pk for c in countries], remaining_days_for(candidate, now), now=now)
        reference = uuid.uuid4()
        customer_id = ""
        charge_id = ""

        if quote.final_amount > 0:
            _require_token(instrument_token)
            gateway = _load_gateway(provider)
            customer_id = _ensure_customer(gateway, provider, profile)
            try:
                result = _charge(
                    gateway, customer_id, quote.final_amount, instrument_token, reference,
                    _describe(plan, len(countries)),
                )
                charge_id = result.external_charge_id
            except PaymentOutcomeUnknown as exc:
                logger.error(
                    "Charge outcome unknown for new subscription %s (candidate %s, %s): %s",
                    reference, candidate.pk, quote.final_amount, exc,
                )
                pending = True

        subscription = _persist_new_subscription(
            reference, candidate, plan, countries, quote,
            provider=provider,
            customer_id=customer_id,
            charge_id=charge_id,
            pending=pending,
            actor=actor,
        )

    if pending:
        raise PaymentPendingVerification(subscription_id=str(subscription.pk))

    logger.info(
        "Subscription %s created for candidate %s: charge %s, amount %s",
        subscription.pk, candidate.pk, charge_id or "-", quote.final_amount,
    )
    refresh_summary(candidate)
    return subscription


def _persist_new_subscription(reference, candidate, plan, countries, quote, *, provider, customer_id, charge_id, pending, actor):
    try:
        with transaction.atomic():
            subscription = Subscription.objects.create(
                id=reference,
                candidate=candidate,
                plan=plan,
                country_count=len(countries),
                total_amount=quote.final_amount,
                currency=default_currency(),
                start_date=quote.start_date,
                end_date=quote.end_date,
                status=SubscriptionStatus.PENDING if pending else SubscriptionStatus.ACTIVE,
                payment_status=PaymentStatus.PENDING if pending else PaymentStatus.COMPLETED,
                provider=provider,
                external_customer_id=customer_id,
                external_charge_id=charge_id,
                created_by=actor,
                updated_by=actor,
            )
            CountryMembership.objects.bulk_create(
                [CountryMembership(subscription=subscription, country=country) for country in countries]
            )
    except DatabaseError:
        logger.exception(
            "Could not save subscription %s after charge %s of %s for candidate %s",
            reference, charge_id or "-", quote.final_amount, candidate.pk,
        )
        raise InternalError(subscription_id=str(reference))
    return subscription


# ---------------------------------------------------------------------------
# Add / remove countries
# ---------------------------------------------------------------------------

def grant_countries(subscription, country_ids, amount, actor=None):
    """Append memberships and add `amount` to the running total. The caller holds the row lock."""
    updates = {
        "country_count": F("country_count") + len(country_ids),
        "total_amount": F("total_amount") + amount,
        "payment_status": PaymentStatus.COMPLETED,
        "updated_at": timezone.now(),
    }
    if actor is not None:
        updates["updated_by"] = actor

    CountryMembership.objects.bulk_create(
        [CountryMembership(subscription=subscription, country_id=cid) for cid in country_ids]
    )
    Subscription.objects.filter(pk=subscription.pk).update(**updates)


def add_countries(subscription_id, candidate, country_ids, instrument_token=None, *, actor=None, now=None):
    """
    Top up a running subscription. Countries it already holds are skipped; only the
    new ones are charged, prorated to the subscription's own remaining days.
    end_date never moves.

    When the processor leaves the charge outcome unknown, the request is kept as a
    PendingTopUp for the webhook to settle and PaymentPendingVerification is raised.
    """
    now = now or timezone.now()
    actor = actor or candidate
    requested = resolve_countries(country_ids, allow_duplicates=True)

    with transaction.atomic():
        subscription = _lock_subscription(subscription_id, candidate)
        _require_mutable(subscription, now)

        existing = subscription.country_ids()
        new_countries = [c for c in requested if c.pk not in existing]
        if not new_countries:
            raise ConflictError(
                "Nothing to add: every selected country is already part of this subscription."
            )

        quote = calculate_top_up(
            subscription.plan, [c.pk for c in new_countries], subscription.end_date, now=now
        )
        charge_id = ""
        pending_reference = ""

        if quote.final_amount > 0:
            _require_token(instrument_token)
            provider = subscription.provider or default_provider()
            gateway = _load_gateway(provider)
            customer_id = subscription.external_customer_id or _ensure_customer(
                gateway, provider, get_profile(subscription.candidate)
            )
            reference = f"{subscription.pk}:topup:{uuid.uuid4().hex[:12]}"
            try:
                result = _charge(
                    gateway, customer_id, quote.final_amount, instrument_token, reference,
                    _describe(subscription.plan, len(new_countries)),
                )
                charge_id = result.external_charge_id
            except PaymentOutcomeUnknown as exc:
                logger.error(
                    "Charge outcome unknown for top-up %s of %s: %s", reference, quote.final_amount, exc
                )
                pending_reference = reference

        try:
            with transaction.atomic():
                if pending_reference:
                    PendingTopUp.objects.create(
                        subscription=subscription,
                        reference=pending_reference,
                        country_ids=[str(c.pk) for c in new_countries],
                        amount=quote.final_amount,
                        created_by=actor,
                    )
                else:
                    grant_countries(subscription, [c.pk for c in new_countries], quote.final_amount, actor)
        except DatabaseError:
            logger.exception(
                "Could not add countries to subscription %s after charge %s of %s",
                subscription.pk, charge_id or pending_reference or "-", quote.final_amount,
            )
            raise InternalError(subscription_id=str(subscription.pk))

    if pending_reference:
        raise PaymentPendingVerification(subscription_id=str(subscription.pk), reference=pending_reference)

    subscription.refresh_from_db()
    logger.info(
        "Added %d countries to subscription %s: charge %s, amount %s",
        len(new_countries), subscription.pk, charge_id or "-", quote.final_amount,
    )
    refresh_summary(subscription.candidate)
    return subscription, quote


def remove_countries(subscription_id, candidate, country_ids, *, actor=None, now=None):
    """Drop countries from a running subscription. No refund; total_amount is untouched."""
    now = now or timezone.now()
    actor = actor or candidate
    ids = normalize_country_ids(country_ids)

    with transaction.atomic():
        subscription = _lock_subscription(subscription_id, candidate)
        _require_mutable(subscription, now)

        existing = {str(cid) for cid in subscription.country_ids()}
        missing = [cid for cid in ids if cid not in existing]
        if missing:
            raise ValidationError(
                "One or more countries are not part of this subscription.", country_ids=missing
            )
        if len(ids) >= len(existing):
            raise ValidationError("Cannot remove all countries. Cancel the subscription instead.")

        removed, _ = CountryMembership.objects.filter(subscription=subscription, country_id__in=ids).delete()
        Subscription.objects.filter(pk=subscription.pk).update(
            country_count=F("country_count") - removed,
            updated_by=actor,
            updated_at=timezone.now(),
        )

    subscription.refresh_from_db()
    logger.info("Removed %d countries from subscription %s", removed, subscription.pk)
    refresh_summary(subscription.candidate)
    return subscription


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------

def cancel_subscription(subscription_id, actor, *, enforce_owner=True, now=None):
    """
    Cancel locally, then ask the processor to stop any recurring billing.
    The processor call never blocks the local cancellation.
    """
    now = now or timezone.now()

    with transaction.atomic():
        subscription = _lock_subscription(subscription_id, actor if enforce_owner else None)
        if subscription.status == SubscriptionStatus.CANCELLED:
            raise ConflictError("Subscription is already cancelled.", status=subscription.status)
        if subscription.status == SubscriptionStatus.EXPIRED or (
            subscription.status == SubscriptionStatus.ACTIVE and subscription.has_lapsed(now)
        ):
            raise ConflictError("Subscription has already expired.", status=SubscriptionStatus.EXPIRED)

        subscription.status = SubscriptionStatus.CANCELLED
        subscription.updated_by = actor
        subscription.save(update_fields=["status", "updated_by", "updated_at"])

    logger.info("Subscription %s cancelled by user %s", subscription.pk, actor.pk)

    reference = subscription.billing_reference
    if reference.recurring_id:
        try:
            _load_gateway(reference.provider).cancel_recurring(reference.recurring_id)
        except SubscriptionError as exc:
            logger.warning(
                "Processor-side cancellation failed for subscription %s (%s %s): %s",
                subscription.pk, reference.provider, reference.recurring_id, exc,
            )

    refresh_summary(subscription.candidate)
    return subscription


# ---------------------------------------------------------------------------
# Reads and expiry
# ---------------------------------------------------------------------------

def expire_lapsed_subscriptions(now=None, candidate=None):
    """Persist `expired` on active subscriptions past their end date. Returns (count, candidate ids)."""
    now = now or timezone.now()
    lapsed = Subscription.objects.lapsed(now)
    if candidate is not None:
        lapsed = lapsed.filter(candidate=candidate)

    candidate_ids = list(lapsed.values_list("candidate_id", flat=True).distinct())
    if not candidate_ids:
        return 0, []
    count = lapsed.update(status=SubscriptionStatus.EXPIRED, updated_at=now)
    if count:
        logger.info("Expired %d lapsed subscriptions", count)
    return count, candidate_ids


def _with_details(queryset):
    return queryset.select_related("plan", "candidate").prefetch_related("memberships__country")


def _validate_status(status):
    if status and status not in SubscriptionStatus.values:
        raise ValidationError(f"Unknown status '{status}'.", allowed=list(SubscriptionStatus.values))


def list_candidate_subscriptions(candidate, status=None):
    _validate_status(status)
    expire_lapsed_subscriptions(candidate=candidate)
    queryset = Subscription.objects.filter(candidate=candidate)
    if status:
        queryset = queryset.filter(status=status)
    return _with_details(queryset).order_by("-created_at")


def get_subscription(subscription_id) -> Subscription:
    try:
        return _with_details(Subscription.objects.all()).get(pk=subscription_id)
    except (Subscription.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError("Subscription not found.", subscription_id=str(subscription_id))


def get_subscription_for(candidate, subscription_id) -> Subscription:
    expire_lapsed_subscriptions(candidate=candidate)
    subscription = get_subscription(subscription_id)
    if subscription.candidate_id != candidate.pk:
        raise OwnershipError()
    return subscription


def list_all_subscriptions(status=None, candidate_id=None, plan_id=None):
    _validate_status(status)
    expire_lapsed_subscriptions()
    queryset = Subscription.objects.all()
    if status:
        queryset = queryset.filter(status=status)
    if candidate_id:
        queryset = queryset.filter(candidate_id=candidate_id)
    if plan_id:
        try:
            queryset = queryset.filter(plan_id=uuid.UUID(str(plan_id)))
        except ValueError:
            raise ValidationError("Invalid plan_id.", plan_id=str(plan_id))
    return _with_details(queryset).order_by("-created_at")
