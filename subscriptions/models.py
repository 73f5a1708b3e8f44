import uuid

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from .payment_gateway.base import BillingReference
from .periods import remaining_days

ISO_CURRENCY_MAX_LEN = 10  # Safe room for things like "NGN", "USD"
MAX_PLAN_DURATION_DAYS = 365


class Plan(models.Model):
    """
    A purchasable access window: `duration_days` of job visibility, priced per country.
    At most one plan is the catalog default; the constraint below enforces it.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=100, unique=True)
    description = models.TextField(blank=True)
    duration_days = models.PositiveIntegerField(
        validators=[MinValueValidator(1), MaxValueValidator(MAX_PLAN_DURATION_DAYS)]
    )
    price_per_country = models.DecimalField(
        max_digits=10, decimal_places=2, validators=[MinValueValidator(0)]
    )
    is_active = models.BooleanField(default=True)
    is_default = models.BooleanField(default=False)
    sort_order = models.PositiveIntegerField(default=0)

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    updated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["duration_days", "sort_order", "name"]
        constraints = [
            # Ensures there can be AT MOST one default plan in the catalog
            models.UniqueConstraint(
                fields=["is_default"],
                condition=Q(is_default=True),
                name="single_default_plan",
            ),
        ]

    def __str__(self):
        return f"{self.name} ({self.duration_days} days)"

    def clean(self):
        super().clean()
        if not self.is_default:
            return
        if not self.is_active:
            raise ValidationError({"is_default": _("An inactive plan cannot be the default plan.")})
        others = Plan.objects.filter(is_default=True)
        if self.pk:
            others = others.exclude(pk=self.pk)
        if others.exists():
            raise ValidationError(
                {"is_default": _("Another plan is already the default. Unset it first.")}
            )


class Country(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=100, unique=True)
    code = models.CharField(max_length=3, unique=True)  # ISO 3166 alpha-2/alpha-3
    description = models.TextField(blank=True)
    sort_order = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["sort_order", "name"]
        verbose_name_plural = "countries"

    def __str__(self):
        return f"{self.name} ({self.code})"


class SubscriptionStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    ACTIVE = "active", "Active"
    EXPIRED = "expired", "Expired"
    CANCELLED = "cancelled", "Cancelled"


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    REFUNDED = "refunded", "Refunded"


class PaymentProvider(models.TextChoices):
    STRIPE = "stripe", "Stripe"
    MANUAL = "manual", "Manual/Billing Admin"


# Status only ever moves forward; expired and cancelled are terminal.
STATUS_TRANSITIONS = {
    SubscriptionStatus.PENDING: {
        SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED,
    },
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED},
    SubscriptionStatus.EXPIRED: set(),
    SubscriptionStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = (SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED)


class SubscriptionQuerySet(models.QuerySet):
    def entitling(self, now=None):
        """Rows that currently grant access: active and not yet past their end date."""
        now = now or timezone.now()
        return self.filter(status=SubscriptionStatus.ACTIVE, end_date__gt=now)

    def current_for(self, candidate, now=None):
        """The candidate's authoritative entitlement, or None."""
        return self.entitling(now).filter(candidate=candidate).order_by("-end_date", "-created_at").first()

    def lapsed(self, now=None):
        now = now or timezone.now()
        return self.filter(status=SubscriptionStatus.ACTIVE, end_date__lte=now)


class Subscription(models.Model):
    """
    A candidate's paid access to a set of countries between start_date and end_date.

    end_date is fixed at creation. total_amount only ever grows: it is the sum of every
    charge applied to this subscription. country_count mirrors the membership rows.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    candidate = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="subscriptions"
    )
    plan = models.ForeignKey(Plan, on_delete=models.PROTECT, related_name="subscriptions")

    country_count = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    currency = models.CharField(max_length=ISO_CURRENCY_MAX_LEN, blank=True)

    start_date = models.DateTimeField(default=timezone.now)
    end_date = models.DateTimeField()

    status = models.CharField(
        max_length=16, choices=SubscriptionStatus.choices, default=SubscriptionStatus.PENDING
    )
    payment_status = models.CharField(
        max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING
    )

    # External billing reference, see `billing_reference`
    provider = models.CharField(max_length=24, choices=PaymentProvider.choices, blank=True)
    external_customer_id = models.CharField(max_length=128, blank=True)
    external_charge_id = models.CharField(max_length=128, blank=True, db_index=True)
    external_subscription_id = models.CharField(max_length=128, blank=True, db_index=True)

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    updated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = SubscriptionQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["candidate", "status", "end_date"], name="sub_candidate_status_end"),
        ]

    def __str__(self):
        return f"{self.candidate_id} -> {self.plan_id} ({self.status})"

    @property
    def billing_reference(self) -> BillingReference:
        return BillingReference(
            provider=self.provider,
            customer_id=self.external_customer_id,
            charge_id=self.external_charge_id,
            subscription_id=self.external_subscription_id,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def has_lapsed(self, now=None) -> bool:
        now = now or timezone.now()
        return self.end_date <= now

    @property
    def is_entitling(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE and not self.has_lapsed()

    def remaining_days(self, now=None) -> int:
        return remaining_days(self.end_date, now)

    def can_transition_to(self, status) -> bool:
        return status in STATUS_TRANSITIONS.get(self.status, set())

    def country_ids(self) -> set:
        return set(self.memberships.values_list("country_id", flat=True))


class CountryMembership(models.Model):
    """One entitled country inside a subscription."""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    subscription = models.ForeignKey(Subscription, on_delete=models.CASCADE, related_name="memberships")
    country = models.ForeignKey(Country, on_delete=models.PROTECT, related_name="memberships")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["subscription", "country"],
                name="uniq_country_per_subscription",
            ),
        ]

    def __str__(self):
        return f"{self.subscription_id}:{self.country_id}"


class TopUpStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    APPLIED = "applied", "Applied"
    FAILED = "failed", "Failed"


class PendingTopUp(models.Model):
    """
    A top-up charge whose outcome the processor left unknown.
    The webhook for `reference` grants the countries or drops the request.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    subscription = models.ForeignKey(Subscription, on_delete=models.CASCADE, related_name="pending_top_ups")
    reference = models.CharField(max_length=128, unique=True)
    country_ids = models.JSONField(default=list)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=16, choices=TopUpStatus.choices, default=TopUpStatus.PENDING)
    external_charge_id = models.CharField(max_length=128, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.reference} ({self.status})"


class PaymentEventLog(models.Model):
    """Every verified webhook event, keyed by the processor's event id for replay detection."""
    provider = models.CharField(max_length=24, choices=PaymentProvider.choices)
    event_id = models.CharField(max_length=128)
    event_type = models.CharField(max_length=100)
    kind = models.CharField(max_length=40, blank=True)
    subscription = models.ForeignKey(
        Subscription, on_delete=models.SET_NULL, null=True, blank=True, related_name="events"
    )
    outcome = models.CharField(max_length=40, blank=True)
    data = models.JSONField(default=dict, blank=True)
    received_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-received_at"]
        constraints = [
            models.UniqueConstraint(fields=["provider", "event_id"], name="uniq_event_per_provider"),
        ]

    def __str__(self):
        return f"{self.provider}:{self.event_type} ({self.event_id})"
