from django.contrib import admin, messages
from django.contrib.admin import SimpleListFilter
from django.utils import timezone

from .exceptions import SubscriptionError
from .models import (
    Country,
    CountryMembership,
    PaymentEventLog,
    PendingTopUp,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from .services import cancel_subscription
from .utils import format_money


@admin.register(Plan)
class PlanAdmin(admin.ModelAdmin):
    list_display = ("name", "duration_days", "price_per_country", "is_active", "is_default", "sort_order")
    list_filter = ("is_active", "is_default")
    search_fields = ("name", "description")
    readonly_fields = ("created_by", "updated_by", "created_at", "updated_at")

    def save_model(self, request, obj, form, change):
        if not change:
            obj.created_by = request.user
        obj.updated_by = request.user
        super().save_model(request, obj, form, change)


@admin.register(Country)
class CountryAdmin(admin.ModelAdmin):
    list_display = ("name", "code", "sort_order")
    search_fields = ("name", "code")


class EntitlingFilter(SimpleListFilter):
    title = "Entitlement"
    parameter_name = "entitling"

    def lookups(self, request, model_admin):
        return [
            ("yes", "Currently entitling"),
            ("no", "Not entitling"),
        ]

    def queryset(self, request, queryset):
        now = timezone.now()
        if self.value() == "yes":
            return queryset.entitling(now)
        elif self.value() == "no":
            return queryset.exclude(status=SubscriptionStatus.ACTIVE, end_date__gt=now)
        return queryset


class CountryMembershipInline(admin.TabularInline):
    model = CountryMembership
    extra = 0
    readonly_fields = ("country", "created_at")
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    list_display = (
        "candidate",
        "plan",
        "status",
        "payment_status",
        "country_count",
        "amount_display",
        "start_date",
        "end_date",
        "provider",
    )
    list_filter = ("status", "payment_status", EntitlingFilter, "plan", "provider")
    search_fields = (
        "id",
        "candidate__username",
        "candidate__email",
        "external_customer_id",
        "external_charge_id",
        "external_subscription_id",
    )
    ordering = ("-created_at",)
    inlines = [CountryMembershipInline]
    actions = ["cancel_selected"]

    # Lifecycle changes go through the services, never through the form
    readonly_fields = [f.name for f in Subscription._meta.fields]

    def amount_display(self, obj):
        return format_money(obj.total_amount, obj.currency)
    amount_display.short_description = "Total"
    amount_display.admin_order_field = "total_amount"

    def get_queryset(self, request):
        return super().get_queryset(request).select_related("plan", "candidate")

    @admin.action(description="🚫 Cancel selected subscriptions")
    def cancel_selected(self, request, queryset):
        cancelled = 0
        errors = 0

        for sub in queryset:
            try:
                cancel_subscription(sub.pk, request.user, enforce_owner=False)
                cancelled += 1
            except SubscriptionError as e:
                errors += 1
                self.message_user(
                    request,
                    f"❌ Could not cancel subscription {sub.pk}: {e.message}",
                    level=messages.ERROR,
                )

        self.message_user(
            request,
            f"🚫 Cancelled {cancelled} subscription(s). {'❌ Errors: ' + str(errors) if errors else ''}",
            level=messages.SUCCESS if errors == 0 else messages.WARNING,
        )

    def has_add_permission(self, request):
        # Subscriptions are only created through the purchase flow
        return False


@admin.register(PendingTopUp)
class PendingTopUpAdmin(admin.ModelAdmin):
    list_display = ("reference", "subscription", "amount", "status", "created_at", "resolved_at")
    list_filter = ("status",)
    search_fields = ("reference", "external_charge_id")
    ordering = ("-created_at",)
    readonly_fields = [f.name for f in PendingTopUp._meta.fields]

    def has_add_permission(self, request):
        # Recorded by the top-up flow, settled by webhooks
        return False


@admin.register(PaymentEventLog)
class PaymentEventLogAdmin(admin.ModelAdmin):
    list_display = ("provider", "event_type", "kind", "outcome", "subscription", "received_at", "event_id")
    list_filter = ("provider", "kind", "outcome")
    search_fields = ("event_id", "event_type")
    ordering = ("-received_at",)

    def has_add_permission(self, request):
        # Webhooks create these automatically
        return False

    def has_change_permission(self, request, obj=None):
        # Prevent manual edits
        return False
