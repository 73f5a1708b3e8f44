from rest_framework import serializers
from django.utils import timezone

from .conf import default_currency, get_setting
from .models import Country, Plan, Subscription
from .utils import currency_symbol, format_money


def _max_countries():
    return get_setting("MAX_COUNTRIES_PER_REQUEST", 50)


class PlanSerializer(serializers.ModelSerializer):
    currency = serializers.SerializerMethodField()
    symbol = serializers.SerializerMethodField()
    price_display = serializers.SerializerMethodField()

    class Meta:
        model = Plan
        fields = [
            "id", "name", "description", "duration_days", "price_per_country",
            "currency", "symbol", "price_display", "is_default",
        ]

    def get_currency(self, obj): return default_currency()
    def get_symbol(self, obj): return currency_symbol(default_currency())
    def get_price_display(self, obj): return format_money(obj.price_per_country, default_currency())


class CountrySerializer(serializers.ModelSerializer):
    class Meta:
        model = Country
        fields = ["id", "name", "code", "description"]


class CompactPlanSerializer(serializers.ModelSerializer):
    class Meta:
        model = Plan
        fields = ["id", "name", "duration_days", "price_per_country"]


class SubscriptionSerializer(serializers.ModelSerializer):
    plan = CompactPlanSerializer(read_only=True)
    countries = serializers.SerializerMethodField()
    amount_display = serializers.SerializerMethodField()
    remaining_days = serializers.SerializerMethodField()
    end_date_display = serializers.SerializerMethodField()

    class Meta:
        model = Subscription
        fields = [
            "id",
            "plan",
            "countries",
            "country_count",
            "total_amount",
            "currency",
            "amount_display",
            "status",
            "payment_status",
            "provider",
            "start_date",
            "end_date",
            "end_date_display",
            "remaining_days",
            "created_at",
        ]

    def get_countries(self, obj):
        return CountrySerializer([m.country for m in obj.memberships.all()], many=True).data

    def get_amount_display(self, obj):
        return format_money(obj.total_amount, obj.currency)

    def get_remaining_days(self, obj):
        return obj.remaining_days() if obj.is_entitling else 0

    def get_end_date_display(self, obj):
        if obj.end_date:
            return timezone.localtime(obj.end_date).strftime("%b %d, %Y, %I:%M %p")
        return None


class AdminSubscriptionSerializer(SubscriptionSerializer):
    candidate = serializers.SerializerMethodField()

    class Meta(SubscriptionSerializer.Meta):
        fields = SubscriptionSerializer.Meta.fields + [
            "candidate", "external_customer_id", "external_charge_id", "external_subscription_id", "updated_at",
        ]

    def get_candidate(self, obj):
        user = obj.candidate
        return {"id": user.pk, "username": user.username, "email": user.email}


class QuoteSerializer(serializers.Serializer):
    country_count = serializers.IntegerField()
    original_amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    final_amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    effective_duration_days = serializers.IntegerField()
    original_duration_days = serializers.IntegerField()
    remaining_days = serializers.IntegerField()
    is_prorated = serializers.BooleanField()
    start_date = serializers.DateTimeField()
    end_date = serializers.DateTimeField()


# ---- request bodies ----

class CountryIdsField(serializers.ListField):
    child = serializers.UUIDField()

    def __init__(self, **kwargs):
        kwargs.setdefault("allow_empty", False)
        kwargs.setdefault("min_length", 1)
        kwargs.setdefault("max_length", _max_countries())
        super().__init__(**kwargs)


class CalculateRequestSerializer(serializers.Serializer):
    plan_id = serializers.UUIDField()
    country_ids = CountryIdsField()


class CreateSubscriptionRequestSerializer(CalculateRequestSerializer):
    payment_instrument_token = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class AddCountriesRequestSerializer(serializers.Serializer):
    country_ids = CountryIdsField()
    payment_instrument_token = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class RemoveCountriesRequestSerializer(serializers.Serializer):
    country_ids = CountryIdsField()
