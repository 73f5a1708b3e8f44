from datetime import timedelta
from decimal import Decimal

from django.contrib.auth.models import User
from django.utils import timezone

from subscriptions.models import (
    Country,
    CountryMembership,
    PaymentProvider,
    PaymentStatus,
    Plan,
    Subscription,
    SubscriptionStatus,
)


def make_user(username="candidate", **extra):
    return User.objects.create_user(
        username=username, email=f"{username}@example.com", password="pass12345", **extra
    )


def make_plan(name="Six months", duration_days=180, price="20.00", **extra):
    return Plan.objects.create(
        name=name, duration_days=duration_days, price_per_country=Decimal(price), **extra
    )


def make_countries(*codes):
    names = {"US": "United States", "CA": "Canada", "GB": "United Kingdom", "DE": "Germany", "FR": "France"}
    return [Country.objects.create(name=names.get(code, code), code=code) for code in codes]


def make_subscription(candidate, plan, countries, *, days_left=30, now=None, total="40.00",
                      status=SubscriptionStatus.ACTIVE, payment_status=PaymentStatus.COMPLETED, **extra):
    now = now or timezone.now()
    extra.setdefault("provider", PaymentProvider.MANUAL)
    subscription = Subscription.objects.create(
        candidate=candidate,
        plan=plan,
        country_count=len(countries),
        total_amount=Decimal(total),
        currency="USD",
        start_date=now - timedelta(days=plan.duration_days - days_left),
        end_date=now + timedelta(days=days_left),
        status=status,
        payment_status=payment_status,
        **extra,
    )
    CountryMembership.objects.bulk_create(
        [CountryMembership(subscription=subscription, country=c) for c in countries]
    )
    return subscription
