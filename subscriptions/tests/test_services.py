from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.db import DatabaseError
from django.db.models import F
from django.test import TestCase
from django.utils import timezone

from candidates.models import CandidateProfile
from candidates.projections import refresh_candidate_summary
from subscriptions import services
from subscriptions.exceptions import (
    ConflictError,
    InstrumentAlreadyUsed,
    InternalError,
    NotFoundError,
    OwnershipError,
    PaymentDeclined,
    PaymentPendingVerification,
    PaymentProcessorError,
    ValidationError,
)
from subscriptions.models import (
    CountryMembership,
    PaymentStatus,
    PendingTopUp,
    Subscription,
    SubscriptionStatus,
    TopUpStatus,
)
from subscriptions.payment_gateway.base import ChargeResult
from subscriptions.tests.helpers import make_countries, make_plan, make_subscription, make_user


class CreateSubscriptionTest(TestCase):

    def setUp(self):
        self.now = timezone.now()
        self.user = make_user()
        self.plan = make_plan()
        self.us, self.ca, self.gb = make_countries("US", "CA", "GB")

    def test_full_price_subscription(self):
        sub = services.create_subscription(
            self.user, self.plan.pk, [self.us.pk, self.ca.pk], "tok_visa", now=self.now
        )

        self.assertEqual(sub.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(sub.payment_status, PaymentStatus.COMPLETED)
        self.assertEqual(sub.total_amount, Decimal("40.00"))
        self.assertEqual(sub.country_count, 2)
        self.assertEqual(sub.memberships.count(), 2)
        self.assertEqual(sub.end_date, self.now + timedelta(days=180))
        self.assertEqual(sub.provider, "manual")
        self.assertEqual(sub.external_charge_id, f"manual_ch_{sub.pk}")
        self.assertEqual(sub.external_customer_id, f"manual_cus_{self.user.pk}")

    def test_customer_is_remembered_on_profile(self):
        services.create_subscription(self.user, self.plan.pk, [self.us.pk], "tok_visa", now=self.now)
        profile = CandidateProfile.objects.get(user=self.user)
        self.assertEqual(profile.billing_provider, "manual")
        self.assertEqual(profile.billing_customer_id, f"manual_cus_{self.user.pk}")

    def test_summary_projection_updated(self):
        sub = services.create_subscription(
            self.user, self.plan.pk, [self.us.pk, self.ca.pk], "tok_visa", now=self.now
        )
        profile = CandidateProfile.objects.get(user=self.user)
        self.assertEqual(profile.current_subscription, sub)
        self.assertEqual(profile.last_plan, self.plan)
        self.assertEqual(profile.qty, 2)
        self.assertEqual(profile.unit_price, Decimal("20.00"))
        self.assertEqual(profile.expiry_date, sub.end_date)

    def test_prorated_when_candidate_already_entitled(self):
        existing = make_subscription(self.user, self.plan, [self.us], days_left=30, now=self.now)

        sub = services.create_subscription(self.user, self.plan.pk, [self.gb.pk], "tok_visa", now=self.now)

        self.assertEqual(sub.total_amount, Decimal("3.33"))
        self.assertEqual(sub.end_date, existing.end_date)

    def test_declined_payment_creates_nothing(self):
        with self.assertRaises(PaymentDeclined):
            services.create_subscription(self.user, self.plan.pk, [self.us.pk], "tok_declined", now=self.now)
        self.assertFalse(Subscription.objects.exists())
        self.assertFalse(CountryMembership.objects.exists())

    def test_reused_instrument_is_a_distinct_error(self):
        with self.assertRaises(InstrumentAlreadyUsed) as ctx:
            services.create_subscription(self.user, self.plan.pk, [self.us.pk], "tok_reused", now=self.now)
        self.assertEqual(ctx.exception.kind, "payment_instrument_reused")
        self.assertFalse(Subscription.objects.exists())

    def test_missing_token_for_paid_plan(self):
        with patch("subscriptions.payment_gateway.manual.find_or_create_customer") as find_or_create:
            with self.assertRaises(ValidationError):
                services.create_subscription(self.user, self.plan.pk, [self.us.pk], "", now=self.now)
        find_or_create.assert_not_called()
        self.assertFalse(Subscription.objects.exists())
        self.assertEqual(CandidateProfile.objects.get(user=self.user).billing_customer_id, "")

    def test_processor_error_creates_nothing(self):
        with patch("subscriptions.payment_gateway.manual.charge", side_effect=PaymentProcessorError()):
            with self.assertRaises(PaymentProcessorError):
                services.create_subscription(self.user, self.plan.pk, [self.us.pk], "tok_visa", now=self.now)
        self.assertFalse(Subscription.objects.exists())

    def test_unknown_outcome_keeps_pending_subscription(self):
        with self.assertRaises(PaymentPendingVerification) as ctx:
            services.create_subscription(self.user, self.plan.pk, [self.us.pk], "tok_timeout", now=self.now)

        sub = Subscription.objects.get()
        self.assertEqual(ctx.exception.details["subscription_id"], str(sub.pk))
        self.assertEqual(sub.status, SubscriptionStatus.PENDING)
        self.assertEqual(sub.payment_status, PaymentStatus.PENDING)
        self.assertEqual(sub.memberships.count(), 1)
        self.assertIsNone(services.current_entitlement(self.user))

    def test_free_plan_skips_charge(self):
        free = make_plan(name="Trial", duration_days=7, price="0.00")
        with patch("subscriptions.payment_gateway.manual.charge") as charge:
            sub = services.create_subscription(self.user, free.pk, [self.us.pk], now=self.now)
        charge.assert_not_called()
        self.assertEqual(sub.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(sub.total_amount, Decimal("0.00"))
        self.assertEqual(sub.external_charge_id, "")

    def test_inactive_plan_rejected(self):
        retired = make_plan(name="Legacy", is_active=False)
        with self.assertRaises(NotFoundError):
            services.create_subscription(self.user, retired.pk, [self.us.pk], "tok_visa")

    def test_unknown_country_rejected_before_charging(self):
        with patch("subscriptions.payment_gateway.manual.charge") as charge:
            with self.assertRaises(ValidationError):
                services.create_subscription(
                    self.user, self.plan.pk, [self.us.pk, "00000000-0000-0000-0000-000000000000"], "tok_visa"
                )
        charge.assert_not_called()

    def test_store_failure_after_charge_is_internal_error(self):
        with patch.object(CountryMembership.objects, "bulk_create", side_effect=DatabaseError("disk full")):
            with self.assertLogs("subscriptions.services", level="ERROR"):
                with self.assertRaises(InternalError):
                    services.create_subscription(self.user, self.plan.pk, [self.us.pk], "tok_visa")
        self.assertFalse(Subscription.objects.exists())

    def test_summary_failure_does_not_fail_create(self):
        with patch("subscriptions.services.refresh_candidate_summary", side_effect=RuntimeError("boom")):
            with self.assertLogs("subscriptions.services", level="WARNING"):
                sub = services.create_subscription(self.user, self.plan.pk, [self.us.pk], "tok_visa")
        self.assertEqual(sub.status, SubscriptionStatus.ACTIVE)


class AddCountriesTest(TestCase):

    def setUp(self):
        self.now = timezone.now()
        self.user = make_user()
        self.plan = make_plan()
        self.us, self.ca, self.gb, self.de = make_countries("US", "CA", "GB", "DE")
        self.sub = make_subscription(self.user, self.plan, [self.us, self.ca], days_left=30, now=self.now)

    def test_top_up_is_prorated_and_keeps_end_date(self):
        end_date = self.sub.end_date

        sub, quote = services.add_countries(self.sub.pk, self.user, [self.gb.pk], "tok_visa", now=self.now)

        self.assertEqual(quote.final_amount, Decimal("3.33"))
        self.assertEqual(sub.total_amount, Decimal("43.33"))
        self.assertEqual(sub.country_count, 3)
        self.assertEqual(sub.memberships.count(), 3)
        self.assertEqual(sub.end_date, end_date)

    def test_existing_countries_silently_dropped(self):
        sub, quote = services.add_countries(
            self.sub.pk, self.user, [self.us.pk, self.gb.pk, self.gb.pk], "tok_visa", now=self.now
        )
        self.assertEqual(quote.country_count, 1)
        self.assertEqual(sub.country_count, 3)
        self.assertEqual(sub.memberships.count(), 3)

    def test_nothing_new_to_add(self):
        with self.assertRaises(ConflictError):
            services.add_countries(self.sub.pk, self.user, [self.us.pk, self.ca.pk], "tok_visa", now=self.now)
        self.sub.refresh_from_db()
        self.assertEqual(self.sub.total_amount, Decimal("40.00"))

    def test_successive_top_ups_accumulate(self):
        services.add_countries(self.sub.pk, self.user, [self.gb.pk], "tok_visa", now=self.now)
        sub, _ = services.add_countries(self.sub.pk, self.user, [self.de.pk], "tok_visa", now=self.now)
        self.assertEqual(sub.total_amount, Decimal("46.66"))
        self.assertEqual(sub.country_count, sub.memberships.count())

    def test_other_candidates_subscription(self):
        intruder = make_user("intruder")
        with self.assertRaises(OwnershipError):
            services.add_countries(self.sub.pk, intruder, [self.gb.pk], "tok_visa", now=self.now)

    def test_unknown_subscription(self):
        with self.assertRaises(NotFoundError):
            services.add_countries("6d0c7a1e-0000-4000-8000-000000000000", self.user, [self.gb.pk], "tok_visa")

    def test_cancelled_subscription_is_terminal(self):
        self.sub.status = SubscriptionStatus.CANCELLED
        self.sub.save()
        with self.assertRaises(ConflictError):
            services.add_countries(self.sub.pk, self.user, [self.gb.pk], "tok_visa", now=self.now)

    def test_lapsed_subscription_rejected(self):
        with self.assertRaises(ConflictError):
            services.add_countries(
                self.sub.pk, self.user, [self.gb.pk], "tok_visa", now=self.now + timedelta(days=31)
            )

    def test_declined_top_up_changes_nothing(self):
        with self.assertRaises(PaymentDeclined):
            services.add_countries(self.sub.pk, self.user, [self.gb.pk], "tok_declined", now=self.now)
        self.sub.refresh_from_db()
        self.assertEqual(self.sub.country_count, 2)
        self.assertEqual(self.sub.memberships.count(), 2)

    def test_unknown_outcome_records_pending_top_up(self):
        with self.assertRaises(PaymentPendingVerification) as ctx:
            services.add_countries(self.sub.pk, self.user, [self.gb.pk], "tok_timeout", now=self.now)

        self.sub.refresh_from_db()
        self.assertEqual(self.sub.country_count, 2)
        self.assertEqual(self.sub.total_amount, Decimal("40.00"))
        self.assertEqual(self.sub.memberships.count(), 2)

        top_up = PendingTopUp.objects.get()
        self.assertEqual(top_up.reference, ctx.exception.details["reference"])
        self.assertEqual(top_up.subscription, self.sub)
        self.assertEqual(top_up.country_ids, [str(self.gb.pk)])
        self.assertEqual(top_up.amount, Decimal("3.33"))
        self.assertEqual(top_up.status, TopUpStatus.PENDING)

    def test_missing_token_provisions_no_customer(self):
        with patch("subscriptions.payment_gateway.manual.find_or_create_customer") as find_or_create:
            with self.assertRaises(ValidationError):
                services.add_countries(self.sub.pk, self.user, [self.gb.pk], "", now=self.now)
        find_or_create.assert_not_called()

    def test_charge_uses_top_up_reference(self):
        with patch("subscriptions.payment_gateway.manual.charge", wraps=services.router.get_gateway("manual").charge) as charge:
            services.add_countries(self.sub.pk, self.user, [self.gb.pk], "tok_visa", now=self.now)
        reference = charge.call_args.args[4]
        self.assertTrue(reference.startswith(f"{self.sub.pk}:topup:"))


class SerializedMutationTest(TestCase):

    def setUp(self):
        self.now = timezone.now()
        self.user = make_user()
        self.plan = make_plan()
        self.us, self.ca, self.gb, self.de = make_countries("US", "CA", "GB", "DE")
        self.sub = make_subscription(self.user, self.plan, [self.us, self.ca], days_left=30, now=self.now)

    def test_add_and_remove_lock_the_subscription_row(self):
        with patch.object(
            Subscription.objects, "select_for_update", wraps=Subscription.objects.select_for_update
        ) as lock:
            services.add_countries(self.sub.pk, self.user, [self.gb.pk], "tok_visa", now=self.now)
        lock.assert_called_once_with()

        with patch.object(
            Subscription.objects, "select_for_update", wraps=Subscription.objects.select_for_update
        ) as lock:
            services.remove_countries(self.sub.pk, self.user, [self.gb.pk], now=self.now)
        lock.assert_called_once_with()

    def test_stale_instance_does_not_overwrite_counters(self):
        stale = Subscription.objects.get(pk=self.sub.pk)

        services.add_countries(stale.pk, self.user, [self.gb.pk], "tok_visa", now=self.now)
        services.add_countries(stale.pk, self.user, [self.de.pk], "tok_visa", now=self.now)

        fresh = Subscription.objects.get(pk=self.sub.pk)
        self.assertEqual(stale.country_count, 2)
        self.assertEqual(fresh.country_count, 4)
        self.assertEqual(fresh.total_amount, Decimal("46.66"))
        self.assertEqual(fresh.memberships.count(), 4)

    def test_writes_are_additive_to_concurrent_changes(self):
        # another writer adds to the total while this top-up is being charged
        def charge_during_other_write(customer_id, amount, currency, instrument_token, reference, description=""):
            Subscription.objects.filter(pk=self.sub.pk).update(total_amount=F("total_amount") + Decimal("5.00"))
            return ChargeResult(success=True, external_charge_id="manual_ch_concurrent")

        with patch("subscriptions.payment_gateway.manual.charge", side_effect=charge_during_other_write):
            sub, quote = services.add_countries(self.sub.pk, self.user, [self.gb.pk], "tok_visa", now=self.now)

        self.assertEqual(quote.final_amount, Decimal("3.33"))
        self.assertEqual(sub.total_amount, Decimal("48.33"))
        self.assertEqual(sub.country_count, 3)


class ClientTokenTest(TestCase):

    def setUp(self):
        self.user = make_user()

    def test_provisions_customer_and_returns_token(self):
        result = services.issue_client_token(self.user)

        customer_id = f"manual_cus_{self.user.pk}"
        self.assertEqual(result, {"provider": "manual", "client_token": f"manual_ct_{customer_id}"})
        profile = CandidateProfile.objects.get(user=self.user)
        self.assertEqual(profile.billing_provider, "manual")
        self.assertEqual(profile.billing_customer_id, customer_id)

    def test_processor_failure_propagates(self):
        with patch("subscriptions.payment_gateway.manual.client_token", side_effect=PaymentProcessorError()):
            with self.assertRaises(PaymentProcessorError):
                services.issue_client_token(self.user)

    def test_unknown_provider(self):
        with self.assertRaises(ValidationError):
            services.issue_client_token(self.user, provider="paypal")


class RemoveCountriesTest(TestCase):

    def setUp(self):
        self.now = timezone.now()
        self.user = make_user()
        self.plan = make_plan()
        self.us, self.ca, self.gb = make_countries("US", "CA", "GB")
        self.sub = make_subscription(self.user, self.plan, [self.us, self.ca, self.gb], now=self.now)

    def test_remove_one_country(self):
        end_date = self.sub.end_date
        sub = services.remove_countries(self.sub.pk, self.user, [self.gb.pk], now=self.now)
        self.assertEqual(sub.country_count, 2)
        self.assertEqual(sub.memberships.count(), 2)
        self.assertEqual(sub.total_amount, Decimal("40.00"))
        self.assertEqual(sub.end_date, end_date)

    def test_removing_every_country_rejected(self):
        with self.assertRaises(ValidationError):
            services.remove_countries(self.sub.pk, self.user, [self.us.pk, self.ca.pk, self.gb.pk], now=self.now)
        self.sub.refresh_from_db()
        self.assertEqual(self.sub.country_count, 3)
        self.assertEqual(self.sub.memberships.count(), 3)

    def test_country_not_in_subscription(self):
        (de,) = make_countries("DE")
        with self.assertRaises(ValidationError):
            services.remove_countries(self.sub.pk, self.user, [de.pk], now=self.now)
        self.assertEqual(self.sub.memberships.count(), 3)

    def test_other_candidates_subscription(self):
        with self.assertRaises(OwnershipError):
            services.remove_countries(self.sub.pk, make_user("intruder"), [self.gb.pk], now=self.now)

    def test_expired_subscription(self):
        self.sub.status = SubscriptionStatus.EXPIRED
        self.sub.save()
        with self.assertRaises(ConflictError):
            services.remove_countries(self.sub.pk, self.user, [self.gb.pk], now=self.now)


class CancelSubscriptionTest(TestCase):

    def setUp(self):
        self.user = make_user()
        self.plan = make_plan()
        self.us, = make_countries("US")
        self.sub = make_subscription(self.user, self.plan, [self.us], external_subscription_id="manual_sub_1")

    def test_cancel(self):
        with patch("subscriptions.payment_gateway.manual.cancel_recurring") as cancel_recurring:
            sub = services.cancel_subscription(self.sub.pk, self.user)
        self.assertEqual(sub.status, SubscriptionStatus.CANCELLED)
        cancel_recurring.assert_called_once_with("manual_sub_1")

    def test_cancel_twice_is_conflict(self):
        services.cancel_subscription(self.sub.pk, self.user)
        with self.assertRaises(ConflictError):
            services.cancel_subscription(self.sub.pk, self.user)

    def test_processor_failure_does_not_block_cancel(self):
        with patch("subscriptions.payment_gateway.manual.cancel_recurring", side_effect=PaymentProcessorError()):
            with self.assertLogs("subscriptions.services", level="WARNING"):
                sub = services.cancel_subscription(self.sub.pk, self.user)
        self.assertEqual(sub.status, SubscriptionStatus.CANCELLED)

    def test_no_processor_call_without_recurring_id(self):
        Subscription.objects.filter(pk=self.sub.pk).update(external_subscription_id="")
        with patch("subscriptions.payment_gateway.manual.cancel_recurring") as cancel_recurring:
            services.cancel_subscription(self.sub.pk, self.user)
        cancel_recurring.assert_not_called()

    def test_candidate_cannot_cancel_others(self):
        with self.assertRaises(OwnershipError):
            services.cancel_subscription(self.sub.pk, make_user("intruder"))

    def test_admin_cancels_without_ownership(self):
        admin = make_user("admin", is_staff=True)
        sub = services.cancel_subscription(self.sub.pk, admin, enforce_owner=False)
        self.assertEqual(sub.status, SubscriptionStatus.CANCELLED)
        self.assertEqual(sub.updated_by, admin)

    def test_summary_cleared(self):
        refresh_candidate_summary(self.user)
        services.cancel_subscription(self.sub.pk, self.user)
        profile = CandidateProfile.objects.get(user=self.user)
        self.assertIsNone(profile.current_subscription)
        self.assertEqual(profile.qty, 0)
        self.assertEqual(profile.last_plan, self.plan)


class ReadSubscriptionsTest(TestCase):

    def setUp(self):
        self.user = make_user()
        self.plan = make_plan()
        self.us, = make_countries("US")

    def test_lapsed_subscriptions_expire_on_read(self):
        lapsed = make_subscription(self.user, self.plan, [self.us], days_left=-1)
        subs = list(services.list_candidate_subscriptions(self.user))
        self.assertEqual(subs[0].pk, lapsed.pk)
        self.assertEqual(subs[0].status, SubscriptionStatus.EXPIRED)

    def test_status_filter(self):
        make_subscription(self.user, self.plan, [self.us], status=SubscriptionStatus.CANCELLED)
        active = make_subscription(self.user, self.plan, [self.us])
        self.assertEqual(list(services.list_candidate_subscriptions(self.user, status="active")), [active])

    def test_invalid_status_filter(self):
        with self.assertRaises(ValidationError):
            services.list_candidate_subscriptions(self.user, status="paused")

    def test_get_subscription_for_checks_owner(self):
        sub = make_subscription(self.user, self.plan, [self.us])
        self.assertEqual(services.get_subscription_for(self.user, sub.pk), sub)
        with self.assertRaises(OwnershipError):
            services.get_subscription_for(make_user("intruder"), sub.pk)

    def test_admin_filters(self):
        other_plan = make_plan(name="One month", duration_days=30)
        mine = make_subscription(self.user, self.plan, [self.us])
        other = make_subscription(make_user("other"), other_plan, [self.us], status=SubscriptionStatus.CANCELLED)

        self.assertEqual(set(services.list_all_subscriptions()), {mine, other})
        self.assertEqual(list(services.list_all_subscriptions(status="cancelled")), [other])
        self.assertEqual(list(services.list_all_subscriptions(candidate_id=self.user.pk)), [mine])
        self.assertEqual(list(services.list_all_subscriptions(plan_id=str(other_plan.pk))), [other])
        with self.assertRaises(ValidationError):
            services.list_all_subscriptions(plan_id="bogus")

    def test_remaining_days_for(self):
        now = timezone.now()
        self.assertEqual(services.remaining_days_for(self.user, now), 0)
        make_subscription(self.user, self.plan, [self.us], days_left=12, now=now)
        self.assertEqual(services.remaining_days_for(self.user, now), 12)
