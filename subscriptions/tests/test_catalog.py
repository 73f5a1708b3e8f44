import uuid

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError
from django.test import TestCase

from subscriptions.catalog import default_plan, get_plan, list_active_plans, resolve_countries
from subscriptions.exceptions import NotFoundError, ValidationError
from subscriptions.models import Plan
from subscriptions.tests.helpers import make_countries, make_plan


class PlanCatalogTest(TestCase):

    def setUp(self):
        self.plan = make_plan()
        self.short = make_plan(name="One month", duration_days=30, price="5.00")
        self.retired = make_plan(name="Legacy", duration_days=90, is_active=False)

    def test_get_plan(self):
        self.assertEqual(get_plan(self.plan.pk), self.plan)

    def test_inactive_plan_not_found(self):
        with self.assertRaises(NotFoundError):
            get_plan(self.retired.pk)
        self.assertEqual(get_plan(self.retired.pk, active_only=False), self.retired)

    def test_unknown_or_malformed_plan_not_found(self):
        with self.assertRaises(NotFoundError):
            get_plan(uuid.uuid4())
        with self.assertRaises(NotFoundError):
            get_plan("not-a-uuid")

    def test_list_active_plans_sorted_by_duration(self):
        self.assertEqual(list(list_active_plans()), [self.short, self.plan])

    def test_only_one_default_plan(self):
        self.plan.is_default = True
        self.plan.save()
        self.assertEqual(default_plan(), self.plan)

        self.short.is_default = True
        with self.assertRaises(DjangoValidationError):
            self.short.clean()
        with self.assertRaises(IntegrityError):
            Plan.objects.filter(pk=self.short.pk).update(is_default=True)

    def test_inactive_plan_cannot_be_default(self):
        self.retired.is_default = True
        with self.assertRaises(DjangoValidationError):
            self.retired.clean()


class CountryCatalogTest(TestCase):

    def setUp(self):
        self.us, self.ca = make_countries("US", "CA")

    def test_resolves_in_request_order(self):
        self.assertEqual(resolve_countries([self.ca.pk, self.us.pk]), [self.ca, self.us])

    def test_unknown_country_fails_whole_request(self):
        missing = str(uuid.uuid4())
        with self.assertRaises(ValidationError) as ctx:
            resolve_countries([self.us.pk, missing])
        self.assertEqual(ctx.exception.details["unknown_country_ids"], [missing])

    def test_malformed_country_id(self):
        with self.assertRaises(ValidationError):
            resolve_countries(["nope"])
