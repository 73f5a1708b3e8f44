"""Read-only access to plans and countries, as the lifecycle services consume them."""
from django.core.exceptions import ValidationError as DjangoValidationError

from .exceptions import NotFoundError, ValidationError
from .models import Country, Plan
from .pricing import normalize_country_ids


def get_plan(plan_id, *, active_only=True) -> Plan:
    try:
        plan = Plan.objects.get(pk=plan_id)
    except (Plan.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError("Subscription plan not found or inactive.", plan_id=str(plan_id))
    if active_only and not plan.is_active:
        raise NotFoundError("Subscription plan not found or inactive.", plan_id=str(plan_id))
    return plan


def list_active_plans():
    return Plan.objects.filter(is_active=True).order_by("duration_days", "sort_order", "name")


def default_plan() -> Plan | None:
    return Plan.objects.filter(is_active=True, is_default=True).first()


def list_countries():
    return Country.objects.all()


def resolve_countries(country_ids, *, allow_duplicates=False) -> list[Country]:
    """
    Countries for `country_ids` in request order. Any unknown id fails the whole
    request; there is no partial success.
    """
    ids = normalize_country_ids(country_ids, allow_duplicates=allow_duplicates)
    try:
        found = {str(c.pk): c for c in Country.objects.filter(pk__in=ids)}
    except (DjangoValidationError, ValueError):
        raise ValidationError("One or more invalid country IDs.")

    unknown = [cid for cid in ids if cid not in found]
    if unknown:
        raise ValidationError("One or more invalid country IDs.", unknown_country_ids=unknown)
    return [found[cid] for cid in ids]
