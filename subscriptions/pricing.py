"""
Pricing and proration.

Pure functions: no database access, no clock other than the `now` they are given
(or `timezone.now()` when omitted). Amounts are Decimal and rounded exactly once,
half-up to cents, on the final amount.
"""
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from django.utils import timezone

from .exceptions import ValidationError
from .periods import period_end, remaining_days as days_left

TWO_PLACES = Decimal("0.01")


def round2(amount) -> Decimal:
    return Decimal(amount).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceQuote:
    country_count: int
    original_amount: Decimal
    final_amount: Decimal
    effective_duration_days: int
    original_duration_days: int
    remaining_days: int
    is_prorated: bool
    start_date: datetime
    end_date: datetime

    def as_dict(self) -> dict:
        return asdict(self)


def _canonical_id(value) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        return str(value)


def normalize_country_ids(country_ids, *, allow_duplicates=False) -> list[str]:
    """String ids in request order. Duplicates are dropped when allowed, rejected otherwise."""
    ids = [_canonical_id(cid) for cid in (country_ids or []) if cid not in (None, "")]
    if not ids:
        raise ValidationError("At least one country must be selected.")

    seen, unique, duplicates = set(), [], []
    for cid in ids:
        if cid in seen:
            duplicates.append(cid)
            continue
        seen.add(cid)
        unique.append(cid)

    if duplicates and not allow_duplicates:
        raise ValidationError(
            "Each country can only be selected once.", duplicate_country_ids=sorted(set(duplicates))
        )
    return unique


def calculate_price(plan, country_ids, remaining_days: int = 0, *, now=None) -> PriceQuote:
    """
    Price `country_ids` on `plan` for a candidate with `remaining_days` left on
    their current entitlement (0 when they have none).

    Without an entitlement the full plan is sold. With one, the new window is
    capped at the remaining days and the price scaled by the fraction of the plan granted.
    """
    ids = normalize_country_ids(country_ids)
    now = now or timezone.now()

    duration = int(plan.duration_days)
    if duration <= 0:
        raise ValidationError("Plan duration must be positive.")

    country_count = len(ids)
    original_amount = Decimal(str(plan.price_per_country)) * country_count
    remaining = max(int(remaining_days or 0), 0)

    if remaining > 0:
        effective = min(remaining, duration)
        final_amount = round2(original_amount * effective / duration)
        is_prorated = True
    else:
        effective = duration
        final_amount = round2(original_amount)
        is_prorated = False

    return PriceQuote(
        country_count=country_count,
        original_amount=round2(original_amount),
        final_amount=final_amount,
        effective_duration_days=effective,
        original_duration_days=duration,
        remaining_days=remaining,
        is_prorated=is_prorated,
        start_date=now,
        end_date=period_end(now, effective),
    )


def calculate_top_up(plan, country_ids, subscription_end, *, now=None) -> PriceQuote:
    """
    Price countries added to a running subscription. The added countries live exactly
    as long as the subscription does, so the window ends at `subscription_end`.
    """
    now = now or timezone.now()
    left = days_left(subscription_end, now)
    if left <= 0:
        raise ValidationError("Subscription has already expired.")

    quote = calculate_price(plan, country_ids, left, now=now)
    return PriceQuote(**{**quote.as_dict(), "end_date": subscription_end})
