"""
Denormalized subscription summary kept on the candidate profile.

The summary is a projection: it is always recomputed from the candidate's
authoritative subscription and never written to on its own, so a missed or
failed refresh is corrected by the next one.
"""
import logging

from django.utils import timezone

from .models import CandidateProfile

logger = logging.getLogger(__name__)


def get_profile(user) -> CandidateProfile:
    profile, _ = CandidateProfile.objects.get_or_create(
        user=user, defaults={"full_name": user.get_full_name()}
    )
    return profile


def refresh_candidate_summary(user, now=None) -> CandidateProfile:
    from subscriptions.models import Subscription

    now = now or timezone.now()
    profile = get_profile(user)
    current = Subscription.objects.select_related("plan").current_for(user, now)

    if current:
        profile.current_subscription = current
        profile.last_plan = current.plan
        profile.qty = current.country_count
        profile.unit_price = current.plan.price_per_country
        profile.expiry_date = current.end_date
    else:
        # keep last_plan for history, drop everything that implies access
        profile.current_subscription = None
        profile.qty = 0
        profile.unit_price = None
        profile.expiry_date = None

    profile.summary_refreshed_on = now
    profile.save(update_fields=[
        "current_subscription", "last_plan", "qty", "unit_price", "expiry_date",
        "summary_refreshed_on", "updated_on",
    ])
    logger.debug("Refreshed subscription summary for candidate %s", user.pk)
    return profile
