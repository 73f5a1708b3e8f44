import logging

from celery import shared_task
from django.contrib.auth import get_user_model

from subscriptions.services import expire_lapsed_subscriptions as expire_lapsed, refresh_summary

logger = logging.getLogger(__name__)


@shared_task(name="subscriptions.expire_lapsed_subscriptions")
def expire_lapsed_subscriptions():
    """
    Move every active subscription past its end date to expired and rebuild the
    affected candidates' summaries. Scheduled daily through Celery beat.
    """
    count, candidate_ids = expire_lapsed()
    if not count:
        logger.info("No lapsed subscriptions to expire")
        return 0

    for candidate in get_user_model().objects.filter(pk__in=candidate_ids):
        refresh_summary(candidate)

    logger.info("Expired %d subscriptions across %d candidates", count, len(candidate_ids))
    return count
