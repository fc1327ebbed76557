from __future__ import annotations

import logging
from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from launchpad.celery import celery_app
from .models import SurveySession, SessionState

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=10,
    retry_jitter=True,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def expire_stale_sessions_task(self, batch_size: int = 200) -> int:
    """
    Delete unfinished runner sessions idle for longer than SESSION_RETENTION_HOURS.
    Completed sessions are kept. Returns total deleted.
    """
    cutoff = timezone.now() - timedelta(hours=settings.SESSION_RETENTION_HOURS)
    total = 0
    while True:
        ids = list(
            SurveySession.objects.filter(updated_at__lt=cutoff)
            .exclude(state=SessionState.COMPLETED)
            .order_by("id")
            .values_list("id", flat=True)[:batch_size]
        )
        if not ids:
            break
        SurveySession.objects.filter(id__in=ids).delete()
        total += len(ids)
        if len(ids) < batch_size:
            break

    logger.info("Stale runner sessions expired", extra={"count": total})
    return total
