from __future__ import annotations

import logging
from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from launchpad.celery import celery_app
from .models import SurveyDraft

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=10,
    retry_jitter=True,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def purge_abandoned_drafts_task(self, batch_size: int = 200) -> int:
    """
    Delete drafts nobody has touched for DRAFT_RETENTION_DAYS, in batches.
    Returns total deleted.
    """
    cutoff = timezone.now() - timedelta(days=settings.DRAFT_RETENTION_DAYS)
    total = 0
    while True:
        ids = list(
            SurveyDraft.objects.filter(updated_at__lt=cutoff)
            .order_by("id")
            .values_list("id", flat=True)[:batch_size]
        )
        if not ids:
            break
        SurveyDraft.objects.filter(id__in=ids).delete()
        total += len(ids)
        if len(ids) < batch_size:
            break

    logger.info("Abandoned drafts purged", extra={"count": total})
    return total
