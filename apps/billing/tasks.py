from __future__ import annotations

import logging
from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from launchpad.celery import celery_app
from apps.core.credentials import open_cookies
from apps.core.engine import SurveyEngineClient
from apps.core.exceptions import EngineError
from apps.surveys.models import SurveyDraft
from .estimator import CostEstimator, remember_estimate
from .models import PaymentIntent, PaymentStatus

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    autoretry_for=(EngineError,),
    retry_backoff=2,
    retry_jitter=True,
    retry_kwargs={"max_retries": 2},
    acks_late=True,
)
def estimate_draft_cost_task(self, draft_id: int, token: int, sealed_cookies: str) -> bool:
    """
    Debounced cost estimate for a draft.

    Every cost-driving edit bumps the draft's estimate_token and enqueues this
    task with a countdown. Only the task carrying the latest token calls the
    engine; superseded ones return False without any outbound call.
    """
    draft = SurveyDraft.objects.filter(pk=draft_id).only("id", "estimate_token", "target_respondents", "budget").first()
    if draft is None or draft.estimate_token != token:
        logger.info("Estimate superseded", extra={"draft_id": draft_id, "token": token})
        return False

    client = SurveyEngineClient(cookies=open_cookies(sealed_cookies))
    estimate = CostEstimator(client).estimate(
        target_respondents=draft.target_respondents, budget=draft.budget
    )
    # The draft may have moved on while the engine answered
    current = SurveyDraft.objects.filter(pk=draft_id).values_list("estimate_token", flat=True).first()
    if current != token:
        logger.info("Estimate discarded after newer edit", extra={"draft_id": draft_id, "token": token})
        return False
    remember_estimate(draft_id, token, estimate)
    logger.info("Draft estimate stored", extra={"draft_id": draft_id, "token": token})
    return True


@celery_app.task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=10,
    retry_jitter=True,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def abandon_stale_payment_intents_task(self, batch_size: int = 200) -> int:
    """
    Mark INITIATED intents older than PAYMENT_INTENT_TTL_HOURS as ABANDONED in
    batches so a late redirect can never activate against them. Returns total updated.
    """
    now = timezone.now()
    cutoff = now - timedelta(hours=settings.PAYMENT_INTENT_TTL_HOURS)
    total = 0
    while True:
        ids = list(
            PaymentIntent.objects.filter(status=PaymentStatus.INITIATED, created_at__lt=cutoff)
            .order_by("id")
            .values_list("id", flat=True)[:batch_size]
        )
        if not ids:
            break
        updated = PaymentIntent.objects.filter(id__in=ids).update(status=PaymentStatus.ABANDONED, updated_at=now)
        total += updated
        if updated < batch_size:
            break

    logger.info("Stale payment intents abandoned", extra={"count": total})
    return total
