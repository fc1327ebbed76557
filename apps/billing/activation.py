"""
DRAFT -> ACTIVE gate.

A survey goes live only when the freshly observed wallet balance covers the
freshly quoted cost (or the cost is zero). Otherwise a top-up PaymentIntent is
opened and the caller is sent to the provider's authorization page. The return
from that page is treated as untrusted: the payment is verified by reference,
the survey and balance are re-read, and activation is retried exactly once.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from django.conf import settings

from apps.core.engine import SurveyEngineClient
from apps.core.enums import SurveyStatus
from apps.core.exceptions import (
    ActivationFailure, EngineError, PaymentProviderFailure, PlanLimitExceeded, TopUpInsufficientAfterPayment,
    Unauthorized,
)
from apps.core.utility import new_idempotency_key, parse_decimal, parse_int
from .estimator import CostEstimate, CostEstimator
from .models import PaymentIntent, PaymentStatus, PaymentSubject

logger = logging.getLogger(__name__)

ACTIVE = "ACTIVE"
AWAITING_FUNDS = "AWAITING_FUNDS"
FUNDED = "FUNDED"

_PAID = {"success", "succeeded", "successful", "completed", "paid"}
_UNPAID = {"failed", "abandoned", "reversed", "cancelled", "canceled"}


@dataclass(frozen=True)
class ActivationOutcome:
    state: str
    survey_id: Optional[str] = None
    estimate: Optional[CostEstimate] = None
    intent: Optional[PaymentIntent] = None

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"state": self.state, "survey_id": self.survey_id}
        out["estimate"] = self.estimate.to_wire() if self.estimate else None
        if self.intent is not None:
            out["payment"] = {
                "idempotency_key": self.intent.idempotency_key,
                "authorization_url": self.intent.authorization_url,
                "reference": self.intent.reference,
                "amount": str(self.intent.amount),
                "currency": self.intent.currency,
                "status": self.intent.status,
            }
        else:
            out["payment"] = None
        return out


def _status_of(survey: Dict[str, Any]) -> str:
    return str((survey or {}).get("status") or "").upper()


class ActivationGate:
    def __init__(self, owner_id: str, client: SurveyEngineClient, estimator: Optional[CostEstimator] = None):
        self.owner_id = owner_id
        self.client = client
        self.estimator = estimator or CostEstimator(client)

    # ---- checks ------------------------------------------------------------------

    def _estimate_for(self, survey: Dict[str, Any]) -> CostEstimate:
        target = parse_int(survey.get("targetRespondents"), 0) or None
        budget = None if target else parse_decimal(survey.get("budget"))
        return self.estimator.estimate(target_respondents=target, budget=budget or None)

    def _check_plan(self, target_respondents: int) -> None:
        """Respondent cap: the plan's maxResponsesPerSurvey, or the free-tier cap without a subscription."""
        subscription = self.client.get_subscription()
        if subscription is None:
            cap: Optional[int] = settings.FREE_TIER_MAX_RESPONDENTS
        else:
            features = ((subscription.get("plan") or {}).get("features")) or {}
            cap = features.get("maxResponsesPerSurvey")
        if cap is not None and target_respondents > int(cap):
            raise PlanLimitExceeded(
                f"This plan allows up to {cap} responses per survey; {target_respondents} requested."
            )

    def _activate(self, survey_id: str) -> Dict[str, Any]:
        try:
            survey = self.client.activate_survey(survey_id)
        except EngineError as e:
            if e.retryable:
                raise
            raise ActivationFailure(str(e.detail)) from e
        logger.info("Survey activated", extra={"survey_id": survey_id, "owner_id": self.owner_id})
        return survey

    # ---- payment intents ---------------------------------------------------------

    def _open_intent(self, amount: Decimal, subject: str, survey_id: Optional[str] = None,
                     currency: Optional[str] = None, callback_url: Optional[str] = None) -> PaymentIntent:
        currency = (currency or settings.PAYMENT_DEFAULT_CURRENCY).upper()
        if currency not in settings.PAYMENT_CURRENCIES:
            raise ValueError(f"Unsupported currency: {currency}")
        if amount is None or amount <= 0:
            raise ValueError("amount must be positive")

        intent = PaymentIntent.objects.create(
            owner_id=self.owner_id,
            amount=amount,
            currency=currency,
            subject=subject,
            survey_id=survey_id,
            idempotency_key=new_idempotency_key(),
        )
        try:
            resp = self.client.initiate_payment(
                amount, currency, survey_id if subject == PaymentSubject.SURVEY else subject,
                intent.idempotency_key, callback_url or settings.PAYMENT_CALLBACK_URL or None,
            ) or {}
        except EngineError as e:
            intent.status = PaymentStatus.FAILED
            intent.save(update_fields=["status", "updated_at"])
            logger.warning("Payment initiation failed", extra={"idempotency_key": intent.idempotency_key})
            raise PaymentProviderFailure(str(e.detail)) from e

        data = resp.get("data") if isinstance(resp.get("data"), dict) else resp
        url = data.get("authorization_url") or data.get("authorizationUrl")
        if not url:
            intent.status = PaymentStatus.FAILED
            intent.save(update_fields=["status", "updated_at"])
            raise PaymentProviderFailure("Payment provider returned no authorization URL")

        intent.authorization_url = url
        intent.reference = data.get("reference") or None
        intent.save(update_fields=["authorization_url", "reference", "updated_at"])
        logger.info(
            "Payment intent opened",
            extra={"idempotency_key": intent.idempotency_key, "subject": subject, "survey_id": survey_id,
                   "amount": str(amount)},
        )
        return intent

    def start_wallet_topup(self, amount: Decimal, currency: Optional[str] = None,
                           callback_url: Optional[str] = None) -> PaymentIntent:
        return self._open_intent(amount, PaymentSubject.WALLET_TOPUP, currency=currency, callback_url=callback_url)

    # ---- activation --------------------------------------------------------------

    def attempt_activation(self, survey_id: str, currency: Optional[str] = None,
                           callback_url: Optional[str] = None) -> ActivationOutcome:
        survey = self.client.get_survey(survey_id)
        status = _status_of(survey)
        if status == SurveyStatus.ACTIVE.value:
            return ActivationOutcome(state=ACTIVE, survey_id=str(survey_id))
        if status != SurveyStatus.DRAFT.value:
            raise ActivationFailure(f"Only draft surveys can be activated (status is {status or 'unknown'}).")
        if not survey.get("questions"):
            raise ActivationFailure("A survey needs at least one question before activation.")

        estimate = self._estimate_for(survey)
        self._check_plan(estimate.target_respondents)

        if estimate.estimated_cost == 0 or estimate.is_sufficient_funds:
            self._activate(survey_id)
            return ActivationOutcome(state=ACTIVE, survey_id=str(survey_id), estimate=estimate)

        intent = self._open_intent(
            estimate.required_top_up_amount, PaymentSubject.SURVEY, survey_id=str(survey_id),
            currency=currency, callback_url=callback_url,
        )
        return ActivationOutcome(state=AWAITING_FUNDS, survey_id=str(survey_id), estimate=estimate, intent=intent)

    def _verify(self, intent: PaymentIntent) -> None:
        try:
            resp = self.client.verify_payment(intent.reference) or {}
        except EngineError as e:
            raise PaymentProviderFailure(str(e.detail)) from e
        data = resp.get("data") if isinstance(resp.get("data"), dict) else resp
        outcome = str(data.get("status") or "").lower()
        if outcome in _PAID:
            intent.status = PaymentStatus.SUCCEEDED
        elif outcome in _UNPAID:
            intent.status = PaymentStatus.FAILED
        intent.save(update_fields=["status", "updated_at"])
        logger.info("Payment verified", extra={"reference": intent.reference, "status": intent.status})

    def complete_funding(self, reference: str) -> ActivationOutcome:
        """
        Handle the return from the provider's page. Raises PaymentIntent.DoesNotExist
        for references this operator never opened.
        """
        intent = PaymentIntent.objects.get(reference=reference, owner_id=self.owner_id)
        if intent.status == PaymentStatus.INITIATED:
            self._verify(intent)
        if intent.status in (PaymentStatus.FAILED, PaymentStatus.ABANDONED):
            raise PaymentProviderFailure("The payment was not completed.")
        if intent.status == PaymentStatus.INITIATED:
            # Provider hasn't settled yet; the caller may come back later
            return ActivationOutcome(state=AWAITING_FUNDS, survey_id=intent.survey_id, intent=intent)

        if intent.subject == PaymentSubject.WALLET_TOPUP:
            return ActivationOutcome(state=FUNDED, intent=intent)

        survey = self.client.get_survey(intent.survey_id)
        status = _status_of(survey)
        if status == SurveyStatus.ACTIVE.value:
            return ActivationOutcome(state=ACTIVE, survey_id=intent.survey_id, intent=intent)
        if status != SurveyStatus.DRAFT.value:
            raise ActivationFailure(f"Survey can no longer be activated (status is {status or 'unknown'}).")

        claimed = PaymentIntent.objects.filter(pk=intent.pk, activation_retried=False).update(activation_retried=True)
        if not claimed:
            raise TopUpInsufficientAfterPayment()

        try:
            estimate = self._estimate_for(survey)
            if estimate.estimated_cost > 0 and not estimate.is_sufficient_funds:
                logger.warning(
                    "Balance still short after top-up",
                    extra={"survey_id": intent.survey_id, "shortfall": str(estimate.required_top_up_amount)},
                )
                raise TopUpInsufficientAfterPayment()
            self._activate(intent.survey_id)
        except (EngineError, Unauthorized) as e:
            if isinstance(e, Unauthorized) or e.retryable:
                # The attempt never reached a verdict; hand the retry back
                PaymentIntent.objects.filter(pk=intent.pk).update(activation_retried=False)
                logger.info("Activation retry released", extra={"reference": intent.reference})
            raise

        intent.refresh_from_db()
        return ActivationOutcome(state=ACTIVE, survey_id=intent.survey_id, estimate=estimate, intent=intent)
