from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from apps.core.engine import SurveyEngineClient
from apps.core.exceptions import EngineError
from .estimator import CostEstimator
from .models import PaymentIntent, PaymentStatus, PaymentSubject
from .tasks import abandon_stale_payment_intents_task

PLAN = {"plan": {"name": "Growth", "features": {"maxResponsesPerSurvey": 1000}}}


def login(client, user_id="op-1"):
    session = client.session
    session["auth"] = {"user": {"id": user_id, "email": f"{user_id}@example.com"}, "isAuthenticated": True}
    session.save()


def draft_survey(survey_id=42, target=100, status="DRAFT"):
    return {
        "id": survey_id,
        "name": "Pulse",
        "status": status,
        "targetRespondents": target,
        "questions": [{"id": 1, "questionText": "Recommend?", "questionType": "NPS_SCALE", "position": 1}],
    }


def quote(target=100, cpr="10", balance="500"):
    cost = Decimal(cpr) * target
    return {
        "targetRespondents": target,
        "costPerRespondent": cpr,
        "estimatedCost": str(cost),
        "currentWalletBalance": balance,
    }


def payment_link(reference):
    return {"status": True, "data": {"authorization_url": f"https://pay.example/{reference}", "reference": reference}}


class CostEstimatorTests(TestCase):
    def setUp(self):
        self.client_ = SurveyEngineClient()

    def test_shortfall_is_derived_from_cost_and_balance(self):
        # Engine claims sufficiency; the derived values win
        upstream = {**quote(100, "10", "500"), "isSufficientFunds": True, "requiredTopUpAmount": "0"}
        with patch.object(SurveyEngineClient, "calculate_cost", return_value=upstream):
            estimate = CostEstimator(self.client_).estimate(target_respondents=100)
        self.assertEqual(estimate.estimated_cost, Decimal("1000"))
        self.assertFalse(estimate.is_sufficient_funds)
        self.assertEqual(estimate.required_top_up_amount, Decimal("500"))

    def test_exact_balance_is_sufficient(self):
        with patch.object(SurveyEngineClient, "calculate_cost", return_value=quote(50, "10", "500")):
            estimate = CostEstimator(self.client_).estimate(target_respondents=50)
        self.assertTrue(estimate.is_sufficient_funds)
        self.assertEqual(estimate.required_top_up_amount, Decimal("0"))

    def test_missing_balance_falls_back_to_wallet(self):
        partial = {"targetRespondents": 20, "costPerRespondent": "2.50"}
        with patch.object(SurveyEngineClient, "calculate_cost", return_value=partial), \
                patch.object(SurveyEngineClient, "get_wallet_balance", return_value=Decimal("10")) as wallet:
            estimate = CostEstimator(self.client_).estimate(target_respondents=20)
        wallet.assert_called_once_with()
        self.assertEqual(estimate.estimated_cost, Decimal("50.00"))
        self.assertEqual(estimate.required_top_up_amount, Decimal("40.00"))

    def test_no_cost_driver_gives_zero_estimate(self):
        with patch.object(SurveyEngineClient, "calculate_cost") as calc, \
                patch.object(SurveyEngineClient, "get_wallet_balance", return_value=Decimal("3")):
            estimate = CostEstimator(self.client_).estimate()
        calc.assert_not_called()
        self.assertEqual(estimate.estimated_cost, Decimal("0"))
        self.assertTrue(estimate.is_sufficient_funds)

    def test_target_and_budget_together_are_rejected(self):
        with self.assertRaises(ValueError):
            CostEstimator(self.client_).estimate(target_respondents=10, budget=Decimal("5"))


class ActivationApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        login(self.client)

    def test_estimate_endpoint(self):
        with patch.object(SurveyEngineClient, "calculate_cost", return_value=quote()):
            resp = self.client.post("/api/v1/billing/estimate/", {"target_respondents": 100}, format="json")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["requiredTopUpAmount"], "500")
        self.assertFalse(resp.json()["isSufficientFunds"])

    def test_zero_cost_activates_without_payment(self):
        survey = {**draft_survey(target=None), "targetRespondents": None}
        with patch.object(SurveyEngineClient, "get_survey", return_value=survey), \
                patch.object(SurveyEngineClient, "get_wallet_balance", return_value=Decimal("0")), \
                patch.object(SurveyEngineClient, "get_subscription", return_value=None), \
                patch.object(SurveyEngineClient, "activate_survey", return_value={"id": 42, "status": "ACTIVE"}) as activate, \
                patch.object(SurveyEngineClient, "initiate_payment") as initiate:
            resp = self.client.post("/api/v1/billing/activate/42/", {}, format="json")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["state"], "ACTIVE")
        activate.assert_called_once_with("42")
        initiate.assert_not_called()
        self.assertFalse(PaymentIntent.objects.exists())

    def test_zero_quote_with_empty_wallet_activates(self):
        with patch.object(SurveyEngineClient, "get_survey", return_value=draft_survey(target=10)), \
                patch.object(SurveyEngineClient, "calculate_cost", return_value=quote(10, "0", "0")), \
                patch.object(SurveyEngineClient, "get_subscription", return_value=None), \
                patch.object(SurveyEngineClient, "activate_survey", return_value={"id": 42}) as activate, \
                patch.object(SurveyEngineClient, "initiate_payment") as initiate:
            resp = self.client.post("/api/v1/billing/activate/42/", {}, format="json")
        self.assertEqual(resp.json()["state"], "ACTIVE")
        activate.assert_called_once()
        initiate.assert_not_called()

    def test_short_balance_opens_payment_and_never_activates(self):
        with patch.object(SurveyEngineClient, "get_survey", return_value=draft_survey()), \
                patch.object(SurveyEngineClient, "calculate_cost", return_value=quote()), \
                patch.object(SurveyEngineClient, "get_subscription", return_value=PLAN), \
                patch.object(SurveyEngineClient, "activate_survey") as activate, \
                patch.object(SurveyEngineClient, "initiate_payment", return_value=payment_link("ref-1")) as initiate:
            resp = self.client.post("/api/v1/billing/activate/42/", {"currency": "NGN"}, format="json")

        self.assertEqual(resp.status_code, 202)
        body = resp.json()
        self.assertEqual(body["state"], "AWAITING_FUNDS")
        self.assertEqual(body["payment"]["authorization_url"], "https://pay.example/ref-1")
        self.assertEqual(Decimal(body["payment"]["amount"]), Decimal("500"))
        activate.assert_not_called()

        amount, currency, subject, key, callback = initiate.call_args.args
        self.assertEqual((amount, currency, subject), (Decimal("500"), "NGN", "42"))
        self.assertTrue(key.startswith("pay_"))
        self.assertTrue(callback.endswith("/api/v1/billing/payments/callback/"))

        intent = PaymentIntent.objects.get()
        self.assertEqual(intent.subject, PaymentSubject.SURVEY)
        self.assertEqual(intent.reference, "ref-1")
        self.assertEqual(intent.status, PaymentStatus.INITIATED)

    def test_each_attempt_uses_a_new_idempotency_key(self):
        with patch.object(SurveyEngineClient, "get_survey", return_value=draft_survey()), \
                patch.object(SurveyEngineClient, "calculate_cost", return_value=quote()), \
                patch.object(SurveyEngineClient, "get_subscription", return_value=PLAN), \
                patch.object(SurveyEngineClient, "initiate_payment",
                             side_effect=[payment_link("ref-a"), payment_link("ref-b")]) as initiate:
            self.client.post("/api/v1/billing/activate/42/", {}, format="json")
            self.client.post("/api/v1/billing/activate/42/", {}, format="json")
        keys = [c.args[3] for c in initiate.call_args_list]
        self.assertEqual(len(set(keys)), 2)
        self.assertEqual(PaymentIntent.objects.count(), 2)
        self.assertEqual({i.currency for i in PaymentIntent.objects.all()}, {"USD"})

    def test_free_tier_cap(self):
        with patch.object(SurveyEngineClient, "get_survey", return_value=draft_survey(target=100)), \
                patch.object(SurveyEngineClient, "calculate_cost", return_value=quote(100, "1", "5000")), \
                patch.object(SurveyEngineClient, "get_subscription", return_value=None), \
                patch.object(SurveyEngineClient, "activate_survey") as activate:
            resp = self.client.post("/api/v1/billing/activate/42/", {}, format="json")
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["code"], "plan_limit_exceeded")
        activate.assert_not_called()

    def test_non_draft_cannot_be_activated(self):
        with patch.object(SurveyEngineClient, "get_survey", return_value=draft_survey(status="CLOSED")):
            resp = self.client.post("/api/v1/billing/activate/42/", {}, format="json")
        self.assertEqual(resp.status_code, 409)

    def test_provider_failure_marks_intent_failed(self):
        with patch.object(SurveyEngineClient, "get_survey", return_value=draft_survey()), \
                patch.object(SurveyEngineClient, "calculate_cost", return_value=quote()), \
                patch.object(SurveyEngineClient, "get_subscription", return_value=PLAN), \
                patch.object(SurveyEngineClient, "initiate_payment", side_effect=EngineError("gateway down")):
            resp = self.client.post("/api/v1/billing/activate/42/", {}, format="json")
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.json()["code"], "payment_provider_failed")
        self.assertEqual(PaymentIntent.objects.get().status, PaymentStatus.FAILED)


class PaymentCallbackTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        login(self.client)
        self.intent = PaymentIntent.objects.create(
            owner_id="op-1", amount=Decimal("500"), currency="USD", subject=PaymentSubject.SURVEY,
            survey_id="42", idempotency_key="pay_abc", reference="ref-1",
            authorization_url="https://pay.example/ref-1",
        )

    def _callback(self, **params):
        return self.client.get("/api/v1/billing/payments/callback/", params or {"reference": "ref-1"})

    def test_verified_payment_activates(self):
        with patch.object(SurveyEngineClient, "verify_payment", return_value={"data": {"status": "success"}}), \
                patch.object(SurveyEngineClient, "get_survey", return_value=draft_survey()), \
                patch.object(SurveyEngineClient, "calculate_cost", return_value=quote(100, "10", "1000")), \
                patch.object(SurveyEngineClient, "activate_survey", return_value={"id": 42}) as activate:
            resp = self._callback(trxref="ref-1")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["state"], "ACTIVE")
        activate.assert_called_once_with("42")
        self.intent.refresh_from_db()
        self.assertEqual(self.intent.status, PaymentStatus.SUCCEEDED)
        self.assertTrue(self.intent.activation_retried)

    def test_still_short_after_payment_retries_once(self):
        with patch.object(SurveyEngineClient, "verify_payment", return_value={"status": "success"}), \
                patch.object(SurveyEngineClient, "get_survey", return_value=draft_survey()), \
                patch.object(SurveyEngineClient, "calculate_cost", return_value=quote(100, "10", "900")) as calc, \
                patch.object(SurveyEngineClient, "activate_survey") as activate:
            first = self._callback()
            second = self._callback()

        for resp in (first, second):
            self.assertEqual(resp.status_code, 402)
            self.assertEqual(resp.json()["code"], "TOPUP_INSUFFICIENT_AFTER_PAYMENT")
        self.assertEqual(calc.call_count, 1)
        activate.assert_not_called()

    def test_engine_outage_during_activation_keeps_the_retry(self):
        with patch.object(SurveyEngineClient, "verify_payment", return_value={"data": {"status": "success"}}), \
                patch.object(SurveyEngineClient, "get_survey", return_value=draft_survey()), \
                patch.object(SurveyEngineClient, "calculate_cost",
                             side_effect=[EngineError("engine timeout"), quote(100, "10", "1000")]), \
                patch.object(SurveyEngineClient, "activate_survey", return_value={"id": 42}) as activate:
            first = self._callback()
            self.intent.refresh_from_db()
            self.assertFalse(self.intent.activation_retried)
            second = self._callback()

        self.assertEqual(first.status_code, 502)
        self.assertTrue(first.json()["retryable"])
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.json()["state"], "ACTIVE")
        activate.assert_called_once_with("42")

    def test_unpaid_reference_is_rejected(self):
        with patch.object(SurveyEngineClient, "verify_payment", return_value={"data": {"status": "abandoned"}}), \
                patch.object(SurveyEngineClient, "activate_survey") as activate:
            resp = self._callback()
        self.assertEqual(resp.status_code, 502)
        activate.assert_not_called()
        self.intent.refresh_from_db()
        self.assertEqual(self.intent.status, PaymentStatus.FAILED)

    def test_pending_payment_keeps_waiting(self):
        with patch.object(SurveyEngineClient, "verify_payment", return_value={"data": {"status": "ongoing"}}):
            resp = self._callback()
        self.assertEqual(resp.status_code, 202)
        self.assertEqual(resp.json()["state"], "AWAITING_FUNDS")

    def test_already_active_survey_is_not_reactivated(self):
        with patch.object(SurveyEngineClient, "verify_payment", return_value={"data": {"status": "success"}}), \
                patch.object(SurveyEngineClient, "get_survey", return_value=draft_survey(status="ACTIVE")), \
                patch.object(SurveyEngineClient, "activate_survey") as activate:
            resp = self._callback()
        self.assertEqual(resp.json()["state"], "ACTIVE")
        activate.assert_not_called()

    def test_unknown_or_foreign_reference(self):
        self.assertEqual(self._callback(reference="nope").status_code, 404)
        other = APIClient()
        login(other, "op-2")
        resp = other.get("/api/v1/billing/payments/callback/", {"reference": "ref-1"})
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(self._callback(reference="").status_code, 400)

    def test_wallet_topup_reports_funded(self):
        with patch.object(SurveyEngineClient, "initiate_payment", return_value=payment_link("ref-w")) as initiate:
            resp = self.client.post("/api/v1/billing/topup/", {"amount": "250.00", "currency": "GHS"}, format="json")
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(initiate.call_args.args[2], PaymentSubject.WALLET_TOPUP)

        with patch.object(SurveyEngineClient, "verify_payment", return_value={"data": {"status": "success"}}), \
                patch.object(SurveyEngineClient, "get_survey") as get_survey:
            done = self._callback(reference="ref-w")
        self.assertEqual(done.json()["state"], "FUNDED")
        get_survey.assert_not_called()

    def test_stale_intents_are_abandoned(self):
        PaymentIntent.objects.filter(pk=self.intent.pk).update(created_at=timezone.now() - timedelta(days=3))
        fresh = PaymentIntent.objects.create(
            owner_id="op-1", amount=Decimal("5"), currency="USD", subject=PaymentSubject.WALLET_TOPUP,
            idempotency_key="pay_new",
        )
        self.assertEqual(abandon_stale_payment_intents_task(), 1)
        self.intent.refresh_from_db()
        fresh.refresh_from_db()
        self.assertEqual(self.intent.status, PaymentStatus.ABANDONED)
        self.assertEqual(fresh.status, PaymentStatus.INITIATED)
        self.assertEqual(self._callback().status_code, 502)
