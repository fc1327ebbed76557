from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.core.cache import cache
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from apps.core.engine import SurveyEngineClient
from apps.core.exceptions import EngineError, Unauthorized
from apps.billing.tasks import estimate_draft_cost_task
from .models import SurveyDraft, WizardStep
from .questions import Question, QuestionType, decode_options, question_from_payload, validate
from .tasks import purge_abandoned_drafts_task


def login(client, user_id="op-1"):
    session = client.session
    session["auth"] = {"user": {"id": user_id, "email": f"{user_id}@example.com"}, "isAuthenticated": True}
    session.save()


class QuestionValidationTests(TestCase):
    def test_nps_bounds(self):
        q = Question(id="q1", text="Recommend us?", type=QuestionType.NPS_SCALE, required=True)
        self.assertTrue(validate(q, 0).ok)
        self.assertTrue(validate(q, 10).ok)
        res = validate(q, 11)
        self.assertFalse(res.ok)
        self.assertEqual(res.reason, "out_of_range")
        self.assertEqual(validate(q, None).reason, "required")

    def test_rating_variants(self):
        star = Question(id="s", text="Stars", type=QuestionType.RATING_STAR)
        linear = Question(id="l", text="Linear", type=QuestionType.RATING_LINEAR)
        self.assertTrue(validate(star, 5).ok)
        self.assertFalse(validate(star, 6).ok)
        self.assertFalse(validate(linear, 0).ok)
        self.assertTrue(validate(linear, "10").ok)
        self.assertEqual(validate(linear, True).reason, "expected_integer")
        self.assertEqual(validate(linear, 4.5).reason, "expected_integer")

    def test_choice_values_must_come_from_options(self):
        single = question_from_payload(
            {"questionText": "Pick", "questionType": "MULTIPLE_CHOICE_SINGLE", "options": '["Red","Blue"]'}
        )
        self.assertEqual(single.options, ("Red", "Blue"))
        self.assertTrue(validate(single, "Red").ok)
        self.assertEqual(validate(single, "Green").reason, "invalid_option")

        multi = Question(id="m", text="Pick many", type=QuestionType.MULTIPLE_CHOICE_MULTI, options=("a", "b", "c"))
        self.assertTrue(validate(multi, ["a", "c"]).ok)
        self.assertEqual(validate(multi, ["a", "z"]).reason, "invalid_option")
        self.assertEqual(validate(multi, ["a", "a"]).reason, "duplicate_option")
        self.assertEqual(validate(multi, "a").reason, "expected_option_list")

    def test_free_text_required_and_optional(self):
        required = Question(id="t", text="Why?", type=QuestionType.FREE_TEXT, required=True)
        optional = Question(id="o", text="Anything else?", type=QuestionType.FREE_TEXT, required=False)
        self.assertEqual(validate(required, "   ").reason, "required")
        self.assertTrue(validate(required, "Because").ok)
        self.assertTrue(validate(optional, "").ok)

    def test_unknown_type_falls_back_to_plain_text(self):
        q = question_from_payload({"questionText": "Upload a file", "questionType": "FILE_UPLOAD", "options": "x,y"})
        self.assertEqual(q.type, QuestionType.PLAIN_TEXT)
        self.assertEqual(q.raw_type, "FILE_UPLOAD")
        self.assertEqual(q.options, ())
        self.assertTrue(validate(q, "anything").ok)
        self.assertEqual(validate(q, "").reason, "required")

    def test_options_only_on_choice_variants(self):
        q = Question(id="n", text="Score", type=QuestionType.NPS_SCALE, options=("1", "2"))
        self.assertEqual(q.options, ())
        self.assertEqual(decode_options("A, B ,A"), ("A", "B"))
        self.assertEqual(decode_options(None), ())


class BuilderApiTests(TestCase):
    def setUp(self):
        cache.clear()
        self.client = APIClient()
        login(self.client)

    def _step(self, step):
        return self.client.post("/api/v1/builder/step/", {"step": step}, format="json")

    def _to_questions_step(self):
        self.client.post("/api/v1/builder/method/", {"method": "MANUAL", "survey_type": "NPS"}, format="json")
        self._step("CONTENT")
        self.client.post("/api/v1/builder/skip/", {}, format="json")
        self._step("QUESTIONS")

    def _add(self, text, qtype="FREE_TEXT", **extra):
        payload = {"text": text, "type": qtype, **extra}
        resp = self.client.post("/api/v1/builder/questions/", payload, format="json")
        self.assertEqual(resp.status_code, 201, resp.content)
        return resp.json()

    def test_requires_authentication(self):
        anon = APIClient()
        resp = anon.get("/api/v1/builder/")
        self.assertEqual(resp.status_code, 401)

    def test_draft_is_created_and_resumed(self):
        first = self.client.get("/api/v1/builder/").json()
        second = self.client.get("/api/v1/builder/").json()
        self.assertEqual(first["id"], second["id"])
        self.assertEqual(first["step"], "METHOD")

    def test_method_guard_returns_reason_without_moving(self):
        resp = self._step("CONTENT")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"ok": False, "step": "METHOD", "reason": "method_required"})

        self.client.post("/api/v1/builder/method/", {"method": "MANUAL"}, format="json")
        self.assertEqual(self._step("CONTENT").json()["reason"], "method_required")

        self.client.post("/api/v1/builder/method/", {"method": "AI"}, format="json")
        self.assertTrue(self._step("CONTENT").json()["ok"])

    def test_steps_cannot_be_skipped(self):
        self.client.post("/api/v1/builder/method/", {"method": "AI"}, format="json")
        body = self._step("SETTINGS").json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["reason"], "step_not_adjacent")
        self.assertEqual(SurveyDraft.objects.get(owner_id="op-1").step, WizardStep.METHOD)

    def test_content_guard_and_questions_guard(self):
        self.client.post("/api/v1/builder/method/", {"method": "MANUAL", "survey_type": "CSAT"}, format="json")
        self._step("CONTENT")
        self.assertEqual(self._step("QUESTIONS").json()["reason"], "content_required")
        self.client.post("/api/v1/builder/skip/", {}, format="json")
        self.assertTrue(self._step("QUESTIONS").json()["ok"])

        self.assertEqual(self._step("SETTINGS").json()["reason"], "questions_required")
        self._add("How was it?")
        self.assertTrue(self._step("SETTINGS").json()["ok"])

    def test_settings_guard_requires_name_and_back_is_free(self):
        self._to_questions_step()
        self._add("How was it?")
        self._step("SETTINGS")
        self.assertEqual(self._step("REVIEW").json()["reason"], "name_required")
        self.client.patch("/api/v1/builder/settings/", {"name": "  "}, format="json")
        self.assertEqual(self._step("REVIEW").json()["reason"], "name_required")
        self.client.patch("/api/v1/builder/settings/", {"name": "Q3 pulse"}, format="json")
        self.assertTrue(self._step("REVIEW").json()["ok"])
        self.assertEqual(self._step("METHOD").json(), {"ok": True, "step": "METHOD", "reason": None})

    def test_remove_middle_question_keeps_order_and_ids(self):
        self._to_questions_step()
        q1 = self._add("First")
        q2 = self._add("Second")
        q3 = self._add("Third")
        self.assertEqual(len({q1["id"], q2["id"], q3["id"]}), 3)

        resp = self.client.delete(f"/api/v1/builder/questions/{q2['id']}/")
        self.assertEqual(resp.status_code, 204)
        items = self.client.get("/api/v1/builder/questions/").json()["results"]
        self.assertEqual([(q["id"], q["text"]) for q in items], [(q1["id"], "First"), (q3["id"], "Third")])

    def test_last_question_cannot_be_removed_past_questions_step(self):
        self._to_questions_step()
        q1 = self._add("Only one")
        self._step("SETTINGS")
        resp = self.client.delete(f"/api/v1/builder/questions/{q1['id']}/")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(len(SurveyDraft.objects.get(owner_id="op-1").questions), 1)

    def test_update_and_move_question(self):
        self._to_questions_step()
        q1 = self._add("Colour?", "MULTIPLE_CHOICE_SINGLE", options=["Red", "Blue"])
        q2 = self._add("Why?")
        resp = self.client.patch(f"/api/v1/builder/questions/{q1['id']}/", {"options": ["Red", "Green"]}, format="json")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["options"], ["Red", "Green"])

        bad = self.client.patch(f"/api/v1/builder/questions/{q2['id']}/", {"type": "MULTIPLE_CHOICE_MULTI"}, format="json")
        self.assertEqual(bad.status_code, 400)

        moved = self.client.post(f"/api/v1/builder/questions/{q2['id']}/move/", {"position": 0}, format="json").json()
        self.assertEqual([q["id"] for q in moved["results"]], [q2["id"], q1["id"]])
        self.assertEqual(self.client.delete("/api/v1/builder/questions/nope/").status_code, 404)

    def test_template_clones_with_fresh_ids(self):
        self.client.post("/api/v1/builder/method/", {"method": "MANUAL", "survey_type": "NPS"}, format="json")
        self._step("CONTENT")
        template = {
            "id": 7,
            "type": "NPS",
            "questions": [
                {"id": 101, "questionText": "Recommend?", "questionType": "NPS_SCALE", "position": 1},
                {"id": 102, "questionText": "Why?", "questionType": "FREE_TEXT", "position": 2},
            ],
        }
        with patch.object(SurveyEngineClient, "get_template", return_value=template) as get_template:
            resp = self.client.post("/api/v1/builder/template/", {"template_id": "7"}, format="json")
        self.assertEqual(resp.status_code, 200)
        get_template.assert_called_once_with("7")
        questions = resp.json()["questions"]
        self.assertEqual([q["text"] for q in questions], ["Recommend?", "Why?"])
        self.assertTrue(all(q["id"] not in ("101", "102") for q in questions))
        self.assertEqual(resp.json()["content_source"], "TEMPLATE")

    def test_skip_leaves_questions_untouched(self):
        self._to_questions_step()
        q1 = self._add("Kept")
        self._step("CONTENT")
        resp = self.client.post("/api/v1/builder/skip/", {}, format="json")
        self.assertEqual([q["id"] for q in resp.json()["questions"]], [q1["id"]])

    def test_ai_failure_keeps_topic_and_step(self):
        self.client.post("/api/v1/builder/method/", {"method": "AI"}, format="json")
        self._step("CONTENT")
        with patch.object(SurveyEngineClient, "generate_questions", side_effect=EngineError("model timeout")):
            resp = self.client.post("/api/v1/builder/ai/", {"topic": "Hotel checkout", "sector": "Hospitality"}, format="json")
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.json()["code"], "generation_failed")
        self.assertTrue(resp.json()["retryable"])

        draft = SurveyDraft.objects.get(owner_id="op-1")
        self.assertEqual(draft.step, WizardStep.CONTENT)
        self.assertEqual(draft.ai_topic, "Hotel checkout")
        self.assertEqual(draft.ai_error, "model timeout")

    def test_ai_success_replaces_questions_and_advances(self):
        self._to_questions_step()
        self._add("Old question")
        self._step("CONTENT")
        generated = (
            "```json\n"
            '[{"questionText": "Rate checkout", "questionType": "RATING_STAR", "options": null, "position": 2},'
            ' {"questionText": "Recommend?", "questionType": "NPS_SCALE", "options": null, "position": 1}]\n'
            "```"
        )
        with patch.object(SurveyEngineClient, "generate_questions", return_value=generated) as gen:
            resp = self.client.post("/api/v1/builder/ai/", {"topic": "Checkout"}, format="json")
        self.assertEqual(resp.status_code, 200, resp.content)
        gen.assert_called_once_with("Checkout", "NPS", "General", 5)
        body = resp.json()
        self.assertEqual(body["step"], "QUESTIONS")
        self.assertEqual([q["text"] for q in body["questions"]], ["Recommend?", "Rate checkout"])
        self.assertEqual(body["ai_error"], "")

    def test_target_and_budget_are_exclusive(self):
        with patch("apps.billing.tasks.estimate_draft_cost_task.apply_async"):
            self.client.patch("/api/v1/builder/settings/", {"target_respondents": 100}, format="json")
            draft = SurveyDraft.objects.get(owner_id="op-1")
            self.assertEqual((draft.target_respondents, draft.budget), (100, None))

            self.client.patch("/api/v1/builder/settings/", {"budget": "250.00"}, format="json")
            draft.refresh_from_db()
            self.assertEqual((draft.target_respondents, draft.budget), (None, Decimal("250.00")))

            both = self.client.patch("/api/v1/builder/settings/", {"budget": "1", "target_respondents": 3}, format="json")
            self.assertEqual(both.status_code, 400)
            draft.refresh_from_db()
            self.assertIsNone(draft.target_respondents)

    def test_rapid_edits_issue_one_estimate(self):
        quote = {
            "targetRespondents": 100, "costPerRespondent": "10", "estimatedCost": "1000",
            "currentWalletBalance": "500", "isSufficientFunds": False, "requiredTopUpAmount": "500",
        }
        with patch("apps.billing.tasks.estimate_draft_cost_task.apply_async") as enqueue:
            for n in (1, 10, 50, 99, 100):
                self.client.patch("/api/v1/builder/settings/", {"target_respondents": n}, format="json")
        self.assertEqual(enqueue.call_count, 5)
        self.assertEqual(enqueue.call_args.kwargs["countdown"], 0.8)

        with patch.object(SurveyEngineClient, "calculate_cost", return_value=quote) as calc:
            results = [estimate_draft_cost_task(*c.kwargs["args"]) for c in enqueue.call_args_list]
        self.assertEqual(results, [False, False, False, False, True])
        calc.assert_called_once_with(target_respondents=100, budget=None)

        body = self.client.get("/api/v1/builder/estimate/").json()
        self.assertFalse(body["pending"])
        self.assertEqual(body["estimate"]["estimatedCost"], "1000")
        self.assertEqual(body["estimate"]["requiredTopUpAmount"], "500")
        self.assertFalse(body["estimate"]["isSufficientFunds"])

    def test_end_date_must_follow_start(self):
        resp = self.client.patch(
            "/api/v1/builder/settings/",
            {"start_date": "2026-05-02T00:00:00Z", "end_date": "2026-05-01T00:00:00Z"},
            format="json",
        )
        self.assertEqual(resp.status_code, 400)

    def test_finalize_creates_survey_and_discards_draft(self):
        self._to_questions_step()
        self._add("Recommend?", "NPS_SCALE")
        self._add("Colour?", "MULTIPLE_CHOICE_SINGLE", options=["Red", "Blue"])
        self._step("SETTINGS")
        self.client.patch("/api/v1/builder/settings/", {"name": "Pulse", "access_type": "PRIVATE"}, format="json")
        self._step("REVIEW")

        with patch.object(SurveyEngineClient, "create_survey", return_value={"id": 55, "status": "DRAFT"}) as create:
            resp = self.client.post("/api/v1/builder/finalize/", {}, format="json")
        self.assertEqual(resp.status_code, 201)
        payload = create.call_args.args[0]
        self.assertEqual(payload["name"], "Pulse")
        self.assertEqual(payload["type"], "NPS")
        self.assertEqual(payload["accessType"], "PRIVATE")
        self.assertEqual([q["position"] for q in payload["questions"]], [1, 2])
        self.assertEqual(payload["questions"][1]["options"], '["Red", "Blue"]')
        self.assertFalse(SurveyDraft.objects.filter(owner_id="op-1").exists())

    def test_finalize_failure_keeps_draft(self):
        self._to_questions_step()
        self._add("Recommend?", "NPS_SCALE")
        self._step("SETTINGS")
        self.client.patch("/api/v1/builder/settings/", {"name": "Pulse"}, format="json")
        self._step("REVIEW")
        with patch.object(SurveyEngineClient, "create_survey", side_effect=EngineError("boom")):
            resp = self.client.post("/api/v1/builder/finalize/", {}, format="json")
        self.assertEqual(resp.status_code, 502)
        self.assertTrue(SurveyDraft.objects.filter(owner_id="op-1").exists())

    def test_edit_reentry_updates_existing_survey(self):
        survey = {
            "id": 9, "name": "Existing", "type": "CES", "status": "DRAFT", "accessType": "PUBLIC",
            "targetRespondents": 40,
            "questions": [{"id": 3, "questionText": "Effort?", "questionType": "RATING_LINEAR", "position": 1}],
        }
        with patch.object(SurveyEngineClient, "get_survey", return_value=survey):
            resp = self.client.post("/api/v1/builder/edit/9/", {}, format="json")
        body = resp.json()
        self.assertEqual(body["step"], "QUESTIONS")
        self.assertEqual(body["survey_id"], "9")
        self.assertEqual(body["questions"][0]["id"], "3")
        self._step("SETTINGS")
        self._step("REVIEW")
        with patch.object(SurveyEngineClient, "update_survey", return_value={"id": 9}) as update, \
                patch.object(SurveyEngineClient, "create_survey") as create:
            self.client.post("/api/v1/builder/finalize/", {}, format="json")
        update.assert_called_once()
        self.assertEqual(update.call_args.args[0], "9")
        create.assert_not_called()

    def test_edit_rejects_active_survey(self):
        with patch.object(SurveyEngineClient, "get_survey", return_value={"id": 9, "status": "ACTIVE"}):
            resp = self.client.post("/api/v1/builder/edit/9/", {}, format="json")
        self.assertEqual(resp.status_code, 400)

    def test_upstream_401_logs_out_but_keeps_draft(self):
        self.client.post("/api/v1/builder/method/", {"method": "MANUAL", "survey_type": "NPS"}, format="json")
        self._step("CONTENT")
        with patch.object(SurveyEngineClient, "get_template", side_effect=Unauthorized()):
            resp = self.client.post("/api/v1/builder/template/", {"template_id": "1"}, format="json")
        self.assertEqual(resp.status_code, 401)
        me = self.client.get("/api/v1/auth/me/").json()
        self.assertFalse(me["isAuthenticated"])
        self.assertEqual(self.client.get("/api/v1/builder/").status_code, 401)
        self.assertTrue(SurveyDraft.objects.filter(owner_id="op-1", step=WizardStep.CONTENT).exists())

    def test_abandon_discards_draft(self):
        self.client.get("/api/v1/builder/")
        resp = self.client.delete("/api/v1/builder/")
        self.assertEqual(resp.status_code, 204)
        self.assertFalse(SurveyDraft.objects.filter(owner_id="op-1").exists())

    def test_my_surveys_paginates(self):
        surveys = [{"id": i, "name": f"S{i}", "status": "DRAFT" if i % 2 else "ACTIVE"} for i in range(1, 8)]
        with patch.object(SurveyEngineClient, "list_my_surveys", return_value=surveys):
            resp = self.client.get("/api/v1/builder/surveys/?page=2&page_size=3")
            active = self.client.get("/api/v1/builder/surveys/?status=active")
        self.assertEqual(resp.json()["count"], 7)
        self.assertEqual([s["id"] for s in resp.json()["results"]], [4, 5, 6])
        self.assertEqual(active.json()["count"], 3)


class DraftRetentionTests(TestCase):
    def test_purge_removes_only_idle_drafts(self):
        idle = SurveyDraft.objects.create(owner_id="idle")
        busy = SurveyDraft.objects.create(owner_id="busy")
        SurveyDraft.objects.filter(pk=idle.pk).update(updated_at=timezone.now() - timedelta(days=30))
        self.assertEqual(purge_abandoned_drafts_task(), 1)
        self.assertEqual(list(SurveyDraft.objects.values_list("owner_id", flat=True)), ["busy"])
        self.assertTrue(SurveyDraft.objects.filter(pk=busy.pk).exists())
