from datetime import timedelta
from unittest.mock import patch

import requests
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from apps.core.engine import SurveyEngineClient
from apps.core.exceptions import EngineError
from .models import SurveySession, SessionState
from .runner import SessionRunner
from .tasks import expire_stale_sessions_task


def active_survey(reward=None):
    return {
        "id": 42,
        "name": "Pulse",
        "introduction": "Two quick questions",
        "status": "ACTIVE",
        "rewardAmount": reward,
        "questions": [
            {"id": 12, "questionText": "Anything else?", "questionType": "FREE_TEXT", "position": 2, "required": False},
            {"id": 11, "questionText": "Recommend us?", "questionType": "NPS_SCALE", "position": 1, "required": True},
        ],
    }


class SessionRunnerApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()

    def _start(self, reward=None):
        with patch.object(SurveyEngineClient, "get_survey", return_value=active_survey(reward)):
            resp = self.client.post("/api/v1/sessions/start/", {"survey_id": "42"}, format="json")
        self.assertEqual(resp.status_code, 201, resp.content)
        return resp.json()["id"]

    def _post(self, sid, action, payload=None):
        return self.client.post(f"/api/v1/sessions/{sid}/{action}/", payload or {}, format="json")

    def _answer_all(self, sid):
        self._post(sid, "answer", {"value": 9})
        self._post(sid, "next")
        self._post(sid, "answer", {"value": "Great support"})

    def test_start_freezes_question_order(self):
        sid = self._start()
        body = self.client.get(f"/api/v1/sessions/{sid}/").json()
        self.assertEqual(body["state"], "ANSWERING")
        self.assertEqual(body["total_questions"], 2)
        self.assertEqual(body["current_question"]["id"], "11")
        self.assertEqual(body["survey"]["name"], "Pulse")
        self.assertFalse(body["can_advance"])

    def test_only_active_surveys_can_be_run(self):
        with patch.object(SurveyEngineClient, "get_survey", return_value={**active_survey(), "status": "DRAFT"}):
            resp = self.client.post("/api/v1/sessions/start/", {"survey_id": "42"}, format="json")
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(SurveySession.objects.exists())

    def test_required_nps_blocks_next_until_valid(self):
        sid = self._start()
        blocked = self._post(sid, "next").json()
        self.assertEqual(blocked["result"], {"ok": False, "state": "ANSWERING", "index": 0, "reason": "required"})

        rejected = self._post(sid, "answer", {"value": 11}).json()
        self.assertEqual(rejected["result"]["reason"], "out_of_range")
        self.assertFalse(rejected["can_advance"])
        self.assertEqual(self._post(sid, "next").json()["current_index"], 0)

        accepted = self._post(sid, "answer", {"value": 10}).json()
        self.assertTrue(accepted["can_advance"])
        moved = self._post(sid, "next").json()
        self.assertTrue(moved["result"]["ok"])
        self.assertEqual(moved["current_index"], 1)

    def test_back_navigation(self):
        sid = self._start()
        first = self._post(sid, "back").json()
        self.assertEqual(first["result"]["reason"], "at_first_question")
        self._post(sid, "answer", {"value": 3})
        self._post(sid, "next")
        self.assertEqual(self._post(sid, "back").json()["current_index"], 0)
        self.assertEqual(self.client.get(f"/api/v1/sessions/{sid}/").json()["answers"], {"11": 3})

    def test_skip_claim_submits_without_participant(self):
        sid = self._start(reward="5.00")
        self._answer_all(sid)
        at_claim = self._post(sid, "next").json()
        self.assertEqual(at_claim["state"], "REWARD_CLAIM")

        unconfirmed = self._post(sid, "skip-claim").json()
        self.assertEqual(unconfirmed["result"]["reason"], "confirmation_required")
        self.assertEqual(unconfirmed["state"], "REWARD_CLAIM")

        with patch.object(SurveyEngineClient, "submit_response", return_value={"id": 900}) as submit, \
                patch.object(SurveyEngineClient, "register_participant") as register:
            done = self._post(sid, "skip-claim", {"confirm": True}).json()
        register.assert_not_called()
        submit.assert_called_once_with(
            "42",
            [{"questionId": "11", "answer": "9"}, {"questionId": "12", "answer": "Great support"}],
            None,
        )
        self.assertEqual(done["state"], "COMPLETED")
        self.assertIsNone(done["participant_id"])
        self.assertEqual(done["response_id"], "900")

    def test_no_reward_submits_from_last_question(self):
        sid = self._start()
        self._post(sid, "answer", {"value": 0})
        self._post(sid, "next")
        with patch.object(SurveyEngineClient, "submit_response", return_value={"id": 1}) as submit:
            done = self._post(sid, "next").json()
        self.assertEqual(done["state"], "COMPLETED")
        # Optional question left blank is not sent
        self.assertEqual(submit.call_args.args[1], [{"questionId": "11", "answer": "0"}])

    def test_claim_registers_participant_once(self):
        sid = self._start(reward="5.00")
        self._answer_all(sid)
        self._post(sid, "next")
        claim = {"full_name": "Ada Obi", "phone_number": "+2348012345678", "email": "ada@example.com"}

        with patch.object(SurveyEngineClient, "register_participant", return_value={"id": "p-1"}) as register, \
                patch.object(SurveyEngineClient, "submit_response", side_effect=[EngineError("down"), {"id": 5}]) as submit:
            failed = self._post(sid, "claim", claim)
            self.assertEqual(failed.status_code, 502)
            self._post(sid, "next")
            done = self._post(sid, "claim", claim).json()

        register.assert_called_once_with("Ada Obi", "+2348012345678", "ada@example.com")
        self.assertEqual([c.args[2] for c in submit.call_args_list], ["p-1", "p-1"])
        self.assertEqual(done["state"], "COMPLETED")
        self.assertEqual(done["participant_id"], "p-1")

    def test_failed_submission_keeps_answers(self):
        sid = self._start()
        self._answer_all(sid)
        before = self.client.get(f"/api/v1/sessions/{sid}/").json()["answers"]

        with patch.object(SurveyEngineClient, "submit_response", side_effect=EngineError("timeout")):
            resp = self._post(sid, "next")
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.json()["code"], "submission_failed")
        self.assertTrue(resp.json()["retryable"])

        after = self.client.get(f"/api/v1/sessions/{sid}/").json()
        self.assertEqual(after["answers"], before)
        self.assertEqual(after["state"], "ANSWERING")
        self.assertEqual(after["current_index"], 1)
        self.assertEqual(after["last_error"], "timeout")

        with patch.object(SurveyEngineClient, "submit_response", return_value={"id": 77}):
            retried = self._post(sid, "next").json()
        self.assertEqual(retried["state"], "COMPLETED")

    def test_dropped_connection_during_submit_returns_to_last_question(self):
        sid = self._start()
        self._answer_all(sid)
        before = self.client.get(f"/api/v1/sessions/{sid}/").json()["answers"]

        dropped = requests.exceptions.ChunkedEncodingError("peer dropped")
        with patch.object(requests.Session, "request", side_effect=dropped):
            resp = self._post(sid, "next")
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.json()["code"], "submission_failed")

        after = self.client.get(f"/api/v1/sessions/{sid}/").json()
        self.assertEqual(after["state"], "ANSWERING")
        self.assertEqual(after["current_index"], 1)
        self.assertEqual(after["answers"], before)

        with patch.object(SurveyEngineClient, "submit_response", return_value={"id": 3}):
            self.assertEqual(self._post(sid, "next").json()["state"], "COMPLETED")

    def test_unexpected_submit_error_does_not_strand_the_session(self):
        sid = self._start()
        self._answer_all(sid)
        with patch.object(SurveyEngineClient, "submit_response", side_effect=RuntimeError("bad payload")):
            with self.assertRaises(RuntimeError):
                self._post(sid, "next")
        session = SurveySession.objects.get(pk=sid)
        self.assertEqual(session.state, SessionState.ANSWERING)
        self.assertEqual(session.current_index, 1)
        self.assertEqual(session.last_error, "bad payload")

    def test_plain_text_submit_acknowledgement_completes(self):
        sid = self._start()
        self._answer_all(sid)
        with patch.object(SurveyEngineClient, "submit_response", return_value="ok"):
            done = self._post(sid, "next")
        self.assertEqual(done.status_code, 200)
        self.assertEqual(done.json()["state"], "COMPLETED")
        self.assertIsNone(done.json()["response_id"])

    def test_skip_during_registration_submits_once(self):
        sid = self._start(reward="5.00")
        self._answer_all(sid)
        self._post(sid, "next")
        claim = {"full_name": "Ada Obi", "phone_number": "+2348012345678"}

        def register_while_skipped(*args, **kwargs):
            # Respondent confirms "skip" in another tab while registration is in flight
            SessionRunner(sid, SurveyEngineClient()).skip_reward(True)
            return {"id": "p-9"}

        with patch.object(SurveyEngineClient, "register_participant", side_effect=register_while_skipped), \
                patch.object(SurveyEngineClient, "submit_response", return_value={"id": 1}) as submit:
            resp = self._post(sid, "claim", claim)

        self.assertEqual(resp.status_code, 409)
        submit.assert_called_once()
        self.assertIsNone(submit.call_args.args[2])
        session = SurveySession.objects.get(pk=sid)
        self.assertEqual(session.state, SessionState.COMPLETED)
        self.assertIsNone(session.participant_id)

    def test_submit_refuses_sessions_not_at_the_end(self):
        sid = self._start()
        self._post(sid, "answer", {"value": 9})
        with patch.object(SurveyEngineClient, "submit_response") as submit:
            with self.assertRaises(ValueError):
                SessionRunner(sid, SurveyEngineClient())._submit(participant_id=None)
        submit.assert_not_called()
        self.assertEqual(SurveySession.objects.get(pk=sid).state, SessionState.ANSWERING)

    def test_completed_session_is_terminal(self):
        sid = self._start()
        self._answer_all(sid)
        with patch.object(SurveyEngineClient, "submit_response", return_value={"id": 1}):
            self._post(sid, "next")
        with patch.object(SurveyEngineClient, "submit_response") as submit:
            again = self._post(sid, "next")
            answer = self._post(sid, "answer", {"value": 1})
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["code"], "session_closed")
        self.assertEqual(answer.status_code, 409)
        submit.assert_not_called()

    def test_sessions_are_private_to_their_browser(self):
        sid = self._start()
        stranger = APIClient()
        self.assertEqual(stranger.get(f"/api/v1/sessions/{sid}/").status_code, 404)
        self.assertEqual(stranger.post(f"/api/v1/sessions/{sid}/next/", {}, format="json").status_code, 404)

    def test_abandon_and_expiry(self):
        sid = self._start()
        self.assertEqual(self.client.delete(f"/api/v1/sessions/{sid}/").status_code, 204)
        self.assertFalse(SurveySession.objects.filter(pk=sid).exists())

        stale = SurveySession.objects.create(survey_id="1", survey_snapshot={"questions": []})
        done = SurveySession.objects.create(survey_id="1", state=SessionState.COMPLETED)
        old = timezone.now() - timedelta(days=5)
        SurveySession.objects.filter(pk__in=[stale.pk, done.pk]).update(updated_at=old)
        self.assertEqual(expire_stale_sessions_task(), 1)
        self.assertEqual(list(SurveySession.objects.values_list("pk", flat=True)), [done.pk])
