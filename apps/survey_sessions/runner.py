r"""
Respondent-side traversal of an ACTIVE survey.

    ANSWERING(i) --next--> ANSWERING(i+1)
    ANSWERING(last) --next--> REWARD_CLAIM   (survey pays a reward)
                          \--> SUBMITTING    (no reward)
    REWARD_CLAIM --claim/skip--> SUBMITTING --ok--> COMPLETED
                                            \--fail--> ANSWERING(last), answers untouched

COMPLETED is terminal.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional

from django.db import transaction
from django.utils import timezone

from apps.core.engine import SurveyEngineClient
from apps.core.enums import SurveyStatus
from apps.core.exceptions import EngineError, SessionClosed, SubmissionFailure
from apps.core.utility import parse_decimal
from apps.surveys.questions import (
    Question, answer_to_wire, is_present, question_to_payload, questions_from_payload, validate,
)
from .models import SurveySession, SessionState

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class NavResult:
    ok: bool
    state: str
    index: int
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "state": self.state, "index": self.index, "reason": self.reason}


def _snapshot(survey: Dict[str, Any]) -> Dict[str, Any]:
    ordered = sorted(survey.get("questions") or [], key=lambda q: q.get("position") or 0)
    questions = questions_from_payload(ordered, keep_ids=True)
    return {
        "id": survey.get("id"),
        "name": survey.get("name") or "",
        "introduction": survey.get("introduction") or "",
        "questions": [question_to_payload(q) for q in questions],
    }


class SessionRunner:
    def __init__(self, session_id: int, client: SurveyEngineClient):
        self.session_id = session_id
        self.client = client

    @classmethod
    def start(cls, survey_id: str, client: SurveyEngineClient) -> "SessionRunner":
        survey = client.get_survey(survey_id)
        if str(survey.get("status") or "").upper() != SurveyStatus.ACTIVE.value:
            raise ValueError("This survey is not accepting responses")
        snapshot = _snapshot(survey)
        if not snapshot["questions"]:
            raise ValueError("This survey has no questions")
        reward = parse_decimal(survey.get("rewardAmount"))
        session = SurveySession.objects.create(
            survey_id=str(survey_id),
            survey_snapshot=snapshot,
            reward_amount=reward if reward and reward > 0 else None,
        )
        logger.info("Runner session started", extra={"session_id": session.pk, "survey_id": survey_id})
        return cls(session.pk, client)

    # ---- state access ------------------------------------------------------------

    def session(self) -> SurveySession:
        return SurveySession.objects.get(pk=self.session_id)

    @contextmanager
    def _locked(self) -> Iterator[SurveySession]:
        with transaction.atomic():
            session = SurveySession.objects.select_for_update().get(pk=self.session_id)
            if session.state == SessionState.COMPLETED:
                raise SessionClosed()
            yield session
            session.save()

    @staticmethod
    def questions_of(session: SurveySession) -> List[Question]:
        return questions_from_payload(session.survey_snapshot.get("questions") or [])

    @staticmethod
    def _require(session: SurveySession, state: str) -> None:
        if session.state != state:
            raise ValueError(f"Not allowed while {session.state.lower()}")

    @staticmethod
    def _require_submittable(session: SurveySession, last_index: int) -> None:
        if session.state == SessionState.REWARD_CLAIM:
            return
        no_reward = not (session.reward_amount and session.reward_amount > ZERO)
        if session.state == SessionState.ANSWERING and session.current_index == last_index and no_reward:
            return
        raise ValueError(f"Not allowed while {session.state.lower()}")

    @staticmethod
    def _result(session: SurveySession, ok: bool = True, reason: Optional[str] = None) -> NavResult:
        return NavResult(ok=ok, state=session.state, index=session.current_index, reason=reason)

    # ---- answering ---------------------------------------------------------------

    def record_answer(self, value: Any) -> NavResult:
        """Store the value for the current question. Validation gates `next`, not recording."""
        with self._locked() as session:
            self._require(session, SessionState.ANSWERING)
            question = self.questions_of(session)[session.current_index]
            answers = dict(session.answers or {})
            answers[question.id] = value
            session.answers = answers
            check = validate(question, value)
        return self._result(session, ok=check.ok, reason=check.reason)

    def next(self) -> NavResult:
        with self._locked() as session:
            self._require(session, SessionState.ANSWERING)
            questions = self.questions_of(session)
            question = questions[session.current_index]
            check = validate(question, (session.answers or {}).get(question.id))
            if not check.ok:
                return self._result(session, ok=False, reason=check.reason)

            if session.current_index < len(questions) - 1:
                session.current_index += 1
                return self._result(session)

            if session.reward_amount and session.reward_amount > ZERO:
                session.state = SessionState.REWARD_CLAIM
                return self._result(session)

        return self._submit(participant_id=None)

    def back(self) -> NavResult:
        with self._locked() as session:
            if session.state == SessionState.REWARD_CLAIM:
                session.state = SessionState.ANSWERING
                session.current_index = len(self.questions_of(session)) - 1
                return self._result(session)
            self._require(session, SessionState.ANSWERING)
            if session.current_index == 0:
                return self._result(session, ok=False, reason="at_first_question")
            session.current_index -= 1
            return self._result(session)

    # ---- reward claim ------------------------------------------------------------

    def claim_reward(self, full_name: str, phone_number: str, email: Optional[str] = None) -> NavResult:
        session = self.session()
        if session.state == SessionState.COMPLETED:
            raise SessionClosed()
        self._require(session, SessionState.REWARD_CLAIM)

        participant_id = session.participant_id
        if not participant_id:
            participant = self.client.register_participant(full_name, phone_number, email) or {}
            participant_id = str(participant.get("id") or participant.get("participantId") or "") or None
            if not participant_id:
                raise SubmissionFailure("Participant registration returned no id")
            with self._locked() as locked:
                self._require(locked, SessionState.REWARD_CLAIM)
                locked.participant_id = participant_id
            logger.info("Participant registered", extra={"session_id": self.session_id})
        return self._submit(participant_id=participant_id)

    def skip_reward(self, confirmed: bool) -> NavResult:
        """Declining needs an explicit confirmation; then it submits with no participant."""
        with self._locked() as session:
            self._require(session, SessionState.REWARD_CLAIM)
            if not confirmed:
                return self._result(session, ok=False, reason="confirmation_required")
            session.participant_id = None
        return self._submit(participant_id=None)

    # ---- submission --------------------------------------------------------------

    def _submit(self, participant_id: Optional[str]) -> NavResult:
        with self._locked() as session:
            questions = self.questions_of(session)
            self._require_submittable(session, len(questions) - 1)
            session.state = SessionState.SUBMITTING
            session.submit_attempts += 1
            session.last_error = ""
            answers = session.answers or {}
            bundle = [
                {"questionId": q.id, "answer": answer_to_wire(q, answers.get(q.id))}
                for q in questions
                if is_present(answers.get(q.id))
            ]

        try:
            response = self.client.submit_response(session.survey_id, bundle, participant_id)
        except Exception as e:
            # Back to the last question; the answer map is never written on this path
            with transaction.atomic():
                SurveySession.objects.filter(pk=self.session_id).update(
                    state=SessionState.ANSWERING,
                    current_index=max(len(questions) - 1, 0),
                    last_error=str(getattr(e, "detail", e)),
                    updated_at=timezone.now(),
                )
            logger.warning(
                "Response submission failed",
                extra={"session_id": self.session_id, "attempt": session.submit_attempts},
            )
            if isinstance(e, EngineError):
                raise SubmissionFailure() from e
            raise

        if not isinstance(response, dict):
            response = {}
        with transaction.atomic():
            session = SurveySession.objects.select_for_update().get(pk=self.session_id)
            session.state = SessionState.COMPLETED
            session.response_id = str(response.get("id") or "") or None
            session.submitted_at = timezone.now()
            session.save()
        logger.info("Response submitted", extra={"session_id": self.session_id, "survey_id": session.survey_id})
        return self._result(session)

    def abandon(self) -> None:
        SurveySession.objects.filter(pk=self.session_id).exclude(state=SessionState.COMPLETED).delete()
        logger.info("Runner session abandoned", extra={"session_id": self.session_id})
