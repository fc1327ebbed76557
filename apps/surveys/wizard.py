"""
Five-step survey authoring wizard: METHOD -> CONTENT -> QUESTIONS -> SETTINGS -> REVIEW.

Navigation never raises for a failed guard; `go_to_step` returns a StepResult
naming the reason and leaves the step unchanged. Every mutation of the draft
happens inside one transaction holding the draft's row lock, so a partially
applied edit is never observable.
"""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from apps.core.credentials import seal_cookies
from apps.core.engine import SurveyEngineClient
from apps.core.enums import SurveyStatus
from apps.core.exceptions import EngineError, GenerationFailure
from .models import (
    SurveyDraft, WizardStep, STEP_ORDER, CreationMethod, ContentSource, SurveyTypeChoice,
)
from .questions import (
    Question, clone_questions, question_from_payload, question_to_payload, question_to_wire,
    questions_from_payload,
)

logger = logging.getLogger(__name__)

DEFAULT_AI_SECTOR = "General"
DEFAULT_AI_QUESTION_COUNT = 5
MAX_AI_QUESTION_COUNT = 20


@dataclass(frozen=True)
class StepResult:
    ok: bool
    step: str
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "step": self.step, "reason": self.reason}


# ---- Guards ----------------------------------------------------------------------
# Each guard checks the edge leaving its step; None means the edge is open.

def _method_guard(draft: SurveyDraft) -> Optional[str]:
    if draft.creation_method == CreationMethod.AI:
        return None
    if draft.creation_method == CreationMethod.MANUAL and draft.survey_type:
        return None
    return "method_required"


def _content_guard(draft: SurveyDraft) -> Optional[str]:
    if draft.content_source in (ContentSource.TEMPLATE, ContentSource.AI, ContentSource.SKIP):
        return None
    return "content_required"


def _questions_guard(draft: SurveyDraft) -> Optional[str]:
    return None if len(draft.questions or []) >= 1 else "questions_required"


def _settings_guard(draft: SurveyDraft) -> Optional[str]:
    return None if (draft.name or "").strip() else "name_required"


FORWARD_GUARDS: Dict[str, Callable[[SurveyDraft], Optional[str]]] = {
    WizardStep.METHOD: _method_guard,
    WizardStep.CONTENT: _content_guard,
    WizardStep.QUESTIONS: _questions_guard,
    WizardStep.SETTINGS: _settings_guard,
}


def _strip_fences(text: str) -> str:
    s = text.strip()
    if s.startswith("```"):
        s = s.split("\n", 1)[1] if "\n" in s else ""
        if s.rstrip().endswith("```"):
            s = s.rstrip()[:-3]
    return s.strip()


def parse_generated_questions(raw: Any) -> List[Question]:
    """
    Engine AI output is a list of {questionText, questionType, options, position};
    some models wrap it in a ```json fenced string.
    """
    if isinstance(raw, str):
        raw = json.loads(_strip_fences(raw))
    if isinstance(raw, dict):
        raw = raw.get("questions")
    if not isinstance(raw, list) or not raw:
        raise ValueError("generation returned no questions")
    ordered = sorted(raw, key=lambda item: item.get("position") or 0)
    return clone_questions(ordered)


def _wire_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return timezone.localtime(value).replace(tzinfo=None).isoformat(timespec="seconds")


class BuilderWizard:
    def __init__(self, owner_id: str, client: SurveyEngineClient):
        if not owner_id:
            raise ValueError("owner_id is required")
        self.owner_id = owner_id
        self.client = client

    # ---- lifecycle ---------------------------------------------------------------

    def draft(self) -> SurveyDraft:
        """Resume the operator's draft or start a fresh one at METHOD."""
        draft, created = SurveyDraft.objects.get_or_create(owner_id=self.owner_id)
        if created:
            logger.info("Draft started", extra={"owner_id": self.owner_id})
        return draft

    def abandon(self) -> None:
        from apps.billing.estimator import forget_estimate  # local import to avoid circulars
        draft = SurveyDraft.objects.filter(owner_id=self.owner_id).first()
        if draft is None:
            return
        forget_estimate(draft.pk)
        draft.delete()
        logger.info("Draft abandoned", extra={"owner_id": self.owner_id})

    @contextmanager
    def _locked(self) -> Iterator[SurveyDraft]:
        with transaction.atomic():
            self.draft()
            draft = SurveyDraft.objects.select_for_update().get(owner_id=self.owner_id)
            yield draft
            draft.save()

    # ---- navigation --------------------------------------------------------------

    def go_to_step(self, target: str) -> StepResult:
        with self._locked() as draft:
            current = draft.step
            try:
                target_step = WizardStep(str(target).upper())
            except ValueError:
                return StepResult(ok=False, step=current, reason="unknown_step")

            cur_idx = STEP_ORDER.index(WizardStep(current))
            tgt_idx = STEP_ORDER.index(target_step)
            if tgt_idx <= cur_idx:
                draft.step = target_step
                return StepResult(ok=True, step=target_step)
            if tgt_idx != cur_idx + 1:
                return StepResult(ok=False, step=current, reason="step_not_adjacent")

            reason = FORWARD_GUARDS[WizardStep(current)](draft)
            if reason:
                logger.info("Step blocked", extra={"owner_id": self.owner_id, "step": current, "reason": reason})
                return StepResult(ok=False, step=current, reason=reason)
            draft.step = target_step
            return StepResult(ok=True, step=target_step)

    # ---- METHOD ------------------------------------------------------------------

    def choose_method(self, method: str, survey_type: Optional[str] = None) -> SurveyDraft:
        method = CreationMethod(str(method).upper())
        with self._locked() as draft:
            draft.creation_method = method
            if survey_type:
                draft.survey_type = SurveyTypeChoice(str(survey_type).upper())
        return draft

    # ---- CONTENT -----------------------------------------------------------------

    def _require_step(self, draft: SurveyDraft, step: str) -> None:
        if draft.step != step:
            raise ValueError(f"Only available on the {step.lower()} step")

    def select_template(self, template_id: str) -> SurveyDraft:
        """Clone the template's questions with fresh local ids, replacing the list."""
        self._require_step(self.draft(), WizardStep.CONTENT)
        template = self.client.get_template(template_id)
        cloned = clone_questions((template or {}).get("questions") or [])
        with self._locked() as draft:
            self._require_step(draft, WizardStep.CONTENT)
            draft.questions = [question_to_payload(q) for q in cloned]
            draft.content_source = ContentSource.TEMPLATE
            draft.template_id = str(template_id)
            tmpl_type = (template or {}).get("type")
            if tmpl_type and not draft.survey_type and tmpl_type in SurveyTypeChoice.values:
                draft.survey_type = tmpl_type
        logger.info("Template cloned", extra={"owner_id": self.owner_id, "template_id": template_id, "count": len(cloned)})
        return draft

    def skip_content(self) -> SurveyDraft:
        with self._locked() as draft:
            self._require_step(draft, WizardStep.CONTENT)
            draft.content_source = ContentSource.SKIP
        return draft

    def generate_with_ai(self, topic: str, survey_type: Optional[str] = None, sector: Optional[str] = None,
                         count: Optional[int] = None) -> SurveyDraft:
        """
        Ask the engine to draft questions for `topic`.

        The topic is stored before the call so a failure never loses it. On
        failure the wizard stays on CONTENT with `ai_error` set and
        GenerationFailure is raised; on success the generated set replaces the
        question list and the wizard moves to QUESTIONS.
        """
        topic = (topic or "").strip()
        if not topic:
            raise ValueError("topic is required")
        count = count or DEFAULT_AI_QUESTION_COUNT
        if not 1 <= count <= MAX_AI_QUESTION_COUNT:
            raise ValueError(f"count must be between 1 and {MAX_AI_QUESTION_COUNT}")

        with self._locked() as draft:
            self._require_step(draft, WizardStep.CONTENT)
            draft.ai_topic = topic
            draft.ai_sector = (sector or "").strip()
            draft.ai_question_count = count
            draft.ai_error = ""
            if survey_type:
                draft.survey_type = SurveyTypeChoice(str(survey_type).upper())
            effective_type = draft.survey_type or SurveyTypeChoice.NPS

        try:
            raw = self.client.generate_questions(
                topic, str(effective_type), (sector or "").strip() or DEFAULT_AI_SECTOR, count
            )
            generated = parse_generated_questions(raw)
        except (EngineError, ValueError, TypeError, AttributeError) as e:
            message = str(e) or "generation failed"
            with self._locked() as draft:
                draft.ai_error = message
            logger.warning("AI generation failed", extra={"owner_id": self.owner_id, "error": message})
            raise GenerationFailure() from e

        with self._locked() as draft:
            draft.questions = [question_to_payload(q) for q in generated]
            draft.content_source = ContentSource.AI
            draft.ai_error = ""
            draft.step = WizardStep.QUESTIONS
        logger.info("AI questions generated", extra={"owner_id": self.owner_id, "count": len(generated)})
        return draft

    # ---- QUESTIONS ---------------------------------------------------------------

    def add_question(self, payload: Dict[str, Any]) -> Question:
        question = question_from_payload(payload, keep_id=False)
        with self._locked() as draft:
            draft.questions = list(draft.questions or []) + [question_to_payload(question)]
        return question

    def update_question(self, question_id: str, changes: Dict[str, Any]) -> Question:
        with self._locked() as draft:
            items = list(draft.questions or [])
            for i, item in enumerate(items):
                if item.get("id") == question_id:
                    merged = {**item, **changes, "id": question_id}
                    question = question_from_payload(merged, keep_id=True)
                    items[i] = question_to_payload(question)
                    draft.questions = items
                    return question
        raise KeyError(question_id)

    def remove_question(self, question_id: str) -> None:
        with self._locked() as draft:
            items = [q for q in (draft.questions or []) if q.get("id") != question_id]
            if len(items) == len(draft.questions or []):
                raise KeyError(question_id)
            past_questions = STEP_ORDER.index(WizardStep(draft.step)) > STEP_ORDER.index(WizardStep.QUESTIONS)
            if not items and past_questions:
                raise ValueError("A survey past the questions step must keep at least one question")
            draft.questions = items

    def move_question(self, question_id: str, position: int) -> None:
        with self._locked() as draft:
            items = list(draft.questions or [])
            idx = next((i for i, q in enumerate(items) if q.get("id") == question_id), None)
            if idx is None:
                raise KeyError(question_id)
            item = items.pop(idx)
            position = max(0, min(len(items), position))
            items.insert(position, item)
            draft.questions = items

    def questions(self) -> List[Question]:
        return questions_from_payload(self.draft().questions)

    # ---- SETTINGS ----------------------------------------------------------------

    def update_settings(self, values: Dict[str, Any]) -> SurveyDraft:
        """
        Apply settings fields. `target_respondents` and `budget` are mutually
        exclusive inputs: writing one clears the other, and writing either
        schedules a debounced cost estimate.
        """
        if values.get("target_respondents") is not None and values.get("budget") is not None:
            raise ValueError("Provide either target_respondents or budget, not both")

        cost_changed = False
        with self._locked() as draft:
            for name in ("name", "introduction", "access_type", "start_date", "end_date", "reward_amount"):
                if name in values:
                    setattr(draft, name, values[name] if values[name] is not None else _blank_for(name))
            if "target_respondents" in values and values["target_respondents"] is not None:
                draft.target_respondents = values["target_respondents"]
                draft.budget = None
                cost_changed = True
            elif "budget" in values and values["budget"] is not None:
                draft.budget = values["budget"]
                draft.target_respondents = None
                cost_changed = True
            if draft.start_date and draft.end_date and draft.end_date <= draft.start_date:
                raise ValueError("end_date must be after start_date")
            if cost_changed:
                draft.estimate_token += 1
                token = draft.estimate_token

        if cost_changed:
            self._schedule_estimate(draft.pk, token)
        return draft

    def _schedule_estimate(self, draft_id: int, token: int) -> None:
        from apps.billing.tasks import estimate_draft_cost_task  # local import to avoid circulars
        estimate_draft_cost_task.apply_async(
            args=[draft_id, token, seal_cookies(self.client.cookies())],
            countdown=settings.COST_ESTIMATE_DEBOUNCE_SECONDS,
        )
        logger.info("Cost estimate scheduled", extra={"draft_id": draft_id, "token": token})

    # ---- REVIEW ------------------------------------------------------------------

    def survey_payload(self, draft: SurveyDraft) -> Dict[str, Any]:
        questions = questions_from_payload(draft.questions)
        return {
            "name": draft.name.strip(),
            "introduction": draft.introduction or None,
            "type": draft.survey_type or SurveyTypeChoice.NPS.value,
            "accessType": draft.access_type,
            "startDate": _wire_datetime(draft.start_date),
            "endDate": _wire_datetime(draft.end_date),
            "targetRespondents": draft.target_respondents,
            "budget": str(draft.budget) if draft.budget is not None else None,
            "rewardAmount": str(draft.reward_amount) if draft.reward_amount is not None else None,
            "questions": [question_to_wire(q, pos) for pos, q in enumerate(questions, start=1)],
        }

    def finalize(self) -> Dict[str, Any]:
        """
        Persist the draft upstream as a DRAFT survey (update on edit re-entry)
        and discard the local draft. A failed upstream call keeps the draft.
        """
        from apps.billing.estimator import forget_estimate  # local import to avoid circulars
        draft = self.draft()
        self._require_step(draft, WizardStep.REVIEW)
        if not draft.questions:
            raise ValueError("A survey needs at least one question")
        payload = self.survey_payload(draft)

        if draft.survey_id:
            survey = self.client.update_survey(draft.survey_id, payload)
        else:
            survey = self.client.create_survey(payload)

        forget_estimate(draft.pk)
        draft.delete()
        logger.info("Survey saved from draft", extra={"owner_id": self.owner_id, "survey_id": (survey or {}).get("id")})
        return survey

    def begin_edit(self, survey_id: str) -> SurveyDraft:
        """Re-enter the wizard for an existing DRAFT survey, landing on QUESTIONS."""
        survey = self.client.get_survey(survey_id)
        if str(survey.get("status") or "").upper() != SurveyStatus.DRAFT.value:
            raise ValueError("Only draft surveys can be edited")
        questions = questions_from_payload(sorted(survey.get("questions") or [], key=lambda q: q.get("position") or 0))
        with self._locked() as draft:
            draft.survey_id = str(survey_id)
            draft.step = WizardStep.QUESTIONS
            draft.creation_method = CreationMethod.MANUAL
            draft.content_source = ContentSource.SKIP
            draft.survey_type = survey.get("type") if survey.get("type") in SurveyTypeChoice.values else SurveyTypeChoice.NPS
            draft.template_id = None
            draft.ai_topic, draft.ai_sector, draft.ai_error = "", "", ""
            draft.ai_question_count = None
            draft.questions = [question_to_payload(q) for q in questions]
            draft.name = survey.get("name") or ""
            draft.introduction = survey.get("introduction") or ""
            draft.access_type = survey.get("accessType") or draft.access_type
            draft.start_date = _parse_wire_datetime(survey.get("startDate"))
            draft.end_date = _parse_wire_datetime(survey.get("endDate"))
            target = survey.get("targetRespondents")
            budget = survey.get("budget")
            draft.target_respondents = int(target) if target else None
            draft.budget = Decimal(str(budget)) if (budget and not target) else None
            reward = survey.get("rewardAmount")
            draft.reward_amount = Decimal(str(reward)) if reward is not None else None
        logger.info("Draft loaded for edit", extra={"owner_id": self.owner_id, "survey_id": survey_id})
        return draft


def _blank_for(field_name: str) -> Any:
    return "" if field_name in ("name", "introduction") else None


def _parse_wire_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = parse_datetime(str(value).replace("Z", "+00:00"))
    if dt is not None and timezone.is_naive(dt):
        dt = timezone.make_aware(dt, timezone.get_current_timezone())
    return dt
