"""
Question representation shared by the builder and the respondent runner.

A question is one of a closed set of variants (`QuestionType`). Only the choice
variants carry options; every other variant drops them on construction. A type
the engine sends that we do not know becomes PLAIN_TEXT, rendered as a text box
with a presence check only.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from django.db import models

from apps.core.utility import new_local_id


class QuestionType(models.TextChoices):
    FREE_TEXT = "FREE_TEXT", "Free text"
    MULTIPLE_CHOICE_SINGLE = "MULTIPLE_CHOICE_SINGLE", "Multiple choice (single)"
    MULTIPLE_CHOICE_MULTI = "MULTIPLE_CHOICE_MULTI", "Multiple choice (multi)"
    RATING_LINEAR = "RATING_LINEAR", "Linear rating"
    RATING_STAR = "RATING_STAR", "Star rating"
    NPS_SCALE = "NPS_SCALE", "NPS scale"
    PLAIN_TEXT = "PLAIN_TEXT", "Plain text"


CHOICE_TYPES = frozenset({QuestionType.MULTIPLE_CHOICE_SINGLE, QuestionType.MULTIPLE_CHOICE_MULTI})

# Inclusive integer bounds per scale variant
SCALE_BOUNDS: Dict[str, Tuple[int, int]] = {
    QuestionType.RATING_LINEAR: (1, 10),
    QuestionType.RATING_STAR: (1, 5),
    QuestionType.NPS_SCALE: (0, 10),
}


def coerce_type(raw: Any) -> QuestionType:
    try:
        return QuestionType(str(raw or "").strip().upper())
    except ValueError:
        return QuestionType.PLAIN_TEXT


def decode_options(raw: Any) -> Tuple[str, ...]:
    """
    Options travel as a serialized ordered list. Accepts a list, a JSON-encoded
    array string, a comma-separated string or None.
    """
    if raw is None or raw == "":
        return ()
    if isinstance(raw, (list, tuple)):
        items: Iterable[Any] = raw
    elif isinstance(raw, str):
        text = raw.strip()
        if text.startswith("["):
            try:
                decoded = json.loads(text)
            except ValueError:
                decoded = None
            items = decoded if isinstance(decoded, list) else text.strip("[]").split(",")
        else:
            items = text.split(",")
    else:
        raise ValueError(f"Unsupported options payload: {type(raw).__name__}")
    out: List[str] = []
    for item in items:
        s = str(item).strip().strip('"')
        if s and s not in out:
            out.append(s)
    return tuple(out)


def encode_options(options: Iterable[str]) -> Optional[str]:
    options = list(options)
    return json.dumps(options) if options else None


@dataclass(frozen=True)
class Question:
    id: str
    text: str
    type: QuestionType
    required: bool = True
    options: Tuple[str, ...] = field(default_factory=tuple)
    # Original wire type when the engine sent something we don't model
    raw_type: Optional[str] = None

    def __post_init__(self):
        if self.type not in CHOICE_TYPES and self.options:
            object.__setattr__(self, "options", ())

    @property
    def is_choice(self) -> bool:
        return self.type in CHOICE_TYPES

    def with_fresh_id(self) -> "Question":
        return replace(self, id=new_local_id())


def question_from_payload(data: Dict[str, Any], keep_id: bool = True) -> Question:
    """
    Build a Question from either our own JSON (`text`/`type`) or the engine's
    wire shape (`questionText`/`questionType`, options as a JSON string).
    """
    raw_type = data.get("type") or data.get("questionType")
    qtype = coerce_type(raw_type)
    text = str(data.get("text") or data.get("questionText") or "").strip()
    if not text:
        raise ValueError("Question text is required")
    options = decode_options(data.get("options")) if qtype in CHOICE_TYPES else ()
    if qtype in CHOICE_TYPES and not options:
        raise ValueError(f"{text[:40]}: choice questions need options")
    qid = str(data["id"]) if keep_id and data.get("id") not in (None, "") else new_local_id()
    return Question(
        id=qid,
        text=text,
        type=qtype,
        required=bool(data.get("required", True)),
        options=options,
        raw_type=None if qtype != QuestionType.PLAIN_TEXT else (str(raw_type) if raw_type else None),
    )


def question_to_payload(q: Question) -> Dict[str, Any]:
    return {
        "id": q.id,
        "text": q.text,
        "type": q.type.value,
        "required": q.required,
        "options": list(q.options),
    }


def question_to_wire(q: Question, position: int) -> Dict[str, Any]:
    """Engine shape used when creating/updating a survey."""
    return {
        "questionText": q.text,
        "questionType": q.raw_type or q.type.value,
        "options": encode_options(q.options),
        "position": position,
        "required": q.required,
    }


def questions_from_payload(items: Iterable[Dict[str, Any]], keep_ids: bool = True) -> List[Question]:
    return [question_from_payload(item, keep_id=keep_ids) for item in items or []]


def clone_questions(items: Iterable[Dict[str, Any]]) -> List[Question]:
    """Template cloning: same content, fresh local identifiers."""
    return [question_from_payload(item, keep_id=False) for item in items or []]


# ---- Validation ----------------------------------------------------------------

@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> "ValidationResult":
        return cls(ok=True)

    @classmethod
    def error(cls, reason: str) -> "ValidationResult":
        return cls(ok=False, reason=reason)


def is_present(value: Any) -> bool:
    """Uniform presence check; whitespace-only strings count as empty."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    return True


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        s = value.strip()
        if s.lstrip("-").isdigit():
            return int(s)
    return None


def validate(question: Question, value: Any) -> ValidationResult:
    """
    Check a recorded answer against its question.

    Missing values fail only when the question is required. Present values are
    always checked against the variant's domain.
    """
    if not is_present(value):
        return ValidationResult.error("required") if question.required else ValidationResult.success()

    t = question.type

    if t == QuestionType.FREE_TEXT:
        if not isinstance(value, str):
            return ValidationResult.error("expected_text")
        return ValidationResult.success()

    if t == QuestionType.MULTIPLE_CHOICE_SINGLE:
        if not isinstance(value, str):
            return ValidationResult.error("expected_single_option")
        if value not in question.options:
            return ValidationResult.error("invalid_option")
        return ValidationResult.success()

    if t == QuestionType.MULTIPLE_CHOICE_MULTI:
        if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
            return ValidationResult.error("expected_option_list")
        if len(set(value)) != len(value):
            return ValidationResult.error("duplicate_option")
        if any(v not in question.options for v in value):
            return ValidationResult.error("invalid_option")
        return ValidationResult.success()

    if t in SCALE_BOUNDS:
        number = _as_int(value)
        if number is None:
            return ValidationResult.error("expected_integer")
        low, high = SCALE_BOUNDS[t]
        if not low <= number <= high:
            return ValidationResult.error("out_of_range")
        return ValidationResult.success()

    # PLAIN_TEXT escape hatch: presence already checked
    return ValidationResult.success()


def answer_to_wire(question: Question, value: Any) -> str:
    """Engine stores every answer as a string; multi-select travels as a JSON array."""
    if isinstance(value, (list, tuple)):
        return json.dumps(list(value))
    if question.type in SCALE_BOUNDS:
        number = _as_int(value)
        if number is not None:
            return str(number)
    return "" if value is None else str(value)
