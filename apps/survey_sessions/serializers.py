from rest_framework import serializers

from apps.surveys.questions import validate, questions_from_payload
from .models import SurveySession


class SessionStartSerializer(serializers.Serializer):
    survey_id = serializers.CharField(max_length=64)


class AnswerSerializer(serializers.Serializer):
    value = serializers.JSONField(allow_null=True)


class ClaimSerializer(serializers.Serializer):
    full_name = serializers.CharField(max_length=255)
    phone_number = serializers.RegexField(r"^\+?[0-9 ()-]{7,20}$", max_length=20)
    email = serializers.EmailField(required=False, allow_blank=True, allow_null=True)


class SkipClaimSerializer(serializers.Serializer):
    confirm = serializers.BooleanField(default=False)


class SessionReadSerializer(serializers.ModelSerializer):
    survey = serializers.SerializerMethodField()
    current_question = serializers.SerializerMethodField()
    can_advance = serializers.SerializerMethodField()
    total_questions = serializers.SerializerMethodField()

    class Meta:
        model = SurveySession
        fields = [
            "id", "survey_id", "survey", "state", "current_index", "total_questions", "current_question",
            "can_advance", "answers", "reward_amount", "participant_id", "response_id", "last_error",
            "created_at", "updated_at",
        ]

    def _questions(self, obj):
        return obj.survey_snapshot.get("questions") or []

    def get_survey(self, obj):
        snap = obj.survey_snapshot or {}
        return {"id": snap.get("id"), "name": snap.get("name"), "introduction": snap.get("introduction")}

    def get_total_questions(self, obj):
        return len(self._questions(obj))

    def get_current_question(self, obj):
        items = self._questions(obj)
        return items[obj.current_index] if 0 <= obj.current_index < len(items) else None

    def get_can_advance(self, obj):
        items = questions_from_payload(self._questions(obj))
        if not (0 <= obj.current_index < len(items)):
            return False
        q = items[obj.current_index]
        return validate(q, (obj.answers or {}).get(q.id)).ok
