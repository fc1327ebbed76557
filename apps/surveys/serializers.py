from decimal import Decimal

from rest_framework import serializers

from .models import SurveyDraft, CreationMethod, SurveyTypeChoice, AccessTypeChoice, WizardStep
from .questions import QuestionType


class QuestionSerializer(serializers.Serializer):
    id = serializers.CharField(read_only=True)
    text = serializers.CharField(max_length=2000)
    type = serializers.ChoiceField(choices=QuestionType.choices)
    required = serializers.BooleanField(required=False, default=True)
    options = serializers.ListField(child=serializers.CharField(max_length=255), required=False, default=list)


class QuestionUpdateSerializer(serializers.Serializer):
    text = serializers.CharField(max_length=2000, required=False)
    type = serializers.ChoiceField(choices=QuestionType.choices, required=False)
    required = serializers.BooleanField(required=False)
    options = serializers.ListField(child=serializers.CharField(max_length=255), required=False)


class QuestionMoveSerializer(serializers.Serializer):
    position = serializers.IntegerField(min_value=0)


class StepSerializer(serializers.Serializer):
    step = serializers.CharField()


class MethodSerializer(serializers.Serializer):
    method = serializers.ChoiceField(choices=CreationMethod.choices)
    survey_type = serializers.ChoiceField(choices=SurveyTypeChoice.choices, required=False, allow_blank=True)


class TemplateSelectSerializer(serializers.Serializer):
    template_id = serializers.CharField(max_length=64)


class AiGenerateSerializer(serializers.Serializer):
    topic = serializers.CharField(max_length=2000)
    survey_type = serializers.ChoiceField(choices=SurveyTypeChoice.choices, required=False)
    sector = serializers.CharField(max_length=128, required=False, allow_blank=True)
    count = serializers.IntegerField(required=False, min_value=1, max_value=20)


class SettingsSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255, required=False, allow_blank=True)
    introduction = serializers.CharField(required=False, allow_blank=True)
    access_type = serializers.ChoiceField(choices=AccessTypeChoice.choices, required=False)
    start_date = serializers.DateTimeField(required=False, allow_null=True)
    end_date = serializers.DateTimeField(required=False, allow_null=True)
    target_respondents = serializers.IntegerField(required=False, allow_null=True, min_value=1)
    budget = serializers.DecimalField(required=False, allow_null=True, max_digits=14, decimal_places=2,
                                      min_value=Decimal("0.01"))
    reward_amount = serializers.DecimalField(required=False, allow_null=True, max_digits=14, decimal_places=2,
                                             min_value=Decimal("0"))

    def validate(self, attrs):
        if attrs.get("target_respondents") is not None and attrs.get("budget") is not None:
            raise serializers.ValidationError("Provide either target_respondents or budget, not both.")
        return attrs


class DraftReadSerializer(serializers.ModelSerializer):
    steps = serializers.SerializerMethodField()

    class Meta:
        model = SurveyDraft
        fields = [
            "id", "step", "steps", "creation_method", "survey_type", "content_source", "template_id",
            "ai_topic", "ai_sector", "ai_question_count", "ai_error",
            "questions", "name", "introduction", "access_type", "start_date", "end_date",
            "target_respondents", "budget", "reward_amount", "survey_id", "created_at", "updated_at",
        ]

    def get_steps(self, obj):
        return list(WizardStep.values)
