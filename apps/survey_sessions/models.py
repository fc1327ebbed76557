from django.db import models
from apps.core.models import TimeStampedModel
from auditlog.registry import auditlog


class SessionState(models.TextChoices):
    ANSWERING = "ANSWERING", "Answering"
    REWARD_CLAIM = "REWARD_CLAIM", "Reward claim"
    SUBMITTING = "SUBMITTING", "Submitting"
    COMPLETED = "COMPLETED", "Completed"


class SurveySession(TimeStampedModel):
    """
    One respondent's traversal of a survey. The survey definition is frozen at
    start so question identities cannot shift under recorded answers.
    """
    survey_id = models.CharField(max_length=64)
    survey_snapshot = models.JSONField(default=dict)
    state = models.CharField(max_length=16, choices=SessionState.choices, default=SessionState.ANSWERING)
    current_index = models.PositiveIntegerField(default=0)
    answers = models.JSONField(default=dict)  # question id -> recorded value
    reward_amount = models.DecimalField(max_digits=14, decimal_places=2, blank=True, null=True)
    participant_id = models.CharField(max_length=64, blank=True, null=True)
    response_id = models.CharField(max_length=64, blank=True, null=True)
    submit_attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True, default="")
    submitted_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        indexes = [
            models.Index(fields=["state", "updated_at"], name="idx_session_state_updated"),
        ]

    def __str__(self):
        return f"session#{self.id} survey#{self.survey_id} ({self.state})"


auditlog.register(SurveySession, exclude_fields=["survey_snapshot"])
