from django.db import models
from apps.core.models import TimeStampedModel
from auditlog.registry import auditlog


class WizardStep(models.TextChoices):
    METHOD = "METHOD", "Method"
    CONTENT = "CONTENT", "Content"
    QUESTIONS = "QUESTIONS", "Questions"
    SETTINGS = "SETTINGS", "Settings"
    REVIEW = "REVIEW", "Review"


STEP_ORDER = [WizardStep.METHOD, WizardStep.CONTENT, WizardStep.QUESTIONS, WizardStep.SETTINGS, WizardStep.REVIEW]


class CreationMethod(models.TextChoices):
    MANUAL = "MANUAL", "Manual"
    AI = "AI", "AI assisted"


class ContentSource(models.TextChoices):
    TEMPLATE = "TEMPLATE", "Template"
    AI = "AI", "AI generated"
    SKIP = "SKIP", "Skipped"


class SurveyTypeChoice(models.TextChoices):
    NPS = "NPS", "Net Promoter Score"
    CES = "CES", "Customer Effort Score"
    CSAT = "CSAT", "Customer Satisfaction"


class AccessTypeChoice(models.TextChoices):
    PUBLIC = "PUBLIC", "Public"
    PRIVATE = "PRIVATE", "Private"


class SurveyDraft(TimeStampedModel):
    """
    The single in-progress survey of one operator. Owned by exactly one wizard;
    every write goes through BuilderWizard under a row lock.
    """
    owner_id = models.CharField(max_length=128, unique=True)
    step = models.CharField(max_length=16, choices=WizardStep.choices, default=WizardStep.METHOD)

    creation_method = models.CharField(max_length=16, choices=CreationMethod.choices, blank=True, default="")
    survey_type = models.CharField(max_length=8, choices=SurveyTypeChoice.choices, blank=True, default="")
    content_source = models.CharField(max_length=16, choices=ContentSource.choices, blank=True, default="")
    template_id = models.CharField(max_length=64, blank=True, null=True)

    ai_topic = models.TextField(blank=True, default="")
    ai_sector = models.CharField(max_length=128, blank=True, default="")
    ai_question_count = models.PositiveSmallIntegerField(blank=True, null=True)
    ai_error = models.TextField(blank=True, default="")

    questions = models.JSONField(default=list)

    name = models.CharField(max_length=255, blank=True, default="")
    introduction = models.TextField(blank=True, default="")
    access_type = models.CharField(max_length=8, choices=AccessTypeChoice.choices, default=AccessTypeChoice.PUBLIC)
    start_date = models.DateTimeField(blank=True, null=True)
    end_date = models.DateTimeField(blank=True, null=True)
    # Exactly one of these two drives the cost estimate; writing one clears the other
    target_respondents = models.PositiveIntegerField(blank=True, null=True)
    budget = models.DecimalField(max_digits=14, decimal_places=2, blank=True, null=True)
    reward_amount = models.DecimalField(max_digits=14, decimal_places=2, blank=True, null=True)

    estimate_token = models.PositiveIntegerField(default=0)
    # Set when re-entering the wizard to edit an existing upstream DRAFT survey
    survey_id = models.CharField(max_length=64, blank=True, null=True)

    class Meta:
        indexes = [
            models.Index(fields=["updated_at"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(target_respondents__isnull=True) | models.Q(budget__isnull=True),
                name="draft_single_cost_driver",
            ),
        ]

    def __str__(self):
        return f"draft:{self.owner_id}@{self.step}"


auditlog.register(SurveyDraft, exclude_fields=["estimate_token"])
