from django.db import models
from apps.core.models import TimeStampedModel
from auditlog.registry import auditlog


class PaymentSubject(models.TextChoices):
    SURVEY = "SURVEY", "Survey activation"
    WALLET_TOPUP = "WALLET_TOPUP", "Wallet top-up"


class PaymentStatus(models.TextChoices):
    INITIATED = "INITIATED", "Initiated"
    SUCCEEDED = "SUCCEEDED", "Succeeded"
    FAILED = "FAILED", "Failed"
    ABANDONED = "ABANDONED", "Abandoned"


class PaymentIntent(TimeStampedModel):
    """
    One payment attempt. Created per user action and never reused: a retry is a
    new row with a new idempotency key.
    """
    owner_id = models.CharField(max_length=128)
    amount = models.DecimalField(max_digits=14, decimal_places=2)
    currency = models.CharField(max_length=3)
    subject = models.CharField(max_length=16, choices=PaymentSubject.choices)
    survey_id = models.CharField(max_length=64, blank=True, null=True)
    idempotency_key = models.CharField(max_length=64, unique=True)
    authorization_url = models.URLField(max_length=1024, blank=True, default="")
    reference = models.CharField(max_length=128, blank=True, null=True, unique=True)
    status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.INITIATED)
    # Post-funding activation is attempted at most once per intent
    activation_retried = models.BooleanField(default=False)

    class Meta:
        indexes = [
            models.Index(fields=["owner_id", "status"], name="idx_intent_owner_status"),
            models.Index(fields=["survey_id"], name="idx_intent_survey"),
        ]

    def __str__(self):
        target = self.survey_id if self.subject == PaymentSubject.SURVEY else "wallet"
        return f"intent:{self.idempotency_key} {self.amount} {self.currency} -> {target} ({self.status})"


auditlog.register(PaymentIntent)
