from django.contrib import admin
from .models import PaymentIntent


@admin.register(PaymentIntent)
class PaymentIntentAdmin(admin.ModelAdmin):
    list_display = ("idempotency_key", "owner_id", "subject", "survey_id", "amount", "currency", "status", "created_at")
    list_filter = ("status", "subject", "currency")
    search_fields = ("idempotency_key", "reference", "owner_id", "survey_id")
