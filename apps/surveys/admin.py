from django.contrib import admin
from .models import SurveyDraft


@admin.register(SurveyDraft)
class SurveyDraftAdmin(admin.ModelAdmin):
    list_display = ("owner_id", "step", "name", "survey_type", "updated_at")
    search_fields = ("owner_id", "name")
