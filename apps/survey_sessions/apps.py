from django.apps import AppConfig


class SurveySessionsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.survey_sessions"
