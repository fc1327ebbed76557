from django.urls import path
from .views import (
    DraftView, StepView, MethodView, TemplateListView, TemplateSelectView, SkipContentView, AiGenerateView,
    QuestionListCreateView, QuestionDetailView, QuestionMoveView, SettingsView, DraftEstimateView,
    FinalizeView, EditSurveyView, MySurveysView,
)

urlpatterns = [
    path("", DraftView.as_view(), name="builder-draft"),
    path("step/", StepView.as_view(), name="builder-step"),
    path("method/", MethodView.as_view(), name="builder-method"),
    path("templates/", TemplateListView.as_view(), name="builder-templates"),
    path("template/", TemplateSelectView.as_view(), name="builder-template-select"),
    path("skip/", SkipContentView.as_view(), name="builder-skip"),
    path("ai/", AiGenerateView.as_view(), name="builder-ai"),
    path("questions/", QuestionListCreateView.as_view(), name="builder-questions"),
    path("questions/<str:question_id>/", QuestionDetailView.as_view(), name="builder-question-detail"),
    path("questions/<str:question_id>/move/", QuestionMoveView.as_view(), name="builder-question-move"),
    path("settings/", SettingsView.as_view(), name="builder-settings"),
    path("estimate/", DraftEstimateView.as_view(), name="builder-estimate"),
    path("finalize/", FinalizeView.as_view(), name="builder-finalize"),
    path("edit/<str:survey_id>/", EditSurveyView.as_view(), name="builder-edit"),
    path("surveys/", MySurveysView.as_view(), name="builder-my-surveys"),
]
