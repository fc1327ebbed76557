from django.urls import path
from .views import LiveAnalyticsView, AnalyticsSnapshotView

urlpatterns = [
    path("live/", LiveAnalyticsView.as_view(), name="analytics-live"),
    path("surveys/<str:survey_id>/", AnalyticsSnapshotView.as_view(), name="analytics-snapshot"),
]
