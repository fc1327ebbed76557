from django.urls import path
from .views import (
    SessionStartView, SessionDetailView, SessionAnswerView, SessionNextView, SessionBackView,
    SessionClaimView, SessionSkipClaimView,
)

urlpatterns = [
    path("start/", SessionStartView.as_view(), name="session-start"),
    path("<int:session_id>/", SessionDetailView.as_view(), name="session-detail"),
    path("<int:session_id>/answer/", SessionAnswerView.as_view(), name="session-answer"),
    path("<int:session_id>/next/", SessionNextView.as_view(), name="session-next"),
    path("<int:session_id>/back/", SessionBackView.as_view(), name="session-back"),
    path("<int:session_id>/claim/", SessionClaimView.as_view(), name="session-claim"),
    path("<int:session_id>/skip-claim/", SessionSkipClaimView.as_view(), name="session-skip-claim"),
]
