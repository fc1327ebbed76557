from __future__ import annotations

from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import status

from apps.core.engine import SurveyEngineClient
from .live import feed_for, cached_aggregate
from .serializers import SubscribeSerializer


class LiveAnalyticsView(APIView):
    """
    Operator dashboard feed.

    POST   subscribe to a survey (closes any previous channel first)
    GET    current merged aggregate; `degraded` when the push channel is down
    DELETE close the channel
    """

    def _body(self, feed):
        sub = feed.subscription
        if sub is None:
            return {"survey_id": None, "aggregate": {}, "degraded": False}
        return {"survey_id": sub.survey_id, "aggregate": cached_aggregate(sub.survey_id), "degraded": sub.degraded}

    def get(self, request):
        return Response(self._body(feed_for(request.user.id)))

    def post(self, request):
        ser = SubscribeSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        feed = feed_for(request.user.id)
        feed.subscribe(ser.validated_data["survey_id"], SurveyEngineClient.for_request(request))
        return Response(self._body(feed), status=status.HTTP_200_OK)

    def delete(self, request):
        feed_for(request.user.id).unsubscribe()
        return Response(status=status.HTTP_204_NO_CONTENT)


class AnalyticsSnapshotView(APIView):
    """One-off REST snapshot, for dashboards that don't hold a live channel."""

    def get(self, request, survey_id: str):
        client = SurveyEngineClient.for_request(request)
        return Response(client.get_analytics(survey_id))
