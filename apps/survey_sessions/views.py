from django.http import Http404
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import status

from apps.core.engine import SurveyEngineClient
from .models import SurveySession
from .runner import SessionRunner
from .serializers import (
    SessionStartSerializer, SessionReadSerializer, AnswerSerializer, ClaimSerializer, SkipClaimSerializer,
)

OWNED_SESSIONS_KEY = "runner_sessions"


def _remember(request, session_id: int) -> None:
    owned = list(request.session.get(OWNED_SESSIONS_KEY) or [])
    if session_id not in owned:
        owned.append(session_id)
    request.session[OWNED_SESSIONS_KEY] = owned[-20:]


def _runner(request, session_id: int) -> SessionRunner:
    """Only the browser that started a session may drive it."""
    if session_id not in (request.session.get(OWNED_SESSIONS_KEY) or []):
        raise Http404("Session not found")
    if not SurveySession.objects.filter(pk=session_id).exists():
        raise Http404("Session not found")
    return SessionRunner(session_id, SurveyEngineClient.for_request(request))


def _state(runner: SessionRunner, result=None, code=status.HTTP_200_OK) -> Response:
    body = SessionReadSerializer(runner.session()).data
    if result is not None:
        body["result"] = result.as_dict()
    return Response(body, status=code)


class SessionStartView(APIView):
    """Start a respondent session for an ACTIVE survey. Public to allow anonymous runners."""
    permission_classes = []

    def post(self, request):
        ser = SessionStartSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        try:
            runner = SessionRunner.start(ser.validated_data["survey_id"], SurveyEngineClient.for_request(request))
        except ValueError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        _remember(request, runner.session_id)
        return _state(runner, code=status.HTTP_201_CREATED)


class SessionDetailView(APIView):
    permission_classes = []

    def get(self, request, session_id: int):
        return _state(_runner(request, session_id))

    def delete(self, request, session_id: int):
        _runner(request, session_id).abandon()
        return Response(status=status.HTTP_204_NO_CONTENT)


class SessionAnswerView(APIView):
    permission_classes = []

    def post(self, request, session_id: int):
        runner = _runner(request, session_id)
        ser = AnswerSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        try:
            result = runner.record_answer(ser.validated_data["value"])
        except ValueError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        return _state(runner, result)


class SessionNextView(APIView):
    permission_classes = []

    def post(self, request, session_id: int):
        runner = _runner(request, session_id)
        try:
            result = runner.next()
        except ValueError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        return _state(runner, result)


class SessionBackView(APIView):
    permission_classes = []

    def post(self, request, session_id: int):
        runner = _runner(request, session_id)
        try:
            result = runner.back()
        except ValueError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        return _state(runner, result)


class SessionClaimView(APIView):
    permission_classes = []

    def post(self, request, session_id: int):
        runner = _runner(request, session_id)
        ser = ClaimSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data
        try:
            result = runner.claim_reward(data["full_name"], data["phone_number"], data.get("email") or None)
        except ValueError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        return _state(runner, result)


class SessionSkipClaimView(APIView):
    permission_classes = []

    def post(self, request, session_id: int):
        runner = _runner(request, session_id)
        ser = SkipClaimSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        try:
            result = runner.skip_reward(ser.validated_data["confirm"])
        except ValueError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        return _state(runner, result)
