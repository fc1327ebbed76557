from django.core.paginator import Paginator
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import status

from apps.core.engine import SurveyEngineClient
from apps.core.serializer import PaginationQuerySerializer
from apps.billing.estimator import cached_estimate
from .questions import question_to_payload
from .serializers import (
    QuestionSerializer, QuestionUpdateSerializer, QuestionMoveSerializer, StepSerializer, MethodSerializer,
    TemplateSelectSerializer, AiGenerateSerializer, SettingsSerializer, DraftReadSerializer,
)
from .wizard import BuilderWizard


def _wizard(request) -> BuilderWizard:
    return BuilderWizard(request.user.id, SurveyEngineClient.for_request(request))


def _bad_request(e: Exception) -> Response:
    return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)


def _not_found(question_id: str) -> Response:
    return Response({"detail": f"Question {question_id} not found"}, status=status.HTTP_404_NOT_FOUND)


class DraftView(APIView):
    """GET resumes (or starts) the operator's draft; DELETE discards it."""

    def get(self, request):
        return Response(DraftReadSerializer(_wizard(request).draft()).data)

    def delete(self, request):
        _wizard(request).abandon()
        return Response(status=status.HTTP_204_NO_CONTENT)


class StepView(APIView):
    def post(self, request):
        ser = StepSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        result = _wizard(request).go_to_step(ser.validated_data["step"])
        return Response(result.as_dict(), status=status.HTTP_200_OK)


class MethodView(APIView):
    def post(self, request):
        ser = MethodSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        draft = _wizard(request).choose_method(
            ser.validated_data["method"], ser.validated_data.get("survey_type") or None
        )
        return Response(DraftReadSerializer(draft).data)


class TemplateListView(APIView):
    def get(self, request):
        client = SurveyEngineClient.for_request(request)
        survey_type = (request.query_params.get("type") or "").strip().upper() or None
        return Response({"results": client.list_templates(survey_type)})


class TemplateSelectView(APIView):
    def post(self, request):
        ser = TemplateSelectSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        try:
            draft = _wizard(request).select_template(ser.validated_data["template_id"])
        except ValueError as e:
            return _bad_request(e)
        return Response(DraftReadSerializer(draft).data)


class SkipContentView(APIView):
    def post(self, request):
        try:
            draft = _wizard(request).skip_content()
        except ValueError as e:
            return _bad_request(e)
        return Response(DraftReadSerializer(draft).data)


class AiGenerateView(APIView):
    """
    Generate questions from a topic. Failures answer 502 with `retryable: true`;
    the topic stays on the draft either way.
    """

    def post(self, request):
        ser = AiGenerateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data
        try:
            draft = _wizard(request).generate_with_ai(
                data["topic"], data.get("survey_type"), data.get("sector"), data.get("count")
            )
        except ValueError as e:
            return _bad_request(e)
        return Response(DraftReadSerializer(draft).data)


class QuestionListCreateView(APIView):
    def get(self, request):
        items = [question_to_payload(q) for q in _wizard(request).questions()]
        return Response({"count": len(items), "results": items})

    def post(self, request):
        ser = QuestionSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        try:
            question = _wizard(request).add_question(ser.validated_data)
        except ValueError as e:
            return _bad_request(e)
        return Response(question_to_payload(question), status=status.HTTP_201_CREATED)


class QuestionDetailView(APIView):
    def patch(self, request, question_id: str):
        ser = QuestionUpdateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        try:
            question = _wizard(request).update_question(question_id, ser.validated_data)
        except KeyError:
            return _not_found(question_id)
        except ValueError as e:
            return _bad_request(e)
        return Response(question_to_payload(question))

    def delete(self, request, question_id: str):
        try:
            _wizard(request).remove_question(question_id)
        except KeyError:
            return _not_found(question_id)
        except ValueError as e:
            return _bad_request(e)
        return Response(status=status.HTTP_204_NO_CONTENT)


class QuestionMoveView(APIView):
    def post(self, request, question_id: str):
        ser = QuestionMoveSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        wizard = _wizard(request)
        try:
            wizard.move_question(question_id, ser.validated_data["position"])
        except KeyError:
            return _not_found(question_id)
        items = [question_to_payload(q) for q in wizard.questions()]
        return Response({"count": len(items), "results": items})


class SettingsView(APIView):
    def patch(self, request):
        ser = SettingsSerializer(data=request.data, partial=True)
        ser.is_valid(raise_exception=True)
        try:
            draft = _wizard(request).update_settings(dict(ser.validated_data))
        except ValueError as e:
            return _bad_request(e)
        return Response(DraftReadSerializer(draft).data)


class DraftEstimateView(APIView):
    """Latest settled estimate for the draft; `pending` while a debounced quote is outstanding."""

    def get(self, request):
        draft = _wizard(request).draft()
        estimate, pending = cached_estimate(draft.pk, draft.estimate_token)
        return Response({"estimate": estimate.to_wire() if estimate else None, "pending": pending})


class FinalizeView(APIView):
    def post(self, request):
        try:
            survey = _wizard(request).finalize()
        except ValueError as e:
            return _bad_request(e)
        return Response(survey, status=status.HTTP_201_CREATED)


class EditSurveyView(APIView):
    def post(self, request, survey_id: str):
        try:
            draft = _wizard(request).begin_edit(survey_id)
        except ValueError as e:
            return _bad_request(e)
        return Response(DraftReadSerializer(draft).data)


class MySurveysView(APIView):
    def get(self, request):
        client = SurveyEngineClient.for_request(request)
        surveys = client.list_my_surveys()
        status_filter = (request.query_params.get("status") or "").strip().upper()
        if status_filter:
            surveys = [s for s in surveys if str(s.get("status") or "").upper() == status_filter]

        pager_ser = PaginationQuerySerializer(data=request.query_params)
        pager_ser.is_valid(raise_exception=False)
        page = pager_ser.validated_data.get("page", 1)
        page_size = pager_ser.validated_data.get("page_size", 10)

        paginator = Paginator(surveys, page_size)
        page_obj = paginator.get_page(page)
        return Response({"count": paginator.count, "results": list(page_obj.object_list)})
