from django.urls import reverse
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import status

from apps.core.engine import SurveyEngineClient
from .activation import ActivationGate, AWAITING_FUNDS
from .estimator import CostEstimator
from .models import PaymentIntent
from .serializers import (
    EstimateRequestSerializer, ActivateSerializer, TopUpSerializer, PaymentCallbackSerializer,
)


def _callback_url(request) -> str:
    return request.build_absolute_uri(reverse("payment-callback"))


def _gate(request) -> ActivationGate:
    return ActivationGate(request.user.id, SurveyEngineClient.for_request(request))


class WalletView(APIView):
    def get(self, request):
        client = SurveyEngineClient.for_request(request)
        balance = client.get_wallet_balance()
        subscription = client.get_subscription()
        return Response({"balance": str(balance), "subscription": subscription})


class EstimateView(APIView):
    def post(self, request):
        ser = EstimateRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        estimator = CostEstimator(SurveyEngineClient.for_request(request))
        estimate = estimator.estimate(
            target_respondents=ser.validated_data.get("target_respondents"),
            budget=ser.validated_data.get("budget"),
        )
        return Response(estimate.to_wire())


class ActivateView(APIView):
    """
    Try to flip a DRAFT survey live. 200 when ACTIVE; 202 with a payment
    authorization URL when the wallet must be topped up first.
    """

    def post(self, request, survey_id: str):
        ser = ActivateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        try:
            outcome = _gate(request).attempt_activation(
                survey_id, currency=ser.validated_data.get("currency"), callback_url=_callback_url(request)
            )
        except ValueError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        code = status.HTTP_202_ACCEPTED if outcome.state == AWAITING_FUNDS else status.HTTP_200_OK
        return Response(outcome.as_dict(), status=code)


class TopUpView(APIView):
    def post(self, request):
        ser = TopUpSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        try:
            intent = _gate(request).start_wallet_topup(
                ser.validated_data["amount"], ser.validated_data.get("currency"), callback_url=_callback_url(request)
            )
        except ValueError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        return Response(
            {
                "idempotency_key": intent.idempotency_key,
                "authorization_url": intent.authorization_url,
                "reference": intent.reference,
                "amount": str(intent.amount),
                "currency": intent.currency,
                "status": intent.status,
            },
            status=status.HTTP_201_CREATED,
        )


class PaymentCallbackView(APIView):
    """Return leg of the provider redirect. Nothing in the query string is trusted beyond the reference."""

    def get(self, request):
        ser = PaymentCallbackSerializer(data=request.query_params)
        ser.is_valid(raise_exception=True)
        try:
            outcome = _gate(request).complete_funding(ser.validated_data["reference"])
        except PaymentIntent.DoesNotExist:
            return Response({"detail": "Unknown payment reference"}, status=status.HTTP_404_NOT_FOUND)
        code = status.HTTP_202_ACCEPTED if outcome.state == AWAITING_FUNDS else status.HTTP_200_OK
        return Response(outcome.as_dict(), status=code)
