from decimal import Decimal

from django.conf import settings
from rest_framework import serializers


class EstimateRequestSerializer(serializers.Serializer):
    target_respondents = serializers.IntegerField(required=False, allow_null=True, min_value=1)
    budget = serializers.DecimalField(required=False, allow_null=True, max_digits=14, decimal_places=2, min_value=Decimal("0.01"))

    def validate(self, attrs):
        if attrs.get("target_respondents") is not None and attrs.get("budget") is not None:
            raise serializers.ValidationError("Provide either target_respondents or budget, not both.")
        return attrs


class ActivateSerializer(serializers.Serializer):
    currency = serializers.ChoiceField(choices=settings.PAYMENT_CURRENCIES, required=False)


class TopUpSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=14, decimal_places=2, min_value=Decimal("1"))
    currency = serializers.ChoiceField(choices=settings.PAYMENT_CURRENCIES, required=False)


class PaymentCallbackSerializer(serializers.Serializer):
    reference = serializers.CharField(required=False, allow_blank=True)
    trxref = serializers.CharField(required=False, allow_blank=True)

    def validate(self, attrs):
        ref = (attrs.get("reference") or attrs.get("trxref") or "").strip()
        if not ref:
            raise serializers.ValidationError("reference is required")
        attrs["reference"] = ref
        return attrs
