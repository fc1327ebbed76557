from rest_framework import serializers


class SubscribeSerializer(serializers.Serializer):
    survey_id = serializers.CharField(max_length=64)
