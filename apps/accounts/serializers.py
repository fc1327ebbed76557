from rest_framework import serializers


class LoginSerializer(serializers.Serializer):
    email = serializers.EmailField()
    password = serializers.CharField(write_only=True, trim_whitespace=False)


class AuthContextSerializer(serializers.Serializer):
    user = serializers.JSONField(allow_null=True)
    isAuthenticated = serializers.BooleanField()
