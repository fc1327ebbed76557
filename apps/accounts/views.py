from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import status

from apps.core.exceptions import Unauthorized
from . import services
from .serializers import LoginSerializer, AuthContextSerializer


class LoginView(APIView):
    authentication_classes = []
    permission_classes = []

    def post(self, request):
        ser = LoginSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        context = services.login(request, ser.validated_data["email"], ser.validated_data["password"])
        return Response(AuthContextSerializer(context).data, status=status.HTTP_200_OK)


class LogoutView(APIView):
    authentication_classes = []
    permission_classes = []

    def post(self, request):
        try:
            services.logout(request)
        except Unauthorized:
            # Upstream session already gone; local context was cleared regardless
            pass
        return Response(status=status.HTTP_204_NO_CONTENT)


class MeView(APIView):
    """Current auth context; anonymous callers get `isAuthenticated: false`, not an error."""
    authentication_classes = []
    permission_classes = []

    def get(self, request):
        return Response(AuthContextSerializer(services.auth_context(request)).data)
