from __future__ import annotations

from typing import Any, Dict, Optional

from rest_framework.authentication import SessionAuthentication
from rest_framework.permissions import BasePermission

AUTH_CONTEXT_KEY = "auth"


class EngineUser:
    """
    The operator as reported by the survey engine. Not a Django user: no row is
    kept locally, identity lives upstream and is carried in the session.
    """

    is_anonymous = False
    is_authenticated = True

    def __init__(self, data: Dict[str, Any]):
        self.data = dict(data or {})
        self.id = str(self.data.get("id") or self.data.get("userId") or self.data.get("email") or "")
        self.email = self.data.get("email") or ""
        self.tenant_id = self.data.get("tenantId")

    @property
    def pk(self) -> str:
        return self.id

    def __str__(self) -> str:
        return self.email or self.id


class EngineSessionAuthentication(SessionAuthentication):
    """Resolve `{user, isAuthenticated}` from the Django session; CSRF enforced like DRF's session auth."""

    def authenticate(self, request):
        context: Optional[Dict[str, Any]] = request._request.session.get(AUTH_CONTEXT_KEY)
        if not context or not context.get("isAuthenticated") or not context.get("user"):
            return None
        self.enforce_csrf(request)
        return EngineUser(context["user"]), None

    def authenticate_header(self, request):
        return "Session"


class IsOperator(BasePermission):
    """Allow only requests carrying an authenticated engine session."""

    def has_permission(self, request, view):
        user = request.user
        return bool(user is not None and getattr(user, "is_authenticated", False) and getattr(user, "id", ""))
