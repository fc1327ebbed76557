from __future__ import annotations

import logging
from typing import Any, Dict

from apps.core.credentials import SESSION_COOKIES_KEY, seal_cookies
from apps.core.engine import SurveyEngineClient
from apps.core.permissions import AUTH_CONTEXT_KEY, EngineUser

logger = logging.getLogger(__name__)


def auth_context(request) -> Dict[str, Any]:
    """The only client-visible auth state: `{user, isAuthenticated}`."""
    context = request.session.get(AUTH_CONTEXT_KEY) or {}
    return {"user": context.get("user"), "isAuthenticated": bool(context.get("isAuthenticated"))}


def login(request, email: str, password: str) -> Dict[str, Any]:
    """
    Authenticate against the survey engine and keep its session server-side.

    The engine's cookies are sealed into the Django session; the browser only
    ever receives the Django session cookie.
    """
    client = SurveyEngineClient()
    body = client.login(email, password)
    user = body.get("user") or client.me()

    request.session.cycle_key()
    request.session[SESSION_COOKIES_KEY] = seal_cookies(client.cookies())
    request.session[AUTH_CONTEXT_KEY] = {"user": user, "isAuthenticated": True}
    logger.info("Operator logged in", extra={"email": email})
    return auth_context(request)


def clear_auth_context(request) -> None:
    """Drop authentication immediately. Drafts are keyed by owner id and survive this."""
    session = getattr(request, "session", None)
    if session is None:
        return
    context = session.get(AUTH_CONTEXT_KEY) or {}
    if context.get("user"):
        from apps.analytics.live import drop_feed  # local import to avoid circulars
        drop_feed(EngineUser(context["user"]).id)
    session.pop(AUTH_CONTEXT_KEY, None)
    session.pop(SESSION_COOKIES_KEY, None)


def logout(request) -> None:
    client = SurveyEngineClient.for_request(request)
    try:
        client.logout()
    finally:
        clear_auth_context(request)
        logger.info("Operator logged out")
