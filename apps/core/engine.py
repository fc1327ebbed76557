"""
Survey engine REST client.

Every upstream call the workflow makes goes through `SurveyEngineClient`. HTTP
failures are translated into the workflow's exception taxonomy here, so callers
only ever deal with `apps.core.exceptions` types.
"""
from __future__ import annotations

import logging
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests
from django.conf import settings

from .credentials import cookies_from_session
from .exceptions import EngineError, InsufficientFunds, PlanLimitExceeded, Unauthorized
from .utility import parse_decimal

logger = logging.getLogger(__name__)

# Wording of the engine's subscription-limit and wallet rejections
_PLAN_LIMIT_RE = re.compile(r"\b(?:limit reached|maximum response limit)\b", re.IGNORECASE)
_INSUFFICIENT_RE = re.compile(r"\binsufficient (?:wallet )?(?:funds|balance)\b", re.IGNORECASE)


class SurveyEngineClient:
    def __init__(self, cookies: Optional[Dict[str, str]] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.base_url = (base_url or settings.SURVEY_ENGINE_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.SURVEY_ENGINE_TIMEOUT
        self.http = requests.Session()
        self.http.headers.update({"Content-Type": "application/json", "Accept": "application/json"})
        if cookies:
            self.http.cookies.update(cookies)

    @classmethod
    def for_request(cls, request) -> "SurveyEngineClient":
        """Client carrying the upstream session of the operator/respondent behind `request`."""
        return cls(cookies=cookies_from_session(request.session))

    def cookies(self) -> Dict[str, str]:
        return requests.utils.dict_from_cookiejar(self.http.cookies)

    # ---- transport ---------------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _make_request(self, method: str, path: str, **kwargs) -> Any:
        url = self._url(path)
        try:
            response = self.http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error("Survey engine unreachable: %s %s (%s)", method, path, e)
            raise EngineError(f"Survey engine unreachable: {e}") from e

        if response.status_code == 401:
            logger.info("Survey engine rejected session", extra={"path": path})
            raise Unauthorized()
        if response.status_code >= 400:
            raise self._error_for(response, method, path)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    def _error_for(self, response: requests.Response, method: str, path: str) -> Exception:
        message = _error_message(response)
        logger.error(
            "Survey engine error %s on %s %s: %s", response.status_code, method, path, message
        )
        if response.status_code == 402 or _INSUFFICIENT_RE.search(message):
            return InsufficientFunds(message or None)
        if response.status_code in (400, 403, 409) and _PLAN_LIMIT_RE.search(message):
            return PlanLimitExceeded(message or None)
        return EngineError(message or None, upstream_status=response.status_code)

    # ---- surveys -----------------------------------------------------------------

    def create_survey(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._make_request("POST", "/surveys", json=payload)

    def get_survey(self, survey_id) -> Dict[str, Any]:
        return self._make_request("GET", f"/surveys/{survey_id}")

    def update_survey(self, survey_id, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._make_request("PUT", f"/surveys/{survey_id}", json=payload)

    def activate_survey(self, survey_id) -> Dict[str, Any]:
        return self._make_request("POST", f"/surveys/{survey_id}/activate")

    def list_my_surveys(self) -> List[Dict[str, Any]]:
        return self._make_request("GET", "/surveys/my-surveys") or []

    # ---- templates / AI ----------------------------------------------------------

    def list_templates(self, survey_type: Optional[str] = None) -> List[Dict[str, Any]]:
        if survey_type:
            return self._make_request("GET", "/templates/filter/type", params={"type": survey_type}) or []
        return self._make_request("GET", "/templates") or []

    def get_template(self, template_id) -> Dict[str, Any]:
        return self._make_request("GET", f"/templates/{template_id}")

    def generate_questions(self, topic: str, survey_type: str, sector: str, count: int) -> List[Dict[str, Any]]:
        body = {"topic": topic, "type": survey_type, "sector": sector, "questionCount": count}
        return self._make_request("POST", "/ai/generate", json=body)

    # ---- cost / wallet / plan ----------------------------------------------------

    def calculate_cost(self, target_respondents: Optional[int] = None, budget: Optional[Decimal] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"targetRespondents": target_respondents}
        if budget is not None:
            body["budget"] = str(budget)
        return self._make_request("POST", "/surveys/calculate-cost", json=body)

    def get_wallet_balance(self) -> Decimal:
        raw = self._make_request("GET", "/billing/wallet/balance")
        if isinstance(raw, dict):
            raw = raw.get("balance")
        return parse_decimal(raw, Decimal("0"))

    def get_subscription(self) -> Optional[Dict[str, Any]]:
        try:
            return self._make_request("GET", "/subscriptions/current")
        except EngineError as e:
            # No subscription on record means the free tier
            if e.upstream_status == 404:
                return None
            raise

    # ---- respondents -------------------------------------------------------------

    def register_participant(self, full_name: str, phone_number: str, email: Optional[str] = None) -> Dict[str, Any]:
        body = {"fullName": full_name, "phoneNumber": phone_number, "email": email or None}
        return self._make_request("POST", "/participants", json=body)

    def submit_response(self, survey_id, answers: List[Dict[str, Any]], participant_id: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"answers": answers}
        if participant_id:
            body["participantId"] = participant_id
        return self._make_request("POST", f"/surveys/{survey_id}/responses", json=body)

    # ---- payments ----------------------------------------------------------------

    def initiate_payment(self, amount: Decimal, currency: str, subject: str, idempotency_key: str,
                         callback_url: Optional[str] = None) -> Dict[str, Any]:
        body = {
            "amount": str(amount),
            "currency": currency,
            "subject": subject,
            "idempotencyKey": idempotency_key,
        }
        if callback_url:
            body["callbackUrl"] = callback_url
        return self._make_request("POST", "/payments", json=body, headers={"Idempotency-Key": idempotency_key})

    def verify_payment(self, reference: str) -> Dict[str, Any]:
        return self._make_request("GET", f"/payments/verify/{reference}")

    # ---- analytics ---------------------------------------------------------------

    def get_analytics(self, survey_id) -> Dict[str, Any]:
        return self._make_request("GET", "/responses/analytics", params={"surveyId": survey_id}) or {}

    def open_analytics_stream(self, survey_id) -> requests.Response:
        """Long-lived SSE response; the caller owns it and must close it."""
        try:
            response = self.http.get(
                self._url("/responses/stream"),
                params={"surveyId": survey_id},
                headers={"Accept": "text/event-stream"},
                stream=True,
                timeout=(self.timeout, None),
            )
        except requests.RequestException as e:
            raise EngineError(f"Analytics stream unavailable: {e}") from e
        if response.status_code == 401:
            response.close()
            raise Unauthorized()
        if response.status_code >= 400:
            response.close()
            raise EngineError(f"Analytics stream refused ({response.status_code})", upstream_status=response.status_code)
        return response

    # ---- auth --------------------------------------------------------------------

    def login(self, email: str, password: str) -> Dict[str, Any]:
        return self._make_request("POST", "/auth/login", json={"email": email, "password": password}) or {}

    def logout(self) -> None:
        self._make_request("POST", "/auth/logout")

    def me(self) -> Dict[str, Any]:
        return self._make_request("GET", "/auth/me")


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return (response.text or "").strip()[:500]
    if isinstance(body, dict):
        for key in ("message", "detail", "error"):
            if body.get(key):
                return str(body[key])
    return str(body)[:500]
