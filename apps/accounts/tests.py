from unittest.mock import patch

from django.test import TestCase
from rest_framework.test import APIClient

from apps.core.credentials import SESSION_COOKIES_KEY, open_cookies
from apps.core.engine import SurveyEngineClient
from apps.core.exceptions import Unauthorized

OPERATOR = {"id": 7, "email": "op@example.com", "tenantId": 3}


class AccountsApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()

    def _login(self):
        with patch.object(SurveyEngineClient, "login", return_value={"user": OPERATOR}), \
                patch.object(SurveyEngineClient, "cookies", return_value={"SESSION": "upstream-secret"}):
            return self.client.post(
                "/api/v1/auth/login/", {"email": "op@example.com", "password": "pw"}, format="json"
            )

    def test_me_when_anonymous(self):
        resp = self.client.get("/api/v1/auth/me/")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"user": None, "isAuthenticated": False})

    def test_login_keeps_engine_cookies_server_side(self):
        resp = self._login()
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"user": OPERATOR, "isAuthenticated": True})
        self.assertNotIn("upstream-secret", resp.content.decode())

        sealed = self.client.session[SESSION_COOKIES_KEY]
        self.assertNotIn("upstream-secret", sealed)
        self.assertEqual(open_cookies(sealed), {"SESSION": "upstream-secret"})
        self.assertTrue(self.client.get("/api/v1/auth/me/").json()["isAuthenticated"])

    def test_login_falls_back_to_me_lookup(self):
        with patch.object(SurveyEngineClient, "login", return_value={"token": "ignored"}), \
                patch.object(SurveyEngineClient, "me", return_value=OPERATOR) as me:
            resp = self.client.post(
                "/api/v1/auth/login/", {"email": "op@example.com", "password": "pw"}, format="json"
            )
        me.assert_called_once_with()
        self.assertEqual(resp.json()["user"], OPERATOR)

    def test_bad_credentials(self):
        with patch.object(SurveyEngineClient, "login", side_effect=Unauthorized("Invalid credentials")):
            resp = self.client.post(
                "/api/v1/auth/login/", {"email": "op@example.com", "password": "nope"}, format="json"
            )
        self.assertEqual(resp.status_code, 401)
        self.assertFalse(self.client.get("/api/v1/auth/me/").json()["isAuthenticated"])

    def test_logout_clears_context_even_if_upstream_expired(self):
        self._login()
        with patch.object(SurveyEngineClient, "logout", side_effect=Unauthorized()):
            resp = self.client.post("/api/v1/auth/logout/", {}, format="json")
        self.assertEqual(resp.status_code, 204)
        self.assertNotIn(SESSION_COOKIES_KEY, self.client.session)
        self.assertEqual(self.client.get("/api/v1/auth/me/").json()["isAuthenticated"], False)

    def test_any_upstream_401_signs_the_operator_out(self):
        self._login()
        with patch.object(SurveyEngineClient, "get_wallet_balance", side_effect=Unauthorized()):
            resp = self.client.get("/api/v1/billing/wallet/")
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.json()["code"], "unauthorized")
        self.assertFalse(self.client.get("/api/v1/auth/me/").json()["isAuthenticated"])
        self.assertEqual(self.client.get("/api/v1/billing/wallet/").status_code, 401)
