import json
from decimal import Decimal
from unittest.mock import patch

import requests
from django.test import TestCase

from .credentials import open_cookies, seal_cookies
from .engine import SurveyEngineClient
from .exceptions import EngineError, InsufficientFunds, PlanLimitExceeded, Unauthorized


def fake_response(status_code, body=None):
    resp = requests.Response()
    resp.status_code = status_code
    resp._content = json.dumps(body).encode() if body is not None else b""
    return resp


class SurveyEngineClientTests(TestCase):
    def setUp(self):
        self.engine = SurveyEngineClient(cookies={"SESSION": "abc"}, base_url="http://engine.test/api/")

    def test_carries_session_cookie_and_parses_json(self):
        with patch.object(requests.Session, "request", return_value=fake_response(200, {"id": 1})) as req:
            self.assertEqual(self.engine.get_survey(1), {"id": 1})
        method, url = req.call_args.args
        self.assertEqual((method, url), ("GET", "http://engine.test/api/surveys/1"))
        self.assertEqual(self.engine.cookies(), {"SESSION": "abc"})

    def test_status_mapping(self):
        cases = [
            (401, {"message": "expired"}, Unauthorized),
            (402, {"message": "Payment required"}, InsufficientFunds),
            (400, {"message": "Insufficient wallet balance"}, InsufficientFunds),
            (403, {"message": "Free limit reached. Please upgrade to create more surveys."}, PlanLimitExceeded),
            (409, {"message": "This survey has reached the maximum response limit for your plan."}, PlanLimitExceeded),
            (500, {"error": "boom"}, EngineError),
        ]
        for code, body, exc in cases:
            with self.subTest(code=code), \
                    patch.object(requests.Session, "request", return_value=fake_response(code, body)):
                with self.assertRaises(exc):
                    self.engine.activate_survey(9)

    def test_validation_messages_mentioning_plans_stay_validation_errors(self):
        bodies = [
            {"message": "Please explain your plan in question 3"},
            {"message": "Question text must not exceed the character limit"},
            {"message": "Upgrade path is required for the pricing question"},
        ]
        for body in bodies:
            with self.subTest(body=body), \
                    patch.object(requests.Session, "request", return_value=fake_response(400, body)):
                with self.assertRaises(EngineError) as ctx:
                    self.engine.update_survey(9, {})
            self.assertNotIsInstance(ctx.exception, PlanLimitExceeded)
            self.assertEqual(ctx.exception.status_code, 400)

    def test_validation_errors_are_not_retryable(self):
        with patch.object(requests.Session, "request", return_value=fake_response(422, {"message": "bad"})):
            with self.assertRaises(EngineError) as ctx:
                self.engine.update_survey(9, {})
        self.assertEqual(ctx.exception.status_code, 422)
        self.assertFalse(ctx.exception.retryable)

    def test_unreachable_engine(self):
        with patch.object(requests.Session, "request", side_effect=requests.ConnectionError("refused")):
            with self.assertRaises(EngineError) as ctx:
                self.engine.list_my_surveys()
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.status_code, 502)

    def test_broken_transfer_is_an_engine_error(self):
        for error in (requests.exceptions.ChunkedEncodingError("peer dropped"), requests.TooManyRedirects("loop")):
            with self.subTest(error=type(error).__name__), \
                    patch.object(requests.Session, "request", side_effect=error):
                with self.assertRaises(EngineError) as ctx:
                    self.engine.submit_response(42, [], None)
            self.assertTrue(ctx.exception.retryable)

    def test_wallet_balance_and_missing_subscription(self):
        with patch.object(requests.Session, "request", return_value=fake_response(200, {"balance": "12.50"})):
            self.assertEqual(self.engine.get_wallet_balance(), Decimal("12.50"))
        with patch.object(requests.Session, "request", return_value=fake_response(404, {"message": "none"})):
            self.assertIsNone(self.engine.get_subscription())

    def test_payment_carries_idempotency_key(self):
        with patch.object(requests.Session, "request", return_value=fake_response(200, {"data": {}})) as req:
            self.engine.initiate_payment(Decimal("10"), "USD", "42", "pay_1", None)
        kwargs = req.call_args.kwargs
        self.assertEqual(kwargs["headers"]["Idempotency-Key"], "pay_1")
        self.assertEqual(kwargs["json"]["idempotencyKey"], "pay_1")
        self.assertEqual(kwargs["json"]["amount"], "10")


class CredentialsTests(TestCase):
    def test_tampered_blob_yields_no_cookies(self):
        sealed = seal_cookies({"SESSION": "abc"})
        self.assertEqual(open_cookies(sealed), {"SESSION": "abc"})
        self.assertEqual(open_cookies(sealed[:-4] + "AAAA"), {})
        self.assertEqual(open_cookies(None), {})
