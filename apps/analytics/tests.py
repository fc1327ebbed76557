import threading
from unittest.mock import patch

from django.core.cache import cache
from django.test import TestCase
from rest_framework.test import APIClient

from apps.core.engine import SurveyEngineClient
from apps.core.exceptions import Unauthorized
from .live import LiveAggregateFeed, Subscription, cached_aggregate, drop_feed, feed_for, merge_aggregate, parse_sse


class FakeStream:
    """Stands in for a streaming requests.Response."""

    def __init__(self, lines, hold_open=False):
        self.lines = list(lines)
        self.hold_open = hold_open
        self.closed = threading.Event()

    def iter_lines(self, decode_unicode=False):
        for line in self.lines:
            yield line
        if self.hold_open:
            self.closed.wait(5)

    def close(self):
        self.closed.set()


def login(client, user_id="op-1"):
    session = client.session
    session["auth"] = {"user": {"id": user_id}, "isAuthenticated": True}
    session.save()


class AggregateMergeTests(TestCase):
    def test_update_overwrites_only_present_fields(self):
        cached = {"totalResponses": 10, "npsScore": 30, "byQuestion": {"q1": 4}}
        merged = merge_aggregate(cached, {"totalResponses": 11})
        self.assertEqual(merged, {"totalResponses": 11, "npsScore": 30, "byQuestion": {"q1": 4}})
        self.assertEqual(merge_aggregate(None, {"a": 1}), {"a": 1})
        self.assertEqual(merge_aggregate({"a": 1}, None), {"a": 1})

    def test_parse_sse_skips_comments_and_garbage(self):
        lines = [
            ": keep-alive",
            'data: {"surveyId": 1,',
            'data:  "totalResponses": 2}',
            "",
            "data: not json",
            "",
            "event: ping",
            "",
            b'data: {"npsScore": 50}',
        ]
        self.assertEqual(list(parse_sse(lines)), [{"surveyId": 1, "totalResponses": 2}, {"npsScore": 50}])


class SubscriptionTests(TestCase):
    def setUp(self):
        cache.clear()
        self.engine = SurveyEngineClient()

    def test_events_for_other_surveys_are_ignored(self):
        stream = FakeStream([
            'data: {"surveyId": "42", "data": {"totalResponses": 4}}',
            "",
            'data: {"surveyId": "99", "totalResponses": 100}',
            "",
            'data: {"completionRate": 0.5}',
            "",
        ])
        with patch.object(SurveyEngineClient, "get_analytics", return_value={"npsScore": 40}), \
                patch.object(SurveyEngineClient, "open_analytics_stream", return_value=stream) as open_stream:
            sub = Subscription("42", self.engine, reconnect_attempts=0, backoff=0).open()
            sub.join(5)
        open_stream.assert_called_once_with("42")
        self.assertEqual(cached_aggregate("42"), {"npsScore": 40, "totalResponses": 4, "completionRate": 0.5})
        # Stream ended on its own: reported degraded, cache still served
        self.assertTrue(sub.degraded)
        self.assertTrue(stream.closed.is_set())

    def test_reconnects_then_gives_up(self):
        streams = [FakeStream([]), FakeStream([]), FakeStream([])]
        with patch.object(SurveyEngineClient, "get_analytics", return_value={}), \
                patch.object(SurveyEngineClient, "open_analytics_stream", side_effect=streams) as open_stream:
            sub = Subscription("7", self.engine, reconnect_attempts=2, backoff=0).open()
            sub.join(5)
        self.assertEqual(open_stream.call_count, 3)
        self.assertTrue(sub.degraded)

    def test_healthy_streams_reset_the_failure_budget(self):
        event = ['data: {"totalResponses": 1}', ""]
        streams = [FakeStream(event), FakeStream(event), FakeStream(event), FakeStream(event, hold_open=True)]
        fourth_opened = threading.Event()

        def open_next(survey_id):
            stream = streams.pop(0)
            if not streams:
                fourth_opened.set()
            return stream

        with patch.object(SurveyEngineClient, "get_analytics", return_value={}), \
                patch.object(SurveyEngineClient, "open_analytics_stream", side_effect=open_next):
            sub = Subscription("7", self.engine, reconnect_attempts=1, backoff=0).open()
            self.assertTrue(fourth_opened.wait(5))
            self.assertFalse(sub.closed)
            sub.close()
        sub.join(5)
        self.assertEqual(cached_aggregate("7"), {"totalResponses": 1})

    def test_lost_authentication_stops_without_retry(self):
        with patch.object(SurveyEngineClient, "get_analytics", return_value={}), \
                patch.object(SurveyEngineClient, "open_analytics_stream", side_effect=Unauthorized()) as open_stream:
            sub = Subscription("7", self.engine, reconnect_attempts=3, backoff=0).open()
            sub.join(5)
        open_stream.assert_called_once()
        self.assertTrue(sub.degraded)

    def test_switching_survey_closes_previous_channel(self):
        streams = {"1": FakeStream([], hold_open=True), "2": FakeStream([], hold_open=True)}
        feed = LiveAggregateFeed("op-1")
        with patch.object(SurveyEngineClient, "get_analytics", return_value={}), \
                patch.object(SurveyEngineClient, "open_analytics_stream", side_effect=lambda sid: streams[sid]):
            first = feed.subscribe("1", self.engine)
            self.assertIs(feed.subscribe("1", self.engine), first)
            second = feed.subscribe("2", self.engine)
            self.assertTrue(first.closed)
            self.assertFalse(second.closed)
            feed.unsubscribe()
        first.join(5)
        second.join(5)
        self.assertTrue(second.closed)
        self.assertIsNone(feed.subscription)
        self.assertEqual(feed.aggregate(), {})


class LiveAnalyticsApiTests(TestCase):
    def setUp(self):
        cache.clear()
        self.client = APIClient()
        login(self.client)

    def tearDown(self):
        drop_feed("op-1")

    def test_subscribe_read_and_close(self):
        stream = FakeStream([], hold_open=True)
        with patch.object(SurveyEngineClient, "get_analytics", return_value={"totalResponses": 12}), \
                patch.object(SurveyEngineClient, "open_analytics_stream", return_value=stream):
            resp = self.client.post("/api/v1/analytics/live/", {"survey_id": "42"}, format="json")
            self.assertEqual(resp.status_code, 200)
            self.assertEqual(resp.json()["survey_id"], "42")
            self.assertEqual(resp.json()["aggregate"], {"totalResponses": 12})
            self.assertEqual(self.client.get("/api/v1/analytics/live/").json()["aggregate"], {"totalResponses": 12})

            self.assertEqual(self.client.delete("/api/v1/analytics/live/").status_code, 204)
        self.assertTrue(stream.closed.is_set())
        self.assertIsNone(self.client.get("/api/v1/analytics/live/").json()["survey_id"])

    def test_sign_out_closes_channel(self):
        stream = FakeStream([], hold_open=True)
        with patch.object(SurveyEngineClient, "get_analytics", return_value={}), \
                patch.object(SurveyEngineClient, "open_analytics_stream", return_value=stream):
            self.client.post("/api/v1/analytics/live/", {"survey_id": "42"}, format="json")
            sub = feed_for("op-1").subscription
            with patch.object(SurveyEngineClient, "logout", return_value=None):
                self.client.post("/api/v1/auth/logout/", {}, format="json")
        self.assertTrue(sub.closed)
        self.assertTrue(stream.closed.is_set())

    def test_snapshot_endpoint(self):
        with patch.object(SurveyEngineClient, "get_analytics", return_value={"npsScore": 12}) as snap:
            resp = self.client.get("/api/v1/analytics/surveys/42/")
        snap.assert_called_once_with("42")
        self.assertEqual(resp.json(), {"npsScore": 12})
