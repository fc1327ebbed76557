"""
Live analytics for the survey an operator is watching.

The engine pushes partial aggregates over SSE. Each one is merged into the
cached full aggregate by field-level overwrite, so late or out-of-order events
can only replace fields, never erase them. Each operator has at most one open
channel; subscribing to another survey closes the previous one first.
"""
from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, Iterable, Iterator, Optional

import requests
from django.conf import settings
from django.core.cache import cache

from apps.core.engine import SurveyEngineClient
from apps.core.exceptions import ChannelFailure, EngineError, Unauthorized

logger = logging.getLogger(__name__)

AGGREGATE_TIMEOUT = 60 * 60 * 6


def merge_aggregate(cached: Optional[Dict[str, Any]], update: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keys in `update` replace cached values; absent keys are kept as they were."""
    return {**(cached or {}), **(update or {})}


def aggregate_key(survey_id) -> str:
    return f"analytics:{survey_id}"


def cached_aggregate(survey_id) -> Dict[str, Any]:
    return cache.get(aggregate_key(survey_id)) or {}


def apply_update(survey_id, update: Dict[str, Any]) -> Dict[str, Any]:
    merged = merge_aggregate(cache.get(aggregate_key(survey_id)), update)
    cache.set(aggregate_key(survey_id), merged, AGGREGATE_TIMEOUT)
    return merged


def parse_sse(lines: Iterable[Any]) -> Iterator[Dict[str, Any]]:
    """Yield JSON payloads of `data:` events; comments and malformed events are skipped."""
    buffer = []
    for raw in lines:
        line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else (raw or "")
        if line == "":
            if buffer:
                payload = "\n".join(buffer)
                buffer = []
                try:
                    event = json.loads(payload)
                except ValueError:
                    logger.warning("Skipping malformed analytics event", extra={"payload": payload[:200]})
                    continue
                if isinstance(event, dict):
                    yield event
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            buffer.append(line[5:].lstrip())
    if buffer:
        try:
            event = json.loads("\n".join(buffer))
        except ValueError:
            return
        if isinstance(event, dict):
            yield event


class Subscription:
    """
    Handle for one open push channel. `close()` is the only way to stop it and
    is safe to call more than once.
    """

    def __init__(self, survey_id: str, client: SurveyEngineClient, reconnect_attempts: Optional[int] = None,
                 backoff: Optional[float] = None):
        self.survey_id = str(survey_id)
        self.client = client
        self.reconnect_attempts = settings.ANALYTICS_RECONNECT_ATTEMPTS if reconnect_attempts is None else reconnect_attempts
        self.backoff = settings.ANALYTICS_RECONNECT_BACKOFF if backoff is None else backoff
        self.degraded = False
        # Consecutive failed connections; a stream that delivers an event resets it
        self.failures = 0
        self.degraded = False
        self._stop = threading.Event()
        self._response: Optional[requests.Response] = None
        self._response_lock = threading.Lock()
        self._thread = threading.Thread(target=self._run, name=f"analytics-{self.survey_id}", daemon=True)

    @property
    def closed(self) -> bool:
        return self._stop.is_set()

    def open(self) -> "Subscription":
        self.refresh_snapshot()
        self._thread.start()
        logger.info("Analytics channel opened", extra={"survey_id": self.survey_id})
        return self

    def refresh_snapshot(self) -> Dict[str, Any]:
        """Pull the full aggregate over REST and merge it over the cache."""
        try:
            snapshot = self.client.get_analytics(self.survey_id)
        except (EngineError, Unauthorized) as e:
            logger.warning("Analytics snapshot unavailable", extra={"survey_id": self.survey_id, "error": str(e)})
            return cached_aggregate(self.survey_id)
        return apply_update(self.survey_id, snapshot if isinstance(snapshot, dict) else {})

    def _accept(self, event: Dict[str, Any]) -> bool:
        target = event.get("surveyId")
        return target is None or str(target) == self.survey_id

    def _consume_once(self) -> None:
        response = self.client.open_analytics_stream(self.survey_id)
        with self._response_lock:
            if self._stop.is_set():
                response.close()
                return
            self._response = response
        self.degraded = False
        for event in parse_sse(response.iter_lines(decode_unicode=True)):
            if self._stop.is_set():
                return
            self.failures = 0
            if self._accept(event):
                apply_update(self.survey_id, event.get("data") if isinstance(event.get("data"), dict) else event)
        if not self._stop.is_set():
            raise ChannelFailure("analytics stream ended")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self._consume_once()
            except Unauthorized:
                self.degraded = True
                logger.warning("Analytics channel lost authentication", extra={"survey_id": self.survey_id})
                break
            except (ChannelFailure, EngineError, requests.RequestException) as e:
                if self._stop.is_set():
                    break
                self.failures += 1
                self.degraded = True
                logger.warning(
                    "Analytics channel failed",
                    extra={"survey_id": self.survey_id, "attempt": self.failures, "error": str(e)},
                )
                self.refresh_snapshot()
                if self.failures > self.reconnect_attempts:
                    logger.warning("Analytics channel gave up; serving cached aggregate",
                                   extra={"survey_id": self.survey_id})
                    break
                self._stop.wait(self.backoff * self.failures)
            except Exception:
                if self._stop.is_set():
                    break
                logger.exception("Analytics channel crashed", extra={"survey_id": self.survey_id})
                self.degraded = True
                break
            finally:
                self._release_response()

    def _release_response(self) -> None:
        with self._response_lock:
            response, self._response = self._response, None
        if response is not None:
            response.close()

    def close(self, timeout: float = 2.0) -> None:
        if self._stop.is_set():
            return
        self._stop.set()
        self._release_response()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)
        logger.info("Analytics channel closed", extra={"survey_id": self.survey_id})

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread.is_alive():
            self._thread.join(timeout)


class LiveAggregateFeed:
    """One operator's view: at most one Subscription at a time."""

    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        self.subscription: Optional[Subscription] = None
        self._lock = threading.Lock()

    def subscribe(self, survey_id: str, client: SurveyEngineClient) -> Subscription:
        with self._lock:
            current = self.subscription
            if current is not None and current.survey_id == str(survey_id) and not current.closed:
                return current
            if current is not None:
                current.close()
                self.subscription = None
            self.subscription = Subscription(survey_id, client).open()
            return self.subscription

    def unsubscribe(self) -> None:
        with self._lock:
            if self.subscription is not None:
                self.subscription.close()
                self.subscription = None

    def aggregate(self) -> Dict[str, Any]:
        sub = self.subscription
        return cached_aggregate(sub.survey_id) if sub else {}


_feeds: Dict[str, LiveAggregateFeed] = {}
_feeds_lock = threading.Lock()


def feed_for(owner_id: str) -> LiveAggregateFeed:
    with _feeds_lock:
        feed = _feeds.get(owner_id)
        if feed is None:
            feed = _feeds[owner_id] = LiveAggregateFeed(owner_id)
        return feed


def drop_feed(owner_id: str) -> None:
    with _feeds_lock:
        feed = _feeds.pop(owner_id, None)
    if feed is not None:
        feed.unsubscribe()
