"""Tests for failure classification and repair decisions."""

from unittest.mock import Mock

import requests
from google.api_core import exceptions as google_exceptions

from app.models.errors import ProviderError
from app.services.credentials.rate_limiter import BackoffPolicy
from app.services.problems import (
    FailureHistory,
    ProblemClassifier,
    ProblemKind,
    RepairAction,
    normalize_exception,
)
from conftest import http_error


def decide(classifier, error, credential_id="video-1", attempt=1, has_fallback=False, history=None):
    return classifier.decide(
        error,
        history or FailureHistory(),
        attempt=attempt,
        credential_id=credential_id,
        has_fallback=has_fallback,
    )


class TestNormalizeException:
    """Client library errors become ProviderErrors."""

    def test_provider_error_passes_through(self):
        error = http_error(500)

        assert normalize_exception("vector_engine", error) is error

    def test_google_api_error_keeps_code(self):
        error = normalize_exception(
            "google_tts", google_exceptions.TooManyRequests("quota exhausted")
        )

        assert error.status_code == 429
        assert error.provider == "google_tts"

    def test_requests_timeout_is_transport(self):
        error = normalize_exception("pollinations", requests.Timeout("read timed out"))

        assert error.transport
        assert error.status_code is None

    def test_response_status_and_retry_after(self):
        exc = requests.HTTPError("429 Client Error")
        exc.response = Mock(status_code=429, headers={"Retry-After": "12"})

        error = normalize_exception("pollinations", exc)

        assert error.status_code == 429
        assert error.retry_after == 12.0

    def test_anything_else_is_generic(self):
        error = normalize_exception("huggingface", KeyError("choices"))

        assert error.status_code is None
        assert not error.transport
        assert "KeyError" in error.message


class TestClassify:
    def test_status_codes(self):
        classifier = ProblemClassifier()

        assert classifier.classify(http_error(429)) == ProblemKind.THROTTLED
        assert classifier.classify(http_error(400)) == ProblemKind.INVALID_INPUT
        assert classifier.classify(http_error(502), "video-1") == ProblemKind.TRANSIENT_SERVER_ERROR

    def test_quota_message_is_throttled(self):
        classifier = ProblemClassifier()
        error = ProviderError("vector_engine", "Quota exceeded for this key", status_code=403)

        assert classifier.classify(error) == ProblemKind.THROTTLED

    def test_unavailable_marker(self):
        classifier = ProblemClassifier()
        error = ProviderError("vector_engine", "Model not available in region", status_code=400)

        assert classifier.classify(error) == ProblemKind.PROVIDER_UNAVAILABLE

    def test_failures_on_distinct_credentials_mark_provider_unavailable(self):
        classifier = ProblemClassifier(unavailable_after_credentials=2)
        history = FailureHistory()

        assert classifier.classify(http_error(500), "video-1", history) == ProblemKind.TRANSIENT_SERVER_ERROR
        assert classifier.classify(http_error(500), "video-1", history) == ProblemKind.TRANSIENT_SERVER_ERROR
        assert classifier.classify(http_error(503), "video-2", history) == ProblemKind.PROVIDER_UNAVAILABLE

    def test_server_errors_are_counted_per_segment(self):
        classifier = ProblemClassifier(unavailable_after_credentials=2)
        classifier.classify(http_error(500), "video-1", FailureHistory())

        assert classifier.classify(http_error(500), "video-2", FailureHistory()) == ProblemKind.TRANSIENT_SERVER_ERROR

    def test_reset_clears_unavailability_tracking(self):
        classifier = ProblemClassifier(unavailable_after_credentials=2)
        history = FailureHistory()
        classifier.classify(http_error(500), "video-1", history)
        history.reset("vector_engine")

        assert classifier.classify(http_error(500), "video-2", history) == ProblemKind.TRANSIENT_SERVER_ERROR


class TestDecide:
    def test_throttled_rotates_credential(self):
        decision = decide(ProblemClassifier(), http_error(429))

        assert decision.action == RepairAction.RETRY_DIFFERENT_CREDENTIAL
        assert decision.delay == 0.0

    def test_transient_retries_with_backoff(self):
        classifier = ProblemClassifier(backoff=BackoffPolicy(base_delay=2.0, max_delay=30.0))

        decision = decide(classifier, http_error(500), attempt=3)

        assert decision.action == RepairAction.RETRY_SAME_CREDENTIAL
        assert decision.delay == 8.0

    def test_invalid_input_is_fatal(self):
        decision = decide(ProblemClassifier(), http_error(422))

        assert decision.action == RepairAction.FATAL
        assert decision.kind == ProblemKind.INVALID_INPUT

    def test_unavailable_switches_when_fallback_exists(self):
        classifier = ProblemClassifier()
        error = ProviderError("vector_engine", "upstream overloaded")

        assert decide(classifier, error, has_fallback=True).action == RepairAction.SWITCH_FALLBACK_PROVIDER
        assert decide(classifier, error, has_fallback=False).action == RepairAction.FATAL

    def test_unknown_is_retried_once(self):
        classifier = ProblemClassifier()
        history = FailureHistory()
        error = ProviderError("vector_engine", "unexpected payload")

        first = decide(classifier, error, history=history)
        second = decide(classifier, error, attempt=2, history=history)

        assert first.action == RepairAction.RETRY_SAME_CREDENTIAL
        assert second.action == RepairAction.FATAL
        assert history.last_kind == ProblemKind.UNKNOWN
        assert history.last_error == str(error)
