"""Provider error classification."""
import pytest

from speakeval.errors import (
    PermanentProviderError, QuotaExhaustedError, RateLimitError, TransientProviderError,
    classify_provider_error, extract_retry_after_seconds,
)


def test_payment_required_is_permanent():
    error = classify_provider_error(402, "Payment Required")
    assert isinstance(error, QuotaExhaustedError)
    assert error.permanent
    assert not error.retryable


def test_billing_text_is_permanent_regardless_of_status():
    error = classify_provider_error(429, '{"error": {"code": "insufficient_quota"}}')
    assert isinstance(error, QuotaExhaustedError)
    assert error.permanent


def test_audio_seconds_per_hour_limit():
    error = classify_provider_error(
        429, "Rate limit reached on seconds of audio per hour (ASH). Please try again in 12m30s.")
    assert isinstance(error, QuotaExhaustedError)
    assert not error.permanent
    assert error.retryable
    assert error.retry_after_seconds == pytest.approx(750)


def test_hourly_limit_without_hint_uses_default_cooldown():
    error = classify_provider_error(429, "Limit: audio seconds per hour exceeded")
    assert error.retry_after_seconds == 3600


def test_daily_quota():
    error = classify_provider_error(429, "You exceeded your current quota for requests per day")
    assert isinstance(error, QuotaExhaustedError)
    assert error.retry_after_seconds == 24 * 3600


def test_plain_rate_limit():
    error = classify_provider_error(429, "Too many requests")
    assert isinstance(error, RateLimitError)
    assert error.switch_credential
    assert error.retry_after_seconds == 60


def test_rate_limit_uses_retry_after_header():
    error = classify_provider_error(429, "Too many requests", retry_after_header="7")
    assert error.retry_after_seconds == 7


@pytest.mark.parametrize("status, message", [
    (503, "Service Unavailable"),
    (500, "internal error"),
    (408, "Request Timeout"),
    (None, "Connection reset by peer"),
])
def test_transient_errors(status, message):
    error = classify_provider_error(status, message)
    assert isinstance(error, TransientProviderError)
    assert error.retryable
    assert not error.switch_credential


def test_bad_request_is_permanent():
    error = classify_provider_error(400, "Invalid file format")
    assert isinstance(error, PermanentProviderError)
    assert not error.retryable


@pytest.mark.parametrize("message, header, expected", [
    ('{"retryDelay": "17s"}', None, 17.0),
    ("Please retry in 2.5s", None, 2.5),
    ("try again in 45s", None, 45.0),
    ("no hint here", None, None),
    ("", "12", 12.0),
    ("", "soon", None),
])
def test_extract_retry_after(message, header, expected):
    assert extract_retry_after_seconds(message, header) == expected


def test_error_details_serialize():
    error = classify_provider_error(429, "Too many requests")
    data = error.to_dict()
    assert data["code"] == "rate_limited"
    assert data["details"]["status_code"] == 429
