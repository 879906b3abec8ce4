"""
Error taxonomy for the evaluation pipeline.

Provider failures are split into retryable (rate limits, timeouts) and
permanent (billing or plan exhaustion) so that the quota pool and the
orchestrator can apply one retry policy instead of per-call-site loops.
"""
import re
from typing import Any, Dict, Optional

from .config import (
    DAILY_QUOTA_COOLDOWN_SECONDS,
    HOURLY_LIMIT_COOLDOWN_SECONDS,
    RATE_LIMIT_COOLDOWN_SECONDS,
)


class SpeakEvalError(Exception):
    """Base exception for the pipeline."""

    code = "speakeval_error"

    def __init__(self, message: str, code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class InvalidInput(SpeakEvalError):
    code = "invalid_input"


class NoCredentialAvailable(SpeakEvalError):
    """No credential can serve the capability right now."""

    code = "no_credential_available"

    def __init__(self, message: str, retry_after_seconds: Optional[float] = None,
                 permanent: bool = False):
        super().__init__(message, details={
            "retry_after_seconds": retry_after_seconds,
            "permanent": permanent,
        })
        self.retry_after_seconds = retry_after_seconds
        self.permanent = permanent


class ProviderError(SpeakEvalError):
    """An external speech or scoring provider call failed."""

    code = "provider_error"
    retryable = False
    switch_credential = False

    def __init__(self, message: str, status_code: Optional[int] = None,
                 retry_after_seconds: Optional[float] = None):
        super().__init__(message, details={
            "status_code": status_code,
            "retry_after_seconds": retry_after_seconds,
        })
        self.status_code = status_code
        self.retry_after_seconds = retry_after_seconds


class RateLimitError(ProviderError):
    """Short-term limit hit; the credential should cool down, not be disabled."""

    code = "rate_limited"
    retryable = True
    switch_credential = True


class QuotaExhaustedError(ProviderError):
    """Longer-term quota exhausted (hourly/daily) or permanently (billing/plan)."""

    code = "quota_exhausted"
    switch_credential = True

    def __init__(self, message: str, status_code: Optional[int] = None,
                 retry_after_seconds: Optional[float] = None, permanent: bool = False):
        super().__init__(message, status_code=status_code, retry_after_seconds=retry_after_seconds)
        self.permanent = permanent
        self.retryable = not permanent
        self.details["permanent"] = permanent


class TransientProviderError(ProviderError):
    """Timeouts, connection resets and 5xx responses; retry on the same credential."""

    code = "provider_transient"
    retryable = True


class PermanentProviderError(ProviderError):
    """Request rejected for reasons a retry will not fix."""

    code = "provider_rejected"


class ValidationFailure(SpeakEvalError):
    """Provider response missing required fields or holding out-of-range values."""

    code = "validation_failed"


class NoUsableSpeech(SpeakEvalError):
    """Every segment came back empty; there is nothing to score."""

    code = "no_audio"


class StorageError(SpeakEvalError):
    code = "storage_error"


class JobError(SpeakEvalError):
    """Base exception for job lifecycle problems."""

    code = "job_error"


class JobNotFound(JobError):
    code = "job_not_found"


class JobStateError(JobError):
    """Raised when an operation is invalid for the current job status."""

    code = "invalid_job_state"


_ASH_PATTERNS = ("audio seconds per hour", "seconds of audio per hour")
_BILLING_PATTERNS = ("billing", "plan limit", "insufficient_quota", "credit balance", "payment required",
                     "limit: 0", "quota of 0")
_DAILY_PATTERNS = ("exceeded your current quota", "quota exceeded", "resource_exhausted",
                   "per day", "daily")
_RATE_PATTERNS = ("too many requests", "rate limit", "rate_limit", "rpm", "requests per minute")
_TRANSIENT_PATTERNS = ("timeout", "timed out", "network", "connection", "temporarily unavailable",
                       "overloaded")

_RETRY_AFTER_PATTERNS = (
    re.compile(r'retryDelay"?\s*:\s*"?(\d+(?:\.\d+)?)s', re.IGNORECASE),
    re.compile(r"retry in (\d+(?:\.\d+)?)\s*s", re.IGNORECASE),
    re.compile(r"try again in (?:(\d+)m)?(\d+(?:\.\d+)?)s", re.IGNORECASE),
)


def extract_retry_after_seconds(message: str, header_value: Optional[str] = None) -> Optional[float]:
    """
    Pull a retry-after hint from a Retry-After header or from provider error text.

    Args:
        message: Error body returned by the provider
        header_value: Raw Retry-After header, if any

    Returns:
        Seconds to wait, or None when no hint is present
    """
    if header_value:
        try:
            return max(0.0, float(header_value))
        except ValueError:
            pass
    if not message:
        return None
    for pattern in _RETRY_AFTER_PATTERNS:
        match = pattern.search(message)
        if not match:
            continue
        groups = [g for g in match.groups()]
        if len(groups) == 2:
            minutes = float(groups[0]) if groups[0] else 0.0
            return minutes * 60 + float(groups[1])
        return float(groups[0])
    return None


def classify_provider_error(status_code: Optional[int], message: str,
                            retry_after_header: Optional[str] = None) -> ProviderError:
    """
    Map a failed provider response to the error taxonomy.

    Args:
        status_code: HTTP status, or None for network-level failures
        message: Response body or exception text
        retry_after_header: Raw Retry-After header value

    Returns:
        The ProviderError subclass instance the caller should raise
    """
    text = (message or "").lower()
    retry_after = extract_retry_after_seconds(message or "", retry_after_header)
    label = f"HTTP {status_code}: {message[:300]}" if status_code else (message or "provider call failed")[:300]

    if status_code == 402 or any(p in text for p in _BILLING_PATTERNS):
        return QuotaExhaustedError(label, status_code=status_code, permanent=True)

    if status_code == 429 or "quota" in text or any(p in text for p in _RATE_PATTERNS):
        if any(p in text for p in _ASH_PATTERNS) or re.search(r"\bash\b", text):
            return QuotaExhaustedError(label, status_code=status_code,
                                       retry_after_seconds=retry_after or HOURLY_LIMIT_COOLDOWN_SECONDS)
        if any(p in text for p in _DAILY_PATTERNS):
            return QuotaExhaustedError(label, status_code=status_code,
                                       retry_after_seconds=retry_after or DAILY_QUOTA_COOLDOWN_SECONDS)
        return RateLimitError(label, status_code=status_code,
                              retry_after_seconds=retry_after or RATE_LIMIT_COOLDOWN_SECONDS)

    if status_code is None or status_code == 408 or status_code >= 500 \
            or any(p in text for p in _TRANSIENT_PATTERNS):
        return TransientProviderError(label, status_code=status_code, retry_after_seconds=retry_after)

    return PermanentProviderError(label, status_code=status_code)
