"""Infrastructure components for the speakeval pipeline.

This module contains low-level technical components that the evaluation
pipeline is built on: credentials, job records, blob storage, audio and the
scoring client.
"""

# Audio infrastructure
from .audio import (
    SilenceTrimmer, TrimSettings, SpeechEngine, WhisperHttpEngine, GoogleSpeechEngine,
)

# Credentials, jobs, storage
from .quota import Capability, Credential, QuotaPool
from .data import EvaluationJob, JobStatus, JobStore, InMemoryJobStore, JsonFileJobStore
from .storage import BlobStorage, InMemoryBlobStorage, LocalBlobStorage, RetryingStorage

# LLM infrastructure
from .llm import GeminiRestClient

__all__ = [
    # Audio
    "SilenceTrimmer", "TrimSettings",
    "SpeechEngine", "WhisperHttpEngine", "GoogleSpeechEngine",

    # Credentials, jobs, storage
    "Capability", "Credential", "QuotaPool",
    "EvaluationJob", "JobStatus", "JobStore", "InMemoryJobStore", "JsonFileJobStore",
    "BlobStorage", "InMemoryBlobStorage", "LocalBlobStorage", "RetryingStorage",

    # LLM client
    "GeminiRestClient",
]
