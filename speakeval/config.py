"""
SpeakEval Configuration System
==============================

This file contains ALL configuration for the speaking evaluation pipeline.
- User settings at the top (things operators might want to change)
- Internal constants at the bottom (technical defaults)
"""
import os
from dataclasses import dataclass, field
from typing import List, Optional


# =============================================================================
# USER SETTINGS - Edit these to customize the pipeline
# =============================================================================

# Google Cloud (only needed for Vertex scoring or the Google speech engine)
GOOGLE_CLOUD_PROJECT = None
GOOGLE_APPLICATION_CREDENTIALS = None  # Optional: path to credentials JSON

# Working directory for blobs, job records and logs
WORKDIR = "./_speakeval"
LANGUAGE_HINT = "en"

# Speech-to-text (OpenAI-compatible Whisper endpoint)
WHISPER_BASE_URL = "https://api.groq.com/openai/v1"
WHISPER_MODEL_PRIMARY = "whisper-large-v3"
WHISPER_MODEL_SECONDARY = "whisper-large-v3-turbo"

# Second engine variant: "whisper" (WHISPER_MODEL_SECONDARY) or "google" (Cloud Speech)
SECONDARY_ENGINE = "whisper"

# Scoring model
SCORING_MODEL = "gemini-2.5-flash"
SCORING_LOCATION = "us-central1"

# Retry policy
MAX_RETRIES = 5

# Logging
LOG_FILE = "./_speakeval/speakeval.log"
LOG_LEVEL = "INFO"


# =============================================================================
# INTERNAL CONSTANTS - Don't change these unless you know what you're doing
# =============================================================================

# Audio / silence trimming
SAMPLE_RATE_TARGET = 16000
TRIM_SILENCE_THRESHOLD = 0.015
TRIM_END_THRESHOLD_MULTIPLIER = 0.5
TRIM_WINDOW_SECONDS = 0.03
TRIM_MIN_SILENCE_SECONDS = 0.3
TRIM_TRAILING = False
TRIM_MAX_LEADING_SECONDS = 0.8
TRIM_MAX_TRAILING_SECONDS = 4.0
TRIM_TRAILING_PADDING_SECONDS = 0.5
TRIM_MIN_DURATION_SECONDS = 1.5
TRIM_DETECT_FADE_OUT = True
TRIM_START_MARGIN_WINDOWS = 5

# Transcription reconciliation
CONSENSUS_THRESHOLD = 0.8
DIVERGENCE_THRESHOLD = 0.5
COMPLETENESS_PROBE_WORDS = 3
COMPLETENESS_MIN_OFFSET_CHARS = 8
MIN_WORDS_PER_SECOND = 1.0
MAX_WORDS_PER_SECOND = 3.5
WORD_COUNT_LOW_TOLERANCE = 0.3
WORD_COUNT_HIGH_TOLERANCE = 1.5
DEGENERATE_MIN_CHARS = 3
LONG_PAUSE_SECONDS = 2.0
INTER_CALL_DELAY_SECONDS = 0.5
ASR_TIMEOUT = 90
ASR_LOCK_SECONDS = 120
CREDENTIAL_WAIT_SECONDS = 30.0
DUPLICATION_MIN_WORDS = 16

# Quota pool
RATE_LIMIT_COOLDOWN_SECONDS = 60
HOURLY_LIMIT_COOLDOWN_SECONDS = 3600
DAILY_QUOTA_COOLDOWN_SECONDS = 24 * 3600
ESCALATED_COOLDOWN_SECONDS = 600
ESCALATION_AFTER_RATE_LIMITS = 3
RELEASE_COOLDOWN_SECONDS = 0.0

# Pronunciation estimate
PRONUNCIATION_MIN_WORDS = 30
PRONUNCIATION_MIN_WORDS_PER_MINUTE = 20.0
PRONUNCIATION_FLOOR_BAND = 3.0
PRONUNCIATION_CEILING_BAND = 7.0

# Scoring
BAND_MIN = 0.0
BAND_MAX = 9.0
SCORING_TIMEOUT = 120
SCORING_MAX_TOKENS_CANDIDATES = (12000, 10000, 8192)
SCORING_LOCK_SECONDS = 300
SCORING_TEMPERATURE = 0.2

# Orchestration
HEARTBEAT_INTERVAL_SECONDS = 15.0
STALE_AFTER_SECONDS = 120.0
WATCHDOG_INTERVAL_SECONDS = 30.0
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 60.0
BACKOFF_JITTER = 0.5
MAX_JOBS_PER_RUN = 5
SEGMENT_WORKERS = 4
JOB_WORKERS = 4
STORAGE_ATTEMPTS = 3
PIPELINE_VERSION = "dual-asr-v1"


# =============================================================================
# MAIN CONFIG OBJECT
# =============================================================================

def _split_keys(raw: Optional[str]) -> List[str]:
    """Split a comma-separated credential list, dropping blanks."""
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass
class Config:
    """Main configuration object."""
    asr_keys: List[str]
    scoring_keys: List[str] = field(default_factory=list)
    google_cloud_project: Optional[str] = GOOGLE_CLOUD_PROJECT
    google_application_credentials: Optional[str] = GOOGLE_APPLICATION_CREDENTIALS
    workdir: str = WORKDIR
    language_hint: str = LANGUAGE_HINT
    whisper_base_url: str = WHISPER_BASE_URL
    whisper_model_primary: str = WHISPER_MODEL_PRIMARY
    whisper_model_secondary: str = WHISPER_MODEL_SECONDARY
    secondary_engine: str = SECONDARY_ENGINE
    google_speech_key: Optional[str] = None
    scoring_model: str = SCORING_MODEL
    scoring_location: str = SCORING_LOCATION
    max_retries: int = MAX_RETRIES
    log_file: str = LOG_FILE
    log_level: str = LOG_LEVEL

    @property
    def uses_vertex(self) -> bool:
        """Score through Vertex AI when no scoring API keys are configured."""
        return not self.scoring_keys and bool(self.google_cloud_project)


def get_config() -> Config:
    """Load configuration from the environment."""
    asr_keys = _split_keys(os.getenv("SPEAKEVAL_ASR_KEYS"))
    scoring_keys = _split_keys(os.getenv("SPEAKEVAL_SCORING_KEYS"))
    project = os.getenv("GOOGLE_CLOUD_PROJECT") or GOOGLE_CLOUD_PROJECT
    credentials = os.getenv("GOOGLE_APPLICATION_CREDENTIALS") or GOOGLE_APPLICATION_CREDENTIALS

    if not asr_keys:
        raise ValueError("Please set SPEAKEVAL_ASR_KEYS to one or more speech-to-text API keys")
    if not scoring_keys and not project:
        raise ValueError("Please set SPEAKEVAL_SCORING_KEYS or GOOGLE_CLOUD_PROJECT for scoring")

    raw_retries = os.getenv("SPEAKEVAL_MAX_RETRIES")
    try:
        max_retries = int(raw_retries) if raw_retries else MAX_RETRIES
    except ValueError:
        raise ValueError(f"SPEAKEVAL_MAX_RETRIES must be an integer, got {raw_retries!r}")
    if max_retries < 0:
        raise ValueError("SPEAKEVAL_MAX_RETRIES must not be negative")

    secondary_engine = (os.getenv("SPEAKEVAL_SECONDARY_ENGINE") or SECONDARY_ENGINE).lower()
    if secondary_engine not in ("whisper", "google"):
        raise ValueError(f"SPEAKEVAL_SECONDARY_ENGINE must be whisper or google, got {secondary_engine!r}")
    google_speech_key = os.getenv("SPEAKEVAL_GOOGLE_SPEECH_KEY")
    if secondary_engine == "google" and not google_speech_key:
        raise ValueError("Please set SPEAKEVAL_GOOGLE_SPEECH_KEY to use the Google speech engine")

    workdir = os.getenv("SPEAKEVAL_WORKDIR") or WORKDIR
    return Config(
        asr_keys=asr_keys,
        scoring_keys=scoring_keys,
        google_cloud_project=project,
        google_application_credentials=credentials,
        workdir=workdir,
        whisper_base_url=os.getenv("SPEAKEVAL_WHISPER_BASE_URL") or WHISPER_BASE_URL,
        secondary_engine=secondary_engine,
        google_speech_key=google_speech_key,
        scoring_model=os.getenv("SPEAKEVAL_SCORING_MODEL") or SCORING_MODEL,
        max_retries=max_retries,
        log_file=os.getenv("SPEAKEVAL_LOG_FILE") or os.path.join(workdir, "speakeval.log"),
    )
