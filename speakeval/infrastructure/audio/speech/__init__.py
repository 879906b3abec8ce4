"""Speech-to-text engines."""

from .stt import (
    SpeechEngine,
    WhisperHttpEngine,
    GoogleSpeechEngine,
    RecognitionResult,
    SegmentTiming,
    WordTiming,
)

__all__ = [
    "SpeechEngine",
    "WhisperHttpEngine",
    "GoogleSpeechEngine",
    "RecognitionResult",
    "SegmentTiming",
    "WordTiming",
]
