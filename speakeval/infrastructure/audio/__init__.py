"""
Audio handling for the evaluation pipeline.

This module contains the audio-related functionality organized into submodules:
- processing: WAV decode/encode, resampling and silence trimming
- speech: Speech-to-text engines
"""

# Convenient imports from submodules
from .processing import SilenceTrimmer, TrimResult, TrimSettings, decode_wav, encode_wav
from .speech import SpeechEngine, WhisperHttpEngine, GoogleSpeechEngine, RecognitionResult

__all__ = [
    "SilenceTrimmer",
    "TrimResult",
    "TrimSettings",
    "decode_wav",
    "encode_wav",
    "SpeechEngine",
    "WhisperHttpEngine",
    "GoogleSpeechEngine",
    "RecognitionResult",
]
