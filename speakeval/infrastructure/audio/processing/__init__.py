"""Audio decoding, conversion and silence trimming."""

from .processing import (
    stereo_to_mono,
    decode_wav,
    encode_wav,
    to_pcm16,
    resample_to,
    wav_duration_seconds,
)
from .trimming import SilenceTrimmer, TrimSettings, TrimResult

__all__ = [
    "stereo_to_mono",
    "decode_wav",
    "encode_wav",
    "to_pcm16",
    "resample_to",
    "wav_duration_seconds",
    "SilenceTrimmer",
    "TrimSettings",
    "TrimResult",
]
