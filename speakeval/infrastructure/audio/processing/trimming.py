"""
Leading/trailing silence trimming applied to recordings before transcription.

Trimming is conservative: the start is pulled back by a safety margin so the
first syllable is never clipped, trailing audio is left alone unless enabled,
and anything that cannot be decoded is passed through untouched.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import numpy as np

from .processing import decode_wav, encode_wav, stereo_to_mono
from ....config import (
    TRIM_SILENCE_THRESHOLD, TRIM_END_THRESHOLD_MULTIPLIER, TRIM_WINDOW_SECONDS,
    TRIM_MIN_SILENCE_SECONDS, TRIM_TRAILING, TRIM_MAX_LEADING_SECONDS,
    TRIM_MAX_TRAILING_SECONDS, TRIM_TRAILING_PADDING_SECONDS, TRIM_MIN_DURATION_SECONDS,
    TRIM_DETECT_FADE_OUT, TRIM_START_MARGIN_WINDOWS,
)

logger = logging.getLogger("silence_trimmer")


@dataclass
class TrimSettings:
    """Thresholds for silence detection. Amplitudes are on the [-1, 1] scale."""
    silence_threshold: float = TRIM_SILENCE_THRESHOLD
    end_threshold_multiplier: float = TRIM_END_THRESHOLD_MULTIPLIER
    window_seconds: float = TRIM_WINDOW_SECONDS
    min_silence_seconds: float = TRIM_MIN_SILENCE_SECONDS
    trim_trailing: bool = TRIM_TRAILING
    max_leading_trim_seconds: float = TRIM_MAX_LEADING_SECONDS
    max_trailing_trim_seconds: float = TRIM_MAX_TRAILING_SECONDS
    trailing_padding_seconds: float = TRIM_TRAILING_PADDING_SECONDS
    min_duration_seconds: float = TRIM_MIN_DURATION_SECONDS
    detect_fade_out: bool = TRIM_DETECT_FADE_OUT
    start_margin_windows: int = TRIM_START_MARGIN_WINDOWS


@dataclass
class TrimResult:
    """Trimmed audio plus what was removed."""
    audio: bytes
    leading_ms_trimmed: int
    trailing_ms_trimmed: int
    original_duration_ms: int
    trimmed_duration_ms: int
    sample_rate: int = 0
    error: Optional[str] = None

    @property
    def was_trimmed(self) -> bool:
        return self.leading_ms_trimmed > 0 or self.trailing_ms_trimmed > 0

    @property
    def duration_seconds(self) -> float:
        return self.trimmed_duration_ms / 1000.0

    def stats(self) -> Dict[str, Any]:
        return {
            "leading_ms_trimmed": self.leading_ms_trimmed,
            "trailing_ms_trimmed": self.trailing_ms_trimmed,
            "original_duration_ms": self.original_duration_ms,
            "trimmed_duration_ms": self.trimmed_duration_ms,
            "error": self.error,
        }


def _window_levels(samples: np.ndarray, start: int, size: int) -> Tuple[float, float]:
    """RMS and peak amplitude of one analysis window."""
    window = samples[start:start + size]
    if window.size == 0:
        return 0.0, 0.0
    return float(np.sqrt(np.mean(window ** 2))), float(np.max(np.abs(window)))


class SilenceTrimmer:
    """Finds speech boundaries in mono samples and trims WAV recordings."""

    def __init__(self, settings: Optional[TrimSettings] = None):
        self.settings = settings or TrimSettings()

    def _window_size(self, sr: int) -> int:
        return max(1, int(sr * self.settings.window_seconds))

    def find_speech_start(self, samples: np.ndarray, sr: int) -> int:
        """
        Sample index to cut the recording at, or 0 for no leading trim.

        A cut only happens when sound follows a silent run of at least the minimum
        silence duration; the cut is pulled back by a few windows of margin.
        """
        s = self.settings
        win = self._window_size(sr)
        max_trim = int(sr * s.max_leading_trim_seconds)
        min_silence = int(sr * s.min_silence_seconds)
        silent = 0

        for i in range(0, min(max_trim, len(samples)), win):
            rms, peak = _window_levels(samples, i, win)
            if rms >= s.silence_threshold or peak >= s.silence_threshold * 3:
                if silent >= min_silence:
                    return max(0, i - s.start_margin_windows * win)
                return 0
            silent += win

        if silent >= min_silence:
            return min(silent, max_trim)
        return 0

    def find_speech_end(self, samples: np.ndarray, sr: int) -> int:
        """
        Sample index to end the recording at (exclusive). len(samples) means no trim.

        Scans backwards with a lower threshold than start detection. A window
        louder than the one after it and still above a relaxed floor is a fade-out
        and counts as speech. Only the silent run after the last speech window is
        ever cut, and only when it reaches the minimum silence duration.
        """
        s = self.settings
        n = len(samples)
        win = self._window_size(sr)
        min_silence = int(sr * s.min_silence_seconds)
        max_trim = int(sr * s.max_trailing_trim_seconds)
        padding = int(sr * s.trailing_padding_seconds)
        end_threshold = s.silence_threshold * s.end_threshold_multiplier

        silent = 0
        later_rms = 0.0

        for i in range(n - win, -1, -win):
            if silent > max_trim:
                return n
            rms, peak = _window_levels(samples, i, win)

            speech = rms >= end_threshold or peak >= end_threshold * 2
            if not speech and s.detect_fade_out and later_rms > 0:
                speech = later_rms < rms * 0.85 and (rms > end_threshold * 0.3 or peak > end_threshold)

            if speech:
                if silent >= min_silence:
                    return min(n, i + win + padding)
                # speech runs to the end of the recording
                return n
            silent += win
            later_rms = rms

        return n

    def trim_bounds(self, samples: np.ndarray, sr: int) -> Tuple[int, int]:
        """(start, end) sample bounds that respect every safety limit."""
        n = len(samples)
        start = self.find_speech_start(samples, sr)
        end = self.find_speech_end(samples, sr) if self.settings.trim_trailing else n

        end = max(end, n - int(sr * self.settings.max_trailing_trim_seconds))
        start = min(start, int(sr * self.settings.max_leading_trim_seconds))
        if end - start < int(sr * self.settings.min_duration_seconds) or end <= start:
            return 0, n
        return start, end

    def trim(self, data: bytes) -> TrimResult:
        """
        Trim a WAV recording.

        Args:
            data: WAV file bytes

        Returns:
            TrimResult; on decode failure the original bytes with zero trims
        """
        try:
            frames, sr, channels = decode_wav(data)
        except ValueError as e:
            logger.warning("Skipping trim, could not decode audio: %s", e)
            return TrimResult(audio=data, leading_ms_trimmed=0, trailing_ms_trimmed=0,
                              original_duration_ms=0, trimmed_duration_ms=0, error=str(e))

        mono = stereo_to_mono(frames).astype(np.float32)
        n = len(mono)
        original_ms = int(round(n / sr * 1000)) if sr else 0
        start, end = self.trim_bounds(mono, sr)

        if start == 0 and end == n:
            return TrimResult(audio=data, leading_ms_trimmed=0, trailing_ms_trimmed=0,
                              original_duration_ms=original_ms, trimmed_duration_ms=original_ms,
                              sample_rate=sr)

        leading_ms = int(round(start / sr * 1000))
        trailing_ms = max(0, int(round((n - end) / sr * 1000)))
        trimmed_ms = int(round((end - start) / sr * 1000))
        logger.info("Trimming %dms leading, %dms trailing (%dms -> %dms, %d channel(s))",
                    leading_ms, trailing_ms, original_ms, trimmed_ms, channels)
        return TrimResult(
            audio=encode_wav(mono[start:end], sr),
            leading_ms_trimmed=leading_ms,
            trailing_ms_trimmed=trailing_ms,
            original_duration_ms=original_ms,
            trimmed_duration_ms=trimmed_ms,
            sample_rate=sr,
        )
