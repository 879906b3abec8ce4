"""
Pronunciation pre-estimate from recognition signals.

The scoring model only sees text, so pronunciation is inferred from how
confidently and cleanly the engines recognised the speech.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .bands import round_to_half
from .models import PronunciationEstimate, TranscriptionSegment
from ..config import (
    PRONUNCIATION_CEILING_BAND, PRONUNCIATION_FLOOR_BAND, PRONUNCIATION_MIN_WORDS,
    PRONUNCIATION_MIN_WORDS_PER_MINUTE,
)

logger = logging.getLogger("pronunciation")


@dataclass
class PronunciationSettings:
    confidence_weight: float = 0.35
    clarity_weight: float = 0.30
    fluency_weight: float = 0.20
    pause_weight: float = 0.15
    floor_band: float = PRONUNCIATION_FLOOR_BAND
    ceiling_band: float = PRONUNCIATION_CEILING_BAND
    min_words: int = PRONUNCIATION_MIN_WORDS
    min_words_per_minute: float = PRONUNCIATION_MIN_WORDS_PER_MINUTE
    low_tier_below_words: int = 50
    high_tier_above_words: int = 200
    high_tier_min_confidence: float = 0.8


class PronunciationEstimator:
    """Turns per-segment confidence, clarity, filler and pause signals into a band."""

    def __init__(self, settings: Optional[PronunciationSettings] = None):
        self.settings = settings or PronunciationSettings()

    def estimate(self, segments: Sequence[TranscriptionSegment]) -> PronunciationEstimate:
        s = self.settings
        spoken = [seg for seg in segments if seg.has_speech]
        total_words = sum(seg.word_count for seg in spoken)
        total_seconds = sum(seg.duration_seconds for seg in segments)

        if total_words:
            weighted_confidence = sum(seg.average_confidence * seg.word_count for seg in spoken) / total_words
        else:
            weighted_confidence = 0.0
        avg_logprob = float(np.mean([seg.average_log_probability for seg in spoken])) if spoken else -1.0
        fillers = sum(len(seg.filler_words) for seg in spoken)
        pauses = sum(len(seg.long_pauses) for seg in spoken)
        filler_ratio = fillers / max(1, total_words)

        clarity = float(np.clip(avg_logprob + 1.0, 0.0, 1.0))
        fluency_penalty = min(0.3, filler_ratio * 0.5 + pauses * 0.02)
        pause_penalty = min(0.2, pauses * 0.03)
        composite = (weighted_confidence * s.confidence_weight
                     + clarity * s.clarity_weight
                     + (1 - fluency_penalty) * s.fluency_weight
                     + (1 - pause_penalty) * s.pause_weight)

        band = round_to_half(min(s.ceiling_band, composite * 6 + s.floor_band))

        if total_words < s.low_tier_below_words:
            tier = "low"
        elif total_words > s.high_tier_above_words and weighted_confidence > s.high_tier_min_confidence:
            tier = "high"
        else:
            tier = "medium"

        evidence = [
            f"Word recognition confidence: {weighted_confidence * 100:.1f}%",
            f"Audio clarity score: {clarity * 100:.1f}%",
            f"Filler word ratio: {filler_ratio * 100:.1f}%",
            f"Long pauses (>2s): {pauses}",
            f"Total words analyzed: {total_words}",
            f"Composite score: {composite * 100:.1f}%",
        ]

        words_per_minute = total_words / (total_seconds / 60.0) if total_seconds > 0 else None
        insufficient = total_words < s.min_words or (
            words_per_minute is not None and words_per_minute < s.min_words_per_minute)
        if insufficient:
            rate = f", {words_per_minute:.1f} words/min" if words_per_minute is not None else ""
            evidence.append(f"Insufficient evidence ({total_words} words{rate}): band forced to {s.floor_band}")
            logger.info("Pronunciation estimate forced to floor: %d words%s", total_words, rate)
            band, tier = s.floor_band, "low"

        return PronunciationEstimate(
            band=band,
            composite=round(composite, 4),
            confidence_tier=tier,
            total_words=total_words,
            weighted_confidence=round(weighted_confidence, 4),
            clarity=round(clarity, 4),
            fluency_penalty=round(fluency_penalty, 4),
            pause_penalty=round(pause_penalty, 4),
            insufficient_evidence=insufficient,
            evidence=evidence,
        )
