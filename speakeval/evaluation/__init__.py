"""Evaluation pipeline components.

This module contains the business logic for evaluating recorded speaking tests:
transcript cleaning and reconciliation, pronunciation estimation, score
calibration, and the job orchestrator that drives it all.
"""

# Core orchestrator classes
from .orchestrator import JobOrchestrator, OrchestratorSettings, JobInterrupted
from .watchdog import JobWatchdog

# Data models
from .models import (
    CRITERIA, Confidence, MergeMethod, PauseSpan, TranscriptionSegment,
    CriterionScore, ModelAnswer, PronunciationEstimate, EvaluationResult,
)
from .segments import AudioSegment, parse_segment_key, ordered_segments

# Transcription
from .cleaning import TranscriptCleaner, CleanedTranscript
from .hallucination import RuleTables, DEFAULT_RULES
from .reconciler import TranscriptionReconciler, ReconcilerSettings

# Scoring
from .pronunciation import PronunciationEstimator, PronunciationSettings
from .calibrator import ScoreCalibrator, CalibratorSettings
from .prompts import EvaluationPrompts
from .schemas import ScoringPayload, normalize_scoring_payload, validate_scoring_payload
from .bands import overall_band, round_band

# Service classes
from .services import AudioPreparationService, PreparedAudio, ResultPersistenceService

# Event system
from .events import (
    JobEventBus, EventLogger, PipelineMetrics,
    EventType, JobEvent, JobSubmittedEvent, StatusChangedEvent, StageChangedEvent,
    SegmentTranscribedEvent, JobCompletedEvent, JobFailedEvent, JobCancelledEvent,
    ErrorOccurredEvent,
)

__all__ = [
    # Orchestration
    "JobOrchestrator", "OrchestratorSettings", "JobInterrupted", "JobWatchdog",

    # Models
    "CRITERIA", "Confidence", "MergeMethod", "PauseSpan", "TranscriptionSegment",
    "CriterionScore", "ModelAnswer", "PronunciationEstimate", "EvaluationResult",
    "AudioSegment", "parse_segment_key", "ordered_segments",

    # Transcription
    "TranscriptCleaner", "CleanedTranscript", "RuleTables", "DEFAULT_RULES",
    "TranscriptionReconciler", "ReconcilerSettings",

    # Scoring
    "PronunciationEstimator", "PronunciationSettings", "ScoreCalibrator", "CalibratorSettings",
    "EvaluationPrompts", "ScoringPayload", "normalize_scoring_payload", "validate_scoring_payload",
    "overall_band", "round_band",

    # Services
    "AudioPreparationService", "PreparedAudio", "ResultPersistenceService",

    # Events
    "JobEventBus", "EventLogger", "PipelineMetrics",
    "EventType", "JobEvent", "JobSubmittedEvent", "StatusChangedEvent", "StageChangedEvent",
    "SegmentTranscribedEvent", "JobCompletedEvent", "JobFailedEvent", "JobCancelledEvent",
    "ErrorOccurredEvent",
]
