"""
SpeakEval: automated evaluation of recorded speaking tests.

Recordings are trimmed, transcribed by two speech engine variants, reconciled
into one transcript per question, scored against four criteria and calibrated
into a band result, all driven by a retrying, resumable job orchestrator.
"""

__version__ = "1.0.0"

# Main entry points
from .evaluation.orchestrator import JobOrchestrator
from .evaluation.models import EvaluationResult, TranscriptionSegment

__all__ = ["JobOrchestrator", "EvaluationResult", "TranscriptionSegment"]
