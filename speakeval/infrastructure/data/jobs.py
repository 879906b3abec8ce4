"""
Evaluation job records.
Holds the lifecycle state of one evaluation attempt for one test submission.
"""
import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional


class JobStatus(str, Enum):
    """Lifecycle states of an evaluation job."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    STALE = "stale"
    RETRYING = "retrying"


class JobStage(str, Enum):
    """Sub-phase within a status."""
    QUEUED = "queued"
    PREPROCESSING = "preprocessing"
    TRANSCRIBING = "transcribing"
    EVALUATING = "evaluating"
    PERSISTING = "persisting"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class FailureReason(str, Enum):
    """User-visible reasons a job ended up failed."""
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    NO_AUDIO = "no_audio"
    QUOTA_LIMIT = "quota_limit"
    PROVIDER_REJECTED = "provider_rejected"
    STORAGE_ERROR = "storage_error"
    UNKNOWN = "unknown_error"


FAILURE_MESSAGES = {
    FailureReason.CANCELLED: "Evaluation was cancelled",
    FailureReason.SUPERSEDED: "Superseded by a newer submission for the same test",
    FailureReason.MAX_RETRIES_EXCEEDED: "Evaluation failed after exhausting all retries",
    FailureReason.NO_AUDIO: "No speech was captured in the submitted recordings",
    FailureReason.QUOTA_LIMIT: "No evaluation capacity is available right now",
    FailureReason.PROVIDER_REJECTED: "The evaluation provider rejected the request",
    FailureReason.STORAGE_ERROR: "Recordings could not be read from storage",
    FailureReason.UNKNOWN: "Evaluation failed unexpectedly",
}

STAGE_PROGRESS = {
    JobStage.QUEUED: 0.0,
    JobStage.PREPROCESSING: 0.1,
    JobStage.TRANSCRIBING: 0.3,
    JobStage.EVALUATING: 0.7,
    JobStage.PERSISTING: 0.9,
    JobStage.DONE: 1.0,
}


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass
class EvaluationJob:
    """One evaluation attempt. Mutated only by the orchestrator (heartbeat aside)."""
    id: str
    test_id: str
    user_id: str
    file_paths: Dict[str, str]
    status: JobStatus = JobStatus.PENDING
    stage: JobStage = JobStage.QUEUED
    progress: float = 0.0
    question_texts: Dict[str, str] = field(default_factory=dict)
    # stage completion markers live here: "preprocessed", "transcriptions", "evaluation"
    partial_results: Dict[str, Any] = field(default_factory=dict)
    transcription_result: Optional[Dict[str, Any]] = None
    result_id: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 5
    last_error: Optional[str] = None
    failure_reason: Optional[FailureReason] = None
    permanent_failure: bool = False
    next_attempt_at: float = 0.0
    heartbeat_at: Optional[float] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        """Completed, or failed with no way back."""
        if self.status == JobStatus.COMPLETED:
            return True
        if self.status == JobStatus.FAILED:
            return self.permanent_failure or self.retry_count >= self.max_retries
        return False

    @property
    def can_retry(self) -> bool:
        if self.status not in (JobStatus.STALE, JobStatus.FAILED):
            return False
        return not self.permanent_failure and self.retry_count < self.max_retries

    @property
    def is_cancelled(self) -> bool:
        return self.status == JobStatus.FAILED and self.failure_reason in (
            FailureReason.CANCELLED, FailureReason.SUPERSEDED)

    def user_message(self) -> str:
        """Short status line suitable for showing to the test taker."""
        if self.status == JobStatus.COMPLETED:
            return "Evaluation complete"
        if self.status == JobStatus.FAILED:
            return FAILURE_MESSAGES.get(self.failure_reason or FailureReason.UNKNOWN,
                                        FAILURE_MESSAGES[FailureReason.UNKNOWN])
        if self.status == JobStatus.STALE:
            return "Evaluation stalled and can be retried"
        return f"Evaluation in progress ({self.stage.value}, {int(self.progress * 100)}%)"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["stage"] = self.stage.value
        data["failure_reason"] = self.failure_reason.value if self.failure_reason else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EvaluationJob':
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        values["status"] = JobStatus(values.get("status", JobStatus.PENDING))
        values["stage"] = JobStage(values.get("stage", JobStage.QUEUED))
        if values.get("failure_reason"):
            values["failure_reason"] = FailureReason(values["failure_reason"])
        return cls(**values)
