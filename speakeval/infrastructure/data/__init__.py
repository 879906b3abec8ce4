"""
Job records and the stores that persist them.
"""

from .jobs import (
    EvaluationJob,
    JobStatus,
    JobStage,
    FailureReason,
    FAILURE_MESSAGES,
    STAGE_PROGRESS,
    new_job_id,
)
from .job_store import JobStore, InMemoryJobStore, JsonFileJobStore

__all__ = [
    'EvaluationJob',
    'JobStatus',
    'JobStage',
    'FailureReason',
    'FAILURE_MESSAGES',
    'STAGE_PROGRESS',
    'new_job_id',
    'JobStore',
    'InMemoryJobStore',
    'JsonFileJobStore',
]
