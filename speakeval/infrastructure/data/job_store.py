"""
Job store backends.

The store hands out copies, never live records: a caller mutates its copy and
writes it back, or uses update_if() to apply a change only while the job is
still in an expected status.
"""
import copy
import json
import logging
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Optional

from .jobs import EvaluationJob, JobStatus
from ...errors import JobNotFound, StorageError

logger = logging.getLogger("job_store")

JobMutator = Callable[[EvaluationJob], None]


class JobStore(ABC):
    """Persistence contract for evaluation jobs."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.RLock()

    # Backend primitives ------------------------------------------------

    @abstractmethod
    def _load(self, job_id: str) -> Optional[EvaluationJob]:
        """Return the stored job or None. Called with the lock held."""

    @abstractmethod
    def _save(self, job: EvaluationJob) -> None:
        """Persist the job. Called with the lock held."""

    @abstractmethod
    def _all(self) -> Iterable[EvaluationJob]:
        """Iterate every stored job. Called with the lock held."""

    # Public API --------------------------------------------------------

    def create(self, job: EvaluationJob) -> EvaluationJob:
        with self._lock:
            if self._load(job.id) is not None:
                raise StorageError(f"Job {job.id} already exists")
            job.created_at = job.updated_at = self._clock()
            self._save(copy.deepcopy(job))
            logger.info("Created job %s for test %s (%d segments)", job.id, job.test_id,
                        len(job.file_paths))
            return copy.deepcopy(job)

    def get(self, job_id: str) -> EvaluationJob:
        with self._lock:
            job = self._load(job_id)
            if job is None:
                raise JobNotFound(f"Job not found: {job_id}")
            return copy.deepcopy(job)

    def save(self, job: EvaluationJob) -> EvaluationJob:
        """Unconditional write-back of a job copy."""
        with self._lock:
            if self._load(job.id) is None:
                raise JobNotFound(f"Job not found: {job.id}")
            job.updated_at = self._clock()
            self._save(copy.deepcopy(job))
            return copy.deepcopy(job)

    def update_if(self, job_id: str, expected: Iterable[JobStatus],
                  mutate: JobMutator) -> Optional[EvaluationJob]:
        """
        Apply mutate to the job only if its status is one of `expected`.

        Args:
            job_id: Job to update
            expected: Statuses the job must currently have
            mutate: Function applied to a copy of the job

        Returns:
            The updated job, or None if the status check failed
        """
        allowed = set(expected)
        with self._lock:
            current = self._load(job_id)
            if current is None:
                raise JobNotFound(f"Job not found: {job_id}")
            if current.status not in allowed:
                logger.debug("Skipped update of job %s: status %s not in %s", job_id,
                             current.status.value, sorted(s.value for s in allowed))
                return None
            working = copy.deepcopy(current)
            mutate(working)
            working.updated_at = self._clock()
            self._save(working)
            return copy.deepcopy(working)

    def touch_heartbeat(self, job_id: str, at: Optional[float] = None) -> bool:
        """
        Last-writer-wins heartbeat update. Never touches a completed or failed job,
        and never changes anything but the heartbeat.
        """
        with self._lock:
            current = self._load(job_id)
            if current is None or current.status in (JobStatus.COMPLETED, JobStatus.FAILED):
                return False
            current = copy.deepcopy(current)
            current.heartbeat_at = self._clock() if at is None else at
            self._save(current)
            return True

    def list_jobs(self, status: Optional[JobStatus] = None, test_id: Optional[str] = None,
                  user_id: Optional[str] = None) -> List[EvaluationJob]:
        """Jobs matching the filters, oldest first."""
        with self._lock:
            jobs = [
                copy.deepcopy(job) for job in self._all()
                if (status is None or job.status == status)
                and (test_id is None or job.test_id == test_id)
                and (user_id is None or job.user_id == user_id)
            ]
        jobs.sort(key=lambda j: (j.created_at, j.id))
        return jobs

    def find_stale(self, older_than: float) -> List[EvaluationJob]:
        """Processing jobs whose heartbeat (or last update) predates `older_than`."""
        return [
            job for job in self.list_jobs(status=JobStatus.PROCESSING)
            if (job.heartbeat_at or job.updated_at) < older_than
        ]


class InMemoryJobStore(JobStore):
    """Process-local store, used by tests and single-process deployments."""

    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self._jobs: Dict[str, EvaluationJob] = {}

    def _load(self, job_id: str) -> Optional[EvaluationJob]:
        return self._jobs.get(job_id)

    def _save(self, job: EvaluationJob) -> None:
        self._jobs[job.id] = job

    def _all(self) -> Iterable[EvaluationJob]:
        return list(self._jobs.values())


class JsonFileJobStore(JobStore):
    """One JSON document per job under a directory; survives process restarts."""

    def __init__(self, jobs_dir: str, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.jobs_dir = jobs_dir
        os.makedirs(self.jobs_dir, exist_ok=True)

    def _get_job_path(self, job_id: str) -> str:
        return os.path.join(self.jobs_dir, f"{job_id}.json")

    def _load(self, job_id: str) -> Optional[EvaluationJob]:
        path = self._get_job_path(job_id)
        if not os.path.exists(path):
            return None
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return EvaluationJob.from_dict(json.load(f))
        except (OSError, ValueError, TypeError) as e:
            raise StorageError(f"Corrupt job record {path}: {e}")

    def _save(self, job: EvaluationJob) -> None:
        path = self._get_job_path(job.id)
        fd, tmp_path = tempfile.mkstemp(dir=self.jobs_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(job.to_dict(), f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise StorageError(f"Failed to write job {job.id}: {e}")

    def _all(self) -> Iterable[EvaluationJob]:
        for filename in sorted(os.listdir(self.jobs_dir)):
            if filename.endswith('.json'):
                job = self._load(filename[:-5])
                if job is not None:
                    yield job
