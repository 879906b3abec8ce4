"""
Job orchestrator: drives evaluation jobs through preprocess, transcribe,
evaluate and persist, and owns retry, backoff, cancellation and supersession.
"""
import logging
import os
import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .calibrator import ScoreCalibrator
from .events import (
    JobEventBus, EventLogger, PipelineMetrics,
    JobSubmittedEvent, StatusChangedEvent, StageChangedEvent, SegmentTranscribedEvent,
    JobCompletedEvent, JobFailedEvent, JobCancelledEvent, ErrorOccurredEvent,
)
from .models import EvaluationResult, TranscriptionSegment
from .reconciler import TranscriptionReconciler
from .segments import AudioSegment, ordered_segments
from .services import AudioPreparationService, PreparedAudio, ResultPersistenceService
from ..config import (
    BACKOFF_BASE_SECONDS, BACKOFF_JITTER, BACKOFF_MAX_SECONDS, HEARTBEAT_INTERVAL_SECONDS,
    JOB_WORKERS, LANGUAGE_HINT, MAX_JOBS_PER_RUN, MAX_RETRIES, SEGMENT_WORKERS, Config,
)
from ..errors import (
    InvalidInput, JobError, JobStateError, NoCredentialAvailable, NoUsableSpeech,
    ProviderError, StorageError,
)
from ..infrastructure.data import (
    EvaluationJob, FailureReason, JobStage, JobStatus, JobStore, STAGE_PROGRESS, new_job_id,
)
from ..infrastructure.quota import QuotaPool
from ..infrastructure.storage import BlobStorage
from ..utils.retry import backoff_with_jitter

logger = logging.getLogger("orchestrator")

UNFINISHED = (JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.RETRYING, JobStatus.STALE)


def _store_marker(name: str, value: Any) -> Callable[[EvaluationJob], None]:
    """Mutator recording a stage completion marker in partial_results."""
    def mark(job: EvaluationJob) -> None:
        job.partial_results[name] = value
    return mark


class JobInterrupted(JobError):
    """The job left the processing state (cancelled or superseded) while it was running."""

    code = "job_interrupted"


@dataclass
class OrchestratorSettings:
    max_retries: int = MAX_RETRIES
    heartbeat_interval_seconds: float = HEARTBEAT_INTERVAL_SECONDS
    backoff_base_seconds: float = BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = BACKOFF_MAX_SECONDS
    backoff_jitter: float = BACKOFF_JITTER
    segment_workers: int = SEGMENT_WORKERS
    job_workers: int = JOB_WORKERS
    max_jobs_per_run: int = MAX_JOBS_PER_RUN
    language_hint: str = LANGUAGE_HINT


class HeartbeatKeeper:
    """Touches a job's heartbeat on a background thread while a stage runs."""

    def __init__(self, job_store: JobStore, job_id: str, interval_seconds: float):
        self.job_store = job_store
        self.job_id = job_id
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            if not self.job_store.touch_heartbeat(self.job_id):
                return

    def __enter__(self) -> 'HeartbeatKeeper':
        self.job_store.touch_heartbeat(self.job_id)
        self._thread = threading.Thread(target=self._run, name=f"heartbeat-{self.job_id[:8]}",
                                        daemon=True)
        self._thread.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval_seconds)


class JobOrchestrator:
    """
    The only component callers talk to.

    Example:
        orchestrator = JobOrchestrator.from_config(get_config())
        job_id = orchestrator.submit("test-1", "user-1", {"part1-q1": "uploads/a.wav"})
        orchestrator.advance(job_id)
        print(orchestrator.get_status(job_id))
    """

    def __init__(self,
                 job_store: JobStore,
                 storage: BlobStorage,
                 quota_pool: QuotaPool,
                 reconciler: TranscriptionReconciler,
                 calibrator: ScoreCalibrator,
                 preparation: Optional[AudioPreparationService] = None,
                 results: Optional[ResultPersistenceService] = None,
                 event_bus: Optional[JobEventBus] = None,
                 settings: Optional[OrchestratorSettings] = None,
                 clock: Callable[[], float] = time.time,
                 rng: Optional[Callable[[], float]] = None):
        self.job_store = job_store
        self.storage = storage
        self.quota_pool = quota_pool
        self.reconciler = reconciler
        self.calibrator = calibrator
        self.preparation = preparation or AudioPreparationService(storage)
        self.results = results or ResultPersistenceService(storage)
        self.settings = settings or OrchestratorSettings()
        self._clock = clock
        self._rng = rng or random.random

        # Event system
        self.event_bus = event_bus or JobEventBus()
        self.event_logger = EventLogger()
        self.metrics = PipelineMetrics()
        self.event_bus.subscribe_all(self.event_logger.handle_event)
        self.event_bus.subscribe_all(self.metrics.handle_event)

        self._active: set = set()
        self._active_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    @classmethod
    def from_config(cls,
                    config: Config,
                    storage: Optional[BlobStorage] = None,
                    job_store: Optional[JobStore] = None,
                    event_bus: Optional[JobEventBus] = None,
                    trim_trailing: bool = False) -> 'JobOrchestrator':
        """Wire the production collaborators from environment configuration."""
        from ..infrastructure.audio.processing import SilenceTrimmer, TrimSettings
        from ..infrastructure.audio.speech import GoogleSpeechEngine, WhisperHttpEngine
        from ..infrastructure.data import JsonFileJobStore
        from ..infrastructure.llm import GeminiRestClient
        from ..infrastructure.quota import Capability, Credential
        from ..infrastructure.storage import LocalBlobStorage, RetryingStorage

        pool = QuotaPool()
        for idx, key in enumerate(config.asr_keys, start=1):
            pool.add_credential(Credential(f"asr-{idx}", key, frozenset({Capability.SPEECH_TO_TEXT})))
        for idx, key in enumerate(config.scoring_keys, start=1):
            pool.add_credential(Credential(f"scoring-{idx}", key, frozenset({Capability.SCORING})))

        storage = storage or RetryingStorage(LocalBlobStorage(os.path.join(config.workdir, "blobs")))
        job_store = job_store or JsonFileJobStore(os.path.join(config.workdir, "jobs"))

        if config.secondary_engine == "google":
            secondary = GoogleSpeechEngine(api_key=config.google_speech_key)
        else:
            secondary = WhisperHttpEngine(config.whisper_model_secondary, config.whisper_base_url)
        reconciler = TranscriptionReconciler(
            WhisperHttpEngine(config.whisper_model_primary, config.whisper_base_url),
            secondary,
            pool,
        )
        client = GeminiRestClient(
            model=config.scoring_model,
            project=config.google_cloud_project,
            location=config.scoring_location,
            credentials_json=config.google_application_credentials,
        )
        # without pooled scoring keys the client authenticates against Vertex directly
        calibrator = ScoreCalibrator(client, pool if config.scoring_keys else None)
        preparation = AudioPreparationService(storage, SilenceTrimmer(TrimSettings(trim_trailing=trim_trailing)))

        return cls(
            job_store=job_store,
            storage=storage,
            quota_pool=pool,
            reconciler=reconciler,
            calibrator=calibrator,
            preparation=preparation,
            event_bus=event_bus,
            settings=OrchestratorSettings(max_retries=config.max_retries,
                                          language_hint=config.language_hint),
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def submit(self,
               test_id: str,
               user_id: str,
               segment_refs: Mapping[str, str],
               question_texts: Optional[Mapping[str, str]] = None) -> str:
        """
        Create a pending job. Older unfinished jobs for the same test are superseded.

        Raises:
            InvalidInput: No segments, or a segment without a storage reference
        """
        if not segment_refs:
            raise InvalidInput("At least one audio segment is required")
        for key, ref in segment_refs.items():
            if not key or not ref:
                raise InvalidInput(f"Segment {key!r} has no storage reference")

        job = self.job_store.create(EvaluationJob(
            id=new_job_id(),
            test_id=test_id,
            user_id=user_id,
            file_paths=dict(segment_refs),
            question_texts=dict(question_texts or {}),
            max_retries=self.settings.max_retries,
        ))
        now = self._clock()
        self.event_bus.emit(JobSubmittedEvent(job.id, now, test_id, user_id, len(segment_refs)))
        self.event_bus.emit(StatusChangedEvent(job.id, now, None, job.status.value,
                                               job.stage.value, job.progress))

        for older in self.job_store.list_jobs(test_id=test_id):
            if older.id != job.id and older.status in UNFINISHED:
                self._terminate(older.id, FailureReason.SUPERSEDED, superseded_by=job.id)
        return job.id

    def advance(self, job_id: str) -> EvaluationJob:
        """
        Move the job as far through the pipeline as it can go right now.

        Idempotent: terminal, stale and not-yet-due jobs come back unchanged, and a
        job already being advanced in this process is not started twice. Every
        stage checks its completion marker before running.
        """
        self.job_store.touch_heartbeat(job_id)
        job = self.job_store.get(job_id)
        if job.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.STALE):
            return job
        if job.status in (JobStatus.PENDING, JobStatus.RETRYING) and job.next_attempt_at > self._clock():
            logger.debug("Job %s not due for %.1fs", job_id, job.next_attempt_at - self._clock())
            return job

        with self._active_lock:
            if job_id in self._active:
                return job
            self._active.add(job_id)
        try:
            claimed = self._transition(job_id, (JobStatus.PENDING, JobStatus.RETRYING, JobStatus.PROCESSING),
                                       self._claim)
            if claimed is None:
                return self.job_store.get(job_id)
            with HeartbeatKeeper(self.job_store, job_id, self.settings.heartbeat_interval_seconds):
                self._run_stages(claimed)
        except JobInterrupted:
            logger.info("Job %s left processing while running; results discarded", job_id)
        except Exception as e:
            self._handle_failure(job_id, e)
        finally:
            with self._active_lock:
                self._active.discard(job_id)
        return self.job_store.get(job_id)

    def cancel(self, job_id: str, reason: FailureReason = FailureReason.CANCELLED) -> EvaluationJob:
        """
        Mark the job failed with a cancellation reason. Partial results are kept.

        Raises:
            JobStateError: The job already completed
        """
        job = self.job_store.get(job_id)
        if job.status == JobStatus.COMPLETED:
            raise JobStateError(f"Job {job_id} already completed")
        if job.is_terminal:
            return job
        return self._terminate(job_id, reason) or self.job_store.get(job_id)

    def retry(self, job_id: str, background: bool = False) -> EvaluationJob:
        """
        Re-enter processing from stale, or from failed with retries left.

        Raises:
            JobStateError: The job is not retryable
        """
        job = self.job_store.get(job_id)
        if not job.can_retry:
            raise JobStateError(
                f"Job {job_id} cannot be retried from {job.status.value} "
                f"({job.retry_count}/{job.max_retries} retries{', permanent' if job.permanent_failure else ''})")

        def schedule(j: EvaluationJob) -> None:
            if not j.can_retry:
                raise JobStateError(f"Job {job_id} is no longer retryable")
            j.retry_count += 1
            j.status = JobStatus.RETRYING
            j.next_attempt_at = 0.0
            j.failure_reason = None

        if self._transition(job_id, (JobStatus.STALE, JobStatus.FAILED), schedule) is None:
            raise JobStateError(f"Job {job_id} changed state before it could be retried")
        logger.info("Job %s scheduled for retry %d", job_id, job.retry_count + 1)
        if background:
            self.dispatch(job_id)
            return self.job_store.get(job_id)
        return self.advance(job_id)

    def get_status(self, job_id: str) -> Dict[str, Any]:
        """What a caller may show: status, stage, progress, message and result id."""
        job = self.job_store.get(job_id)
        return {
            "job_id": job.id,
            "test_id": job.test_id,
            "status": job.status.value,
            "stage": job.stage.value,
            "progress": job.progress,
            "message": job.user_message(),
            "result_id": job.result_id,
            "retry_count": job.retry_count,
            "max_retries": job.max_retries,
            "failure_reason": job.failure_reason.value if job.failure_reason else None,
            "last_error": job.last_error,
        }

    def get_result(self, job_id: str) -> EvaluationResult:
        job = self.job_store.get(job_id)
        if job.status != JobStatus.COMPLETED or not job.result_id:
            raise JobStateError(f"Job {job_id} has no result ({job.status.value})")
        return self.results.load(job.result_id)

    def mark_stalled(self, job_id: str, older_than: float) -> Optional[EvaluationJob]:
        """
        Demote a processing job whose heartbeat predates `older_than`: stale when it
        has retries left, failed otherwise.

        Returns:
            The demoted job, or None if it moved on or its heartbeat recovered
        """
        def mark(j: EvaluationJob) -> None:
            if (j.heartbeat_at or j.updated_at) >= older_than:
                raise JobStateError(f"Job {job_id} heartbeat recovered")
            if j.retry_count >= j.max_retries:
                j.last_error = f"Watchdog: job stuck in {j.stage.value} stage after {j.retry_count} attempts"
                j.status = JobStatus.FAILED
                j.stage = JobStage.FAILED
                j.permanent_failure = True
                j.failure_reason = FailureReason.MAX_RETRIES_EXCEEDED
            else:
                j.last_error = f"Watchdog: no heartbeat during {j.stage.value} stage"
                j.status = JobStatus.STALE

        try:
            job = self._transition(job_id, (JobStatus.PROCESSING,), mark)
        except JobStateError:
            return None
        if job is None:
            return None
        if job.status == JobStatus.FAILED:
            logger.error("Job %s: %s", job_id, job.last_error)
            self.event_bus.emit(JobFailedEvent(job_id, self._clock(), job.failure_reason.value,
                                               job.last_error, job.retry_count, True))
        else:
            logger.warning("Job %s marked stale: %s", job_id, job.last_error)
        return job

    # ------------------------------------------------------------------
    # Background execution
    # ------------------------------------------------------------------

    def dispatch(self, job_id: str) -> Future:
        """Advance the job on the worker pool."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.settings.job_workers,
                                                thread_name_prefix="job")
        return self._executor.submit(self.advance, job_id)

    def run_pending(self, limit: Optional[int] = None) -> List[Future]:
        """Dispatch due pending/retrying jobs, oldest first, at most `limit` per call."""
        limit = self.settings.max_jobs_per_run if limit is None else limit
        now = self._clock()
        due = [job for status in (JobStatus.PENDING, JobStatus.RETRYING)
               for job in self.job_store.list_jobs(status=status)
               if job.next_attempt_at <= now]
        due.sort(key=lambda j: (j.created_at, j.id))
        with self._active_lock:
            due = [job for job in due if job.id not in self._active]
        futures = [self.dispatch(job.id) for job in due[:limit]]
        if futures:
            logger.info("Dispatched %d job(s)", len(futures))
        return futures

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def get_metrics(self) -> Dict[str, Any]:
        """Get current pipeline metrics."""
        return self.metrics.get_metrics()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _run_stages(self, job: EvaluationJob) -> None:
        segments = ordered_segments(job.file_paths)
        prepared: Dict[str, PreparedAudio] = {}

        if "preprocessed" not in job.partial_results:
            job = self._enter_stage(job.id, JobStage.PREPROCESSING)
            prepared = self._preprocess(job, segments)

        if "transcriptions" not in job.partial_results:
            job = self._enter_stage(job.id, JobStage.TRANSCRIBING)
            job = self._transcribe(job, segments, prepared)

        if "evaluation" not in job.partial_results:
            job = self._enter_stage(job.id, JobStage.EVALUATING)
            transcriptions = [TranscriptionSegment.from_dict(d) for d in job.partial_results["transcriptions"]]
            result = self.calibrator.evaluate(job.id, transcriptions, job.question_texts)
            job = self._update_processing(job.id, _store_marker("evaluation", result.to_dict()))

        self._enter_stage(job.id, JobStage.PERSISTING)
        self._persist(job)

    def _preprocess(self, job: EvaluationJob, segments: List[AudioSegment]) -> Dict[str, PreparedAudio]:
        workers = max(1, min(self.settings.segment_workers, len(segments)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="prep") as executor:
            prepared = list(executor.map(lambda seg: self.preparation.prepare(job.id, seg), segments))

        markers = {
            p.segment_key: {
                "duration_seconds": p.duration_seconds,
                "processed_reference": p.processed_reference,
                "trim_stats": p.trim_stats,
            }
            for p in prepared
        }
        self._update_processing(job.id, _store_marker("preprocessed", markers))
        return {p.segment_key: p for p in prepared}

    def _transcribe(self, job: EvaluationJob, segments: List[AudioSegment],
                    prepared: Dict[str, PreparedAudio]) -> EvaluationJob:
        done = dict(job.partial_results.get("segments") or {})
        remaining = [seg for seg in segments if seg.segment_key not in done]
        markers = job.partial_results.get("preprocessed") or {}

        if remaining:
            workers = max(1, min(self.settings.segment_workers, len(remaining)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="asr-segment") as executor:
                futures = [
                    executor.submit(self._transcribe_one, job.id, seg, len(segments),
                                    prepared.get(seg.segment_key), markers.get(seg.segment_key, {}))
                    for seg in remaining
                ]
                errors = []
                for future in futures:
                    try:
                        future.result()
                    except Exception as e:
                        errors.append(e)
            if errors:
                interrupted = [e for e in errors if isinstance(e, JobInterrupted)]
                raise interrupted[0] if interrupted else errors[0]

        def finish(j: EvaluationJob) -> None:
            by_key = j.partial_results.get("segments") or {}
            ordered = [by_key[seg.segment_key] for seg in segments]
            j.partial_results["transcriptions"] = ordered
            j.transcription_result = {
                "segments": ordered,
                "total_words": sum(s.get("word_count", 0) for s in ordered),
                "segments_without_speech": [s["segment_key"] for s in ordered if not s.get("final_text")],
            }

        return self._update_processing(job.id, finish)

    def _transcribe_one(self, job_id: str, segment: AudioSegment, total: int,
                        prepared: Optional[PreparedAudio], marker: Dict[str, Any]) -> TranscriptionSegment:
        self._ensure_processing(job_id)
        audio = prepared or self.preparation.load_prepared(segment, marker)
        result = self.reconciler.transcribe_segment(
            segment.segment_key, audio.audio, audio.duration_seconds, job_id,
            language_hint=self.settings.language_hint,
        )

        def record(j: EvaluationJob) -> None:
            segments = j.partial_results.setdefault("segments", {})
            segments[segment.segment_key] = result.to_dict()
            low, high = STAGE_PROGRESS[JobStage.TRANSCRIBING], STAGE_PROGRESS[JobStage.EVALUATING]
            j.progress = round(low + (high - low) * len(segments) / max(1, total), 3)

        self._update_processing(job_id, record)
        self.event_bus.emit(SegmentTranscribedEvent(job_id, self._clock(), segment.segment_key,
                                                    result.method.value, result.confidence.value,
                                                    result.word_count))
        return result

    def _persist(self, job: EvaluationJob) -> None:
        result = EvaluationResult.from_dict(job.partial_results["evaluation"])
        result_id = self.results.save(job.id, result)

        def complete(j: EvaluationJob) -> None:
            j.status = JobStatus.COMPLETED
            j.stage = JobStage.DONE
            j.progress = STAGE_PROGRESS[JobStage.DONE]
            j.result_id = result_id
            j.completed_at = self._clock()
            j.last_error = None
            j.failure_reason = None

        completed = self._transition(job.id, (JobStatus.PROCESSING,), complete)
        if completed is None:
            # cancelled or superseded while persisting: never publish over it
            self.results.discard(result_id)
            raise JobInterrupted(f"Job {job.id} was cancelled before its result was stored")

        self.event_bus.emit(JobCompletedEvent(job.id, self._clock(), result_id, result.overall_band))
        logger.info("Job %s completed: overall band %.1f", job.id, result.overall_band)

        for other in self.job_store.list_jobs(test_id=job.test_id, user_id=job.user_id):
            if other.id == job.id:
                continue
            if other.status in UNFINISHED or (other.status == JobStatus.FAILED and not other.is_terminal):
                self._terminate(other.id, FailureReason.SUPERSEDED, superseded_by=job.id)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _handle_failure(self, job_id: str, error: Exception) -> None:
        self.event_bus.emit(ErrorOccurredEvent(job_id, self._clock(), type(error).__name__,
                                               str(error), "orchestrator"))
        if isinstance(error, NoUsableSpeech):
            self._fail_permanently(job_id, FailureReason.NO_AUDIO, str(error))
        elif isinstance(error, NoCredentialAvailable):
            if error.permanent:
                self._fail_permanently(job_id, FailureReason.QUOTA_LIMIT, str(error))
            else:
                self._fail_transiently(job_id, error, error.retry_after_seconds)
        elif isinstance(error, ProviderError):
            if error.retryable:
                self._fail_transiently(job_id, error, error.retry_after_seconds)
            else:
                self._fail_permanently(job_id, FailureReason.PROVIDER_REJECTED, str(error))
        elif isinstance(error, StorageError):
            self._fail_transiently(job_id, error, None, exhausted_reason=FailureReason.STORAGE_ERROR)
        else:
            logger.exception("Job %s failed unexpectedly", job_id)
            self._fail_transiently(job_id, error, None)

    def _fail_transiently(self, job_id: str, error: Exception, retry_after: Optional[float],
                          exhausted_reason: FailureReason = FailureReason.MAX_RETRIES_EXCEEDED) -> None:
        outcome: Dict[str, Any] = {}

        def mark(j: EvaluationJob) -> None:
            j.retry_count += 1
            j.last_error = f"{type(error).__name__}: {error}"
            if j.retry_count >= j.max_retries:
                j.status = JobStatus.FAILED
                j.stage = JobStage.FAILED
                j.permanent_failure = True
                j.failure_reason = exhausted_reason
                outcome["permanent"] = True
                return
            delay = backoff_with_jitter(j.retry_count, self.settings.backoff_base_seconds,
                                        self.settings.backoff_max_seconds, self.settings.backoff_jitter,
                                        rng=self._rng)
            if retry_after:
                delay = max(delay, retry_after)
            j.status = JobStatus.RETRYING
            j.next_attempt_at = self._clock() + delay
            outcome["delay"] = delay

        job = self._transition(job_id, (JobStatus.PROCESSING,), mark)
        if job is None:
            return
        if outcome.get("permanent"):
            logger.error("Job %s failed after %d attempts: %s", job_id, job.retry_count, error)
        else:
            logger.warning("Job %s attempt %d failed (%s); retrying in %.1fs", job_id, job.retry_count,
                           error, outcome["delay"])
        self.event_bus.emit(JobFailedEvent(
            job_id, self._clock(),
            job.failure_reason.value if job.failure_reason else "retrying",
            str(error), job.retry_count, bool(outcome.get("permanent")),
        ))

    def _fail_permanently(self, job_id: str, reason: FailureReason, message: str) -> None:
        def mark(j: EvaluationJob) -> None:
            j.status = JobStatus.FAILED
            j.stage = JobStage.FAILED
            j.permanent_failure = True
            j.failure_reason = reason
            j.last_error = message

        job = self._transition(job_id, UNFINISHED, mark)
        if job is None:
            return
        logger.error("Job %s failed permanently (%s): %s", job_id, reason.value, message)
        self.event_bus.emit(JobFailedEvent(job_id, self._clock(), reason.value, message,
                                           job.retry_count, True))

    def _terminate(self, job_id: str, reason: FailureReason,
                   superseded_by: Optional[str] = None) -> Optional[EvaluationJob]:
        """Cancel or supersede: permanent failure that keeps partial results."""
        def mark(j: EvaluationJob) -> None:
            j.status = JobStatus.FAILED
            j.stage = JobStage.CANCELLED
            j.permanent_failure = True
            j.failure_reason = reason
            j.last_error = f"Superseded by job {superseded_by}" if superseded_by else "Cancelled"

        job = self._transition(job_id, UNFINISHED + (JobStatus.FAILED,), mark)
        if job is not None:
            logger.info("Job %s %s%s", job_id, reason.value,
                        f" by {superseded_by}" if superseded_by else "")
            self.event_bus.emit(JobCancelledEvent(job_id, self._clock(), reason.value, superseded_by))
        return job

    # ------------------------------------------------------------------
    # Store helpers
    # ------------------------------------------------------------------

    def _claim(self, job: EvaluationJob) -> None:
        job.status = JobStatus.PROCESSING
        job.heartbeat_at = self._clock()
        job.next_attempt_at = 0.0

    def _transition(self, job_id: str, expected: Iterable[JobStatus],
                    mutate: Callable[[EvaluationJob], None]) -> Optional[EvaluationJob]:
        """update_if plus status/stage change notifications."""
        before: Dict[str, Any] = {}

        def wrapped(j: EvaluationJob) -> None:
            before["status"], before["stage"] = j.status, j.stage
            mutate(j)

        job = self.job_store.update_if(job_id, tuple(expected), wrapped)
        if job is None:
            return None
        now = self._clock()
        if job.status != before["status"]:
            self.event_bus.emit(StatusChangedEvent(job_id, now, before["status"].value, job.status.value,
                                                   job.stage.value, job.progress))
        elif job.stage != before["stage"]:
            self.event_bus.emit(StageChangedEvent(job_id, now, job.stage.value, job.progress))
        return job

    def _update_processing(self, job_id: str, mutate: Callable[[EvaluationJob], None]) -> EvaluationJob:
        job = self._transition(job_id, (JobStatus.PROCESSING,), mutate)
        if job is None:
            raise JobInterrupted(f"Job {job_id} is no longer processing")
        return job

    def _ensure_processing(self, job_id: str) -> None:
        if self.job_store.get(job_id).status != JobStatus.PROCESSING:
            raise JobInterrupted(f"Job {job_id} is no longer processing")

    def _enter_stage(self, job_id: str, stage: JobStage) -> EvaluationJob:
        def mark(j: EvaluationJob) -> None:
            j.stage = stage
            j.progress = max(j.progress, STAGE_PROGRESS[stage])

        logger.info("Job %s entering %s", job_id, stage.value)
        return self._update_processing(job_id, mark)
