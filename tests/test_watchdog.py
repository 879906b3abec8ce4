"""Stale job detection."""
import time

import pytest

from speakeval.evaluation import JobWatchdog
from speakeval.evaluation.testing import MockScoringClient, scoring_response
from speakeval.infrastructure.data import FailureReason, JobStatus


@pytest.fixture
def orchestrator(pipeline_factory):
    return pipeline_factory(scoring_client=MockScoringClient(default=scoring_response(segment_keys=["part1-q1"])))


@pytest.fixture
def processing_job(orchestrator, storage, speech_wav, clock):
    """A job left in processing by a worker that stopped heartbeating."""
    ref = storage.put("uploads/test-1/part1-q1.wav", speech_wav)
    job_id = orchestrator.submit("test-1", "user-1", {"part1-q1": ref})

    def claim(job):
        job.status = JobStatus.PROCESSING
        job.heartbeat_at = clock()

    orchestrator.job_store.update_if(job_id, (JobStatus.PENDING,), claim)
    return job_id


def test_scan_ignores_recent_heartbeats(orchestrator, processing_job, clock):
    watchdog = JobWatchdog(orchestrator, stale_after_seconds=120, clock=clock)
    clock.advance(60)
    assert watchdog.scan() == []
    assert orchestrator.job_store.get(processing_job).status == JobStatus.PROCESSING


def test_scan_marks_stalled_jobs_stale(orchestrator, processing_job, clock):
    watchdog = JobWatchdog(orchestrator, stale_after_seconds=120, clock=clock)
    clock.advance(121)
    demoted = watchdog.scan()
    assert [job.id for job in demoted] == [processing_job]
    assert orchestrator.job_store.get(processing_job).status == JobStatus.STALE


def test_scan_fails_jobs_out_of_retries(orchestrator, processing_job, clock):
    def exhaust(job):
        job.retry_count = job.max_retries

    orchestrator.job_store.update_if(processing_job, (JobStatus.PROCESSING,), exhaust)
    clock.advance(500)
    JobWatchdog(orchestrator, stale_after_seconds=120, clock=clock).scan()

    job = orchestrator.job_store.get(processing_job)
    assert job.status == JobStatus.FAILED
    assert job.failure_reason == FailureReason.MAX_RETRIES_EXCEEDED
    assert orchestrator.get_metrics()["jobs_failed"] == 1


def test_auto_retry_resumes_stalled_jobs(orchestrator, processing_job, clock):
    watchdog = JobWatchdog(orchestrator, stale_after_seconds=120, auto_retry=True, clock=clock)
    clock.advance(121)
    watchdog.scan()
    orchestrator.shutdown()

    job = orchestrator.job_store.get(processing_job)
    assert job.status == JobStatus.COMPLETED
    assert job.retry_count == 1


def test_background_thread_scans_periodically(orchestrator, processing_job, clock):
    watchdog = JobWatchdog(orchestrator, stale_after_seconds=120, interval_seconds=0.02, clock=clock)
    clock.advance(121)
    watchdog.start()
    try:
        deadline = time.monotonic() + 5
        while orchestrator.job_store.get(processing_job).status != JobStatus.STALE:
            assert time.monotonic() < deadline
            time.sleep(0.01)
    finally:
        watchdog.stop()
