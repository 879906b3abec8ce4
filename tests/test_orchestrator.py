"""Job lifecycle through the mock pipeline."""
import pytest

from speakeval.errors import InvalidInput, JobStateError, PermanentProviderError, TransientProviderError
from speakeval.evaluation import OrchestratorSettings
from speakeval.evaluation.events import EventType
from speakeval.evaluation.testing import MockScoringClient, MockSpeechEngine, scoring_response
from speakeval.infrastructure.data import EvaluationJob, FailureReason, JobStage, JobStatus, new_job_id

from conftest import ANSWER

KEYS = ["part1-q1", "part2-q1"]


@pytest.fixture
def refs(storage, speech_wav):
    return {key: storage.put(f"uploads/test-1/{key}.wav", speech_wav) for key in KEYS}


@pytest.fixture
def scoring_client():
    return MockScoringClient(default=scoring_response(segment_keys=KEYS))


def transient():
    return TransientProviderError("upstream timed out")


def test_successful_evaluation(pipeline_factory, refs, scoring_client, storage):
    orchestrator = pipeline_factory(scoring_client=scoring_client)
    events = []
    orchestrator.event_bus.subscribe_all(events.append)

    job_id = orchestrator.submit("test-1", "user-1", refs, {"part1-q1": "How do you get to work?"})
    job = orchestrator.advance(job_id)

    assert job.status == JobStatus.COMPLETED
    assert job.stage == JobStage.DONE
    assert job.progress == 1.0
    assert job.result_id == f"results/{job_id}.json"
    assert storage.exists(job.result_id)
    assert set(job.partial_results) >= {"preprocessed", "segments", "transcriptions", "evaluation"}
    assert job.transcription_result["total_words"] == 48

    result = orchestrator.get_result(job_id)
    assert result.overall_band == 6.0
    assert result.criteria["pronunciation"].band == 5.5
    assert [m.segment_key for m in result.model_answers] == KEYS
    assert result.transcripts_by_part == {"1": ANSWER, "2": ANSWER}

    stages = [e.data["stage"] for e in events if e.event_type == EventType.STAGE_CHANGED]
    assert stages == ["preprocessing", "transcribing", "evaluating", "persisting"]
    assert orchestrator.get_metrics()["jobs_completed"] == 1
    assert orchestrator.get_metrics()["segments_transcribed"] == 2


def test_advance_is_idempotent_for_completed_jobs(pipeline_factory, refs, scoring_client):
    orchestrator = pipeline_factory(scoring_client=scoring_client)
    job_id = orchestrator.submit("test-1", "user-1", refs)
    orchestrator.advance(job_id)
    calls = len(scoring_client.request_history)

    assert orchestrator.advance(job_id).status == JobStatus.COMPLETED
    assert len(scoring_client.request_history) == calls


def test_submit_validates_segments(pipeline_factory):
    orchestrator = pipeline_factory()
    with pytest.raises(InvalidInput):
        orchestrator.submit("test-1", "user-1", {})
    with pytest.raises(InvalidInput):
        orchestrator.submit("test-1", "user-1", {"part1-q1": ""})


def test_transient_failure_backs_off_then_recovers(pipeline_factory, storage, speech_wav, clock):
    ref = storage.put("uploads/test-1/part1-q1.wav", speech_wav)
    orchestrator = pipeline_factory(
        engine_a=MockSpeechEngine("engine-a", responses=[transient()], default=ANSWER),
        engine_b=MockSpeechEngine("engine-b", responses=[transient()], default=ANSWER),
        scoring_client=MockScoringClient(default=scoring_response(segment_keys=["part1-q1"])),
    )
    job_id = orchestrator.submit("test-1", "user-1", {"part1-q1": ref})

    job = orchestrator.advance(job_id)
    assert job.status == JobStatus.RETRYING
    assert job.retry_count == 1
    assert job.next_attempt_at > clock()
    assert "TransientProviderError" in job.last_error
    assert "preprocessed" in job.partial_results

    # not due yet
    assert orchestrator.advance(job_id).status == JobStatus.RETRYING

    clock.advance(120)
    job = orchestrator.advance(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.retry_count == 1
    assert orchestrator.get_metrics()["retries_scheduled"] == 1


def test_retries_are_bounded(pipeline_factory, storage, speech_wav, clock):
    ref = storage.put("uploads/test-1/part1-q1.wav", speech_wav)
    orchestrator = pipeline_factory(
        engine_a=MockSpeechEngine("engine-a", default=transient()),
        engine_b=MockSpeechEngine("engine-b", default=transient()),
        settings=OrchestratorSettings(max_retries=2, heartbeat_interval_seconds=0.05),
    )
    job_id = orchestrator.submit("test-1", "user-1", {"part1-q1": ref})

    assert orchestrator.advance(job_id).status == JobStatus.RETRYING
    clock.advance(600)
    job = orchestrator.advance(job_id)

    assert job.status == JobStatus.FAILED
    assert job.permanent_failure
    assert job.failure_reason == FailureReason.MAX_RETRIES_EXCEEDED
    assert job.retry_count == 2
    status = orchestrator.get_status(job_id)
    assert status["message"] == "Evaluation failed after exhausting all retries"
    with pytest.raises(JobStateError):
        orchestrator.retry(job_id)


def test_completed_segments_are_not_transcribed_again(pipeline_factory, refs, scoring_client, clock):
    engine_a = MockSpeechEngine("engine-a", responses=[ANSWER, transient()], default=ANSWER)
    engine_b = MockSpeechEngine("engine-b", responses=[ANSWER, transient()], default=ANSWER)
    orchestrator = pipeline_factory(
        engine_a=engine_a, engine_b=engine_b, scoring_client=scoring_client,
        settings=OrchestratorSettings(segment_workers=1, heartbeat_interval_seconds=0.05),
    )
    job_id = orchestrator.submit("test-1", "user-1", refs)

    job = orchestrator.advance(job_id)
    assert job.status == JobStatus.RETRYING
    assert list(job.partial_results["segments"]) == ["part1-q1"]

    clock.advance(120)
    job = orchestrator.advance(job_id)
    assert job.status == JobStatus.COMPLETED
    assert len(engine_a.calls) == 3
    assert len(engine_b.calls) == 3


def test_silent_recordings_fail_without_retry(pipeline_factory, refs, scoring_client):
    orchestrator = pipeline_factory(
        engine_a=MockSpeechEngine("engine-a", default=""),
        engine_b=MockSpeechEngine("engine-b", default=""),
        scoring_client=scoring_client,
    )
    job_id = orchestrator.submit("test-1", "user-1", refs)
    job = orchestrator.advance(job_id)

    assert job.status == JobStatus.FAILED
    assert job.failure_reason == FailureReason.NO_AUDIO
    assert job.permanent_failure
    assert job.retry_count == 0
    assert scoring_client.request_history == []


def test_rejected_scoring_request_fails_permanently(pipeline_factory, refs):
    orchestrator = pipeline_factory(
        scoring_client=MockScoringClient([PermanentProviderError("bad request", status_code=400)]))
    job_id = orchestrator.submit("test-1", "user-1", refs)
    job = orchestrator.advance(job_id)
    assert job.status == JobStatus.FAILED
    assert job.failure_reason == FailureReason.PROVIDER_REJECTED
    assert "transcriptions" in job.partial_results


def test_missing_recording_exhausts_as_storage_error(pipeline_factory):
    orchestrator = pipeline_factory(settings=OrchestratorSettings(max_retries=1,
                                                                  heartbeat_interval_seconds=0.05))
    job_id = orchestrator.submit("test-1", "user-1", {"part1-q1": "uploads/missing.wav"})
    job = orchestrator.advance(job_id)
    assert job.status == JobStatus.FAILED
    assert job.failure_reason == FailureReason.STORAGE_ERROR


def test_cancel_keeps_partial_results(pipeline_factory, refs):
    orchestrator = pipeline_factory()
    job_id = orchestrator.submit("test-1", "user-1", refs)

    job = orchestrator.cancel(job_id)
    assert job.status == JobStatus.FAILED
    assert job.is_cancelled
    assert job.stage == JobStage.CANCELLED
    assert orchestrator.get_status(job_id)["message"] == "Evaluation was cancelled"

    # cancelling twice and advancing a cancelled job are no-ops
    assert orchestrator.cancel(job_id).failure_reason == FailureReason.CANCELLED
    assert orchestrator.advance(job_id).status == JobStatus.FAILED
    with pytest.raises(JobStateError):
        orchestrator.retry(job_id)


def test_cancel_completed_job_is_rejected(pipeline_factory, refs, scoring_client):
    orchestrator = pipeline_factory(scoring_client=scoring_client)
    job_id = orchestrator.submit("test-1", "user-1", refs)
    orchestrator.advance(job_id)
    with pytest.raises(JobStateError):
        orchestrator.cancel(job_id)


def test_new_submission_supersedes_unfinished_job(pipeline_factory, refs):
    orchestrator = pipeline_factory()
    first = orchestrator.submit("test-1", "user-1", refs)
    second = orchestrator.submit("test-1", "user-1", refs)

    old = orchestrator.job_store.get(first)
    assert old.status == JobStatus.FAILED
    assert old.failure_reason == FailureReason.SUPERSEDED
    assert second in old.last_error
    assert orchestrator.job_store.get(second).status == JobStatus.PENDING


def test_completion_supersedes_sibling_jobs(pipeline_factory, refs, scoring_client):
    orchestrator = pipeline_factory(scoring_client=scoring_client)
    job_id = orchestrator.submit("test-1", "user-1", refs)
    sibling = orchestrator.job_store.create(EvaluationJob(
        id=new_job_id(), test_id="test-1", user_id="user-1", file_paths=dict(refs)))
    other_user = orchestrator.job_store.create(EvaluationJob(
        id=new_job_id(), test_id="test-1", user_id="user-2", file_paths=dict(refs)))

    orchestrator.advance(job_id)

    assert orchestrator.job_store.get(sibling.id).failure_reason == FailureReason.SUPERSEDED
    assert orchestrator.job_store.get(other_user.id).status == JobStatus.PENDING


def test_stalled_job_can_be_retried(pipeline_factory, refs, scoring_client, clock):
    orchestrator = pipeline_factory(scoring_client=scoring_client)
    job_id = orchestrator.submit("test-1", "user-1", refs)

    def claim(job):
        job.status = JobStatus.PROCESSING
        job.heartbeat_at = clock()

    orchestrator.job_store.update_if(job_id, (JobStatus.PENDING,), claim)
    clock.advance(300)
    assert orchestrator.mark_stalled(job_id, clock() - 1000) is None

    stale = orchestrator.mark_stalled(job_id, clock() - 120)
    assert stale.status == JobStatus.STALE
    assert stale.last_error.startswith("Watchdog: no heartbeat")
    assert orchestrator.advance(job_id).status == JobStatus.STALE

    job = orchestrator.retry(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.retry_count == 1


def test_stalled_job_out_of_retries_fails(pipeline_factory, refs, clock):
    orchestrator = pipeline_factory()
    job_id = orchestrator.submit("test-1", "user-1", refs)

    def claim(job):
        job.status = JobStatus.PROCESSING
        job.heartbeat_at = clock()
        job.retry_count = job.max_retries

    orchestrator.job_store.update_if(job_id, (JobStatus.PENDING,), claim)
    clock.advance(300)
    job = orchestrator.mark_stalled(job_id, clock() - 120)
    assert job.status == JobStatus.FAILED
    assert job.failure_reason == FailureReason.MAX_RETRIES_EXCEEDED
    assert "stuck in queued stage" in job.last_error


def test_get_status_fields(pipeline_factory, refs):
    orchestrator = pipeline_factory()
    job_id = orchestrator.submit("test-1", "user-1", refs)
    status = orchestrator.get_status(job_id)
    assert status["status"] == "pending"
    assert status["stage"] == "queued"
    assert status["progress"] == 0.0
    assert status["result_id"] is None
    assert status["message"] == "Evaluation in progress (queued, 0%)"
    with pytest.raises(JobStateError):
        orchestrator.get_result(job_id)


def test_run_pending_dispatches_due_jobs(pipeline_factory, storage, speech_wav, clock):
    orchestrator = pipeline_factory(
        scoring_client=MockScoringClient(default=scoring_response(segment_keys=["part1-q1"])))
    ids = []
    for test_id in ("test-a", "test-b", "test-c"):
        ref = storage.put(f"uploads/{test_id}/part1-q1.wav", speech_wav)
        ids.append(orchestrator.submit(test_id, "user-1", {"part1-q1": ref}))
        clock.advance(1)

    futures = orchestrator.run_pending(limit=2)
    assert len(futures) == 2
    for future in futures:
        future.result(timeout=30)
    orchestrator.shutdown()

    statuses = [orchestrator.job_store.get(job_id).status for job_id in ids]
    assert statuses == [JobStatus.COMPLETED, JobStatus.COMPLETED, JobStatus.PENDING]
