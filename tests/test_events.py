"""Job event bus and metrics."""
from speakeval.evaluation.events import (
    EventType, JobCancelledEvent, JobCompletedEvent, JobEventBus, JobFailedEvent, JobSubmittedEvent,
    PipelineMetrics, SegmentTranscribedEvent,
)


def test_specific_and_global_handlers():
    bus = JobEventBus()
    specific, everything = [], []
    bus.subscribe(EventType.JOB_COMPLETED, specific.append)
    bus.subscribe_all(everything.append)

    bus.emit(JobSubmittedEvent("job-1", 1.0, "test-1", "user-1", 2))
    bus.emit(JobCompletedEvent("job-1", 2.0, "results/job-1.json", 6.5))

    assert [e.event_type for e in specific] == [EventType.JOB_COMPLETED]
    assert len(everything) == 2
    assert specific[0].data == {"result_id": "results/job-1.json", "overall_band": 6.5}


def test_failing_handler_does_not_stop_delivery():
    bus = JobEventBus()
    received = []

    def broken(event):
        raise RuntimeError("handler bug")

    bus.subscribe_all(broken)
    bus.subscribe_all(received.append)
    bus.emit(JobSubmittedEvent("job-1", 1.0, "test-1", "user-1", 1))
    assert len(received) == 1


def test_unsubscribe_and_clear():
    bus = JobEventBus()
    received = []
    bus.subscribe(EventType.JOB_SUBMITTED, received.append)
    bus.unsubscribe(EventType.JOB_SUBMITTED, received.append)
    bus.unsubscribe(EventType.JOB_SUBMITTED, received.append)
    bus.subscribe_all(received.append)
    bus.clear_handlers()
    bus.emit(JobSubmittedEvent("job-1", 1.0, "test-1", "user-1", 1))
    assert received == []


def test_metrics_count_events():
    metrics = PipelineMetrics()
    for event in (
        JobSubmittedEvent("job-1", 1.0, "test-1", "user-1", 1),
        SegmentTranscribedEvent("job-1", 2.0, "part1-q1", "consensus", "high", 24),
        SegmentTranscribedEvent("job-1", 2.0, "part1-q2", "single-fallback", "low", 12),
        JobFailedEvent("job-1", 3.0, "retrying", "timed out", 1, False),
        JobFailedEvent("job-1", 4.0, "no_audio", "silent", 1, True),
        JobCancelledEvent("job-2", 5.0, "superseded", "job-3"),
    ):
        metrics.handle_event(event)

    snapshot = metrics.get_metrics()
    assert snapshot["jobs_submitted"] == 1
    assert snapshot["segments_transcribed"] == 2
    assert snapshot["merge_methods"] == {"consensus": 1, "single-fallback": 1}
    assert snapshot["retries_scheduled"] == 1
    assert snapshot["jobs_failed"] == 1
    assert snapshot["jobs_cancelled"] == 1

    metrics.reset()
    assert metrics.get_metrics()["jobs_submitted"] == 0
