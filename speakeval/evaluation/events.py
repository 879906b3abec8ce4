"""
Job status channel: events pushed to subscribers as jobs move through the pipeline.
"""
import logging
import threading
from abc import ABC
from typing import Dict, Any, List, Callable, Optional
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger("events")


class EventType(str, Enum):
    """Types of job events."""
    JOB_SUBMITTED = "job_submitted"
    STATUS_CHANGED = "status_changed"
    STAGE_CHANGED = "stage_changed"
    SEGMENT_TRANSCRIBED = "segment_transcribed"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_CANCELLED = "job_cancelled"
    ERROR_OCCURRED = "error_occurred"


@dataclass
class JobEvent(ABC):
    """Base class for all job events."""
    event_type: EventType
    job_id: str
    timestamp: float
    data: Dict[str, Any]


@dataclass
class JobSubmittedEvent(JobEvent):
    """Event fired when a job is created."""
    def __init__(self, job_id: str, timestamp: float, test_id: str, user_id: str, segment_count: int):
        super().__init__(
            event_type=EventType.JOB_SUBMITTED,
            job_id=job_id,
            timestamp=timestamp,
            data={"test_id": test_id, "user_id": user_id, "segment_count": segment_count}
        )


@dataclass
class StatusChangedEvent(JobEvent):
    """Event fired on every status transition."""
    def __init__(self, job_id: str, timestamp: float, old_status: Optional[str], new_status: str,
                 stage: str, progress: float):
        super().__init__(
            event_type=EventType.STATUS_CHANGED,
            job_id=job_id,
            timestamp=timestamp,
            data={
                "old_status": old_status,
                "new_status": new_status,
                "stage": stage,
                "progress": progress
            }
        )


@dataclass
class StageChangedEvent(JobEvent):
    """Event fired when a processing job enters a new stage."""
    def __init__(self, job_id: str, timestamp: float, stage: str, progress: float):
        super().__init__(
            event_type=EventType.STAGE_CHANGED,
            job_id=job_id,
            timestamp=timestamp,
            data={"stage": stage, "progress": progress}
        )


@dataclass
class SegmentTranscribedEvent(JobEvent):
    """Event fired when one segment has been reconciled."""
    def __init__(self, job_id: str, timestamp: float, segment_key: str, method: str,
                 confidence: str, word_count: int):
        super().__init__(
            event_type=EventType.SEGMENT_TRANSCRIBED,
            job_id=job_id,
            timestamp=timestamp,
            data={
                "segment_key": segment_key,
                "method": method,
                "confidence": confidence,
                "word_count": word_count
            }
        )


@dataclass
class JobCompletedEvent(JobEvent):
    """Event fired when a job's result has been persisted."""
    def __init__(self, job_id: str, timestamp: float, result_id: str, overall_band: float):
        super().__init__(
            event_type=EventType.JOB_COMPLETED,
            job_id=job_id,
            timestamp=timestamp,
            data={"result_id": result_id, "overall_band": overall_band}
        )


@dataclass
class JobFailedEvent(JobEvent):
    """Event fired when a job fails, permanently or pending retry."""
    def __init__(self, job_id: str, timestamp: float, reason: str, message: str,
                 retry_count: int, permanent: bool):
        super().__init__(
            event_type=EventType.JOB_FAILED,
            job_id=job_id,
            timestamp=timestamp,
            data={
                "reason": reason,
                "message": message,
                "retry_count": retry_count,
                "permanent": permanent
            }
        )


@dataclass
class JobCancelledEvent(JobEvent):
    """Event fired when a job is cancelled or superseded."""
    def __init__(self, job_id: str, timestamp: float, reason: str, superseded_by: Optional[str] = None):
        super().__init__(
            event_type=EventType.JOB_CANCELLED,
            job_id=job_id,
            timestamp=timestamp,
            data={"reason": reason, "superseded_by": superseded_by}
        )


@dataclass
class ErrorOccurredEvent(JobEvent):
    """Event fired when an error occurs."""
    def __init__(self, job_id: str, timestamp: float, error_type: str,
                 error_message: str, component: str):
        super().__init__(
            event_type=EventType.ERROR_OCCURRED,
            job_id=job_id,
            timestamp=timestamp,
            data={
                "error_type": error_type,
                "error_message": error_message,
                "component": component
            }
        )


EventHandler = Callable[[JobEvent], None]


class JobEventBus:
    """Event bus for job status notifications. Safe to emit from worker threads."""

    def __init__(self):
        self._handlers: Dict[EventType, List[EventHandler]] = {}
        self._global_handlers: List[EventHandler] = []
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """
        Subscribe to specific event type.

        Args:
            event_type: Type of event to listen for
            handler: Function to call when event occurs
        """
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(f"Subscribed handler to {event_type}")

    def subscribe_all(self, handler: EventHandler) -> None:
        """
        Subscribe to all events.

        Args:
            handler: Function to call for any event
        """
        with self._lock:
            self._global_handlers.append(handler)
        logger.debug("Subscribed global handler")

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """
        Unsubscribe from specific event type.

        Args:
            event_type: Type of event to stop listening for
            handler: Handler function to remove
        """
        with self._lock:
            if event_type in self._handlers:
                try:
                    self._handlers[event_type].remove(handler)
                    logger.debug(f"Unsubscribed handler from {event_type}")
                except ValueError:
                    logger.warning(f"Handler not found for {event_type}")

    def emit(self, event: JobEvent) -> None:
        """
        Emit an event to all subscribers. A failing handler never breaks the job.

        Args:
            event: Event to emit
        """
        logger.debug(f"Emitting event: {event.event_type} for job {event.job_id}")
        with self._lock:
            specific = list(self._handlers.get(event.event_type, []))
            global_handlers = list(self._global_handlers)

        for handler in specific:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Error in event handler for {event.event_type}: {e}")

        for handler in global_handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Error in global event handler: {e}")

    def clear_handlers(self) -> None:
        """Clear all event handlers."""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()
        logger.debug("Cleared all event handlers")


class EventLogger:
    """Logs all events for debugging and analysis."""

    def __init__(self, log_level: int = logging.INFO):
        self.logger = logging.getLogger("event_logger")
        self.logger.setLevel(log_level)

    def handle_event(self, event: JobEvent) -> None:
        """Log event details."""
        self.logger.info(f"Event: {event.event_type.value} | Job: {event.job_id} | Data: {event.data}")


class PipelineMetrics:
    """Collects counters from job events."""

    def __init__(self):
        self._lock = threading.Lock()
        self.reset()

    def handle_event(self, event: JobEvent) -> None:
        """Update metrics based on event."""
        with self._lock:
            if event.event_type == EventType.JOB_SUBMITTED:
                self.jobs_submitted += 1
            elif event.event_type == EventType.JOB_COMPLETED:
                self.jobs_completed += 1
            elif event.event_type == EventType.JOB_FAILED:
                if event.data.get("permanent"):
                    self.jobs_failed += 1
                else:
                    self.retries_scheduled += 1
            elif event.event_type == EventType.JOB_CANCELLED:
                self.jobs_cancelled += 1
            elif event.event_type == EventType.SEGMENT_TRANSCRIBED:
                self.segments_transcribed += 1
                method = event.data.get("method")
                self.merge_methods[method] = self.merge_methods.get(method, 0) + 1
            elif event.event_type == EventType.ERROR_OCCURRED:
                self.errors_occurred += 1

    def get_metrics(self) -> Dict[str, Any]:
        """Get current metrics snapshot."""
        with self._lock:
            return {
                "jobs_submitted": self.jobs_submitted,
                "jobs_completed": self.jobs_completed,
                "jobs_failed": self.jobs_failed,
                "jobs_cancelled": self.jobs_cancelled,
                "retries_scheduled": self.retries_scheduled,
                "segments_transcribed": self.segments_transcribed,
                "merge_methods": dict(self.merge_methods),
                "errors_occurred": self.errors_occurred
            }

    def reset(self) -> None:
        """Reset all metrics to zero."""
        self.jobs_submitted = 0
        self.jobs_completed = 0
        self.jobs_failed = 0
        self.jobs_cancelled = 0
        self.retries_scheduled = 0
        self.segments_transcribed = 0
        self.merge_methods: Dict[str, int] = {}
        self.errors_occurred = 0
