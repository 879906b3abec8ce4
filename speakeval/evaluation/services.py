"""
Service classes for the evaluation pipeline: audio preparation and result persistence.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .models import EvaluationResult
from .segments import AudioSegment
from ..infrastructure.audio.processing import SilenceTrimmer, wav_duration_seconds
from ..infrastructure.storage import BlobStorage

logger = logging.getLogger("services")


@dataclass
class PreparedAudio:
    """Trimmed audio for one segment, ready for transcription."""
    segment_key: str
    audio: bytes
    duration_seconds: float
    processed_reference: Optional[str] = None
    trim_stats: Dict[str, Any] = field(default_factory=dict)


class AudioPreparationService:
    """Downloads a segment's recording and trims leading (and optionally trailing) silence."""

    def __init__(self, storage: BlobStorage, trimmer: Optional[SilenceTrimmer] = None,
                 processed_prefix: str = "processed"):
        self.storage = storage
        self.trimmer = trimmer or SilenceTrimmer()
        self.processed_prefix = processed_prefix

    def processed_reference(self, job_id: str, segment_key: str) -> str:
        return f"{self.processed_prefix}/{job_id}/{segment_key}.wav"

    def prepare(self, job_id: str, segment: AudioSegment) -> PreparedAudio:
        """
        Fetch and trim one segment.

        Args:
            job_id: Owning job, used to name the processed blob
            segment: Segment to prepare

        Returns:
            PreparedAudio with the audio to transcribe

        Raises:
            StorageError: The recording could not be read or the trimmed copy written
        """
        raw = self.storage.get(segment.reference)
        result = self.trimmer.trim(raw)
        if result.error:
            logger.warning("Segment %s: trimming skipped (%s)", segment.segment_key, result.error)

        reference = None
        if result.was_trimmed:
            reference = self.storage.put(self.processed_reference(job_id, segment.segment_key), result.audio)
            logger.info("Segment %s: trimmed %dms leading / %dms trailing", segment.segment_key,
                        result.leading_ms_trimmed, result.trailing_ms_trimmed)

        duration = result.duration_seconds or wav_duration_seconds(result.audio)
        return PreparedAudio(
            segment_key=segment.segment_key,
            audio=result.audio,
            duration_seconds=duration,
            processed_reference=reference,
            trim_stats=result.stats(),
        )

    def load_prepared(self, segment: AudioSegment, marker: Dict[str, Any]) -> PreparedAudio:
        """Reload a segment prepared on an earlier attempt from its preprocessing marker."""
        reference = marker.get("processed_reference") or segment.reference
        audio = self.storage.get(reference)
        duration = marker.get("duration_seconds") or wav_duration_seconds(audio)
        return PreparedAudio(segment.segment_key, audio, duration, marker.get("processed_reference"),
                             dict(marker.get("trim_stats") or {}))


class ResultPersistenceService:
    """Writes evaluation results as JSON blobs."""

    def __init__(self, storage: BlobStorage, prefix: str = "results"):
        self.storage = storage
        self.prefix = prefix

    def reference_for(self, job_id: str) -> str:
        return f"{self.prefix}/{job_id}.json"

    def save(self, job_id: str, result: EvaluationResult) -> str:
        """Persist a result and return its id (the blob reference)."""
        payload = json.dumps(result.to_dict(), ensure_ascii=False, indent=2).encode("utf-8")
        reference = self.storage.put(self.reference_for(job_id), payload)
        logger.info("Saved result for job %s to %s", job_id, reference)
        return reference

    def load(self, result_id: str) -> EvaluationResult:
        return EvaluationResult.from_dict(json.loads(self.storage.get(result_id).decode("utf-8")))

    def discard(self, result_id: str) -> bool:
        deleted = self.storage.delete(result_id)
        logger.info("Discarded result %s", result_id)
        return deleted
