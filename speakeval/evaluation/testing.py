"""
Testing infrastructure with mock engines and scoring clients for the evaluation pipeline.
"""
import threading
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np

from .calibrator import ScoreCalibrator
from .events import JobEventBus
from .models import CRITERIA
from .orchestrator import JobOrchestrator, OrchestratorSettings
from .reconciler import ReconcilerSettings, TranscriptionReconciler
from ..infrastructure.audio.processing import encode_wav
from ..infrastructure.audio.speech import RecognitionResult, SegmentTiming, SpeechEngine, WordTiming
from ..infrastructure.data import InMemoryJobStore
from ..infrastructure.quota import Capability, Credential, QuotaPool
from ..infrastructure.storage import InMemoryBlobStorage

Scripted = Union[RecognitionResult, Exception, str]


def make_recognition(text: str,
                     engine: str = "mock",
                     word_seconds: float = 0.4,
                     gap_after: Optional[Mapping[int, float]] = None,
                     confidence: Optional[float] = 0.9,
                     avg_logprob: float = -0.2) -> RecognitionResult:
    """
    Build a RecognitionResult with evenly spaced word timings.

    Args:
        text: Transcript text
        engine: Engine name stamped on the result
        word_seconds: Duration of each word
        gap_after: Extra silence inserted after the word at each index
        confidence: Per-word confidence (None to omit)
        avg_logprob: Segment average log probability
    """
    gap_after = dict(gap_after or {})
    words = []
    t = 0.0
    for idx, token in enumerate(text.split()):
        words.append(WordTiming(token, round(t, 3), round(t + word_seconds, 3), confidence))
        t += word_seconds + gap_after.get(idx, 0.0)
    segments = [SegmentTiming(0.0, round(t, 3), text, avg_logprob=avg_logprob, no_speech_prob=0.01)] \
        if text.strip() else []
    return RecognitionResult(engine=engine, text=text, segments=segments, words=words,
                             duration_seconds=round(t, 3))


def make_speech_wav(speech_seconds: float = 2.0,
                    leading_silence: float = 0.0,
                    trailing_silence: float = 0.0,
                    sr: int = 16000,
                    amplitude: float = 0.3,
                    frequency: float = 220.0) -> bytes:
    """16-bit mono WAV: silence, a steady tone standing in for speech, silence."""
    t = np.arange(int(speech_seconds * sr)) / sr
    tone = amplitude * np.sin(2 * np.pi * frequency * t)
    samples = np.concatenate([
        np.zeros(int(leading_silence * sr)),
        tone,
        np.zeros(int(trailing_silence * sr)),
    ]).astype(np.float32)
    return encode_wav(samples, sr)


class MockSpeechEngine(SpeechEngine):
    """Speech engine returning scripted results, per segment audio or in call order."""

    def __init__(self, name: str, responses: Optional[Sequence[Scripted]] = None,
                 default: Scripted = ""):
        super().__init__(name)
        self.responses = list(responses or [])
        self.default = default
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def transcribe(self, audio: bytes, credential: Credential,
                   language_hint: str = "en") -> RecognitionResult:
        with self._lock:
            self.calls.append({"credential_id": credential.credential_id, "bytes": len(audio),
                               "language_hint": language_hint})
            scripted = self.responses.pop(0) if self.responses else self.default
        if isinstance(scripted, Exception):
            raise scripted
        if isinstance(scripted, RecognitionResult):
            return scripted
        return make_recognition(scripted, engine=self.name)

    @property
    def credentials_used(self) -> List[str]:
        return [call["credential_id"] for call in self.calls]


def scoring_response(bands: Optional[Mapping[str, float]] = None,
                     segment_keys: Sequence[str] = (),
                     **extra) -> Dict[str, Any]:
    """A well-formed scoring response for the given criterion bands and segments."""
    bands = dict(bands or {})
    response = {
        "criteria": {
            name: {
                "band": bands.get(name, 6.0),
                "feedback": f"Mock feedback for {name}",
                "strengths": ["Clear structure"],
                "weaknesses": ["Limited range"],
                "suggestions": ["Practise linking words"],
            }
            for name in CRITERIA
        },
        "summary": "Mock summary",
        "examiner_notes": "Mock examiner notes",
        "model_answers": [
            {"segment_key": key, "model_answer": f"Model answer for {key}",
             "why_it_works": ["Direct"], "key_improvements": ["Extend the answer"]}
            for key in segment_keys
        ],
        "improvement_priorities": ["Fluency"],
        "strengths_to_maintain": ["Confidence"],
    }
    response.update(extra)
    return response


class MockScoringClient:
    """Mock scoring client for testing."""

    def __init__(self, responses: Optional[Sequence[Union[Dict[str, Any], Exception]]] = None,
                 default: Optional[Dict[str, Any]] = None, model: str = "mock-scoring"):
        self.responses = list(responses or [])
        self.default = default
        self.model = model
        self.request_history: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def generate_json(self, prompt: str, credential: Optional[Credential] = None, **kwargs) -> Dict[str, Any]:
        """Return the next scripted response."""
        with self._lock:
            self.request_history.append({
                "prompt": prompt,
                "credential_id": credential.credential_id if credential else None,
                "kwargs": kwargs,
            })
            scripted = self.responses.pop(0) if self.responses else self.default
        if isinstance(scripted, Exception):
            raise scripted
        if scripted is None:
            return scoring_response()
        return scripted


def create_mock_pool(asr_credentials: int = 2, scoring_credentials: int = 1,
                     clock=None) -> QuotaPool:
    pool = QuotaPool(clock=clock) if clock else QuotaPool()
    for idx in range(1, asr_credentials + 1):
        pool.add_credential(Credential(f"asr-{idx}", f"asr-secret-{idx}",
                                       frozenset({Capability.SPEECH_TO_TEXT})))
    for idx in range(1, scoring_credentials + 1):
        pool.add_credential(Credential(f"scoring-{idx}", f"scoring-secret-{idx}",
                                       frozenset({Capability.SCORING})))
    return pool


def create_mock_pipeline(engine_a: Optional[SpeechEngine] = None,
                         engine_b: Optional[SpeechEngine] = None,
                         scoring_client: Optional[MockScoringClient] = None,
                         storage: Optional[InMemoryBlobStorage] = None,
                         pool: Optional[QuotaPool] = None,
                         settings: Optional[OrchestratorSettings] = None,
                         clock=None) -> JobOrchestrator:
    """
    Create a fully wired orchestrator with in-memory storage and mock providers.

    Example:
        orchestrator = create_mock_pipeline()
        orchestrator.storage.put("uploads/a.wav", make_speech_wav())
        job_id = orchestrator.submit("test-1", "user-1", {"part1-q1": "uploads/a.wav"})
        orchestrator.advance(job_id)
    """
    clock_kwargs = {"clock": clock} if clock else {}
    pool = pool or create_mock_pool(clock=clock)
    storage = storage or InMemoryBlobStorage()
    reconciler = TranscriptionReconciler(
        engine_a or MockSpeechEngine("engine-a", default="I usually go to work by bus every morning"),
        engine_b or MockSpeechEngine("engine-b", default="I usually go to work by bus every morning"),
        pool,
        settings=ReconcilerSettings(inter_call_delay_seconds=0.0, credential_wait_seconds=5.0),
        sleep=lambda _: None,
    )
    calibrator = ScoreCalibrator(scoring_client or MockScoringClient(), pool)
    return JobOrchestrator(
        job_store=InMemoryJobStore(**clock_kwargs),
        storage=storage,
        quota_pool=pool,
        reconciler=reconciler,
        calibrator=calibrator,
        event_bus=JobEventBus(),
        settings=settings or OrchestratorSettings(heartbeat_interval_seconds=0.05),
        **clock_kwargs,
    )
