"""Shared fixtures for the evaluation pipeline tests."""
import threading

import pytest

from speakeval.evaluation.testing import (
    MockScoringClient, MockSpeechEngine, create_mock_pipeline, create_mock_pool, make_speech_wav,
)
from speakeval.infrastructure.storage import InMemoryBlobStorage


class FakeClock:
    """Manually advanced clock shared by the pool, the store and the orchestrator."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pool(clock):
    return create_mock_pool(clock=clock)


@pytest.fixture
def storage():
    return InMemoryBlobStorage()


@pytest.fixture
def speech_wav():
    return make_speech_wav(speech_seconds=2.0, leading_silence=0.5)


@pytest.fixture
def pipeline_factory(clock, storage):
    """Build a mock orchestrator; scripted engines and scoring responses are optional."""
    def build(engine_a=None, engine_b=None, scoring_client=None, **kwargs):
        return create_mock_pipeline(
            engine_a=engine_a or MockSpeechEngine("engine-a", default=ANSWER),
            engine_b=engine_b or MockSpeechEngine("engine-b", default=ANSWER),
            scoring_client=scoring_client or MockScoringClient(),
            storage=storage,
            clock=clock,
            **kwargs,
        )
    return build


ANSWER = ("I usually go to work by bus every morning because it is cheaper than driving "
          "and I can read a book on the way")
