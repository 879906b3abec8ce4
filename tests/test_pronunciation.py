"""Pronunciation pre-estimate."""
import pytest

from speakeval.evaluation.pronunciation import PronunciationEstimator

from helpers import make_segment


@pytest.fixture
def estimator():
    return PronunciationEstimator()


def test_confident_speech_reaches_ceiling(estimator):
    estimate = estimator.estimate([make_segment("part1-q1", "words " * 60, duration=30.0)])
    assert estimate.band == 7.0
    assert estimate.confidence_tier == "medium"
    assert not estimate.insufficient_evidence
    assert estimate.composite == pytest.approx(0.905)


def test_too_few_words_forces_floor(estimator):
    estimate = estimator.estimate([make_segment("part1-q1", "just a short answer", duration=5.0,
                                                word_count=20)])
    assert estimate.band == 3.0
    assert estimate.confidence_tier == "low"
    assert estimate.insufficient_evidence
    assert estimate.evidence[-1].startswith("Insufficient evidence (20 words")


def test_slow_speech_forces_floor(estimator):
    estimate = estimator.estimate([make_segment("part2-q1", "answer", duration=180.0, word_count=40)])
    assert estimate.insufficient_evidence
    assert estimate.band == 3.0


def test_high_tier_needs_many_confident_words(estimator):
    estimate = estimator.estimate([
        make_segment("part2-q1", "long answer", duration=90.0, word_count=150),
        make_segment("part3-q1", "more answer", duration=60.0, word_count=100),
    ])
    assert estimate.confidence_tier == "high"
    assert estimate.total_words == 250


def test_weak_signals_lower_the_band(estimator):
    strong = estimator.estimate([make_segment("part1-q1", "x", duration=30.0, word_count=60)])
    weak = estimator.estimate([make_segment("part1-q1", "x", duration=30.0, word_count=40,
                                            confidence=0.2, logprob=-0.9,
                                            fillers=["um"] * 10, pauses=5)])
    assert 3.0 <= weak.band < strong.band
    assert weak.confidence_tier == "low"
    assert weak.pause_penalty == pytest.approx(0.15)
    assert weak.fluency_penalty == pytest.approx(0.225)


def test_empty_segments_do_not_count(estimator):
    estimate = estimator.estimate([
        make_segment("part1-q1", "", duration=10.0, word_count=0),
        make_segment("part1-q2", "", duration=10.0, word_count=0),
    ])
    assert estimate.total_words == 0
    assert estimate.band == 3.0
