"""Scoring response normalization and validation."""
import pytest

from speakeval.errors import ValidationFailure
from speakeval.evaluation.schemas import (
    criterion_is_valid, match_model_answers, normalize_scoring_payload, snake_case,
    validate_scoring_payload,
)
from speakeval.evaluation.testing import scoring_response

from helpers import make_segment

SEGMENTS = [make_segment("part1-q1", "I work in a bank"), make_segment("part2-q1", "My favourite place")]


def test_snake_case():
    assert snake_case("fluencyCoherence") == "fluency_coherence"
    assert snake_case("Lexical Resource") == "lexical_resource"
    assert snake_case("grammatical-range") == "grammatical_range"


def test_well_formed_response_is_valid():
    payload = normalize_scoring_payload(scoring_response(segment_keys=["part1-q1", "part2-q1"]))
    assert set(payload.criteria) == {"fluency_coherence", "lexical_resource",
                                     "grammatical_range", "pronunciation"}
    assert validate_scoring_payload(payload, SEGMENTS) == []


def test_root_level_camel_case_criteria():
    raw = {
        "fluencyCoherence": {"score": "6.5", "feedback": "Mostly fluent"},
        "lexicalResource": 6,
        "grammaticalRange": {"band": 5.5, "weaknesses": "Tense errors"},
        "pronunciation": {"band": 7},
        "summary": "Solid answer",
        "modelAnswers": [{"segmentKey": "part1-q1", "modelAnswer": "I work as a teller."}],
        "partNotes": [{"part": 1, "note": "Good start"}, "Needs more detail"],
    }
    payload = normalize_scoring_payload(raw)
    assert payload.criteria["fluency_coherence"].band == 6.5
    assert payload.criteria["lexical_resource"].band == 6.0
    assert payload.criteria["grammatical_range"].weaknesses == ["Tense errors"]
    assert payload.summary == "Solid answer"
    assert payload.model_answers[0].segment_key == "part1-q1"
    assert payload.part_notes == {"1": "Good start", "2": "Needs more detail"}


def test_first_alias_wins():
    payload = normalize_scoring_payload({"criteria": {"fluency": {"band": 5}, "fluency_coherence": {"band": 8}}})
    assert payload.criteria["fluency_coherence"].band == 5.0


def test_non_object_response_is_rejected():
    with pytest.raises(ValidationFailure):
        normalize_scoring_payload(["not", "an", "object"])


def test_validation_issues():
    raw = scoring_response(segment_keys=["part1-q1"])
    del raw["criteria"]["grammatical_range"]
    raw["criteria"]["lexical_resource"]["band"] = 9.5
    raw["criteria"]["fluency_coherence"] = {"band": "n/a"}
    raw["criteria"]["pronunciation"] = {"band": 0}
    issues = validate_scoring_payload(normalize_scoring_payload(raw), SEGMENTS)
    assert issues == [
        "Criterion fluency_coherence has no numeric band",
        "Criterion lexical_resource band out of range: 9.5",
        "Missing criterion: grammatical_range",
        "Criterion pronunciation scored 0 with no supporting feedback",
        "Missing model answer for part2-q1",
    ]


def test_model_answers_match_by_position():
    raw = scoring_response()
    raw["model_answers"] = [
        {"part_number": "2", "question_number": 1, "model_answer": "A park near my home."},
        {"segment_key": "part1-q1", "model_answer": "   "},
    ]
    matched = match_model_answers(normalize_scoring_payload(raw), SEGMENTS)
    assert list(matched) == ["part2-q1"]


def test_criterion_is_valid():
    payload = normalize_scoring_payload({"criteria": {
        "fluency": {"band": 0, "feedback": "No relevant speech"},
        "lexical": {"band": 0},
    }})
    assert criterion_is_valid(payload.criteria["fluency_coherence"])
    assert not criterion_is_valid(payload.criteria["lexical_resource"])
    assert not criterion_is_valid(None)
