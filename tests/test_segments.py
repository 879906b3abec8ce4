"""Segment key parsing and ordering."""
from speakeval.evaluation.segments import AudioSegment, ordered_keys, ordered_segments, parse_segment_key


def test_parse_part_and_question():
    assert parse_segment_key("part2-q3") == (2, 3, None)


def test_parse_leading_part_and_trailing_number():
    assert parse_segment_key("3-4") == (3, 4, None)


def test_parse_question_id():
    part, number, question_id = parse_segment_key("part1-q5f1c2e7a-9b0d")
    assert part == 1
    assert number == 1
    assert question_id == "5f1c2e7a-9b0d"


def test_defaults_when_key_has_no_numbers():
    assert parse_segment_key("intro") == (1, 1, None)


def test_ordered_segments_sort_by_part_then_question():
    segments = ordered_segments({
        "part2-q1": "b", "part1-q10": "c", "part1-q2": "a", "part3-q1": "d",
    })
    assert [s.segment_key for s in segments] == ["part1-q2", "part1-q10", "part2-q1", "part3-q1"]
    assert segments[0] == AudioSegment("part1-q2", "a")


def test_ordered_keys():
    assert ordered_keys(["part1-q3", "part1-q1"]) == ["part1-q1", "part1-q3"]
