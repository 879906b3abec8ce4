"""Agreement score and completeness offset."""
import pytest

from speakeval.evaluation.agreement import agreement_score, completeness_offset, lcs_length


def test_identical_transcripts_agree():
    assert agreement_score("The cat sat.", "the cat sat") == 1.0


def test_both_empty_agree_one_empty_does_not():
    assert agreement_score("", "") == 1.0
    assert agreement_score("", "hello there") == 0.0


def test_partial_agreement_uses_longer_length():
    a = "I like to play football on weekends"
    b = "I like playing football on weekends"
    # lcs: i like football on weekends = 5 of 7
    assert agreement_score(a, b) == pytest.approx(5 / 7)


def test_one_word_difference():
    a = "my favourite food is rice with fish"
    b = "my favourite food is rice and fish"
    assert agreement_score(a, b) == pytest.approx(6 / 7)


def test_lcs_length():
    assert lcs_length(list("abcde"), list("ace")) == 3
    assert lcs_length([], ["a"]) == 0


def test_completeness_offset_prefers_transcript_with_opening():
    full = "Well I think that my hometown is very beautiful"
    clipped = "my hometown is very beautiful"
    check = completeness_offset(clipped, full)
    assert check.decisive
    assert check.more_complete == "b"
    assert check.offset_chars >= 8

    reverse = completeness_offset(full, clipped)
    assert reverse.more_complete == "a"


def test_completeness_not_decisive_for_same_start():
    check = completeness_offset("I live in London now", "I live in London")
    assert not check.decisive


def test_completeness_needs_enough_probe_words():
    assert not completeness_offset("hello", "well hello there friend").decisive
