"""Band rounding and overall band arithmetic."""
import random

import pytest

from speakeval.evaluation.bands import clamp_band, overall_band, round_band, round_to_half


@pytest.mark.parametrize("value, expected", [
    (6.0, 6.0),
    (6.125, 6.0),
    (6.24, 6.0),
    (6.25, 6.5),
    (6.5, 6.5),
    (6.74, 6.5),
    (6.75, 7.0),
    (6.9, 7.0),
    (-1.0, 0.0),
    (9.7, 9.0),
])
def test_round_band(value, expected):
    assert round_band(value) == expected


def test_overall_band_is_rounded_mean():
    assert overall_band([6.0, 6.0, 6.5, 6.5]) == 6.5   # mean 6.25
    assert overall_band([6.0, 6.0, 6.0, 6.5]) == 6.0   # mean 6.125
    assert overall_band([7.0, 7.0, 7.0, 6.0]) == 7.0   # mean 6.75


def test_overall_band_empty_is_minimum():
    assert overall_band([]) == 0.0


def test_round_to_half_rounds_halves_up():
    assert round_to_half(5.25) == 5.5
    assert round_to_half(5.24) == 5.0
    assert round_to_half(5.75) == 6.0


def test_clamp_band():
    assert clamp_band(10) == 9.0
    assert clamp_band(-3) == 0.0
    assert clamp_band(4.5) == 4.5


def test_random_band_quadruples_stay_on_grid():
    rng = random.Random(1234)
    for _ in range(500):
        bands = [rng.choice([x / 2 for x in range(0, 19)]) for _ in range(4)]
        result = overall_band(bands)
        mean = sum(bands) / 4
        assert result * 2 == int(result * 2)
        assert 0.0 <= result <= 9.0
        assert abs(result - mean) <= 0.25 + 1e-9
