"""
Band arithmetic shared by the calibrator and the result model.
"""
import math
from typing import Iterable

from ..config import BAND_MIN, BAND_MAX


def clamp_band(value: float, low: float = BAND_MIN, high: float = BAND_MAX) -> float:
    return max(low, min(high, float(value)))


def round_band(value: float) -> float:
    """
    Round onto the half-band grid.

    Fractional part < 0.25 rounds down to the whole band, 0.25 up to 0.75 rounds
    to the half band, and 0.75 or more rounds up to the next whole band. The
    result is clamped to the valid range.
    """
    value = clamp_band(value)
    whole = math.floor(value)
    # round away float noise such as 6.2499999 from averaging
    fraction = round(value - whole, 6)
    if fraction < 0.25:
        rounded = float(whole)
    elif fraction < 0.75:
        rounded = whole + 0.5
    else:
        rounded = whole + 1.0
    return clamp_band(rounded)


def round_to_half(value: float) -> float:
    """Nearest 0.5 step, halves rounding up."""
    return math.floor(value * 2 + 0.5) / 2


def overall_band(bands: Iterable[float]) -> float:
    """Arithmetic mean of criterion bands, rounded with round_band."""
    values = [clamp_band(b) for b in bands]
    if not values:
        return BAND_MIN
    return round_band(sum(values) / len(values))
