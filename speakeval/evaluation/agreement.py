"""
Agreement between two candidate transcripts.
"""
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .hallucination import normalize_token
from ..config import COMPLETENESS_PROBE_WORDS, COMPLETENESS_MIN_OFFSET_CHARS


def comparable_words(text: str) -> List[str]:
    """Lowercased words with surrounding punctuation removed; empty tokens dropped."""
    return [w for w in (normalize_token(t) for t in (text or "").split()) if w]


def lcs_length(a: Sequence[str], b: Sequence[str]) -> int:
    """Longest common subsequence length, two-row dynamic programming."""
    if not a or not b:
        return 0
    if len(b) > len(a):
        a, b = b, a
    previous = [0] * (len(b) + 1)
    for item in a:
        current = [0] * (len(b) + 1)
        for j, other in enumerate(b, start=1):
            if item == other:
                current[j] = previous[j - 1] + 1
            else:
                current[j] = max(previous[j], current[j - 1])
        previous = current
    return previous[-1]


def agreement_score(text_a: str, text_b: str) -> float:
    """
    LCS over the two word sequences divided by the longer sequence's length.

    Two empty transcripts agree completely; one empty transcript agrees with nothing.
    """
    words_a = comparable_words(text_a)
    words_b = comparable_words(text_b)
    if not words_a and not words_b:
        return 1.0
    if not words_a or not words_b:
        return 0.0
    return lcs_length(words_a, words_b) / max(len(words_a), len(words_b))


@dataclass
class CompletenessCheck:
    more_complete: Optional[str] = None  # "a", "b" or None
    offset_chars: int = 0

    @property
    def decisive(self) -> bool:
        return self.more_complete is not None


def _probe_offset(probe_source: str, haystack: str, probe_words: int, min_offset_chars: int) -> int:
    words = comparable_words(probe_source)
    if len(words) < probe_words:
        return -1
    probe = " ".join(words[:probe_words])
    target = " ".join(comparable_words(haystack))
    offset = target.find(probe)
    return offset if offset >= min_offset_chars else -1


def completeness_offset(text_a: str, text_b: str,
                        probe_words: int = COMPLETENESS_PROBE_WORDS,
                        min_offset_chars: int = COMPLETENESS_MIN_OFFSET_CHARS) -> CompletenessCheck:
    """
    Detect a transcript that dropped its opening words.

    If A's first probe_words words appear inside B at a character offset of at least
    min_offset_chars, B carries speech before the point where A starts, so B is the
    more complete transcript, and vice versa. When both or neither hold the check is
    not decisive.
    """
    a_in_b = _probe_offset(text_a, text_b, probe_words, min_offset_chars)
    b_in_a = _probe_offset(text_b, text_a, probe_words, min_offset_chars)
    if a_in_b >= 0 and b_in_a < 0:
        return CompletenessCheck("b", a_in_b)
    if b_in_a >= 0 and a_in_b < 0:
        return CompletenessCheck("a", b_in_a)
    return CompletenessCheck()
