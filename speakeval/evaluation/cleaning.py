"""
Transcript cleaning: boilerplate, artifacts, foreign-script runs, repetition.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from .hallucination import DEFAULT_RULES, RuleTables, normalize_token
from ..config import DUPLICATION_MIN_WORDS

logger = logging.getLogger("transcript_cleaning")

_WHITESPACE = re.compile(r"\s+")
_SPACE_BEFORE_PUNCT = re.compile(r"\s+([,.!?;:])")


@dataclass
class CleanedTranscript:
    """Cleaned text plus the names of the rules that changed it."""
    text: str
    raw_text: str
    applied: List[str] = field(default_factory=list)

    @property
    def words(self) -> List[str]:
        return self.text.split()

    @property
    def word_count(self) -> int:
        return len(self.words)


def _has_half_duplication(words: List[str]) -> bool:
    """Second half largely repeats the first half, or the opening quarter recurs."""
    significant = [normalize_token(w) for w in words]
    significant = [w for w in significant if len(w) > 1]
    if len(significant) < DUPLICATION_MIN_WORDS:
        return False

    half = len(significant) // 2
    first_half = set(significant[:half])
    overlap = sum(1 for w in significant[half:] if w in first_half) / half

    quarter = len(significant) // 4
    if quarter >= 4:
        opening = " ".join(significant[:quarter])
        if opening in " ".join(significant[quarter:]):
            return True
    return overlap > 0.65


def remove_duplication(text: str, min_words: int = DUPLICATION_MIN_WORDS) -> str:
    """
    Drop a duplicated second copy of the transcript.

    Engines occasionally emit the whole answer twice. For transcripts of at least
    min_words words, look for a split point between 40% and 50% of the words where
    the opening five words reappear later, and keep only the text before it.
    """
    words = text.split()
    if len(words) < min_words:
        return text

    lowered = [normalize_token(w) for w in words]
    half = len(words) // 2
    opening = " ".join(lowered[:5])
    for split_point in range(half, int(len(words) * 0.4) - 1, -1):
        remainder = " ".join(lowered[split_point:])
        if opening and opening in remainder:
            logger.debug("Removed duplicated transcript tail at word %d", split_point)
            return " ".join(words[:split_point])

    if _has_half_duplication(words):
        return " ".join(words[:half])
    return text


def collapse_repetition(text: str, rules: RuleTables = DEFAULT_RULES) -> str:
    """
    Collapse immediate repetition: a single word repeated word_repeat_min or more
    times in a row, or a phrase of 2..max_phrase_words words repeated
    phrase_repeat_min or more times in a row, is kept once.
    """
    words = text.split()
    if len(words) < 2:
        return text
    keys = [normalize_token(w) for w in words]

    out: List[str] = []
    out_keys: List[str] = []
    i = 0
    while i < len(words):
        collapsed = False
        for size in range(min(rules.max_phrase_words, (len(words) - i) // 2), 0, -1):
            needed = rules.word_repeat_min if size == 1 else rules.phrase_repeat_min
            unit = keys[i:i + size]
            if not any(unit):
                continue
            repeats = 1
            while keys[i + repeats * size:i + (repeats + 1) * size] == unit:
                repeats += 1
            if repeats >= needed:
                out.extend(words[i:i + size])
                out_keys.extend(unit)
                i += repeats * size
                collapsed = True
                break
        if not collapsed:
            out.append(words[i])
            out_keys.append(keys[i])
            i += 1
    return " ".join(out)


def count_immediate_repeats(text: str) -> int:
    """Adjacent repeated words plus adjacent repeated two-word phrases."""
    keys = [k for k in (normalize_token(w) for w in text.split()) if k]
    word_repeats = sum(1 for a, b in zip(keys, keys[1:]) if a == b)
    bigrams = list(zip(keys, keys[1:]))
    phrase_repeats = sum(1 for i in range(len(bigrams) - 2) if bigrams[i] == bigrams[i + 2])
    return word_repeats + phrase_repeats


def _strip_foreign_word_runs(text: str, rules: RuleTables) -> str:
    words = text.split()
    runs = rules.foreign_runs(words)
    if not runs:
        return text
    drop = set()
    for start, end, _ in runs:
        drop.update(range(start, end))
    return " ".join(w for i, w in enumerate(words) if i not in drop)


class TranscriptCleaner:
    """Applies the rule tables to raw engine output, in a fixed order."""

    def __init__(self, rules: Optional[RuleTables] = None):
        self.rules = rules or DEFAULT_RULES

    def clean(self, text: Optional[str]) -> CleanedTranscript:
        raw = text or ""
        cleaned = raw.strip()
        applied: List[str] = []

        def run(rule_list):
            nonlocal cleaned
            for rule in rule_list:
                updated = rule.apply(cleaned)
                if updated != cleaned:
                    applied.append(rule.name)
                    cleaned = updated

        run(self.rules.strip_start)
        run(self.rules.strip_end)
        run(self.rules.garbage)
        run(self.rules.foreign_scripts)
        run(self.rules.artifacts)

        without_foreign = _strip_foreign_word_runs(cleaned, self.rules)
        if without_foreign != cleaned:
            applied.append("foreign_word_run")
            cleaned = without_foreign

        deduplicated = remove_duplication(cleaned)
        if deduplicated != cleaned:
            applied.append("duplicated_transcript")
            cleaned = deduplicated

        collapsed = collapse_repetition(cleaned, self.rules)
        if collapsed != cleaned:
            applied.append("immediate_repetition")
            cleaned = collapsed

        cleaned = _WHITESPACE.sub(" ", cleaned).strip()
        cleaned = _SPACE_BEFORE_PUNCT.sub(r"\1", cleaned)
        return CleanedTranscript(text=cleaned, raw_text=raw, applied=applied)
