"""
Rule tables for ASR hallucination detection and transcript cleanup.

The tables are plain data so they can be extended or replaced without touching
the cleaning or merge logic. Each compiled rule has a name that shows up in
diagnostics when it fires.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Pattern, Sequence, Tuple


@dataclass(frozen=True)
class PatternRule:
    """A named regex plus what to replace matches with while cleaning."""
    name: str
    pattern: Pattern
    replacement: str = ""

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None

    def apply(self, text: str) -> str:
        return self.pattern.sub(self.replacement, text)


def _rule(name: str, regex: str, replacement: str = "", flags: int = re.IGNORECASE) -> PatternRule:
    return PatternRule(name, re.compile(regex, flags), replacement)


STRIP_START = [
    _rule("intro_speaking_test", r"^\s*(ielts\s+)?speaking\s+test\.?\s*(interview)?\.?\s*"),
    _rule("intro_welcome", r"^\s*welcome\s+to\s+(the\s+)?(ielts\s+)?speaking\s+test\.?\s*"),
    _rule("intro_this_is", r"^\s*this\s+is\s+(an?\s+)?ielts\s+speaking\.?\s*"),
    _rule("intro_okay_so", r"^\s*okay\.?\s+so\.?\s*"),
]

STRIP_END = [
    _rule("outro_thank_you", r"\s*thank\s*you\.?\s*$"),
    _rule("outro_thanks", r"\s*thanks\.?\s*$"),
    _rule("outro_bye", r"\s*(good)?bye\.?\s*$"),
    _rule("outro_ellipsis", r"\s*\.{3,}\s*$"),
]

GARBAGE = [
    _rule("repeated_punctuation", r"[,.\"'\s]{5,}", " "),
    _rule("many_ellipses", r"\.{4,}", "..."),
    _rule("placeholder", r"(?<!\w)(XXX+|___+|\*\*\*+)(?!\w)", "[unclear]"),
    _rule("sound_description", r"\[(music|applause|laughter|silence|inaudible|crosstalk)\]"),
]


def _script_class(*ranges: Tuple[int, int]) -> str:
    """Regex character class covering the given code point ranges."""
    return "[" + "".join(f"{chr(lo)}-{chr(hi)}" for lo, hi in ranges) + "]"


_CJK = _script_class((0x4E00, 0x9FFF), (0x3400, 0x4DBF), (0xAC00, 0xD7AF), (0x3040, 0x309F), (0x30A0, 0x30FF))
_ARABIC = _script_class((0x0600, 0x06FF), (0x0750, 0x077F))
_CYRILLIC = _script_class((0x0400, 0x04FF))
_HEBREW = _script_class((0x0590, 0x05FF))
_THAI = _script_class((0x0E00, 0x0E7F))
_DEVANAGARI = _script_class((0x0900, 0x097F))

FOREIGN_SCRIPTS = [
    _rule(f"script_{name}", rf"{cls}+(\s+{cls}+)*")
    for name, cls in (("cjk", _CJK), ("arabic", _ARABIC), ("cyrillic", _CYRILLIC),
                      ("hebrew", _HEBREW), ("thai", _THAI), ("devanagari", _DEVANAGARI))
]

ARTIFACTS = [
    _rule("youtube_ending", r"\b(thank\s*you\s*(for\s*)?(watching|listening|viewing)|please\s*(like|subscribe|share)"
                            r"|don'?t\s*forget\s*to\s*subscribe)\b[.!]?"),
    _rule("podcast_artifact", r"\b(this\s*episode|brought\s*to\s*you\s*by|sponsored\s*by|our\s*sponsor)\b"),
    _rule("subtitle_artifact", r"\b(subtitles?\s*by|captions?\s*by|transcribed?\s*by)\b[^.]*\.?"),
]

FOREIGN_WORDS: Dict[str, FrozenSet[str]] = {
    "german": frozenset("wieder und oder nicht aber danke bitte ja nein gut sehr ich sie wir das ist "
                        "haben werden kann muss soll".split()),
    "spanish": frozenset("hablando como pero para gracias bueno entonces porque tambien esta este una "
                         "los las del por con sin sobre".split()),
    "french": frozenset("merci bonjour alors peut tres bien donc mais avec pour dans cette sont nous "
                        "vous leur faire etre".split()),
    "portuguese": frozenset("obrigado muito entao porque ainda agora mais isso esse esta voce nao sim "
                            "com por para".split()),
    "italian": frozenset("grazie molto allora perche ancora adesso questo quello sono siamo hanno fare "
                         "essere potere".split()),
    "dutch": frozenset("bedankt heel omdat nog steeds dit dat zijn hebben worden kunnen moeten "
                       "zullen".split()),
}

FILLER_WORDS: Tuple[str, ...] = ("um", "uh", "er", "ah", "like", "you know", "i mean")

_TOKEN_STRIP = re.compile(r"^[^\w']+|[^\w']+$")


def normalize_token(token: str) -> str:
    """Lowercase a token and strip surrounding punctuation."""
    return _TOKEN_STRIP.sub("", token.lower())


@dataclass
class RuleTables:
    """Everything the cleaner and the hallucination detector consult."""
    strip_start: List[PatternRule] = field(default_factory=lambda: list(STRIP_START))
    strip_end: List[PatternRule] = field(default_factory=lambda: list(STRIP_END))
    garbage: List[PatternRule] = field(default_factory=lambda: list(GARBAGE))
    foreign_scripts: List[PatternRule] = field(default_factory=lambda: list(FOREIGN_SCRIPTS))
    artifacts: List[PatternRule] = field(default_factory=lambda: list(ARTIFACTS))
    foreign_words: Dict[str, FrozenSet[str]] = field(default_factory=lambda: dict(FOREIGN_WORDS))
    filler_words: Sequence[str] = FILLER_WORDS
    # a run of this many consecutive foreign function words is treated as hallucinated
    foreign_run_min: int = 3
    word_repeat_min: int = 3
    phrase_repeat_min: int = 2
    max_phrase_words: int = 6

    def foreign_runs(self, words: Sequence[str]) -> List[Tuple[int, int, str]]:
        """
        Spans (start, end, language) of consecutive foreign function words.

        A word only counts toward a run for a language whose list contains it;
        runs shorter than foreign_run_min are ignored.
        """
        runs: List[Tuple[int, int, str]] = []
        for language, vocabulary in self.foreign_words.items():
            start = None
            for idx, word in enumerate(list(words) + [""]):
                if normalize_token(word) in vocabulary:
                    if start is None:
                        start = idx
                    continue
                if start is not None and idx - start >= self.foreign_run_min:
                    runs.append((start, idx, language))
                start = None
        return sorted(runs)

    def detect(self, text: str) -> List[str]:
        """Names of every hallucination marker found in the text."""
        found = [rule.name for rule in self.garbage + self.foreign_scripts + self.artifacts
                 if rule.matches(text)]
        found.extend(f"foreign_words_{language}" for _, _, language in self.foreign_runs(text.split()))
        return found

    def find_fillers(self, text: str) -> List[str]:
        """Filler words in order of appearance. Multi-word fillers are matched as phrases."""
        tokens = [normalize_token(t) for t in text.split()]
        tokens = [t for t in tokens if t]
        phrases = sorted((f.split() for f in self.filler_words), key=len, reverse=True)
        found: List[str] = []
        i = 0
        while i < len(tokens):
            for phrase in phrases:
                if tokens[i:i + len(phrase)] == phrase:
                    found.append(" ".join(phrase))
                    i += len(phrase)
                    break
            else:
                i += 1
        return found


DEFAULT_RULES = RuleTables()
