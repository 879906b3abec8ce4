"""
Segment keys identify one recorded answer: part number, question number and
question id, e.g. ``part2-q3f1c2e7a-...`` or ``1-4``.
"""
import re
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Tuple

_PART = re.compile(r"part(\d+)", re.IGNORECASE)
_LEADING_PART = re.compile(r"^(\d+)-")
_QUESTION_ID = re.compile(r"q([0-9a-f][0-9a-f\-]{7,})", re.IGNORECASE)
_QUESTION_NUMBER = re.compile(r"q(\d+)\b", re.IGNORECASE)
_TRAILING_NUMBER = re.compile(r"-(\d+)$")


def parse_segment_key(key: str) -> Tuple[int, int, Optional[str]]:
    """
    Split a segment key into (part number, question number, question id).

    Part defaults to 1 and question number to 1 when the key does not carry them.
    """
    part_match = _PART.search(key) or _LEADING_PART.search(key)
    part = int(part_match.group(1)) if part_match else 1

    id_match = _QUESTION_ID.search(key)
    question_id = id_match.group(1).lower() if id_match and not id_match.group(1).isdigit() else None

    number_match = _QUESTION_NUMBER.search(key) or _TRAILING_NUMBER.search(key)
    question_number = int(number_match.group(1)) if number_match else 1
    return part, question_number, question_id


@dataclass(frozen=True)
class AudioSegment:
    """One recorded answer owned by a job."""
    segment_key: str
    reference: str
    duration_seconds: Optional[float] = None

    @property
    def part_number(self) -> int:
        return parse_segment_key(self.segment_key)[0]

    @property
    def question_number(self) -> int:
        return parse_segment_key(self.segment_key)[1]

    @property
    def question_id(self) -> Optional[str]:
        return parse_segment_key(self.segment_key)[2]

    @property
    def sort_key(self) -> Tuple[int, int, str]:
        part, number, _ = parse_segment_key(self.segment_key)
        return part, number, self.segment_key


def segment_sort_key(key: str) -> Tuple[int, int, str]:
    part, number, _ = parse_segment_key(key)
    return part, number, key


def ordered_segments(file_paths: Mapping[str, str]) -> List[AudioSegment]:
    """Segments in stable (part, question, key) order."""
    segments = [AudioSegment(key, ref) for key, ref in file_paths.items()]
    return sorted(segments, key=lambda s: s.sort_key)


def ordered_keys(keys: Iterable[str]) -> List[str]:
    return sorted(keys, key=segment_sort_key)
