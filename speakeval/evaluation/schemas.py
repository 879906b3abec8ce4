"""
Scoring response schemas and normalization.

Every provider response is untrusted input. It is normalized here into one
internal shape and validated before the calibrator reads a single band.
"""
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .models import CRITERIA, TranscriptionSegment
from ..config import BAND_MAX, BAND_MIN
from ..errors import ValidationFailure

logger = logging.getLogger("scoring_schemas")

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")

CRITERION_ALIASES = {
    "fluency_coherence": "fluency_coherence",
    "fluency_and_coherence": "fluency_coherence",
    "fluency": "fluency_coherence",
    "lexical_resource": "lexical_resource",
    "lexical": "lexical_resource",
    "vocabulary": "lexical_resource",
    "grammatical_range": "grammatical_range",
    "grammatical_range_accuracy": "grammatical_range",
    "grammatical_range_and_accuracy": "grammatical_range",
    "grammar": "grammatical_range",
    "pronunciation": "pronunciation",
}


def snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", str(name)).replace("-", "_").replace(" ", "_").lower()


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None and str(v).strip()]
    return [str(value)]


class CriterionPayload(BaseModel):
    """One criterion as returned by the scoring provider."""
    model_config = ConfigDict(extra="ignore")

    band: Optional[float] = Field(default=None, validation_alias=AliasChoices("band", "score"))
    feedback: str = ""
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)

    @field_validator("band", mode="before")
    @classmethod
    def coerce_band(cls, value: Any) -> Optional[float]:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return float(value)
        try:
            return float(str(value).strip())
        except ValueError:
            return None

    @field_validator("feedback", mode="before")
    @classmethod
    def coerce_feedback(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("strengths", "weaknesses", "suggestions", mode="before")
    @classmethod
    def coerce_lists(cls, value: Any) -> List[str]:
        return _as_list(value)


class ModelAnswerPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    segment_key: Optional[str] = Field(default=None,
                                       validation_alias=AliasChoices("segment_key", "segmentKey"))
    part_number: Optional[int] = Field(default=None,
                                       validation_alias=AliasChoices("part_number", "partNumber"))
    question_number: Optional[int] = Field(default=None,
                                           validation_alias=AliasChoices("question_number",
                                                                         "questionNumber"))
    question_text: str = Field(default="", validation_alias=AliasChoices("question_text", "questionText",
                                                                         "question"))
    model_answer: str = Field(default="", validation_alias=AliasChoices("model_answer", "modelAnswer"))
    why_it_works: List[str] = Field(default_factory=list,
                                    validation_alias=AliasChoices("why_it_works", "whyItWorks"))
    key_improvements: List[str] = Field(default_factory=list,
                                        validation_alias=AliasChoices("key_improvements",
                                                                      "keyImprovements"))

    @field_validator("part_number", "question_number", mode="before")
    @classmethod
    def coerce_int(cls, value: Any) -> Optional[int]:
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    @field_validator("question_text", "model_answer", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("why_it_works", "key_improvements", mode="before")
    @classmethod
    def coerce_lists(cls, value: Any) -> List[str]:
        return _as_list(value)


class ScoringPayload(BaseModel):
    """Canonical internal shape of a scoring response."""
    criteria: Dict[str, CriterionPayload] = Field(default_factory=dict)
    summary: str = ""
    examiner_notes: str = ""
    model_answers: List[ModelAnswerPayload] = Field(default_factory=list)
    vocabulary_upgrades: List[Dict[str, str]] = Field(default_factory=list)
    part_notes: Dict[str, str] = Field(default_factory=dict)
    improvement_priorities: List[str] = Field(default_factory=list)
    strengths_to_maintain: List[str] = Field(default_factory=list)


def _first(raw: Dict[str, Any], *names: str) -> Any:
    for name in names:
        if raw.get(name) is not None:
            return raw[name]
    return None


def _criteria_source(raw: Dict[str, Any]) -> Dict[str, Any]:
    nested = raw.get("criteria")
    if isinstance(nested, dict):
        return nested
    # some providers put criteria at the root
    return raw


def _part_notes(value: Any) -> Dict[str, str]:
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items() if v is not None}
    notes: Dict[str, str] = {}
    if isinstance(value, list):
        for idx, item in enumerate(value, start=1):
            if isinstance(item, dict):
                part = _first(item, "part", "part_number", "partNumber") or idx
                note = _first(item, "note", "notes", "text") or ""
                notes[str(part)] = str(note)
            elif item is not None:
                notes[str(idx)] = str(item)
    return notes


def normalize_scoring_payload(raw: Dict[str, Any]) -> ScoringPayload:
    """
    Map a provider response onto ScoringPayload.

    Accepts criteria at the root or under "criteria", camelCase or snake_case
    names, "score" instead of "band", bare numbers instead of criterion objects
    and numeric strings.

    Raises:
        ValidationFailure: The response is not an object or cannot be coerced
    """
    if not isinstance(raw, dict):
        raise ValidationFailure(f"Scoring response is not an object: {type(raw).__name__}")

    criteria: Dict[str, Any] = {}
    for name, value in _criteria_source(raw).items():
        canonical = CRITERION_ALIASES.get(snake_case(name))
        if canonical is None or canonical in criteria:
            continue
        if isinstance(value, (int, float, str)) and not isinstance(value, bool):
            value = {"band": value}
        if isinstance(value, dict):
            criteria[canonical] = value

    answers = _first(raw, "model_answers", "modelAnswers") or []
    upgrades = _first(raw, "vocabulary_upgrades", "vocabularyUpgrades", "lexical_upgrades",
                      "lexicalUpgrades") or []

    try:
        return ScoringPayload(
            criteria=criteria,
            summary=str(_first(raw, "summary") or ""),
            examiner_notes=str(_first(raw, "examiner_notes", "examinerNotes") or ""),
            model_answers=[a for a in answers if isinstance(a, dict)],
            vocabulary_upgrades=[{str(k): str(v) for k, v in u.items()} for u in upgrades
                                 if isinstance(u, dict)],
            part_notes=_part_notes(_first(raw, "part_notes", "partNotes")),
            improvement_priorities=_as_list(_first(raw, "improvement_priorities",
                                                   "improvementPriorities")),
            strengths_to_maintain=_as_list(_first(raw, "strengths_to_maintain",
                                                  "strengthsToMaintain")),
        )
    except ValidationError as e:
        raise ValidationFailure(f"Scoring response failed schema validation: {e}")


def match_model_answers(payload: ScoringPayload,
                        segments: Sequence[TranscriptionSegment]) -> Dict[str, ModelAnswerPayload]:
    """Model answers keyed by segment key, matching on key first, then (part, question)."""
    by_key = {a.segment_key: a for a in payload.model_answers if a.segment_key and a.model_answer.strip()}
    by_position = {(a.part_number, a.question_number): a for a in payload.model_answers
                   if a.part_number is not None and a.model_answer.strip()}
    matched = {}
    for seg in segments:
        answer = by_key.get(seg.segment_key) or by_position.get((seg.part_number, seg.question_number))
        if answer is not None:
            matched[seg.segment_key] = answer
    return matched


def validate_scoring_payload(payload: ScoringPayload,
                             segments: Sequence[TranscriptionSegment]) -> List[str]:
    """
    Problems that make the response unusable as-is.

    Returns:
        Human-readable issues; empty when the response is valid
    """
    issues = []
    for name in CRITERIA:
        criterion = payload.criteria.get(name)
        if criterion is None:
            issues.append(f"Missing criterion: {name}")
        elif criterion.band is None:
            issues.append(f"Criterion {name} has no numeric band")
        elif not BAND_MIN <= criterion.band <= BAND_MAX:
            issues.append(f"Criterion {name} band out of range: {criterion.band}")
        elif criterion.band == 0 and not criterion.feedback.strip():
            issues.append(f"Criterion {name} scored 0 with no supporting feedback")

    matched = match_model_answers(payload, segments)
    for seg in segments:
        if seg.segment_key not in matched:
            issues.append(f"Missing model answer for {seg.segment_key}")
    if issues:
        logger.debug("Scoring response issues: %s", issues)
    return issues


def criterion_is_valid(criterion: Optional[CriterionPayload]) -> bool:
    if criterion is None or criterion.band is None:
        return False
    if not BAND_MIN <= criterion.band <= BAND_MAX:
        return False
    return not (criterion.band == 0 and not criterion.feedback.strip())
