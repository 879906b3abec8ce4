"""
Data models for the evaluation pipeline.
"""
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, Dict, List, Any

from .bands import overall_band

CRITERIA = ("fluency_coherence", "lexical_resource", "grammatical_range", "pronunciation")


class Confidence(str, Enum):
    """Confidence in a merged transcript."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    VERY_LOW = "very-low"


class MergeMethod(str, Enum):
    """How the reconciler chose the final transcript."""
    CONSENSUS = "consensus"
    COMPLETENESS = "completeness"
    QUALITY = "quality"
    FEWER_REPEATS = "fewer-repeats"
    SINGLE_FALLBACK = "single-fallback"


@dataclass
class PauseSpan:
    start: float
    end: float

    @property
    def duration(self) -> float:
        return round(self.end - self.start, 3)

    def to_dict(self) -> Dict[str, float]:
        return {"start": self.start, "end": self.end, "duration": self.duration}


@dataclass
class TranscriptionSegment:
    """Reconciled transcript for one audio segment. final_text is never None."""
    segment_key: str
    part_number: int
    question_number: int
    final_text: str = ""
    word_count: int = 0
    average_confidence: float = 0.0
    average_log_probability: float = -1.0
    no_speech_probability: float = 0.0
    filler_words: List[str] = field(default_factory=list)
    long_pauses: List[PauseSpan] = field(default_factory=list)
    method: MergeMethod = MergeMethod.SINGLE_FALLBACK
    agreement_score: float = 0.0
    confidence: Confidence = Confidence.VERY_LOW
    issues: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    question_id: Optional[str] = None
    candidates: Dict[str, str] = field(default_factory=dict)

    @property
    def has_speech(self) -> bool:
        return bool(self.final_text.strip())

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["method"] = self.method.value
        data["confidence"] = self.confidence.value
        data["long_pauses"] = [p.to_dict() for p in self.long_pauses]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TranscriptionSegment':
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        values["method"] = MergeMethod(values.get("method", MergeMethod.SINGLE_FALLBACK))
        values["confidence"] = Confidence(values.get("confidence", Confidence.VERY_LOW))
        values["long_pauses"] = [PauseSpan(p["start"], p["end"]) for p in values.get("long_pauses") or []]
        values["final_text"] = values.get("final_text") or ""
        return cls(**values)


@dataclass
class CriterionScore:
    """One scored rubric dimension."""
    band: float
    feedback: str = ""
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ModelAnswer:
    """Suggested answer for one submitted question."""
    segment_key: str
    part_number: int
    question_number: int
    question_text: str = ""
    candidate_response: str = ""
    model_answer: str = ""
    why_it_works: List[str] = field(default_factory=list)
    key_improvements: List[str] = field(default_factory=list)
    is_placeholder: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PronunciationEstimate:
    """Pronunciation band inferred from recognition signals."""
    band: float
    composite: float
    confidence_tier: str
    total_words: int
    weighted_confidence: float
    clarity: float
    fluency_penalty: float
    pause_penalty: float
    insufficient_evidence: bool = False
    evidence: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EvaluationResult:
    """Final persisted output for a job. overall_band is always derived."""
    criteria: Dict[str, CriterionScore]
    model_answers: List[ModelAnswer] = field(default_factory=list)
    transcripts_by_part: Dict[str, str] = field(default_factory=dict)
    transcripts_by_question: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    evaluation_timing_ms: Dict[str, float] = field(default_factory=dict)
    summary: str = ""
    examiner_notes: str = ""
    improvement_priorities: List[str] = field(default_factory=list)
    strengths_to_maintain: List[str] = field(default_factory=list)
    vocabulary_upgrades: List[Dict[str, str]] = field(default_factory=list)
    part_notes: Dict[str, str] = field(default_factory=dict)
    validation_issues: List[str] = field(default_factory=list)
    pronunciation_estimate: Optional[PronunciationEstimate] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def overall_band(self) -> float:
        return overall_band(self.criteria[name].band for name in CRITERIA if name in self.criteria)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_band": self.overall_band,
            "criteria": {name: score.to_dict() for name, score in self.criteria.items()},
            "model_answers": [m.to_dict() for m in self.model_answers],
            "transcripts_by_part": dict(self.transcripts_by_part),
            "transcripts_by_question": {k: list(v) for k, v in self.transcripts_by_question.items()},
            "evaluation_timing_ms": dict(self.evaluation_timing_ms),
            "summary": self.summary,
            "examiner_notes": self.examiner_notes,
            "improvement_priorities": list(self.improvement_priorities),
            "strengths_to_maintain": list(self.strengths_to_maintain),
            "vocabulary_upgrades": list(self.vocabulary_upgrades),
            "part_notes": dict(self.part_notes),
            "validation_issues": list(self.validation_issues),
            "pronunciation_estimate": self.pronunciation_estimate.to_dict()
            if self.pronunciation_estimate else None,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EvaluationResult':
        estimate = data.get("pronunciation_estimate")
        return cls(
            criteria={name: CriterionScore(**score) for name, score in (data.get("criteria") or {}).items()},
            model_answers=[ModelAnswer(**m) for m in data.get("model_answers") or []],
            transcripts_by_part=dict(data.get("transcripts_by_part") or {}),
            transcripts_by_question=dict(data.get("transcripts_by_question") or {}),
            evaluation_timing_ms=dict(data.get("evaluation_timing_ms") or {}),
            summary=data.get("summary", ""),
            examiner_notes=data.get("examiner_notes", ""),
            improvement_priorities=list(data.get("improvement_priorities") or []),
            strengths_to_maintain=list(data.get("strengths_to_maintain") or []),
            vocabulary_upgrades=list(data.get("vocabulary_upgrades") or []),
            part_notes=dict(data.get("part_notes") or {}),
            validation_issues=list(data.get("validation_issues") or []),
            pronunciation_estimate=PronunciationEstimate(**estimate) if estimate else None,
            metadata=dict(data.get("metadata") or {}),
        )
