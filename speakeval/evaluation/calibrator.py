"""
Score calibration: pronunciation pre-estimate, external scoring, validation
and repair, pronunciation override and the overall band.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .bands import clamp_band, round_band
from .models import (
    CRITERIA, CriterionScore, EvaluationResult, ModelAnswer, PronunciationEstimate,
    TranscriptionSegment,
)
from .prompts import EvaluationPrompts
from .pronunciation import PronunciationEstimator
from .schemas import (
    ScoringPayload, criterion_is_valid, match_model_answers, normalize_scoring_payload,
    validate_scoring_payload,
)
from .segments import segment_sort_key
from ..config import CREDENTIAL_WAIT_SECONDS, PIPELINE_VERSION, SCORING_LOCK_SECONDS
from ..errors import NoUsableSpeech, ProviderError, ValidationFailure
from ..infrastructure.quota import Capability, QuotaPool

logger = logging.getLogger("calibrator")

PLACEHOLDER_NO_SPEECH = "No usable speech was captured for this question."


@dataclass
class CalibratorSettings:
    lock_seconds: float = SCORING_LOCK_SECONDS
    credential_wait_seconds: float = CREDENTIAL_WAIT_SECONDS
    max_credential_attempts: int = 3
    repair_attempts: int = 1
    fluency_weight: float = 0.4
    lexical_weight: float = 0.3
    grammar_weight: float = 0.3
    tier_adjustments: Tuple[Tuple[str, float], ...] = (("high", 0.5), ("medium", 0.0), ("low", -0.5))

    def tier_adjustment(self, tier: str) -> float:
        return dict(self.tier_adjustments).get(tier, 0.0)


class ScoreCalibrator:
    """
    Scores merged transcripts and calibrates the bands.

    Example:
        calibrator = ScoreCalibrator(GeminiRestClient(), pool)
        result = calibrator.evaluate(job_id, segments, {"part1-q1": "Do you work or study?"})
        print(result.overall_band)
    """

    def __init__(self,
                 client,
                 quota_pool: Optional[QuotaPool] = None,
                 estimator: Optional[PronunciationEstimator] = None,
                 prompts: type = EvaluationPrompts,
                 settings: Optional[CalibratorSettings] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.client = client
        self.quota_pool = quota_pool
        self.estimator = estimator or PronunciationEstimator()
        self.prompts = prompts
        self.settings = settings or CalibratorSettings()
        self._clock = clock

    def evaluate(self,
                 job_id: str,
                 segments: Sequence[TranscriptionSegment],
                 question_texts: Optional[Mapping[str, str]] = None) -> EvaluationResult:
        """
        Produce the EvaluationResult for a job's reconciled segments.

        Raises:
            NoUsableSpeech: No segment carries any speech
            NoCredentialAvailable: No scoring credential could be checked out
            ProviderError: Scoring failed for reasons other than validation
        """
        question_texts = dict(question_texts or {})
        segments = sorted(segments, key=lambda s: segment_sort_key(s.segment_key))
        if not any(seg.has_speech for seg in segments):
            raise NoUsableSpeech("No usable speech in any segment")

        timings: Dict[str, float] = {}
        started = self._clock()

        estimate = self.estimator.estimate(segments)
        timings["pronunciation_ms"] = self._elapsed_ms(started)

        prompt = self.prompts.scoring_prompt(segments, question_texts, estimate)
        scoring_started = self._clock()
        payload, issues, credential_id = self._score(job_id, prompt, segments, timings)
        timings["scoring_ms"] = self._elapsed_ms(scoring_started)

        validation_issues: List[str] = list(issues)
        criteria = self._calibrated_criteria(payload, estimate, validation_issues)
        model_answers = self._model_answers(payload, segments, question_texts, validation_issues)
        timings["total_ms"] = self._elapsed_ms(started)

        provider_pronunciation = payload.criteria.get("pronunciation")
        result = EvaluationResult(
            criteria=criteria,
            model_answers=model_answers,
            transcripts_by_part=self.transcripts_by_part(segments),
            transcripts_by_question=self.transcripts_by_question(segments, question_texts),
            evaluation_timing_ms=timings,
            summary=payload.summary,
            examiner_notes=payload.examiner_notes,
            improvement_priorities=payload.improvement_priorities,
            strengths_to_maintain=payload.strengths_to_maintain,
            vocabulary_upgrades=payload.vocabulary_upgrades,
            part_notes=payload.part_notes,
            validation_issues=validation_issues,
            pronunciation_estimate=estimate,
            metadata={
                "pipeline_version": PIPELINE_VERSION,
                "scoring_model": getattr(self.client, "model", None),
                "scoring_credential": credential_id,
                "segments": len(segments),
                "segments_without_speech": [s.segment_key for s in segments if not s.has_speech],
                "provider_pronunciation_band": provider_pronunciation.band
                if provider_pronunciation else None,
            },
        )
        logger.info("Job %s scored: overall %.1f (%s)", job_id, result.overall_band,
                    ", ".join(f"{k}={v.band}" for k, v in criteria.items()))
        return result

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    def _score(self, job_id: str, prompt: str, segments: Sequence[TranscriptionSegment],
               timings: Dict[str, float]) -> Tuple[ScoringPayload, List[str], Optional[str]]:
        """Score once, repairing at most repair_attempts times if the response is invalid."""
        previous: Dict[str, Any] = {}
        try:
            previous, credential_id = self._request(job_id, prompt)
            payload = normalize_scoring_payload(previous)
            issues = validate_scoring_payload(payload, segments)
        except ValidationFailure as e:
            logger.warning("Job %s: unusable scoring response: %s", job_id, e)
            payload, issues, credential_id = ScoringPayload(), [e.message], None

        for attempt in range(self.settings.repair_attempts):
            if not issues:
                break
            logger.info("Job %s: repairing scoring response (%d issues)", job_id, len(issues))
            repair_started = self._clock()
            try:
                repaired_raw, repair_credential = self._request(
                    job_id, self.prompts.repair_prompt(prompt, previous, issues))
                repaired = normalize_scoring_payload(repaired_raw)
            except ValidationFailure as e:
                logger.warning("Job %s: repair attempt %d unusable: %s", job_id, attempt + 1, e)
                continue
            finally:
                timings["repair_ms"] = timings.get("repair_ms", 0.0) + self._elapsed_ms(repair_started)
            repaired_issues = validate_scoring_payload(repaired, segments)
            if len(repaired_issues) <= len(issues):
                payload, issues, previous = repaired, repaired_issues, repaired_raw
                credential_id = repair_credential

        return payload, issues, credential_id

    def _request(self, job_id: str, prompt: str) -> Tuple[Dict[str, Any], Optional[str]]:
        """One scoring call, failing over across pooled credentials on quota signals."""
        if self.quota_pool is None:
            return self.client.generate_json(prompt), None

        s = self.settings
        attempts = 0
        while True:
            credential = self.quota_pool.checkout(Capability.SCORING, job_id, s.lock_seconds,
                                                  wait_timeout=s.credential_wait_seconds)
            try:
                raw = self.client.generate_json(prompt, credential=credential)
                self.quota_pool.record_success(credential.credential_id, Capability.SCORING)
                return raw, credential.credential_id
            except ProviderError as e:
                attempts += 1
                if not e.switch_credential:
                    raise
                self.quota_pool.mark_exhausted(
                    credential.credential_id, Capability.SCORING,
                    permanent=getattr(e, "permanent", False),
                    retry_after_seconds=e.retry_after_seconds,
                    reason=e.message,
                )
                if attempts >= s.max_credential_attempts:
                    raise
                logger.info("Scoring credential %s limited (%s), failing over",
                            credential.credential_id, e.code)
            finally:
                self.quota_pool.record_usage(credential.credential_id, 1)
                self.quota_pool.release(credential.credential_id, job_id, capability=Capability.SCORING)

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    def _calibrated_criteria(self, payload: ScoringPayload, estimate: PronunciationEstimate,
                             issues: List[str]) -> Dict[str, CriterionScore]:
        scored = [name for name in CRITERIA if name != "pronunciation"]
        valid_bands = [clamp_band(payload.criteria[name].band) for name in scored
                       if criterion_is_valid(payload.criteria.get(name))]
        # lowest plausible value: the weakest valid criterion, else the pronunciation estimate
        default_band = min(valid_bands) if valid_bands else estimate.band

        criteria: Dict[str, CriterionScore] = {}
        for name in scored:
            source = payload.criteria.get(name)
            if criterion_is_valid(source):
                criteria[name] = CriterionScore(
                    band=round_band(source.band),
                    feedback=source.feedback,
                    strengths=source.strengths,
                    weaknesses=source.weaknesses,
                    suggestions=source.suggestions,
                )
                continue
            issues.append(f"Criterion {name} defaulted to band {default_band}")
            logger.warning("Criterion %s invalid after repair, defaulting to %.1f", name, default_band)
            criteria[name] = CriterionScore(
                band=round_band(default_band),
                feedback=(source.feedback if source else "") or
                "No valid score was returned for this criterion; a conservative default was used.",
                strengths=source.strengths if source else [],
                weaknesses=source.weaknesses if source else [],
                suggestions=source.suggestions if source else [],
            )

        pronunciation = payload.criteria.get("pronunciation")
        criteria["pronunciation"] = CriterionScore(
            band=self.pronunciation_override(criteria, estimate),
            feedback=(pronunciation.feedback if pronunciation else "") or
            "Pronunciation estimated from speech recognition confidence.",
            strengths=pronunciation.strengths if pronunciation else [],
            weaknesses=pronunciation.weaknesses if pronunciation else [],
            suggestions=pronunciation.suggestions if pronunciation else [],
        )
        return {name: criteria[name] for name in CRITERIA}

    def pronunciation_override(self, criteria: Mapping[str, CriterionScore],
                               estimate: PronunciationEstimate) -> float:
        """Weighted fluency/lexical/grammar average plus the estimate's tier adjustment."""
        s = self.settings
        weighted = (criteria["fluency_coherence"].band * s.fluency_weight
                    + criteria["lexical_resource"].band * s.lexical_weight
                    + criteria["grammatical_range"].band * s.grammar_weight)
        weighted /= s.fluency_weight + s.lexical_weight + s.grammar_weight
        return round_band(weighted + s.tier_adjustment(estimate.confidence_tier))

    def _model_answers(self, payload: ScoringPayload, segments: Sequence[TranscriptionSegment],
                       question_texts: Mapping[str, str], issues: List[str]) -> List[ModelAnswer]:
        matched = match_model_answers(payload, segments)
        answers = []
        for seg in segments:
            provided = matched.get(seg.segment_key)
            question_text = question_texts.get(seg.segment_key, "")
            if provided is not None:
                answers.append(ModelAnswer(
                    segment_key=seg.segment_key,
                    part_number=seg.part_number,
                    question_number=seg.question_number,
                    question_text=question_text or provided.question_text,
                    candidate_response=seg.final_text,
                    model_answer=provided.model_answer,
                    why_it_works=provided.why_it_works,
                    key_improvements=provided.key_improvements,
                ))
                continue
            if not any(i.endswith(f"model answer for {seg.segment_key}") for i in issues):
                issues.append(f"Placeholder model answer for {seg.segment_key}")
            answers.append(ModelAnswer(
                segment_key=seg.segment_key,
                part_number=seg.part_number,
                question_number=seg.question_number,
                question_text=question_text,
                candidate_response=seg.final_text,
                model_answer=seg.final_text or PLACEHOLDER_NO_SPEECH,
                key_improvements=["A model answer was not generated for this question."],
                is_placeholder=True,
            ))
        return answers

    # ------------------------------------------------------------------
    # Transcript grouping
    # ------------------------------------------------------------------

    @staticmethod
    def transcripts_by_part(segments: Sequence[TranscriptionSegment]) -> Dict[str, str]:
        grouped: Dict[str, List[str]] = {}
        for seg in segments:
            texts = grouped.setdefault(str(seg.part_number), [])
            if seg.has_speech:
                texts.append(seg.final_text)
        return {part: " ".join(texts) for part, texts in grouped.items()}

    @staticmethod
    def transcripts_by_question(segments: Sequence[TranscriptionSegment],
                                question_texts: Mapping[str, str]) -> Dict[str, List[Dict[str, Any]]]:
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for seg in segments:
            grouped.setdefault(str(seg.part_number), []).append({
                "segment_key": seg.segment_key,
                "question_number": seg.question_number,
                "question_id": seg.question_id,
                "question_text": question_texts.get(seg.segment_key, ""),
                "transcript": seg.final_text,
                "word_count": seg.word_count,
                "duration_seconds": seg.duration_seconds,
                "confidence": seg.confidence.value,
                "method": seg.method.value,
            })
        return grouped

    def _elapsed_ms(self, started: float) -> float:
        return round((self._clock() - started) * 1000.0, 1)
