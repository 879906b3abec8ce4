"""
Dual-engine transcription and transcript reconciliation.

Each segment is sent to two speech engine variants. The two outputs are cleaned,
compared and merged into a single TranscriptionSegment whose method, confidence
and issues record how the decision was made.
"""
import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .agreement import agreement_score, completeness_offset
from .cleaning import CleanedTranscript, TranscriptCleaner, count_immediate_repeats
from .hallucination import RuleTables
from .models import Confidence, MergeMethod, PauseSpan, TranscriptionSegment
from .segments import parse_segment_key
from ..config import (
    ASR_LOCK_SECONDS, COMPLETENESS_MIN_OFFSET_CHARS, COMPLETENESS_PROBE_WORDS,
    CONSENSUS_THRESHOLD, CREDENTIAL_WAIT_SECONDS, DEGENERATE_MIN_CHARS,
    DIVERGENCE_THRESHOLD, INTER_CALL_DELAY_SECONDS, LANGUAGE_HINT, LONG_PAUSE_SECONDS,
    MAX_WORDS_PER_SECOND, MIN_WORDS_PER_SECOND, RELEASE_COOLDOWN_SECONDS,
    WORD_COUNT_HIGH_TOLERANCE, WORD_COUNT_LOW_TOLERANCE,
)
from ..errors import NoCredentialAvailable, ProviderError, SpeakEvalError
from ..infrastructure.audio.speech import RecognitionResult, SpeechEngine
from ..infrastructure.quota import Capability, Credential, QuotaPool

logger = logging.getLogger("reconciler")


@dataclass
class ReconcilerSettings:
    consensus_threshold: float = CONSENSUS_THRESHOLD
    divergence_threshold: float = DIVERGENCE_THRESHOLD
    completeness_probe_words: int = COMPLETENESS_PROBE_WORDS
    completeness_min_offset_chars: int = COMPLETENESS_MIN_OFFSET_CHARS
    min_words_per_second: float = MIN_WORDS_PER_SECOND
    max_words_per_second: float = MAX_WORDS_PER_SECOND
    word_count_low_tolerance: float = WORD_COUNT_LOW_TOLERANCE
    word_count_high_tolerance: float = WORD_COUNT_HIGH_TOLERANCE
    degenerate_min_chars: int = DEGENERATE_MIN_CHARS
    long_pause_seconds: float = LONG_PAUSE_SECONDS
    inter_call_delay_seconds: float = INTER_CALL_DELAY_SECONDS
    lock_seconds: float = ASR_LOCK_SECONDS
    credential_wait_seconds: float = CREDENTIAL_WAIT_SECONDS
    release_cooldown_seconds: float = RELEASE_COOLDOWN_SECONDS


@dataclass
class _Candidate:
    """One engine's output after cleaning."""
    engine: str
    result: RecognitionResult
    cleaned: CleanedTranscript
    markers: List[str]

    @property
    def text(self) -> str:
        return self.cleaned.text

    @property
    def word_count(self) -> int:
        return self.cleaned.word_count


@dataclass
class _EngineOutcome:
    engine: str
    result: Optional[RecognitionResult] = None
    error: Optional[Exception] = None


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, NoCredentialAvailable):
        return not error.permanent
    return isinstance(error, ProviderError) and error.retryable


class TranscriptionReconciler:
    """
    Runs both engines on a segment and elects the final transcript.

    Example:
        reconciler = TranscriptionReconciler(engine_a, engine_b, pool)
        segment = reconciler.transcribe_segment("part1-q1", wav_bytes, 42.0, job_id)
        print(segment.final_text, segment.method.value, segment.confidence.value)
    """

    def __init__(self,
                 engine_a: SpeechEngine,
                 engine_b: SpeechEngine,
                 quota_pool: QuotaPool,
                 cleaner: Optional[TranscriptCleaner] = None,
                 settings: Optional[ReconcilerSettings] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.engine_a = engine_a
        self.engine_b = engine_b
        self.quota_pool = quota_pool
        self.cleaner = cleaner or TranscriptCleaner()
        self.settings = settings or ReconcilerSettings()
        self._sleep = sleep

    @property
    def rules(self) -> RuleTables:
        return self.cleaner.rules

    # ------------------------------------------------------------------
    # Engine calls
    # ------------------------------------------------------------------

    def transcribe_segment(self,
                           segment_key: str,
                           audio: bytes,
                           duration_seconds: Optional[float],
                           job_id: str,
                           language_hint: str = LANGUAGE_HINT) -> TranscriptionSegment:
        """
        Transcribe one segment with both engines and reconcile the outputs.

        The engines run in parallel when two distinct credentials can be checked
        out, otherwise sequentially on one credential with a short pause between
        the calls.

        Raises:
            NoCredentialAvailable: No credential for the first call, or every call
                failed for lack of credentials
            ProviderError: Both engines failed with retryable errors
        """
        s = self.settings
        primary = self.quota_pool.checkout(Capability.SPEECH_TO_TEXT, job_id, s.lock_seconds,
                                           wait_timeout=s.credential_wait_seconds)
        secondary = self.quota_pool.try_checkout(Capability.SPEECH_TO_TEXT, job_id, s.lock_seconds)
        units = duration_seconds or 0.0
        try:
            if secondary is not None:
                logger.debug("Segment %s: parallel engine calls on %s / %s", segment_key,
                             primary.credential_id, secondary.credential_id)
                with ThreadPoolExecutor(max_workers=2, thread_name_prefix="asr") as executor:
                    future_a = executor.submit(self._call_engine, self.engine_a, primary, audio,
                                               units, job_id, language_hint)
                    future_b = executor.submit(self._call_engine, self.engine_b, secondary, audio,
                                               units, job_id, language_hint)
                    outcome_a, outcome_b = future_a.result(), future_b.result()
            else:
                logger.debug("Segment %s: sequential engine calls on %s", segment_key,
                             primary.credential_id)
                outcome_a = self._call_engine(self.engine_a, primary, audio, units, job_id,
                                              language_hint)
                credential_b = primary
                if not self.quota_pool.holds(primary.credential_id, job_id):
                    # primary was limited during engine A's call and is cooling down
                    secondary = credential_b = self.quota_pool.try_checkout(
                        Capability.SPEECH_TO_TEXT, job_id, s.lock_seconds)
                if credential_b is None:
                    logger.warning("Segment %s: no credential left for %s after %s was limited",
                                   segment_key, self.engine_b.name, primary.credential_id)
                    outcome_b = _EngineOutcome(self.engine_b.name, error=NoCredentialAvailable(
                        f"No speech credential free for {self.engine_b.name}"))
                else:
                    if credential_b is primary:
                        self._sleep(s.inter_call_delay_seconds)
                    outcome_b = self._call_engine(self.engine_b, credential_b, audio, units,
                                                  job_id, language_hint)
        finally:
            for credential in (primary, secondary):
                if credential is not None:
                    self.quota_pool.release(credential.credential_id, job_id,
                                            cooldown_seconds=s.release_cooldown_seconds,
                                            capability=Capability.SPEECH_TO_TEXT)

        self._raise_if_retryable(segment_key, outcome_a, outcome_b)
        errors = {o.engine: str(o.error) for o in (outcome_a, outcome_b) if o.error is not None}
        return self.reconcile(segment_key, outcome_a.result, outcome_b.result,
                              duration_seconds, errors)

    def _call_engine(self, engine: SpeechEngine, credential: Credential, audio: bytes,
                     units: float, job_id: str, language_hint: str) -> _EngineOutcome:
        """One engine call, switching credential once on a rate-limit or quota signal."""
        try:
            return _EngineOutcome(engine.name, result=self._invoke(engine, credential, audio,
                                                                   units, language_hint))
        except ProviderError as e:
            if not e.switch_credential:
                logger.warning("%s failed on %s: %s", engine.name, credential.credential_id, e)
                return _EngineOutcome(engine.name, error=e)
            self.quota_pool.mark_exhausted(
                credential.credential_id, engine.capability,
                permanent=getattr(e, "permanent", False),
                retry_after_seconds=e.retry_after_seconds,
                reason=e.message,
            )
            fresh = self.quota_pool.try_checkout(engine.capability, job_id, self.settings.lock_seconds)
            if fresh is None:
                logger.warning("%s limited on %s and no other credential is free", engine.name,
                               credential.credential_id)
                return _EngineOutcome(engine.name, error=e)
            logger.info("%s retrying on %s after %s", engine.name, fresh.credential_id, e.code)
            try:
                return _EngineOutcome(engine.name, result=self._invoke(engine, fresh, audio,
                                                                       units, language_hint))
            except ProviderError as retry_error:
                if retry_error.switch_credential:
                    self.quota_pool.mark_exhausted(
                        fresh.credential_id, engine.capability,
                        permanent=getattr(retry_error, "permanent", False),
                        retry_after_seconds=retry_error.retry_after_seconds,
                        reason=retry_error.message,
                    )
                logger.warning("%s failed again on %s: %s", engine.name, fresh.credential_id,
                               retry_error)
                return _EngineOutcome(engine.name, error=retry_error)
            finally:
                self.quota_pool.release(fresh.credential_id, job_id, capability=engine.capability)
        except SpeakEvalError as e:
            logger.warning("%s failed: %s", engine.name, e)
            return _EngineOutcome(engine.name, error=e)

    def _invoke(self, engine: SpeechEngine, credential: Credential, audio: bytes,
                units: float, language_hint: str) -> RecognitionResult:
        try:
            result = engine.transcribe(audio, credential, language_hint=language_hint)
        finally:
            self.quota_pool.record_usage(credential.credential_id, units)
        self.quota_pool.record_success(credential.credential_id, engine.capability)
        return result

    @staticmethod
    def _raise_if_retryable(segment_key: str, *outcomes: _EngineOutcome) -> None:
        """When every call failed and every failure is retryable, let the job retry."""
        errors = [o.error for o in outcomes]
        if any(e is None for e in errors):
            return
        if all(isinstance(e, NoCredentialAvailable) for e in errors):
            raise errors[0]
        if all(_is_retryable(e) for e in errors):
            logger.warning("Segment %s: both engines failed with retryable errors", segment_key)
            raise errors[0]

    # ------------------------------------------------------------------
    # Merge policy
    # ------------------------------------------------------------------

    def reconcile(self,
                  segment_key: str,
                  result_a: Optional[RecognitionResult],
                  result_b: Optional[RecognitionResult],
                  duration_seconds: Optional[float] = None,
                  errors: Optional[Dict[str, str]] = None) -> TranscriptionSegment:
        """
        Elect the final transcript from two engine results.

        Either result may be None when that engine failed. The decision, in
        priority order:
            1. one side empty or degenerate: use the other alone (low confidence)
            2. completeness offset decisive and agreement below consensus:
               the more complete transcript
            3. agreement >= consensus: the longer transcript (high confidence)
            4. agreement >= divergence: fewer hallucination markers and a word
               count plausible for the duration
            5. otherwise: fewer immediate repeats, then the longer transcript
        """
        s = self.settings
        errors = dict(errors or {})
        part, question, question_id = parse_segment_key(segment_key)
        issues = [f"{engine} error: {message}" for engine, message in sorted(errors.items())]

        candidates = [self._candidate(r) for r in (result_a, result_b) if r is not None]
        raw = {c.engine: c.result.text for c in candidates}
        usable = [c for c in candidates if not self._degenerate(c.text)]
        for c in candidates:
            if c.markers:
                issues.append(f"{c.engine} hallucination markers: {', '.join(c.markers)}")

        segment = TranscriptionSegment(
            segment_key=segment_key,
            part_number=part,
            question_number=question,
            question_id=question_id,
            duration_seconds=float(duration_seconds or 0.0),
            candidates=raw,
        )

        if not usable:
            segment.issues = issues + ["Both engines failed or returned no usable speech"]
            logger.warning("Segment %s: no usable transcript from either engine", segment_key)
            return segment

        if len(usable) == 1:
            chosen = usable[0]
            missing = self._other_engine_name(chosen.engine, result_a, result_b)
            issues.append(f"Fallback to {chosen.engine}: {missing} returned no usable text")
            logger.info("Segment %s: single-engine fallback to %s", segment_key, chosen.engine)
            return self._finish(segment, chosen, MergeMethod.SINGLE_FALLBACK, 0.0, Confidence.LOW,
                                issues)

        a, b = usable
        agreement = agreement_score(a.text, b.text)
        completeness = completeness_offset(a.text, b.text, s.completeness_probe_words,
                                           s.completeness_min_offset_chars)

        if completeness.decisive and agreement < s.consensus_threshold:
            chosen = a if completeness.more_complete == "a" else b
            issues.append(f"Completeness offset {completeness.offset_chars} chars: "
                          f"{chosen.engine} kept the opening words")
            method, confidence = MergeMethod.COMPLETENESS, Confidence.MEDIUM
        elif agreement >= s.consensus_threshold:
            chosen = max((a, b), key=lambda c: (c.word_count, len(c.text)))
            method, confidence = MergeMethod.CONSENSUS, Confidence.HIGH
        elif agreement >= s.divergence_threshold:
            chosen = min((a, b), key=lambda c: (len(c.markers),
                                                not self.word_count_plausible(c.word_count,
                                                                              duration_seconds),
                                                -c.word_count))
            method, confidence = MergeMethod.QUALITY, Confidence.MEDIUM
        else:
            chosen = min((a, b), key=lambda c: (count_immediate_repeats(c.result.text),
                                                -c.word_count, -len(c.text)))
            issues.append(f"Engines diverge (agreement {agreement:.2f})")
            method, confidence = MergeMethod.FEWER_REPEATS, Confidence.LOW

        if not self.word_count_plausible(chosen.word_count, duration_seconds):
            issues.append(f"Word count {chosen.word_count} implausible for "
                          f"{duration_seconds:.1f}s of audio")
        logger.info("Segment %s: %s via %s (agreement %.2f, %s)", segment_key, chosen.engine,
                    method.value, agreement, confidence.value)
        return self._finish(segment, chosen, method, agreement, confidence, issues)

    def word_count_plausible(self, word_count: int, duration_seconds: Optional[float]) -> bool:
        """Word count within the tolerant range expected for the audio duration."""
        if not duration_seconds or duration_seconds <= 0:
            return True
        s = self.settings
        low = math.floor(duration_seconds * s.min_words_per_second) * s.word_count_low_tolerance
        high = math.ceil(duration_seconds * s.max_words_per_second) * s.word_count_high_tolerance
        return low <= word_count <= high

    def _candidate(self, result: RecognitionResult) -> _Candidate:
        return _Candidate(
            engine=result.engine,
            result=result,
            cleaned=self.cleaner.clean(result.text),
            markers=self.rules.detect(result.text or ""),
        )

    def _degenerate(self, text: str) -> bool:
        stripped = text.strip()
        return len(stripped) < self.settings.degenerate_min_chars or \
            not any(ch.isalnum() for ch in stripped)

    def _other_engine_name(self, engine: str, *results: Optional[RecognitionResult]) -> str:
        names = [self.engine_a.name, self.engine_b.name]
        names += [r.engine for r in results if r is not None]
        others = [n for n in names if n != engine]
        return others[0] if others else "other engine"

    def _finish(self, segment: TranscriptionSegment, chosen: _Candidate, method: MergeMethod,
                agreement: float, confidence: Confidence, issues: List[str]) -> TranscriptionSegment:
        result = chosen.result
        segment.final_text = chosen.text
        segment.word_count = chosen.word_count
        segment.method = method
        segment.agreement_score = round(agreement, 4)
        segment.confidence = confidence
        segment.average_confidence = round(result.average_confidence, 4)
        segment.average_log_probability = round(result.avg_logprob, 4)
        segment.no_speech_probability = round(result.no_speech_prob, 4)
        segment.filler_words = self.rules.find_fillers(chosen.text)
        segment.long_pauses = self.long_pauses(result)
        if chosen.cleaned.applied:
            issues.append(f"{chosen.engine} cleaned: {', '.join(chosen.cleaned.applied)}")
        segment.issues = issues
        return segment

    def long_pauses(self, result: RecognitionResult) -> List[PauseSpan]:
        """Gaps of at least long_pause_seconds between words, or between segments without words."""
        spans: List[Tuple[float, float]]
        if result.words:
            spans = [(w.start, w.end) for w in result.words]
        else:
            spans = [(seg.start, seg.end) for seg in result.segments]
        spans.sort()
        threshold = self.settings.long_pause_seconds
        return [PauseSpan(round(prev_end, 3), round(start, 3))
                for (_, prev_end), (start, _) in zip(spans, spans[1:])
                if start - prev_end >= threshold]
