"""Segment builders shared by the scoring tests."""
from speakeval.evaluation import Confidence, MergeMethod, PauseSpan, TranscriptionSegment
from speakeval.evaluation.segments import parse_segment_key


def make_segment(key, text, duration=10.0, word_count=None, confidence=0.9, logprob=-0.2,
                 fillers=(), pauses=0):
    part, question, question_id = parse_segment_key(key)
    return TranscriptionSegment(
        segment_key=key,
        part_number=part,
        question_number=question,
        question_id=question_id,
        final_text=text,
        word_count=len(text.split()) if word_count is None else word_count,
        average_confidence=confidence,
        average_log_probability=logprob,
        filler_words=list(fillers),
        long_pauses=[PauseSpan(float(i * 5), float(i * 5 + 2.5)) for i in range(pauses)],
        method=MergeMethod.CONSENSUS if text else MergeMethod.SINGLE_FALLBACK,
        confidence=Confidence.HIGH if text else Confidence.VERY_LOW,
        duration_seconds=duration,
    )
