"""
Scoring prompt templates.

This module keeps the prompts sent to the scoring model separate from the
calibration logic for easier maintenance and editing.
"""

from typing import Dict, List, Mapping, Sequence
import json

from .models import CRITERIA, PronunciationEstimate, TranscriptionSegment

# minimum / target model answer length per test part
MODEL_ANSWER_WORDS = {1: (45, 55), 2: (150, 170), 3: (60, 75)}


class EvaluationPrompts:
    """Collection of all scoring-related prompts."""

    @staticmethod
    def transcript_line(segment: TranscriptionSegment, question_text: str) -> str:
        """One compact line per answer: identifiers, question, transcript and metadata."""
        pauses = len(segment.long_pauses)
        meta = f"{segment.word_count}w/{segment.duration_seconds:.0f}s"
        if pauses:
            meta += f"/{pauses}pauses"
        text = segment.final_text if segment.has_speech else "[NO USABLE SPEECH]"
        return (f"[P{segment.part_number}Q{segment.question_number}|{segment.segment_key}] "
                f"Q:{json.dumps(question_text or 'N/A', ensure_ascii=False)} "
                f"T:{json.dumps(text, ensure_ascii=False)} ({meta})")

    @staticmethod
    def scoring_prompt(
        segments: Sequence[TranscriptionSegment],
        question_texts: Mapping[str, str],
        pronunciation: PronunciationEstimate,
    ) -> str:
        """Main scoring prompt covering every criterion, feedback and model answers."""

        transcripts = "\n".join(
            EvaluationPrompts.transcript_line(seg, question_texts.get(seg.segment_key, ""))
            for seg in segments
        )
        parts = sorted({seg.part_number for seg in segments})

        answer_slots = []
        for seg in segments:
            minimum, target = MODEL_ANSWER_WORDS.get(seg.part_number, MODEL_ANSWER_WORDS[1])
            answer_slots.append(
                f'{{"segment_key":"{seg.segment_key}","part_number":{seg.part_number},'
                f'"question_number":{seg.question_number},'
                f'"model_answer":"<at least {minimum} words, target {target}>",'
                f'"why_it_works":["..."],"key_improvements":["<1 tip>"]}}'
            )

        criteria_shape = ",\n    ".join(
            f'"{name}": {{"band": <0-9>, "feedback": "<2 sentences>", "strengths": ["..."], '
            f'"weaknesses": ["... (e.g., \'[quote]\')"], "suggestions": ["..."]}}'
            for name in CRITERIA
        )

        return f"""
Speaking test evaluation task

Parts covered: {', '.join(str(p) for p in parts)}
Total questions: {len(segments)}

CANDIDATE TRANSCRIPTS:
{transcripts}

PRONUNCIATION ESTIMATE (from recognition confidence, the audio is not available to you):
Band {pronunciation.band} ({pronunciation.confidence_tier} confidence)

Scoring guidelines:
- Answers marked [NO USABLE SPEECH] carry no evidence. Do not invent content for them.
- Off-topic or irrelevant answers: band 2.5-3.5
- Very short answers (<10 words): band 2-3
- Every weakness must quote the transcript: "Issue (e.g., '[exact quote]')"
- Bands are numbers between 0 and 9 in steps of 0.5.

Model answers: one entry for EVERY question above, keyed by segment_key.
Part 1 answers at least 45 words, Part 2 at least 150 words, Part 3 at least 60 words.

Output format (valid JSON only):
{{
  "criteria": {{
    {criteria_shape}
  }},
  "summary": "<2 sentence overall summary>",
  "examiner_notes": "<1 sentence key observation>",
  "model_answers": [{','.join(answer_slots)}],
  "vocabulary_upgrades": [{{"original": "...", "upgraded": "...", "context": "..."}}],
  "part_notes": {{"<part number>": "<note>"}},
  "improvement_priorities": ["...", "..."],
  "strengths_to_maintain": ["..."]
}}

Respond ONLY with JSON (no code fences).
        """.strip()

    @staticmethod
    def repair_prompt(
        original_prompt: str,
        previous_response: Dict,
        issues: List[str],
    ) -> str:
        """Ask the model to fix a response that failed validation."""
        return f"""
Your previous answer to the task below failed validation.

Problems found:
{chr(10).join(f'- {issue}' for issue in issues)}

Previous answer:
{json.dumps(previous_response, ensure_ascii=False)}

Return the COMPLETE corrected JSON object. Every criterion needs a numeric band between 0 and 9,
and every question needs a model answer entry.

Original task:
{original_prompt}
        """.strip()
