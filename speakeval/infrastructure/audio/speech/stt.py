"""
Speech-to-text engines.

Two engine families are supported: any OpenAI-compatible Whisper endpoint
(verbose JSON with segment and word timestamps) and Google Cloud Speech.
Both raise errors from the pipeline taxonomy so the caller can tell rate
limits from permanent quota exhaustion.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import requests
from google.api_core import exceptions as google_exceptions
from google.cloud import speech

from ..processing import decode_wav, resample_to, stereo_to_mono, to_pcm16
from ...quota import Capability, Credential
from ....config import (
    ASR_TIMEOUT, SAMPLE_RATE_TARGET, WHISPER_BASE_URL, WHISPER_MODEL_PRIMARY,
)
from ....errors import (
    InvalidInput, ProviderError, QuotaExhaustedError, RateLimitError,
    TransientProviderError, PermanentProviderError, classify_provider_error,
)

logger = logging.getLogger("speech_stt")


@dataclass
class WordTiming:
    word: str
    start: float
    end: float
    confidence: Optional[float] = None


@dataclass
class SegmentTiming:
    start: float
    end: float
    text: str
    avg_logprob: Optional[float] = None
    no_speech_prob: Optional[float] = None


@dataclass
class RecognitionResult:
    """Raw output of one engine for one recording."""
    engine: str
    text: str
    segments: List[SegmentTiming] = field(default_factory=list)
    words: List[WordTiming] = field(default_factory=list)
    language: Optional[str] = None
    duration_seconds: Optional[float] = None

    @property
    def avg_logprob(self) -> float:
        values = [s.avg_logprob for s in self.segments if s.avg_logprob is not None]
        return float(np.mean(values)) if values else -1.0

    @property
    def no_speech_prob(self) -> float:
        values = [s.no_speech_prob for s in self.segments if s.no_speech_prob is not None]
        return float(np.mean(values)) if values else 0.0

    @property
    def average_confidence(self) -> float:
        """Mean per-word confidence, or clamp(avg_logprob + 1) when none was reported."""
        values = [w.confidence for w in self.words if w.confidence is not None]
        if values:
            return float(np.clip(np.mean(values), 0.0, 1.0))
        return float(np.clip(self.avg_logprob + 1.0, 0.0, 1.0))


class SpeechEngine(ABC):
    """One speech-to-text engine variant."""

    capability = Capability.SPEECH_TO_TEXT

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def transcribe(self, audio: bytes, credential: Credential,
                   language_hint: str = "en") -> RecognitionResult:
        """Transcribe WAV bytes. Raises ProviderError subclasses on failure."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class WhisperHttpEngine(SpeechEngine):
    """OpenAI-compatible /audio/transcriptions endpoint."""

    def __init__(self, model: str = WHISPER_MODEL_PRIMARY, base_url: str = WHISPER_BASE_URL,
                 name: Optional[str] = None, timeout: int = ASR_TIMEOUT,
                 session: Optional[requests.Session] = None):
        super().__init__(name or model)
        self.model = model
        self.url = f"{base_url.rstrip('/')}/audio/transcriptions"
        self.timeout = timeout
        self._session = session or requests.Session()

    def transcribe(self, audio: bytes, credential: Credential,
                   language_hint: str = "en") -> RecognitionResult:
        if not audio:
            raise InvalidInput("Cannot transcribe empty audio")
        data = {
            "model": self.model,
            "response_format": "verbose_json",
            "temperature": "0",
            "timestamp_granularities[]": ["segment", "word"],
        }
        if language_hint:
            data["language"] = language_hint
        headers = {"Authorization": f"Bearer {credential.secret}"}

        try:
            resp = self._session.post(
                self.url,
                headers=headers,
                data=data,
                files={"file": ("audio.wav", audio, "audio/wav")},
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientProviderError(f"{self.name} request failed: {e}")

        if resp.status_code >= 400:
            raise classify_provider_error(resp.status_code, resp.text, resp.headers.get("retry-after"))

        try:
            payload = resp.json()
        except ValueError:
            raise TransientProviderError(f"{self.name} returned non-JSON body")
        return self._parse_response(payload)

    def _parse_response(self, payload: Dict[str, Any]) -> RecognitionResult:
        segments = [
            SegmentTiming(
                start=float(seg.get("start", 0.0)),
                end=float(seg.get("end", 0.0)),
                text=str(seg.get("text", "")).strip(),
                avg_logprob=seg.get("avg_logprob"),
                no_speech_prob=seg.get("no_speech_prob"),
            )
            for seg in payload.get("segments") or []
            if isinstance(seg, dict)
        ]
        words = [
            WordTiming(
                word=str(w.get("word", "")).strip(),
                start=float(w.get("start", 0.0)),
                end=float(w.get("end", 0.0)),
                confidence=w.get("probability"),
            )
            for w in payload.get("words") or []
            if isinstance(w, dict)
        ]
        return RecognitionResult(
            engine=self.name,
            text=str(payload.get("text") or "").strip(),
            segments=segments,
            words=words,
            language=payload.get("language"),
            duration_seconds=payload.get("duration"),
        )


class GoogleSpeechEngine(SpeechEngine):
    """Google Cloud Speech-to-Text, synchronous recognition with word offsets."""

    def __init__(self, name: str = "google-speech", model: Optional[str] = None,
                 sample_rate: int = SAMPLE_RATE_TARGET, timeout: int = ASR_TIMEOUT,
                 api_key: Optional[str] = None):
        super().__init__(name)
        self.model = model
        # a fixed key overrides the pooled credential secret; the pool still governs call slots
        self.api_key = api_key
        self.sample_rate = sample_rate
        self.timeout = timeout

    def _make_client(self, credential: Credential) -> speech.SpeechClient:
        return speech.SpeechClient(client_options={"api_key": self.api_key or credential.secret})

    def _to_linear16(self, audio: bytes) -> bytes:
        try:
            frames, sr, _ = decode_wav(audio)
        except ValueError as e:
            raise InvalidInput(str(e))
        mono = resample_to(stereo_to_mono(frames), sr, self.sample_rate)
        return to_pcm16(mono).tobytes()

    def transcribe(self, audio: bytes, credential: Credential,
                   language_hint: str = "en") -> RecognitionResult:
        language = language_hint if "-" in language_hint else f"{language_hint}-US"
        config = speech.RecognitionConfig(
            encoding=speech.RecognitionConfig.AudioEncoding.LINEAR16,
            sample_rate_hertz=self.sample_rate,
            language_code=language,
            enable_automatic_punctuation=True,
            enable_word_time_offsets=True,
            enable_word_confidence=True,
            model=self.model or "",
        )
        recognition_audio = speech.RecognitionAudio(content=self._to_linear16(audio))

        try:
            client = self._make_client(credential)
            resp = client.recognize(config=config, audio=recognition_audio, timeout=self.timeout)
        except google_exceptions.GoogleAPICallError as e:
            raise self._map_error(e)

        texts: List[str] = []
        words: List[WordTiming] = []
        segments: List[SegmentTiming] = []
        for result in resp.results:
            if not result.alternatives:
                continue
            best = result.alternatives[0]
            texts.append(best.transcript.strip())
            result_words = [
                WordTiming(
                    word=w.word,
                    start=w.start_time.total_seconds(),
                    end=w.end_time.total_seconds(),
                    confidence=float(w.confidence) if w.confidence else None,
                )
                for w in best.words
            ]
            words.extend(result_words)
            if result_words:
                segments.append(SegmentTiming(result_words[0].start, result_words[-1].end,
                                              best.transcript.strip()))
        return RecognitionResult(engine=self.name, text=" ".join(t for t in texts if t).strip(),
                                 segments=segments, words=words, language=language)

    def _map_error(self, e: google_exceptions.GoogleAPICallError) -> ProviderError:
        message = str(e)
        if isinstance(e, (google_exceptions.ResourceExhausted, google_exceptions.TooManyRequests)):
            classified = classify_provider_error(429, message)
            if isinstance(classified, (RateLimitError, QuotaExhaustedError)):
                return classified
            return RateLimitError(message, status_code=429)
        if isinstance(e, (google_exceptions.ServiceUnavailable, google_exceptions.DeadlineExceeded,
                          google_exceptions.InternalServerError)):
            return TransientProviderError(message, status_code=getattr(e, "code", None))
        if isinstance(e, google_exceptions.PermissionDenied):
            return QuotaExhaustedError(message, status_code=403, permanent=True)
        return PermanentProviderError(message)
