"""Silence trimming invariants."""
import io
import random
import wave

import numpy as np

from speakeval.evaluation.testing import make_speech_wav
from speakeval.infrastructure.audio.processing import (
    SilenceTrimmer, TrimSettings, decode_wav, encode_wav, stereo_to_mono, wav_duration_seconds,
)

SR = 16000


def tone(seconds, amplitude=0.3):
    t = np.arange(int(round(seconds * SR))) / SR
    return amplitude * np.sin(2 * np.pi * 220.0 * t)


def silence(seconds):
    return np.zeros(int(round(seconds * SR)))


def test_leading_silence_trimmed_with_margin():
    audio = make_speech_wav(speech_seconds=2.0, leading_silence=0.5)
    result = SilenceTrimmer().trim(audio)

    assert result.was_trimmed
    # the cut lands before the speech onset
    assert 0 < result.leading_ms_trimmed < 500
    assert result.trailing_ms_trimmed == 0
    assert result.trimmed_duration_ms >= 2000
    assert result.error is None


def test_leading_trim_never_exceeds_cap():
    audio = make_speech_wav(speech_seconds=2.0, leading_silence=2.0)
    result = SilenceTrimmer().trim(audio)
    assert result.leading_ms_trimmed == 800


def test_no_silence_returns_original_bytes():
    audio = make_speech_wav(speech_seconds=2.0)
    result = SilenceTrimmer().trim(audio)
    assert not result.was_trimmed
    assert result.audio == audio
    assert result.original_duration_ms == result.trimmed_duration_ms == 2000


def test_short_recording_is_left_alone():
    audio = make_speech_wav(speech_seconds=1.0, leading_silence=0.5)
    result = SilenceTrimmer().trim(audio)
    assert not result.was_trimmed
    assert result.audio == audio


def test_trailing_silence_kept_unless_enabled():
    audio = make_speech_wav(speech_seconds=2.0, trailing_silence=2.0)
    assert SilenceTrimmer().trim(audio).trailing_ms_trimmed == 0

    result = SilenceTrimmer(TrimSettings(trim_trailing=True)).trim(audio)
    assert result.trailing_ms_trimmed > 0
    # padding keeps the end of speech
    assert result.trimmed_duration_ms > 2000


def test_undecodable_audio_passes_through():
    result = SilenceTrimmer().trim(b"not a wav file")
    assert result.audio == b"not a wav file"
    assert not result.was_trimmed
    assert result.error


def test_trimmed_audio_is_valid_wav():
    audio = make_speech_wav(speech_seconds=2.0, leading_silence=0.6)
    result = SilenceTrimmer().trim(audio)
    frames, sr, channels = decode_wav(result.audio)
    assert sr == 16000
    assert channels == 1
    assert abs(wav_duration_seconds(result.audio) - result.duration_seconds) < 0.01


def test_stereo_is_downmixed():
    t = np.arange(32000) / 16000
    left = (0.3 * np.sin(2 * np.pi * 220 * t) * 32767).astype("<i2")
    right = np.zeros_like(left)
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(2)
        wf.setsampwidth(2)
        wf.setframerate(16000)
        wf.writeframes(np.column_stack([left, right]).tobytes())

    frames, sr, channels = decode_wav(buffer.getvalue())
    assert channels == 2
    assert frames.shape == (32000, 2)
    mono = stereo_to_mono(frames)
    assert mono.shape == (32000,)
    assert np.max(np.abs(mono)) < 0.16


def test_wav_duration():
    audio = make_speech_wav(speech_seconds=2.0, leading_silence=0.5)
    assert wav_duration_seconds(audio) == 2.5
    assert wav_duration_seconds(b"garbage") == 0.0


def test_pause_inside_answer_is_not_trailing_silence():
    audio = encode_wav(np.concatenate([tone(3.0), silence(0.5), tone(2.0)]).astype(np.float32), SR)
    result = SilenceTrimmer(TrimSettings(trim_trailing=True)).trim(audio)

    assert result.trailing_ms_trimmed == 0
    assert not result.was_trimmed
    assert result.audio == audio


def test_trailing_cut_lands_after_final_speech():
    samples = np.concatenate([tone(3.0), silence(0.5), tone(2.0), silence(1.5)])
    result = SilenceTrimmer(TrimSettings(trim_trailing=True)).trim(encode_wav(samples.astype(np.float32), SR))

    assert result.trailing_ms_trimmed > 0
    assert result.trimmed_duration_ms >= 5500


def test_fade_out_keeps_single_padding():
    # window-aligned: 64 tone windows, 10 fading windows, 50 silent windows
    win = int(SR * 0.03)
    t = np.arange(win) / SR
    fade = [a * np.sin(2 * np.pi * 220.0 * t)
            for a in (0.010, 0.0075, 0.0056, 0.0042, 0.0028, 0.0018, 0.0012, 0.0008, 0.0005, 0.0003)]
    samples = np.concatenate([tone(64 * win / SR), *fade, silence(50 * win / SR)])
    result = SilenceTrimmer(TrimSettings(trim_trailing=True)).trim(encode_wav(samples.astype(np.float32), SR))

    # speech ends with the fourth fading window, followed by 0.5s padding
    assert result.trimmed_duration_ms == 2540
    assert result.trailing_ms_trimmed == 1180


def test_random_recordings_never_lose_speech():
    rng = random.Random(2024)
    for _ in range(40):
        leading = round(rng.uniform(0.0, 1.5), 2)
        speech = round(rng.uniform(0.5, 4.0), 2)
        trailing = round(rng.uniform(0.0, 2.0), 2)
        trim_trailing = rng.random() < 0.5
        audio = make_speech_wav(speech_seconds=speech, leading_silence=leading, trailing_silence=trailing)

        result = SilenceTrimmer(TrimSettings(trim_trailing=trim_trailing)).trim(audio)

        assert result.leading_ms_trimmed <= leading * 1000
        if result.was_trimmed:
            assert result.trimmed_duration_ms >= 1500
        # the kept range still reaches the end of speech
        assert result.leading_ms_trimmed + result.trimmed_duration_ms >= (leading + speech) * 1000 - 2
        if not trim_trailing:
            assert result.trailing_ms_trimmed == 0
