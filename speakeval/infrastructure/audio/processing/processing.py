"""
Basic audio processing functions including WAV decoding, format conversions and resampling.
"""
import io
import math
import wave
from typing import Tuple

import numpy as np
from scipy.signal import resample_poly


def stereo_to_mono(x: np.ndarray) -> np.ndarray:
    """Convert multi-channel audio to mono by averaging channels."""
    if x.ndim == 1:
        return x
    return np.mean(x, axis=1)


def decode_wav(data: bytes) -> Tuple[np.ndarray, int, int]:
    """
    Decode WAV bytes to float32 samples in [-1, 1].

    Returns:
        (samples shaped (frames, channels), sample rate, channel count)

    Raises:
        ValueError: If the bytes are not a PCM WAV file this decoder supports
    """
    try:
        with wave.open(io.BytesIO(data), "rb") as wf:
            channels = wf.getnchannels()
            width = wf.getsampwidth()
            sr = wf.getframerate()
            frames = wf.readframes(wf.getnframes())
    except (wave.Error, EOFError) as e:
        raise ValueError(f"Unreadable WAV data: {e}")

    if width == 1:
        pcm = (np.frombuffer(frames, dtype=np.uint8).astype(np.float32) - 128.0) / 128.0
    elif width == 2:
        pcm = np.frombuffer(frames, dtype="<i2").astype(np.float32) / 32768.0
    elif width == 4:
        pcm = np.frombuffer(frames, dtype="<i4").astype(np.float32) / 2147483648.0
    else:
        raise ValueError(f"Unsupported sample width: {width} bytes")

    usable = len(pcm) - (len(pcm) % channels)
    return pcm[:usable].reshape(-1, channels), sr, channels


def to_pcm16(x: np.ndarray) -> np.ndarray:
    """Convert float samples in [-1, 1] to int16 PCM."""
    return (np.clip(x, -1.0, 1.0) * 32767.0).astype("<i2")


def encode_wav(samples: np.ndarray, sr: int) -> bytes:
    """Encode mono float samples as 16-bit PCM WAV bytes."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sr)
        wf.writeframes(to_pcm16(samples).tobytes())
    return buffer.getvalue()


def resample_to(mono: np.ndarray, sr_from: int, sr_to: int) -> np.ndarray:
    """Resample mono audio with a polyphase filter."""
    if sr_from == sr_to:
        return mono.astype(np.float32)
    g = math.gcd(sr_from, sr_to)
    return resample_poly(mono, up=sr_to // g, down=sr_from // g).astype(np.float32)


def wav_duration_seconds(data: bytes) -> float:
    """Duration of a WAV blob, 0.0 if it cannot be parsed."""
    try:
        with wave.open(io.BytesIO(data), "rb") as wf:
            rate = wf.getframerate()
            return wf.getnframes() / float(rate) if rate else 0.0
    except (wave.Error, EOFError):
        return 0.0
