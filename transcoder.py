# transcoder.py - Conversion between device audio and backend wire formats
"""
Devices hand us float32 samples in [-1.0, 1.0]; backends speak 16-bit
signed little-endian PCM, usually wrapped in base64. Everything here is
stateless.
"""

import base64
import numpy as np

from models import AudioSegment

PCM16_SCALE = 32768.0


def pcm16_bytes(frame) -> bytes:
    """
    Convert float samples to 16-bit little-endian PCM bytes.

    Samples outside [-1.0, 1.0] are clamped; scaling truncates toward zero.
    """
    samples = np.asarray(frame, dtype=np.float32).reshape(-1)
    if samples.size == 0:
        return b""
    scaled = np.clip(samples, -1.0, 1.0) * PCM16_SCALE
    return np.clip(scaled, -32768, 32767).astype("<i2").tobytes()


def encode(frame) -> str:
    """
    Encode a captured frame as base64 16-bit PCM for the wire.

    Returns "" for an empty frame.
    """
    data = pcm16_bytes(frame)
    if not data:
        return ""
    return base64.b64encode(data).decode("ascii")


def decode(blob: str) -> bytes:
    """
    Undo the base64 framing. PCM layout is left to the consumer.
    """
    if not blob:
        return b""
    return base64.b64decode(blob)


def to_playable_buffer(data: bytes, sample_rate: int, channel_count: int = 1) -> np.ndarray:
    """
    Rebuild float32 samples from interleaved 16-bit little-endian PCM.

    Args:
        data: Raw PCM bytes; a trailing odd byte is ignored
        sample_rate: Sample rate the PCM was produced at
        channel_count: Number of interleaved channels

    Returns:
        np.ndarray: float32 samples in [-1.0, 1.0], shaped (frames, channels)
    """
    if sample_rate <= 0 or channel_count <= 0:
        raise ValueError("sample_rate and channel_count must be positive")
    usable = len(data) - (len(data) % 2)
    ints = np.frombuffer(data[:usable], dtype="<i2")
    frames = ints.size // channel_count
    ints = ints[:frames * channel_count].reshape(frames, channel_count)
    return ints.astype(np.float32) / PCM16_SCALE


def to_segment(data: bytes, sample_rate: int, channel_count: int = 1) -> AudioSegment:
    """Wrap decoded PCM bytes as an AudioSegment ready for scheduling."""
    return AudioSegment(
        samples=to_playable_buffer(data, sample_rate, channel_count),
        sample_rate=sample_rate,
        channel_count=channel_count,
    )
