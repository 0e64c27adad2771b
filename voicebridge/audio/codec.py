"""G.711 mu-law helpers for the call recorder.

Twilio Media Streams and the realtime model both exchange mulaw 8kHz mono
(base64 encoded). The relay forwards payloads untouched; only the recorder
decodes them to PCM16 for WAV files.
"""

import base64

import numpy as np

SAMPLE_RATE = 8000
MULAW_SILENCE = 0xFF

_MULAW_BIAS = 0x84


def base64_decode_audio(payload: str) -> bytes:
    """Decode base64-encoded audio from a media message."""
    return base64.b64decode(payload)


def base64_encode_audio(audio: bytes) -> str:
    """Encode audio bytes to base64 for a media message."""
    return base64.b64encode(audio).decode("ascii")


def mulaw_to_pcm16(mulaw_data: bytes) -> np.ndarray:
    """Decode G.711 mu-law bytes to int16 PCM samples at the same rate."""
    u = np.bitwise_not(np.frombuffer(mulaw_data, dtype=np.uint8)).astype(np.int32)
    sign = u & 0x80
    exponent = (u >> 4) & 0x07
    mantissa = u & 0x0F

    magnitude = (((mantissa << 3) + _MULAW_BIAS) << exponent) - _MULAW_BIAS
    pcm = np.where(sign != 0, -magnitude, magnitude)
    return pcm.astype(np.int16)


def mix_pcm16(*tracks: np.ndarray) -> np.ndarray:
    """Sum int16 tracks (zero-padded to the longest) with clipping."""
    length = max((t.size for t in tracks), default=0)
    mixed = np.zeros(length, dtype=np.int32)
    for track in tracks:
        mixed[: track.size] += track.astype(np.int32)
    return np.clip(mixed, -32768, 32767).astype(np.int16)


def generate_silence_mulaw(duration_ms: int, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Generate mulaw silence for a given duration.

    Args:
        duration_ms: Duration in milliseconds.
        sample_rate: Sample rate (default 8kHz for Twilio).

    Returns:
        Mulaw-encoded silence bytes.
    """
    num_samples = int(sample_rate * duration_ms / 1000)
    return bytes([MULAW_SILENCE]) * num_samples
