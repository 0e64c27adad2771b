"""Synchronized two-direction call recorder.

Each direction is a PCM16 track laid out on one shared clock that starts
with ``start()``. Incoming frames arrive in real time and are appended as
they come; outgoing deltas arrive in bursts faster than real time and are
appended back to back. When a chunk arrives noticeably later than the end
of its track, the gap is filled with silence so that both tracks, and the
merged conversation track, stay aligned with wall time.
"""

import asyncio
import binascii
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import numpy as np
from pydantic import BaseModel
from scipy.io import wavfile

from voicebridge.audio.codec import SAMPLE_RATE, base64_decode_audio, mix_pcm16, mulaw_to_pcm16
from voicebridge.utils.logging import get_logger

logger = get_logger(__name__)

INCOMING = "incoming"
OUTGOING = "outgoing"
CONVERSATION = "conversation"

# Arrival jitter below this is not treated as a gap
GAP_TOLERANCE_MS = 60


class RecordingError(Exception):
    """Recorder used in the wrong state (start while recording, stop while idle)."""


class RecordingPaths(BaseModel):
    incoming: Path | None = None
    outgoing: Path | None = None
    conversation: Path | None = None

    def produced(self) -> list[Path]:
        return [p for p in (self.incoming, self.outgoing, self.conversation) if p]


class _Track:
    def __init__(self) -> None:
        self.chunks: list[np.ndarray] = []
        self.length = 0

    def place(self, pcm: np.ndarray, position: int, tolerance: int) -> None:
        if position - self.length > tolerance:
            gap = position - self.length
            self.chunks.append(np.zeros(gap, dtype=np.int16))
            self.length += gap
        self.chunks.append(pcm)
        self.length += pcm.size

    def samples(self) -> np.ndarray:
        if not self.chunks:
            return np.zeros(0, dtype=np.int16)
        return np.concatenate(self.chunks)


def recording_filename(call_id: str, timestamp: str, direction: str) -> str:
    return f"{call_id}_{timestamp}_{direction}.wav"


class AudioRecorder:
    """Records both audio directions of one call to WAV files."""

    def __init__(
        self,
        call_id: str,
        directory: Path,
        clock: Callable[[], float] = time.monotonic,
        sample_rate: int = SAMPLE_RATE,
    ):
        self.call_id = call_id
        self._directory = Path(directory)
        self._clock = clock
        self._sample_rate = sample_rate
        self._tolerance = sample_rate * GAP_TOLERANCE_MS // 1000
        self._recording = False
        self._started_clock = 0.0
        self._timestamp = ""
        self._incoming = _Track()
        self._outgoing = _Track()

    @property
    def recording(self) -> bool:
        return self._recording

    def start(self) -> None:
        if self._recording:
            raise RecordingError(f"Recording already in progress for call {self.call_id}")

        self._incoming = _Track()
        self._outgoing = _Track()
        self._started_clock = self._clock()
        self._timestamp = str(int(datetime.now(UTC).timestamp() * 1000))
        self._recording = True
        logger.info("recording_started", call_id=self.call_id, timestamp=self._timestamp)

    def add_incoming_audio(self, payload: str) -> None:
        self._add(self._incoming, payload, INCOMING)

    def add_outgoing_audio(self, payload: str) -> None:
        self._add(self._outgoing, payload, OUTGOING)

    def _add(self, track: _Track, payload: str, direction: str) -> None:
        if not self._recording or not payload:
            return
        try:
            pcm = mulaw_to_pcm16(base64_decode_audio(payload))
        except (binascii.Error, TypeError, ValueError) as e:
            logger.warning(
                "recording_bad_payload",
                call_id=self.call_id,
                direction=direction,
                error=str(e),
            )
            return
        position = int((self._clock() - self._started_clock) * self._sample_rate)
        track.place(pcm, position, self._tolerance)

    async def stop(self) -> RecordingPaths:
        """Finish recording and write every non-empty track to disk."""
        if not self._recording:
            raise RecordingError(f"No recording in progress for call {self.call_id}")
        self._recording = False

        incoming = self._incoming.samples()
        outgoing = self._outgoing.samples()
        self._incoming = _Track()
        self._outgoing = _Track()

        paths = await asyncio.to_thread(self._write_tracks, incoming, outgoing)
        logger.info(
            "recording_stopped",
            call_id=self.call_id,
            files=[p.name for p in paths.produced()],
        )
        return paths

    def _write_tracks(self, incoming: np.ndarray, outgoing: np.ndarray) -> RecordingPaths:
        self._directory.mkdir(parents=True, exist_ok=True)
        paths = RecordingPaths()
        if incoming.size:
            paths.incoming = self._write(INCOMING, incoming)
        if outgoing.size:
            paths.outgoing = self._write(OUTGOING, outgoing)
        if incoming.size and outgoing.size:
            paths.conversation = self._write(CONVERSATION, mix_pcm16(incoming, outgoing))
        return paths

    def _write(self, direction: str, samples: np.ndarray) -> Path:
        path = self._directory / recording_filename(self.call_id, self._timestamp, direction)
        wavfile.write(path, self._sample_rate, samples)
        return path


class RecorderManager:
    """Process-wide map of recorders keyed by call id."""

    def __init__(self, directory: Path = Path("recordings")):
        self.directory = Path(directory)
        self._lock = threading.Lock()
        self._recorders: dict[str, AudioRecorder] = {}

    def get_or_create(self, call_id: str) -> AudioRecorder:
        with self._lock:
            recorder = self._recorders.get(call_id)
            if recorder is None:
                recorder = AudioRecorder(call_id, self.directory)
                self._recorders[call_id] = recorder
            return recorder

    def get(self, call_id: str) -> AudioRecorder | None:
        with self._lock:
            return self._recorders.get(call_id)

    def remove(self, call_id: str) -> None:
        with self._lock:
            self._recorders.pop(call_id, None)

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for r in self._recorders.values() if r.recording)


recorder_manager = RecorderManager()
