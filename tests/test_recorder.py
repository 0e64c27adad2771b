"""Tests for the call recorder, recording storage and the mulaw codec."""

import numpy as np
import pytest
from scipy.io import wavfile

from fakes import mulaw_payload
from voicebridge.audio.codec import (
    base64_decode_audio,
    base64_encode_audio,
    generate_silence_mulaw,
    mix_pcm16,
    mulaw_to_pcm16,
)
from voicebridge.recording.recorder import (
    AudioRecorder,
    RecorderManager,
    RecordingError,
    recording_filename,
)
from voicebridge.recording.storage import (
    RecordingNotFoundError,
    delete_recording,
    list_recordings,
    parse_recording_filename,
    recording_path,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestCodec:
    def test_silence_decodes_to_zero(self):
        pcm = mulaw_to_pcm16(generate_silence_mulaw(20))
        assert pcm.dtype == np.int16
        assert pcm.size == 160
        assert not pcm.any()

    def test_extremes(self):
        pcm = mulaw_to_pcm16(bytes([0x00, 0x80]))
        assert pcm[0] == -32124
        assert pcm[1] == 32124

    def test_base64_helpers(self):
        raw = b"\x00\x7f\xff"
        assert base64_decode_audio(base64_encode_audio(raw)) == raw

    def test_mix_pads_and_clips(self):
        a = np.array([30000, 100, 5], dtype=np.int16)
        b = np.array([10000, -50], dtype=np.int16)
        mixed = mix_pcm16(a, b)
        assert mixed.tolist() == [32767, 50, 5]


class TestAudioRecorder:
    @pytest.mark.asyncio
    async def test_incoming_only(self, tmp_path):
        recorder = AudioRecorder("CA1", tmp_path, clock=FakeClock())
        recorder.start()
        recorder.add_incoming_audio(mulaw_payload(0x00))

        paths = await recorder.stop()

        assert paths.incoming is not None and paths.incoming.exists()
        assert paths.outgoing is None
        assert paths.conversation is None
        assert paths.incoming.name.startswith("CA1_")
        assert paths.incoming.name.endswith("_incoming.wav")
        assert recorder.recording is False

    @pytest.mark.asyncio
    async def test_both_directions_write_conversation(self, tmp_path):
        recorder = AudioRecorder("CA2", tmp_path, clock=FakeClock())
        recorder.start()
        recorder.add_incoming_audio(mulaw_payload(0x00))
        recorder.add_outgoing_audio(mulaw_payload(0x80))

        paths = await recorder.stop()

        assert len(paths.produced()) == 3
        rate, samples = wavfile.read(paths.conversation)
        assert rate == 8000
        assert samples.dtype == np.int16
        assert samples.size == 160
        # Opposite-sign full-scale frames cancel when mixed
        assert not samples.any()

    @pytest.mark.asyncio
    async def test_late_chunk_is_padded_with_silence(self, tmp_path):
        clock = FakeClock()
        recorder = AudioRecorder("CA3", tmp_path, clock=clock)
        recorder.start()
        recorder.add_incoming_audio(mulaw_payload(0x00))
        clock.now = 1.0
        recorder.add_incoming_audio(mulaw_payload(0x00))

        paths = await recorder.stop()

        _, samples = wavfile.read(paths.incoming)
        assert samples.size == 8000 + 160
        assert not samples[160:8000].any()

    @pytest.mark.asyncio
    async def test_jitter_is_not_padded(self, tmp_path):
        clock = FakeClock()
        recorder = AudioRecorder("CA4", tmp_path, clock=clock)
        recorder.start()
        recorder.add_incoming_audio(mulaw_payload(0x00))
        clock.now = 0.05
        recorder.add_incoming_audio(mulaw_payload(0x00))

        paths = await recorder.stop()

        _, samples = wavfile.read(paths.incoming)
        assert samples.size == 320

    @pytest.mark.asyncio
    async def test_double_start_keeps_buffers(self, tmp_path):
        recorder = AudioRecorder("CA5", tmp_path, clock=FakeClock())
        recorder.start()
        recorder.add_incoming_audio(mulaw_payload(0x00))

        with pytest.raises(RecordingError):
            recorder.start()

        paths = await recorder.stop()
        _, samples = wavfile.read(paths.incoming)
        assert samples.size == 160

    @pytest.mark.asyncio
    async def test_stop_when_idle_raises(self, tmp_path):
        recorder = AudioRecorder("CA6", tmp_path)
        with pytest.raises(RecordingError):
            await recorder.stop()

    @pytest.mark.asyncio
    async def test_audio_ignored_when_idle(self, tmp_path):
        recorder = AudioRecorder("CA7", tmp_path, clock=FakeClock())
        recorder.add_incoming_audio(mulaw_payload(0x00))
        recorder.start()

        paths = await recorder.stop()

        assert paths.produced() == []
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_bad_payload_skipped(self, tmp_path):
        recorder = AudioRecorder("CA8", tmp_path, clock=FakeClock())
        recorder.start()
        recorder.add_incoming_audio("abc")
        recorder.add_incoming_audio(123)
        recorder.add_outgoing_audio(["AAAA"])
        recorder.add_incoming_audio(mulaw_payload(0x00))

        paths = await recorder.stop()

        _, samples = wavfile.read(paths.incoming)
        assert samples.size == 160

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, tmp_path):
        recorder = AudioRecorder("CA9", tmp_path, clock=FakeClock())
        recorder.start()
        await recorder.stop()
        recorder.start()
        assert recorder.recording is True


class TestRecorderManager:
    def test_get_or_create_reuses(self, tmp_path):
        manager = RecorderManager(tmp_path)
        first = manager.get_or_create("CA1")
        assert manager.get_or_create("CA1") is first
        assert manager.get("CA2") is None

    def test_active_count_and_remove(self, tmp_path):
        manager = RecorderManager(tmp_path)
        manager.get_or_create("CA1").start()
        manager.get_or_create("CA2")
        assert manager.active_count() == 1
        manager.remove("CA1")
        assert manager.get("CA1") is None
        assert manager.active_count() == 0


def _touch(directory, name: str, size: int = 4):
    path = directory / name
    path.write_bytes(b"\x00" * size)
    return path


class TestRecordingStorage:
    def test_filename_round_trip(self):
        name = recording_filename("CA_x", "1700000000000", "incoming")
        assert name == "CA_x_1700000000000_incoming.wav"
        assert parse_recording_filename(name) == ("CA_x", "1700000000000", "incoming")

    def test_parse_rejects_foreign_names(self):
        assert parse_recording_filename("notes.txt") is None
        assert parse_recording_filename("nounderscores.wav") is None

    def test_list_newest_first_and_filter(self, tmp_path):
        _touch(tmp_path, "CA1_1000_incoming.wav")
        _touch(tmp_path, "CA1_1000_outgoing.wav")
        _touch(tmp_path, "CA2_2000_incoming.wav", size=10)
        _touch(tmp_path, "readme.txt")

        all_recordings = list_recordings(tmp_path)
        assert [r.filename for r in all_recordings][0] == "CA2_2000_incoming.wav"
        assert len(all_recordings) == 3
        assert all_recordings[0].size == 10
        assert all_recordings[0].direction == "incoming"

        only_ca1 = list_recordings(tmp_path, call_id="CA1")
        assert {r.filename for r in only_ca1} == {
            "CA1_1000_incoming.wav",
            "CA1_1000_outgoing.wav",
        }

    def test_list_missing_directory(self, tmp_path):
        assert list_recordings(tmp_path / "absent") == []

    def test_path_traversal_rejected(self, tmp_path):
        with pytest.raises(RecordingNotFoundError):
            recording_path(tmp_path, "../CA1_1000_incoming.wav")

    def test_missing_file(self, tmp_path):
        with pytest.raises(RecordingNotFoundError):
            recording_path(tmp_path, "CA1_1000_incoming.wav")

    def test_delete(self, tmp_path):
        path = _touch(tmp_path, "CA1_1000_incoming.wav")
        delete_recording(tmp_path, "CA1_1000_incoming.wav")
        assert not path.exists()
        with pytest.raises(RecordingNotFoundError):
            delete_recording(tmp_path, "CA1_1000_incoming.wav")
