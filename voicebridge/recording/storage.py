"""Listing, lookup and deletion of persisted recordings."""

from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel

from voicebridge.utils.logging import get_logger

logger = get_logger(__name__)


class RecordingNotFoundError(Exception):
    pass


class RecordingInfo(BaseModel):
    filename: str
    call_id: str
    timestamp: str
    direction: str
    size: int
    created_at: datetime


def parse_recording_filename(filename: str) -> tuple[str, str, str] | None:
    """Split ``{call_id}_{timestamp}_{direction}.wav``; None if it doesn't match."""
    if not filename.endswith(".wav"):
        return None
    parts = filename[: -len(".wav")].rsplit("_", 2)
    if len(parts) != 3 or not all(parts):
        return None
    call_id, timestamp, direction = parts
    return call_id, timestamp, direction


def list_recordings(directory: Path, call_id: str | None = None) -> list[RecordingInfo]:
    """List recordings, newest first, optionally filtered by call id."""
    directory = Path(directory)
    if not directory.is_dir():
        return []

    recordings = []
    for path in directory.glob("*.wav"):
        parsed = parse_recording_filename(path.name)
        if parsed is None:
            continue
        file_call_id, timestamp, direction = parsed
        if call_id and file_call_id != call_id:
            continue
        stat = path.stat()
        recordings.append(
            RecordingInfo(
                filename=path.name,
                call_id=file_call_id,
                timestamp=timestamp,
                direction=direction,
                size=stat.st_size,
                created_at=datetime.fromtimestamp(stat.st_mtime, UTC),
            )
        )

    recordings.sort(key=lambda r: (r.timestamp, r.filename), reverse=True)
    return recordings


def recording_path(directory: Path, filename: str) -> Path:
    """Resolve a recording filename inside ``directory``.

    Raises RecordingNotFoundError for missing files and for names that
    would escape the directory.
    """
    if Path(filename).name != filename or parse_recording_filename(filename) is None:
        raise RecordingNotFoundError(filename)
    path = Path(directory) / filename
    if not path.is_file():
        raise RecordingNotFoundError(filename)
    return path


def delete_recording(directory: Path, filename: str) -> None:
    path = recording_path(directory, filename)
    path.unlink()
    logger.info("recording_deleted", filename=filename)
