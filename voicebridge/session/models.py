"""Per-call session state shared by the relay and the dispatcher."""

from datetime import UTC, datetime

from pydantic import BaseModel, Field

MARK_NAME = "responsePart"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CallMetadata(BaseModel):
    """What the call-initiation side knows before the media stream starts."""
    call_id: str
    language: str
    persona_type: str
    recording_enabled: bool = False
    phone_number: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


class CallSession(BaseModel):
    """State for one active call.

    ``egress_start_timestamp_ms`` and ``last_assistant_item_id`` are set and
    cleared together: an utterance is in flight iff both are present.
    Timestamps are in the telephony stream's ingress clock, not wall time.
    """
    call_id: str
    language: str
    persona_type: str
    recording_enabled: bool = False
    stream_id: str | None = None
    latest_ingress_timestamp_ms: int = 0
    last_assistant_item_id: str | None = None
    playback_mark_queue: list[str] = Field(default_factory=list)
    egress_start_timestamp_ms: int | None = None
    started_at: datetime = Field(default_factory=_utcnow)

    def record_ingress(self, timestamp_ms: int) -> None:
        # Out-of-order frames never move the clock backwards.
        if timestamp_ms > self.latest_ingress_timestamp_ms:
            self.latest_ingress_timestamp_ms = timestamp_ms

    def begin_egress(self, item_id: str | None) -> None:
        """Note an outgoing audio delta for ``item_id``.

        The first delta of an utterance pins its start to the current
        ingress clock; later deltas only refresh the item id.
        """
        if not item_id:
            return
        if self.egress_start_timestamp_ms is None:
            self.egress_start_timestamp_ms = self.latest_ingress_timestamp_ms
        self.last_assistant_item_id = item_id

    def enqueue_mark(self, name: str = MARK_NAME) -> str:
        self.playback_mark_queue.append(name)
        return name

    def acknowledge_mark(self) -> bool:
        if not self.playback_mark_queue:
            return False
        self.playback_mark_queue.pop(0)
        return True

    def barge_in_pending(self) -> bool:
        """True when the caller would be talking over audible assistant speech."""
        return bool(self.playback_mark_queue) and self.egress_start_timestamp_ms is not None

    def elapsed_playback_ms(self) -> int:
        if self.egress_start_timestamp_ms is None:
            return 0
        return self.latest_ingress_timestamp_ms - self.egress_start_timestamp_ms

    def reset_playback(self) -> None:
        self.playback_mark_queue.clear()
        self.last_assistant_item_id = None
        self.egress_start_timestamp_ms = None
