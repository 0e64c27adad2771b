"""Process-wide registry of active calls.

Holds two maps keyed by Twilio Call SID: call metadata registered when a
call is placed, and the live ``CallSession`` created when its media stream
starts. These (and the recorder manager) are the only mutable structures
shared across calls, so every access goes through one lock.
"""

import threading

from voicebridge.session.models import CallMetadata, CallSession
from voicebridge.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_LANGUAGE = "english"
DEFAULT_PERSONA = "fallback_assistant"


class SessionRegistry:
    """Keyed store of call metadata and active sessions."""

    def __init__(
        self,
        default_language: str = DEFAULT_LANGUAGE,
        default_persona: str = DEFAULT_PERSONA,
    ):
        self.default_language = default_language
        self.default_persona = default_persona
        self._lock = threading.Lock()
        self._metadata: dict[str, CallMetadata] = {}
        self._sessions: dict[str, CallSession] = {}

    def register_call(
        self,
        call_id: str,
        language: str | None = None,
        persona_type: str | None = None,
        recording_enabled: bool = False,
        phone_number: str = "",
    ) -> CallMetadata:
        """Store caller-supplied metadata for a later stream start."""
        metadata = CallMetadata(
            call_id=call_id,
            language=language or self.default_language,
            persona_type=persona_type or self.default_persona,
            recording_enabled=recording_enabled,
            phone_number=phone_number,
        )
        with self._lock:
            self._metadata[call_id] = metadata
        logger.info(
            "call_registered",
            call_id=call_id,
            language=metadata.language,
            persona_type=metadata.persona_type,
            recording_enabled=recording_enabled,
        )
        return metadata

    def get_metadata(self, call_id: str) -> CallMetadata | None:
        with self._lock:
            return self._metadata.get(call_id)

    def forget_call(self, call_id: str) -> None:
        """Drop registered metadata without touching a live session."""
        with self._lock:
            self._metadata.pop(call_id, None)

    def create_session(
        self, call_id: str, metadata: CallMetadata | None = None
    ) -> CallSession:
        """Create the session for ``call_id``, replacing any stale one."""
        with self._lock:
            if metadata is None:
                metadata = self._metadata.get(call_id)
            session = CallSession(
                call_id=call_id,
                language=metadata.language if metadata else self.default_language,
                persona_type=metadata.persona_type if metadata else self.default_persona,
                recording_enabled=metadata.recording_enabled if metadata else False,
            )
            replaced = call_id in self._sessions
            self._sessions[call_id] = session

        logger.info(
            "session_created",
            call_id=call_id,
            language=session.language,
            persona_type=session.persona_type,
            recording_enabled=session.recording_enabled,
            from_metadata=metadata is not None,
            replaced=replaced,
        )
        return session

    def get(self, call_id: str) -> CallSession | None:
        """Return the session, or None for unknown/ended calls."""
        with self._lock:
            return self._sessions.get(call_id)

    def remove(self, call_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(call_id, None)
            self._metadata.pop(call_id, None)
        if session is not None:
            logger.info("session_removed", call_id=call_id)

    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._metadata.clear()


session_registry = SessionRegistry()
