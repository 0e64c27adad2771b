"""Twilio Media Streams <-> OpenAI Realtime relay, the core of each call.

One ``RealtimeRelay`` serves one phone call:
  Caller audio (Twilio) → input_audio_buffer.append → Realtime model
  Realtime audio deltas → Twilio media frames (+ playback marks) → Caller

Designed for natural, real-time conversation:
- Audio is relayed verbatim; no transcoding on the conversational path
- Ingress is forwarded to the model before it is mirrored to the recorder
- Barge-in: when the model reports caller speech while assistant audio is
  still audible, the model's item is truncated at the point the caller heard
  and Twilio's playback buffer is cleared
- Tool calls run as background tasks so audio keeps flowing
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState
from websockets.exceptions import ConnectionClosed

from voicebridge.persona.prompts import build_instructions, resolve_voice
from voicebridge.realtime.events import (
    AUDIO_DELTA_EVENTS,
    ERROR,
    FUNCTION_CALL_ARGUMENTS_DONE,
    LOG_EVENT_TYPES,
    SESSION_UPDATED,
    SPEECH_STARTED,
    audio_append,
    truncate_item,
)
from voicebridge.realtime.peer import PeerConnectionError, RealtimePeer
from voicebridge.recording.recorder import RecorderManager, RecordingError, recorder_manager
from voicebridge.session.models import CallSession
from voicebridge.session.registry import SessionRegistry, session_registry
from voicebridge.tools.dispatcher import FunctionCallDispatcher
from voicebridge.tools.functions import TOOLS
from voicebridge.utils.logging import get_logger

logger = get_logger(__name__)

PeerFactory = Callable[[str], Awaitable[RealtimePeer]]


class RelayState(str, Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class RealtimeRelay:
    """Relays a single Twilio Media Stream WebSocket to the realtime model."""

    def __init__(
        self,
        websocket: WebSocket,
        peer_factory: PeerFactory,
        voice: str = "alloy",
        model: str = "gpt-4o-realtime-preview",
        tools: list[dict[str, Any]] | None = None,
        registry: SessionRegistry | None = None,
        recorders: RecorderManager | None = None,
    ):
        self._ws = websocket
        self._peer_factory = peer_factory
        self._voice = voice
        self._model = model
        self._tools = TOOLS if tools is None else tools
        self._registry = registry or session_registry
        self._recorders = recorders or recorder_manager

        self.state = RelayState.INITIALIZING
        self._stream_sid: str | None = None
        self._session: CallSession | None = None
        self._peer: RealtimePeer | None = None
        self._dispatcher: FunctionCallDispatcher | None = None
        self._twilio_messages = None
        self._function_tasks: set[asyncio.Task] = set()

    @property
    def call_id(self) -> str | None:
        return self._session.call_id if self._session else None

    async def handle(self) -> None:
        """Run the relay until either leg ends, then tear the call down."""
        self._twilio_messages = self._ws.iter_text()
        try:
            if not await self._wait_for_start():
                return
            await self._open_peer()
            self.state = RelayState.ACTIVE
            await self._relay()

        except PeerConnectionError as e:
            logger.error("relay_peer_unavailable", call_id=self.call_id, error=str(e))
        except (WebSocketDisconnect, ConnectionClosed) as e:
            logger.info(
                "relay_disconnected",
                call_id=self.call_id,
                error_type=type(e).__name__,
            )
        except Exception as e:
            logger.error(
                "relay_error",
                call_id=self.call_id,
                error=str(e),
                error_type=type(e).__name__,
            )
        finally:
            await self._cleanup()

    async def _wait_for_start(self) -> bool:
        """Consume telephony messages until the stream starts."""
        async for message in self._twilio_messages:
            data = self._parse_twilio_message(message)
            if data is None:
                continue
            if not await self._handle_twilio_message(data):
                return False
            if self._session is not None:
                return True
        logger.info("media_stream_closed_before_start")
        return False

    async def _open_peer(self) -> None:
        session = self._session
        self._peer = await self._peer_factory(session.call_id)
        self._dispatcher = FunctionCallDispatcher(self._peer, session.call_id)
        await self._peer.configure(
            instructions=build_instructions(session.language, session.persona_type),
            tools=self._tools,
            voice=resolve_voice(session.persona_type, self._voice),
            model=self._model,
        )

    async def _relay(self) -> None:
        twilio_task = asyncio.create_task(self._receive_from_twilio())
        model_task = asyncio.create_task(self._receive_from_model())
        tasks = {twilio_task, model_task}
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self.state = RelayState.CLOSING
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                error = task.exception()
                logger.error(
                    "relay_leg_failed",
                    call_id=self.call_id,
                    leg="telephony" if task is twilio_task else "model",
                    error=str(error),
                    error_type=type(error).__name__,
                )

    # Telephony leg

    async def _receive_from_twilio(self) -> None:
        async for message in self._twilio_messages:
            data = self._parse_twilio_message(message)
            if data is None:
                continue
            if not await self._handle_twilio_message(data):
                return
        logger.info("media_stream_disconnected", call_id=self.call_id)

    def _parse_twilio_message(self, message: str) -> dict | None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError as e:
            logger.warning("twilio_malformed_message", call_id=self.call_id, error=str(e))
            return None
        if not isinstance(data, dict):
            logger.warning("twilio_malformed_message", call_id=self.call_id, error="not an object")
            return None
        return data

    async def _handle_twilio_message(self, data: dict) -> bool:
        """Handle one telephony event. Returns False when the stream has stopped."""
        event = data.get("event")

        if event == "connected":
            logger.info("media_stream_connected")

        elif event == "start":
            if self._session is not None:
                logger.warning("media_stream_duplicate_start", call_id=self.call_id)
            else:
                self._handle_start(data)

        elif event == "media":
            await self._handle_media(data)

        elif event == "mark":
            self._handle_mark(data)

        elif event == "stop":
            logger.info("media_stream_stop", call_id=self.call_id)
            return False

        else:
            logger.debug("twilio_event_ignored", call_id=self.call_id, twilio_event=event)

        return True

    def _handle_start(self, data: dict) -> None:
        """Create the call session and start recording if requested."""
        start_data = data.get("start")
        if not isinstance(start_data, dict):
            start_data = {}
        custom_params = start_data.get("customParameters")
        if not isinstance(custom_params, dict):
            custom_params = {}
        stream_sid = start_data.get("streamSid")
        self._stream_sid = stream_sid if isinstance(stream_sid, str) else None
        call_id = start_data.get("callSid") or custom_params.get("callSid")
        if not isinstance(call_id, str) or not call_id:
            logger.warning("media_stream_start_without_call_id", stream_sid=self._stream_sid)
            call_id = self._stream_sid or "unknown"

        session = self._registry.create_session(call_id)
        session.stream_id = self._stream_sid
        self._session = session

        logger.info(
            "media_stream_start",
            call_id=call_id,
            stream_sid=self._stream_sid,
            language=session.language,
            persona_type=session.persona_type,
            recording=session.recording_enabled,
        )

        if session.recording_enabled:
            try:
                self._recorders.get_or_create(call_id).start()
            except RecordingError as e:
                logger.warning("recording_start_failed", call_id=call_id, error=str(e))

    async def _handle_media(self, data: dict) -> None:
        """Forward caller audio to the model, then mirror it to the recorder.

        Runs on every audio packet (~20ms). Must be fast.
        """
        media = data.get("media")
        if not isinstance(media, dict) or self._session is None:
            return

        try:
            timestamp = int(media.get("timestamp", 0))
        except (TypeError, ValueError):
            logger.warning("twilio_bad_timestamp", call_id=self.call_id, timestamp=media.get("timestamp"))
            return
        self._session.record_ingress(timestamp)

        payload = media.get("payload")
        if not isinstance(payload, str):
            logger.warning(
                "twilio_malformed_message",
                call_id=self.call_id,
                error=f"media payload is {type(payload).__name__}",
            )
            return
        if not payload:
            return

        if self._peer is not None:
            await self._peer.send(audio_append(payload))

        recorder = self._recorders.get(self._session.call_id)
        if recorder is not None and recorder.recording:
            recorder.add_incoming_audio(payload)

    def _handle_mark(self, data: dict) -> None:
        """Twilio finished playing audio up to a mark."""
        if self._session is None:
            return
        if not self._session.acknowledge_mark():
            mark = data.get("mark")
            logger.debug(
                "mark_without_pending",
                call_id=self.call_id,
                mark=mark.get("name") if isinstance(mark, dict) else None,
            )

    # Model leg

    async def _receive_from_model(self) -> None:
        try:
            async for event in self._peer:
                await self._handle_model_event(event)
        except ConnectionClosed as e:
            logger.warning("realtime_connection_lost", call_id=self.call_id, error=str(e))
            return
        logger.info("realtime_leg_closed", call_id=self.call_id)

    async def _handle_model_event(self, event: dict) -> None:
        event_type = event.get("type")
        if not isinstance(event_type, str):
            logger.warning(
                "realtime_malformed_message",
                call_id=self.call_id,
                error=f"event type is {type(event_type).__name__}",
            )
            return

        if event_type in LOG_EVENT_TYPES:
            logger.debug("realtime_event", call_id=self.call_id, realtime_event=event_type)

        if event_type in AUDIO_DELTA_EVENTS:
            await self._handle_audio_delta(event)

        elif event_type == SPEECH_STARTED:
            await self._handle_speech_started()

        elif event_type == SESSION_UPDATED:
            self._peer.on_session_updated()

        elif event_type == FUNCTION_CALL_ARGUMENTS_DONE:
            self._start_function_call(event)

        elif event_type == ERROR:
            logger.error("realtime_error", call_id=self.call_id, error=event.get("error"))

    async def _handle_audio_delta(self, event: dict) -> None:
        delta = event.get("delta")
        if not isinstance(delta, str):
            logger.warning(
                "realtime_malformed_message",
                call_id=self.call_id,
                error=f"audio delta is {type(delta).__name__}",
            )
            return
        if not delta or self._session is None:
            return

        item_id = event.get("item_id")
        await self._send_media(delta)
        self._session.begin_egress(item_id if isinstance(item_id, str) else None)
        await self._send_mark(self._session.enqueue_mark())

        recorder = self._recorders.get(self._session.call_id)
        if recorder is not None and recorder.recording:
            recorder.add_outgoing_audio(delta)

    async def _handle_speech_started(self) -> None:
        """Caller started talking: truncate audible assistant speech, if any."""
        session = self._session
        if session is None or not session.barge_in_pending():
            return

        elapsed_ms = session.elapsed_playback_ms()
        item_id = session.last_assistant_item_id
        logger.info(
            "barge_in",
            call_id=session.call_id,
            item_id=item_id,
            elapsed_ms=elapsed_ms,
            pending_marks=len(session.playback_mark_queue),
        )

        if item_id:
            await self._peer.send(truncate_item(item_id, elapsed_ms))
        await self._send_clear()
        session.reset_playback()

    def _start_function_call(self, event: dict) -> None:
        name = event.get("name")
        if not isinstance(name, str):
            name = None
        correlation_id = event.get("call_id")
        if not isinstance(correlation_id, str) or not correlation_id:
            # No call id, nothing to correlate a reply with
            logger.warning("function_call_without_call_id", call_id=self.call_id, function=name)
            return
        task = asyncio.create_task(
            self._run_function_call(name, event.get("arguments"), correlation_id)
        )
        self._function_tasks.add(task)
        task.add_done_callback(self._function_tasks.discard)

    async def _run_function_call(self, name: str | None, arguments: Any, correlation_id: str) -> None:
        try:
            await self._dispatcher.dispatch(name, arguments, correlation_id)
        except ConnectionClosed:
            logger.warning("function_result_undeliverable", call_id=self.call_id, function=name)

    # Outbound Twilio messages

    async def _send_media(self, payload: str) -> None:
        """Send audio media to Twilio via WebSocket."""
        if not self._stream_sid:
            return
        msg = {
            "event": "media",
            "streamSid": self._stream_sid,
            "media": {"payload": payload},
        }
        await self._ws.send_text(json.dumps(msg))

    async def _send_mark(self, name: str) -> None:
        """Ask Twilio to acknowledge when playback reaches this point."""
        if not self._stream_sid:
            return
        msg = {
            "event": "mark",
            "streamSid": self._stream_sid,
            "mark": {"name": name},
        }
        await self._ws.send_text(json.dumps(msg))

    async def _send_clear(self) -> None:
        """Send a clear event to Twilio to drop queued, unplayed audio."""
        if not self._stream_sid:
            return
        msg = {
            "event": "clear",
            "streamSid": self._stream_sid,
        }
        await self._ws.send_text(json.dumps(msg))

    async def _cleanup(self) -> None:
        """Close both legs, finalize recording and forget the call."""
        if self.state == RelayState.CLOSED:
            return
        self.state = RelayState.CLOSING

        for task in list(self._function_tasks):
            task.cancel()
        if self._function_tasks:
            await asyncio.gather(*self._function_tasks, return_exceptions=True)

        if self._peer is not None:
            await self._peer.close()

        if self._ws.client_state != WebSocketState.DISCONNECTED:
            try:
                await self._ws.close()
            except (RuntimeError, OSError) as e:
                logger.debug("twilio_close_error", call_id=self.call_id, error=str(e))

        call_id = self.call_id
        if call_id is not None:
            recorder = self._recorders.get(call_id)
            if recorder is not None and recorder.recording:
                try:
                    paths = await recorder.stop()
                    logger.info(
                        "recording_saved",
                        call_id=call_id,
                        file_count=len(paths.produced()),
                    )
                except (RecordingError, OSError) as e:
                    logger.error("recording_save_failed", call_id=call_id, error=str(e))
            self._recorders.remove(call_id)
            self._registry.remove(call_id)

        self.state = RelayState.CLOSED
        logger.info("cleanup", call_id=call_id, stream_sid=self._stream_sid)
