"""Browser (WebRTC) calls.

The browser's SDP offer is forwarded to the Realtime calls endpoint together
with the session configuration; audio then flows directly between browser
and model. The server keeps a sideband ``CallObserver`` on the call's event
WebSocket to request the opening turn, log events and feed the recorder.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from pydantic import BaseModel
from websockets.exceptions import ConnectionClosed

from voicebridge.realtime.events import ERROR, RESPONSE_DONE, SESSION_CREATED
from voicebridge.realtime.peer import PeerConnectionError, RealtimePeer
from voicebridge.recording.recorder import RecorderManager, RecordingError
from voicebridge.utils.logging import get_logger

logger = get_logger(__name__)

INPUT_AUDIO_APPEND = "input_audio_buffer.append"
OUTPUT_AUDIO_DELTA = "response.output_audio.delta"
TRANSCRIPT_DELTA = "response.audio_transcript.delta"

ObserverFactory = Callable[[str], Awaitable[RealtimePeer]]


class WebRTCCallError(Exception):
    """The calls endpoint rejected the SDP offer or could not be reached."""


class WebRTCAnswer(BaseModel):
    sdp: str
    content_type: str
    call_id: str | None = None


async def create_webrtc_call(
    offer_sdp: str,
    session: dict[str, Any],
    api_key: str,
    url: str = "https://api.openai.com/v1/realtime/calls",
    client: httpx.AsyncClient | None = None,
) -> WebRTCAnswer:
    """Post the SDP offer and session; return the SDP answer and the new call id."""
    files = {
        "sdp": (None, offer_sdp),
        "session": (None, json.dumps(session)),
    }
    headers = {"Authorization": f"Bearer {api_key}"}

    try:
        if client is None:
            async with httpx.AsyncClient(timeout=30) as http:
                response = await http.post(url, files=files, headers=headers)
        else:
            response = await client.post(url, files=files, headers=headers)
    except httpx.HTTPError as e:
        logger.error("webrtc_call_request_failed", error=str(e), error_type=type(e).__name__)
        raise WebRTCCallError(str(e)) from e

    if response.is_error:
        logger.error(
            "webrtc_call_rejected",
            status=response.status_code,
            body=response.text[:200],
        )
        raise WebRTCCallError(f"calls endpoint returned {response.status_code}")

    location = response.headers.get("location", "")
    call_id = location.rstrip("/").rsplit("/", 1)[-1] or None
    logger.info("webrtc_call_created", call_id=call_id)
    return WebRTCAnswer(
        sdp=response.text,
        content_type=response.headers.get("content-type", "application/sdp"),
        call_id=call_id,
    )


class CallObserver:
    """Sideband listener for one WebRTC call."""

    def __init__(self, peer: RealtimePeer, recorders: RecorderManager):
        self._peer = peer
        self._recorders = recorders
        self.call_id = peer.call_id

    async def run(self) -> None:
        """Observe until the model closes the call, then finalize recording."""
        self._peer.schedule_initial_response()
        try:
            async for event in self._peer:
                self._handle_event(event)
        except ConnectionClosed as e:
            logger.warning("observer_connection_lost", call_id=self.call_id, error=str(e))
        finally:
            await self._peer.close()
            await self._finish_recording()
        logger.info("observer_closed", call_id=self.call_id)

    def _handle_event(self, event: dict) -> None:
        event_type = event.get("type")
        if not isinstance(event_type, str):
            logger.warning("observer_malformed_message", call_id=self.call_id)
            return

        if event_type != TRANSCRIPT_DELTA:
            logger.debug("observer_event", call_id=self.call_id, realtime_event=event_type)

        recorder = self._recorders.get(self.call_id)
        if recorder is not None and recorder.recording:
            if event_type == INPUT_AUDIO_APPEND and isinstance(event.get("audio"), str):
                recorder.add_incoming_audio(event["audio"])
            elif event_type == OUTPUT_AUDIO_DELTA and isinstance(event.get("delta"), str):
                recorder.add_outgoing_audio(event["delta"])

        if event_type == SESSION_CREATED:
            logger.info("observer_session_created", call_id=self.call_id)
        elif event_type == RESPONSE_DONE:
            logger.info("observer_response_done", call_id=self.call_id)
        elif event_type == ERROR:
            logger.error("observer_realtime_error", call_id=self.call_id, error=event.get("error"))

    async def _finish_recording(self) -> None:
        recorder = self._recorders.get(self.call_id)
        if recorder is not None and recorder.recording:
            try:
                paths = await recorder.stop()
                logger.info(
                    "recording_saved",
                    call_id=self.call_id,
                    file_count=len(paths.produced()),
                )
            except (RecordingError, OSError) as e:
                logger.error("recording_save_failed", call_id=self.call_id, error=str(e))
        self._recorders.remove(self.call_id)


_observer_tasks: set[asyncio.Task] = set()


async def _observe(call_id: str, factory: ObserverFactory, recorders: RecorderManager) -> None:
    try:
        peer = await factory(call_id)
    except PeerConnectionError as e:
        logger.error("observer_connect_failed", call_id=call_id, error=str(e))
        return
    logger.info("observer_connected", call_id=call_id)
    await CallObserver(peer, recorders).run()


def start_observer(
    call_id: str,
    factory: ObserverFactory,
    recorders: RecorderManager,
) -> asyncio.Task:
    """Observe ``call_id`` in the background; the task is tracked until it ends."""
    task = asyncio.create_task(_observe(call_id, factory, recorders))
    _observer_tasks.add(task)
    task.add_done_callback(_observer_tasks.discard)
    return task


async def stop_observers() -> None:
    for task in list(_observer_tasks):
        task.cancel()
    if _observer_tasks:
        await asyncio.gather(*_observer_tasks, return_exceptions=True)
