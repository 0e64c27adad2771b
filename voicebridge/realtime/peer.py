"""Outbound connection to the OpenAI Realtime speech model.

One ``RealtimePeer`` per call. It owns the model-leg WebSocket, sends the
session configuration before any audio, and requests the opening turn a
short while after the model acknowledges that configuration (a
``response.create`` sent immediately can race the ``session.update``).
"""

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from voicebridge.realtime.events import (
    build_session_update,
    parse_event,
    response_create,
)
from voicebridge.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_INITIAL_RESPONSE_DELAY_MS = 500


class PeerConnectionError(Exception):
    """The model leg could not be opened."""


class RealtimePeer:
    """Model-leg WebSocket for a single call."""

    def __init__(
        self,
        websocket: Any,
        call_id: str,
        initial_response_delay_ms: int = DEFAULT_INITIAL_RESPONSE_DELAY_MS,
    ):
        self._ws = websocket
        self.call_id = call_id
        self._initial_response_delay_ms = initial_response_delay_ms
        self._initial_response_task: asyncio.Task | None = None
        self._configured = False
        self._closed = False

    @classmethod
    async def connect(
        cls,
        call_id: str,
        api_key: str,
        model: str,
        url: str = "wss://api.openai.com/v1/realtime",
        temperature: float | None = None,
        initial_response_delay_ms: int = DEFAULT_INITIAL_RESPONSE_DELAY_MS,
    ) -> "RealtimePeer":
        """Open the model leg. Raises PeerConnectionError on any failure."""
        query = {"model": model}
        if temperature is not None:
            query["temperature"] = str(temperature)
        peer = await cls._open(url, query, call_id, api_key, initial_response_delay_ms)
        logger.info("realtime_connected", call_id=call_id, model=model)
        return peer

    @classmethod
    async def attach(
        cls,
        call_id: str,
        api_key: str,
        url: str = "wss://api.openai.com/v1/realtime",
        initial_response_delay_ms: int = DEFAULT_INITIAL_RESPONSE_DELAY_MS,
    ) -> "RealtimePeer":
        """Join an existing call (e.g. one created over WebRTC) as a sideband observer."""
        peer = await cls._open(url, {"call_id": call_id}, call_id, api_key, initial_response_delay_ms)
        logger.info("realtime_attached", call_id=call_id)
        return peer

    @classmethod
    async def _open(
        cls,
        url: str,
        query: dict[str, str],
        call_id: str,
        api_key: str,
        initial_response_delay_ms: int,
    ) -> "RealtimePeer":
        uri = f"{url}?{urlencode(query)}"
        try:
            ws = await websockets.connect(
                uri,
                additional_headers={"Authorization": f"Bearer {api_key}"},
            )
        except (OSError, TimeoutError, WebSocketException) as e:
            logger.error(
                "realtime_connect_failed",
                call_id=call_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise PeerConnectionError(f"Could not connect to {url}: {e}") from e
        return cls(ws, call_id, initial_response_delay_ms=initial_response_delay_ms)

    @property
    def configured(self) -> bool:
        return self._configured

    @property
    def closed(self) -> bool:
        return self._closed

    async def configure(
        self,
        instructions: str,
        tools: list[dict[str, Any]],
        voice: str,
        model: str,
    ) -> None:
        """Send the session configuration. Must precede any audio."""
        session_update = build_session_update(
            instructions=instructions, tools=tools, voice=voice, model=model
        )
        await self.send(session_update)
        self._configured = True
        logger.info(
            "realtime_session_update_sent",
            call_id=self.call_id,
            voice=voice,
            tools=[t["name"] for t in tools],
        )

    def on_session_updated(self) -> None:
        self.schedule_initial_response()

    def schedule_initial_response(self) -> None:
        """Schedule the opening ``response.create`` (once per call)."""
        if self._initial_response_task is not None or self._closed:
            return
        self._initial_response_task = asyncio.create_task(self._send_initial_response())

    async def _send_initial_response(self) -> None:
        await asyncio.sleep(self._initial_response_delay_ms / 1000)
        try:
            await self.send(response_create())
            logger.info("initial_response_requested", call_id=self.call_id)
        except ConnectionClosed:
            logger.warning("initial_response_peer_closed", call_id=self.call_id)

    async def send(self, message: dict[str, Any]) -> None:
        await self._ws.send(json.dumps(message))

    async def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded server events; malformed frames are logged and skipped."""
        async for raw in self._ws:
            try:
                yield parse_event(raw)
            except ValueError as e:
                logger.warning(
                    "realtime_malformed_message",
                    call_id=self.call_id,
                    error=str(e),
                )

    async def close(self) -> None:
        """Best-effort close; safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        if self._initial_response_task and not self._initial_response_task.done():
            self._initial_response_task.cancel()
            try:
                await self._initial_response_task
            except asyncio.CancelledError:
                pass

        try:
            await self._ws.close()
        except (OSError, WebSocketException) as e:
            logger.warning("realtime_close_error", call_id=self.call_id, error=str(e))
        logger.info("realtime_closed", call_id=self.call_id)
