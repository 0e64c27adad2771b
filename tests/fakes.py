"""In-memory stand-ins for the two WebSocket legs of a call."""

import asyncio
import base64
import json

from starlette.websockets import WebSocketState


def mulaw_payload(byte: int = 0x00, size: int = 160) -> str:
    """Base64 mulaw payload (160 bytes = one 20ms Twilio frame)."""
    return base64.b64encode(bytes([byte]) * size).decode("ascii")


class FakeTwilioSocket:
    """Telephony leg fed from a queue; put ``None`` to disconnect."""

    def __init__(self, messages=None):
        self.inbox: asyncio.Queue = asyncio.Queue()
        for message in messages or []:
            self.inbox.put_nowait(message)
        self.sent: list[dict] = []
        self.client_state = WebSocketState.CONNECTED
        self.closed = False

    async def iter_text(self):
        while True:
            message = await self.inbox.get()
            if message is None:
                return
            yield message if isinstance(message, str) else json.dumps(message)

    async def send_text(self, text: str) -> None:
        self.sent.append(json.loads(text))

    async def close(self) -> None:
        self.closed = True
        self.client_state = WebSocketState.DISCONNECTED

    def events(self, name: str) -> list[dict]:
        return [m for m in self.sent if m.get("event") == name]


class FakeModelSocket:
    """Model leg fed from a queue; put ``None`` to simulate the peer closing."""

    def __init__(self):
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.closed = False

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            message = await self.inbox.get()
            if message is None:
                return
            yield message if isinstance(message, str) else json.dumps(message)

    async def close(self) -> None:
        self.closed = True
        self.inbox.put_nowait(None)

    def of_type(self, event_type: str) -> list[dict]:
        return [m for m in self.sent if m.get("type") == event_type]


async def wait_for(condition, timeout: float = 2.0) -> None:
    """Poll until ``condition()`` is true (lets the relay tasks run)."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)
