"""Message builders for the OpenAI Realtime protocol."""

import json
from typing import Any

# Server events
SESSION_CREATED = "session.created"
SESSION_UPDATED = "session.updated"
AUDIO_DELTA_EVENTS = ("response.output_audio.delta", "response.audio.delta")
SPEECH_STARTED = "input_audio_buffer.speech_started"
FUNCTION_CALL_ARGUMENTS_DONE = "response.function_call_arguments.done"
RESPONSE_DONE = "response.done"
ERROR = "error"

LOG_EVENT_TYPES = frozenset(
    {
        ERROR,
        "response.content.done",
        RESPONSE_DONE,
        "input_audio_buffer.committed",
        "input_audio_buffer.speech_stopped",
        SPEECH_STARTED,
        SESSION_CREATED,
        SESSION_UPDATED,
        "response.output_item.added",
        "response.output_item.done",
        "conversation.item.created",
    }
)

AUDIO_FORMAT = "audio/pcmu"


def build_session_update(
    instructions: str,
    tools: list[dict[str, Any]],
    voice: str,
    model: str,
) -> dict[str, Any]:
    """Build the one configuration message sent before any audio."""
    return {
        "type": "session.update",
        "session": {
            "type": "realtime",
            "model": model,
            "output_modalities": ["audio"],
            "tools": tools,
            "tool_choice": "auto",
            "audio": {
                "input": {
                    "format": {"type": AUDIO_FORMAT},
                    "turn_detection": {"type": "server_vad"},
                },
                "output": {
                    "format": {"type": AUDIO_FORMAT},
                    "voice": voice,
                },
            },
            "instructions": instructions,
        },
    }


def build_webrtc_session(instructions: str, voice: str, model: str) -> dict[str, Any]:
    """Session sent with the SDP offer when a browser call is created."""
    return {
        "type": "realtime",
        "model": model,
        "instructions": instructions,
        "audio": {
            "input": {"noise_reduction": {"type": "near_field"}},
            "output": {"voice": voice},
        },
    }


def audio_append(payload: str) -> dict[str, Any]:
    return {"type": "input_audio_buffer.append", "audio": payload}


def response_create() -> dict[str, Any]:
    return {"type": "response.create"}


def truncate_item(item_id: str, audio_end_ms: int) -> dict[str, Any]:
    return {
        "type": "conversation.item.truncate",
        "item_id": item_id,
        "content_index": 0,
        "audio_end_ms": audio_end_ms,
    }


def function_call_output(call_id: str, output: str) -> dict[str, Any]:
    return {
        "type": "conversation.item.create",
        "item": {
            "type": "function_call_output",
            "call_id": call_id,
            "output": output,
        },
    }


def parse_event(raw: str | bytes) -> dict[str, Any]:
    """Decode one server message. Raises ValueError if it is not a JSON object."""
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"expected JSON object, got {type(data).__name__}")
    return data
