"""Dispatch of model-initiated function calls.

Triggered by ``response.function_call_arguments.done``. The result is sent
back as a ``function_call_output`` item correlated by the model's call id,
followed by ``response.create`` so the model speaks the outcome.
"""

import asyncio
import json
from typing import Any, Protocol

from voicebridge.realtime.events import function_call_output, response_create
from voicebridge.tools.functions import (
    CAPABILITIES,
    Capability,
    FunctionResult,
    execute_function,
)
from voicebridge.utils.logging import get_logger

logger = get_logger(__name__)


class MessageSender(Protocol):
    async def send(self, message: dict[str, Any]) -> None: ...


def parse_arguments(raw: str | dict | None) -> dict[str, Any]:
    """Decode tool-call arguments. Raises ValueError on malformed input."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, (str, bytes)):
        raise ValueError(f"arguments must be a JSON string, got {type(raw).__name__}")
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError(f"arguments must be a JSON object, got {type(parsed).__name__}")
    return parsed


class FunctionCallDispatcher:
    """Executes tool calls for one call and replies on the model leg."""

    def __init__(
        self,
        peer: MessageSender,
        call_id: str,
        capabilities: dict[str, Capability] | None = None,
    ):
        self._peer = peer
        self._call_id = call_id
        self._capabilities = CAPABILITIES if capabilities is None else capabilities

    async def dispatch(
        self,
        name: str | None,
        raw_arguments: str | dict | None,
        correlation_id: str | None,
    ) -> FunctionResult:
        if not correlation_id:
            logger.warning("function_call_without_call_id", call_id=self._call_id, function=name)
            return FunctionResult(success=False, message="Missing call_id; no reply sent")

        logger.info(
            "function_call",
            call_id=self._call_id,
            function=name,
            correlation_id=correlation_id,
        )

        try:
            args = parse_arguments(raw_arguments)
        except ValueError as e:
            result = FunctionResult(
                success=False,
                message=f"Invalid arguments for {name}: {e}",
            )
        else:
            result = await self._execute(name or "", args)

        await self._peer.send(
            function_call_output(correlation_id, result.model_dump_json(exclude_none=True))
        )
        await self._peer.send(response_create())

        logger.info(
            "function_call_result",
            call_id=self._call_id,
            function=name,
            success=result.success,
        )
        return result

    async def _execute(self, name: str, args: dict[str, Any]) -> FunctionResult:
        capability = self._capabilities.get(name)
        if capability is not None and capability.offload:
            return await asyncio.to_thread(execute_function, name, args, self._capabilities)
        return execute_function(name, args, self._capabilities)
