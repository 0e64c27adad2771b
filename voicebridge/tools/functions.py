"""Capabilities the realtime model can invoke during a call.

Each capability is pure bookkeeping (no external I/O) and returns a
``FunctionResult``. The tool manifest sent to the model is derived from the
same registry, so the declared tools and the executable set never drift.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel

from voicebridge.utils.logging import get_logger

logger = get_logger(__name__)

SEVERITIES = ["low", "medium", "high", "critical"]


class FunctionResult(BaseModel):
    """Outcome of a tool call, serialized back to the model."""
    success: bool
    message: str
    data: dict[str, Any] | None = None


@dataclass(frozen=True)
class Capability:
    name: str
    description: str
    parameters: dict[str, Any]
    handler: Callable[[dict[str, Any]], FunctionResult]
    # Run in a worker thread instead of on the event loop
    offload: bool = False

    @property
    def required(self) -> list[str]:
        return self.parameters.get("required", [])

    def definition(self) -> dict[str, Any]:
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def remind_me_later(args: dict[str, Any]) -> FunctionResult:
    """Record a reminder for the caller."""
    logger.info("function_remind_me_later", date=args["date"], message=args["message"])
    return FunctionResult(
        success=True,
        message=f"Reminder set for {args['date']}: {args['message']}",
        data={
            "reminderDate": args["date"],
            "reminderMessage": args["message"],
            "timestamp": _now_iso(),
        },
    )


def send_sms(args: dict[str, Any]) -> FunctionResult:
    """Record an outgoing text message."""
    phone_number = args.get("phoneNumber")
    logger.info(
        "function_send_sms",
        message=args["message"],
        phone_number=phone_number or "not provided",
    )
    return FunctionResult(
        success=True,
        message=f"SMS sent: {args['message']}",
        data={
            "smsMessage": args["message"],
            "phoneNumber": phone_number,
            "timestamp": _now_iso(),
        },
    )


def escalate_it_higher(args: dict[str, Any]) -> FunctionResult:
    """Escalate an issue to another department."""
    severity = args["severity"]
    if severity not in SEVERITIES:
        return FunctionResult(
            success=False,
            message=f"Invalid severity '{severity}'. Use one of: {', '.join(SEVERITIES)}",
        )

    department = args.get("department")
    now = datetime.now(UTC)
    logger.info(
        "function_escalate_it_higher",
        message=args["message"],
        severity=severity,
        department=department or "not specified",
    )
    return FunctionResult(
        success=True,
        message=f"Issue escalated with {severity} severity: {args['message']}",
        data={
            "escalationMessage": args["message"],
            "severity": severity,
            "department": department,
            "escalationId": f"ESC-{int(now.timestamp() * 1000)}",
            "timestamp": now.isoformat(),
        },
    )


CAPABILITIES: dict[str, Capability] = {
    c.name: c
    for c in (
        Capability(
            name="remindMeLater",
            description=(
                "Set a reminder for a specific date and time. Use this when the "
                "user wants to be reminded about something later."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "date": {
                        "type": "string",
                        "description": (
                            "The date and time for the reminder in ISO format or natural "
                            "language (e.g., '2024-01-15 10:00 AM', 'tomorrow at 3pm')"
                        ),
                    },
                    "message": {
                        "type": "string",
                        "description": "The reminder message content",
                    },
                },
                "required": ["date", "message"],
            },
            handler=remind_me_later,
        ),
        Capability(
            name="sendSms",
            description="Send an SMS message. Use this when the user wants to send a text message.",
            parameters={
                "type": "object",
                "properties": {
                    "message": {
                        "type": "string",
                        "description": "The SMS message content to send",
                    },
                    "phoneNumber": {
                        "type": "string",
                        "description": (
                            "Optional phone number to send to. If not provided, "
                            "will use caller's number or ask user."
                        ),
                    },
                },
                "required": ["message"],
            },
            handler=send_sms,
        ),
        Capability(
            name="escalateItHigher",
            description=(
                "Escalate an issue to higher management or another department. Use this "
                "when the user requests escalation or when an issue requires higher-level "
                "attention."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "message": {
                        "type": "string",
                        "description": "Description of the issue or concern that needs escalation",
                    },
                    "severity": {
                        "type": "string",
                        "enum": SEVERITIES,
                        "description": "The severity level of the issue",
                    },
                    "department": {
                        "type": "string",
                        "description": (
                            "Optional target department for escalation "
                            "(e.g., 'management', 'technical', 'billing')"
                        ),
                    },
                },
                "required": ["message", "severity"],
            },
            handler=escalate_it_higher,
        ),
    )
}

TOOLS: list[dict[str, Any]] = [c.definition() for c in CAPABILITIES.values()]


def execute_function(
    name: str,
    args: dict[str, Any],
    capabilities: dict[str, Capability] | None = None,
) -> FunctionResult:
    """Run a capability by name. Never raises; failures become success=False."""
    registry = CAPABILITIES if capabilities is None else capabilities
    capability = registry.get(name)
    if capability is None:
        logger.error("function_unknown", function=name)
        return FunctionResult(success=False, message=f"Unknown function: {name}")

    missing = [key for key in capability.required if args.get(key) in (None, "")]
    if missing:
        return FunctionResult(
            success=False,
            message=f"Missing required arguments for {name}: {', '.join(missing)}",
        )

    try:
        return capability.handler(args)
    except Exception as e:
        logger.error(
            "function_failed",
            function=name,
            error=str(e),
            error_type=type(e).__name__,
        )
        return FunctionResult(
            success=False, message=f"Error executing function: {e}"
        )
