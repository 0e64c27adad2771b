"""Tests for tool capabilities and the function-call dispatcher."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from voicebridge.tools.dispatcher import FunctionCallDispatcher, parse_arguments
from voicebridge.tools.functions import (
    CAPABILITIES,
    TOOLS,
    Capability,
    FunctionResult,
    execute_function,
)


class TestToolManifest:
    def test_manifest_matches_capabilities(self):
        assert [t["name"] for t in TOOLS] == list(CAPABILITIES)
        for tool in TOOLS:
            assert tool["type"] == "function"
            assert tool["parameters"]["type"] == "object"
            assert "required" in tool["parameters"]

    def test_severity_enum(self):
        escalate = CAPABILITIES["escalateItHigher"]
        assert escalate.parameters["properties"]["severity"]["enum"] == [
            "low", "medium", "high", "critical",
        ]


class TestExecuteFunction:
    def test_remind_me_later(self):
        result = execute_function("remindMeLater", {"date": "tomorrow 3pm", "message": "call mom"})
        assert result.success is True
        assert result.message == "Reminder set for tomorrow 3pm: call mom"
        assert result.data["reminderDate"] == "tomorrow 3pm"
        assert "timestamp" in result.data

    def test_send_sms_without_number(self):
        result = execute_function("sendSms", {"message": "on my way"})
        assert result.success is True
        assert result.message == "SMS sent: on my way"
        assert result.data["phoneNumber"] is None

    def test_escalate(self):
        result = execute_function(
            "escalateItHigher",
            {"message": "billing error", "severity": "high", "department": "billing"},
        )
        assert result.success is True
        assert result.message == "Issue escalated with high severity: billing error"
        assert result.data["escalationId"].startswith("ESC-")
        assert result.data["department"] == "billing"

    def test_escalate_invalid_severity(self):
        result = execute_function("escalateItHigher", {"message": "x", "severity": "urgent"})
        assert result.success is False
        assert "urgent" in result.message

    def test_unknown_function(self):
        result = execute_function("launchRocket", {})
        assert result.success is False
        assert result.message == "Unknown function: launchRocket"

    def test_missing_required_argument(self):
        result = execute_function("remindMeLater", {"message": "no date"})
        assert result.success is False
        assert "date" in result.message

    def test_capability_exception_becomes_failure(self):
        def boom(args):
            raise RuntimeError("storage offline")

        registry = {"boom": Capability("boom", "fails", {"type": "object", "properties": {}}, boom)}
        result = execute_function("boom", {}, registry)
        assert result.success is False
        assert "storage offline" in result.message


class TestParseArguments:
    def test_json_string(self):
        assert parse_arguments('{"a": 1}') == {"a": 1}

    def test_empty(self):
        assert parse_arguments("") == {}
        assert parse_arguments(None) == {}

    def test_dict_passthrough(self):
        assert parse_arguments({"a": 1}) == {"a": 1}

    def test_malformed(self):
        with pytest.raises(ValueError):
            parse_arguments("{not json")

    def test_non_object(self):
        with pytest.raises(ValueError):
            parse_arguments("[1, 2]")

    def test_non_string_arguments(self):
        with pytest.raises(ValueError, match="JSON string"):
            parse_arguments(["hi"])
        with pytest.raises(ValueError):
            parse_arguments(42)


def _peer() -> MagicMock:
    peer = MagicMock()
    peer.send = AsyncMock()
    return peer


def _sent(peer: MagicMock) -> list[dict]:
    return [c.args[0] for c in peer.send.await_args_list]


class TestFunctionCallDispatcher:
    @pytest.mark.asyncio
    async def test_known_function_replies_and_requests_response(self):
        peer = _peer()
        dispatcher = FunctionCallDispatcher(peer, "C1")

        result = await dispatcher.dispatch(
            "sendSms", json.dumps({"message": "hello"}), "call_abc"
        )

        assert result.success is True
        sent = _sent(peer)
        assert len(sent) == 2
        reply, follow_up = sent
        assert reply["type"] == "conversation.item.create"
        assert reply["item"]["type"] == "function_call_output"
        assert reply["item"]["call_id"] == "call_abc"
        output = json.loads(reply["item"]["output"])
        assert output["success"] is True
        assert output["message"] == "SMS sent: hello"
        assert follow_up == {"type": "response.create"}

    @pytest.mark.asyncio
    async def test_unknown_function_same_message_pattern(self):
        peer = _peer()
        dispatcher = FunctionCallDispatcher(peer, "C1")

        result = await dispatcher.dispatch("orderPizza", "{}", "call_xyz")

        assert result.success is False
        assert "orderPizza" in result.message
        reply, follow_up = _sent(peer)
        assert reply["item"]["call_id"] == "call_xyz"
        output = json.loads(reply["item"]["output"])
        assert output == {"success": False, "message": "Unknown function: orderPizza"}
        assert follow_up == {"type": "response.create"}

    @pytest.mark.asyncio
    async def test_bad_arguments_become_error_result(self):
        peer = _peer()
        dispatcher = FunctionCallDispatcher(peer, "C1")

        result = await dispatcher.dispatch("remindMeLater", "{broken", "call_1")

        assert result.success is False
        assert result.message.startswith("Invalid arguments for remindMeLater")
        assert len(_sent(peer)) == 2

    @pytest.mark.asyncio
    async def test_non_string_arguments_become_error_result(self):
        peer = _peer()
        dispatcher = FunctionCallDispatcher(peer, "C1")

        result = await dispatcher.dispatch("sendSms", ["hi"], "call_1")

        assert result.success is False
        assert result.message.startswith("Invalid arguments for sendSms")
        reply, follow_up = _sent(peer)
        assert reply["item"]["call_id"] == "call_1"
        assert json.loads(reply["item"]["output"])["success"] is False
        assert follow_up == {"type": "response.create"}

    @pytest.mark.asyncio
    async def test_missing_call_id_sends_nothing(self):
        peer = _peer()
        dispatcher = FunctionCallDispatcher(peer, "C1")

        result = await dispatcher.dispatch("sendSms", '{"message": "hi"}', None)

        assert result.success is False
        peer.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_offloaded_capability_runs_in_thread(self):
        def slow(args):
            return FunctionResult(success=True, message=f"looked up {args['q']}")

        registry = {
            "lookup": Capability(
                "lookup", "slow lookup",
                {"type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"]},
                slow, offload=True,
            )
        }
        peer = _peer()
        dispatcher = FunctionCallDispatcher(peer, "C1", capabilities=registry)

        result = await dispatcher.dispatch("lookup", '{"q": "order 7"}', "call_2")

        assert result.success is True
        assert result.message == "looked up order 7"
