"""Tests for hook payload parsing and output serialization."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from telegram_approval_gate.presentation.hook_io import (
    PreToolUseOutput,
    StopOutput,
    StopPayload,
    ToolCallPayload,
)


class TestPayloads:
    """フック入力のテスト."""

    def test_tool_call_payload(self) -> None:
        payload = ToolCallPayload.model_validate_json(
            json.dumps(
                {
                    "session_id": "s1",
                    "hook_event_name": "PreToolUse",
                    "tool_name": "Bash",
                    "tool_input": {"command": "ls"},
                    "cwd": "/work",
                }
            )
        )
        assert payload.tool_name == "Bash"
        assert payload.tool_input == {"command": "ls"}
        assert payload.session_id == "s1"

    def test_tool_input_defaults_to_empty(self) -> None:
        payload = ToolCallPayload.model_validate_json('{"tool_name": "Read"}')
        assert payload.tool_input == {}

    def test_missing_tool_name(self) -> None:
        with pytest.raises(ValidationError):
            ToolCallPayload.model_validate_json('{"tool_input": {}}')

    def test_stop_payload(self) -> None:
        payload = StopPayload.model_validate_json(
            '{"transcript_path": "/tmp/t.jsonl", "stop_hook_active": true}'
        )
        assert payload.transcript_path == "/tmp/t.jsonl"
        assert payload.stop_hook_active is True


class TestPreToolUseOutput:
    """PreToolUse 出力のテスト."""

    def test_allow(self) -> None:
        assert json.loads(PreToolUseOutput.allow().to_json()) == {
            "hookSpecificOutput": {
                "hookEventName": "PreToolUse",
                "permissionDecision": "allow",
            }
        }

    def test_deny_with_reason(self) -> None:
        output = PreToolUseOutput.deny("Denied via Telegram.", reason="not now")
        assert json.loads(output.to_json()) == {
            "hookSpecificOutput": {
                "hookEventName": "PreToolUse",
                "permissionDecision": "deny",
                "permissionDecisionReason": "not now",
            },
            "systemMessage": "Denied via Telegram.",
        }
        assert output.decision == "deny"

    def test_pass_through(self) -> None:
        output = PreToolUseOutput.pass_through()
        assert output.to_json() == "{}"
        assert output.decision is None


class TestStopOutput:
    """Stop 出力のテスト."""

    def test_block(self) -> None:
        assert json.loads(StopOutput.block("keep going").to_json()) == {
            "decision": "block",
            "reason": "keep going",
        }

    def test_pass_through(self) -> None:
        assert StopOutput.pass_through().to_json() == "{}"
