"""Hook payloads read from stdin and decisions written to stdout."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

PRE_TOOL_USE_EVENT = "PreToolUse"


class ToolCallPayload(BaseModel):
    """PreToolUse フックの入力."""

    model_config = ConfigDict(extra="ignore")

    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    hook_event_name: str = PRE_TOOL_USE_EVENT
    session_id: str | None = None


class StopPayload(BaseModel):
    """Stop フックの入力."""

    model_config = ConfigDict(extra="ignore")

    transcript_path: str | None = None
    stop_hook_active: bool = False
    session_id: str | None = None


class _HookOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_json(self) -> str:
        """ホストに返す JSON 文字列に変換する."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


class HookSpecificOutput(_HookOutput):
    """PreToolUse の判定."""

    hook_event_name: str = Field(default=PRE_TOOL_USE_EVENT, alias="hookEventName")
    permission_decision: Literal["allow", "deny", "ask"] = Field(
        alias="permissionDecision"
    )
    permission_decision_reason: str | None = Field(
        default=None, alias="permissionDecisionReason"
    )


class PreToolUseOutput(_HookOutput):
    """PreToolUse フックの出力. 判定なし（{}）はホストの通常の権限確認に任せる."""

    hook_specific_output: HookSpecificOutput | None = Field(
        default=None, alias="hookSpecificOutput"
    )
    system_message: str | None = Field(default=None, alias="systemMessage")

    @classmethod
    def allow(cls) -> PreToolUseOutput:
        return cls(hook_specific_output=HookSpecificOutput(permission_decision="allow"))

    @classmethod
    def deny(cls, message: str, reason: str | None = None) -> PreToolUseOutput:
        return cls(
            hook_specific_output=HookSpecificOutput(
                permission_decision="deny",
                permission_decision_reason=reason,
            ),
            system_message=message,
        )

    @classmethod
    def pass_through(cls) -> PreToolUseOutput:
        return cls()

    @property
    def decision(self) -> str | None:
        if self.hook_specific_output is None:
            return None
        return self.hook_specific_output.permission_decision


class StopOutput(_HookOutput):
    """Stop フックの出力. block の場合 reason がエージェントへの続行指示になる."""

    decision: Literal["block"] | None = None
    reason: str | None = None

    @classmethod
    def block(cls, reason: str) -> StopOutput:
        return cls(decision="block", reason=reason)

    @classmethod
    def pass_through(cls) -> StopOutput:
        return cls()
