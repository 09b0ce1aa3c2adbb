"""Interaction orchestrator - picks a protocol flow for each hook invocation."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from telegram_approval_gate.application.models import Decision
from telegram_approval_gate.infrastructure.logging import get_logger
from telegram_approval_gate.infrastructure.mode import OperatingMode
from telegram_approval_gate.presentation.format import (
    extract_last_assistant_message,
    format_question,
    format_stop_message,
    format_tool_call,
    parse_question_options,
)
from telegram_approval_gate.presentation.hook_io import (
    PreToolUseOutput,
    StopOutput,
    StopPayload,  # noqa: TC001
    ToolCallPayload,  # noqa: TC001
)

if TYPE_CHECKING:
    from telegram_approval_gate.application.approval import ApprovalProtocol
    from telegram_approval_gate.application.permissions import PermissionEngine
    from telegram_approval_gate.infrastructure.config import Config
    from telegram_approval_gate.infrastructure.mode import ModeWatcher

logger = get_logger(__name__)

ASK_USER_QUESTION_TOOL = "AskUserQuestion"


class GateService:
    """
    フック呼び出しごとに判定フローを選び、結果をホストの出力形式に変換する.

    判定の優先順位:
    モード OFF → 事前承認済み → 自動拒否 → 自動承認 → リモート承認
    """

    def __init__(
        self,
        config: Config,
        protocol: ApprovalProtocol,
        engine: PermissionEngine,
        mode_watcher: ModeWatcher,
    ) -> None:
        """
        Initialize GateService.

        Args:
            config: アプリケーション設定
            protocol: リモート承認プロトコル
            engine: 事前承認ルールの判定エンジン
            mode_watcher: 起動時のモードと途中の切り替えを監視するオブジェクト
        """
        self._config = config
        self._protocol = protocol
        self._engine = engine
        self._mode_watcher = mode_watcher

    async def handle_tool_call(self, payload: ToolCallPayload) -> PreToolUseOutput:
        """
        PreToolUse フックを処理する.

        Args:
            payload: フック入力

        Returns:
            ホストに返す判定
        """
        tool_name = payload.tool_name

        if self._mode_watcher.initial is OperatingMode.OFF:
            return PreToolUseOutput.pass_through()

        if self._engine.is_preauthorized(tool_name, payload.tool_input):
            logger.info("Tool call pre-authorized by local rules", tool_name=tool_name)
            return PreToolUseOutput.pass_through()

        if tool_name in self._config.auto_deny:
            logger.info("Tool call auto-denied", tool_name=tool_name)
            return PreToolUseOutput.deny(
                f"Tool {tool_name} is auto-denied by cctg config."
            )

        if tool_name in self._config.auto_approve:
            logger.info("Tool call auto-approved", tool_name=tool_name)
            return PreToolUseOutput.allow()

        if tool_name == ASK_USER_QUESTION_TOOL:
            questions = payload.tool_input.get("questions")
            if isinstance(questions, list) and questions:
                return await self._ask_questions(payload, questions)

        return await self._request_approval(payload)

    async def handle_stop(self, payload: StopPayload) -> StopOutput:
        """
        Stop フックを処理する.

        モードが ON の場合のみ、停止を通知して続行指示を待つ.

        Args:
            payload: フック入力

        Returns:
            続行指示があれば block、それ以外は判定なし
        """
        if self._mode_watcher.initial is not OperatingMode.ON:
            return StopOutput.pass_through()

        last_message = extract_last_assistant_message(payload.transcript_path)
        outcome = await self._protocol.request_continuation(
            format_stop_message(last_message),
            self._config.remote_timeout_seconds,
            should_abort=self._mode_watcher.changed,
        )

        if outcome.decision is Decision.MESSAGE and outcome.text:
            logger.info("Continuing with remote instructions")
            return StopOutput.block(outcome.text)

        logger.info("Agent stop confirmed", decision=outcome.decision.value)
        return StopOutput.pass_through()

    async def _request_approval(self, payload: ToolCallPayload) -> PreToolUseOutput:
        """承認/拒否ボタンでリモート承認を求める."""
        outcome = await self._protocol.request_tool_approval(
            format_tool_call(payload.tool_name, payload.tool_input),
            self._config.timeout_seconds,
            should_abort=self._mode_watcher.changed,
        )

        if outcome.cancelled:
            # 端末側に戻ったのでホストの通常の確認に任せる
            return PreToolUseOutput.pass_through()
        if outcome.decision is Decision.ALLOW:
            return PreToolUseOutput.allow()
        if outcome.timed_out:
            return PreToolUseOutput.deny(
                f"No response via Telegram within {self._config.timeout_seconds}s. "
                "Denying for safety."
            )
        return PreToolUseOutput.deny("User denied this tool call via Telegram.")

    async def _ask_questions(
        self, payload: ToolCallPayload, questions: list[Any]
    ) -> PreToolUseOutput:
        """
        AskUserQuestion の各質問を選択肢ボタンで尋ねる.

        回答はツールを拒否した理由としてエージェントに伝える.
        """
        answers: list[tuple[str, str]] = []
        for question in questions:
            if not isinstance(question, dict):
                continue
            options = parse_question_options(question)
            if not options:
                # 選択肢のない質問はボタンで答えられないため、ツール自体の承認に切り替える
                return await self._request_approval(payload)

            outcome = await self._protocol.request_choice(
                format_question(question, options),
                options,
                self._config.timeout_seconds,
                should_abort=self._mode_watcher.changed,
            )
            if outcome.cancelled:
                return PreToolUseOutput.pass_through()
            if outcome.decision is not Decision.SELECTED or outcome.text is None:
                return PreToolUseOutput.deny(
                    f"No answer via Telegram within {self._config.timeout_seconds}s."
                )

            text = question.get("question")
            answers.append((text if isinstance(text, str) else "", outcome.text))

        if not answers:
            return await self._request_approval(payload)

        reason = "User answered via Telegram:\n" + "\n".join(
            f'"{question}" = "{answer}"' for question, answer in answers
        )
        return PreToolUseOutput.deny("Question answered via Telegram.", reason=reason)
