"""Remote approval protocol over the Telegram update stream."""

from __future__ import annotations

import html
import time
from collections.abc import Awaitable, Callable, Sequence
from contextlib import aclosing
from typing import TYPE_CHECKING, Any

from telegram_approval_gate.application.models import (
    ApprovalOutcome,
    ApprovalRequest,
    Clock,
    Decision,
    InteractionKind,
    QuestionOption,
    RequestState,
)
from telegram_approval_gate.infrastructure.logging import get_logger
from telegram_approval_gate.infrastructure.telegram_client import (
    CALLBACK_QUERY_UPDATES,
    MESSAGE_UPDATES,
    ChannelError,
)

if TYPE_CHECKING:
    from telegram_approval_gate.infrastructure.telegram_client import (
        CallbackQuery,
        TelegramClient,
        Update,
    )

logger = get_logger(__name__)

# 1 回の long-poll の最大待ち時間（秒）. キャンセル検知の粒度もこれで決まる
BUTTON_POLL_CEILING = 30
TEXT_POLL_CEILING = 10

DONE_COMMAND = "/done"

# answerCallbackQuery の text は 200 文字まで
_ACK_TEXT_LIMIT = 200

AbortPredicate = Callable[[], bool]
_Resolver = Callable[[ApprovalRequest, "Update"], Awaitable[ApprovalOutcome | None]]

_DECISION_VALUES = {
    Decision.ALLOW.value: ("✅ Allow", "Allowed"),
    Decision.DENY.value: ("❌ Deny", "Denied"),
}


def correlation_token(value: str, request_id: str) -> str:
    """ボタンの callback_data に埋め込む相関トークンを生成する."""
    return f"{value}:{request_id}"


def parse_correlation_token(data: str) -> tuple[str, str] | None:
    """
    相関トークンを (値, リクエストID) に分解する.

    Returns:
        形式が不正な場合は None
    """
    value, sep, request_id = data.rpartition(":")
    if not sep or not value or not request_id:
        return None
    return value, request_id


def choice_value(index: int) -> str:
    return f"opt{index}"


def build_decision_keyboard(request_id: str) -> dict[str, Any]:
    """承認/拒否ボタンのインラインキーボードを構築する."""
    return {
        "inline_keyboard": [
            [
                {"text": label, "callback_data": correlation_token(value, request_id)}
                for value, (label, _) in _DECISION_VALUES.items()
            ]
        ]
    }


def build_choice_keyboard(
    options: Sequence[QuestionOption], request_id: str
) -> dict[str, Any]:
    """選択肢ボタンのインラインキーボードを構築する（1 行に 2 つ）."""
    buttons = [
        {
            "text": option.label,
            "callback_data": correlation_token(choice_value(index), request_id),
        }
        for index, option in enumerate(options)
    ]
    return {"inline_keyboard": [buttons[i : i + 2] for i in range(0, len(buttons), 2)]}


def outcome_footer(outcome: ApprovalOutcome) -> str:
    """結果確定後にメッセージ末尾へ追記する 1 行を返す."""
    match outcome.decision:
        case Decision.ALLOW:
            return "✅ Allowed"
        case Decision.DENY if outcome.timed_out:
            return "⏱️ Timed out (denied)"
        case Decision.DENY:
            return "❌ Denied"
        case Decision.SELECTED:
            return f"✅ Answered: {html.escape(outcome.text or '')}"
        case Decision.MESSAGE:
            return "▶️ <i>Continuing...</i>"
        case Decision.DONE:
            return "⏹️ <i>Stopped</i>"
        case Decision.TIMEOUT:
            return "⏱️ <i>Timed out</i>"
        case Decision.ABORT:
            return "🖥️ <i>Switched to terminal</i>"
    return ""


class ApprovalProtocol:
    """
    承認リクエストを Telegram に公開し、対応する返答を long-poll で待つ.

    1 プロセスで同時に扱うリクエストは 1 つだけ. 返答は送信者と request_id で
    照合するため、古いボタンの押下や他のリクエスト宛ての返答は無視される.
    """

    def __init__(
        self,
        client: TelegramClient,
        chat_id: str,
        approver_id: str,
        *,
        clock: Clock = time.monotonic,
        button_poll_ceiling: int = BUTTON_POLL_CEILING,
        text_poll_ceiling: int = TEXT_POLL_CEILING,
    ) -> None:
        """
        Initialize ApprovalProtocol.

        Args:
            client: Telegram クライアント
            chat_id: 承認リクエストの送信先チャットID
            approver_id: 返答を受け付けるユーザーID
            clock: 締め切り計算に使う単調増加クロック
            button_poll_ceiling: ボタン待ちの 1 回あたりの最大待ち時間（秒）
            text_poll_ceiling: テキスト待ちの 1 回あたりの最大待ち時間（秒）
        """
        self._client = client
        self._chat_id = chat_id
        self._approver_id = approver_id
        self._clock = clock
        self._button_poll_ceiling = button_poll_ceiling
        self._text_poll_ceiling = text_poll_ceiling

    def create_request(
        self,
        kind: InteractionKind,
        timeout_seconds: float,
        choices: Sequence[QuestionOption] = (),
    ) -> ApprovalRequest:
        """新しい承認リクエストを生成する（締め切りはこの時点から数える）."""
        return ApprovalRequest(
            kind=kind,
            chat_id=self._chat_id,
            timeout_seconds=timeout_seconds,
            choices=tuple(choices),
            clock=self._clock,
        )

    async def flush_stale_updates(self, kind: InteractionKind) -> int:
        """
        以前のリクエスト宛てに溜まっている update を読み捨てる.

        Args:
            kind: これから待つリクエストの種類（読み捨てる update の種類が決まる）

        Returns:
            読み捨て後のカーソル値
        """
        return await self._client.flush_stale_updates(_allowed_updates(kind))

    async def publish(self, request: ApprovalRequest, text: str) -> int:
        """
        承認リクエストを送信する.

        Args:
            request: 送信するリクエスト
            text: 本文（HTML）

        Returns:
            送信したメッセージの message_id
        """
        reply_markup: dict[str, Any] | None = None
        if request.kind is InteractionKind.TOOL_APPROVAL:
            reply_markup = build_decision_keyboard(request.request_id)
        elif request.kind is InteractionKind.QUESTION:
            reply_markup = build_choice_keyboard(request.choices, request.request_id)

        message_id = await self._client.send_message(
            self._chat_id, text, reply_markup=reply_markup
        )
        request.message_id = message_id
        request.text = text
        request.transition(RequestState.PUBLISHED)
        logger.info(
            "Published approval request",
            request_id=request.request_id,
            kind=request.kind.value,
            message_id=message_id,
        )
        return message_id

    async def poll_for_decision(
        self,
        request: ApprovalRequest,
        should_abort: AbortPredicate | None = None,
    ) -> ApprovalOutcome:
        """
        承認/拒否ボタンの押下を待つ.

        締め切りまでに押下がなければ拒否として扱う.

        Returns:
            ALLOW / DENY / ABORT のいずれか
        """
        return await self._poll(
            request,
            allowed_updates=CALLBACK_QUERY_UPDATES,
            ceiling=self._button_poll_ceiling,
            resolve=self._resolve_decision,
            timeout_decision=Decision.DENY,
            should_abort=should_abort,
        )

    async def poll_for_choice(
        self,
        request: ApprovalRequest,
        should_abort: AbortPredicate | None = None,
    ) -> ApprovalOutcome:
        """
        選択肢ボタンの押下を待つ.

        Returns:
            SELECTED（text に選択肢のラベル）/ TIMEOUT / ABORT のいずれか
        """
        return await self._poll(
            request,
            allowed_updates=CALLBACK_QUERY_UPDATES,
            ceiling=self._button_poll_ceiling,
            resolve=self._resolve_choice,
            timeout_decision=Decision.TIMEOUT,
            should_abort=should_abort,
        )

    async def poll_for_text(
        self,
        request: ApprovalRequest,
        should_abort: AbortPredicate | None = None,
    ) -> ApprovalOutcome:
        """
        承認者からのテキストメッセージを待つ.

        Returns:
            MESSAGE（text に本文）/ DONE / TIMEOUT / ABORT のいずれか
        """
        return await self._poll(
            request,
            allowed_updates=MESSAGE_UPDATES,
            ceiling=self._text_poll_ceiling,
            resolve=self._resolve_text,
            timeout_decision=Decision.TIMEOUT,
            should_abort=should_abort,
        )

    async def finalize(self, request: ApprovalRequest, outcome: ApprovalOutcome) -> None:
        """
        送信済みメッセージを結果表示に書き換える.

        表示は結果に影響しないため、失敗してもログを残すだけにする.
        """
        if request.message_id is None:
            return
        text = f"{request.text}\n\n{outcome_footer(outcome)}"
        try:
            await self._client.edit_message(self._chat_id, request.message_id, text)
        except ChannelError:
            logger.warning(
                "Failed to edit approval message (non-blocking)",
                request_id=request.request_id,
                message_id=request.message_id,
                exc_info=True,
            )

    async def run(
        self,
        request: ApprovalRequest,
        text: str,
        should_abort: AbortPredicate | None = None,
    ) -> ApprovalOutcome:
        """
        古い update の読み捨て → 公開 → 返答待ち → 表示更新 を順に行う.

        Args:
            request: 生成済みのリクエスト
            text: 本文（HTML）
            should_abort: ループごとに確認するキャンセル条件

        Returns:
            リクエストの最終結果
        """
        await self.flush_stale_updates(request.kind)
        await self.publish(request, text)

        if request.kind is InteractionKind.TOOL_APPROVAL:
            outcome = await self.poll_for_decision(request, should_abort)
        elif request.kind is InteractionKind.QUESTION:
            outcome = await self.poll_for_choice(request, should_abort)
        else:
            outcome = await self.poll_for_text(request, should_abort)

        await self.finalize(request, outcome)
        return outcome

    async def request_tool_approval(
        self,
        text: str,
        timeout_seconds: float,
        should_abort: AbortPredicate | None = None,
    ) -> ApprovalOutcome:
        """ツール呼び出しの承認/拒否を求める."""
        request = self.create_request(InteractionKind.TOOL_APPROVAL, timeout_seconds)
        return await self.run(request, text, should_abort)

    async def request_choice(
        self,
        text: str,
        options: Sequence[QuestionOption],
        timeout_seconds: float,
        should_abort: AbortPredicate | None = None,
    ) -> ApprovalOutcome:
        """選択肢から 1 つを選んでもらう."""
        request = self.create_request(
            InteractionKind.QUESTION, timeout_seconds, choices=options
        )
        return await self.run(request, text, should_abort)

    async def request_continuation(
        self,
        text: str,
        timeout_seconds: float,
        should_abort: AbortPredicate | None = None,
    ) -> ApprovalOutcome:
        """停止したエージェントへの続行指示（自由入力）を求める."""
        request = self.create_request(
            InteractionKind.STOP_CONTINUATION, timeout_seconds
        )
        return await self.run(request, text, should_abort)

    async def _poll(
        self,
        request: ApprovalRequest,
        *,
        allowed_updates: Sequence[str],
        ceiling: int,
        resolve: _Resolver,
        timeout_decision: Decision,
        should_abort: AbortPredicate | None,
    ) -> ApprovalOutcome:
        request.transition(RequestState.POLLING)

        while True:
            if should_abort is not None and should_abort():
                logger.info("Approval request aborted", request_id=request.request_id)
                return self._finish(request, RequestState.CANCELLED, Decision.ABORT)

            wait = request.next_wait(ceiling)
            if wait <= 0:
                break

            async with aclosing(
                self._client.iter_updates(wait, allowed_updates)
            ) as updates:
                async for update in updates:
                    outcome = await resolve(request, update)
                    if outcome is not None:
                        request.transition(outcome.state)
                        logger.info(
                            "Approval request decided",
                            request_id=request.request_id,
                            decision=outcome.decision.value,
                        )
                        return outcome

        logger.info(
            "Approval request timed out",
            request_id=request.request_id,
            timeout_seconds=request.timeout_seconds,
        )
        return self._finish(request, RequestState.TIMED_OUT, timeout_decision)

    @staticmethod
    def _finish(
        request: ApprovalRequest, state: RequestState, decision: Decision
    ) -> ApprovalOutcome:
        request.transition(state)
        return ApprovalOutcome(state=state, decision=decision)

    def _match_callback(
        self, request: ApprovalRequest, update: Update
    ) -> tuple[CallbackQuery, str] | None:
        """承認者によるこのリクエスト宛てのボタン押下なら (押下, 値) を返す."""
        callback = update.callback_query
        if callback is None or not callback.data:
            return None

        if str(callback.from_user.id) != self._approver_id:
            logger.debug(
                "Ignoring callback from unauthorized user",
                update_id=update.update_id,
            )
            return None

        parsed = parse_correlation_token(callback.data)
        if parsed is None:
            return None

        value, request_id = parsed
        if request_id != request.request_id:
            logger.debug(
                "Ignoring callback for another request",
                update_id=update.update_id,
                request_id=request.request_id,
            )
            return None

        return callback, value

    async def _acknowledge(self, callback: CallbackQuery, text: str) -> None:
        try:
            await self._client.answer_callback_query(
                callback.id, text[:_ACK_TEXT_LIMIT]
            )
        except ChannelError:
            logger.warning(
                "Failed to acknowledge callback (non-blocking)",
                callback_query_id=callback.id,
                exc_info=True,
            )

    async def _resolve_decision(
        self, request: ApprovalRequest, update: Update
    ) -> ApprovalOutcome | None:
        matched = self._match_callback(request, update)
        if matched is None:
            return None

        callback, value = matched
        if value not in _DECISION_VALUES:
            return None

        await self._acknowledge(callback, _DECISION_VALUES[value][1])
        return ApprovalOutcome(state=RequestState.DECIDED, decision=Decision(value))

    async def _resolve_choice(
        self, request: ApprovalRequest, update: Update
    ) -> ApprovalOutcome | None:
        matched = self._match_callback(request, update)
        if matched is None:
            return None

        callback, value = matched
        for index, option in enumerate(request.choices):
            if value == choice_value(index):
                await self._acknowledge(callback, option.label)
                return ApprovalOutcome(
                    state=RequestState.DECIDED,
                    decision=Decision.SELECTED,
                    text=option.label,
                )
        return None

    async def _resolve_text(
        self, request: ApprovalRequest, update: Update
    ) -> ApprovalOutcome | None:
        message = update.message
        if message is None or message.text is None:
            return None
        if str(message.chat.id) != request.chat_id:
            return None
        if message.from_user is None or str(message.from_user.id) != self._approver_id:
            logger.debug(
                "Ignoring message from unauthorized user",
                update_id=update.update_id,
            )
            return None

        if message.text.strip() == DONE_COMMAND:
            return ApprovalOutcome(state=RequestState.DECIDED, decision=Decision.DONE)

        return ApprovalOutcome(
            state=RequestState.DECIDED,
            decision=Decision.MESSAGE,
            text=message.text,
        )


def _allowed_updates(kind: InteractionKind) -> Sequence[str]:
    if kind is InteractionKind.STOP_CONTINUATION:
        return MESSAGE_UPDATES
    return CALLBACK_QUERY_UPDATES
