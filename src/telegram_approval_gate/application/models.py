"""Data models for the approval protocol."""

from __future__ import annotations

import math
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

Clock = Callable[[], float]


def new_request_id() -> str:
    """プロセス内で実質的に一意なリクエストIDを生成する."""
    return secrets.token_hex(8)


class InteractionKind(str, Enum):
    """承認リクエストの種類."""

    TOOL_APPROVAL = "tool_approval"
    QUESTION = "question"
    STOP_CONTINUATION = "stop_continuation"


class RequestState(str, Enum):
    """承認リクエストの状態."""

    CREATED = "created"
    PUBLISHED = "published"
    POLLING = "polling"
    DECIDED = "decided"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {RequestState.DECIDED, RequestState.TIMED_OUT, RequestState.CANCELLED}
)

_TRANSITIONS: dict[RequestState, frozenset[RequestState]] = {
    RequestState.CREATED: frozenset({RequestState.PUBLISHED}),
    RequestState.PUBLISHED: frozenset({RequestState.POLLING}),
    RequestState.POLLING: TERMINAL_STATES,
}


class Decision(str, Enum):
    """承認リクエストの結果."""

    ALLOW = "allow"
    DENY = "deny"
    SELECTED = "selected"  # 選択肢が選ばれた
    MESSAGE = "message"  # 続行指示のテキストを受信
    DONE = "done"  # /done による明示的な終了
    TIMEOUT = "timeout"
    ABORT = "abort"  # 端末側でモードが切り替えられた


class ApprovalStateError(Exception):
    """承認リクエストの状態遷移が不正な場合の例外."""

    def __init__(
        self, request_id: str, current_state: RequestState, target: RequestState
    ) -> None:
        """
        Initialize ApprovalStateError.

        Args:
            request_id: リクエストID
            current_state: 現在の状態
            target: 遷移しようとした状態
        """
        super().__init__(
            f"Invalid transition for request {request_id}: "
            f"{current_state.value} -> {target.value}"
        )
        self.request_id = request_id
        self.current_state = current_state
        self.target = target


@dataclass(frozen=True)
class QuestionOption:
    """質問の選択肢."""

    label: str
    description: str = ""


@dataclass
class ApprovalRequest:
    """
    承認待ちの 1 件のリクエスト.

    公開の直前に生成し、結果が出たら破棄する. 永続化はしない.
    """

    kind: InteractionKind
    chat_id: str
    timeout_seconds: float
    choices: tuple[QuestionOption, ...] = ()
    request_id: str = field(default_factory=new_request_id)
    clock: Clock = field(default=time.monotonic, repr=False)
    created_at: float = field(init=False)
    message_id: int | None = None
    text: str = ""
    state: RequestState = RequestState.CREATED

    def __post_init__(self) -> None:
        self.created_at = self.clock()

    @property
    def deadline(self) -> float:
        return self.created_at + self.timeout_seconds

    def remaining(self) -> float:
        """締め切りまでの残り秒数（負にはならない）."""
        return max(self.deadline - self.clock(), 0.0)

    def expired(self) -> bool:
        return self.clock() >= self.deadline

    def next_wait(self, ceiling: int) -> int:
        """次の long-poll の待ち時間（秒）. 締め切りを過ぎていれば 0."""
        return min(ceiling, math.ceil(self.remaining()))

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, target: RequestState) -> None:
        """
        状態を遷移させる.

        Raises:
            ApprovalStateError: 許可されていない遷移の場合
        """
        if target not in _TRANSITIONS.get(self.state, frozenset()):
            raise ApprovalStateError(self.request_id, self.state, target)
        self.state = target


@dataclass(frozen=True)
class ApprovalOutcome:
    """承認リクエストの最終結果."""

    state: RequestState
    decision: Decision
    text: str | None = None

    @property
    def timed_out(self) -> bool:
        return self.state is RequestState.TIMED_OUT

    @property
    def cancelled(self) -> bool:
        return self.state is RequestState.CANCELLED
