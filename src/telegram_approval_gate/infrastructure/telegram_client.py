"""Telegram Bot API client - long-poll wrapper around httpx."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from telegram_approval_gate.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from types import TracebackType

    from telegram_approval_gate.infrastructure.cursor_store import UpdateCursorStore

logger = get_logger(__name__)

DEFAULT_API_BASE_URL = "https://api.telegram.org"

# long-poll の待ち時間に上乗せする HTTP タイムアウトの余裕（秒）
_HTTP_TIMEOUT_MARGIN = 10.0
_DEFAULT_HTTP_TIMEOUT = 30.0

CALLBACK_QUERY_UPDATES = ("callback_query",)
MESSAGE_UPDATES = ("message",)


class ChannelError(Exception):
    """Telegram との通信に失敗した場合の基底例外."""


class ChannelTransportError(ChannelError):
    """ネットワーク・HTTP レベルで失敗した場合の例外."""

    def __init__(self, method: str, message: str) -> None:
        """
        Initialize ChannelTransportError.

        Args:
            method: 呼び出した Bot API メソッド
            message: エラーメッセージ
        """
        super().__init__(f"Telegram {method} failed: {message}")
        self.method = method


class ChannelProtocolError(ChannelError):
    """Bot API が ok:false や不正なレスポンスを返した場合の例外."""

    def __init__(self, method: str, description: str | None) -> None:
        """
        Initialize ChannelProtocolError.

        Args:
            method: 呼び出した Bot API メソッド
            description: Bot API が返したエラー説明
        """
        super().__init__(f"Telegram {method} failed: {description or 'unknown error'}")
        self.method = method
        self.description = description


class _TelegramModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TelegramUser(_TelegramModel):
    """送信者."""

    id: int


class TelegramChat(_TelegramModel):
    """チャット."""

    id: int


class TelegramMessage(_TelegramModel):
    """メッセージ."""

    message_id: int
    chat: TelegramChat
    from_user: TelegramUser | None = Field(default=None, alias="from")
    text: str | None = None


class CallbackQuery(_TelegramModel):
    """インラインキーボードのボタン押下."""

    id: str
    from_user: TelegramUser = Field(alias="from")
    data: str | None = None
    message: TelegramMessage | None = None


class Update(_TelegramModel):
    """getUpdates が返す 1 件の更新."""

    update_id: int
    message: TelegramMessage | None = None
    callback_query: CallbackQuery | None = None


class TelegramClient:
    """
    Telegram Bot API クライアント.

    update の消費位置は UpdateCursorStore に保存する. 取得した update は
    1 件ずつ、呼び出し側が内容を確認する前にカーソルを進めてから返す.
    """

    def __init__(
        self,
        bot_token: str,
        cursor_store: UpdateCursorStore,
        *,
        base_url: str = DEFAULT_API_BASE_URL,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize TelegramClient.

        Args:
            bot_token: Bot Token
            cursor_store: update カーソルの保存先
            base_url: Bot API のベースURL
            http_client: 利用する httpx クライアント（テスト用、省略時は内部で生成）
        """
        if not bot_token:
            msg = "bot_token must not be empty"
            raise ValueError(msg)

        self._bot_token = bot_token
        self._cursor_store = cursor_store
        self._base_url = base_url.rstrip("/")
        self._client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> TelegramClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        """HTTP クライアントを取得する（未生成なら生成する）."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(_DEFAULT_HTTP_TIMEOUT),
            )
        return self._client

    async def close(self) -> None:
        """内部で生成した HTTP クライアントを閉じる."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def call(
        self,
        method: str,
        body: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> Any:
        """
        Bot API メソッドを呼び出し、result を返す.

        Args:
            method: Bot API メソッド名（例: "sendMessage"）
            body: JSON ボディ
            timeout: HTTP タイムアウト（秒、省略時は既定値）

        Returns:
            レスポンスの result フィールド

        Raises:
            ChannelTransportError: 通信に失敗した場合
            ChannelProtocolError: ok:false または JSON でないレスポンスの場合
        """
        url = f"{self._base_url}/bot{self._bot_token}/{method}"
        request_timeout = httpx.Timeout(timeout or _DEFAULT_HTTP_TIMEOUT)
        try:
            response = await self._get_client().post(
                url, json=body, timeout=request_timeout
            )
        except httpx.HTTPError as e:
            # URL に Bot Token が含まれるため例外メッセージには型名のみを使う
            raise ChannelTransportError(method, type(e).__name__) from e

        try:
            payload = response.json()
        except ValueError as e:
            raise ChannelProtocolError(
                method, f"invalid JSON (HTTP {response.status_code})"
            ) from e

        if not isinstance(payload, dict) or not payload.get("ok"):
            description = (
                payload.get("description") if isinstance(payload, dict) else None
            )
            raise ChannelProtocolError(method, description)

        return payload.get("result")

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        reply_markup: dict[str, Any] | None = None,
    ) -> int:
        """
        メッセージを送信する.

        Args:
            chat_id: 送信先チャットID
            text: 本文（HTML）
            reply_markup: インラインキーボード等

        Returns:
            送信したメッセージの message_id
        """
        body: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
        }
        if reply_markup is not None:
            body["reply_markup"] = reply_markup

        result = await self.call("sendMessage", body)
        try:
            return int(result["message_id"])
        except (KeyError, TypeError, ValueError) as e:
            raise ChannelProtocolError("sendMessage", "missing message_id") from e

    async def edit_message(self, chat_id: str, message_id: int, text: str) -> None:
        """
        送信済みメッセージの本文を書き換える（キーボードは取り除かれる）.

        Args:
            chat_id: チャットID
            message_id: 対象メッセージID
            text: 新しい本文（HTML）
        """
        await self.call(
            "editMessageText",
            {
                "chat_id": chat_id,
                "message_id": message_id,
                "text": text,
                "parse_mode": "HTML",
            },
        )

    async def answer_callback_query(self, callback_query_id: str, text: str) -> None:
        """
        ボタン押下を受信したことを Telegram に通知する.

        Args:
            callback_query_id: CallbackQuery の ID
            text: 押下したユーザーに表示するテキスト
        """
        await self.call(
            "answerCallbackQuery",
            {"callback_query_id": callback_query_id, "text": text},
        )

    async def get_updates(
        self,
        offset: int,
        timeout: int,
        allowed_updates: Sequence[str],
    ) -> list[dict[str, Any]]:
        """
        getUpdates を呼び出し、生の update 一覧を返す.

        Args:
            offset: 取得を開始する update_id
            timeout: long-poll の待ち時間（秒、0 なら即時に返る）
            allowed_updates: 取得する update の種類

        Returns:
            update の辞書のリスト
        """
        result = await self.call(
            "getUpdates",
            {
                "offset": offset,
                "timeout": timeout,
                "allowed_updates": list(allowed_updates),
            },
            timeout=timeout + _HTTP_TIMEOUT_MARGIN,
        )
        if not isinstance(result, list):
            raise ChannelProtocolError("getUpdates", "result is not a list")
        return result

    async def iter_updates(
        self,
        timeout: int,
        allowed_updates: Sequence[str],
    ) -> AsyncIterator[Update]:
        """
        保存済みカーソルから update を 1 回取得し、順に返す.

        各 update はカーソルを保存してから yield される. 途中でクラッシュしても
        同じ update が再処理されることはない（代わりに取りこぼす可能性がある）.
        解析できない update はスキップする.

        Args:
            timeout: long-poll の待ち時間（秒）
            allowed_updates: 取得する update の種類

        Yields:
            解析済みの Update
        """
        offset = self._cursor_store.load()
        raw_updates = await self.get_updates(offset, timeout, allowed_updates)

        for raw in raw_updates:
            update_id = raw.get("update_id") if isinstance(raw, dict) else None
            if not isinstance(update_id, int):
                logger.warning("Skipping update without update_id")
                continue

            offset = max(offset, update_id + 1)
            self._cursor_store.save(offset)

            try:
                update = Update.model_validate(raw)
            except ValidationError:
                logger.warning("Skipping malformed update", update_id=update_id)
                continue

            yield update

    async def flush_stale_updates(self, allowed_updates: Sequence[str]) -> int:
        """
        以前のリクエスト宛てに溜まっている update を読み捨てる.

        カーソルが 0（未使用）の場合は何もしない. 待機はしない.

        Args:
            allowed_updates: 読み捨てる update の種類

        Returns:
            読み捨て後のカーソル値
        """
        offset = self._cursor_store.load()
        if offset == 0:
            return offset

        raw_updates = await self.get_updates(offset, 0, allowed_updates)
        stale_ids = [
            raw["update_id"]
            for raw in raw_updates
            if isinstance(raw, dict) and isinstance(raw.get("update_id"), int)
        ]
        if stale_ids:
            offset = max(offset, max(stale_ids) + 1)
            self._cursor_store.save(offset)
            logger.info("Flushed stale updates", count=len(stale_ids), offset=offset)

        return offset
