"""Tests for the Telegram Bot API client."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from telegram_approval_gate.infrastructure.cursor_store import MemoryCursorStore
from telegram_approval_gate.infrastructure.telegram_client import (
    CALLBACK_QUERY_UPDATES,
    MESSAGE_UPDATES,
    ChannelProtocolError,
    ChannelTransportError,
    TelegramClient,
)

TOKEN = "123:abc"

Handler = Callable[[httpx.Request], httpx.Response]


class Recorder:
    """MockTransport に渡すハンドラ. 受信したリクエストを記録する."""

    def __init__(self, *responses: Any) -> None:
        self.requests: list[tuple[str, dict[str, Any]]] = []
        self._responses = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        self.requests.append((method, json.loads(request.content)))
        response = self._responses.pop(0)
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)


def _client(
    handler: Handler, store: MemoryCursorStore | None = None
) -> TelegramClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TelegramClient(
        TOKEN,
        store or MemoryCursorStore(),
        base_url="https://telegram.test",
        http_client=http_client,
    )


def _ok(result: Any) -> dict[str, Any]:
    return {"ok": True, "result": result}


def _callback_update(update_id: int, data: str = "allow:abc") -> dict[str, Any]:
    return {
        "update_id": update_id,
        "callback_query": {
            "id": f"cb{update_id}",
            "from": {"id": 42, "is_bot": False, "first_name": "A"},
            "data": data,
        },
    }


class TestTelegramClientInit:
    """初期化のテスト."""

    def test_empty_token(self) -> None:
        with pytest.raises(ValueError, match="bot_token"):
            TelegramClient("", MemoryCursorStore())


class TestCall:
    """call のテスト."""

    @pytest.mark.asyncio
    async def test_returns_result(self) -> None:
        recorder = Recorder(_ok({"id": 1}))
        client = _client(recorder)

        result = await client.call("getMe", {})

        assert result == {"id": 1}

    @pytest.mark.asyncio
    async def test_url_contains_token_and_method(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json=_ok(True))

        await _client(handler).call("getMe", {})

        assert seen == [f"https://telegram.test/bot{TOKEN}/getMe"]

    @pytest.mark.asyncio
    async def test_ok_false(self) -> None:
        """ok:false の場合は description 付きの ChannelProtocolError."""
        recorder = Recorder(
            httpx.Response(
                400, json={"ok": False, "description": "Bad Request: chat not found"}
            )
        )

        with pytest.raises(ChannelProtocolError) as exc_info:
            await _client(recorder).call("sendMessage", {})

        assert exc_info.value.description == "Bad Request: chat not found"
        assert "chat not found" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_json_response(self) -> None:
        recorder = Recorder(httpx.Response(502, text="<html>Bad Gateway</html>"))

        with pytest.raises(ChannelProtocolError, match="invalid JSON"):
            await _client(recorder).call("sendMessage", {})

    @pytest.mark.asyncio
    async def test_transport_error_hides_token(self) -> None:
        """通信エラーのメッセージに Bot Token を含めない."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ChannelTransportError) as exc_info:
            await _client(handler).call("sendMessage", {})

        assert "ConnectError" in str(exc_info.value)
        assert TOKEN not in str(exc_info.value)


class TestMessages:
    """send_message / edit_message / answer_callback_query のテスト."""

    @pytest.mark.asyncio
    async def test_send_message(self) -> None:
        recorder = Recorder(_ok({"message_id": 99}))
        keyboard = {"inline_keyboard": [[{"text": "OK", "callback_data": "x"}]]}

        message_id = await _client(recorder).send_message(
            "100", "<b>hi</b>", reply_markup=keyboard
        )

        assert message_id == 99
        method, body = recorder.requests[0]
        assert method == "sendMessage"
        assert body == {
            "chat_id": "100",
            "text": "<b>hi</b>",
            "parse_mode": "HTML",
            "reply_markup": keyboard,
        }

    @pytest.mark.asyncio
    async def test_send_message_without_message_id(self) -> None:
        recorder = Recorder(_ok({}))

        with pytest.raises(ChannelProtocolError, match="missing message_id"):
            await _client(recorder).send_message("100", "hi")

    @pytest.mark.asyncio
    async def test_edit_message(self) -> None:
        recorder = Recorder(_ok(True))

        await _client(recorder).edit_message("100", 5, "done")

        assert recorder.requests == [
            (
                "editMessageText",
                {
                    "chat_id": "100",
                    "message_id": 5,
                    "text": "done",
                    "parse_mode": "HTML",
                },
            )
        ]

    @pytest.mark.asyncio
    async def test_answer_callback_query(self) -> None:
        recorder = Recorder(_ok(True))

        await _client(recorder).answer_callback_query("cb1", "Allowed")

        assert recorder.requests == [
            ("answerCallbackQuery", {"callback_query_id": "cb1", "text": "Allowed"})
        ]


class TestIterUpdates:
    """iter_updates のテスト."""

    @pytest.mark.asyncio
    async def test_request_uses_stored_cursor(self) -> None:
        recorder = Recorder(_ok([]))
        store = MemoryCursorStore(10)

        client = _client(recorder, store)
        updates = [u async for u in client.iter_updates(30, CALLBACK_QUERY_UPDATES)]

        assert updates == []
        assert recorder.requests == [
            (
                "getUpdates",
                {"offset": 10, "timeout": 30, "allowed_updates": ["callback_query"]},
            )
        ]

    @pytest.mark.asyncio
    async def test_cursor_saved_before_each_yield(self) -> None:
        """update を受け取った時点でカーソルは既に進んでいる."""
        recorder = Recorder(_ok([_callback_update(5), _callback_update(6)]))
        store = MemoryCursorStore(5)
        seen: list[tuple[int, int]] = []

        async for update in _client(recorder, store).iter_updates(
            30, CALLBACK_QUERY_UPDATES
        ):
            seen.append((update.update_id, store.load()))

        assert seen == [(5, 6), (6, 7)]

    @pytest.mark.asyncio
    async def test_cursor_never_moves_backwards(self) -> None:
        recorder = Recorder(_ok([_callback_update(3)]))
        store = MemoryCursorStore(10)

        updates = [
            u async for u in _client(recorder, store).iter_updates(0, MESSAGE_UPDATES)
        ]

        assert len(updates) == 1
        assert store.load() == 10

    @pytest.mark.asyncio
    async def test_malformed_update_is_skipped(self) -> None:
        """解析できない update はスキップされるが、カーソルは進む."""
        malformed = {"update_id": 8, "callback_query": {"data": "x"}}
        recorder = Recorder(_ok([malformed, {"no_id": True}, _callback_update(9)]))
        store = MemoryCursorStore(8)

        updates = [
            u
            async for u in _client(recorder, store).iter_updates(
                30, CALLBACK_QUERY_UPDATES
            )
        ]

        assert [u.update_id for u in updates] == [9]
        assert store.load() == 10

    @pytest.mark.asyncio
    async def test_parses_message_update(self) -> None:
        raw = {
            "update_id": 1,
            "message": {
                "message_id": 3,
                "chat": {"id": 100, "type": "private"},
                "from": {"id": 42, "is_bot": False, "first_name": "A"},
                "text": "continue please",
            },
        }
        recorder = Recorder(_ok([raw]))

        updates = [u async for u in _client(recorder).iter_updates(10, MESSAGE_UPDATES)]

        message = updates[0].message
        assert message is not None
        assert message.chat.id == 100
        assert message.from_user is not None
        assert message.from_user.id == 42
        assert message.text == "continue please"

    @pytest.mark.asyncio
    async def test_non_list_result(self) -> None:
        recorder = Recorder(_ok({"unexpected": True}))

        with pytest.raises(ChannelProtocolError, match="not a list"):
            async for _ in _client(recorder).iter_updates(30, CALLBACK_QUERY_UPDATES):
                pass


class TestFlushStaleUpdates:
    """flush_stale_updates のテスト."""

    @pytest.mark.asyncio
    async def test_noop_when_cursor_is_zero(self) -> None:
        """カーソルが 0 の場合は通信しない."""
        recorder = Recorder()
        store = MemoryCursorStore(0)

        offset = await _client(recorder, store).flush_stale_updates(
            CALLBACK_QUERY_UPDATES
        )

        assert offset == 0
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_advances_past_pending_updates(self) -> None:
        recorder = Recorder(_ok([_callback_update(20), _callback_update(21)]))
        store = MemoryCursorStore(20)

        offset = await _client(recorder, store).flush_stale_updates(
            CALLBACK_QUERY_UPDATES
        )

        assert offset == 22
        assert store.load() == 22
        assert recorder.requests[0][1]["timeout"] == 0

    @pytest.mark.asyncio
    async def test_nothing_pending(self) -> None:
        recorder = Recorder(_ok([]))
        store = MemoryCursorStore(20)

        offset = await _client(recorder, store).flush_stale_updates(MESSAGE_UPDATES)

        assert offset == 20
        assert store.load() == 20
