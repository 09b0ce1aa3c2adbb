"""Entry points for the PreToolUse / Stop hooks and the mode switch CLI."""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Callable

from telegram_approval_gate.application.approval import ApprovalProtocol
from telegram_approval_gate.application.permissions import PermissionEngine
from telegram_approval_gate.infrastructure.config import Config, load_config
from telegram_approval_gate.infrastructure.cursor_store import FileCursorStore
from telegram_approval_gate.infrastructure.logging import configure_logging, get_logger
from telegram_approval_gate.infrastructure.mode import (
    ModeStore,
    ModeWatcher,
    OperatingMode,
)
from telegram_approval_gate.infrastructure.telegram_client import TelegramClient
from telegram_approval_gate.presentation.gate import GateService
from telegram_approval_gate.presentation.hook_io import (
    PreToolUseOutput,
    StopOutput,
    StopPayload,
    ToolCallPayload,
)

logger = get_logger(__name__)

ConfigLoader = Callable[[], Config]


def _setup(config_loader: ConfigLoader) -> Config:
    """設定を読み込み、その内容でロギングを設定し直す."""
    config = config_loader()
    configure_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        log_backup_count=config.log_backup_count,
    )
    return config


def _build_client(config: Config) -> TelegramClient:
    return TelegramClient(
        config.bot_token,
        FileCursorStore(config.cursor_file),
        base_url=config.api_base_url,
    )


def _build_gate(
    config: Config, client: TelegramClient, mode_watcher: ModeWatcher
) -> GateService:
    return GateService(
        config=config,
        protocol=ApprovalProtocol(client, config.chat_id, config.approver_id),
        engine=PermissionEngine.from_settings(config.settings_files),
        mode_watcher=mode_watcher,
    )


async def run_pre_tool_use(
    raw: str,
    *,
    mode_store: ModeStore | None = None,
    config_loader: ConfigLoader = load_config,
) -> str:
    """
    PreToolUse フックの入力を処理し、出力 JSON を返す.

    どこかで例外が発生した場合は拒否する（fail-closed）.

    Args:
        raw: 標準入力から読んだ JSON
        mode_store: モードファイル（テスト用）
        config_loader: 設定の読み込み関数（テスト用）

    Returns:
        標準出力に書く JSON
    """
    try:
        payload = ToolCallPayload.model_validate_json(raw)
        mode_watcher = ModeWatcher(mode_store or ModeStore())
        if mode_watcher.initial is OperatingMode.OFF:
            return PreToolUseOutput.pass_through().to_json()

        config = _setup(config_loader)
        async with _build_client(config) as client:
            gate = _build_gate(config, client, mode_watcher)
            output = await gate.handle_tool_call(payload)
    except Exception as e:
        logger.exception("PreToolUse hook failed, denying", error=str(e))
        output = PreToolUseOutput.deny(f"cctg hook error: {e}. Denying for safety.")

    return output.to_json()


async def run_stop(
    raw: str,
    *,
    mode_store: ModeStore | None = None,
    config_loader: ConfigLoader = load_config,
) -> str:
    """
    Stop フックの入力を処理し、出力 JSON を返す.

    どこかで例外が発生した場合はそのまま停止させる.

    Args:
        raw: 標準入力から読んだ JSON
        mode_store: モードファイル（テスト用）
        config_loader: 設定の読み込み関数（テスト用）

    Returns:
        標準出力に書く JSON
    """
    try:
        payload = StopPayload.model_validate_json(raw)
        mode_watcher = ModeWatcher(mode_store or ModeStore())
        if mode_watcher.initial is not OperatingMode.ON:
            return StopOutput.pass_through().to_json()

        config = _setup(config_loader)
        async with _build_client(config) as client:
            gate = _build_gate(config, client, mode_watcher)
            output = await gate.handle_stop(payload)
    except Exception as e:
        logger.exception("Stop hook failed, letting the agent stop", error=str(e))
        output = StopOutput.pass_through()

    return output.to_json()


def pre_tool_use() -> None:
    """``cctg-hook`` コンソールスクリプト."""
    # 設定を読むまではコンソールのみ. ファイルは _setup で log_dir に開く
    configure_logging(log_dir=None)
    raw = sys.stdin.read()
    sys.stdout.write(asyncio.run(run_pre_tool_use(raw)))


def stop() -> None:
    """``cctg-stop-hook`` コンソールスクリプト."""
    configure_logging(log_dir=None)
    raw = sys.stdin.read()
    sys.stdout.write(asyncio.run(run_stop(raw)))


def cli(argv: list[str] | None = None, *, mode_store: ModeStore | None = None) -> int:
    """
    ``cctg`` コンソールスクリプト.

    ``cctg mode`` で現在のモードを表示し、``cctg mode <on|tools-only|off>`` で切り替える.

    Returns:
        終了コード
    """
    parser = argparse.ArgumentParser(
        prog="cctg", description="Telegram approval gate for coding agent tool calls"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    mode_parser = subparsers.add_parser("mode", help="show or switch the operating mode")
    mode_parser.add_argument(
        "value",
        nargs="?",
        choices=[mode.value for mode in OperatingMode],
        help="new mode (omit to show the current one)",
    )

    args = parser.parse_args(argv)
    store = mode_store or ModeStore()

    if args.command == "mode":
        if args.value is None:
            print(store.read().value)
            return 0
        store.write(OperatingMode(args.value))
        print(f"mode: {args.value}")
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(cli())
