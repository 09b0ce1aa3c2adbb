"""Configuration management."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from telegram_approval_gate.infrastructure.logging import DEFAULT_LOG_DIR, get_logger

logger = get_logger(__name__)

CONFIG_PATH = Path.home() / ".cctg.json"

_CLAUDE_DIR = Path.home() / ".claude"

# セットアップウィザードが書き出す camelCase キー → フィールド名
_JSON_KEYS = {
    "botToken": "bot_token",
    "chatId": "chat_id",
    "approverId": "approver_id",
    "timeoutSeconds": "timeout_seconds",
    "remoteTimeoutSeconds": "remote_timeout_seconds",
    "autoApprove": "auto_approve",
    "autoDeny": "auto_deny",
    "cursorFile": "cursor_file",
    "settingsFiles": "settings_files",
    "apiBaseUrl": "api_base_url",
    "logLevel": "log_level",
    "logDir": "log_dir",
    "logBackupCount": "log_backup_count",
}


class ConfigurationMissingError(Exception):
    """Bot の認証情報やチャットIDが設定されていない場合の例外."""

    def __init__(self, message: str) -> None:
        """
        Initialize ConfigurationMissingError.

        Args:
            message: エラーメッセージ
        """
        super().__init__(message)


class Config(BaseSettings):
    """アプリケーション設定."""

    model_config = SettingsConfigDict(
        env_prefix="CCTG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Telegram設定
    bot_token: str = Field(
        ...,
        min_length=1,
        description="Telegram Bot Token",
    )
    chat_id: str = Field(
        ...,
        min_length=1,
        description="承認リクエストの送信先チャットID",
    )
    approver_id: str = Field(
        default="",
        description="承認を許可するユーザーID（未指定時は chat_id と同じ）",
    )
    api_base_url: str = Field(
        default="https://api.telegram.org",
        description="Telegram Bot API のベースURL",
    )

    # タイムアウト設定
    timeout_seconds: int = Field(
        default=300,
        gt=0,
        description="ツール承認・質問の待ち時間（秒）",
    )
    remote_timeout_seconds: int = Field(
        default=0,
        ge=0,
        description="停止時の続行指示の待ち時間（秒、0 は timeout_seconds と同じ）",
    )

    # ツール名による自動判定
    auto_approve: list[str] = Field(
        default_factory=list,
        description="常に承認するツール名",
    )
    auto_deny: list[str] = Field(
        default_factory=list,
        description="常に拒否するツール名",
    )

    # 状態・外部ファイル
    cursor_file: Path = Field(
        default=Path("/tmp/cctg-offset"),
        description="Telegram update offset の保存先",
    )
    settings_files: list[Path] = Field(
        default_factory=lambda: [
            _CLAUDE_DIR / "settings.json",
            _CLAUDE_DIR / "settings.local.json",
        ],
        description="permissions.allow を読み込むホスト設定ファイル",
    )

    # ロギング設定
    log_level: str = Field(default="INFO", description="ログレベル")
    log_dir: Path = Field(
        default=DEFAULT_LOG_DIR,
        description="ログ出力ディレクトリ",
    )
    log_backup_count: int = Field(default=7, ge=0, description="ログ保持日数")

    @field_validator("chat_id", "approver_id", mode="before")
    @classmethod
    def parse_identity(cls, v: object) -> str:
        """
        チャットID・ユーザーIDを文字列に正規化する.

        null は未指定として空文字列にする（chat_id では必須エラーになる）.

        Raises:
            ValueError: 文字列・整数以外の値の場合
        """
        if v is None:
            return ""
        if isinstance(v, bool) or not isinstance(v, (str, int)):
            msg = f"must be a string or integer, got {type(v).__name__}"
            raise ValueError(msg)
        return str(v).strip()

    @field_validator("cursor_file", "log_dir", mode="after")
    @classmethod
    def expand_path(cls, v: Path) -> Path:
        """~ をホームディレクトリに展開する."""
        return v.expanduser()

    @field_validator("settings_files", mode="after")
    @classmethod
    def expand_paths(cls, v: list[Path]) -> list[Path]:
        """~ をホームディレクトリに展開する."""
        return [p.expanduser() for p in v]

    @model_validator(mode="after")
    def apply_fallbacks(self) -> Config:
        """approver_id と remote_timeout_seconds の既定値を補完する."""
        if not self.approver_id:
            self.approver_id = self.chat_id
        if self.remote_timeout_seconds == 0:
            self.remote_timeout_seconds = self.timeout_seconds
        return self


def _read_config_file(path: Path) -> dict[str, Any]:
    """
    設定ファイルを読み込み、フィールド名に正規化した辞書を返す.

    ファイルが存在しない場合は空の辞書を返す（環境変数のみで設定可能）.

    Raises:
        ConfigurationMissingError: 設定ファイルのフォーマットが不正な場合
    """
    if not path.exists():
        logger.debug("Config file not found, using environment only", path=str(path))
        return {}

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
        msg = f"Config at {path} could not be read: {e}"
        raise ConfigurationMissingError(msg) from e

    if not isinstance(data, dict):
        msg = f"Config at {path} must contain a JSON object"
        raise ConfigurationMissingError(msg)

    return {_JSON_KEYS.get(key, key): value for key, value in data.items()}


def load_config(path: Path | None = None) -> Config:
    """
    設定ファイルと環境変数から設定を読み込む.

    設定ファイルの値が環境変数より優先される.

    Args:
        path: 設定ファイルのパス（省略時は ~/.cctg.json）

    Returns:
        設定インスタンス

    Raises:
        ConfigurationMissingError: 必須項目が欠けている、または不正な場合
    """
    config_path = path or CONFIG_PATH
    values = _read_config_file(config_path)
    try:
        return Config(**values)
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(part) for part in err["loc"]) for err in e.errors()
        )
        msg = (
            f"Config at {config_path} is missing or has invalid fields: {fields}. "
            "Set botToken and chatId there or via CCTG_BOT_TOKEN / CCTG_CHAT_ID."
        )
        raise ConfigurationMissingError(msg) from e

