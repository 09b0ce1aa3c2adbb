"""Operating mode shared between the terminal and the hooks."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from telegram_approval_gate.infrastructure.logging import get_logger

logger = get_logger(__name__)

MODE_PATH = Path.home() / ".cctg-active"


class OperatingMode(str, Enum):
    """リモート操作モード."""

    ON = "on"  # ツール承認 + 停止時の続行指示
    TOOLS_ONLY = "tools-only"  # ツール承認のみ
    OFF = "off"  # 何もしない（ローカル端末で操作）


class ModeStore:
    """モードファイルの読み書き."""

    def __init__(self, path: Path = MODE_PATH) -> None:
        """
        Initialize ModeStore.

        Args:
            path: モードファイルのパス
        """
        self._path = path

    def read(self) -> OperatingMode:
        """
        現在のモードを読み込む.

        ファイルがなければ OFF. 旧形式（タイムスタンプ等）の内容は ON とみなす.

        Returns:
            現在のモード
        """
        try:
            content = self._path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return OperatingMode.OFF
        except (OSError, UnicodeDecodeError):
            logger.warning("Unreadable mode file, treating as off", path=str(self._path))
            return OperatingMode.OFF

        if content in (OperatingMode.ON.value, OperatingMode.TOOLS_ONLY.value):
            return OperatingMode(content)
        return OperatingMode.ON

    def write(self, mode: OperatingMode) -> None:
        """
        モードを保存する. OFF はファイルを削除して表す.

        Args:
            mode: 新しいモード
        """
        if mode is OperatingMode.OFF:
            self._path.unlink(missing_ok=True)
        else:
            self._path.write_text(mode.value, encoding="utf-8")


class ModeWatcher:
    """起動時のモードを記録し、途中で切り替わったかを判定する."""

    def __init__(self, store: ModeStore) -> None:
        self._store = store
        self.initial = store.read()

    def changed(self) -> bool:
        """起動時からモードが変わっていれば True."""
        return self._store.read() != self.initial
