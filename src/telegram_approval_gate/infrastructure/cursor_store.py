"""Persisted pointer into the Telegram update stream."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from telegram_approval_gate.infrastructure.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CURSOR_PATH = Path("/tmp/cctg-offset")


class UpdateCursorStore(Protocol):
    """未消費の最小 update_id を保持するストア."""

    def load(self) -> int:
        """保存済みのカーソルを返す（未保存なら 0）."""
        ...

    def save(self, offset: int) -> None:
        """カーソルを保存する（失敗しても例外を送出しない）."""
        ...


class FileCursorStore:
    """
    カーソルをテキストファイルに保存するストア.

    同時に複数のフックが動くと同じファイルを読み書きするが、ロックは取らない.
    取りこぼしや再処理が起きても request_id の照合で誤適用は防がれる.
    """

    def __init__(self, path: Path = DEFAULT_CURSOR_PATH) -> None:
        """
        Initialize FileCursorStore.

        Args:
            path: カーソルファイルのパス
        """
        self._path = path

    @property
    def path(self) -> Path:
        """カーソルファイルのパス."""
        return self._path

    def load(self) -> int:
        """
        保存済みのカーソルを読み込む.

        ファイルが存在しない、または数値でない場合は 0 を返す.

        Returns:
            カーソル値
        """
        try:
            value = int(self._path.read_text(encoding="utf-8").strip())
        except FileNotFoundError:
            return 0
        except (OSError, ValueError, UnicodeDecodeError):
            logger.warning(
                "Unreadable update cursor, starting from 0", path=str(self._path)
            )
            return 0
        return max(value, 0)

    def save(self, offset: int) -> None:
        """
        カーソルを保存する.

        書き込みに失敗しても処理は継続する（既読の update を再取得するだけ）.

        Args:
            offset: 次に取得すべき update_id
        """
        try:
            self._path.write_text(str(offset), encoding="utf-8")
        except OSError:
            logger.warning(
                "Failed to persist update cursor (non-blocking)",
                path=str(self._path),
                offset=offset,
                exc_info=True,
            )


class MemoryCursorStore:
    """プロセス内だけで保持するストア."""

    def __init__(self, offset: int = 0) -> None:
        self._offset = offset

    def load(self) -> int:
        return self._offset

    def save(self, offset: int) -> None:
        self._offset = offset
