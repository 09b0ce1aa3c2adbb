"""Host permission settings loader."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from telegram_approval_gate.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

logger = get_logger(__name__)


def load_allow_rules(paths: Iterable[Path]) -> list[str]:
    """
    ホスト設定ファイルから permissions.allow のルール文字列を読み込む.

    ファイルの順にルールを連結する. 存在しないファイルは無視し、
    壊れたファイルは警告を出してスキップする.

    Args:
        paths: 設定ファイルのパス

    Returns:
        ルール文字列のリスト
    """
    rules: list[str] = []
    for path in paths:
        if not path.exists():
            continue
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError):
            logger.warning("Failed to read settings file", path=str(path), exc_info=True)
            continue

        permissions = data.get("permissions") if isinstance(data, dict) else None
        allow = permissions.get("allow") if isinstance(permissions, dict) else None
        if not isinstance(allow, list):
            continue

        rules.extend(rule for rule in allow if isinstance(rule, str))

    logger.debug("Loaded allow rules", rule_count=len(rules))
    return rules
