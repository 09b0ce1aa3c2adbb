"""Local pre-authorization against the host's allow rules."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

from telegram_approval_gate.application.rules import (
    BASH_TOOL,
    BareTool,
    ExactTool,
    Parameterized,
    PermissionRule,
    RuleKind,
    match_rule,
    parse_rule,
    segment_command,
)
from telegram_approval_gate.infrastructure.logging import get_logger
from telegram_approval_gate.infrastructure.settings import load_allow_rules

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

logger = get_logger(__name__)

_BASH_KINDS = frozenset({RuleKind.BASH_PREFIX, RuleKind.BASH_EXACT})


class PermissionEngine:
    """ネットワークを使わずにツール呼び出しが事前承認済みかを判定する."""

    def __init__(
        self,
        rules: Sequence[PermissionRule],
        *,
        home: Path | None = None,
    ) -> None:
        """
        Initialize PermissionEngine.

        Args:
            rules: 評価するルール（評価中は変更しない）
            home: ``~`` の展開先（省略時は実行ユーザーのホーム）
        """
        self._rules = tuple(rules)
        self._home = home or Path.home()

    @classmethod
    def from_strings(
        cls, rules: Iterable[str], *, home: Path | None = None
    ) -> PermissionEngine:
        """ルール文字列から生成する."""
        return cls([parse_rule(rule) for rule in rules], home=home)

    @classmethod
    def from_settings(
        cls, paths: Iterable[Path], *, home: Path | None = None
    ) -> PermissionEngine:
        """ホスト設定ファイルの permissions.allow から生成する."""
        return cls.from_strings(load_allow_rules(paths), home=home)

    @property
    def rules(self) -> tuple[PermissionRule, ...]:
        return self._rules

    def is_preauthorized(self, tool_name: str, arguments: dict[str, Any]) -> bool:
        """
        ツール呼び出しがルールで事前承認されているか判定する.

        1. ツール名だけのルール（MCP 含む）にマッチすれば承認
        2. Bash 以外は、引数付きルールのどれかにマッチすれば承認
        3. Bash は連結コマンドを分割し、すべてのセグメントが
           いずれかの Bash ルールにマッチした場合のみ承認

        Args:
            tool_name: ツール名
            arguments: ツール引数

        Returns:
            事前承認されている場合 True
        """
        for rule in self._rules:
            if isinstance(rule, BareTool | ExactTool) and rule.name == tool_name:
                logger.debug("Pre-authorized by tool rule", tool_name=tool_name)
                return True

        if tool_name == BASH_TOOL:
            return self._is_bash_preauthorized(arguments)

        for rule in self._rules:
            if isinstance(rule, Parameterized) and match_rule(
                rule, tool_name, arguments, home=self._home
            ):
                logger.debug(
                    "Pre-authorized by parameterized rule",
                    tool_name=tool_name,
                    rule_argument=rule.argument,
                )
                return True

        return False

    def _is_bash_preauthorized(self, arguments: dict[str, Any]) -> bool:
        """すべてのセグメントが少なくとも 1 つの Bash ルールにマッチするか判定する."""
        bash_rules = [
            rule
            for rule in self._rules
            if isinstance(rule, Parameterized)
            and rule.tool == BASH_TOOL
            and rule.kind in _BASH_KINDS
        ]
        if not bash_rules:
            return False

        command = arguments.get("command")
        if not isinstance(command, str):
            return False

        segments = segment_command(command)
        if not segments:
            return False

        for segment in segments:
            segment_arguments = {"command": segment}
            if not any(
                match_rule(rule, BASH_TOOL, segment_arguments, home=self._home)
                for rule in bash_rules
            ):
                logger.debug("Bash segment not pre-authorized", segment=segment[:100])
                return False

        logger.debug("Pre-authorized bash command", segment_count=len(segments))
        return True
