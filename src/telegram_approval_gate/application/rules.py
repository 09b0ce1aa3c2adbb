"""Permission rules, shell command segmentation and rule matching."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

BASH_TOOL = "Bash"
PATH_TOOLS = frozenset({"Read", "Write", "Edit"})
WEB_FETCH_TOOL = "WebFetch"
SKILL_TOOL = "Skill"

_MCP_PREFIX = "mcp__"
_DOMAIN_PREFIX = "domain:"
_PREFIX_SUFFIX = ":*"

_PARAMETERIZED_RULE = re.compile(r"^(\w+)\((.+)\)$", re.DOTALL)


class RuleKind(str, Enum):
    """引数付きルールの種別."""

    BASH_PREFIX = "bash_prefix"
    BASH_EXACT = "bash_exact"
    PATH_GLOB = "path_glob"
    DOMAIN_SUFFIX = "domain_suffix"
    SKILL_NAME = "skill_name"


@dataclass(frozen=True)
class BareTool:
    """ツール名だけのルール（例: ``Read``）."""

    name: str


@dataclass(frozen=True)
class ExactTool:
    """MCP ツール名の完全一致ルール（例: ``mcp__github__get_issue``）."""

    name: str


@dataclass(frozen=True)
class Parameterized:
    """
    引数付きルール（例: ``Bash(git status:*)``）.

    kind が None のルールは形式を解釈できなかったもので、何にもマッチしない.
    """

    tool: str
    argument: str
    kind: RuleKind | None


PermissionRule = BareTool | ExactTool | Parameterized


def _parameterized_kind(tool: str, argument: str) -> RuleKind | None:
    if tool == BASH_TOOL:
        if argument.endswith(_PREFIX_SUFFIX):
            return RuleKind.BASH_PREFIX
        return RuleKind.BASH_EXACT
    if tool in PATH_TOOLS:
        return RuleKind.PATH_GLOB
    if tool == WEB_FETCH_TOOL:
        return RuleKind.DOMAIN_SUFFIX if argument.startswith(_DOMAIN_PREFIX) else None
    if tool == SKILL_TOOL:
        return RuleKind.SKILL_NAME
    return None


def parse_rule(rule: str) -> PermissionRule:
    """
    ルール文字列を解析する.

    Args:
        rule: ``Read``、``mcp__server__tool``、``Bash(npm test:*)`` 形式の文字列

    Returns:
        解析済みのルール
    """
    if rule.startswith(_MCP_PREFIX):
        return ExactTool(rule)

    match = _PARAMETERIZED_RULE.match(rule)
    if match is None:
        return BareTool(rule)

    tool, argument = match.group(1), match.group(2)
    return Parameterized(tool, argument, _parameterized_kind(tool, argument))


def segment_command(command: str) -> list[str]:
    """
    シェルコマンドをトップレベルの制御演算子で分割する.

    ``;`` ``|`` ``&&`` ``||`` と改行・バックグラウンド ``&`` で区切る.
    クォート内、括弧（サブシェル）内、バックスラッシュでエスケープされた文字では
    分割しない. 閉じられていないクォートは以降を文字列として扱う.

    Args:
        command: シェルコマンド

    Returns:
        前後の空白を除いた空でないセグメントのリスト
    """
    segments: list[str] = []
    current: list[str] = []
    in_single = False
    in_double = False
    depth = 0
    i = 0
    length = len(command)

    def flush() -> None:
        segment = "".join(current).strip()
        if segment:
            segments.append(segment)
        current.clear()

    while i < length:
        c = command[i]
        next_c = command[i + 1] if i + 1 < length else ""

        if c == "\\" and not in_single:
            current.append(c)
            if next_c:
                current.append(next_c)
            i += 2
            continue

        if c == "'" and not in_double:
            in_single = not in_single
        elif c == '"' and not in_single:
            in_double = not in_double
        elif in_single or in_double:
            pass
        elif c == "(":
            depth += 1
        elif c == ")":
            depth = max(depth - 1, 0)
        elif depth == 0:
            if (c == "&" and next_c == "&") or (c == "|" and next_c == "|"):
                flush()
                i += 2
                continue
            if c in (";", "|", "\n"):
                flush()
                i += 1
                continue
            if c == "&" and not _is_redirection_ampersand(command, i):
                flush()
                i += 1
                continue

        current.append(c)
        i += 1

    flush()
    return segments


def _is_redirection_ampersand(command: str, index: int) -> bool:
    """``&>`` ``>&`` ``<&`` ``2>&1`` の ``&`` なら True."""
    prev_c = command[index - 1] if index > 0 else ""
    next_c = command[index + 1] if index + 1 < len(command) else ""
    return next_c == ">" or prev_c in (">", "<")


def expand_home(value: str, home: Path) -> str:
    """先頭の ``~`` / ``~/`` をホームディレクトリに展開する."""
    if value == "~":
        return str(home)
    if value.startswith("~/"):
        return str(home / value[2:])
    return value


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """
    パスの glob パターンを正規表現に変換する.

    ``*`` は ``/`` 以外の任意の文字列、``**`` は ``/`` を含む任意の文字列にマッチする.
    それ以外の文字はすべてリテラルとして扱う.
    """
    parts: list[str] = []
    for token in re.split(r"(\*\*|\*)", pattern):
        if token == "**":
            parts.append(".*")
        elif token == "*":
            parts.append("[^/]*")
        else:
            parts.append(re.escape(token))
    return re.compile("".join(parts), re.DOTALL)


def match_path_glob(argument: str, file_path: str, home: Path) -> bool:
    """パス glob ルールにマッチするか判定する（全体一致）."""
    pattern = glob_to_regex(expand_home(argument, home))
    return pattern.fullmatch(expand_home(file_path, home)) is not None


def match_bash(argument: str, command: str, home: Path) -> bool:
    """
    Bash ルールに 1 セグメントがマッチするか判定する.

    ``prefix:*`` はセグメントが prefix と等しいか ``prefix + " "`` で始まる場合、
    それ以外は完全一致の場合にマッチする.
    """
    if argument.endswith(_PREFIX_SUFFIX):
        prefix = expand_home(argument[: -len(_PREFIX_SUFFIX)], home)
        return command == prefix or command.startswith(prefix + " ")
    return command == expand_home(argument, home)


def match_domain(argument: str, url: str) -> bool:
    """``domain:<host>`` ルールに URL のホストがマッチするか判定する."""
    if not argument.startswith(_DOMAIN_PREFIX):
        return False
    domain = argument[len(_DOMAIN_PREFIX) :].lower()
    if not domain:
        return False
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return False
    if not host:
        return False
    return host == domain or host.endswith("." + domain)


def _string_argument(arguments: dict[str, Any], key: str) -> str | None:
    value = arguments.get(key)
    return value if isinstance(value, str) else None


def match_rule(
    rule: PermissionRule,
    tool_name: str,
    arguments: dict[str, Any],
    *,
    home: Path | None = None,
) -> bool:
    """
    1 つのルールが 1 回のツール呼び出しにマッチするか判定する.

    Bash ルールは command 引数全体を 1 セグメントとして比較する
    （連結コマンドの分割は PermissionEngine が行う）.
    解釈できないルールや引数の型が合わない場合は常に False.

    Args:
        rule: 判定するルール
        tool_name: ツール名
        arguments: ツール引数
        home: ``~`` の展開先（省略時は実行ユーザーのホーム）

    Returns:
        マッチした場合 True
    """
    if isinstance(rule, BareTool | ExactTool):
        return rule.name == tool_name

    if rule.tool != tool_name or rule.kind is None:
        return False

    home_dir = home or Path.home()

    if rule.kind in (RuleKind.BASH_PREFIX, RuleKind.BASH_EXACT):
        command = _string_argument(arguments, "command")
        return command is not None and match_bash(rule.argument, command, home_dir)

    if rule.kind is RuleKind.PATH_GLOB:
        file_path = _string_argument(arguments, "file_path")
        return file_path is not None and match_path_glob(
            rule.argument, file_path, home_dir
        )

    if rule.kind is RuleKind.DOMAIN_SUFFIX:
        url = _string_argument(arguments, "url")
        return url is not None and match_domain(rule.argument, url)

    if rule.kind is RuleKind.SKILL_NAME:
        return _string_argument(arguments, "skill") == rule.argument

    return False
