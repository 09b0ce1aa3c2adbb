"""Human-readable Telegram messages for tool calls, questions and stops."""

from __future__ import annotations

import json
from html import escape
from pathlib import Path
from typing import Any

from telegram_approval_gate.application.models import QuestionOption
from telegram_approval_gate.infrastructure.logging import get_logger

logger = get_logger(__name__)

TOOL_ICONS = {
    "Bash": "💻",
    "Write": "✏️",
    "Edit": "✏️",
    "Read": "📄",
    "Glob": "🔍",
    "Grep": "🔍",
    "WebFetch": "🌐",
    "WebSearch": "🌐",
    "Task": "🧠",
    "Skill": "⚙️",
    "AskUserQuestion": "❓",
}
_DEFAULT_ICON = "🔧"
_SEPARATOR = "─" * 20

# Telegram のメッセージ上限は 4096 文字
_STOP_MESSAGE_LIMIT = 3000


def truncate(s: str, max_length: int) -> str:
    """max_length を超える場合は末尾を ... に置き換える."""
    if len(s) <= max_length:
        return s
    return s[: max_length - 3] + "..."


def _code(s: str) -> str:
    return f"<pre>{escape(s)}</pre>"


def _str(tool_input: dict[str, Any], key: str, default: str = "") -> str:
    value = tool_input.get(key)
    return value if isinstance(value, str) else default


def format_tool_call(tool_name: str, tool_input: dict[str, Any]) -> str:
    """
    ツール呼び出しを承認リクエスト用のテキストに整形する.

    Args:
        tool_name: ツール名
        tool_input: ツール引数

    Returns:
        HTML 形式のテキスト
    """
    icon = TOOL_ICONS.get(tool_name, _DEFAULT_ICON)
    header = f"{icon} <b>{escape(tool_name)}</b>"

    match tool_name:
        case "Bash":
            body = _code(truncate(_str(tool_input, "command", "(no command)"), 500))
            description = _str(tool_input, "description")
            if description:
                body = f"{escape(truncate(description, 200))}\n{body}"
        case "Write":
            body = (
                f"File: <code>{escape(_str(tool_input, 'file_path'))}</code>\n"
                f"{_code(truncate(_str(tool_input, 'content'), 300))}"
            )
        case "Edit":
            body = (
                f"File: <code>{escape(_str(tool_input, 'file_path'))}</code>\n\n"
                f"Old:\n{_code(truncate(_str(tool_input, 'old_string'), 200))}\n"
                f"New:\n{_code(truncate(_str(tool_input, 'new_string'), 200))}"
            )
        case "Read":
            body = f"File: <code>{escape(_str(tool_input, 'file_path'))}</code>"
        case "WebFetch":
            body = f"URL: {escape(_str(tool_input, 'url'))}"
        case "WebSearch":
            body = f"Query: {escape(_str(tool_input, 'query'))}"
        case "Glob" | "Grep":
            body = f"Pattern: <code>{escape(_str(tool_input, 'pattern'))}</code>"
        case _:
            summary = json.dumps(tool_input, indent=2, ensure_ascii=False, default=str)
            body = _code(truncate(summary, 400))

    return f"{header}\n{_SEPARATOR}\n{body}"


def parse_question_options(question: dict[str, Any]) -> list[QuestionOption]:
    """AskUserQuestion の 1 問から選択肢を取り出す（ラベルのないものは除外）."""
    raw_options = question.get("options")
    if not isinstance(raw_options, list):
        return []

    options: list[QuestionOption] = []
    for raw in raw_options:
        if isinstance(raw, str) and raw:
            options.append(QuestionOption(label=raw))
        elif isinstance(raw, dict) and isinstance(raw.get("label"), str) and raw["label"]:
            description = raw.get("description")
            options.append(
                QuestionOption(
                    label=raw["label"],
                    description=description if isinstance(description, str) else "",
                )
            )
    return options


def format_question(question: dict[str, Any], options: list[QuestionOption]) -> str:
    """
    AskUserQuestion の 1 問を整形する.

    Args:
        question: ``{"question": ..., "header": ..., "options": [...]}``
        options: 解析済みの選択肢

    Returns:
        HTML 形式のテキスト
    """
    lines = [f"{TOOL_ICONS['AskUserQuestion']} <b>Question</b>"]
    header = question.get("header")
    if isinstance(header, str) and header:
        lines[0] += f": {escape(header)}"
    lines.append(_SEPARATOR)

    text = question.get("question")
    if isinstance(text, str) and text:
        lines.append(escape(text))

    for option in options:
        line = f"• <b>{escape(option.label)}</b>"
        if option.description:
            line += f": {escape(option.description)}"
        lines.append(line)

    return "\n".join(lines)


def format_stop_message(last_message: str) -> str:
    """
    エージェント停止時の通知テキストを整形する.

    Args:
        last_message: 最後のアシスタントメッセージ

    Returns:
        HTML 形式のテキスト
    """
    body = escape(truncate(last_message, _STOP_MESSAGE_LIMIT)) or "<i>(no message)</i>"
    return (
        f"🛑 <b>Agent stopped</b>\n{_SEPARATOR}\n{body}\n\n"
        "Reply with instructions to continue, or /done to finish."
    )


def extract_last_assistant_message(transcript_path: str | None) -> str:
    """
    JSONL 形式のトランスクリプトから最後のアシスタントのテキストを取り出す.

    読み込めない場合や見つからない場合は空文字列を返す.

    Args:
        transcript_path: トランスクリプトファイルのパス

    Returns:
        最後のアシスタントメッセージのテキスト
    """
    if not transcript_path:
        return ""

    path = Path(transcript_path).expanduser()
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError):
        logger.warning("Failed to read transcript", path=str(path))
        return ""

    for line in reversed(lines):
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict) or entry.get("type") != "assistant":
            continue

        message = entry.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str) and content.strip():
            return content.strip()
        if not isinstance(content, list):
            continue

        texts = [
            block["text"]
            for block in content
            if isinstance(block, dict)
            and block.get("type") == "text"
            and isinstance(block.get("text"), str)
        ]
        text = "\n".join(texts).strip()
        if text:
            return text

    return ""
