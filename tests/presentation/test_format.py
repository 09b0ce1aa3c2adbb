"""Tests for Telegram message formatting."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from telegram_approval_gate.application.models import QuestionOption
from telegram_approval_gate.presentation.format import (
    extract_last_assistant_message,
    format_question,
    format_stop_message,
    format_tool_call,
    parse_question_options,
    truncate,
)


class TestTruncate:
    """truncate のテスト."""

    def test_short_string_unchanged(self) -> None:
        assert truncate("abc", 10) == "abc"

    def test_exact_length_unchanged(self) -> None:
        assert truncate("abcde", 5) == "abcde"

    def test_long_string(self) -> None:
        result = truncate("a" * 20, 10)
        assert result == "a" * 7 + "..."
        assert len(result) == 10


class TestFormatToolCall:
    """format_tool_call のテスト."""

    def test_bash_with_description(self) -> None:
        text = format_tool_call(
            "Bash", {"command": "ls -la", "description": "List files"}
        )
        assert text.startswith("💻 <b>Bash</b>")
        assert "List files" in text
        assert "<pre>ls -la</pre>" in text

    def test_bash_escapes_html(self) -> None:
        """コマンド中の HTML 特殊文字はエスケープされる."""
        text = format_tool_call("Bash", {"command": "echo '<b>' && cat a > b"})
        assert "&lt;b&gt;" in text
        assert "&amp;&amp;" in text
        assert "<b>'" not in text

    def test_bash_long_command_truncated(self) -> None:
        text = format_tool_call("Bash", {"command": "x" * 1000})
        assert "x" * 497 + "..." in text
        assert "x" * 498 not in text

    def test_bash_long_description_truncated(self) -> None:
        """長い説明文も切り詰めてメッセージ上限を超えないようにする."""
        text = format_tool_call("Bash", {"command": "ls", "description": "d" * 5000})
        assert "d" * 197 + "..." in text
        assert "d" * 198 not in text
        assert len(text) < 4096

    def test_write(self) -> None:
        text = format_tool_call(
            "Write", {"file_path": "/tmp/a.py", "content": "print('hi')"}
        )
        assert "<code>/tmp/a.py</code>" in text
        assert "print(&#x27;hi&#x27;)" in text

    def test_edit(self) -> None:
        text = format_tool_call(
            "Edit",
            {"file_path": "/tmp/a.py", "old_string": "foo", "new_string": "bar"},
        )
        assert "Old:\n<pre>foo</pre>" in text
        assert "New:\n<pre>bar</pre>" in text

    @pytest.mark.parametrize(
        ("tool_name", "tool_input", "expected"),
        [
            ("Read", {"file_path": "/etc/hosts"}, "File: <code>/etc/hosts</code>"),
            (
                "WebFetch",
                {"url": "https://a.test/?x=1&y=2"},
                "URL: https://a.test/?x=1&amp;y=2",
            ),
            ("WebSearch", {"query": "python"}, "Query: python"),
            ("Grep", {"pattern": "TODO"}, "Pattern: <code>TODO</code>"),
        ],
    )
    def test_one_line_tools(
        self, tool_name: str, tool_input: dict[str, str], expected: str
    ) -> None:
        assert expected in format_tool_call(tool_name, tool_input)

    def test_unknown_tool_shows_json(self) -> None:
        text = format_tool_call("mcp__db__query", {"sql": "select 1"})
        assert text.startswith("🔧 <b>mcp__db__query</b>")
        assert "&quot;sql&quot;: &quot;select 1&quot;" in text

    def test_non_string_arguments(self) -> None:
        """引数が文字列でなくても例外にならない."""
        text = format_tool_call("Bash", {"command": ["ls"]})
        assert "(no command)" in text


class TestQuestions:
    """parse_question_options / format_question のテスト."""

    def test_parse_mixed_options(self) -> None:
        options = parse_question_options(
            {
                "options": [
                    "Plain",
                    {"label": "Rich", "description": "with detail"},
                    {"description": "no label"},
                    "",
                    3,
                ]
            }
        )
        assert options == [
            QuestionOption("Plain"),
            QuestionOption("Rich", "with detail"),
        ]

    def test_parse_missing_options(self) -> None:
        assert parse_question_options({"question": "?"}) == []
        assert parse_question_options({"options": "A,B"}) == []

    def test_format_question(self) -> None:
        options = [QuestionOption("A", "first"), QuestionOption("B")]
        text = format_question(
            {"question": "Pick <one>", "header": "Choice"}, options
        )
        lines = text.splitlines()
        assert lines[0] == "❓ <b>Question</b>: Choice"
        assert "Pick &lt;one&gt;" in lines
        assert "• <b>A</b>: first" in lines
        assert "• <b>B</b>" in lines


class TestStopMessage:
    """format_stop_message / extract_last_assistant_message のテスト."""

    def test_format_stop_message(self) -> None:
        text = format_stop_message("Finished <refactor>")
        assert text.startswith("🛑 <b>Agent stopped</b>")
        assert "Finished &lt;refactor&gt;" in text
        assert text.endswith("Reply with instructions to continue, or /done to finish.")

    def test_format_empty_stop_message(self) -> None:
        assert "<i>(no message)</i>" in format_stop_message("")

    def test_extract_last_assistant_text(self, tmp_path: Path) -> None:
        """最後のアシスタントメッセージのテキストブロックを連結して返す."""
        transcript = tmp_path / "t.jsonl"
        entries = [
            {"type": "assistant", "message": {"content": "older"}},
            {"type": "user", "message": {"content": "thanks"}},
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "text", "text": "First part."},
                        {"type": "tool_use", "name": "Bash"},
                        {"type": "text", "text": "Second part."},
                    ]
                },
            },
            {"type": "summary"},
        ]
        transcript.write_text(
            "\n".join(json.dumps(e) for e in entries) + "\nnot json\n"
        )

        assert extract_last_assistant_message(str(transcript)) == (
            "First part.\nSecond part."
        )

    def test_extract_skips_assistant_without_text(self, tmp_path: Path) -> None:
        transcript = tmp_path / "t.jsonl"
        entries = [
            {"type": "assistant", "message": {"content": "the answer"}},
            {
                "type": "assistant",
                "message": {"content": [{"type": "tool_use", "name": "Read"}]},
            },
        ]
        transcript.write_text("\n".join(json.dumps(e) for e in entries))

        assert extract_last_assistant_message(str(transcript)) == "the answer"

    def test_extract_missing_file(self, tmp_path: Path) -> None:
        assert extract_last_assistant_message(str(tmp_path / "missing")) == ""
        assert extract_last_assistant_message(None) == ""
