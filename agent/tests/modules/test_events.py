"""Tests for agent output stream decoding and chat formatting."""

from __future__ import annotations

import json

import pytest

from modules.remote_agent.events import (
    AgentError,
    AssistantText,
    Completion,
    SystemMessage,
    ToolInvocation,
    ToolOutput,
    UnstructuredEvent,
    classify_raw_line,
    format_event,
    parse_stream_line,
    truncate,
)


def _line(obj) -> str:
    return json.dumps(obj) + "\n"


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

class TestParseStreamLine:
    def test_plain_text_is_not_an_event(self):
        assert parse_stream_line("npm install finished\n") is None
        assert parse_stream_line("{not json") is None
        assert parse_stream_line("[1, 2]") is None

    def test_flat_tool_use(self):
        events = parse_stream_line(_line({"type": "tool_use", "name": "Bash", "input": {"command": "ls"}}))
        assert events == [ToolInvocation(name="Bash", arguments={"command": "ls"})]

    def test_nested_assistant_message(self):
        obj = {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "text", "text": "I will list the files first."},
                    {"type": "tool_use", "id": "tu_1", "name": "Read", "input": {"file_path": "a.py"}},
                ]
            },
        }
        assert parse_stream_line(_line(obj)) == [
            AssistantText("I will list the files first."),
            ToolInvocation(name="Read", arguments={"file_path": "a.py"}, tool_use_id="tu_1"),
        ]

    def test_nested_tool_result(self):
        obj = {
            "type": "user",
            "message": {
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": "tu_1",
                        "content": [{"type": "text", "text": "line one"}],
                        "is_error": True,
                    }
                ]
            },
        }
        assert parse_stream_line(_line(obj)) == [ToolOutput("line one", tool_use_id="tu_1", is_error=True)]

    def test_error_event(self):
        events = parse_stream_line(_line({"type": "error", "error": {"message": "overloaded"}}))
        assert events == [AgentError("overloaded")]

    def test_error_event_with_message_object(self):
        obj = {"type": "error", "message": {"content": "context window exceeded"}, "error": "ignored"}
        assert parse_stream_line(_line(obj)) == [AgentError("context window exceeded")]

        obj = {"type": "error", "message": {"role": "assistant"}, "error": {"message": "overloaded"}}
        assert parse_stream_line(_line(obj)) == [AgentError("overloaded")]

    def test_result_event(self):
        obj = {"type": "result", "subtype": "success", "result": "All done", "num_turns": 4}
        assert parse_stream_line(_line(obj)) == [Completion(result="All done", num_turns=4)]

    def test_failed_result_event(self):
        events = parse_stream_line(_line({"type": "result", "subtype": "error_max_turns"}))
        assert events[0].is_error is True

    def test_system_init(self):
        events = parse_stream_line(_line({"type": "system", "subtype": "init", "model": "m1"}))
        assert events == [SystemMessage("Agent session started (m1)", subtype="init")]

    @pytest.mark.parametrize("event_type", ["done", "end", "message_stop"])
    def test_completion_aliases(self, event_type):
        assert parse_stream_line(_line({"type": event_type})) == [Completion()]

    def test_unknown_type_is_unstructured(self):
        events = parse_stream_line(_line({"type": "ping", "seq": 3}))
        assert events == [UnstructuredEvent("ping", {"type": "ping", "seq": 3})]


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

class TestFormatEvent:
    def test_short_assistant_text_suppressed(self):
        assert format_event(AssistantText("ok")) is None
        assert format_event(AssistantText("Now I will refactor the parser module")).startswith("💭 ")

    def test_bash_tool(self):
        message = format_event(ToolInvocation("Bash", {"command": "pytest -q"}))
        assert message.startswith("⚡ **Running command:**")
        assert "```bash\npytest -q\n```" in message

    @pytest.mark.parametrize(
        "name, prefix",
        [("Write", "📝"), ("Edit", "✏️"), ("Read", "📖"), ("Glob", "🔍"), ("Grep", "🔎"), ("WebFetch", "🔧")],
    )
    def test_tool_prefixes(self, name, prefix):
        assert format_event(ToolInvocation(name, {"file_path": "x", "pattern": "y"})).startswith(prefix)

    def test_tool_output_marks_failures(self):
        assert format_event(ToolOutput("Traceback: Exception raised")).startswith("❌")
        assert format_event(ToolOutput("3 passed in 0.2s")).startswith("✅")
        assert format_event(ToolOutput("ok")) is None

    def test_error_and_completion(self):
        assert format_event(AgentError("bad")).startswith("🚨 **Error:**")
        assert format_event(Completion()) == "✨ **Agent finished**"
        assert format_event(Completion(result="Shipped")) == "✨ **Agent finished**\nShipped"

    def test_unstructured_not_forwarded(self):
        assert format_event(UnstructuredEvent("ping")) is None

    def test_truncate(self):
        assert truncate("a" * 10, 5) == "aaaaa\n... (truncated)"
        assert truncate("  short  ") == "short"


class TestClassifyRawLine:
    @pytest.mark.parametrize(
        "line, prefix",
        [
            ("npm WARN deprecated", "📦"),
            ("TypeError: x is undefined", "❌"),
            ("Created src/app.ts", "✅"),
            ("Build success", "🎉"),
            ("$ make test", "```"),
        ],
    )
    def test_salient_lines(self, line, prefix):
        assert classify_raw_line(line).startswith(prefix)

    def test_other_lines_dropped(self):
        assert classify_raw_line("   ") is None
        assert classify_raw_line("compiling module 3 of 9") is None
