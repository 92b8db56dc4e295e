"""Decoding and formatting of the agent container's output stream.

Each log line is either a JSON object (a structured event from the agent
CLI) or plain terminal text.  JSON lines decode into one or more of the
event variants below; anything with an unrecognized discriminator becomes
an :class:`UnstructuredEvent`.  Two wire shapes are understood: the flat
one (``{"type": "tool_use", "name": ..., "input": ...}``) and the nested
stream-json one where ``assistant``/``user`` events carry a
``message.content`` list of blocks.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union

import structlog

logger = structlog.get_logger()

MAX_MESSAGE = 1800
MAX_CODE_BLOCK = 1500
MIN_ASSISTANT_TEXT = 20


@dataclass(frozen=True)
class AssistantText:
    text: str


@dataclass(frozen=True)
class ToolInvocation:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    tool_use_id: str | None = None


@dataclass(frozen=True)
class ToolOutput:
    content: str
    tool_use_id: str | None = None
    is_error: bool = False


@dataclass(frozen=True)
class SystemMessage:
    text: str
    subtype: str | None = None


@dataclass(frozen=True)
class AgentError:
    message: str


@dataclass(frozen=True)
class Completion:
    result: str | None = None
    is_error: bool = False
    num_turns: int | None = None
    duration_ms: int | None = None


@dataclass(frozen=True)
class UnstructuredEvent:
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)


AgentEvent = Union[
    AssistantText, ToolInvocation, ToolOutput, SystemMessage, AgentError, Completion, UnstructuredEvent
]


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _stringify(value: Any) -> str:
    """Flatten a tool-result payload (str, list of blocks, dict) into text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = []
        for item in value:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
            else:
                parts.append(_stringify(item))
        return "\n".join(p for p in parts if p)
    return json.dumps(value, indent=2, default=str)


def _decode_blocks(blocks: list[Any]) -> list[AgentEvent]:
    events: list[AgentEvent] = []
    for block in blocks:
        if not isinstance(block, dict):
            continue
        kind = block.get("type")
        if kind == "text" and block.get("text"):
            events.append(AssistantText(str(block["text"])))
        elif kind == "tool_use":
            args = block.get("input")
            events.append(
                ToolInvocation(
                    name=str(block.get("name") or "unknown"),
                    arguments=args if isinstance(args, dict) else {},
                    tool_use_id=block.get("id"),
                )
            )
        elif kind == "tool_result":
            events.append(
                ToolOutput(
                    content=_stringify(block.get("content")),
                    tool_use_id=block.get("tool_use_id"),
                    is_error=bool(block.get("is_error")),
                )
            )
    return events


def decode_event(obj: dict[str, Any]) -> list[AgentEvent]:
    """Map one decoded JSON object to zero or more typed events."""
    event_type = obj.get("type") or obj.get("event") or ""

    message = obj.get("message")
    if event_type in ("assistant", "user") and isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, list):
            return _decode_blocks(content)
        if isinstance(content, str) and event_type == "assistant":
            return [AssistantText(content)]
        return []

    if event_type in ("assistant", "assistant_message", "text", "content_block_delta"):
        delta = obj.get("delta") if isinstance(obj.get("delta"), dict) else {}
        text = obj.get("content") or obj.get("text") or delta.get("text") or ""
        return [AssistantText(_stringify(text))] if str(text).strip() else []

    if event_type in ("tool_use", "tool_call"):
        args = obj.get("input") or obj.get("arguments") or {}
        return [
            ToolInvocation(
                name=str(obj.get("name") or obj.get("tool") or "unknown"),
                arguments=args if isinstance(args, dict) else {"value": args},
                tool_use_id=obj.get("id") or obj.get("tool_use_id"),
            )
        ]

    if event_type in ("tool_result", "tool_output"):
        return [
            ToolOutput(
                content=_stringify(obj.get("result") or obj.get("output") or obj.get("content")),
                tool_use_id=obj.get("tool_use_id"),
                is_error=bool(obj.get("is_error")),
            )
        ]

    if event_type == "system":
        subtype = obj.get("subtype")
        text = message if isinstance(message, str) else obj.get("content") or ""
        if not text and subtype == "init":
            model = obj.get("model")
            text = f"Agent session started{f' ({model})' if model else ''}"
        return [SystemMessage(_stringify(text), subtype=subtype)]

    if event_type == "error":
        error = obj.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        if isinstance(message, dict):
            message = message.get("content") or message.get("message")
        return [AgentError(_stringify(message or error) or "Unknown error")]

    if event_type in ("done", "end", "message_stop"):
        return [Completion()]

    if event_type == "result":
        return [
            Completion(
                result=_stringify(obj.get("result")) or None,
                is_error=bool(obj.get("is_error")) or obj.get("subtype", "success") != "success",
                num_turns=obj.get("num_turns"),
                duration_ms=obj.get("duration_ms"),
            )
        ]

    if event_type == "content_block_start":
        block = obj.get("content_block") or {}
        if isinstance(block, dict) and block.get("type") == "tool_use":
            logger.debug("agent_tool_starting", tool=block.get("name") or "tool")

    return [UnstructuredEvent(str(event_type), obj)]


def parse_stream_line(line: str) -> list[AgentEvent] | None:
    """Decode a log line. Returns None when the line is not a JSON object."""
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        obj = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict):
        return None
    return decode_event(obj)


# ---------------------------------------------------------------------------
# Formatting for chat notifications
# ---------------------------------------------------------------------------

def truncate(text: str, limit: int = MAX_MESSAGE) -> str:
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "\n... (truncated)"


def code_block(content: str, lang: str = "") -> str:
    return f"```{lang}\n{truncate(content, MAX_CODE_BLOCK)}\n```"


def _path_arg(args: dict[str, Any]) -> str:
    return str(args.get("file_path") or args.get("path") or "file")


def _format_tool(event: ToolInvocation) -> str:
    name = event.name.lower()
    args = event.arguments

    if name in ("bash", "execute_bash", "shell"):
        command = args.get("command") or args.get("cmd") or json.dumps(args)
        return f"⚡ **Running command:**\n{code_block(str(command), 'bash')}"
    if name in ("write", "write_file", "create_file"):
        return f"📝 **Writing file:** `{_path_arg(args)}`"
    if name in ("edit", "edit_file", "str_replace", "multiedit"):
        return f"✏️ **Editing:** `{_path_arg(args)}`"
    if name in ("read", "read_file"):
        return f"📖 **Reading:** `{_path_arg(args)}`"
    if name in ("glob", "list_files"):
        return f"🔍 **Searching:** `{args.get('pattern') or args.get('glob') or '*'}`"
    if name in ("grep", "search"):
        return f"🔎 **Grep:** `{args.get('pattern') or args.get('query') or ''}`"

    msg = f"🔧 **{event.name}**"
    if args:
        rendered = json.dumps(args, indent=2, default=str)
        if len(rendered) < 500:
            msg += f"\n{code_block(rendered, 'json')}"
    return msg


def format_event(event: AgentEvent) -> str | None:
    """Chat-ready text for an event, or None if it should not be forwarded."""
    if isinstance(event, AssistantText):
        # Single-token streaming deltas are noise
        if len(event.text.strip()) <= MIN_ASSISTANT_TEXT:
            return None
        return f"💭 {truncate(event.text, 500)}"

    if isinstance(event, ToolInvocation):
        return _format_tool(event)

    if isinstance(event, ToolOutput):
        content = event.content.strip()
        if len(content) <= 5:
            return None
        lowered = content.lower()
        failed = event.is_error or any(word in lowered for word in ("error", "failed", "exception"))
        return f"{'❌' if failed else '✅'} **Output:**\n{code_block(content)}"

    if isinstance(event, SystemMessage):
        return f"ℹ️ {truncate(event.text, 300)}" if event.text.strip() else None

    if isinstance(event, AgentError):
        return f"🚨 **Error:**\n{code_block(event.message)}"

    if isinstance(event, Completion):
        if event.result:
            return f"✨ **Agent finished**\n{truncate(event.result, 500)}"
        return "✨ **Agent finished**"

    return None


def classify_raw_line(line: str) -> str | None:
    """Pick out salient plain-text terminal lines worth forwarding."""
    text = line.strip()
    if not text:
        return None
    if "npm" in text or "yarn" in text:
        return f"📦 {text[:200]}"
    if "error" in text or "Error" in text:
        return f"❌ {text[:300]}"
    if "created" in text or "Created" in text:
        return f"✅ {text[:200]}"
    if "success" in text or "Success" in text:
        return f"🎉 {text[:200]}"
    if text.startswith(("$", ">")):
        return code_block(text)
    return None
