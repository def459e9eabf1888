"""Payload dispatch: event records to typed deltas.

Each record is turned into zero or more deltas delivered through the
``StreamCallbacks`` contract. Payload shapes coming from the agent are loose
(LangGraph state updates keyed by node name, wrapper objects, partially
filled messages), so every entity has one tolerant decoder that returns
either a valid delta or "no delta" instead of raising.

Sub-agent lifecycle is derived from the message deltas: a ``task`` tool call
on an assistant message starts a sub-agent, and the matching ``task`` tool
result completes it. Both are delivered as metadata signals so the session
handles them exactly like metadata sent by the agent itself.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import ValidationError

from coach_stream.core.config import settings
from coach_stream.core.exceptions import AgentStreamError, PayloadDecodeError
from coach_stream.core.framing import EventKind, EventRecord
from coach_stream.core.threads import (
    Message,
    MessageRole,
    TodoItem,
    TodoStatus,
    ToolCall,
)

logger = logging.getLogger(__name__)

SIGNAL_START = "start"
SIGNAL_COMPLETE = "complete"

DEFAULT_SUBAGENT_NAME = "agent"
DEFAULT_SUBAGENT_DESCRIPTION = "Processing..."

_NAME_KEYS = ("subagent_type", "agent_type")
_DESCRIPTION_KEYS = ("description", "task")

_ROLE_ALIASES = {
    "human": MessageRole.HUMAN,
    "user": MessageRole.HUMAN,
    "ai": MessageRole.AI,
    "assistant": MessageRole.AI,
    "aimessagechunk": MessageRole.AI,
    "system": MessageRole.SYSTEM,
    "tool": MessageRole.TOOL,
}


@runtime_checkable
class StreamCallbacks(Protocol):
    """Receiver of the deltas extracted from the stream."""

    async def on_messages(self, messages: List[Message]) -> None: ...

    async def on_todos(self, todos: List[TodoItem]) -> None: ...

    async def on_files(self, files: Dict[str, str]) -> None: ...

    async def on_metadata(self, metadata: Dict[str, Any]) -> None: ...

    async def on_error(self, error: Exception) -> None: ...

    async def on_end(self) -> None: ...


# ---------------------------------------------------------------------------
# Tolerant decoders
# ---------------------------------------------------------------------------


def _text_content(raw: Any) -> str:
    """Flatten message content; content-block lists keep only their text."""
    if isinstance(raw, str):
        return raw
    if isinstance(raw, list):
        parts = []
        for block in raw:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and isinstance(block.get("text"), str):
                parts.append(block["text"])
        return "".join(parts)
    return ""


def _decode_tool_calls(raw: Dict[str, Any]) -> List[ToolCall]:
    """Tool calls from the message root, else from ``additional_kwargs``."""
    calls: List[ToolCall] = []

    root_calls = raw.get("tool_calls")
    if isinstance(root_calls, list) and root_calls:
        for call in root_calls:
            if not isinstance(call, dict) or not isinstance(call.get("name"), str):
                continue
            args = call.get("args")
            calls.append(
                ToolCall(
                    id=call.get("id"),
                    name=call["name"],
                    args=args if isinstance(args, dict) else {},
                )
            )
        return calls

    # OpenAI shape: {"id", "function": {"name", "arguments": "<json>"}}
    extra = raw.get("additional_kwargs")
    kwarg_calls = extra.get("tool_calls") if isinstance(extra, dict) else None
    if not isinstance(kwarg_calls, list):
        return calls
    for call in kwarg_calls:
        function = call.get("function") if isinstance(call, dict) else None
        if not isinstance(function, dict) or not isinstance(function.get("name"), str):
            continue
        try:
            args = json.loads(function.get("arguments") or "{}")
        except (TypeError, ValueError):
            args = {}
        calls.append(
            ToolCall(
                id=call.get("id"),
                name=function["name"],
                args=args if isinstance(args, dict) else {},
            )
        )
    return calls


def decode_message(raw: Any) -> Optional[Message]:
    """Decode one wire message, or None if it is not a usable message."""
    if not isinstance(raw, dict):
        return None
    role_name = raw.get("type", raw.get("role"))
    role = _ROLE_ALIASES.get(str(role_name).lower()) if role_name else None
    if role is None:
        return None

    name = raw.get("name")
    tool_call_id = raw.get("tool_call_id")
    message_id = raw.get("id")
    timestamp = raw.get("timestamp")
    try:
        return Message(
            id=message_id if isinstance(message_id, str) else None,
            role=role,
            content=_text_content(raw.get("content")),
            tool_call_id=tool_call_id if isinstance(tool_call_id, str) else None,
            name=name if isinstance(name, str) else None,
            tool_calls=_decode_tool_calls(raw),
            status=raw.get("status") if isinstance(raw.get("status"), str) else None,
            timestamp=timestamp if isinstance(timestamp, int) else None,
        )
    except ValidationError as e:
        logger.debug(f"Skipping malformed message: {e}")
        return None


def extract_messages(raw: Any) -> List[Message]:
    """Message list from a plain list or a ``{"value": [...]}`` wrapper."""
    if isinstance(raw, dict) and isinstance(raw.get("value"), list):
        raw = raw["value"]
    if not isinstance(raw, list):
        return []
    messages = []
    for item in raw:
        message = decode_message(item)
        if message is not None:
            messages.append(message)
    return messages


def _decode_todo(raw: Any, position: int) -> Optional[TodoItem]:
    if not isinstance(raw, dict):
        return None
    data = dict(raw)
    if not isinstance(data.get("id"), str) or not data["id"]:
        # Positional id; todo deltas are full lists
        data["id"] = f"todo-{position}"
    if data.get("status") not in {s.value for s in TodoStatus}:
        data["status"] = TodoStatus.PENDING
    try:
        return TodoItem.model_validate(data)
    except ValidationError as e:
        logger.debug(f"Skipping malformed todo: {e}")
        return None


def extract_todos(raw: Any) -> Optional[List[TodoItem]]:
    """Todo list from a plain list or a ``value``/``items`` wrapper.

    Returns None when there is no todo delta at all, which is different from
    an empty list: an empty delta clears the todos, None leaves them alone.
    """
    items: Optional[list] = None
    if isinstance(raw, list):
        items = raw
    elif isinstance(raw, dict):
        if isinstance(raw.get("value"), list):
            items = raw["value"]
        elif isinstance(raw.get("items"), list):
            items = raw["items"]
    if items is None:
        return None

    todos = []
    for position, item in enumerate(items):
        todo = _decode_todo(item, position)
        if todo is not None:
            todos.append(todo)
    return todos


def extract_files(raw: Any) -> Optional[Dict[str, str]]:
    """File map of path -> content.

    Entry content may be a string or a list of lines joined with newlines;
    any other shape yields empty content for that file.
    """
    if not isinstance(raw, dict):
        return None

    files: Dict[str, str] = {}
    for path, data in raw.items():
        if isinstance(data, str):
            files[path] = data
            continue
        if not isinstance(data, dict):
            continue
        content = data.get("content")
        if isinstance(content, list):
            files[path] = "\n".join(str(line) for line in content)
        elif isinstance(content, str):
            files[path] = content
        else:
            files[path] = ""
    return files


def _first_string(args: Dict[str, Any], keys: tuple, default: str) -> str:
    for key in keys:
        value = args.get(key)
        if isinstance(value, str) and value:
            return value
    return default


def extract_subagent_signals(
    messages: List[Message], tool_name: Optional[str] = None
) -> List[Dict[str, Any]]:
    """Start/complete metadata signals derived from delegate-task tool traffic."""
    tool_name = tool_name or settings.delegate_tool_name
    signals: List[Dict[str, Any]] = []

    for message in messages:
        if message.role == MessageRole.AI:
            for call in message.tool_calls:
                if call.name != tool_name or not call.id:
                    continue
                signals.append(
                    {
                        "type": SIGNAL_START,
                        "subAgent": {
                            "id": call.id,
                            "name": _first_string(call.args, _NAME_KEYS, DEFAULT_SUBAGENT_NAME),
                            "description": _first_string(
                                call.args, _DESCRIPTION_KEYS, DEFAULT_SUBAGENT_DESCRIPTION
                            ),
                            "status": "thinking",
                        },
                    }
                )

        elif (
            message.role == MessageRole.TOOL
            and message.name == tool_name
            and message.tool_call_id
        ):
            signals.append(
                {
                    "type": SIGNAL_COMPLETE,
                    "subAgent": {
                        "id": message.tool_call_id,
                        "status": "failed" if message.status == "error" else "completed",
                        "result": message.content,
                    },
                }
            )

    return signals


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


async def _emit_messages(raw: Any, callbacks: StreamCallbacks) -> None:
    messages = extract_messages(raw)
    if not messages:
        return
    logger.debug(f"Dispatching {len(messages)} messages")
    await callbacks.on_messages(messages)
    for signal in extract_subagent_signals(messages):
        await callbacks.on_metadata(signal)


async def dispatch_payload(payload: Dict[str, Any], callbacks: StreamCallbacks) -> None:
    """Scan a decoded data payload for message, todo and file deltas."""
    if "messages" in payload:
        await _emit_messages(payload["messages"], callbacks)

    for key, value in payload.items():
        if key == "todos" or (isinstance(value, dict) and "todos" in value):
            todos = extract_todos(value if key == "todos" else value["todos"])
            if todos is not None:
                await callbacks.on_todos(todos)

        if key == "files" or (isinstance(value, dict) and "files" in value):
            files = extract_files(value if key == "files" else value["files"])
            if files is not None:
                await callbacks.on_files(files)

        if key != "messages" and isinstance(value, dict) and "messages" in value:
            await _emit_messages(value["messages"], callbacks)


def _decode_json(record: EventRecord) -> Any:
    try:
        return json.loads(record.payload)
    except ValueError as e:
        raise PayloadDecodeError(record.event, str(e)) from e


async def dispatch_record(record: EventRecord, callbacks: StreamCallbacks) -> None:
    """Deliver the deltas carried by one event record."""
    logger.debug(f"[SSE Event] {record.event} {record.payload[:200]}")

    if record.kind == EventKind.END:
        await callbacks.on_end()
        return

    if record.kind == EventKind.ERROR:
        await callbacks.on_error(AgentStreamError(record.payload))
        return

    if record.kind == EventKind.UNKNOWN:
        logger.debug(f"Ignoring unknown event: {record.event}")
        return

    try:
        payload = _decode_json(record)
    except PayloadDecodeError as e:
        logger.warning(str(e))
        await callbacks.on_error(e)
        return

    if record.kind == EventKind.METADATA:
        if isinstance(payload, dict):
            await callbacks.on_metadata(payload)
        return

    if isinstance(payload, dict):
        await dispatch_payload(payload, callbacks)
