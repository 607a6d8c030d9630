from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStart:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolInputDelta:
    """
    A fragment of a tool call's streamed JSON input.

    The stream only carries the content-block index here, never the tool call id, so
    attribution to a tool call happens in the store.
    """

    partial_json: str
    index: Optional[int] = None


@dataclass(frozen=True)
class ToolCallComplete:
    id: str
    result: str
    is_error: bool = False


@dataclass(frozen=True)
class UsageReport:
    input_tokens: int = 0
    output_tokens: int = 0
    # Set for message_start usage: the report opens a new assistant message.
    starts_message: bool = False


@dataclass(frozen=True)
class StreamStart:
    pass


@dataclass(frozen=True)
class StreamStop:
    pass


@dataclass(frozen=True)
class ErrorEvent:
    message: str


@dataclass(frozen=True)
class PermissionRequest:
    tool_call_id: str
    tool_name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Unrecognized:
    raw: str


ClaudeEvent = (
    TextDelta
    | ToolCallStart
    | ToolInputDelta
    | ToolCallComplete
    | UsageReport
    | StreamStart
    | StreamStop
    | ErrorEvent
    | PermissionRequest
    | Unrecognized
)


def parse_line(line: str) -> Optional[ClaudeEvent]:
    """
    Decode one line of `claude --output-format stream-json` output.

    Returns None for blank lines. Anything that isn't a JSON object is returned as
    Unrecognized carrying the line text so callers can surface it as a diagnostic.
    """
    trimmed = line.strip()
    if not trimmed:
        return None
    obj, _ = parse_json_line(trimmed)
    if obj is None:
        return Unrecognized(raw=trimmed)
    return parse_event_obj(obj, raw=trimmed)


def parse_line_events(line: str) -> list[ClaudeEvent]:
    """
    Like parse_line, but a `user` message echoing several tool results yields one
    completion per result instead of only the first.
    """
    ev = parse_line(line)
    if ev is None:
        return []
    if isinstance(ev, ToolCallComplete):
        obj, _ = parse_json_line(line.strip())
        if obj is not None and obj.get("type") == "user":
            return list(_user_tool_results(obj))
    return [ev]


def parse_event_obj(obj: dict[str, Any], *, raw: Optional[str] = None) -> ClaudeEvent:
    # Newer CLI builds wrap API stream events when --include-partial-messages is set:
    #   {"type":"stream_event","event":{...}}
    if obj.get("type") == "stream_event" and isinstance(obj.get("event"), dict):
        return parse_event_obj(obj["event"], raw=raw)

    t = obj.get("type")

    if t == "message_start":
        msg = obj.get("message")
        usage = msg.get("usage") if isinstance(msg, dict) else None
        input_tokens = _positive_int(usage, "input_tokens")
        if input_tokens:
            return UsageReport(input_tokens=input_tokens, output_tokens=0, starts_message=True)
        return StreamStart()

    if t == "content_block_start":
        block = obj.get("content_block")
        if isinstance(block, dict) and block.get("type") == "tool_use":
            block_id = block.get("id")
            name = block.get("name")
            if isinstance(block_id, str) and block_id and isinstance(name, str) and name:
                tool_input = block.get("input")
                return ToolCallStart(
                    id=block_id,
                    name=name,
                    input=dict(tool_input) if isinstance(tool_input, dict) else {},
                )
        # Text and thinking blocks carry no content yet; an empty delta still opens a message.
        return TextDelta(text="")

    if t == "content_block_delta":
        delta = obj.get("delta")
        if isinstance(delta, dict):
            dt = delta.get("type")
            if dt == "text_delta":
                text = delta.get("text")
                if isinstance(text, str) and text:
                    return TextDelta(text=text)
            if dt == "input_json_delta":
                partial = delta.get("partial_json")
                if isinstance(partial, str) and partial:
                    index = obj.get("index")
                    return ToolInputDelta(
                        partial_json=partial,
                        index=index if isinstance(index, int) and not isinstance(index, bool) else None,
                    )
        return Unrecognized(raw=_raw_of(obj, raw))

    if t == "message_delta":
        output_tokens = _positive_int(obj.get("usage"), "output_tokens")
        if output_tokens:
            return UsageReport(input_tokens=0, output_tokens=output_tokens)
        return Unrecognized(raw=_raw_of(obj, raw))

    if t == "message_stop":
        return StreamStop()

    if t == "tool_result":
        tool_use_id = obj.get("tool_use_id")
        if not isinstance(tool_use_id, str) or not tool_use_id:
            return Unrecognized(raw=_raw_of(obj, raw))
        return ToolCallComplete(
            id=tool_use_id,
            result=_tool_result_text(obj.get("content")),
            is_error=obj.get("is_error") is True,
        )

    if t == "user":
        # With --verbose, tool results come back as user messages of tool_result blocks.
        results = _user_tool_results(obj)
        if results:
            return results[0]
        return Unrecognized(raw=_raw_of(obj, raw))

    if t == "error":
        return ErrorEvent(message=_error_message(obj))

    if t == "permission_request":
        tool_use_id = obj.get("tool_use_id") or obj.get("tool_id")
        tool_name = obj.get("tool_name")
        if isinstance(tool_use_id, str) and tool_use_id and isinstance(tool_name, str) and tool_name:
            tool_input = obj.get("input")
            return PermissionRequest(
                tool_call_id=tool_use_id,
                tool_name=tool_name,
                input=dict(tool_input) if isinstance(tool_input, dict) else {},
            )

    return Unrecognized(raw=_raw_of(obj, raw))


def parse_json_line(line: str) -> tuple[Optional[dict[str, Any]], Optional[str]]:
    try:
        obj = json.loads(line)
    except Exception:
        return None, line
    if not isinstance(obj, dict):
        return None, line
    return obj, None


def _tool_result_text(content: Any) -> str:
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, dict):
                text = part.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return json.dumps(content)


def _user_tool_results(obj: dict[str, Any]) -> list[ToolCallComplete]:
    msg = obj.get("message")
    content = msg.get("content") if isinstance(msg, dict) else None
    if not isinstance(content, list):
        return []
    out: list[ToolCallComplete] = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "tool_result":
            continue
        tool_use_id = block.get("tool_use_id")
        if not isinstance(tool_use_id, str) or not tool_use_id:
            continue
        out.append(
            ToolCallComplete(
                id=tool_use_id,
                result=_tool_result_text(block.get("content")),
                is_error=block.get("is_error") is True,
            )
        )
    return out


def _error_message(obj: dict[str, Any]) -> str:
    err = obj.get("error")
    if isinstance(err, dict):
        err = err.get("message")
    if isinstance(err, str) and err:
        return err
    msg = obj.get("message")
    if isinstance(msg, str) and msg:
        return msg
    return "Unknown error"


def _positive_int(container: Any, key: str) -> int:
    if not isinstance(container, dict):
        return 0
    v = container.get(key)
    if isinstance(v, bool) or not isinstance(v, int) or v <= 0:
        return 0
    return v


def _raw_of(obj: dict[str, Any], raw: Optional[str]) -> str:
    return raw if raw is not None else json.dumps(obj)
