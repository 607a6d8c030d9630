from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from prism.util.format import truncate


@dataclass(frozen=True)
class BashInput:
    command: str
    description: Optional[str] = None
    timeout_ms: Optional[int] = None


@dataclass(frozen=True)
class EditInput:
    file_path: str
    old_string: str
    new_string: str
    replace_all: bool = False


@dataclass(frozen=True)
class WriteInput:
    file_path: str
    content: str


@dataclass(frozen=True)
class ReadInput:
    file_path: str
    offset: Optional[int] = None
    limit: Optional[int] = None


@dataclass(frozen=True)
class GlobInput:
    pattern: str
    path: Optional[str] = None


@dataclass(frozen=True)
class GrepInput:
    pattern: str
    path: Optional[str] = None
    glob: Optional[str] = None


@dataclass(frozen=True)
class GenericInput:
    """Any tool without a known schema, or a known tool whose input doesn't match it."""

    tool_name: str
    values: dict[str, Any] = field(default_factory=dict)


ToolInput = BashInput | EditInput | WriteInput | ReadInput | GlobInput | GrepInput | GenericInput


def parse_tool_input(tool_name: str, values: Mapping[str, Any]) -> ToolInput:
    """
    Map a tool call's raw input onto a typed schema.

    Streamed input can be incomplete, so a known tool missing a required field degrades
    to GenericInput rather than failing.
    """
    v = dict(values)
    if tool_name == "Bash":
        command = _opt_str(v, "command")
        if command is not None:
            return BashInput(
                command=command,
                description=_opt_str(v, "description"),
                timeout_ms=_opt_int(v, "timeout"),
            )
    elif tool_name == "Edit":
        file_path = _opt_str(v, "file_path")
        old = _opt_str(v, "old_string")
        new = _opt_str(v, "new_string")
        if file_path is not None and old is not None and new is not None:
            return EditInput(
                file_path=file_path,
                old_string=old,
                new_string=new,
                replace_all=v.get("replace_all") is True,
            )
    elif tool_name == "Write":
        file_path = _opt_str(v, "file_path")
        content = _opt_str(v, "content")
        if file_path is not None and content is not None:
            return WriteInput(file_path=file_path, content=content)
    elif tool_name == "Read":
        file_path = _opt_str(v, "file_path")
        if file_path is not None:
            return ReadInput(
                file_path=file_path,
                offset=_opt_int(v, "offset"),
                limit=_opt_int(v, "limit"),
            )
    elif tool_name == "Glob":
        pattern = _opt_str(v, "pattern")
        if pattern is not None:
            return GlobInput(pattern=pattern, path=_opt_str(v, "path"))
    elif tool_name == "Grep":
        pattern = _opt_str(v, "pattern")
        if pattern is not None:
            return GrepInput(pattern=pattern, path=_opt_str(v, "path"), glob=_opt_str(v, "glob"))
    return GenericInput(tool_name=tool_name, values=v)


def summarize_tool_input(tool_input: ToolInput, *, max_chars: int = 80) -> str:
    """One-line description used in tool call listings and approval prompts."""
    if isinstance(tool_input, BashInput):
        return "$ " + truncate(tool_input.command, max_chars=max_chars)
    if isinstance(tool_input, EditInput):
        suffix = " (all)" if tool_input.replace_all else ""
        return f"edit {tool_input.file_path}{suffix}"
    if isinstance(tool_input, WriteInput):
        return f"write {tool_input.file_path} ({len(tool_input.content)} chars)"
    if isinstance(tool_input, ReadInput):
        if tool_input.offset is not None or tool_input.limit is not None:
            start = tool_input.offset or 0
            end = f"{start + tool_input.limit}" if tool_input.limit is not None else ""
            return f"read {tool_input.file_path} [{start}:{end}]"
        return f"read {tool_input.file_path}"
    if isinstance(tool_input, GlobInput):
        where = f" in {tool_input.path}" if tool_input.path else ""
        return f"glob {tool_input.pattern}{where}"
    if isinstance(tool_input, GrepInput):
        where = f" in {tool_input.path}" if tool_input.path else ""
        only = f" ({tool_input.glob})" if tool_input.glob else ""
        return f"grep {tool_input.pattern!r}{where}{only}"
    if not tool_input.values:
        return tool_input.tool_name
    keys = ", ".join(sorted(tool_input.values))
    return truncate(f"{tool_input.tool_name}({keys})", max_chars=max_chars)


def _opt_str(d: Mapping[str, Any], key: str) -> Optional[str]:
    v = d.get(key)
    return v if isinstance(v, str) else None


def _opt_int(d: Mapping[str, Any], key: str) -> Optional[int]:
    v = d.get(key)
    if isinstance(v, bool) or not isinstance(v, int):
        return None
    return v
