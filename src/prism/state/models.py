from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from prism.claude.tool_inputs import ToolInput, parse_tool_input

MessageRole = Literal["user", "assistant"]
ToolStatus = Literal["pending", "running", "success", "error"]
ThreadStatus = Literal["idle", "running", "done", "error"]
RiskLevel = Literal["high", "medium", "low"]

_TOOL_STATUS_RANK: dict[str, int] = {"pending": 0, "running": 1, "success": 2, "error": 2}


def is_terminal_tool_status(status: str) -> bool:
    return status in ("success", "error")


def can_advance_tool_status(current: str, new: str) -> bool:
    if is_terminal_tool_status(current):
        return False
    return _TOOL_STATUS_RANK[new] > _TOOL_STATUS_RANK[current]


@dataclass
class ToolCall:
    id: str
    name: str
    input: dict[str, Any]
    timestamp: int
    output: Optional[str] = None
    status: ToolStatus = "pending"
    # View state only; persisted so a restored thread renders the same way.
    expanded: bool = False

    @property
    def typed_input(self) -> ToolInput:
        return parse_tool_input(self.name, self.input)


@dataclass
class Message:
    id: str
    role: MessageRole
    content: str
    timestamp: int
    tool_calls: list[ToolCall] = field(default_factory=list)
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None

    def find_tool_call(self, tool_call_id: str) -> Optional[ToolCall]:
        for tc in self.tool_calls:
            if tc.id == tool_call_id:
                return tc
        return None


@dataclass
class Thread:
    id: str
    project_id: str
    title: str
    # Where the CLI runs: the worktree path for isolated threads, else the project's dir.
    work_dir: str
    created_at: int
    updated_at: int
    branch: Optional[str] = None
    has_worktree: bool = False
    status: ThreadStatus = "idle"
    messages: list[Message] = field(default_factory=list)
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    error: Optional[str] = None

    def find_message(self, message_id: str) -> Optional[Message]:
        for m in self.messages:
            if m.id == message_id:
                return m
        return None


@dataclass
class Project:
    id: str
    name: str
    work_dir: str
    created_at: int
    updated_at: int
    # Newest first.
    threads: list[Thread] = field(default_factory=list)

    def find_thread(self, thread_id: str) -> Optional[Thread]:
        for t in self.threads:
            if t.id == thread_id:
                return t
        return None


@dataclass(frozen=True)
class PendingPermission:
    thread_id: str
    tool_call_id: str
    tool_name: str
    risk: RiskLevel


@dataclass
class DailyUsage:
    date: str  # YYYY-MM-DD
    input_tokens: int = 0
    output_tokens: int = 0
    sessions: int = 0
    estimated_cost: float = 0.0


@dataclass
class ModelUsage:
    model: str
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class UsageTotals:
    input_tokens: int
    output_tokens: int
    estimated_cost: float


@dataclass
class StoreSnapshot:
    """Everything that survives a restart."""

    projects: list[Project] = field(default_factory=list)
    active_project_id: Optional[str] = None
    active_thread_id: Optional[str] = None
    daily_usage: list[DailyUsage] = field(default_factory=list)
    model_usage: list[ModelUsage] = field(default_factory=list)
