from __future__ import annotations

from typing import Optional


class PrismError(Exception):
    pass


class UnknownEntity(PrismError, KeyError):
    def __init__(self, kind: str, entity_id: str) -> None:
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"Unknown {kind}: {entity_id!r}")

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0])


class ThreadBusy(PrismError):
    def __init__(self, thread_id: str) -> None:
        self.thread_id = thread_id
        super().__init__(f"Thread {thread_id} is already running")


class SendFailed(PrismError):
    def __init__(self, thread_id: str, reason: str) -> None:
        self.thread_id = thread_id
        self.reason = reason
        super().__init__(f"Failed to send message to thread {thread_id}: {reason}")


class ConflictingApproval(PrismError):
    def __init__(self, *, thread_id: str, pending_tool_call_id: str, requested_tool_call_id: str) -> None:
        self.thread_id = thread_id
        self.pending_tool_call_id = pending_tool_call_id
        self.requested_tool_call_id = requested_tool_call_id
        super().__init__(
            f"Thread {thread_id} already awaits approval for {pending_tool_call_id}; "
            f"refusing {requested_tool_call_id}"
        )


class WorkspaceCreationFailed(PrismError):
    def __init__(self, message: str, *, repo_path: Optional[str] = None, branch: Optional[str] = None) -> None:
        self.repo_path = repo_path
        self.branch = branch
        super().__init__(message)


class WorkspaceRemovalFailed(PrismError):
    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to remove workspace {path}: {reason}")


class SupervisorForwardFailed(PrismError):
    def __init__(self, thread_id: str, reason: str) -> None:
        self.thread_id = thread_id
        self.reason = reason
        super().__init__(f"Failed to forward approval to thread {thread_id}: {reason}")
