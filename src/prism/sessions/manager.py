from __future__ import annotations

import asyncio
from typing import Callable, Optional

from prism.claude.adapter import Supervisor
from prism.claude.approvals import ApprovalGate
from prism.claude.events import (
    ClaudeEvent,
    ErrorEvent,
    PermissionRequest,
    Unrecognized,
    parse_line_events,
)
from prism.errors import (
    ConflictingApproval,
    SendFailed,
    UnknownEntity,
    WorkspaceCreationFailed,
    WorkspaceRemovalFailed,
)
from prism.state.models import Message, Thread, ToolCall
from prism.state.store import ThreadStore
from prism.util.log import log
from prism.workspace.worktree import WorktreeManager

EventObserver = Callable[[str, ClaudeEvent], None]
DiagnosticSink = Callable[[str, str], None]


def _log_diagnostic(thread_id: str, raw: str) -> None:
    log(f"thread {thread_id[:8]}: {raw}")


class SessionManager:
    """
    Glue between the supervisor, the store and the approval gate.

    Each started thread gets one consumer task that decodes the supervisor's raw lines
    and applies them to the store under the session's epoch.
    """

    def __init__(
        self,
        *,
        store: ThreadStore,
        supervisor: Supervisor,
        gate: Optional[ApprovalGate] = None,
        worktrees: Optional[WorktreeManager] = None,
        executable_path: Optional[str] = None,
        on_event: Optional[EventObserver] = None,
        on_diagnostic: Optional[DiagnosticSink] = None,
    ) -> None:
        self.store = store
        self.supervisor = supervisor
        self.gate = gate or ApprovalGate(store, supervisor)
        self.worktrees = worktrees
        self._executable_path = executable_path
        self._on_event = on_event
        self._on_diagnostic = on_diagnostic or _log_diagnostic
        self._consumers: dict[str, asyncio.Task[None]] = {}

    def is_active(self, thread_id: str) -> bool:
        task = self._consumers.get(thread_id)
        return task is not None and not task.done()

    async def create_thread(
        self,
        project_id: str,
        title: str,
        *,
        branch: Optional[str] = None,
        work_dir: Optional[str] = None,
    ) -> Thread:
        project = self.store.get_project(project_id)
        if branch:
            if self.worktrees is None:
                raise WorkspaceCreationFailed(
                    "Worktree isolation is not configured", repo_path=project.work_dir, branch=branch
                )
            ws = await self.worktrees.create_isolated_workspace(project_id, project.work_dir, branch)
            return self.store.create_thread(project_id, title, ws.path, branch=ws.branch, has_worktree=True)
        return self.store.create_thread(project_id, title, work_dir or project.work_dir)

    async def start_thread(self, thread_id: str) -> int:
        """Start the thread's claude session; returns its epoch."""
        thread = self.store.get_thread(thread_id)
        if self.is_active(thread_id):
            return self.store.current_epoch(thread_id)
        try:
            await self.supervisor.start_session(thread_id, thread.work_dir, self._executable_path)
        except Exception as exc:
            reason = f"failed to start claude: {exc}"
            self.store.fail_turn(thread_id, reason)
            raise SendFailed(thread_id, reason) from exc
        epoch = self.store.open_session(thread_id)
        self.store.ledger.note_session()
        self._consumers[thread_id] = asyncio.create_task(self._consume(thread_id, epoch))
        return epoch

    async def send_user_message(self, thread_id: str, text: str) -> Message:
        if not self.is_active(thread_id):
            await self.start_thread(thread_id)
        message = self.store.begin_turn(thread_id, text)
        try:
            await self.supervisor.send_user_message(thread_id, text)
        except SendFailed as exc:
            self.store.fail_turn(thread_id, str(exc))
            raise
        return message

    async def resolve_permission(self, thread_id: str, tool_call_id: str, approved: bool) -> bool:
        return await self.gate.resolve_permission(thread_id, tool_call_id, approved)

    async def stop_thread(self, thread_id: str, *, error: Optional[str] = None) -> None:
        task = self._consumers.pop(thread_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self.gate.cancel(thread_id)
        self.store.stop_thread(thread_id, error=error)
        try:
            await self.supervisor.stop_session(thread_id)
        except Exception as exc:
            log(f"failed to stop session for thread {thread_id}: {exc}")

    async def delete_thread(self, thread_id: str) -> list[str]:
        """Stop and delete a thread. Returns warnings for cleanup that didn't succeed."""
        thread = self.store.get_thread(thread_id)
        await self.stop_thread(thread_id)
        self.store.delete_thread(thread_id)

        warnings: list[str] = []
        if thread.has_worktree and self.worktrees is not None:
            try:
                repo_path = self.store.get_project(thread.project_id).work_dir
            except UnknownEntity:
                repo_path = None
            try:
                await self.worktrees.remove_isolated_workspace(thread.work_dir, repo_path=repo_path)
            except WorkspaceRemovalFailed as exc:
                log(str(exc))
                warnings.append(str(exc))
        return warnings

    async def wait_for_turn(self, thread_id: str, timeout: Optional[float] = None) -> Thread:
        """Wait until the thread leaves `running`. Stopping the thread ends the wait."""
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()

        def listener(tid: Optional[str]) -> None:
            if tid is None or tid == thread_id:
                loop.call_soon_threadsafe(changed.set)

        async def wait() -> Thread:
            while True:
                changed.clear()
                thread = self.store.get_thread(thread_id)
                if thread.status != "running":
                    return thread
                await changed.wait()

        unsubscribe = self.store.subscribe(listener)
        try:
            return await asyncio.wait_for(wait(), timeout=timeout)
        finally:
            unsubscribe()

    async def shutdown(self) -> None:
        for thread_id in list(self._consumers):
            try:
                await self.stop_thread(thread_id)
            except UnknownEntity:
                pass

    async def _consume(self, thread_id: str, epoch: int) -> None:
        try:
            async for line in self.supervisor.lines(thread_id):
                for ev in parse_line_events(line):
                    self._handle(thread_id, ev, epoch)
        except asyncio.CancelledError:
            raise
        except UnknownEntity:
            # Thread deleted underneath us.
            return
        except Exception as exc:
            log(f"consumer for thread {thread_id} failed: {exc!r}")
            try:
                self.store.apply_event(thread_id, ErrorEvent(message=f"stream failed: {exc}"), epoch=epoch)
                self.gate.cancel(thread_id)
            except UnknownEntity:
                return
        try:
            self.store.end_session(thread_id, epoch=epoch)
        except UnknownEntity:
            pass

    def _handle(self, thread_id: str, ev: ClaudeEvent, epoch: int) -> None:
        if isinstance(ev, Unrecognized):
            self._diagnostic(thread_id, ev.raw)
            return
        if not self.store.apply_event(thread_id, ev, epoch=epoch):
            return
        if isinstance(ev, PermissionRequest):
            self._route_permission(thread_id, ev)
        elif isinstance(ev, ErrorEvent):
            self.gate.cancel(thread_id)
        self._observe(thread_id, ev)

    def _route_permission(self, thread_id: str, ev: PermissionRequest) -> None:
        tool_call = self.store.find_tool_call(thread_id, ev.tool_call_id)
        if tool_call is None:
            tool_call = ToolCall(id=ev.tool_call_id, name=ev.tool_name, input=dict(ev.input), timestamp=0)
        try:
            self.gate.request_permission(thread_id, tool_call)
        except ConflictingApproval:
            # Already logged by the gate; the first request stays pending.
            pass

    def _observe(self, thread_id: str, ev: ClaudeEvent) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(thread_id, ev)
        except Exception as exc:
            log(f"event observer failed: {exc!r}")

    def _diagnostic(self, thread_id: str, raw: str) -> None:
        try:
            self._on_diagnostic(thread_id, raw)
        except Exception as exc:
            log(f"diagnostic sink failed: {exc!r}")
