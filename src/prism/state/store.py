from __future__ import annotations

import copy
import json
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

from prism.claude.events import (
    ClaudeEvent,
    ErrorEvent,
    PermissionRequest,
    StreamStart,
    StreamStop,
    TextDelta,
    ToolCallComplete,
    ToolCallStart,
    ToolInputDelta,
    Unrecognized,
    UsageReport,
)
from prism.constants import DEFAULT_MODEL
from prism.errors import ThreadBusy, UnknownEntity
from prism.state.ledger import UsageLedger
from prism.state.models import (
    Message,
    Project,
    StoreSnapshot,
    Thread,
    ThreadStatus,
    ToolCall,
    ToolStatus,
    can_advance_tool_status,
    is_terminal_tool_status,
)
from prism.util.log import log

Listener = Callable[[Optional[str]], None]


def _now_ts() -> int:
    return int(time.time())


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class _ThreadRuntime:
    """Per-thread state that never survives a restart."""

    epoch: int = 0
    session_open: bool = False
    in_progress_message_id: Optional[str] = None
    last_tool_call_id: Optional[str] = None
    input_buffers: dict[str, str] = field(default_factory=dict)

    def reset_stream(self) -> None:
        self.in_progress_message_id = None
        self.last_tool_call_id = None
        self.input_buffers.clear()


class ThreadStore:
    """
    Projects, threads, messages and tool calls, plus the per-thread turn state machine.

    Locking: `_lock` guards the project list, the thread index and the active pointers;
    each thread has its own lock that linearizes mutations of that thread. Readers
    collect threads under `_lock` and copy each one under its own lock after releasing
    `_lock`, so a thread busy applying an event never stalls structural operations.
    Only delete_thread nests the two, always `_lock` first.

    Getters return deep copies; callers never observe a half-applied event.
    """

    def __init__(self, *, ledger: Optional[UsageLedger] = None, model: str = DEFAULT_MODEL) -> None:
        self._ledger = ledger or UsageLedger()
        self._model = model
        self._lock = threading.RLock()
        self._projects: list[Project] = []
        self._thread_index: dict[str, Project] = {}
        self._thread_locks: dict[str, threading.RLock] = {}
        self._runtime: dict[str, _ThreadRuntime] = {}
        self._active_project_id: Optional[str] = None
        self._active_thread_id: Optional[str] = None
        self._listeners: list[Listener] = []

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    # ── Notifications ─────────────────────────────────────────────────────────

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, thread_id: Optional[str]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(thread_id)
            except Exception as exc:
                log(f"store listener failed: {exc!r}")

    # ── Projects ──────────────────────────────────────────────────────────────

    def create_project(self, name: str, work_dir: str) -> Project:
        now = _now_ts()
        project = Project(id=_new_id(), name=name, work_dir=work_dir, created_at=now, updated_at=now)
        with self._lock:
            self._projects.insert(0, project)
            self._active_project_id = project.id
            self._active_thread_id = None
            out = copy.deepcopy(project)
        self._notify(None)
        return out

    def delete_project(self, project_id: str) -> Project:
        with self._lock:
            project = self._project_locked(project_id)
            self._projects.remove(project)
            out, threads = self._project_view_locked(project)
            for t in project.threads:
                self._forget_thread_locked(t.id)
            if self._active_project_id == project_id:
                self._active_project_id = None
                self._active_thread_id = None
        self._copy_threads(out, threads)
        self._notify(None)
        return out

    def get_project(self, project_id: str) -> Project:
        with self._lock:
            out, threads = self._project_view_locked(self._project_locked(project_id))
        return self._copy_threads(out, threads)

    def list_projects(self) -> list[Project]:
        with self._lock:
            views = [self._project_view_locked(p) for p in self._projects]
        return [self._copy_threads(out, threads) for out, threads in views]

    def set_active_project(self, project_id: Optional[str]) -> None:
        with self._lock:
            if project_id is not None:
                self._project_locked(project_id)
            self._active_project_id = project_id
            self._active_thread_id = None
        self._notify(None)

    def active_project(self) -> Optional[Project]:
        with self._lock:
            project = next((p for p in self._projects if p.id == self._active_project_id), None)
            if project is None:
                return None
            out, threads = self._project_view_locked(project)
        return self._copy_threads(out, threads)

    # ── Threads ───────────────────────────────────────────────────────────────

    def create_thread(
        self,
        project_id: str,
        title: str,
        work_dir: Optional[str] = None,
        *,
        branch: Optional[str] = None,
        has_worktree: bool = False,
    ) -> Thread:
        now = _now_ts()
        with self._lock:
            project = self._project_locked(project_id)
            thread = Thread(
                id=_new_id(),
                project_id=project_id,
                title=title,
                work_dir=work_dir or project.work_dir,
                branch=branch,
                has_worktree=has_worktree,
                created_at=now,
                updated_at=now,
            )
            project.threads.insert(0, thread)
            project.updated_at = now
            self._thread_index[thread.id] = project
            self._thread_locks[thread.id] = threading.RLock()
            self._runtime[thread.id] = _ThreadRuntime()
            self._active_thread_id = thread.id
            out = copy.deepcopy(thread)
        self._notify(thread.id)
        return out

    def delete_thread(self, thread_id: str) -> Thread:
        with self._lock:
            project = self._thread_index.get(thread_id)
            thread = project.find_thread(thread_id) if project is not None else None
            if project is None or thread is None:
                raise UnknownEntity("thread", thread_id)
            with self._thread_locks[thread_id]:
                project.threads.remove(thread)
                out = copy.deepcopy(thread)
            self._forget_thread_locked(thread_id)
            if self._active_thread_id == thread_id:
                self._active_thread_id = None
        self._notify(None)
        return out

    def rename_thread(self, thread_id: str, title: str) -> Thread:
        with self._thread(thread_id) as thread:
            thread.title = title
            thread.updated_at = _now_ts()
            out = copy.deepcopy(thread)
        self._notify(thread_id)
        return out

    def get_thread(self, thread_id: str) -> Thread:
        with self._thread(thread_id) as thread:
            return copy.deepcopy(thread)

    def set_active_thread(self, thread_id: Optional[str]) -> None:
        with self._lock:
            if thread_id is not None:
                project = self._thread_index.get(thread_id)
                if project is None:
                    raise UnknownEntity("thread", thread_id)
                self._active_project_id = project.id
            self._active_thread_id = thread_id
        self._notify(thread_id)

    def active_thread(self) -> Optional[Thread]:
        with self._lock:
            thread_id = self._active_thread_id
        if thread_id is None:
            return None
        try:
            return self.get_thread(thread_id)
        except UnknownEntity:
            return None

    def set_thread_status(self, thread_id: str, status: ThreadStatus) -> None:
        with self._thread(thread_id) as thread:
            rt = self._runtime[thread_id]
            thread.status = status
            thread.updated_at = _now_ts()
            if status != "running":
                rt.reset_stream()
        self._notify(thread_id)

    # ── Messages and tool calls ───────────────────────────────────────────────

    def add_message(self, thread_id: str, message: Message) -> Message:
        with self._thread(thread_id) as thread:
            if thread.find_message(message.id) is not None:
                raise ValueError(f"Duplicate message id {message.id!r} in thread {thread_id}")
            message = copy.deepcopy(message)
            thread.messages.append(message)
            thread.total_input_tokens += message.input_tokens or 0
            thread.total_output_tokens += message.output_tokens or 0
            thread.updated_at = _now_ts()
            out = copy.deepcopy(message)
        self._notify(thread_id)
        return out

    def update_message(
        self,
        thread_id: str,
        message_id: str,
        *,
        content: Optional[str] = None,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
    ) -> Message:
        """
        Patch a message. Token counts are set-once: a patch only fills a count that was
        never set, so the thread's totals pick up each count exactly once.
        """
        with self._thread(thread_id) as thread:
            message = self._message_locked(thread, message_id)
            if content is not None:
                message.content = content
            if input_tokens is not None:
                if message.input_tokens is None:
                    message.input_tokens = input_tokens
                    thread.total_input_tokens += input_tokens
                else:
                    log(f"ignoring input_tokens patch on message {message_id}: already set")
            if output_tokens is not None:
                if message.output_tokens is None:
                    message.output_tokens = output_tokens
                    thread.total_output_tokens += output_tokens
                else:
                    log(f"ignoring output_tokens patch on message {message_id}: already set")
            thread.updated_at = _now_ts()
            out = copy.deepcopy(message)
        self._notify(thread_id)
        return out

    def add_tool_call(self, thread_id: str, message_id: str, tool_call: ToolCall) -> ToolCall:
        with self._thread(thread_id) as thread:
            message = self._message_locked(thread, message_id)
            if self._find_tool_call_locked(thread, tool_call.id) is not None:
                raise ValueError(f"Duplicate tool call id {tool_call.id!r} in thread {thread_id}")
            tool_call = copy.deepcopy(tool_call)
            message.tool_calls.append(tool_call)
            thread.updated_at = _now_ts()
            out = copy.deepcopy(tool_call)
        self._notify(thread_id)
        return out

    def update_tool_call(
        self,
        thread_id: str,
        message_id: str,
        tool_call_id: str,
        *,
        status: Optional[ToolStatus] = None,
        output: Optional[str] = None,
    ) -> ToolCall:
        with self._thread(thread_id) as thread:
            message = self._message_locked(thread, message_id)
            tc = message.find_tool_call(tool_call_id)
            if tc is None:
                raise UnknownEntity("tool call", tool_call_id)
            self._advance_tool_call_locked(thread, tc, status=status, output=output)
            out = copy.deepcopy(tc)
        self._notify(thread_id)
        return out

    def advance_tool_call(
        self,
        thread_id: str,
        tool_call_id: str,
        status: ToolStatus,
        *,
        output: Optional[str] = None,
    ) -> bool:
        """Move a tool call anywhere in the thread forward; False if it can't move."""
        with self._thread(thread_id) as thread:
            tc = self._find_tool_call_locked(thread, tool_call_id)
            if tc is None:
                return False
            changed = self._advance_tool_call_locked(thread, tc, status=status, output=output)
        if changed:
            self._notify(thread_id)
        return changed

    def find_tool_call(self, thread_id: str, tool_call_id: str) -> Optional[ToolCall]:
        with self._thread(thread_id) as thread:
            tc = self._find_tool_call_locked(thread, tool_call_id)
            return copy.deepcopy(tc) if tc is not None else None

    def toggle_tool_call(self, thread_id: str, message_id: str, tool_call_id: str) -> bool:
        with self._thread(thread_id) as thread:
            message = self._message_locked(thread, message_id)
            tc = message.find_tool_call(tool_call_id)
            if tc is None:
                raise UnknownEntity("tool call", tool_call_id)
            tc.expanded = not tc.expanded
            expanded = tc.expanded
        self._notify(thread_id)
        return expanded

    # ── Turn lifecycle ────────────────────────────────────────────────────────

    def open_session(self, thread_id: str) -> int:
        """Mark a supervisor session live; events must carry the returned epoch."""
        with self._thread(thread_id):
            rt = self._runtime[thread_id]
            rt.epoch += 1
            rt.session_open = True
            rt.reset_stream()
            return rt.epoch

    def current_epoch(self, thread_id: str) -> int:
        with self._thread(thread_id):
            return self._runtime[thread_id].epoch

    def session_open(self, thread_id: str) -> bool:
        with self._thread(thread_id):
            return self._runtime[thread_id].session_open

    def begin_turn(self, thread_id: str, text: str) -> Message:
        with self._thread(thread_id) as thread:
            if thread.status == "running":
                raise ThreadBusy(thread_id)
            rt = self._runtime[thread_id]
            now = _now_ts()
            message = Message(id=_new_id(), role="user", content=text, timestamp=now)
            thread.messages.append(message)
            thread.status = "running"
            thread.error = None
            thread.updated_at = now
            rt.reset_stream()
            out = copy.deepcopy(message)
        self._notify(thread_id)
        return out

    def fail_turn(self, thread_id: str, error: str) -> None:
        with self._thread(thread_id) as thread:
            self._fail_locked(thread, error)
        self._notify(thread_id)

    def stop_thread(self, thread_id: str, *, error: Optional[str] = None) -> None:
        """
        Stop applying events for the thread's current session.

        A running thread returns to idle, or to error when the caller reports a failure.
        The epoch moves on, so events still in flight for the old session are dropped.
        """
        with self._thread(thread_id) as thread:
            rt = self._runtime[thread_id]
            rt.epoch += 1
            rt.session_open = False
            rt.reset_stream()
            if error is not None:
                thread.status = "error"
                thread.error = error
            elif thread.status == "running":
                thread.status = "idle"
            thread.updated_at = _now_ts()
        self._notify(thread_id)

    def end_session(self, thread_id: str, *, epoch: int) -> None:
        """The supervisor's feed ended on its own (process exited)."""
        changed = False
        with self._thread(thread_id) as thread:
            rt = self._runtime[thread_id]
            if rt.epoch != epoch:
                return
            rt.session_open = False
            if thread.status == "running":
                self._fail_locked(thread, "claude exited before finishing the turn")
                changed = True
            rt.reset_stream()
        if changed:
            self._notify(thread_id)

    def is_streaming(self, thread_id: str) -> bool:
        with self._thread(thread_id):
            return self._runtime[thread_id].in_progress_message_id is not None

    def in_progress_message(self, thread_id: str) -> Optional[Message]:
        with self._thread(thread_id) as thread:
            mid = self._runtime[thread_id].in_progress_message_id
            if mid is None:
                return None
            message = thread.find_message(mid)
            return copy.deepcopy(message) if message is not None else None

    # ── Event application ─────────────────────────────────────────────────────

    def apply_event(self, thread_id: str, event: ClaudeEvent, *, epoch: Optional[int] = None) -> bool:
        """
        Apply one decoded event to a thread. Returns False when the event was dropped.

        Events tagged with a stale epoch (the session was stopped or replaced) never
        touch the thread.
        """
        with self._thread(thread_id) as thread:
            rt = self._runtime[thread_id]
            if epoch is not None and epoch != rt.epoch:
                return False
            if not self._accepts_locked(thread, rt, event):
                return False
            applied = self._apply_locked(thread, rt, event)
            if applied:
                thread.updated_at = _now_ts()
        if applied:
            self._notify(thread_id)
        return applied

    @staticmethod
    def _accepts_locked(thread: Thread, rt: _ThreadRuntime, event: ClaudeEvent) -> bool:
        status = thread.status
        if isinstance(event, Unrecognized):
            return False
        if isinstance(event, ErrorEvent):
            return status in ("running", "done") or (status == "idle" and rt.session_open)
        # Claude ends each assistant message with message_stop, then reports tool results,
        # asks for permissions and opens the next message within the same turn.
        if isinstance(event, (ToolCallComplete, StreamStart, PermissionRequest)):
            return status in ("running", "done")
        if isinstance(event, UsageReport) and event.starts_message:
            return status in ("running", "done")
        return status == "running"

    def _apply_locked(self, thread: Thread, rt: _ThreadRuntime, event: ClaudeEvent) -> bool:
        if isinstance(event, TextDelta):
            message = self._ensure_message_locked(thread, rt)
            message.content += event.text
            return True

        if isinstance(event, ToolCallStart):
            if self._find_tool_call_locked(thread, event.id) is not None:
                log(f"duplicate tool call start {event.id} in thread {thread.id}")
                return False
            message = self._ensure_message_locked(thread, rt)
            message.tool_calls.append(ToolCall(
                id=event.id,
                name=event.name,
                input=dict(event.input),
                timestamp=_now_ts(),
            ))
            rt.last_tool_call_id = event.id
            rt.input_buffers[event.id] = ""
            return True

        if isinstance(event, ToolInputDelta):
            return self._apply_input_fragment_locked(thread, rt, event)

        if isinstance(event, ToolCallComplete):
            tc = self._find_tool_call_locked(thread, event.id, prefer_message_id=rt.in_progress_message_id)
            if tc is None:
                log(f"unmatched tool result {event.id} in thread {thread.id}")
                return False
            changed = self._advance_tool_call_locked(
                thread, tc, status="error" if event.is_error else "success", output=event.result
            )
            rt.input_buffers.pop(event.id, None)
            return changed

        if isinstance(event, UsageReport):
            if event.starts_message:
                message = self._open_message_locked(thread, rt)
                thread.status = "running"
            else:
                message = self._ensure_message_locked(thread, rt)
            self._add_usage_locked(thread, message, event.input_tokens, event.output_tokens)
            return True

        if isinstance(event, StreamStart):
            self._open_message_locked(thread, rt)
            thread.status = "running"
            return True

        if isinstance(event, StreamStop):
            thread.status = "done"
            rt.reset_stream()
            return True

        if isinstance(event, ErrorEvent):
            self._fail_locked(thread, event.message)
            return True

        if isinstance(event, PermissionRequest):
            if self._find_tool_call_locked(thread, event.tool_call_id) is None:
                message = self._ensure_message_locked(thread, rt)
                message.tool_calls.append(ToolCall(
                    id=event.tool_call_id,
                    name=event.tool_name,
                    input=dict(event.input),
                    timestamp=_now_ts(),
                ))
            # A thread awaiting approval is still mid-turn.
            thread.status = "running"
            return True

        return False

    def _apply_input_fragment_locked(self, thread: Thread, rt: _ThreadRuntime, event: ToolInputDelta) -> bool:
        tool_call_id = rt.last_tool_call_id
        if tool_call_id is None:
            log(f"tool input fragment with no started tool call in thread {thread.id}")
            return False
        tc = self._find_tool_call_locked(thread, tool_call_id, prefer_message_id=rt.in_progress_message_id)
        if tc is None or is_terminal_tool_status(tc.status):
            return False
        buf = rt.input_buffers.get(tool_call_id, "") + event.partial_json
        rt.input_buffers[tool_call_id] = buf
        try:
            parsed = json.loads(buf)
        except ValueError:
            # Not a complete document yet.
            return True
        if isinstance(parsed, dict):
            tc.input = parsed
        return True

    # ── Snapshot / restore ────────────────────────────────────────────────────

    def snapshot(self) -> StoreSnapshot:
        with self._lock:
            views = [self._project_view_locked(p) for p in self._projects]
            active_project_id = self._active_project_id
            active_thread_id = self._active_thread_id
        return StoreSnapshot(
            projects=[self._copy_threads(out, threads) for out, threads in views],
            active_project_id=active_project_id,
            active_thread_id=active_thread_id,
            daily_usage=self._ledger.days(),
            model_usage=self._ledger.models(),
        )

    def restore(self, snapshot: StoreSnapshot) -> None:
        projects = copy.deepcopy(snapshot.projects)
        for p in projects:
            for t in p.threads:
                # No process survives a restart.
                if t.status == "running":
                    t.status = "idle"
        with self._lock:
            self._projects = projects
            self._thread_index = {}
            self._thread_locks = {}
            self._runtime = {}
            for p in projects:
                for t in p.threads:
                    self._thread_index[t.id] = p
                    self._thread_locks[t.id] = threading.RLock()
                    self._runtime[t.id] = _ThreadRuntime()
            self._active_project_id = snapshot.active_project_id
            self._active_thread_id = snapshot.active_thread_id
            if self._active_thread_id is not None and self._active_thread_id not in self._thread_index:
                self._active_thread_id = None
            if self._active_project_id is not None and not any(p.id == self._active_project_id for p in projects):
                self._active_project_id = None
                self._active_thread_id = None
        self._ledger.restore(snapshot.daily_usage, snapshot.model_usage)
        self._notify(None)

    # ── Internals ─────────────────────────────────────────────────────────────

    @contextmanager
    def _thread(self, thread_id: str) -> Iterator[Thread]:
        with self._lock:
            project = self._thread_index.get(thread_id)
            thread = project.find_thread(thread_id) if project is not None else None
            lock = self._thread_locks.get(thread_id)
        if thread is None or lock is None:
            raise UnknownEntity("thread", thread_id)
        with lock:
            yield thread

    def _project_locked(self, project_id: str) -> Project:
        for p in self._projects:
            if p.id == project_id:
                return p
        raise UnknownEntity("project", project_id)

    def _project_view_locked(self, project: Project) -> tuple[Project, list[tuple[Thread, threading.RLock]]]:
        """A thread-less copy of the project plus its threads and their locks."""
        out = copy.copy(project)
        out.threads = []
        return out, [(t, self._thread_locks[t.id]) for t in project.threads]

    @staticmethod
    def _copy_threads(out: Project, threads: list[tuple[Thread, threading.RLock]]) -> Project:
        for t, lock in threads:
            with lock:
                out.threads.append(copy.deepcopy(t))
        return out

    def _forget_thread_locked(self, thread_id: str) -> None:
        self._thread_index.pop(thread_id, None)
        self._thread_locks.pop(thread_id, None)
        self._runtime.pop(thread_id, None)

    @staticmethod
    def _message_locked(thread: Thread, message_id: str) -> Message:
        message = thread.find_message(message_id)
        if message is None:
            raise UnknownEntity("message", message_id)
        return message

    @staticmethod
    def _find_tool_call_locked(
        thread: Thread, tool_call_id: str, *, prefer_message_id: Optional[str] = None
    ) -> Optional[ToolCall]:
        if prefer_message_id is not None:
            preferred = thread.find_message(prefer_message_id)
            if preferred is not None:
                tc = preferred.find_tool_call(tool_call_id)
                if tc is not None:
                    return tc
        for message in reversed(thread.messages):
            tc = message.find_tool_call(tool_call_id)
            if tc is not None:
                return tc
        return None

    @staticmethod
    def _advance_tool_call_locked(
        thread: Thread, tc: ToolCall, *, status: Optional[ToolStatus], output: Optional[str]
    ) -> bool:
        if is_terminal_tool_status(tc.status):
            log(f"tool call {tc.id} in thread {thread.id} is already {tc.status}; ignoring update")
            return False
        changed = False
        if status is not None and status != tc.status:
            if not can_advance_tool_status(tc.status, status):
                log(f"refusing tool call {tc.id} transition {tc.status} -> {status}")
                return False
            tc.status = status
            changed = True
        if output is not None:
            tc.output = output
            changed = True
        return changed

    def _open_message_locked(self, thread: Thread, rt: _ThreadRuntime) -> Message:
        message = Message(id=_new_id(), role="assistant", content="", timestamp=_now_ts())
        thread.messages.append(message)
        rt.in_progress_message_id = message.id
        return message

    def _ensure_message_locked(self, thread: Thread, rt: _ThreadRuntime) -> Message:
        if rt.in_progress_message_id is not None:
            message = thread.find_message(rt.in_progress_message_id)
            if message is not None:
                return message
        return self._open_message_locked(thread, rt)

    def _add_usage_locked(self, thread: Thread, message: Message, input_tokens: int, output_tokens: int) -> None:
        # Message and thread move by the same delta, so totals always equal the sum.
        message.input_tokens = (message.input_tokens or 0) + input_tokens
        message.output_tokens = (message.output_tokens or 0) + output_tokens
        thread.total_input_tokens += input_tokens
        thread.total_output_tokens += output_tokens
        self._ledger.record_usage(input_tokens, output_tokens, self._model)

    def _fail_locked(self, thread: Thread, error: str) -> None:
        thread.status = "error"
        thread.error = error
        thread.updated_at = _now_ts()
        self._runtime[thread.id].reset_stream()
