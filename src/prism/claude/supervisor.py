from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional

from prism.claude.adapter import ClaudeCLIAdapter, RunSettings
from prism.claude.cli_runner import ClaudeProcess
from prism.errors import SendFailed, SupervisorForwardFailed
from prism.machines.base import Machine
from prism.util.log import log


class ClaudeSupervisor:
    """Local process supervisor: one `claude` subprocess per thread."""

    def __init__(
        self,
        *,
        machine: Machine,
        settings: RunSettings,
        adapter: Optional[ClaudeCLIAdapter] = None,
    ) -> None:
        self._machine = machine
        self._settings = settings
        self._adapter = adapter or ClaudeCLIAdapter()
        self._procs: dict[str, ClaudeProcess] = {}
        self._lock = asyncio.Lock()

    def has_session(self, thread_id: str) -> bool:
        proc = self._procs.get(thread_id)
        return proc is not None and not proc.closed

    async def start_session(self, thread_id: str, work_dir: str, executable_path: Optional[str] = None) -> None:
        async with self._lock:
            old = self._procs.pop(thread_id, None)
            if old is not None:
                await old.cancel()
            proc = await self._adapter.start(
                machine=self._machine,
                work_dir=work_dir,
                settings=self._settings,
                executable_path=executable_path,
            )
            self._procs[thread_id] = proc
        log(f"started claude for thread {thread_id} (run {proc.run_id})")

    async def send_user_message(self, thread_id: str, text: str) -> None:
        proc = self._procs.get(thread_id)
        if proc is None or proc.closed:
            raise SendFailed(thread_id, "no running session")
        try:
            await proc.send_user_message(text)
        except (OSError, RuntimeError) as exc:
            raise SendFailed(thread_id, str(exc)) from exc

    async def resolve_approval(self, thread_id: str, tool_call_id: str, approved: bool) -> None:
        proc = self._procs.get(thread_id)
        if proc is None or proc.closed:
            raise SupervisorForwardFailed(thread_id, "no running session")
        try:
            await proc.send_permission_response(tool_use_id=tool_call_id, approved=approved)
        except (OSError, RuntimeError) as exc:
            raise SupervisorForwardFailed(thread_id, str(exc)) from exc

    async def stop_session(self, thread_id: str) -> None:
        async with self._lock:
            proc = self._procs.pop(thread_id, None)
        if proc is None:
            return
        await proc.cancel()
        log(f"stopped claude for thread {thread_id} (run {proc.run_id})")

    async def lines(self, thread_id: str) -> AsyncIterator[str]:
        proc = self._procs.get(thread_id)
        if proc is None:
            return
        async for line in proc.lines():
            yield line

    async def shutdown(self) -> None:
        async with self._lock:
            procs = list(self._procs.values())
            self._procs.clear()
        for proc in procs:
            await proc.cancel()
