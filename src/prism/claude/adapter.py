from __future__ import annotations

import os
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol

from prism.claude.cli_runner import ClaudeProcess, start_claude_process
from prism.machines.base import Machine


@dataclass(frozen=True)
class RunSettings:
    claude_bin: str
    claude_args: tuple[str, ...] = ()
    model: Optional[str] = None
    skip_permissions: bool = False


class Supervisor(Protocol):
    """The process boundary the session manager drives; one session per thread."""

    async def start_session(self, thread_id: str, work_dir: str, executable_path: Optional[str] = None) -> None: ...

    async def send_user_message(self, thread_id: str, text: str) -> None: ...

    async def resolve_approval(self, thread_id: str, tool_call_id: str, approved: bool) -> None: ...

    async def stop_session(self, thread_id: str) -> None: ...

    def lines(self, thread_id: str) -> AsyncIterator[str]: ...


class ClaudeCLIAdapter:
    @staticmethod
    def build_argv(*, settings: RunSettings, executable_path: Optional[str] = None) -> list[str]:
        """
        Build a `claude` argv for a long-lived streaming session.

        Input and output are both stream-json so user turns and permission responses can
        be written to stdin while events are read from stdout.
        """
        argv: list[str] = [executable_path or settings.claude_bin]
        argv += ["--print", "--output-format", "stream-json", "--input-format", "stream-json"]
        # --verbose is required by the CLI for stream-json output under --print.
        argv += ["--verbose", "--include-partial-messages"]
        if settings.model:
            argv += ["--model", settings.model]
        if settings.skip_permissions:
            argv += ["--dangerously-skip-permissions"]
        argv += list(settings.claude_args)
        return argv

    async def start(
        self,
        *,
        machine: Machine,
        work_dir: str,
        settings: RunSettings,
        executable_path: Optional[str] = None,
    ) -> ClaudeProcess:
        try:
            work_dir = await machine.realpath(work_dir)
        except Exception:
            work_dir = os.path.normpath(work_dir)

        argv = self.build_argv(settings=settings, executable_path=executable_path)
        return await start_claude_process(machine=machine, argv=argv, cwd=work_dir, env=None)
