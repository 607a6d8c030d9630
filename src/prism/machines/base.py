from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        """stderr when there is any, else stdout; what git puts its complaints in."""
        return (self.stderr or self.stdout).strip()


class RunHandle(Protocol):
    async def wait(self) -> int: ...

    async def terminate(self) -> None: ...

    async def kill(self) -> None: ...

    async def write_stdin(self, data: bytes) -> None: ...

    async def close_stdin(self) -> None: ...


class Machine(Protocol):
    """Where claude and git run. Only a local implementation exists today."""

    name: str

    async def run(
        self,
        argv: list[str],
        cwd: Optional[str],
        env: Optional[dict[str, str]],
        stdout_cb: Callable[[bytes], Awaitable[None]],
        stderr_cb: Callable[[bytes], Awaitable[None]],
    ) -> RunHandle: ...

    async def exec_capture(self, argv: list[str], cwd: Optional[str]) -> ExecResult: ...

    async def realpath(self, path: str) -> str: ...

    async def exists(self, path: str) -> bool: ...

    async def make_dirs(self, path: str) -> None: ...

    async def remove_tree(self, path: str) -> None: ...
