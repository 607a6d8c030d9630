from __future__ import annotations

import asyncio
import os
import shutil
import signal
from pathlib import Path
from typing import Awaitable, Callable, Optional

from prism.machines.base import ExecResult, RunHandle

_POSIX = os.name == "posix"
_READ_CHUNK = 4096

ChunkSink = Callable[[bytes], Awaitable[None]]


async def _forward(stream: Optional[asyncio.StreamReader], sink: ChunkSink) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        await sink(chunk)


class LocalRunHandle:
    """
    A claude process started by LocalMachine.

    On POSIX the process leads its own session, so signals go to the whole group and
    reach the shell commands and helpers claude spawned for tool calls.
    """

    def __init__(self, proc: asyncio.subprocess.Process, readers: list[asyncio.Task[None]]) -> None:
        self._proc = proc
        self._readers = readers

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def exited(self) -> bool:
        return self._proc.returncode is not None

    def _signal(self, sig: signal.Signals) -> None:
        if self.exited:
            return
        if not _POSIX:
            if sig == signal.SIGTERM:
                self._proc.terminate()
            else:
                self._proc.kill()
            return
        try:
            os.killpg(self._proc.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            # The group is gone or not ours; the leader may still be reachable.
            try:
                self._proc.send_signal(sig)
            except ProcessLookupError:
                pass

    async def wait(self) -> int:
        rc = await self._proc.wait()
        # Drain both pipes so no output line is lost after exit.
        await asyncio.gather(*self._readers)
        return int(rc)

    async def terminate(self) -> None:
        self._signal(signal.SIGTERM)

    async def kill(self) -> None:
        self._signal(signal.SIGKILL if _POSIX else signal.SIGTERM)

    async def write_stdin(self, data: bytes) -> None:
        stdin = self._proc.stdin
        if stdin is None or stdin.is_closing():
            raise BrokenPipeError("claude stdin is closed")
        stdin.write(data)
        await stdin.drain()

    async def close_stdin(self) -> None:
        stdin = self._proc.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()


class LocalMachine:
    def __init__(self, *, name: str = "local") -> None:
        self.name = name

    async def run(
        self,
        argv: list[str],
        cwd: Optional[str],
        env: Optional[dict[str, str]],
        stdout_cb: ChunkSink,
        stderr_cb: ChunkSink,
    ) -> RunHandle:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=_POSIX,
        )
        readers = [
            asyncio.create_task(_forward(proc.stdout, stdout_cb)),
            asyncio.create_task(_forward(proc.stderr, stderr_cb)),
        ]
        return LocalRunHandle(proc, readers)

    async def exec_capture(self, argv: list[str], cwd: Optional[str]) -> ExecResult:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        out_b, err_b = await proc.communicate()
        return ExecResult(
            exit_code=int(proc.returncode or 0),
            stdout=(out_b or b"").decode("utf-8", "replace"),
            stderr=(err_b or b"").decode("utf-8", "replace"),
        )

    async def realpath(self, path: str) -> str:
        return str(Path(path).expanduser().resolve())

    async def exists(self, path: str) -> bool:
        return Path(path).expanduser().exists()

    async def make_dirs(self, path: str) -> None:
        Path(path).expanduser().mkdir(parents=True, exist_ok=True)

    async def remove_tree(self, path: str) -> None:
        p = Path(path).expanduser()
        if p.exists():
            await asyncio.to_thread(shutil.rmtree, p)
