from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from prism.machines.base import Machine, RunHandle


class ClaudeProcess:
    """
    One running `claude` process.

    Raw stdout and stderr lines are queued in arrival order; decoding is left to the
    consumer so that anything the CLI prints can still be surfaced as a diagnostic.
    """

    def __init__(self, *, machine: Machine, handle: RunHandle) -> None:
        self.machine = machine
        self.handle = handle
        self.run_id = str(uuid.uuid4())

        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._closed = False
        self.exit_code: Optional[int] = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def push_line(self, line: str) -> None:
        await self._queue.put(line)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(None)

    async def lines(self) -> AsyncIterator[str]:
        while True:
            line = await self._queue.get()
            if line is None:
                return
            yield line

    async def wait(self) -> int:
        return await self.handle.wait()

    async def write_json(self, payload: dict[str, Any]) -> None:
        data = (json.dumps(payload) + "\n").encode("utf-8")
        await self.handle.write_stdin(data)

    async def send_user_message(self, text: str) -> None:
        await self.write_json({
            "type": "user",
            "message": {"role": "user", "content": text},
        })

    async def send_permission_response(self, *, tool_use_id: str, approved: bool) -> None:
        await self.write_json({
            "type": "permission_response",
            "tool_use_id": tool_use_id,
            "approved": approved,
        })

    async def cancel(self) -> None:
        try:
            await self.handle.terminate()
        except Exception:
            pass
        try:
            await self.handle.kill()
        except Exception:
            pass
        try:
            await self.handle.close_stdin()
        except Exception:
            pass


def _line_splitter(push: Callable[[str], Awaitable[None]]) -> Callable[[bytes], Awaitable[None]]:
    buf = bytearray()

    async def on_chunk(chunk: bytes) -> None:
        nonlocal buf
        buf += chunk
        while True:
            idx = buf.find(b"\n")
            if idx < 0:
                return
            line = buf[:idx].decode("utf-8", "replace").rstrip("\r")
            del buf[: idx + 1]
            if not line.strip():
                continue
            await push(line)

    return on_chunk


async def start_claude_process(
    *,
    machine: Machine,
    argv: list[str],
    cwd: Optional[str],
    env: Optional[dict[str, str]] = None,
) -> ClaudeProcess:
    proc: Optional[ClaudeProcess] = None
    early: list[str] = []

    async def push(line: str) -> None:
        if proc is None:
            early.append(line)
            return
        await proc.push_line(line)

    handle = await machine.run(
        argv=argv,
        cwd=cwd,
        env=env,
        stdout_cb=_line_splitter(push),
        stderr_cb=_line_splitter(push),
    )
    proc = ClaudeProcess(machine=machine, handle=handle)
    for line in early:
        await proc.push_line(line)

    async def reap() -> None:
        assert proc is not None
        try:
            rc = await proc.wait()
            proc.exit_code = rc
            if rc != 0:
                await proc.push_line(json.dumps({"type": "error", "message": f"claude exited with {rc}"}))
        except Exception as exc:
            await proc.push_line(json.dumps({"type": "error", "message": f"claude runner error: {exc}"}))
        finally:
            await proc.close()

    asyncio.create_task(reap())
    return proc
