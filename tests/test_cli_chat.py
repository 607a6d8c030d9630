import asyncio
import json
import os
import signal
import unittest
from typing import Any, AsyncIterator, Optional
from unittest import mock

try:
    from prism.cli import _drive_turn, _interrupt_sets
except Exception:
    _drive_turn = None  # type: ignore[assignment]
    _interrupt_sets = None  # type: ignore[assignment]

from prism.sessions.manager import SessionManager
from prism.state.ledger import UsageLedger
from prism.state.store import ThreadStore


class _FakeSupervisor:
    def __init__(self) -> None:
        self.queues: dict[str, asyncio.Queue] = {}
        self.approvals: list[tuple[str, str, bool]] = []
        self.stopped: list[str] = []

    async def start_session(self, thread_id: str, work_dir: str, executable_path: Optional[str] = None) -> None:
        self.queues[thread_id] = asyncio.Queue()

    async def send_user_message(self, thread_id: str, text: str) -> None:
        return None

    async def resolve_approval(self, thread_id: str, tool_call_id: str, approved: bool) -> None:
        self.approvals.append((thread_id, tool_call_id, approved))

    async def stop_session(self, thread_id: str) -> None:
        self.stopped.append(thread_id)

    async def lines(self, thread_id: str) -> AsyncIterator[str]:
        q = self.queues[thread_id]
        while True:
            line = await q.get()
            if line is None:
                return
            yield line

    def feed(self, thread_id: str, *objs: Any) -> None:
        for obj in objs:
            self.queues[thread_id].put_nowait(json.dumps(obj))


@unittest.skipIf(_drive_turn is None, "CLI deps (typer/PyYAML) not installed")
class TestDriveTurn(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = ThreadStore(ledger=UsageLedger())
        project = self.store.create_project("demo", "/repo")
        self.supervisor = _FakeSupervisor()
        self.manager = SessionManager(store=self.store, supervisor=self.supervisor)
        self.tid = self.store.create_thread(project.id, "t").id
        await self.manager.send_user_message(self.tid, "go")

    async def asyncTearDown(self) -> None:
        await self.manager.shutdown()

    async def test_returns_once_the_turn_is_done(self) -> None:
        self.supervisor.feed(
            self.tid,
            {"type": "message_start"},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "hi"}},
            {"type": "message_stop"},
        )
        thread = await asyncio.wait_for(_drive_turn(self.manager, self.tid), timeout=3.0)
        self.assertEqual(thread.status, "done")
        self.assertEqual(self.supervisor.stopped, [])

    async def test_stop_event_ends_a_hung_turn(self) -> None:
        stop = asyncio.Event()
        turn = asyncio.create_task(_drive_turn(self.manager, self.tid, stop=stop))
        await asyncio.sleep(0.1)
        self.assertFalse(turn.done())

        stop.set()
        thread = await asyncio.wait_for(turn, timeout=2.0)
        self.assertEqual(thread.status, "idle")
        self.assertEqual(self.supervisor.stopped, [self.tid])
        self.assertFalse(self.manager.is_active(self.tid))

    @unittest.skipUnless(os.name == "posix", "loop signal handlers are POSIX-only")
    async def test_ctrl_c_stops_the_running_turn(self) -> None:
        stop = asyncio.Event()
        with _interrupt_sets(stop):
            turn = asyncio.create_task(_drive_turn(self.manager, self.tid, stop=stop))
            await asyncio.sleep(0.1)
            os.kill(os.getpid(), signal.SIGINT)
            thread = await asyncio.wait_for(turn, timeout=2.0)
        self.assertTrue(stop.is_set())
        self.assertEqual(thread.status, "idle")
        self.assertEqual(self.supervisor.stopped, [self.tid])

    async def test_permission_prompt_is_answered_and_forwarded(self) -> None:
        self.supervisor.feed(
            self.tid,
            {"type": "message_start"},
            {"type": "content_block_start", "content_block": {"type": "tool_use", "id": "tu1", "name": "Bash"}},
            {"type": "message_stop"},
            {"type": "permission_request", "tool_use_id": "tu1", "tool_name": "Bash", "input": {"command": "ls"}},
        )

        def answer(*_args: Any, **_kwargs: Any) -> bool:
            return True

        with mock.patch("prism.cli.typer.confirm", side_effect=answer) as confirm:
            turn = asyncio.create_task(_drive_turn(self.manager, self.tid))
            for _ in range(300):
                if self.supervisor.approvals:
                    break
                await asyncio.sleep(0.01)
            self.supervisor.feed(
                self.tid,
                {"type": "tool_result", "tool_use_id": "tu1", "content": "a.txt"},
                {"type": "message_start"},
                {"type": "message_stop"},
            )
            thread = await asyncio.wait_for(turn, timeout=3.0)

        self.assertEqual(confirm.call_count, 1)
        self.assertIn("high risk", confirm.call_args.args[0])
        self.assertEqual(self.supervisor.approvals, [(self.tid, "tu1", True)])
        self.assertEqual(thread.status, "done")
        tc = self.store.find_tool_call(self.tid, "tu1")
        assert tc is not None
        self.assertEqual((tc.status, tc.output), ("success", "a.txt"))


if __name__ == "__main__":
    unittest.main()
