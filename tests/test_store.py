import json
import threading
import unittest

from prism.claude.events import (
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
    parse_line_events,
)
from prism.errors import ThreadBusy, UnknownEntity
from prism.state.ledger import UsageLedger
from prism.state.models import Message, Thread, ToolCall
from prism.state.store import ThreadStore


def _token_sums(thread: Thread) -> tuple[int, int]:
    return (
        sum(m.input_tokens or 0 for m in thread.messages),
        sum(m.output_tokens or 0 for m in thread.messages),
    )


class _StoreCase(unittest.TestCase):
    def setUp(self) -> None:
        self.ledger = UsageLedger()
        self.store = ThreadStore(ledger=self.ledger)
        self.project = self.store.create_project("demo", "/tmp/demo")
        self.thread = self.store.create_thread(self.project.id, "first")

    def running(self) -> str:
        tid = self.thread.id
        self.store.begin_turn(tid, "hello")
        return tid


class TestProjectsAndThreads(_StoreCase):
    def test_new_project_becomes_active_and_clears_thread(self) -> None:
        other = self.store.create_project("other", "/tmp/other")
        self.assertEqual(self.store.list_projects()[0].id, other.id)
        active = self.store.active_project()
        assert active is not None
        self.assertEqual(active.id, other.id)
        self.assertIsNone(self.store.active_thread())

    def test_threads_are_newest_first_and_default_to_project_dir(self) -> None:
        second = self.store.create_thread(self.project.id, "second")
        project = self.store.get_project(self.project.id)
        self.assertEqual([t.id for t in project.threads], [second.id, self.thread.id])
        self.assertEqual(second.work_dir, "/tmp/demo")
        active = self.store.active_thread()
        assert active is not None
        self.assertEqual(active.id, second.id)

    def test_delete_thread_clears_active_pointer(self) -> None:
        self.store.delete_thread(self.thread.id)
        self.assertIsNone(self.store.active_thread())
        with self.assertRaises(UnknownEntity):
            self.store.get_thread(self.thread.id)

    def test_delete_project_drops_its_threads(self) -> None:
        self.store.delete_project(self.project.id)
        self.assertEqual(self.store.list_projects(), [])
        with self.assertRaises(KeyError):
            self.store.get_thread(self.thread.id)

    def test_rename_thread(self) -> None:
        self.store.rename_thread(self.thread.id, "renamed")
        self.assertEqual(self.store.get_thread(self.thread.id).title, "renamed")

    def test_getters_return_copies(self) -> None:
        t = self.store.get_thread(self.thread.id)
        t.title = "mutated"
        self.assertEqual(self.store.get_thread(self.thread.id).title, "first")

    def test_listeners_get_thread_id(self) -> None:
        seen: list = []
        unsubscribe = self.store.subscribe(seen.append)
        self.store.rename_thread(self.thread.id, "x")
        unsubscribe()
        self.store.rename_thread(self.thread.id, "y")
        self.assertEqual(seen, [self.thread.id])


class TestMessages(_StoreCase):
    def test_add_message_counts_tokens_once(self) -> None:
        self.store.add_message(
            self.thread.id, Message(id="m1", role="assistant", content="", timestamp=0, input_tokens=10)
        )
        self.store.update_message(self.thread.id, "m1", output_tokens=5)
        self.store.update_message(self.thread.id, "m1", output_tokens=99)
        t = self.store.get_thread(self.thread.id)
        self.assertEqual((t.total_input_tokens, t.total_output_tokens), (10, 5))
        self.assertEqual(_token_sums(t), (10, 5))

    def test_tool_call_status_is_monotonic(self) -> None:
        self.store.add_message(self.thread.id, Message(id="m1", role="assistant", content="", timestamp=0))
        self.store.add_tool_call(self.thread.id, "m1", ToolCall(id="t1", name="Bash", input={}, timestamp=0))
        self.store.update_tool_call(self.thread.id, "m1", "t1", status="success", output="ok")
        tc = self.store.update_tool_call(self.thread.id, "m1", "t1", status="running", output="late")
        self.assertEqual((tc.status, tc.output), ("success", "ok"))

    def test_toggle_tool_call(self) -> None:
        self.store.add_message(self.thread.id, Message(id="m1", role="assistant", content="", timestamp=0))
        self.store.add_tool_call(self.thread.id, "m1", ToolCall(id="t1", name="Bash", input={}, timestamp=0))
        self.assertTrue(self.store.toggle_tool_call(self.thread.id, "m1", "t1"))
        self.assertFalse(self.store.toggle_tool_call(self.thread.id, "m1", "t1"))

    def test_unknown_message_raises(self) -> None:
        with self.assertRaises(UnknownEntity):
            self.store.update_message(self.thread.id, "nope", content="x")


class TestTurnLifecycle(_StoreCase):
    def test_begin_turn_rejects_running_thread(self) -> None:
        tid = self.running()
        with self.assertRaises(ThreadBusy):
            self.store.begin_turn(tid, "again")

    def test_streamed_turn(self) -> None:
        tid = self.running()
        self.store.apply_event(tid, StreamStart())
        self.assertTrue(self.store.is_streaming(tid))
        self.store.apply_event(tid, TextDelta("Hel"))
        self.store.apply_event(tid, TextDelta("lo"))
        self.store.apply_event(tid, UsageReport(input_tokens=0, output_tokens=7))
        self.store.apply_event(tid, StreamStop())

        t = self.store.get_thread(tid)
        self.assertEqual(t.status, "done")
        self.assertEqual([m.role for m in t.messages], ["user", "assistant"])
        self.assertEqual(t.messages[1].content, "Hello")
        self.assertFalse(self.store.is_streaming(tid))
        self.assertIsNone(self.store.in_progress_message(tid))
        self.assertEqual(t.total_output_tokens, 7)
        today = self.ledger.today()
        assert today is not None
        self.assertEqual(today.output_tokens, 7)

    def test_text_delta_opens_message_when_none_in_progress(self) -> None:
        tid = self.running()
        self.store.apply_event(tid, TextDelta("hi"))
        msg = self.store.in_progress_message(tid)
        assert msg is not None
        self.assertEqual((msg.role, msg.content), ("assistant", "hi"))

    def test_usage_report_starting_message(self) -> None:
        tid = self.running()
        self.store.apply_event(tid, UsageReport(input_tokens=30, starts_message=True))
        self.store.apply_event(tid, UsageReport(output_tokens=4))
        t = self.store.get_thread(tid)
        self.assertEqual(len(t.messages), 2)
        self.assertEqual((t.messages[1].input_tokens, t.messages[1].output_tokens), (30, 4))
        self.assertEqual((t.total_input_tokens, t.total_output_tokens), _token_sums(t))

    def test_tool_call_round_trip(self) -> None:
        tid = self.running()
        self.store.apply_event(tid, StreamStart())
        self.store.apply_event(tid, ToolCallStart(id="t1", name="Bash"))
        self.store.apply_event(tid, ToolInputDelta('{"command": "l'))
        self.store.apply_event(tid, ToolInputDelta('s"}'))
        self.store.apply_event(tid, StreamStop())
        self.assertTrue(self.store.apply_event(tid, ToolCallComplete(id="t1", result="ab")))

        tc = self.store.find_tool_call(tid, "t1")
        assert tc is not None
        self.assertEqual(tc.input, {"command": "ls"})
        self.assertEqual((tc.status, tc.output), ("success", "ab"))

        # The agent continues the same turn after the tool result.
        self.store.apply_event(tid, StreamStart())
        self.assertEqual(self.store.get_thread(tid).status, "running")

    def test_decoded_user_tool_results_complete_tool_calls(self) -> None:
        tid = self.running()
        self.store.apply_event(tid, ToolCallStart(id="t1", name="Read"))
        self.store.apply_event(tid, ToolCallStart(id="t2", name="Bash"))
        self.store.apply_event(tid, StreamStop())
        line = json.dumps({
            "type": "user",
            "message": {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": "t1", "content": [{"type": "text", "text": "body"}]},
                    {"type": "tool_result", "tool_use_id": "t2", "content": "denied", "is_error": True},
                ],
            },
        })
        for ev in parse_line_events(line):
            self.assertTrue(self.store.apply_event(tid, ev))

        first = self.store.find_tool_call(tid, "t1")
        second = self.store.find_tool_call(tid, "t2")
        assert first is not None and second is not None
        self.assertEqual((first.status, first.output), ("success", "body"))
        self.assertEqual((second.status, second.output), ("error", "denied"))

    def test_error_completion(self) -> None:
        tid = self.running()
        self.store.apply_event(tid, ToolCallStart(id="t1", name="Bash"))
        self.store.apply_event(tid, ToolCallComplete(id="t1", result="nope", is_error=True))
        tc = self.store.find_tool_call(tid, "t1")
        assert tc is not None
        self.assertEqual(tc.status, "error")

    def test_completion_never_rewrites_terminal_tool_call(self) -> None:
        tid = self.running()
        self.store.apply_event(tid, ToolCallStart(id="t1", name="Bash"))
        self.store.apply_event(tid, ToolCallComplete(id="t1", result="first"))
        self.assertFalse(self.store.apply_event(tid, ToolCallComplete(id="t1", result="second", is_error=True)))
        tc = self.store.find_tool_call(tid, "t1")
        assert tc is not None
        self.assertEqual((tc.status, tc.output), ("success", "first"))

    def test_unmatched_completion_is_ignored(self) -> None:
        tid = self.running()
        self.assertFalse(self.store.apply_event(tid, ToolCallComplete(id="ghost", result="x")))

    def test_duplicate_tool_call_start_is_ignored(self) -> None:
        tid = self.running()
        self.assertTrue(self.store.apply_event(tid, ToolCallStart(id="t1", name="Bash")))
        self.assertFalse(self.store.apply_event(tid, ToolCallStart(id="t1", name="Bash")))

    def test_input_fragment_without_tool_call_is_dropped(self) -> None:
        tid = self.running()
        self.assertFalse(self.store.apply_event(tid, ToolInputDelta('{"a": 1}')))

    def test_error_event_moves_to_error(self) -> None:
        tid = self.running()
        self.store.apply_event(tid, TextDelta("partial"))
        self.store.apply_event(tid, ErrorEvent("overloaded"))
        t = self.store.get_thread(tid)
        self.assertEqual((t.status, t.error), ("error", "overloaded"))
        self.assertFalse(self.store.is_streaming(tid))

    def test_permission_request_creates_missing_tool_call(self) -> None:
        tid = self.running()
        self.store.apply_event(tid, StreamStop())
        self.assertTrue(
            self.store.apply_event(tid, PermissionRequest(tool_call_id="t9", tool_name="Write", input={"file_path": "x"}))
        )
        tc = self.store.find_tool_call(tid, "t9")
        assert tc is not None
        self.assertEqual((tc.name, tc.status), ("Write", "pending"))
        self.assertEqual(self.store.get_thread(tid).status, "running")

    def test_unrecognized_never_mutates(self) -> None:
        tid = self.running()
        before = self.store.get_thread(tid)
        self.assertFalse(self.store.apply_event(tid, Unrecognized("junk")))
        self.assertEqual(self.store.get_thread(tid), before)

    def test_content_events_dropped_when_idle(self) -> None:
        self.assertFalse(self.store.apply_event(self.thread.id, TextDelta("stray")))
        self.assertEqual(self.store.get_thread(self.thread.id).messages, [])

    def test_stop_returns_to_idle_and_drops_stale_events(self) -> None:
        tid = self.thread.id
        epoch = self.store.open_session(tid)
        self.store.begin_turn(tid, "hello")
        self.store.apply_event(tid, TextDelta("par"), epoch=epoch)
        self.store.stop_thread(tid)

        t = self.store.get_thread(tid)
        self.assertEqual(t.status, "idle")
        self.assertFalse(self.store.is_streaming(tid))
        # Late output from the killed process.
        self.assertFalse(self.store.apply_event(tid, TextDelta("tial"), epoch=epoch))
        self.assertFalse(self.store.apply_event(tid, ErrorEvent("claude exited with -15"), epoch=epoch))
        self.assertEqual(self.store.get_thread(tid), t)

    def test_stop_with_error(self) -> None:
        tid = self.running()
        self.store.stop_thread(tid, error="send failed")
        t = self.store.get_thread(tid)
        self.assertEqual((t.status, t.error), ("error", "send failed"))

    def test_error_accepted_on_idle_thread_with_open_session(self) -> None:
        tid = self.thread.id
        epoch = self.store.open_session(tid)
        self.assertTrue(self.store.apply_event(tid, ErrorEvent("claude exited with 1"), epoch=epoch))
        self.assertEqual(self.store.get_thread(tid).status, "error")

    def test_end_session_fails_running_turn(self) -> None:
        tid = self.thread.id
        epoch = self.store.open_session(tid)
        self.store.begin_turn(tid, "hello")
        self.store.end_session(tid, epoch=epoch)
        self.assertEqual(self.store.get_thread(tid).status, "error")
        self.assertFalse(self.store.session_open(tid))

    def test_next_turn_after_done(self) -> None:
        tid = self.running()
        self.store.apply_event(tid, StreamStop())
        self.store.begin_turn(tid, "again")
        self.assertEqual(self.store.get_thread(tid).status, "running")


class TestSnapshot(_StoreCase):
    def test_restore_brings_running_threads_back_idle(self) -> None:
        tid = self.running()
        self.store.apply_event(tid, UsageReport(input_tokens=3, starts_message=True))
        snap = self.store.snapshot()

        restored = ThreadStore(ledger=UsageLedger())
        restored.restore(snap)
        t = restored.get_thread(tid)
        self.assertEqual(t.status, "idle")
        self.assertEqual(t.total_input_tokens, 3)
        self.assertFalse(restored.is_streaming(tid))
        active = restored.active_thread()
        assert active is not None
        self.assertEqual(active.id, tid)
        self.assertEqual([d.input_tokens for d in restored.ledger.days()], [3])


class TestConcurrency(unittest.TestCase):
    def test_parallel_threads_keep_token_invariant(self) -> None:
        store = ThreadStore(ledger=UsageLedger())
        project = store.create_project("p", "/tmp")
        tids = [store.create_thread(project.id, f"t{i}").id for i in range(4)]
        for tid in tids:
            store.begin_turn(tid, "go")

        def worker(tid: str) -> None:
            for _ in range(200):
                store.apply_event(tid, UsageReport(input_tokens=1, output_tokens=2))
                store.apply_event(tid, TextDelta("x"))

        workers = [threading.Thread(target=worker, args=(tid,)) for tid in tids]
        for w in workers:
            w.start()
        for w in workers:
            w.join()

        for tid in tids:
            t = store.get_thread(tid)
            self.assertEqual((t.total_input_tokens, t.total_output_tokens), (200, 400))
            self.assertEqual(_token_sums(t), (200, 400))
        today = store.ledger.today()
        assert today is not None
        self.assertEqual((today.input_tokens, today.output_tokens), (800, 1600))

    def test_busy_thread_does_not_stall_structural_operations(self) -> None:
        store = ThreadStore(ledger=UsageLedger())
        project = store.create_project("p", "/tmp")
        busy = store.create_thread(project.id, "busy")
        other = store.create_thread(project.id, "other")
        held = threading.Event()
        release = threading.Event()

        def hold() -> None:
            with store._thread(busy.id):
                held.set()
                release.wait(5)

        holder = threading.Thread(target=hold)
        holder.start()
        self.assertTrue(held.wait(1))

        # A reader copying the busy thread waits for it...
        reader = threading.Thread(target=store.list_projects)
        reader.start()
        reader.join(0.05)
        self.assertTrue(reader.is_alive())

        # ...without blocking writers or lookups of other threads.
        created: list[str] = []

        def write() -> None:
            created.append(store.create_thread(project.id, "new").id)
            store.get_thread(other.id)

        writer = threading.Thread(target=write)
        writer.start()
        writer.join(1)
        try:
            self.assertFalse(writer.is_alive())
            self.assertEqual(len(created), 1)
        finally:
            release.set()
            holder.join(1)
            reader.join(1)
            writer.join(1)
        self.assertFalse(reader.is_alive())


if __name__ == "__main__":
    unittest.main()
