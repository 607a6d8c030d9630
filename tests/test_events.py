import json
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
    parse_event_obj,
    parse_line,
    parse_line_events,
)


class TestEventParsing(unittest.TestCase):
    def test_text_delta(self) -> None:
        ev = parse_line(json.dumps({
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": "Hello"},
        }))
        self.assertEqual(ev, TextDelta(text="Hello"))

    def test_tool_use_block_start(self) -> None:
        ev = parse_event_obj({
            "type": "content_block_start",
            "index": 1,
            "content_block": {"type": "tool_use", "id": "tu_1", "name": "Bash", "input": {}},
        })
        self.assertEqual(ev, ToolCallStart(id="tu_1", name="Bash", input={}))

    def test_text_block_start_is_empty_text(self) -> None:
        ev = parse_event_obj({"type": "content_block_start", "content_block": {"type": "text", "text": ""}})
        self.assertEqual(ev, TextDelta(text=""))

    def test_input_json_delta_keeps_index(self) -> None:
        ev = parse_event_obj({
            "type": "content_block_delta",
            "index": 2,
            "delta": {"type": "input_json_delta", "partial_json": '{"command": "l'},
        })
        self.assertEqual(ev, ToolInputDelta(partial_json='{"command": "l', index=2))

    def test_message_start_without_usage_is_stream_start(self) -> None:
        self.assertEqual(parse_event_obj({"type": "message_start", "message": {"id": "m"}}), StreamStart())

    def test_message_start_with_usage_opens_message(self) -> None:
        ev = parse_event_obj({"type": "message_start", "message": {"usage": {"input_tokens": 12}}})
        self.assertEqual(ev, UsageReport(input_tokens=12, output_tokens=0, starts_message=True))

    def test_message_delta_usage(self) -> None:
        ev = parse_event_obj({"type": "message_delta", "usage": {"output_tokens": 40}})
        self.assertEqual(ev, UsageReport(input_tokens=0, output_tokens=40))

    def test_message_delta_without_usage_is_unrecognized(self) -> None:
        ev = parse_event_obj({"type": "message_delta", "delta": {"stop_reason": "end_turn"}})
        self.assertIsInstance(ev, Unrecognized)

    def test_message_stop(self) -> None:
        self.assertEqual(parse_event_obj({"type": "message_stop"}), StreamStop())

    def test_tool_result_joins_text_parts(self) -> None:
        ev = parse_event_obj({
            "type": "tool_result",
            "tool_use_id": "t1",
            "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}],
        })
        self.assertEqual(ev, ToolCallComplete(id="t1", result="ab", is_error=False))

    def test_tool_result_error_flag_and_string_content(self) -> None:
        ev = parse_event_obj({"type": "tool_result", "tool_use_id": "t2", "content": "boom", "is_error": True})
        self.assertEqual(ev, ToolCallComplete(id="t2", result="boom", is_error=True))

    def test_tool_result_without_id_is_unrecognized(self) -> None:
        self.assertIsInstance(parse_event_obj({"type": "tool_result", "content": "x"}), Unrecognized)

    def test_error_event_messages(self) -> None:
        self.assertEqual(parse_event_obj({"type": "error", "error": {"message": "overloaded"}}), ErrorEvent("overloaded"))
        self.assertEqual(parse_event_obj({"type": "error", "message": "bad"}), ErrorEvent("bad"))
        self.assertEqual(parse_event_obj({"type": "error"}), ErrorEvent("Unknown error"))

    def test_permission_request(self) -> None:
        ev = parse_event_obj({
            "type": "permission_request",
            "tool_use_id": "t3",
            "tool_name": "Write",
            "input": {"file_path": "/tmp/x", "content": "hi"},
        })
        self.assertEqual(
            ev,
            PermissionRequest(tool_call_id="t3", tool_name="Write", input={"file_path": "/tmp/x", "content": "hi"}),
        )

    def test_stream_event_envelope_is_unwrapped(self) -> None:
        ev = parse_event_obj({
            "type": "stream_event",
            "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "hi"}},
        })
        self.assertEqual(ev, TextDelta(text="hi"))

    def test_non_json_line_is_unrecognized(self) -> None:
        self.assertEqual(parse_line("not json\n"), Unrecognized(raw="not json"))

    def test_json_array_is_unrecognized(self) -> None:
        self.assertIsInstance(parse_line("[1, 2]"), Unrecognized)

    def test_unknown_type_keeps_raw_line(self) -> None:
        line = '{"type": "result", "subtype": "success"}'
        self.assertEqual(parse_line(line), Unrecognized(raw=line))

    def test_blank_line_is_skipped(self) -> None:
        self.assertIsNone(parse_line("   \n"))

    def test_user_message_tool_result_is_completion(self) -> None:
        line = json.dumps({
            "type": "user",
            "message": {
                "role": "user",
                "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "ok"}],
            },
        })
        self.assertEqual(parse_line(line), ToolCallComplete(id="t1", result="ok"))

    def test_user_message_tool_result_error_and_parts(self) -> None:
        ev = parse_event_obj({
            "type": "user",
            "message": {
                "content": [{
                    "type": "tool_result",
                    "tool_use_id": "t2",
                    "is_error": True,
                    "content": [{"type": "text", "text": "no "}, {"type": "text", "text": "such file"}],
                }],
            },
        })
        self.assertEqual(ev, ToolCallComplete(id="t2", result="no such file", is_error=True))

    def test_user_message_without_tool_result_is_unrecognized(self) -> None:
        line = json.dumps({"type": "user", "message": {"role": "user", "content": "hi"}})
        self.assertEqual(parse_line(line), Unrecognized(raw=line))

    def test_line_events_yields_every_tool_result(self) -> None:
        line = json.dumps({
            "type": "user",
            "message": {
                "content": [
                    {"type": "tool_result", "tool_use_id": "a", "content": "1"},
                    {"type": "text", "text": "ignored"},
                    {"type": "tool_result", "tool_use_id": "b", "content": "2", "is_error": True},
                ],
            },
        })
        self.assertEqual(parse_line(line), ToolCallComplete(id="a", result="1"))
        self.assertEqual(
            parse_line_events(line),
            [ToolCallComplete(id="a", result="1"), ToolCallComplete(id="b", result="2", is_error=True)],
        )

    def test_line_events_single_and_blank(self) -> None:
        self.assertEqual(parse_line_events('{"type": "message_stop"}'), [StreamStop()])
        self.assertEqual(parse_line_events(""), [])
        self.assertEqual(parse_line_events("oops"), [Unrecognized(raw="oops")])


if __name__ == "__main__":
    unittest.main()
