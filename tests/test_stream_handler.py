"""Tests for StreamHandler, fed with canned stream-json output."""

import json

import pytest

from superengineer.agents.events import StreamSignal
from superengineer.agents.stream_handler import StreamHandler
from superengineer.agents.types import MessageType, ToolStatus, WaitingStatus


def _ev(obj: dict) -> str:
    return json.dumps(obj)


def _collect(handler: StreamHandler) -> list[tuple[StreamSignal, object]]:
    received = []
    for signal in StreamSignal:
        handler.on(
            signal,
            lambda *args, s=signal: received.append((s, args[0] if args else None)),
        )
    return received


def _messages(received, message_type=None):
    return [
        payload
        for signal, payload in received
        if signal is StreamSignal.MESSAGE and (message_type is None or payload.type is message_type)
    ]


def _signals(received, signal):
    return [payload for s, payload in received if s is signal]


def _assistant(*blocks, usage=None) -> str:
    message = {"content": list(blocks)}
    if usage is not None:
        message["usage"] = usage
    return _ev({"type": "assistant", "message": message})


def _tool_use(tool_id, name, tool_input) -> dict:
    return {"type": "tool_use", "id": tool_id, "name": name, "input": tool_input}


def _tool_result(tool_id, content, is_error=False) -> str:
    block = {"type": "tool_result", "tool_use_id": tool_id, "content": content}
    if is_error:
        block["is_error"] = True
    return _ev({"type": "user", "message": {"content": [block]}})


@pytest.fixture
def handler():
    return StreamHandler(max_context_tokens=1000)


class TestLineParsing:
    def test_bare_json_line(self, handler):
        received = _collect(handler)
        handler.process_line(_ev({"type": "stdout", "content": "hello"}))

        [msg] = _messages(received)
        assert msg.type is MessageType.STDOUT
        assert msg.content == "hello"

    def test_data_prefixed_line(self, handler):
        received = _collect(handler)
        handler.process_line("data: " + _ev({"type": "stderr", "content": "oops"}))

        [msg] = _messages(received)
        assert msg.type is MessageType.STDERR

    def test_event_name_used_when_payload_has_no_type(self, handler):
        received = _collect(handler)
        handler.process_line("event: stdout")
        handler.process_line("data: " + _ev({"content": "from event"}))

        [msg] = _messages(received)
        assert msg.content == "from event"

    def test_event_name_consumed_once(self, handler):
        received = _collect(handler)
        handler.process_line("event: stdout")
        handler.process_line("data: " + _ev({"content": "one"}))
        handler.process_line("data: " + _ev({"content": "two"}))

        assert [m.content for m in _messages(received)] == ["one"]

    def test_ping_ignored(self, handler):
        received = _collect(handler)
        handler.process_line("event: ping")
        handler.process_line(_ev({"type": "ping"}))
        assert received == []

    def test_malformed_json_skipped(self, handler):
        received = _collect(handler)
        handler.process_line("data: {not json")
        handler.process_line("{broken")
        handler.process_line(_ev({"type": "stdout", "content": "after"}))

        assert [m.content for m in _messages(received)] == ["after"]

    def test_non_protocol_text_dropped(self, handler):
        received = _collect(handler)
        handler.process_line("some random log line")
        handler.process_line("   ")
        handler.process_line(_ev({"type": "no_such_event"}))
        assert received == []

    def test_ready_marker_on_stdout(self, handler):
        received = _collect(handler)
        handler.process_line("Ready.")
        assert _signals(received, StreamSignal.READY) == [None]

    def test_waiting_marker_on_stdout(self, handler):
        received = _collect(handler)
        handler.process_line("Waiting for input")
        assert _signals(received, StreamSignal.WAITING_FOR_INPUT) == [WaitingStatus(True, 1)]

    def test_listener_failure_does_not_break_parsing(self, handler):
        seen = []

        def _boom(msg):
            raise RuntimeError("listener broke")

        handler.on(StreamSignal.MESSAGE, _boom)
        handler.on(StreamSignal.MESSAGE, seen.append)
        handler.process_line(_ev({"type": "stdout", "content": "a"}))
        handler.process_line(_ev({"type": "stdout", "content": "b"}))

        assert [m.content for m in seen] == ["a", "b"]


class TestFeed:
    def test_line_split_across_chunks(self, handler):
        received = _collect(handler)
        handler.feed(b'{"type": "stdout", "con')
        assert received == []
        handler.feed(b'tent": "hi"}\n')

        assert [m.content for m in _messages(received)] == ["hi"]

    def test_multiple_lines_in_one_chunk(self, handler):
        received = _collect(handler)
        lines = [_ev({"type": "stdout", "content": str(i)}) for i in range(3)]
        handler.feed(("\n".join(lines) + "\n").encode())

        assert [m.content for m in _messages(received)] == ["0", "1", "2"]

    def test_multibyte_character_split(self, handler):
        received = _collect(handler)
        data = (json.dumps({"type": "stdout", "content": "héllo ✓"}, ensure_ascii=False) + "\n").encode()
        cut = data.index("✓".encode()) + 1
        handler.feed(data[:cut])
        handler.feed(data[cut:])

        assert [m.content for m in _messages(received)] == ["héllo ✓"]

    def test_flush_processes_trailing_partial_line(self, handler):
        received = _collect(handler)
        handler.feed(_ev({"type": "stdout", "content": "tail"}).encode())
        assert received == []
        handler.flush()

        assert [m.content for m in _messages(received)] == ["tail"]

    def test_flush_with_empty_buffers(self, handler):
        received = _collect(handler)
        handler.flush()
        assert received == []


class TestStderr:
    def test_stderr_lines_become_messages(self, handler):
        received = _collect(handler)
        handler.feed_stderr(b"warning: something\r\n")

        [msg] = _messages(received)
        assert msg.type is MessageType.STDERR
        assert msg.content == "warning: something"

    def test_session_id_marker(self, handler):
        received = _collect(handler)
        handler.feed_stderr(b"Resuming session: abc-123\n")
        assert _signals(received, StreamSignal.SESSION_ID) == ["abc-123"]

    def test_ready_and_waiting_markers(self, handler):
        received = _collect(handler)
        handler.feed_stderr(b"Agent is ready\nWaiting for user input\n")

        assert _signals(received, StreamSignal.READY) == [None]
        assert _signals(received, StreamSignal.WAITING_FOR_INPUT) == [WaitingStatus(True, 1)]


class TestToolCorrelation:
    def test_tool_use_then_result_share_internal_id(self, handler):
        received = _collect(handler)
        handler.process_line(_assistant(_tool_use("toolu_1", "Bash", {"command": "ls -la"})))
        handler.process_line(_tool_result("toolu_1", "file.txt"))

        [use] = _messages(received, MessageType.TOOL_USE)
        [result] = _messages(received, MessageType.TOOL_RESULT)
        assert use.content == "Running: ls -la"
        assert use.tool_info.id.startswith("tool-")
        assert use.tool_info.external_id == "toolu_1"
        assert use.tool_info.status is ToolStatus.RUNNING
        assert result.tool_info.id == use.tool_info.id
        assert result.tool_info.status is ToolStatus.COMPLETED
        assert result.tool_info.output == "file.txt"
        assert result.content == "Tool Bash completed: file.txt"
        assert handler.pending_tool_ids == []

    def test_finished_calls_pruned_at_turn_end(self, handler):
        handler.process_line(_assistant(_tool_use("toolu_1", "Read", {"file_path": "/a.py"})))
        handler.process_line(_assistant(_tool_use("toolu_2", "Bash", {"command": "sleep 60"})))
        handler.process_line(_tool_result("toolu_1", "print(1)"))
        assert len(handler.tool_calls) == 2

        handler.process_line(_ev({"type": "result", "subtype": "success"}))

        assert len(handler.tool_calls) == 1
        assert handler.pending_tool_ids == ["toolu_2"]

    def test_repeated_assistant_snapshot_emits_tool_once(self, handler):
        received = _collect(handler)
        line = _assistant(_tool_use("toolu_1", "Read", {"file_path": "/a.py"}))
        handler.process_line(line)
        handler.process_line(line)

        assert len(_messages(received, MessageType.TOOL_USE)) == 1
        assert handler.pending_tool_ids == ["toolu_1"]

    def test_error_result_marks_failed(self, handler):
        received = _collect(handler)
        handler.process_line(_assistant(_tool_use("toolu_1", "Bash", {"command": "rm x"})))
        handler.process_line(_tool_result("toolu_1", "permission denied", is_error=True))

        [result] = _messages(received, MessageType.TOOL_RESULT)
        assert result.tool_info.status is ToolStatus.FAILED
        assert result.tool_info.error == "permission denied"

    def test_result_content_blocks_flattened(self, handler):
        received = _collect(handler)
        handler.process_line(_assistant(_tool_use("toolu_1", "Grep", {"pattern": "x"})))
        handler.process_line(
            _tool_result("toolu_1", [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}])
        )

        [result] = _messages(received, MessageType.TOOL_RESULT)
        assert result.tool_info.output == "a\nb"

    def test_unknown_tool_result_dropped(self, handler):
        received = _collect(handler)
        handler.process_line(_tool_result("toolu_missing", "whatever"))
        assert received == []

    def test_result_delivered_once(self, handler):
        received = _collect(handler)
        handler.process_line(_assistant(_tool_use("toolu_1", "Bash", {"command": "ls"})))
        handler.process_line(_tool_result("toolu_1", "ok"))
        handler.process_line(_tool_result("toolu_1", "ok"))

        assert len(_messages(received, MessageType.TOOL_RESULT)) == 1

    def test_large_content_sanitized(self, handler):
        received = _collect(handler)
        handler.process_line(
            _assistant(_tool_use("toolu_1", "Write", {"file_path": "/f", "content": "x" * 5000}))
        )

        [use] = _messages(received, MessageType.TOOL_USE)
        assert use.tool_info.input["content"].endswith("... (truncated)")
        assert use.content == "Writing: /f (1015 bytes)"

    def test_streamed_tool_input(self, handler):
        received = _collect(handler)
        handler.process_line(
            _ev(
                {
                    "type": "content_block_start",
                    "content_block": {"type": "tool_use", "id": "toolu_2", "name": "Read", "input": {}},
                }
            )
        )
        for piece in ('{"file_path": ', '"/src/app.py"}'):
            handler.process_line(
                _ev({"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": piece}})
            )
        assert _messages(received) == []
        handler.process_line(_ev({"type": "content_block_stop"}))

        [use] = _messages(received, MessageType.TOOL_USE)
        assert use.tool_info.input == {"file_path": "/src/app.py"}
        assert use.content == "Reading: /src/app.py"

    def test_streamed_tool_with_invalid_json(self, handler):
        received = _collect(handler)
        handler.process_line(
            _ev(
                {
                    "type": "content_block_start",
                    "content_block": {"type": "tool_use", "id": "toolu_3", "name": "Read"},
                }
            )
        )
        handler.process_line(
            _ev({"type": "content_block_delta", "delta": {"partial_json": '{"file_path": "/a'}})
        )
        handler.process_line(_ev({"type": "content_block_stop"}))

        [use] = _messages(received, MessageType.TOOL_USE)
        assert use.tool_info.input is None
        assert use.content == "Using tool: Read"

    def test_streamed_then_snapshot_not_duplicated(self, handler):
        received = _collect(handler)
        handler.process_line(
            _ev(
                {
                    "type": "content_block_start",
                    "content_block": {"type": "tool_use", "id": "toolu_4", "name": "Bash", "input": {"command": "ls"}},
                }
            )
        )
        handler.process_line(_ev({"type": "content_block_stop"}))
        handler.process_line(_assistant(_tool_use("toolu_4", "Bash", {"command": "ls"})))

        assert len(_messages(received, MessageType.TOOL_USE)) == 1

    def test_user_event_tool_use(self, handler):
        received = _collect(handler)
        handler.process_line(
            _ev(
                {
                    "type": "user_event",
                    "user_event_type": "tool_use",
                    "user_input": {"tool_name": "WebSearch", "query": "python asyncio"},
                }
            )
        )

        [use] = _messages(received, MessageType.TOOL_USE)
        assert use.tool_info.external_id is None
        assert use.tool_info.input == {"query": "python asyncio"}
        assert use.content == "Searching web: python asyncio"

    def test_assistant_event_tool_result(self, handler):
        received = _collect(handler)
        handler.process_line(_assistant(_tool_use("toolu_1", "Bash", {"command": "ls"})))
        handler.process_line(
            _ev(
                {
                    "type": "assistant_event",
                    "assistant_event_type": "tool_result",
                    "tool_use_id": "toolu_1",
                    "text": "done",
                }
            )
        )

        [result] = _messages(received, MessageType.TOOL_RESULT)
        assert result.tool_info.status is ToolStatus.COMPLETED
        assert result.tool_info.output == "done"


class TestTextDedupe:
    def test_cumulative_snapshots(self, handler):
        received = _collect(handler)
        handler.process_line(_assistant({"type": "text", "text": "Hello"}))
        handler.process_line(_assistant({"type": "text", "text": "Hello world"}))
        handler.process_line(_assistant({"type": "text", "text": "Hello world"}))

        assert [m.content for m in _messages(received, MessageType.STDOUT)] == ["Hello", " world"]

    def test_unrelated_text_emitted_whole(self, handler):
        received = _collect(handler)
        handler.process_line(_assistant({"type": "text", "text": "First"}))
        handler.process_line(_assistant({"type": "text", "text": "Other"}))

        assert [m.content for m in _messages(received, MessageType.STDOUT)] == ["First", "Other"]

    def test_deltas_then_snapshot(self, handler):
        received = _collect(handler)
        handler.process_line(_ev({"type": "content_block_delta", "delta": {"text": "Hi"}}))
        handler.process_line(_ev({"type": "content_block_delta", "delta": {"text": " there"}}))
        handler.process_line(_assistant({"type": "text", "text": "Hi there"}))
        handler.process_line(_assistant({"type": "text", "text": "Hi there!"}))

        assert [m.content for m in _messages(received, MessageType.STDOUT)] == ["Hi", " there", "!"]

    def test_new_turn_resets_dedupe(self, handler):
        received = _collect(handler)
        handler.process_line(_assistant({"type": "text", "text": "Same"}))
        handler.process_line(_ev({"type": "result", "subtype": "success"}))
        handler.process_line(_assistant({"type": "text", "text": "Same"}))

        assert [m.content for m in _messages(received, MessageType.STDOUT)] == ["Same", "Same"]


class TestSpecialTools:
    def test_question_tool(self, handler):
        received = _collect(handler)
        tool_input = {
            "questions": [
                {
                    "question": "Which database?",
                    "header": "DB",
                    "options": [{"label": "Postgres", "description": "SQL"}, {"label": "Redis"}],
                    "multiSelect": False,
                }
            ]
        }
        handler.process_line(_assistant(_tool_use("toolu_q", "AskUserQuestion", tool_input)))

        [question] = _messages(received, MessageType.QUESTION)
        assert question.content == "Which database?"
        assert question.question_info.header == "DB"
        assert [o.label for o in question.question_info.options] == ["Postgres", "Redis"]
        assert _messages(received, MessageType.TOOL_USE) == []
        assert _signals(received, StreamSignal.WAITING_FOR_INPUT) == [WaitingStatus(True, 1)]

    def test_question_auto_answer_suppressed(self, handler):
        received = _collect(handler)
        handler.process_line(
            _assistant(_tool_use("toolu_q", "AskUserQuestion", {"question": "Continue?", "option_1": "Yes"}))
        )
        handler.process_line(_tool_result("toolu_q", "Answer unavailable", is_error=True))

        assert _messages(received, MessageType.TOOL_RESULT) == []
        [question] = _messages(received, MessageType.QUESTION)
        assert [o.label for o in question.question_info.options] == ["Yes"]

    def test_later_question_events_suppressed_after_tool(self, handler):
        received = _collect(handler)
        handler.process_line(
            _assistant(_tool_use("toolu_q", "AskUserQuestion", {"question": "Continue?"}))
        )
        handler.process_line(
            _ev({"type": "assistant_event", "assistant_event_type": "ask_question", "text": "Continue?"})
        )

        assert len(_messages(received, MessageType.QUESTION)) == 1

    def test_ask_question_event_without_tool(self, handler):
        received = _collect(handler)
        line = _ev({"type": "assistant_event", "assistant_event_type": "ask_question", "text": "Proceed?"})
        handler.process_line(line)
        handler.process_line(line)

        assert [m.content for m in _messages(received, MessageType.QUESTION)] == ["Proceed?"]

    def test_enter_plan_mode_once_per_turn(self, handler):
        received = _collect(handler)
        handler.process_line(_assistant(_tool_use("toolu_p1", "EnterPlanMode", {})))
        handler.process_line(_assistant(_tool_use("toolu_p2", "EnterPlanMode", {})))

        [msg] = _messages(received, MessageType.PLAN_MODE)
        assert msg.plan_mode_info.action == "enter"
        assert len(_signals(received, StreamSignal.ENTER_PLAN_MODE)) == 1
        assert _messages(received, MessageType.TOOL_USE) == []

        handler.process_line(_ev({"type": "result", "subtype": "success"}))
        handler.process_line(_assistant(_tool_use("toolu_p3", "EnterPlanMode", {})))
        assert len(_signals(received, StreamSignal.ENTER_PLAN_MODE)) == 2

    def test_exit_plan_mode_carries_plan(self, handler):
        received = _collect(handler)
        handler.process_line(_assistant(_tool_use("toolu_x", "ExitPlanMode", {"plan": "1. Do it"})))

        kinds = [
            (s, p.type if s is StreamSignal.MESSAGE else p)
            for s, p in received
            if s in (StreamSignal.MESSAGE, StreamSignal.EXIT_PLAN_MODE)
        ]
        assert kinds == [
            (StreamSignal.EXIT_PLAN_MODE, "1. Do it"),
            (StreamSignal.MESSAGE, MessageType.PLAN_MODE),
        ]
        [msg] = _messages(received, MessageType.PLAN_MODE)
        assert msg.plan_mode_info.action == "exit"
        assert msg.plan_mode_info.plan_content == "1. Do it"

    def test_plan_mode_user_event(self, handler):
        received = _collect(handler)
        handler.process_line(
            _ev({"type": "user_event", "user_event_type": "plan_mode", "user_input": {"action": "enter"}})
        )
        assert len(_signals(received, StreamSignal.ENTER_PLAN_MODE)) == 1


class TestResults:
    def test_success_signals_waiting_then_turn_complete(self, handler):
        received = _collect(handler)
        handler.process_line(_ev({"type": "result", "subtype": "success", "result": "All done"}))

        assert received == [
            (StreamSignal.WAITING_FOR_INPUT, WaitingStatus(True, 1)),
            (StreamSignal.TURN_COMPLETE, False),
        ]

    def test_waiting_versions_increase(self, handler):
        received = _collect(handler)
        for _ in range(3):
            handler.process_line(_ev({"type": "result", "subtype": "success"}))

        versions = [s.version for s in _signals(received, StreamSignal.WAITING_FOR_INPUT)]
        assert versions == [1, 2, 3]
        assert handler.waiting_version == 3

    def test_tool_error_line_fails_open_tool(self, handler):
        received = _collect(handler)
        handler.process_line(_assistant(_tool_use("toolu_1", "Bash", {"command": "ls"})))
        handler.process_line(
            _ev(
                {
                    "type": "result",
                    "is_error": True,
                    "errors": ["ERROR: Tool use failed 'Bash' (ID: toolu_1): sandbox denied"],
                }
            )
        )

        [use] = _messages(received, MessageType.TOOL_USE)
        [result] = _messages(received, MessageType.TOOL_RESULT)
        assert result.tool_info.id == use.tool_info.id
        assert result.tool_info.status is ToolStatus.FAILED
        assert result.tool_info.error == "sandbox denied"
        assert _messages(received, MessageType.RESULT) == []
        assert _signals(received, StreamSignal.TURN_COMPLETE) == [True]
        assert handler.pending_tool_ids == []

    def test_plain_errors_become_result_messages(self, handler):
        received = _collect(handler)
        handler.process_line(
            _ev({"type": "result", "is_error": True, "errors": ["rate limited", "try later"]})
        )

        results = _messages(received, MessageType.RESULT)
        assert [r.content for r in results] == ["rate limited", "try later"]
        assert all(r.result_info.is_error for r in results)
        assert _signals(received, StreamSignal.TURN_COMPLETE) == [True]

    def test_error_result_text(self, handler):
        received = _collect(handler)
        handler.process_line(_ev({"type": "result", "is_error": True, "result": "max turns reached"}))

        [result] = _messages(received, MessageType.RESULT)
        assert result.content == "max turns reached"

    def test_error_signals_waiting_then_turn_complete(self, handler):
        received = _collect(handler)
        handler.process_line(_ev({"type": "result", "is_error": True, "result": "boom"}))

        signals = [(kind, arg) for kind, arg in received if kind is not StreamSignal.MESSAGE]
        assert signals == [
            (StreamSignal.WAITING_FOR_INPUT, WaitingStatus(True, 1)),
            (StreamSignal.TURN_COMPLETE, True),
        ]

    def test_session_not_found(self, handler):
        received = _collect(handler)
        handler.process_line(
            _ev(
                {
                    "type": "result",
                    "is_error": True,
                    "errors": ["No conversation found with session ID: 1234-abcd"],
                }
            )
        )

        assert received == [
            (StreamSignal.SESSION_NOT_FOUND, "1234-abcd"),
            (StreamSignal.WAITING_FOR_INPUT, WaitingStatus(True, 1)),
            (StreamSignal.TURN_COMPLETE, True),
        ]
        assert _messages(received, MessageType.RESULT) == []

    def test_session_not_found_event(self):
        handler = StreamHandler(session_id="sess-1")
        received = _collect(handler)
        handler.process_line(_ev({"type": "session_not_found", "conversation_id": "conv-9"}))

        assert _signals(received, StreamSignal.SESSION_NOT_FOUND) == ["sess-1"]


class TestContextUsage:
    def test_usage_and_percent(self, handler):
        received = _collect(handler)
        handler.process_line(
            _assistant({"type": "text", "text": "x"}, usage={"input_tokens": 100, "output_tokens": 50})
        )

        [usage] = _signals(received, StreamSignal.CONTEXT_USAGE)
        assert usage.total_tokens == 150
        assert usage.max_context_tokens == 1000
        assert usage.percent_used == 15.0
        assert handler.context_usage == usage

    def test_never_decreases(self, handler):
        received = _collect(handler)
        handler.process_line(_ev({"type": "message_start", "message": {"usage": {"input_tokens": 300, "output_tokens": 1}}}))
        handler.process_line(_ev({"type": "message_delta", "usage": {"input_tokens": 10, "output_tokens": 40}}))

        totals = [u.total_tokens for u in _signals(received, StreamSignal.CONTEXT_USAGE)]
        assert totals == [301, 340]
        assert handler.context_usage.input_tokens == 300
        assert handler.context_usage.output_tokens == 40

    def test_zero_usage_ignored(self, handler):
        received = _collect(handler)
        handler.process_line(_ev({"type": "message_delta", "usage": {"input_tokens": 0, "output_tokens": 0}}))
        assert _signals(received, StreamSignal.CONTEXT_USAGE) == []
        assert handler.context_usage is None

    def test_compact_boundary_resets_window(self, handler):
        received = _collect(handler)
        handler.process_line(_ev({"type": "message_delta", "usage": {"input_tokens": 900, "output_tokens": 50}}))
        handler.process_line(_ev({"type": "system", "subtype": "compact_boundary"}))
        assert handler.context_usage is None
        handler.process_line(_ev({"type": "message_delta", "usage": {"input_tokens": 100, "output_tokens": 20}}))

        assert handler.context_usage.total_tokens == 120
        [compaction] = _messages(received, MessageType.COMPACTION)
        assert "compacted" in compaction.content

    def test_returned_usage_is_a_copy(self, handler):
        handler.process_line(_ev({"type": "message_delta", "usage": {"input_tokens": 5, "output_tokens": 5}}))
        handler.context_usage.total_tokens = 0
        assert handler.context_usage.total_tokens == 10


class TestSystemAndMiscEvents:
    def test_init_sets_session(self, handler):
        received = _collect(handler)
        handler.process_line(_ev({"type": "system", "subtype": "init", "session_id": "sess-42"}))

        assert handler.session_id == "sess-42"
        assert _signals(received, StreamSignal.SESSION_ID) == ["sess-42"]
        [msg] = _messages(received, MessageType.SYSTEM)
        assert msg.content == "Session ID: sess-42"

    def test_compacting_status(self, handler):
        received = _collect(handler)
        handler.process_line(_ev({"type": "system", "subtype": "status", "status": "compacting"}))
        handler.process_line(_ev({"type": "system", "subtype": "status", "status": "idle"}))

        [msg] = _messages(received)
        assert msg.type is MessageType.STATUS_CHANGE
        assert msg.status_change_info.status == "compacting"

    def test_permission_request(self, handler):
        received = _collect(handler)
        handler.process_line(
            _ev(
                {
                    "type": "permission_request",
                    "user_input": {
                        "tool": "Bash",
                        "operation": "rm -rf build",
                        "reason": "cleanup",
                        "allow_once": True,
                        "cwd": "/repo",
                    },
                }
            )
        )

        [request] = _signals(received, StreamSignal.PERMISSION_REQUEST)
        assert request.tool == "Bash"
        assert request.allow_once is True
        assert request.details == {"cwd": "/repo"}
        [msg] = _messages(received, MessageType.PERMISSION)
        assert msg.content == "Permission requested: Bash - rm -rf build"

    def test_error_event(self, handler):
        received = _collect(handler)
        handler.process_line(_ev({"type": "error", "error": {"message": "overloaded"}}))

        assert _signals(received, StreamSignal.ERROR) == ["overloaded"]
        [msg] = _messages(received)
        assert msg.type is MessageType.STDERR
        assert msg.content == "Error: overloaded"

    def test_ready_event(self, handler):
        received = _collect(handler)
        handler.process_line(_ev({"type": "ready"}))
        assert _signals(received, StreamSignal.READY) == [None]

    def test_thinking_ignored(self, handler):
        received = _collect(handler)
        handler.process_line(
            _ev({"type": "assistant_event", "assistant_event_type": "thinking", "text": "hmm"})
        )
        assert received == []


class TestReset:
    def test_reset_clears_state(self, handler):
        handler.process_line(_assistant(_tool_use("toolu_1", "Bash", {"command": "ls"})))
        handler.process_line(_ev({"type": "message_delta", "usage": {"input_tokens": 5, "output_tokens": 5}}))
        handler.feed(b'{"type": "stdout"')
        handler.bump_waiting(True)

        handler.reset()

        assert handler.pending_tool_ids == []
        assert len(handler.tool_calls) == 0
        assert handler.context_usage is None
        assert handler.waiting_version == 0

        received = _collect(handler)
        handler.flush()
        assert received == []

    def test_results_after_reset_are_unknown(self, handler):
        handler.process_line(_assistant(_tool_use("toolu_1", "Bash", {"command": "ls"})))
        handler.reset()
        received = _collect(handler)
        handler.process_line(_tool_result("toolu_1", "late"))
        assert received == []
