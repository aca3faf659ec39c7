"""Interpreter for the agent CLI's streaming output.

Bytes are pushed in with ``feed()``; complete lines are parsed and turned into
``AgentMessage`` values and ``StreamSignal`` notifications. The handler never
raises on bad input: malformed lines and failing handlers are logged and
skipped.

Accepted line shapes::

    event: <name>          pending event name for the next payload
    data: {...}            JSON payload, ``type`` selects the handler
    {...}                  bare JSON (what ``--output-format stream-json`` emits)

Tool calls are correlated through a ``ToolCallTable``: the subprocess's own
``tool_use`` id maps to a locally generated id until the matching result
arrives.
"""

from __future__ import annotations

import codecs
import json
import logging
import re
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from superengineer.agents.events import EventDispatcher, StreamSignal
from superengineer.agents.formatting import (
    format_tool_content,
    format_tool_result,
    sanitize_tool_input,
    truncate,
)
from superengineer.agents.message_builder import (
    QUESTION_TOOL,
    extract_session_id,
    is_ready_message,
    is_waiting_message,
)
from superengineer.agents.tool_calls import ToolCallTable
from superengineer.agents.types import (
    AgentMessage,
    ContextUsage,
    MessageType,
    PermissionRequest,
    PlanModeInfo,
    QuestionInfo,
    QuestionOption,
    ResultInfo,
    StatusChangeInfo,
    ToolStatus,
    ToolUseInfo,
    WaitingStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTEXT_TOKENS = 200_000

ENTER_PLAN_TOOL = "EnterPlanMode"
EXIT_PLAN_TOOL = "ExitPlanMode"

_SESSION_NOT_FOUND_RE = re.compile(r"No conversation found with session ID: ([\w-]+)")
_TOOL_ERROR_RE = re.compile(
    r"ERROR: (?:Tool use failed|Failed to use tool) '([^']+)'(?: \(ID: ([^)]+)\))?: (.+)"
)

_USAGE_FIELDS = (
    "input_tokens",
    "output_tokens",
    "cache_creation_input_tokens",
    "cache_read_input_tokens",
)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _result_text(content: Any) -> str:
    """Flatten tool result content (string or list of blocks) to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            str(block.get("text", ""))
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        if texts:
            return "\n".join(texts)
    return json.dumps(content)


def _extract_plan_content(tool_input: dict[str, Any] | None) -> str:
    if not tool_input:
        return ""
    for key in ("plan", "planContent"):
        if isinstance(tool_input.get(key), str):
            return tool_input[key]
    prompts = tool_input.get("allowedPrompts")
    if isinstance(prompts, list):
        return "\n".join(
            f"{p.get('tool', '')}: {p.get('prompt', '')}" for p in prompts if isinstance(p, dict)
        )
    return ""


def _parse_question(tool_input: dict[str, Any]) -> QuestionInfo | None:
    """First question of an AskUserQuestion input (``questions`` list or flat)."""
    questions = tool_input.get("questions")
    if isinstance(questions, list) and questions:
        first = _as_dict(questions[0])
        if not first.get("question"):
            return None
        options = [
            QuestionOption(label=str(opt.get("label", "")), description=opt.get("description"))
            for opt in first.get("options") or []
            if isinstance(opt, dict)
        ]
        return QuestionInfo(
            question=str(first["question"]),
            header=first.get("header"),
            options=options,
            multi_select=bool(first.get("multiSelect", False)),
        )

    if tool_input.get("question"):
        options = []
        if tool_input.get("allow_text") is True:
            options.append(QuestionOption(label="Enter custom text"))
        for key, value in tool_input.items():
            if key.startswith("option_") and isinstance(value, str):
                options.append(QuestionOption(label=value))
        return QuestionInfo(question=str(tool_input["question"]), options=options)
    return None


class StreamHandler:
    """Push-based parser for one subprocess lifecycle.

    Call ``reset()`` before reusing it for a new process.
    """

    def __init__(
        self,
        session_id: str | None = None,
        max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS,
    ) -> None:
        self.session_id = session_id
        self.max_context_tokens = max_context_tokens
        self._events: EventDispatcher[StreamSignal] = EventDispatcher()
        self._tools = ToolCallTable()
        self._routes: dict[str, Callable[[dict[str, Any]], None]] = {
            "system": self._on_system,
            "assistant": self._on_assistant,
            "user": self._on_user,
            "message_start": self._on_message_start,
            "content_block_start": self._on_content_block_start,
            "content_block_delta": self._on_content_block_delta,
            "content_block_stop": self._on_content_block_stop,
            "message_delta": self._on_message_delta,
            "message_stop": self._on_message_stop,
            "error": self._on_error,
            "assistant_event": self._on_assistant_event,
            "user_event": self._on_user_event,
            "permission_request": self._on_permission_request,
            "stdout": lambda e: self._emit_output(MessageType.STDOUT, e.get("content")),
            "stderr": lambda e: self._emit_output(MessageType.STDERR, e.get("content")),
            "result": self._on_result,
            "session_not_found": self._on_session_not_found,
            "status_change": self._on_status_change,
            "ready": lambda e: self._events.emit(StreamSignal.READY),
            "ping": lambda e: None,
        }
        self.reset()

    def on(self, signal: StreamSignal, callback: Callable[..., Any]) -> None:
        self._events.on(signal, callback)

    def off(self, signal: StreamSignal, callback: Callable[..., Any]) -> None:
        self._events.off(signal, callback)

    def reset(self) -> None:
        """Drop all accumulated state. Only call between process lifecycles."""
        self._stdout_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._stderr_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._stdout_buffer = ""
        self._stderr_buffer = ""
        self._pending_event: str | None = None

        self._tools.clear()
        self._block_tool: tuple[str, str | None, dict[str, Any] | None] | None = None
        self._partial_json: list[str] = []

        self._context_usage: ContextUsage | None = None
        self._waiting_version = 0
        self._reset_turn()

    def _reset_turn(self) -> None:
        self._tools.prune()
        self._last_emitted_text = ""
        self._emitted_tool_ids: set[str] = set()
        self._question_tool_ids: set[str] = set()
        self._emitted_question_tool = False
        self._last_question = ""
        self._emitted_enter_plan = False
        self._emitted_exit_plan = False

    # -- state --

    @property
    def context_usage(self) -> ContextUsage | None:
        return replace(self._context_usage) if self._context_usage else None

    @property
    def waiting_version(self) -> int:
        return self._waiting_version

    @property
    def pending_tool_ids(self) -> list[str]:
        """External ids of tool calls still waiting for a result."""
        return self._tools.pending_external_ids

    @property
    def tool_calls(self) -> ToolCallTable:
        return self._tools

    def bump_waiting(self, is_waiting: bool) -> WaitingStatus:
        self._waiting_version += 1
        status = WaitingStatus(is_waiting=is_waiting, version=self._waiting_version)
        self._events.emit(StreamSignal.WAITING_FOR_INPUT, status)
        return status

    # -- input --

    def feed(self, chunk: bytes | str) -> None:
        """Push a stdout chunk; complete lines are processed immediately."""
        text = self._stdout_decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._stdout_buffer += text
        *lines, self._stdout_buffer = self._stdout_buffer.split("\n")
        for line in lines:
            self.process_line(line)

    def feed_stderr(self, chunk: bytes | str) -> None:
        text = self._stderr_decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._stderr_buffer += text
        *lines, self._stderr_buffer = self._stderr_buffer.split("\n")
        for line in lines:
            self._process_stderr_line(line)

    def flush(self) -> None:
        """Process whatever partial lines are still buffered."""
        stdout_tail = self._stdout_buffer + self._stdout_decoder.decode(b"", final=True)
        stderr_tail = self._stderr_buffer + self._stderr_decoder.decode(b"", final=True)
        self._stdout_decoder.reset()
        self._stderr_decoder.reset()
        self._stdout_buffer = ""
        self._stderr_buffer = ""
        if stdout_tail.strip():
            self.process_line(stdout_tail)
        if stderr_tail.strip():
            self._process_stderr_line(stderr_tail)

    def _process_stderr_line(self, line: str) -> None:
        content = line.rstrip("\r")
        if not content.strip():
            return
        logger.debug("STDERR <<< %s", truncate(content, 300))
        session_id = extract_session_id(content)
        if session_id:
            self._events.emit(StreamSignal.SESSION_ID, session_id)
        self._emit_output(MessageType.STDERR, content)
        if is_ready_message(content):
            self._events.emit(StreamSignal.READY)
        elif is_waiting_message(content):
            self.bump_waiting(True)

    def process_line(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            return

        if stripped.startswith("event:"):
            name = stripped[len("event:") :].strip()
            if name != "ping":
                self._pending_event = name or None
            return

        if stripped.startswith("data:"):
            payload = stripped[len("data:") :].strip()
        elif stripped.startswith("{"):
            payload = stripped
        else:
            if is_ready_message(stripped):
                self._events.emit(StreamSignal.READY)
            elif is_waiting_message(stripped):
                self.bump_waiting(True)
            else:
                logger.debug("Dropping non-protocol line: %s", truncate(stripped, 100))
            return

        event_name, self._pending_event = self._pending_event, None
        try:
            event = json.loads(payload)
        except ValueError as e:
            logger.warning("Failed to parse stream payload (%s): %s", e, truncate(payload, 200))
            return
        if not isinstance(event, dict):
            logger.debug("Ignoring non-object payload: %s", truncate(payload, 100))
            return

        event_type = event.get("type") or event_name
        handler = self._routes.get(event_type) if event_type else None
        if handler is None:
            logger.debug("Unhandled stream event type: %s", event_type)
            return
        try:
            handler(event)
        except Exception:
            logger.exception("Error handling stream event %s", event_type)

    # -- emission helpers --

    def _emit(self, message: AgentMessage) -> None:
        self._events.emit(StreamSignal.MESSAGE, message)

    def _emit_output(self, message_type: MessageType, content: Any) -> None:
        if content:
            self._emit(AgentMessage(type=message_type, content=str(content)))

    def _emit_text(self, text: str) -> None:
        self._emit(AgentMessage(type=MessageType.STDOUT, content=text))

    def _emit_compaction(self, summary: str) -> None:
        self._emit(AgentMessage(type=MessageType.COMPACTION, content=summary))

    def _emit_status_change(self, status: str) -> None:
        self._emit(
            AgentMessage(
                type=MessageType.STATUS_CHANGE,
                content=f"Status: {status}",
                status_change_info=StatusChangeInfo(status=status),
            )
        )

    def _emit_result(self, result: str, is_error: bool) -> None:
        self._emit(
            AgentMessage(
                type=MessageType.RESULT,
                content=result,
                result_info=ResultInfo(result=result, is_error=is_error),
            )
        )

    def _emit_plan_mode(self, action: str, plan_content: str | None = None) -> None:
        content = (
            "Entered plan mode - reviewing approach before implementation"
            if action == "enter"
            else "Ready to execute the plan"
        )
        self._emit(
            AgentMessage(
                type=MessageType.PLAN_MODE,
                content=content,
                plan_mode_info=PlanModeInfo(action=action, plan_content=plan_content),
            )
        )

    def _new_text(self, full_text: str) -> str | None:
        """The part of cumulative *full_text* that hasn't been emitted yet."""
        if full_text.startswith(self._last_emitted_text):
            new_text = full_text[len(self._last_emitted_text) :]
            if not new_text:
                return None
            self._last_emitted_text = full_text
            return new_text
        self._last_emitted_text = full_text
        return full_text

    # -- tool lifecycle --

    def _emit_tool_use(
        self,
        name: str,
        tool_input: dict[str, Any] | None,
        external_id: str | None = None,
    ) -> None:
        if external_id:
            if external_id in self._emitted_tool_ids:
                return
            self._emitted_tool_ids.add(external_id)

        if name == QUESTION_TOOL:
            self._on_question_tool(tool_input, external_id)
            return
        if name == ENTER_PLAN_TOOL:
            self._on_enter_plan()
            return
        if name == EXIT_PLAN_TOOL:
            self._on_exit_plan(tool_input)
            return

        sanitized = sanitize_tool_input(tool_input) if tool_input is not None else None
        record = self._tools.open(name, external_id, sanitized)
        logger.info("🔧 Tool use: %s (%s)", name, external_id or record.internal_id)
        self._emit(
            AgentMessage(
                type=MessageType.TOOL_USE,
                content=format_tool_content(name, sanitized),
                tool_info=ToolUseInfo(
                    id=record.internal_id,
                    name=name,
                    external_id=external_id,
                    input=sanitized,
                    status=ToolStatus.RUNNING,
                ),
            )
        )

    def _close_tool(self, external_id: str, is_error: bool, content: str) -> None:
        if external_id in self._question_tool_ids:
            # The CLI auto-answers the question tool with is_error; not a real result
            return
        status = ToolStatus.FAILED if is_error else ToolStatus.COMPLETED
        record = self._tools.close(external_id, status)
        if record is None:
            logger.debug("Tool result for unknown tool_use_id %s dropped", external_id)
            return
        self._emit(
            AgentMessage(
                type=MessageType.TOOL_RESULT,
                content=format_tool_result(record.name, status.value, content),
                tool_info=ToolUseInfo(
                    id=record.internal_id,
                    name=record.name,
                    external_id=external_id,
                    output=content or None,
                    status=status,
                    error=content if is_error and content else None,
                ),
            )
        )

    def _fail_tool(self, name: str, external_id: str | None, reason: str) -> None:
        record = self._tools.lookup(external_id) if external_id else None
        if record is None:
            record = self._tools.find_open_by_name(name)
        if record is not None:
            self._tools.close_record(record, ToolStatus.FAILED)
        self._emit(
            AgentMessage(
                type=MessageType.TOOL_RESULT,
                content=format_tool_result(name, ToolStatus.FAILED.value, reason),
                tool_info=ToolUseInfo(
                    id=record.internal_id if record else None,
                    name=name,
                    external_id=external_id or (record.external_id if record else None),
                    status=ToolStatus.FAILED,
                    error=reason,
                ),
            )
        )

    def _on_question_tool(self, tool_input: dict[str, Any] | None, external_id: str | None) -> None:
        if not tool_input:
            return
        info = _parse_question(tool_input)
        if info is None:
            logger.warning("AskUserQuestion without a usable question: %s", tool_input)
            return
        self._emitted_question_tool = True
        if external_id:
            self._question_tool_ids.add(external_id)
        self._last_question = info.question
        self._emit(AgentMessage(type=MessageType.QUESTION, content=info.question, question_info=info))
        self.bump_waiting(True)

    def _on_enter_plan(self) -> None:
        if self._emitted_enter_plan:
            logger.warning("Ignoring duplicate EnterPlanMode in same turn")
            return
        self._emitted_enter_plan = True
        self._emit_plan_mode("enter")
        self._events.emit(StreamSignal.ENTER_PLAN_MODE)

    def _on_exit_plan(self, tool_input: dict[str, Any] | None) -> None:
        if self._emitted_exit_plan:
            logger.warning("Ignoring duplicate ExitPlanMode in same turn")
            return
        self._emitted_exit_plan = True
        plan = _extract_plan_content(tool_input)
        logger.info("ExitPlanMode detected (plan content: %s)", bool(plan))
        self._events.emit(StreamSignal.EXIT_PLAN_MODE, plan)
        self._emit_plan_mode("exit", plan or None)

    # -- context usage --

    def _update_context_usage(self, usage: Any) -> None:
        if not isinstance(usage, dict):
            return
        incoming = {}
        for key in _USAGE_FIELDS:
            try:
                incoming[key] = int(usage.get(key) or 0)
            except (TypeError, ValueError):
                incoming[key] = 0
        if not incoming["input_tokens"] and not incoming["output_tokens"]:
            return

        # Never regress within one context window
        prev = self._context_usage
        if prev is not None:
            incoming = {key: max(value, getattr(prev, key)) for key, value in incoming.items()}

        total = incoming["input_tokens"] + incoming["output_tokens"]
        max_tokens = self.max_context_tokens
        percent = round(total / max_tokens * 100, 1) if max_tokens > 0 else 0.0
        self._context_usage = ContextUsage(
            total_tokens=total,
            max_context_tokens=max_tokens,
            percent_used=percent,
            **incoming,
        )
        self._events.emit(StreamSignal.CONTEXT_USAGE, replace(self._context_usage))

    def _reset_context_window(self) -> None:
        logger.info("Context window reset (compaction)")
        self._context_usage = None

    # -- event handlers --

    def _on_system(self, event: dict[str, Any]) -> None:
        subtype = event.get("subtype")
        if subtype == "init":
            session_id = event.get("session_id")
            logger.info("Agent CLI initialized (session %s)", session_id)
            self._reset_turn()
            if session_id:
                self.session_id = session_id
                self._events.emit(StreamSignal.SESSION_ID, session_id)
                self._emit(AgentMessage(type=MessageType.SYSTEM, content=f"Session ID: {session_id}"))
        elif subtype == "status":
            status = event.get("status")
            logger.info("Agent CLI status: %s", status)
            if status == "compacting":
                self._emit_status_change("compacting")
        elif subtype == "compact":
            self._emit_compaction(str(event.get("content") or "Context was compacted"))
        elif subtype == "compact_boundary":
            self._reset_context_window()
            self._emit_compaction("Context has been compacted to reduce token usage")
        else:
            logger.debug("Unhandled system subtype: %s", subtype)

    def _on_assistant(self, event: dict[str, Any]) -> None:
        message = _as_dict(event.get("message"))
        if "usage" in message:
            self._update_context_usage(message["usage"])
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                new_text = self._new_text(str(block["text"]))
                if new_text:
                    self._emit_text(new_text)
            elif block.get("type") == "tool_use" and block.get("id"):
                tool_input = block.get("input")
                self._emit_tool_use(
                    str(block.get("name") or "unknown"),
                    tool_input if isinstance(tool_input, dict) else None,
                    str(block["id"]),
                )

    def _on_user(self, event: dict[str, Any]) -> None:
        message = _as_dict(event.get("message"))
        content = message.get("content")
        if not isinstance(content, list):
            return
        for block in content:
            if isinstance(block, dict) and block.get("type") == "tool_result":
                self._close_tool(
                    str(block.get("tool_use_id") or "unknown"),
                    bool(block.get("is_error")),
                    _result_text(block.get("content")),
                )

    def _on_message_start(self, event: dict[str, Any]) -> None:
        usage = _as_dict(event.get("message")).get("usage")
        if usage:
            self._update_context_usage(usage)

    def _on_content_block_start(self, event: dict[str, Any]) -> None:
        block = _as_dict(event.get("content_block"))
        # Older CLI builds nest the tool under "toolUse"
        tool = _as_dict(block.get("toolUse")) or (block if block.get("type") == "tool_use" else {})
        if not tool:
            self._block_tool = None
            return
        initial_input = tool.get("input")
        self._block_tool = (
            str(tool.get("name") or "unknown"),
            tool.get("id"),
            initial_input if isinstance(initial_input, dict) else None,
        )
        self._partial_json = []

    def _on_content_block_delta(self, event: dict[str, Any]) -> None:
        delta = _as_dict(event.get("delta"))
        text = delta.get("text")
        if text:
            self._last_emitted_text += text
            self._emit_text(text)
        partial = delta.get("partial_json")
        if partial:
            self._partial_json.append(partial)

    def _on_content_block_stop(self, event: dict[str, Any]) -> None:
        block_tool, self._block_tool = self._block_tool, None
        raw, self._partial_json = "".join(self._partial_json), []
        if block_tool is None:
            return

        name, external_id, tool_input = block_tool
        if raw:
            try:
                parsed = json.loads(raw)
                tool_input = parsed if isinstance(parsed, dict) else None
            except ValueError as e:
                logger.error("Failed to parse tool input JSON for %s: %s", name, e)
                tool_input = None
        self._emit_tool_use(name, tool_input, external_id)

    def _on_message_delta(self, event: dict[str, Any]) -> None:
        if event.get("usage"):
            self._update_context_usage(event["usage"])

    def _on_message_stop(self, event: dict[str, Any]) -> None:
        pass

    def _on_error(self, event: dict[str, Any]) -> None:
        message = _as_dict(event.get("error")).get("message") or "Unknown error"
        logger.error("Stream error: %s", message)
        self._events.emit(StreamSignal.ERROR, message)
        self._emit(AgentMessage(type=MessageType.STDERR, content=f"Error: {message}"))

    def _event_content(self, event: dict[str, Any]) -> str:
        if event.get("text"):
            return str(event["text"])
        if event.get("content"):
            return _result_text(event["content"])
        message_type = _as_dict(event.get("message")).get("type")
        return str(message_type) if message_type else "Unknown content"

    def _on_assistant_event(self, event: dict[str, Any]) -> None:
        kind = event.get("assistant_event_type")
        if kind == "thinking":
            return
        if kind == "tool_result":
            if event.get("tool_use_id"):
                self._close_tool(str(event["tool_use_id"]), False, self._event_content(event))
        elif kind == "compaction":
            self._emit_compaction(self._event_content(event))
        elif kind == "ask_question":
            if self._emitted_question_tool:
                return
            question = str(event.get("text") or event.get("content") or "")
            if question and question != self._last_question:
                self._last_question = question
                self._emit(AgentMessage(type=MessageType.QUESTION, content=question))
        else:
            logger.debug("Unhandled assistant event: %s", kind)

    def _on_user_event(self, event: dict[str, Any]) -> None:
        kind = event.get("user_event_type")
        user_input = _as_dict(event.get("user_input"))
        if kind == "question":
            if not user_input or self._emitted_question_tool:
                return
            info = _parse_question(user_input) or QuestionInfo(question="Unknown question")
            if info.question == self._last_question:
                return
            self._last_question = info.question
            self._emit(AgentMessage(type=MessageType.QUESTION, content=info.question, question_info=info))
        elif kind == "tool_use":
            params = dict(user_input)
            tool_name = params.pop("tool_name", None)
            if isinstance(tool_name, str):
                self._emit_tool_use(tool_name, params)
        elif kind == "plan_mode":
            action = user_input.get("action")
            if action == "enter":
                self._on_enter_plan()
            elif action == "exit":
                self._on_exit_plan(user_input)
        else:
            logger.debug("Unhandled user event: %s", kind)

    def _on_permission_request(self, event: dict[str, Any]) -> None:
        user_input = _as_dict(event.get("user_input"))
        if not user_input:
            return
        known = {"tool", "operation", "reason", "allow_once", "allow_always", "deny"}
        request = PermissionRequest(
            tool=str(user_input.get("tool") or "unknown"),
            operation=user_input.get("operation"),
            reason=user_input.get("reason"),
            details={k: v for k, v in user_input.items() if k not in known},
            allow_once=user_input.get("allow_once"),
            allow_always=user_input.get("allow_always"),
            deny=user_input.get("deny"),
        )
        self._events.emit(StreamSignal.PERMISSION_REQUEST, request)
        self._emit(
            AgentMessage(
                type=MessageType.PERMISSION,
                content=f"Permission requested: {request.tool} - {request.operation}",
                permission_info=request,
            )
        )

    def _on_result(self, event: dict[str, Any]) -> None:
        if not event.get("is_error"):
            logger.info("Turn complete (%s)", event.get("subtype") or "success")
            self._finish_turn(False)
            return

        errors = [str(e) for e in event.get("errors") or []]
        result = event.get("result")
        for text in [*errors, str(result or "")]:
            match = _SESSION_NOT_FOUND_RE.search(text)
            if match:
                logger.warning("Session not found: %s", match.group(1))
                self._events.emit(StreamSignal.SESSION_NOT_FOUND, match.group(1))
                self._finish_turn(True)
                return

        if errors:
            for error in errors:
                match = _TOOL_ERROR_RE.search(error)
                if match:
                    name, tool_id, reason = match.groups()
                    self._fail_tool(name, tool_id, reason)
                else:
                    self._emit_result(error, True)
        elif result:
            self._emit_result(str(result), True)

        self._finish_turn(True)

    def _finish_turn(self, is_error: bool) -> None:
        # Every result ends the turn: idle first, then release the queue.
        self._reset_turn()
        self.bump_waiting(True)
        self._events.emit(StreamSignal.TURN_COMPLETE, is_error)

    def _on_session_not_found(self, event: dict[str, Any]) -> None:
        session_id = self.session_id or event.get("conversation_id")
        if event.get("conversation_id") and session_id:
            self._events.emit(StreamSignal.SESSION_NOT_FOUND, session_id)

    def _on_status_change(self, event: dict[str, Any]) -> None:
        if event.get("content"):
            self._emit_status_change(str(event["content"]))
