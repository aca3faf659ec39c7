"""ClaudeAgent: supervises one agent CLI subprocess for one project.

The agent owns a ProcessManager and a StreamHandler, keeps a FIFO of pending
user input, and re-publishes everything as ``AgentEventType`` events.

Only one user message is ever in flight. The next queued message is written
to stdin once the stream reports a finished turn (``result``) or a ready
marker.

``is_waiting_for_input`` is a heuristic: interactive, running, nothing in
flight, and no output for ``WAITING_RECENCY_WINDOW`` seconds. The CLI never
acknowledges that it is idle, so treat the value as a hint. Consumers that need
ordering should use the versioned ``waitingForInput`` events instead.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from superengineer.agents.errors import (
    AgentAlreadyRunningError,
    AgentNotRunningError,
    SuperengineerError,
)
from superengineer.agents.events import (
    AgentEventType,
    EventDispatcher,
    ProcessEvent,
    StreamSignal,
)
from superengineer.agents.formatting import message_preview, truncate
from superengineer.agents.message_builder import (
    DEFAULT_MCP_TEMP_DIR,
    AgentArgsOptions,
    build_args,
    build_environment,
    build_shell_command,
    build_stdin_message,
    build_tool_result_message,
    build_user_message,
    format_error_message,
    format_system_message,
    generate_mcp_config,
    parse_completion_response,
)
from superengineer.agents.process_manager import (
    STOP_TIMEOUT_SECONDS,
    ProcessManager,
    ProcessSpawner,
)
from superengineer.agents.process_tracker import ProcessTracker
from superengineer.agents.shutdown import ShutdownCoordinator
from superengineer.agents.stream_handler import DEFAULT_MAX_CONTEXT_TOKENS, StreamHandler
from superengineer.agents.types import (
    AgentMessage,
    AgentMode,
    AgentStatus,
    ContextUsage,
    ImageAttachment,
    McpServerConfig,
    MessageType,
    ProcessInfo,
)

logger = logging.getLogger(__name__)

# Seconds of silence after which an idle interactive agent counts as waiting
WAITING_RECENCY_WINDOW = 0.5
# How long exit handling waits for stdout/stderr readers to hit EOF
READER_DRAIN_TIMEOUT = 2.0
READ_CHUNK_SIZE = 64 * 1024


@dataclass
class PermissionConfig:
    skip_permissions: bool = False
    permission_mode: str | None = "acceptEdits"
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    append_system_prompt: str | None = None


@dataclass
class AgentConfig:
    """Static configuration for one agent.

    ``session_id`` is passed as ``--session-id`` when ``is_new_session`` is
    true and as ``--resume`` otherwise.
    """

    project_id: str
    project_path: str
    mode: AgentMode = AgentMode.INTERACTIVE
    permissions: PermissionConfig = field(default_factory=PermissionConfig)
    session_id: str | None = None
    is_new_session: bool = False
    model: str | None = None
    max_turns: int | None = None
    mcp_servers: list[McpServerConfig] = field(default_factory=list)
    command: str = "claude"
    env: dict[str, str] = field(default_factory=dict)
    max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS
    chrome_enabled: bool = False
    stop_timeout: float = STOP_TIMEOUT_SECONDS
    mcp_temp_dir_name: str = DEFAULT_MCP_TEMP_DIR

    @classmethod
    def from_settings(
        cls, settings: Any, project_id: str, project_path: str, **overrides: Any
    ) -> AgentConfig:
        """Build a config from ``superengineer.config.Settings`` plus overrides."""
        values: dict[str, Any] = {
            "project_id": project_id,
            "project_path": project_path,
            "mode": AgentMode(settings.default_mode),
            "permissions": PermissionConfig(
                skip_permissions=settings.skip_permissions,
                permission_mode=settings.permission_mode,
            ),
            "model": settings.default_model,
            "command": settings.claude_command,
            "max_context_tokens": settings.max_context_tokens,
            "chrome_enabled": settings.chrome_enabled,
            "stop_timeout": settings.stop_timeout,
            "mcp_temp_dir_name": settings.mcp_temp_dir_name,
        }
        values.update(overrides)
        return cls(**values)


class ClaudeAgent:
    """Orchestrates one subprocess lifecycle at a time."""

    def __init__(
        self,
        config: AgentConfig,
        *,
        spawner: ProcessSpawner | None = None,
        tracker: ProcessTracker | None = None,
        coordinator: ShutdownCoordinator | None = None,
    ) -> None:
        self._config = config
        self._tracker = tracker
        self._events: EventDispatcher[AgentEventType] = EventDispatcher()
        self._subscribers: list[asyncio.Queue] = []

        self._process_manager = ProcessManager(
            spawner, stop_timeout=config.stop_timeout, coordinator=coordinator
        )
        # The lifecycle is read when EXIT fires, not when the handler task runs
        self._process_manager.on(
            ProcessEvent.EXIT, lambda code: self._on_process_exit(code, self._lifecycle)
        )
        self._process_manager.on(ProcessEvent.ERROR, self._on_process_error)

        self._handler = StreamHandler(config.session_id, config.max_context_tokens)
        self._wire_handler()

        self._status = AgentStatus.STOPPED
        self._session_id = config.session_id
        self._session_error: str | None = None
        self._last_command: str | None = None
        self._mcp_config_path: str | None = None
        self._reader_tasks: list[asyncio.Task] = []
        self._queue: deque[str | list[Any]] = deque()
        self._processing = False
        self._stopping = False
        self._output: list[str] = []
        self._lifecycle = 0
        self._last_output_at: float | None = None

    def _wire_handler(self) -> None:
        handler = self._handler
        handler.on(StreamSignal.MESSAGE, self._on_stream_message)
        handler.on(
            StreamSignal.WAITING_FOR_INPUT,
            lambda status: self._emit(AgentEventType.WAITING_FOR_INPUT, status),
        )
        handler.on(
            StreamSignal.CONTEXT_USAGE,
            lambda usage: self._emit(AgentEventType.CONTEXT_USAGE, usage),
        )
        handler.on(
            StreamSignal.SESSION_NOT_FOUND,
            lambda session_id: self._emit(AgentEventType.SESSION_NOT_FOUND, session_id),
        )
        handler.on(
            StreamSignal.PERMISSION_REQUEST,
            lambda request: self._emit(AgentEventType.PERMISSION_REQUEST, request),
        )
        handler.on(
            StreamSignal.ENTER_PLAN_MODE,
            lambda: self._emit(AgentEventType.ENTER_PLAN_MODE),
        )
        handler.on(
            StreamSignal.EXIT_PLAN_MODE,
            lambda plan: self._emit(AgentEventType.EXIT_PLAN_MODE, plan),
        )
        handler.on(StreamSignal.SESSION_ID, self._on_session_id)
        handler.on(StreamSignal.ERROR, lambda message: logger.warning("Agent stream error: %s", message))
        handler.on(StreamSignal.TURN_COMPLETE, lambda is_error: self._on_turn_finished())
        handler.on(StreamSignal.READY, self._on_turn_finished)

    # -- events --

    def on(self, event: AgentEventType, callback: Callable[..., Any]) -> None:
        self._events.on(event, callback)

    def off(self, event: AgentEventType, callback: Callable[..., Any]) -> None:
        self._events.off(event, callback)

    async def events(self) -> AsyncIterator[tuple[AgentEventType, tuple[Any, ...]]]:
        """Yield ``(event, args)`` for every event emitted while iterating."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.remove(queue)

    def _emit(self, event: AgentEventType, *args: Any) -> None:
        self._events.emit(event, *args)
        for queue in self._subscribers:
            queue.put_nowait((event, args))

    def _emit_message(self, message: AgentMessage) -> None:
        self._emit(AgentEventType.MESSAGE, message)

    def _emit_system(self, content: str) -> None:
        self._emit_message(format_system_message(content))

    def _set_status(self, status: AgentStatus) -> None:
        if status is self._status:
            return
        logger.info("Agent %s status: %s -> %s", self.project_id, self._status.value, status.value)
        self._status = status
        self._emit(AgentEventType.STATUS, status)

    # -- read-only state --

    @property
    def project_id(self) -> str:
        return self._config.project_id

    @property
    def status(self) -> AgentStatus:
        return self._status

    @property
    def mode(self) -> AgentMode:
        return self._config.mode

    @property
    def is_running(self) -> bool:
        return self._status is AgentStatus.RUNNING

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def session_error(self) -> str | None:
        return self._session_error

    @property
    def last_command(self) -> str | None:
        return self._last_command

    @property
    def process_info(self) -> ProcessInfo | None:
        return self._process_manager.process_info

    @property
    def collected_output(self) -> str:
        return "".join(self._output)

    @property
    def completion(self) -> dict[str, str] | None:
        """Milestone completion parsed from collected stdout (autonomous runs)."""
        return parse_completion_response(self.collected_output)

    @property
    def context_usage(self) -> ContextUsage | None:
        return self._handler.context_usage

    @property
    def queued_messages(self) -> list[str | list[Any]]:
        return list(self._queue)

    @property
    def queued_message_count(self) -> int:
        return len(self._queue)

    @property
    def is_waiting_for_input(self) -> bool:
        if self.mode is not AgentMode.INTERACTIVE or not self.is_running or self._processing:
            return False
        if self._last_output_at is None:
            return True
        return time.monotonic() - self._last_output_at >= WAITING_RECENCY_WINDOW

    # -- lifecycle --

    async def start(
        self,
        message: str | None = None,
        images: Sequence[ImageAttachment] | None = None,
    ) -> None:
        """Spawn the CLI and optionally deliver a first message.

        Spawn failures are reported through events (status ``error``); only
        starting an already running agent raises.
        """
        if self.is_running or self._process_manager.process is not None:
            raise AgentAlreadyRunningError(f"Agent {self.project_id} is already running")

        config = self._config
        self._lifecycle += 1
        self._reset_state()
        self._handler.reset()
        self._handler.session_id = config.session_id

        self._mcp_config_path = generate_mcp_config(
            config.mcp_servers, config.project_id, config.mcp_temp_dir_name
        )
        permissions = config.permissions
        args = build_args(
            AgentArgsOptions(
                mode=config.mode,
                model=config.model,
                session_id=config.session_id if config.is_new_session else None,
                resume_session_id=None if config.is_new_session else config.session_id,
                append_system_prompt=permissions.append_system_prompt,
                max_turns=config.max_turns,
                allowed_tools=list(permissions.allowed_tools),
                disallowed_tools=list(permissions.disallowed_tools),
                permission_mode=permissions.permission_mode,
                skip_permissions=permissions.skip_permissions,
                mcp_config_path=self._mcp_config_path,
                chrome_enabled=config.chrome_enabled,
            )
        )
        self._last_command = f"{build_shell_command(config.command, args)} (prompt via stdin)"

        permission_label = (
            "skip" if permissions.skip_permissions else (permissions.permission_mode or "default")
        )
        self._emit_system(f"Starting agent (permission mode: {permission_label})...")
        logger.info("🚀 Starting agent %s: %s", config.project_id, self._last_command)

        try:
            process = await self._process_manager.spawn(
                config.command, args, config.project_path, build_environment(config.env)
            )
        except (OSError, SuperengineerError) as e:
            logger.error("❌ Failed to start agent %s: %s", config.project_id, e)
            self._emit_message(format_error_message(e))
            self._set_status(AgentStatus.ERROR)
            self._release_resources()
            return

        if self._tracker is not None:
            self._tracker.track(config.project_id, process.pid)

        self._reader_tasks = [
            asyncio.create_task(self._read_stream(process.stdout, self._handler.feed)),
            asyncio.create_task(self._read_stream(process.stderr, self._handler.feed_stderr)),
        ]
        self._set_status(AgentStatus.RUNNING)

        if message or images:
            # Nothing can be in flight yet, so the first message skips the queue
            self._write_payload(build_user_message(message or "", images))

        if config.mode is AgentMode.AUTONOMOUS:
            self._process_manager.close_stdin()

    async def stop(self) -> None:
        """Stop the subprocess (SIGTERM, then SIGKILL) and reset to ``stopped``."""
        self._lifecycle += 1
        if self._process_manager.process is not None:
            self._stopping = True
            self._emit_system("Stopping agent...")
            logger.info("🛑 Stopping agent %s", self.project_id)
            try:
                await self._process_manager.stop()
            finally:
                self._stopping = False

        # Output still buffered in the pipes after a stop is discarded
        for task in self._reader_tasks:
            task.cancel()
        self._reader_tasks = []
        self._queue.clear()
        self._processing = False
        self._release_resources()
        self._set_status(AgentStatus.STOPPED)

    def _reset_state(self) -> None:
        self._queue.clear()
        self._processing = False
        self._stopping = False
        self._output = []
        self._session_error = None
        self._last_output_at = None
        self._session_id = self._config.session_id

    def _release_resources(self) -> None:
        if self._mcp_config_path:
            try:
                Path(self._mcp_config_path).unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to remove MCP config %s: %s", self._mcp_config_path, e)
            self._mcp_config_path = None
        if self._tracker is not None:
            self._tracker.untrack(self.project_id)

    async def _read_stream(
        self,
        stream: asyncio.StreamReader | None,
        feed: Callable[[bytes], None],
    ) -> None:
        if stream is None:
            return
        try:
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                feed(chunk)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Error reading output of agent %s", self.project_id)
            self._on_process_error(e)

    async def _drain_readers(self) -> None:
        tasks, self._reader_tasks = self._reader_tasks, []
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=READER_DRAIN_TIMEOUT)
        for task in pending:
            logger.warning("Output reader for agent %s did not finish; cancelling", self.project_id)
            task.cancel()

    async def _on_process_exit(self, code: int | None, lifecycle: int) -> None:
        if self._stopping or lifecycle != self._lifecycle:
            return
        await self._drain_readers()
        if lifecycle != self._lifecycle:
            logger.debug("Agent %s was stopped or restarted during exit handling", self.project_id)
            return
        self._handler.flush()

        logger.info("Agent %s exited with code %s", self.project_id, code)
        self._emit_system(f"Agent exited with code {code}")
        self._set_status(AgentStatus.STOPPED if code == 0 else AgentStatus.ERROR)
        self._emit(AgentEventType.EXIT, code)

        self._queue.clear()
        self._processing = False
        self._release_resources()

    def _on_process_error(self, error: BaseException) -> None:
        logger.error("Agent %s process error: %s", self.project_id, error)
        self._emit_message(AgentMessage(type=MessageType.STDERR, content=f"Process error: {error}"))
        self._set_status(AgentStatus.ERROR)

    # -- stream callbacks --

    def _on_stream_message(self, message: AgentMessage) -> None:
        self._last_output_at = time.monotonic()
        if message.type is MessageType.STDOUT:
            self._output.append(message.content)
        elif message.type is MessageType.STDERR:
            if "Session ID" in message.content and "already in use" in message.content:
                self._session_error = message.content.strip()
                logger.warning("Session ID conflict detected: %s", self._session_error)
        self._emit_message(message)

    def _on_session_id(self, session_id: str) -> None:
        if session_id != self._session_id:
            logger.info("Agent %s session: %s", self.project_id, session_id)
        self._session_id = session_id
        self._handler.session_id = session_id

    def _on_turn_finished(self) -> None:
        self._processing = False
        self._drain(announce=True)

    # -- input --

    def send_input(self, payload: str | list[Any]) -> None:
        """Queue *payload* and send it as soon as nothing else is in flight."""
        if not self.is_running:
            raise AgentNotRunningError(f"Agent {self.project_id} is not running")

        self._queue.append(payload)
        if self._processing:
            logger.info("Message queued for %s (%d pending)", self.project_id, len(self._queue))
            self._emit_system(f"⏳ Queued (#{len(self._queue)}): {message_preview(payload)}")
        self._drain(announce=False)

    def send_tool_result(self, tool_use_id: str, content: str) -> None:
        """Answer a pending tool call or question immediately, bypassing the queue."""
        if not self.is_running:
            raise AgentNotRunningError(f"Agent {self.project_id} is not running")

        if not self._process_manager.send_input(build_tool_result_message(tool_use_id, content)):
            self._emit_message(format_error_message("Cannot send tool result: stdin is not available"))
            return
        logger.info("STDIN >>> tool result for %s", tool_use_id)
        self._processing = True
        self._handler.bump_waiting(False)

    def remove_queued_message(self, index: int) -> bool:
        if index < 0 or index >= len(self._queue):
            logger.warning(
                "Cannot remove queued message %d (queue length %d)", index, len(self._queue)
            )
            return False
        removed = self._queue[index]
        del self._queue[index]
        logger.info("Removed queued message %d for %s", index, self.project_id)
        self._emit_system(f"🗑️ Removed from queue: {message_preview(removed)}")
        return True

    def _drain(self, announce: bool) -> None:
        if self._processing or not self._queue or not self.is_running:
            return
        payload = self._queue.popleft()
        if announce:
            remaining = f" ({len(self._queue)} remaining)" if self._queue else ""
            self._emit_system(f"▶️ Processing queued: {message_preview(payload)}{remaining}")
        self._write_payload(payload)

    def _write_payload(self, payload: str | list[Any]) -> None:
        if not self._process_manager.send_input(build_stdin_message(payload)):
            self._emit_message(format_error_message("Cannot send input: stdin is not available"))
            return
        preview = "[multimodal content]" if isinstance(payload, list) else truncate(payload, 200)
        logger.info("STDIN >>> user message for %s: %s", self.project_id, preview)
        was_processing, self._processing = self._processing, True
        if not was_processing:
            self._handler.bump_waiting(False)
