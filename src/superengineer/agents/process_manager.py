"""Lifecycle of a single agent CLI subprocess.

The default spawner starts the CLI in its own session so the whole descendant
tree can be signalled at once. ``stop()`` sends SIGTERM to that group, waits
``stop_timeout`` seconds, then escalates to SIGKILL. It never waits forever.

Exits that follow a ``stop()``/``kill()`` are expected and not reported; only
a process that dies on its own triggers ``ProcessEvent.EXIT``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Callable, Sequence
from typing import Any, Protocol

import psutil

from superengineer.agents.errors import ProcessAlreadyRunningError, ProcessSpawnError
from superengineer.agents.events import EventDispatcher, ProcessEvent
from superengineer.agents.shutdown import ShutdownCoordinator, get_shutdown_coordinator
from superengineer.agents.types import ProcessInfo

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

STOP_TIMEOUT_SECONDS = 5.0
# Upper bound on waiting for the OS to reap a SIGKILLed process
REAP_TIMEOUT_SECONDS = 2.0
# Large stream-json lines (tool inputs with whole files) exceed the 64KB default
STREAM_LIMIT = 10 * 1024 * 1024


class ProcessSpawner(Protocol):
    async def spawn(
        self,
        command: str,
        args: Sequence[str],
        *,
        cwd: str,
        env: dict[str, str] | None,
    ) -> asyncio.subprocess.Process: ...


class DefaultSpawner:
    """Spawns with piped stdio; a new session (process group) on Unix."""

    new_process_group = not IS_WINDOWS

    async def spawn(
        self,
        command: str,
        args: Sequence[str],
        *,
        cwd: str,
        env: dict[str, str] | None,
    ) -> asyncio.subprocess.Process:
        kwargs: dict[str, Any] = {}
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
        else:
            kwargs["start_new_session"] = True
        return await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
            **kwargs,
        )


async def _taskkill(pid: int, *, force: bool) -> None:
    args = ["taskkill", "/PID", str(pid), "/T"]
    if force:
        args.append("/F")
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await proc.wait()
    except OSError as e:
        logger.debug("taskkill failed for pid %s: %s", pid, e)


class ProcessManager:
    """Owns at most one subprocess at a time."""

    def __init__(
        self,
        spawner: ProcessSpawner | None = None,
        *,
        stop_timeout: float = STOP_TIMEOUT_SECONDS,
        coordinator: ShutdownCoordinator | None = None,
    ) -> None:
        self._spawner = spawner or DefaultSpawner()
        self._stop_timeout = stop_timeout
        self._coordinator = coordinator or get_shutdown_coordinator()
        self._events: EventDispatcher[ProcessEvent] = EventDispatcher()
        self._process: asyncio.subprocess.Process | None = None
        self._info: ProcessInfo | None = None
        self._watcher: asyncio.Task | None = None
        self._stop_task: asyncio.Future | None = None
        self._shutting_down = False

    def on(self, event: ProcessEvent, callback: Callable[..., Any]) -> None:
        self._events.on(event, callback)

    def off(self, event: ProcessEvent, callback: Callable[..., Any]) -> None:
        self._events.off(event, callback)

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._process

    @property
    def process_info(self) -> ProcessInfo | None:
        return self._info

    @property
    def is_running(self) -> bool:
        return self._process is not None and not self._shutting_down

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self._process.stdout if self._process else None

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self._process.stderr if self._process else None

    @property
    def _uses_process_group(self) -> bool:
        return bool(getattr(self._spawner, "new_process_group", False))

    async def spawn(
        self,
        command: str,
        args: Sequence[str],
        cwd: str,
        env: dict[str, str] | None = None,
    ) -> asyncio.subprocess.Process:
        if self._process is not None:
            raise ProcessAlreadyRunningError("Process is already running")

        logger.info("Spawning agent process: %s (%d args) in %s", command, len(args), cwd)
        try:
            process = await self._spawner.spawn(command, list(args), cwd=cwd, env=env)
        except OSError as e:
            logger.error("Failed to spawn process: %s", e)
            raise

        if not process.pid:
            raise ProcessSpawnError("Failed to spawn process - no PID assigned")

        self._process = process
        self._shutting_down = False
        self._info = ProcessInfo(
            pid=process.pid,
            command=command,
            args=list(args),
            working_directory=cwd,
        )
        self._watcher = asyncio.create_task(self._watch_exit(process))
        self._coordinator.register(self)
        self._events.emit(ProcessEvent.STARTED, self._info)
        return process

    def send_input(self, text: str) -> bool:
        """Write *text* to stdin. Returns False instead of raising on failure."""
        process = self._process
        stdin = process.stdin if process else None
        if stdin is None or stdin.is_closing():
            logger.warning("Cannot send input - process not running or stdin not available")
            return False
        try:
            stdin.write(text.encode("utf-8"))
        except (OSError, RuntimeError) as e:
            logger.error("Error sending input to process: %s", e)
            return False
        return True

    def close_stdin(self) -> None:
        process = self._process
        if process is not None and process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

    async def stop(self) -> None:
        """Gracefully stop the process, escalating to SIGKILL after the timeout."""
        process = self._process
        if process is None:
            return
        if self._stop_task is None:
            self._stop_task = asyncio.ensure_future(self._stop(process))
        await asyncio.shield(self._stop_task)

    async def _stop(self, process: asyncio.subprocess.Process) -> None:
        self._shutting_down = True
        self._unhook()
        pid = process.pid
        logger.info("Stopping process %s", pid)
        try:
            if process.returncode is None:
                await self._terminate(process)
                try:
                    await asyncio.wait_for(process.wait(), self._stop_timeout)
                except TimeoutError:
                    logger.warning(
                        "Process %s ignored SIGTERM for %.1fs, force killing",
                        pid,
                        self._stop_timeout,
                    )
                    await self._force_kill(process)
                    await self._reap(process)
        except OSError as e:
            logger.error("Error stopping process %s: %s", pid, e)
        finally:
            self._cleanup()

    async def kill(self) -> None:
        """Force kill immediately, skipping the graceful phase."""
        process = self._process
        if process is None:
            return
        self._shutting_down = True
        self._unhook()
        logger.warning("Force killing process %s", process.pid)
        try:
            await self._force_kill(process)
            await self._reap(process)
        except OSError as e:
            logger.error("Error force killing process %s: %s", process.pid, e)
        finally:
            self._cleanup()

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        try:
            code = await process.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Process error (pid %s): %s", process.pid, e)
            self._events.emit(ProcessEvent.ERROR, e)
            return

        if self._shutting_down or process is not self._process:
            return  # expected exit

        logger.info("Process exited: code=%s pid=%s", code, process.pid)
        self._cleanup()
        self._events.emit(ProcessEvent.EXIT, code)

    def _signal(self, process: asyncio.subprocess.Process, sig: int) -> None:
        if self._uses_process_group:
            try:
                os.killpg(process.pid, sig)
                return
            except ProcessLookupError:
                return
            except OSError as e:
                logger.debug("Process group signal failed for %s: %s", process.pid, e)
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if IS_WINDOWS:
            await _taskkill(process.pid, force=False)
        else:
            self._signal(process, signal.SIGTERM)

    async def _force_kill(self, process: asyncio.subprocess.Process) -> None:
        if IS_WINDOWS:
            await _taskkill(process.pid, force=True)
        else:
            self._signal(process, signal.SIGKILL)

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(process.wait(), REAP_TIMEOUT_SECONDS)
        except TimeoutError:
            logger.error("Process %s still alive after SIGKILL", process.pid)

    def _unhook(self) -> None:
        watcher = self._watcher
        self._watcher = None
        if watcher is not None and watcher is not asyncio.current_task() and not watcher.done():
            watcher.cancel()

    def _cleanup(self) -> None:
        self._unhook()
        self._process = None
        self._info = None
        self._shutting_down = False
        self._stop_task = None
        self._coordinator.unregister(self)

    @staticmethod
    def is_process_running(pid: int) -> bool:
        """True if *pid* is alive and not a zombie."""
        if not psutil.pid_exists(pid):
            return False
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

    @staticmethod
    async def kill_process(pid: int, sig: int = signal.SIGTERM) -> None:
        """Signal an arbitrary PID; a process that is already gone is not an error."""
        if IS_WINDOWS:
            await _taskkill(pid, force=sig != signal.SIGTERM)
            return
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            pass
