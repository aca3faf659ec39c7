"""Process-wide shutdown coordination.

ProcessManagers register here while they own a subprocess. The coordinator
installs one SIGINT/SIGTERM handler for the whole process, stops every
registered manager when a signal arrives, then re-delivers the signal with the
previous disposition restored.

A signal the host application already handles is left alone; such hosts call
``shutdown_all()`` from their own handler.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from superengineer.agents.process_manager import ProcessManager

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _is_claimable(handler: Any) -> bool:
    if handler in (signal.SIG_DFL, signal.default_int_handler):
        return True
    # asyncio.run() turns SIGINT into task cancellation
    return isinstance(getattr(handler, "__self__", None), asyncio.Runner)


class ShutdownCoordinator:
    def __init__(self) -> None:
        self._managers: set[ProcessManager] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._previous: dict[signal.Signals, Any] = {}
        self._shutdown_task: asyncio.Task | None = None

    @property
    def registered_count(self) -> int:
        return len(self._managers)

    @property
    def handlers_installed(self) -> bool:
        return self._loop is not None

    @property
    def handled_signals(self) -> tuple[signal.Signals, ...]:
        return tuple(self._previous)

    def register(self, manager: ProcessManager) -> None:
        self._managers.add(manager)
        if self._loop is not None and self._loop.is_closed():
            self._loop = None
            self._previous.clear()
        if self._loop is None:
            self._install()

    def unregister(self, manager: ProcessManager) -> None:
        self._managers.discard(manager)
        if not self._managers:
            self._uninstall()

    async def shutdown_all(self) -> None:
        """Stop every registered manager concurrently."""
        managers = list(self._managers)
        if not managers:
            return
        logger.info("🛑 Stopping %d agent process(es)", len(managers))
        results = await asyncio.gather(*(m.stop() for m in managers), return_exceptions=True)
        for manager, result in zip(managers, results):
            if isinstance(result, BaseException):
                logger.error("Failed to stop process manager %r: %s", manager, result)
            self._managers.discard(manager)

    def _install(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        for sig in HANDLED_SIGNALS:
            previous = signal.getsignal(sig)
            if not _is_claimable(previous):
                logger.debug("Keeping existing %s handler", sig.name)
                continue
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                # Windows event loops and non-main threads can't take signal handlers
                logger.debug("Signal handlers not installed: %s", e)
                break
            self._previous[sig] = previous
        if self._previous:
            self._loop = loop

    def _uninstall(self) -> None:
        loop, previous = self._loop, dict(self._previous)
        self._loop = None
        self._previous.clear()
        if loop is None or loop.is_closed():
            return
        for sig, handler in previous.items():
            try:
                loop.remove_signal_handler(sig)
                if signal.getsignal(sig) != handler:
                    signal.signal(sig, handler)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                logger.debug("Could not restore %s handler: %s", sig.name, e)

    def _on_signal(self, signum: int) -> None:
        loop = self._loop
        if loop is None:
            return
        if self._shutdown_task is not None and not self._shutdown_task.done():
            return
        logger.info("Received %s, shutting down agents", signal.Signals(signum).name)
        self._shutdown_task = loop.create_task(self._shutdown_and_redeliver(signum))

    async def _shutdown_and_redeliver(self, signum: int) -> None:
        await self.shutdown_all()
        self._uninstall()
        signal.raise_signal(signum)


_coordinator: ShutdownCoordinator | None = None


def get_shutdown_coordinator() -> ShutdownCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = ShutdownCoordinator()
    return _coordinator
