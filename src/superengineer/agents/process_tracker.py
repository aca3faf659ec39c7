"""Tracks running agent PIDs on disk so orphans can be reaped after a crash.

Every spawn is recorded in ``~/.superengineer/agent_pids.json``. If the host
process dies without stopping its agents, the next startup calls
``cleanup_orphan_processes()`` to terminate whatever is still alive.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from superengineer.agents.process_manager import ProcessManager
from superengineer.agents.types import now_iso
from superengineer.config import get_pid_file_path

logger = logging.getLogger(__name__)

ORPHAN_GRACE_SECONDS = 1.0
ORPHAN_KILL_WAIT_SECONDS = 0.5


@dataclass
class TrackedProcess:
    pid: int
    project_id: str
    started_at: str = field(default_factory=now_iso)


@dataclass
class OrphanCleanupResult:
    found_count: int = 0
    killed_count: int = 0
    killed_pids: list[int] = field(default_factory=list)
    failed_pids: list[int] = field(default_factory=list)
    skipped_pids: list[int] = field(default_factory=list)


class ProcessTracker:
    """Project id -> PID map, mirrored to a JSON file on every change."""

    def __init__(
        self,
        pid_file: Path | None = None,
        *,
        grace_period: float = ORPHAN_GRACE_SECONDS,
        kill_wait: float = ORPHAN_KILL_WAIT_SECONDS,
    ) -> None:
        self._pid_file = pid_file or get_pid_file_path()
        self._grace_period = grace_period
        self._kill_wait = kill_wait
        self._processes: dict[str, TrackedProcess] = {}

    # -- persistence --

    def _read_file(self) -> list[TrackedProcess]:
        if not self._pid_file.exists():
            return []
        try:
            data = json.loads(self._pid_file.read_text())
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable PID file %s: %s", self._pid_file, e)
            return []
        tracked = []
        for entry in data.get("processes", []) if isinstance(data, dict) else []:
            try:
                tracked.append(
                    TrackedProcess(
                        pid=int(entry["pid"]),
                        project_id=str(entry["project_id"]),
                        started_at=str(entry.get("started_at") or now_iso()),
                    )
                )
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed PID entry: %r", entry)
        return tracked

    def _write_file(self, processes: list[TrackedProcess]) -> None:
        payload = {"processes": [asdict(p) for p in processes]}
        try:
            self._pid_file.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._pid_file.with_suffix(".tmp")
            tmp.write_text(json.dumps(payload, indent=2))
            tmp.replace(self._pid_file)
        except OSError as e:
            logger.error("Failed to write PID file %s: %s", self._pid_file, e)

    def _add_to_file(self, process: TrackedProcess) -> None:
        processes = [p for p in self._read_file() if p.pid != process.pid]
        processes.append(process)
        self._write_file(processes)

    def _remove_from_file(self, pid: int) -> None:
        processes = self._read_file()
        remaining = [p for p in processes if p.pid != pid]
        if len(remaining) != len(processes):
            self._write_file(remaining)

    # -- tracking --

    def track(self, project_id: str, pid: int) -> None:
        info = TrackedProcess(pid=pid, project_id=project_id)
        self._processes[project_id] = info
        self._add_to_file(info)
        logger.info("Process tracked: project=%s pid=%s", project_id, pid)

    def untrack(self, project_id: str) -> None:
        info = self._processes.pop(project_id, None)
        if info is None:
            return
        self._remove_from_file(info.pid)
        started = datetime.fromisoformat(info.started_at)
        duration = (datetime.now(UTC) - started).total_seconds()
        logger.info(
            "Process untracked: project=%s pid=%s (ran %.1fs)", project_id, info.pid, duration
        )

    def get_process_info(self, project_id: str) -> TrackedProcess | None:
        return self._processes.get(project_id)

    def get_pid(self, project_id: str) -> int | None:
        info = self._processes.get(project_id)
        return info.pid if info else None

    def is_tracked(self, project_id: str) -> bool:
        return project_id in self._processes

    @property
    def tracked_processes(self) -> list[TrackedProcess]:
        return list(self._processes.values())

    @property
    def running_project_ids(self) -> list[str]:
        return list(self._processes)

    def clear(self) -> None:
        """Forget in-memory entries; the PID file is left alone."""
        self._processes.clear()

    # -- orphan cleanup --

    async def cleanup_orphan_processes(self) -> OrphanCleanupResult:
        """Terminate every PID left in the file by a previous run.

        SIGTERM first, SIGKILL after the grace period. Dead PIDs are skipped
        and dropped from the file.
        """
        orphans = self._read_file()
        result = OrphanCleanupResult(found_count=len(orphans))
        if not orphans:
            return result

        logger.warning(
            "Found %d orphan process(es) from previous run: %s",
            len(orphans),
            ", ".join(f"{o.project_id}:{o.pid}" for o in orphans),
        )

        for orphan in orphans:
            pid = orphan.pid
            if not ProcessManager.is_process_running(pid):
                logger.debug("Orphan process %s already dead", pid)
                self._remove_from_file(pid)
                result.skipped_pids.append(pid)
                continue

            try:
                logger.info("Killing orphan process %s (project %s)", pid, orphan.project_id)
                await ProcessManager.kill_process(pid, signal.SIGTERM)
                await asyncio.sleep(self._grace_period)

                if ProcessManager.is_process_running(pid):
                    logger.warning("Force killing stubborn orphan process %s", pid)
                    await ProcessManager.kill_process(pid, signal.SIGKILL)
                    await asyncio.sleep(self._kill_wait)
            except PermissionError as e:
                logger.error("Error killing orphan process %s: %s", pid, e)
                result.failed_pids.append(pid)
                continue

            if ProcessManager.is_process_running(pid):
                logger.error("Failed to kill orphan process %s", pid)
                result.failed_pids.append(pid)
            else:
                result.killed_count += 1
                result.killed_pids.append(pid)
                self._remove_from_file(pid)
                logger.info("Killed orphan process %s", pid)

        logger.info(
            "Orphan cleanup complete: found=%d killed=%d failed=%d skipped=%d",
            result.found_count,
            result.killed_count,
            len(result.failed_pids),
            len(result.skipped_pids),
        )
        return result
