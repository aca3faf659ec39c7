"""Tool-call bookkeeping.

Records live in a dense list and are addressed by their position; the
internal-id and external-id maps both point into that list. An external id is
only mapped while its call is in flight. Finished records are pruned at turn
boundaries, so the table holds at most one turn of history plus whatever is
still running.
"""

import itertools
import time
from dataclasses import dataclass
from typing import Any

from superengineer.agents.types import ToolStatus


@dataclass
class ToolCallRecord:
    internal_id: str
    name: str
    external_id: str | None = None
    input: dict[str, Any] | None = None
    status: ToolStatus = ToolStatus.RUNNING


class ToolCallTable:
    def __init__(self) -> None:
        self._records: list[ToolCallRecord] = []
        self._by_internal: dict[str, int] = {}
        self._by_external: dict[str, int] = {}
        self._counter = itertools.count(1)

    def _next_id(self) -> str:
        return f"tool-{int(time.time() * 1000)}-{next(self._counter)}"

    def open(
        self,
        name: str,
        external_id: str | None = None,
        tool_input: dict[str, Any] | None = None,
    ) -> ToolCallRecord:
        record = ToolCallRecord(
            internal_id=self._next_id(),
            name=name,
            external_id=external_id,
            input=tool_input,
        )
        index = len(self._records)
        self._records.append(record)
        self._by_internal[record.internal_id] = index
        if external_id:
            self._by_external[external_id] = index
        return record

    def get(self, internal_id: str) -> ToolCallRecord | None:
        index = self._by_internal.get(internal_id)
        return self._records[index] if index is not None else None

    def lookup(self, external_id: str) -> ToolCallRecord | None:
        index = self._by_external.get(external_id)
        return self._records[index] if index is not None else None

    def close(self, external_id: str, status: ToolStatus) -> ToolCallRecord | None:
        """Finish the call opened under *external_id* and forget the mapping."""
        index = self._by_external.pop(external_id, None)
        if index is None:
            return None
        record = self._records[index]
        self._finish(record, status)
        return record

    def close_record(self, record: ToolCallRecord, status: ToolStatus) -> None:
        self._finish(record, status)
        if record.external_id:
            self._by_external.pop(record.external_id, None)

    @staticmethod
    def _finish(record: ToolCallRecord, status: ToolStatus) -> None:
        record.status = status
        record.input = None

    def find_open_by_name(self, name: str) -> ToolCallRecord | None:
        """Most recent still-running call with this tool name."""
        for record in reversed(self._records):
            if record.name == name and record.status is ToolStatus.RUNNING:
                return record
        return None

    def is_pending(self, external_id: str) -> bool:
        return external_id in self._by_external

    @property
    def pending_external_ids(self) -> list[str]:
        return list(self._by_external)

    def prune(self) -> int:
        """Drop finished records and re-pack the list. Returns how many went."""
        running = [r for r in self._records if r.status is ToolStatus.RUNNING]
        dropped = len(self._records) - len(running)
        if not dropped:
            return 0
        self._records = running
        self._by_internal = {r.internal_id: i for i, r in enumerate(running)}
        self._by_external = {
            r.external_id: i
            for i, r in enumerate(running)
            if r.external_id and r.external_id in self._by_external
        }
        return dropped

    def __len__(self) -> int:
        return len(self._records)

    def clear(self) -> None:
        self._records.clear()
        self._by_internal.clear()
        self._by_external.clear()
