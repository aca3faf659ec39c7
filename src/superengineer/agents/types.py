"""Shared data model for the agent core.

Every message that leaves the core is an ``AgentMessage``. The optional
``*_info`` payloads are only populated for the message types that carry them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


class AgentStatus(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    ERROR = "error"


class AgentMode(str, Enum):
    INTERACTIVE = "interactive"
    AUTONOMOUS = "autonomous"


class MessageType(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    SYSTEM = "system"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    USER = "user"
    QUESTION = "question"
    PERMISSION = "permission"
    PLAN_MODE = "plan_mode"
    RESULT = "result"
    STATUS_CHANGE = "status_change"
    COMPACTION = "compaction"


class ToolStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ToolUseInfo:
    """A tool call as seen by collaborators.

    ``id`` is generated locally and is the key the UI correlates on.
    ``external_id`` is the id the subprocess assigned; it is only used to match
    a later result back to the call that opened it.
    """

    name: str
    id: str | None = None
    external_id: str | None = None
    input: dict[str, Any] | None = None
    output: str | None = None
    status: ToolStatus = ToolStatus.RUNNING
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "status": self.status.value}
        if self.id is not None:
            data["id"] = self.id
        if self.external_id is not None:
            data["claudeToolUseId"] = self.external_id
        if self.input is not None:
            data["input"] = self.input
        if self.output is not None:
            data["resultContent"] = self.output
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class QuestionOption:
    label: str
    description: str | None = None


@dataclass
class QuestionInfo:
    question: str
    header: str | None = None
    options: list[QuestionOption] = field(default_factory=list)
    multi_select: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "question": self.question,
            "header": self.header,
            "options": [
                {"label": opt.label, "description": opt.description} for opt in self.options
            ],
            "multiSelect": self.multi_select,
        }


@dataclass
class PermissionRequest:
    tool: str
    operation: str | None = None
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    allow_once: bool | None = None
    allow_always: bool | None = None
    deny: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "operation": self.operation,
            "reason": self.reason,
            "details": self.details,
            "allowOnce": self.allow_once,
            "allowAlways": self.allow_always,
            "deny": self.deny,
        }


@dataclass
class PlanModeInfo:
    action: str  # "enter" | "exit"
    plan_content: str | None = None


@dataclass
class ResultInfo:
    result: str | None
    is_error: bool


@dataclass
class StatusChangeInfo:
    status: str


@dataclass
class AgentMessage:
    """One typed message emitted by the core."""

    type: MessageType
    content: str
    timestamp: str = field(default_factory=now_iso)
    tool_info: ToolUseInfo | None = None
    question_info: QuestionInfo | None = None
    permission_info: PermissionRequest | None = None
    plan_mode_info: PlanModeInfo | None = None
    result_info: ResultInfo | None = None
    status_change_info: StatusChangeInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.tool_info is not None:
            data["toolInfo"] = self.tool_info.to_dict()
        if self.question_info is not None:
            data["questionInfo"] = self.question_info.to_dict()
        if self.permission_info is not None:
            data["permissionInfo"] = self.permission_info.to_dict()
        if self.plan_mode_info is not None:
            data["planModeInfo"] = {
                "action": self.plan_mode_info.action,
                "planContent": self.plan_mode_info.plan_content,
            }
        if self.result_info is not None:
            data["resultInfo"] = {
                "result": self.result_info.result,
                "isError": self.result_info.is_error,
            }
        if self.status_change_info is not None:
            data["statusChangeInfo"] = {"status": self.status_change_info.status}
        return data


@dataclass
class ContextUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    max_context_tokens: int = 0
    percent_used: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
            "cacheCreationInputTokens": self.cache_creation_input_tokens,
            "cacheReadInputTokens": self.cache_read_input_tokens,
            "maxContextTokens": self.max_context_tokens,
            "percentUsed": self.percent_used,
        }


@dataclass(frozen=True)
class WaitingStatus:
    """Waiting-for-input flag plus a monotonically increasing version.

    Consumers must drop any update whose version is not newer than the last
    one they applied; the flag alone is not safe against reordering.
    """

    is_waiting: bool
    version: int

    def is_newer_than(self, other: WaitingStatus | None) -> bool:
        return other is None or self.version > other.version


@dataclass
class ProcessInfo:
    pid: int
    command: str
    args: list[str]
    working_directory: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class ImageAttachment:
    data: str  # base64
    media_type: str


class McpServerConfig(BaseModel):
    """One auxiliary MCP server handed to the subprocess via ``--mcp-config``."""

    name: str
    type: str = Field(default="stdio", description="'stdio' or 'http'")
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
