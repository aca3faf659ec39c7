"""Agent supervision core: process lifecycle, stdin framing, stream parsing."""

from superengineer.agents.agent import AgentConfig, ClaudeAgent, PermissionConfig
from superengineer.agents.errors import (
    AgentAlreadyRunningError,
    AgentNotRunningError,
    ProcessAlreadyRunningError,
    ProcessSpawnError,
    SuperengineerError,
)
from superengineer.agents.events import AgentEventType, EventDispatcher, ProcessEvent, StreamSignal
from superengineer.agents.process_manager import DefaultSpawner, ProcessManager, ProcessSpawner
from superengineer.agents.process_tracker import OrphanCleanupResult, ProcessTracker
from superengineer.agents.shutdown import ShutdownCoordinator, get_shutdown_coordinator
from superengineer.agents.stream_handler import StreamHandler
from superengineer.agents.types import (
    AgentMessage,
    AgentMode,
    AgentStatus,
    ContextUsage,
    ImageAttachment,
    McpServerConfig,
    MessageType,
    ToolStatus,
    ToolUseInfo,
    WaitingStatus,
)

__all__ = [
    "AgentAlreadyRunningError",
    "AgentConfig",
    "AgentEventType",
    "AgentMessage",
    "AgentMode",
    "AgentNotRunningError",
    "AgentStatus",
    "ClaudeAgent",
    "ContextUsage",
    "DefaultSpawner",
    "EventDispatcher",
    "ImageAttachment",
    "McpServerConfig",
    "MessageType",
    "OrphanCleanupResult",
    "PermissionConfig",
    "ProcessAlreadyRunningError",
    "ProcessEvent",
    "ProcessManager",
    "ProcessSpawnError",
    "ProcessSpawner",
    "ProcessTracker",
    "ShutdownCoordinator",
    "StreamHandler",
    "StreamSignal",
    "SuperengineerError",
    "ToolStatus",
    "ToolUseInfo",
    "WaitingStatus",
    "get_shutdown_coordinator",
]
