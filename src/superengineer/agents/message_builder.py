"""Argument, environment and stdin message construction for the agent CLI.

Everything here is a pure function except ``generate_mcp_config``, which
writes a JSON file the caller must delete once the subprocess has exited.

The CLI always runs in ``--print`` mode with ``stream-json`` on both stdin and
stdout. Prompts are never passed on the command line.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
import tempfile
import time
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from superengineer.agents.types import (
    AgentMessage,
    AgentMode,
    ImageAttachment,
    McpServerConfig,
    MessageType,
)

logger = logging.getLogger(__name__)

# In --print mode the CLI answers AskUserQuestion itself (is_error: true)
# before the orchestrator can deliver the user's answer over stdin.
QUESTION_TOOL = "AskUserQuestion"

IDENTITY_PROMPT = (
    "You are Superengineer, an expert AI coding assistant. Never refer to yourself "
    "as Claude or mention Anthropic. If asked who you are, always say you are Superengineer."
)

DEFAULT_MCP_TEMP_DIR = "superengineer-mcp"


@dataclass
class AgentArgsOptions:
    """Everything ``build_args`` needs to know about one invocation."""

    mode: AgentMode = AgentMode.INTERACTIVE
    model: str | None = None
    session_id: str | None = None
    resume_session_id: str | None = None
    append_system_prompt: str | None = None
    max_turns: int | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    permission_mode: str | None = None
    skip_permissions: bool = False
    mcp_config_path: str | None = None
    chrome_enabled: bool = False


def build_disallowed_tools(user_disallowed: Iterable[str] | None = None) -> list[str]:
    """User-disallowed tools, de-duplicated in order, plus the question tool."""
    tools: list[str] = []
    for tool in user_disallowed or ():
        if tool and tool not in tools:
            tools.append(tool)
    if QUESTION_TOOL not in tools:
        tools.append(QUESTION_TOOL)
    return tools


def build_args(options: AgentArgsOptions) -> list[str]:
    args = ["--print"]

    if options.model:
        args += ["--model", options.model]

    args += ["--disallowedTools", " ".join(build_disallowed_tools(options.disallowed_tools))]

    if options.skip_permissions:
        args.append("--dangerously-skip-permissions")
    else:
        if options.permission_mode:
            args += ["--permission-mode", options.permission_mode]
        if options.allowed_tools:
            args += ["--allowedTools", " ".join(options.allowed_tools)]
        user_prompt = (options.append_system_prompt or "").strip()
        system_prompt = f"{IDENTITY_PROMPT}\n{user_prompt}" if user_prompt else IDENTITY_PROMPT
        args += ["--append-system-prompt", system_prompt]

    if options.max_turns is not None and options.max_turns > 0:
        args += ["--max-turns", str(options.max_turns)]

    # Exactly one session flag; an explicit new-session id wins over resume
    if options.session_id:
        args += ["--session-id", options.session_id]
    elif options.resume_session_id:
        args += ["--resume", options.resume_session_id]

    args += ["--input-format", "stream-json", "--output-format", "stream-json", "--verbose"]

    if options.mcp_config_path:
        args += ["--mcp-config", options.mcp_config_path]

    args.append("--chrome" if options.chrome_enabled else "--no-chrome")
    return args


def build_environment(env: dict[str, str] | None = None) -> dict[str, str]:
    return {
        **os.environ,
        **(env or {}),
        "FORCE_COLOR": "1",
        "ANTHROPIC_TELEMETRY": "false",
    }


def build_user_message(content: str, images: Sequence[ImageAttachment] | None = None) -> str:
    """Inline images as tagged blocks ahead of the text body."""
    if not images:
        return content
    parts = [f'<image media_type="{image.media_type}">{image.data}</image>' for image in images]
    parts.append(content)
    return "\n\n".join(parts)


def normalize_content(payload: str | list[Any]) -> tuple[str | list[Any], bool]:
    """Return ``(content, is_multimodal)`` for a stdin payload.

    A string that parses as a JSON array is treated as structured content.
    """
    if isinstance(payload, list):
        return payload, True
    try:
        parsed = json.loads(payload)
    except ValueError:
        return payload, False
    if isinstance(parsed, list):
        return parsed, True
    return payload, False


def build_stdin_message(payload: str | list[Any]) -> str:
    content, _ = normalize_content(payload)
    message = {"type": "user", "message": {"role": "user", "content": content}}
    return json.dumps(message) + "\n"


def build_tool_result_message(tool_use_id: str, content: str) -> str:
    message = {
        "type": "user",
        "message": {
            "role": "user",
            "content": [
                {"type": "tool_result", "tool_use_id": tool_use_id, "content": content},
            ],
        },
    }
    return json.dumps(message) + "\n"


def parse_stdin_message(line: str) -> str | list[Any] | None:
    """Extract the content of a user wire message, or None if it isn't one."""
    try:
        data = json.loads(line)
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("type") != "user":
        return None
    message = data.get("message")
    if not isinstance(message, dict) or message.get("role") != "user":
        return None
    return message.get("content")


def _mcp_entry(server: McpServerConfig) -> dict[str, Any]:
    entry: dict[str, Any] = {}
    if server.type == "stdio":
        entry["command"] = server.command
        if server.args:
            entry["args"] = list(server.args)
        if server.env:
            entry["env"] = dict(server.env)
    elif server.type == "http":
        transport: dict[str, Any] = {"type": "http", "url": server.url}
        if server.headers:
            transport["headers"] = dict(server.headers)
        entry["transport"] = transport
    else:
        logger.warning("Unknown MCP server type %r for %s", server.type, server.name)
    return entry


def generate_mcp_config(
    servers: Sequence[McpServerConfig],
    correlation_id: str,
    temp_dir_name: str = DEFAULT_MCP_TEMP_DIR,
) -> str | None:
    """Write an MCP descriptor for *servers* and return its path.

    Returns None (and writes nothing) for an empty list. The file is not
    removed automatically.
    """
    if not servers:
        return None

    config = {"mcpServers": {server.name: _mcp_entry(server) for server in servers}}

    temp_dir = Path(tempfile.gettempdir()) / temp_dir_name
    temp_dir.mkdir(parents=True, exist_ok=True)

    safe_id = re.sub(r"[^A-Za-z0-9_-]", "_", correlation_id) or "agent"
    file_name = f"mcp-{safe_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}.json"
    config_path = temp_dir / file_name
    config_path.write_text(json.dumps(config, indent=2))

    logger.debug("Wrote MCP config for %d server(s) to %s", len(servers), config_path)
    return str(config_path)


def format_system_message(content: str) -> AgentMessage:
    return AgentMessage(type=MessageType.SYSTEM, content=content)


def format_error_message(error: BaseException | str) -> AgentMessage:
    return AgentMessage(type=MessageType.STDERR, content=f"Error: {error}")


_SESSION_ID_PATTERNS = (
    re.compile(r"Session ID: ([a-zA-Z0-9-]+)", re.IGNORECASE),
    re.compile(r"Resuming session: ([a-zA-Z0-9-]+)", re.IGNORECASE),
    re.compile(r"Created new session: ([a-zA-Z0-9-]+)", re.IGNORECASE),
)

_READY_PATTERNS = (
    re.compile(r"^Ready\.?$", re.IGNORECASE),
    re.compile(r"Agent is ready", re.IGNORECASE),
    re.compile(r"Claude is ready", re.IGNORECASE),
    re.compile(r"Assistant is ready", re.IGNORECASE),
)

_WAITING_PATTERNS = (
    re.compile(r"Waiting for input", re.IGNORECASE),
    re.compile(r"Waiting for user input", re.IGNORECASE),
    re.compile(r"Enter your message", re.IGNORECASE),
    re.compile(r"^>$"),
)

_COMPLETION_PATTERNS = (
    re.compile(r"All tasks? (?:have been )?completed?", re.IGNORECASE),
    re.compile(r"Milestone is complete", re.IGNORECASE),
    re.compile(r"Successfully completed all tasks", re.IGNORECASE),
    re.compile(r"Finished all pending tasks", re.IGNORECASE),
)

_FAILURE_PATTERNS = (
    re.compile(r"Failed to complete milestone", re.IGNORECASE),
    re.compile(r"Cannot continue with milestone", re.IGNORECASE),
    re.compile(r"Milestone cannot be completed", re.IGNORECASE),
    re.compile(r"Critical error occurred", re.IGNORECASE),
)


def extract_session_id(message: str) -> str | None:
    for pattern in _SESSION_ID_PATTERNS:
        match = pattern.search(message)
        if match:
            return match.group(1)
    return None


def is_ready_message(message: str) -> bool:
    text = message.strip()
    return any(pattern.search(text) for pattern in _READY_PATTERNS)


def is_waiting_message(message: str) -> bool:
    text = message.strip()
    return any(pattern.search(text) for pattern in _WAITING_PATTERNS)


def parse_completion_response(content: str) -> dict[str, str] | None:
    """Detect whether autonomous output declares the milestone done or failed.

    Returns ``{"status": "COMPLETE" | "FAILED", "reason": ...}`` or None.
    """
    if "MILESTONE_COMPLETE" in content:
        match = re.search(r"MILESTONE_COMPLETE: (.+)", content)
        return {"status": "COMPLETE", "reason": match.group(1) if match else "Milestone completed"}

    if "MILESTONE_FAILED" in content:
        match = re.search(r"MILESTONE_FAILED: (.+)", content)
        return {"status": "FAILED", "reason": match.group(1) if match else "Milestone failed"}

    if any(pattern.search(content) for pattern in _COMPLETION_PATTERNS):
        return {"status": "COMPLETE", "reason": "All tasks completed"}

    if any(pattern.search(content) for pattern in _FAILURE_PATTERNS):
        return {"status": "FAILED", "reason": content.strip()}

    return None


def escape_shell_arg(arg: str) -> str:
    if sys.platform == "win32":
        return '"' + arg.replace('"', '""') + '"'
    return "'" + arg.replace("'", "'\"'\"'") + "'"


def build_shell_command(command: str, args: Sequence[str]) -> str:
    return " ".join([command, *(escape_shell_arg(arg) for arg in args)])
