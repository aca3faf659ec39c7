"""One-line summaries for tool calls and queued input."""

import json
from typing import Any
from urllib.parse import urlparse

MAX_TOOL_CONTENT_CHARS = 1000


def truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} bytes"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def sanitize_tool_input(tool_input: dict[str, Any]) -> dict[str, Any]:
    """Trim oversized ``content`` fields so they don't flood the UI."""
    sanitized: dict[str, Any] = {}
    for key, value in tool_input.items():
        if key == "content" and isinstance(value, str) and len(value) > MAX_TOOL_CONTENT_CHARS:
            sanitized[key] = value[:MAX_TOOL_CONTENT_CHARS] + "... (truncated)"
        else:
            sanitized[key] = value
    return sanitized


def _format_read(tool_input: dict[str, Any]) -> str:
    parts = [str(tool_input.get("file_path", "file"))]
    if "offset" in tool_input or "limit" in tool_input:
        bounds = []
        if "offset" in tool_input:
            bounds.append(f"offset: {tool_input['offset']}")
        if "limit" in tool_input:
            bounds.append(f"limit: {tool_input['limit']}")
        parts.append(f"({', '.join(bounds)})")
    return f"Reading: {' '.join(parts)}"


def _format_write(tool_input: dict[str, Any]) -> str:
    file_path = str(tool_input.get("file_path", "file"))
    content = tool_input.get("content")
    if isinstance(content, str) and content:
        return f"Writing: {file_path} ({format_bytes(len(content))})"
    return f"Writing: {file_path}"


def _format_edit(tool_input: dict[str, Any]) -> str:
    file_path = str(tool_input.get("file_path", "file"))
    old = tool_input.get("old_string")
    new = tool_input.get("new_string")
    old_len = len(old) if isinstance(old, str) else 0
    new_len = len(new) if isinstance(new, str) else 0
    if old_len or new_len:
        return f"Editing: {file_path} ({old_len} → {new_len} chars)"
    return f"Editing: {file_path}"


def _format_glob(tool_input: dict[str, Any]) -> str:
    pattern = str(tool_input.get("pattern", "files"))
    where = f" in {truncate(str(tool_input['path']), 30)}" if tool_input.get("path") else ""
    return f"Glob: {pattern}{where}"


def _format_grep(tool_input: dict[str, Any]) -> str:
    parts = [f'"{truncate(str(tool_input.get("pattern", "")), 40)}"']
    if tool_input.get("path"):
        parts.append(f"in {truncate(str(tool_input['path']), 25)}")
    if tool_input.get("glob"):
        parts.append(f"({tool_input['glob']})")
    elif tool_input.get("type"):
        parts.append(f"(*.{tool_input['type']})")
    output_mode = tool_input.get("output_mode")
    if output_mode and output_mode != "files_with_matches":
        parts.append(f"[{output_mode}]")
    if tool_input.get("head_limit"):
        parts.append(f"limit: {tool_input['head_limit']}")
    return f"Grep: {' '.join(parts)}"


def _format_web_fetch(tool_input: dict[str, Any]) -> str:
    url = str(tool_input.get("url", ""))
    parsed = urlparse(url)
    if parsed.scheme and parsed.netloc:
        return f"Fetching: {parsed.hostname}{truncate(parsed.path, 30)}"
    return f"Fetching: {truncate(url, 50)}"


def format_tool_content(name: str, tool_input: dict[str, Any] | None) -> str:
    """Human readable summary of a tool call, e.g. ``Running: ls -la``."""
    if not tool_input:
        return f"Using tool: {name}"

    if name == "Read":
        return _format_read(tool_input)
    if name == "Write":
        return _format_write(tool_input)
    if name == "Edit":
        return _format_edit(tool_input)
    if name == "Bash":
        return f"Running: {truncate(str(tool_input.get('command', '')), 80)}"
    if name == "Glob":
        return _format_glob(tool_input)
    if name == "Grep":
        return _format_grep(tool_input)
    if name == "Task":
        description = str(tool_input.get("description", "spawning agent"))
        agent_type = f" ({tool_input['subagent_type']})" if tool_input.get("subagent_type") else ""
        return f"Task: {description}{agent_type}"
    if name == "WebFetch":
        return _format_web_fetch(tool_input)
    if name == "WebSearch":
        return f"Searching web: {truncate(str(tool_input.get('query', '')), 60)}"
    return f"Using tool: {name}"


def format_tool_result(name: str, status: str, output: str | None = None) -> str:
    if output:
        suffix = "..." if len(output) > 200 else ""
        return f"Tool {name} {status}: {output[:200]}{suffix}"
    return f"Tool {name} {status}"


def message_preview(payload: Any) -> str:
    """Short preview of a queued stdin payload (text or multimodal blocks)."""
    blocks = payload
    if isinstance(payload, str):
        try:
            blocks = json.loads(payload)
        except ValueError:
            return truncate(payload, 50)
        if not isinstance(blocks, list):
            return truncate(payload, 50)

    if not isinstance(blocks, list):
        return truncate(str(payload), 50)

    image_count = sum(1 for b in blocks if isinstance(b, dict) and b.get("type") == "image")
    text_block = next(
        (b for b in blocks if isinstance(b, dict) and b.get("type") == "text"), None
    )
    text_preview = truncate(text_block.get("text", ""), 40) if text_block else ""

    if image_count and text_preview:
        return f"[{image_count} image(s)] {text_preview}"
    if image_count:
        return f"[{image_count} image(s)]"
    return text_preview or "[multimodal content]"
