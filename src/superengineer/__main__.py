"""Superengineer entry point.

Drives a single agent from the terminal: ``run`` starts the CLI in a project
directory and streams its messages, ``cleanup-orphans`` reaps agent processes
left behind by an earlier crash.
"""

import argparse
import asyncio
import logging
import sys
import threading
import uuid
from pathlib import Path

from rich.console import Console
from rich.text import Text

from superengineer import __version__
from superengineer.agents import (
    AgentConfig,
    AgentEventType,
    AgentMessage,
    AgentMode,
    AgentStatus,
    ClaudeAgent,
    MessageType,
    PermissionConfig,
    ProcessTracker,
)
from superengineer.config import Settings, get_model_display_name, get_settings, is_valid_model
from superengineer.logging_setup import setup_logging

logger = logging.getLogger(__name__)

console = Console()

_MESSAGE_STYLES = {
    MessageType.STDOUT: "",
    MessageType.STDERR: "red",
    MessageType.SYSTEM: "dim",
    MessageType.TOOL_USE: "yellow",
    MessageType.TOOL_RESULT: "dim green",
    MessageType.QUESTION: "bold magenta",
    MessageType.PERMISSION: "bold yellow",
    MessageType.PLAN_MODE: "cyan",
    MessageType.RESULT: "bold",
    MessageType.STATUS_CHANGE: "dim cyan",
    MessageType.COMPACTION: "dim cyan",
}

_MESSAGE_PREFIXES = {
    MessageType.TOOL_USE: "🔧 ",
    MessageType.QUESTION: "❓ ",
    MessageType.PERMISSION: "🔐 ",
}


def print_message(message: AgentMessage) -> None:
    style = _MESSAGE_STYLES.get(message.type, "")
    if message.type is MessageType.TOOL_RESULT and message.tool_info is not None:
        if message.tool_info.status.value == "failed":
            style = "red"
    if message.type is MessageType.RESULT and message.result_info and message.result_info.is_error:
        style = "bold red"
    prefix = _MESSAGE_PREFIXES.get(message.type, "")
    console.print(Text(prefix + message.content, style=style))


def _start_stdin_reader(loop: asyncio.AbstractEventLoop, lines: asyncio.Queue) -> None:
    """Feed terminal lines into *lines*; None marks EOF.

    Runs on a daemon thread so a blocked ``input()`` never holds up exit.
    """

    def _read() -> None:
        while True:
            try:
                line = input()
            except (EOFError, KeyboardInterrupt):
                loop.call_soon_threadsafe(lines.put_nowait, None)
                return
            loop.call_soon_threadsafe(lines.put_nowait, line)

    threading.Thread(target=_read, name="superengineer-stdin", daemon=True).start()


async def _prompt_loop(agent: ClaudeAgent) -> None:
    lines: asyncio.Queue = asyncio.Queue()
    _start_stdin_reader(asyncio.get_running_loop(), lines)
    while True:
        line = await lines.get()
        if line is None:
            return
        text = line.strip()
        if not text:
            continue
        if text in ("/quit", "/exit"):
            return
        if not agent.is_running:
            return
        agent.send_input(text)


def build_config(settings: Settings, args: argparse.Namespace) -> AgentConfig:
    cwd = str(Path(args.cwd).resolve())
    session_id = args.session_id or args.resume
    overrides = {
        "mode": AgentMode(args.mode or settings.default_mode),
        "permissions": PermissionConfig(
            skip_permissions=args.skip_permissions or settings.skip_permissions,
            permission_mode=settings.permission_mode,
        ),
        "session_id": session_id,
        "is_new_session": bool(args.session_id),
        "max_turns": args.max_turns,
    }
    if args.model:
        overrides["model"] = args.model
    return AgentConfig.from_settings(settings, Path(cwd).name or "project", cwd, **overrides)


async def run_agent(settings: Settings, args: argparse.Namespace) -> int:
    """Run one agent until it exits or the user quits. Returns the exit status."""
    config = build_config(settings, args)
    if config.model and not is_valid_model(config.model):
        logger.warning("Unknown model %s, passing it through to the CLI", config.model)

    agent = ClaudeAgent(config, tracker=ProcessTracker())
    exited = asyncio.Event()
    exit_code: list[int | None] = []

    def _on_exit(code: int | None) -> None:
        exit_code.append(code)
        exited.set()

    agent.on(AgentEventType.MESSAGE, print_message)
    agent.on(AgentEventType.EXIT, _on_exit)
    agent.on(
        AgentEventType.SESSION_NOT_FOUND,
        lambda sid: console.print(f"[red]Session {sid} not found. Start without --resume.[/]"),
    )
    agent.on(
        AgentEventType.CONTEXT_USAGE,
        lambda usage: logger.debug(
            "Context: %d/%d tokens (%.1f%%)",
            usage.total_tokens,
            usage.max_context_tokens,
            usage.percent_used,
        ),
    )

    model_label = get_model_display_name(config.model) if config.model else "CLI default"
    console.print(f"[bold]🚀 Superengineer[/] {config.project_path} ({config.mode.value}, {model_label})")

    await agent.start(args.prompt or None)
    if agent.status is AgentStatus.ERROR:
        return 1

    waiters = {asyncio.create_task(exited.wait())}
    if config.mode is AgentMode.INTERACTIVE:
        waiters.add(asyncio.create_task(_prompt_loop(agent)))

    try:
        _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
    finally:
        if agent.is_running:
            await agent.stop()

    if agent.session_id:
        console.print(f"[dim]Session: {agent.session_id}[/]")
    code = exit_code[0] if exit_code else 0
    return 0 if code == 0 else 1


async def cleanup_orphans() -> int:
    result = await ProcessTracker().cleanup_orphan_processes()
    console.print(
        f"Found {result.found_count} orphan(s): killed {result.killed_count}, "
        f"failed {len(result.failed_pids)}, already gone {len(result.skipped_pids)}"
    )
    return 1 if result.failed_pids else 0


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="superengineer",
        description="🛠️ Superengineer - supervise a coding-agent CLI from your terminal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  superengineer run "fix the failing tests"          Interactive session in the current dir
  superengineer run --mode autonomous --cwd ~/app "ship it"
  superengineer run --resume <session-id>            Continue an earlier session
  superengineer cleanup-orphans                      Kill agents left by a crash
""",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Start an agent and stream its output")
    run.add_argument("prompt", nargs="?", default="", help="Initial message for the agent")
    run.add_argument("--cwd", default=".", help="Project directory (default: current dir)")
    run.add_argument("--model", help="Model id passed to the CLI")
    run.add_argument("--mode", choices=[m.value for m in AgentMode], help="Agent mode")
    session = run.add_mutually_exclusive_group()
    session.add_argument("--resume", metavar="SESSION_ID", help="Resume an existing session")
    session.add_argument(
        "--session-id",
        nargs="?",
        const="",
        metavar="SESSION_ID",
        help="Start a new session with this id (random if omitted)",
    )
    run.add_argument(
        "--skip-permissions",
        action="store_true",
        help="Run with --dangerously-skip-permissions",
    )
    run.add_argument("--max-turns", type=int, help="Maximum agent turns")

    subparsers.add_parser("cleanup-orphans", help="Kill agent processes left by a previous run")

    args = parser.parse_args()
    settings = get_settings()
    setup_logging(level="DEBUG" if args.debug else settings.log_level)

    if args.command == "run" and args.session_id == "":
        args.session_id = str(uuid.uuid4())

    try:
        if args.command == "cleanup-orphans":
            code = asyncio.run(cleanup_orphans())
        else:
            code = asyncio.run(run_agent(settings, args))
    except KeyboardInterrupt:
        logger.info("👋 Superengineer stopped.")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
