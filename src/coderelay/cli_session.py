"""Long-lived CLI session with slash commands and checkpoints.

Slash commands manage the session itself. Anything else is treated as a
shell command and runs through the execution dispatcher, so it gets the
same denylist check and sandbox limits as any other shell code.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field

from coderelay.dispatcher import ExecutionDispatcher
from coderelay.errors import ConfigurationError
from coderelay.execution import (
    DEFAULT_WORKING_DIR,
    ExecutionRequest,
    ExecutionResult,
    Language,
    SandboxConfig,
)

logger = logging.getLogger(__name__)

HELP_TEXT = """\
Commands:

/chat <action>        - Manage conversation checkpoints
  save <name>         - Save current chat as checkpoint
  list                - List all checkpoints
  resume <name>       - Resume from checkpoint
  delete <name>       - Delete checkpoint
/clear                - Clear terminal screen
/compress             - Summarize history to save tokens
/directory <action>   - Manage workspace directories
  add <path>          - Add directory to workspace
  list                - List current directories
/help                 - Show this help message
/save [name]          - Save current session
/resume <name>        - Resume saved session

Anything else runs as a sandboxed shell command.
"""


@dataclass
class SessionCommand:
    command: str
    args: list[str] = field(default_factory=list)


@dataclass
class CliSession:
    id: str
    working_dir: str
    checkpoints: list[str] = field(default_factory=list)
    history: list[SessionCommand] = field(default_factory=list)
    directories: list[str] = field(default_factory=list)


def open_session(api_key: str | None, working_dir: str = DEFAULT_WORKING_DIR) -> CliSession:
    """Create a session.

    Raises:
        ConfigurationError: If no API key is available.
    """
    if not api_key:
        raise ConfigurationError("API key required for a CLI session")
    return CliSession(
        id=f"session-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}",
        working_dir=working_dir,
        directories=[working_dir],
    )


def parse_command(line: str) -> SessionCommand:
    parts = line.strip().split()
    if not parts:
        return SessionCommand(command="")
    return SessionCommand(command=parts[0], args=parts[1:])


def _ok(stdout: str) -> ExecutionResult:
    return ExecutionResult(stdout=stdout)


def _fail(message: str) -> ExecutionResult:
    return ExecutionResult(stderr=message, exit_code=1)


async def run_command(
    session: CliSession,
    line: str,
    dispatcher: ExecutionDispatcher,
    config: SandboxConfig | None = None,
) -> ExecutionResult:
    parsed = parse_command(line)
    session.history.append(parsed)
    command, args = parsed.command, parsed.args

    if command == "/chat":
        return _chat(session, args)
    if command == "/directory":
        return _directory(session, args)
    if command == "/save":
        name = args[0] if args else f"checkpoint-{int(time.time() * 1000)}"
        session.checkpoints.append(name)
        return _ok(f"Session saved as '{name}'")
    if command == "/resume":
        if not args or args[0] not in session.checkpoints:
            return _fail("Checkpoint not found")
        return _ok(f"Resumed from '{args[0]}'")
    if command == "/compress":
        return _ok(f"Compressed {len(session.history)} messages")
    if command == "/clear":
        return _ok("Terminal cleared")
    if command == "/help":
        return _ok(HELP_TEXT)

    logger.debug(f"Session {session.id} running shell command")
    config = config or SandboxConfig(working_dir=session.working_dir)
    return await dispatcher.execute(ExecutionRequest(
        code=line, language=Language.SHELL, config=config,
    ))


def _chat(session: CliSession, args: list[str]) -> ExecutionResult:
    action = args[0] if args else None
    name = args[1] if len(args) > 1 else None

    if action == "save":
        if not name:
            return _fail("Checkpoint name required")
        session.checkpoints.append(name)
        return _ok(f"Checkpoint '{name}' saved")
    if action == "list":
        return _ok("Checkpoints:\n" + "\n".join(session.checkpoints))
    if action == "resume":
        if not name or name not in session.checkpoints:
            return _fail("Checkpoint not found")
        return _ok(f"Resumed checkpoint '{name}'")
    if action == "delete":
        if not name:
            return _fail("Checkpoint name required")
        session.checkpoints = [c for c in session.checkpoints if c != name]
        return _ok(f"Checkpoint '{name}' deleted")
    return _fail("Unknown chat action. Use: save, list, resume, delete")


def _directory(session: CliSession, args: list[str]) -> ExecutionResult:
    action = args[0] if args else None

    if action == "add":
        if len(args) < 2:
            return _fail("Directory path required")
        session.directories.append(args[1])
        return _ok(f"Added directory: {args[1]}")
    if action == "list":
        return _ok("Directories:\n" + "\n".join(session.directories))
    return _fail("Unknown directory action. Use: add, list")
