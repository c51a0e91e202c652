"""Execution backends.

Each backend implements ``async run(code, config) -> ExecutionResult`` and
never raises for failures of the code it runs: rejected commands, timeouts,
missing interpreters and non-zero exits all come back as failed results.

Local backends start the interpreter in its own process group with a
minimal environment and POSIX resource limits. These limits complement,
and do not replace, the OS-level sandbox the host is expected to provide
(network isolation in particular is left to that layer).
"""

import asyncio
import logging
import os
import shutil
import signal
import sys
import time
from abc import ABC, abstractmethod

import httpx

from coderelay.execution import ExecutionResult, Language, SandboxConfig
from coderelay.validator import find_denied

try:
    import resource
except ImportError:  # not available on Windows
    resource = None

logger = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def build_env(config: SandboxConfig) -> dict[str, str]:
    """Child environment: a minimal base plus ``config.env``."""
    env = {
        "PATH": os.environ.get("PATH", os.defpath),
        "HOME": config.working_dir,
        "LANG": os.environ.get("LANG", "C.UTF-8"),
        "PYTHONIOENCODING": "utf-8",
    }
    env.update(config.env)
    return env


def _limit_resources(config: SandboxConfig, limit_memory: bool):
    """Return a ``preexec_fn`` applying rlimits in the child, or ``None``."""
    if resource is None:
        return None

    def apply_limits():
        if limit_memory:
            limit = config.max_memory_mb * 1024 * 1024
            resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
        if config.read_only:
            resource.setrlimit(resource.RLIMIT_FSIZE, (0, 0))

    return apply_limits


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    except AttributeError:  # no process groups on this platform
        proc.kill()


async def run_process(
    argv: list[str],
    config: SandboxConfig,
    stdin: str | None = None,
    limit_memory: bool = True,
) -> ExecutionResult:
    """Run *argv* under *config* and collect a uniform result."""
    started = time.monotonic()
    os.makedirs(config.working_dir, exist_ok=True)

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=config.working_dir,
            env=build_env(config),
            start_new_session=True,
            preexec_fn=_limit_resources(config, limit_memory),
        )
    except OSError as e:
        logger.error(f"Could not start {argv[0]}: {e}")
        return ExecutionResult.failure(
            f"could not start {argv[0]}: {e}", duration_ms=_elapsed_ms(started),
        )

    payload = stdin.encode("utf-8") if stdin is not None else None
    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(payload), timeout=config.timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning(f"{argv[0]} exceeded {config.timeout_ms} ms, killing process group")
        _kill_group(proc)
        await proc.wait()
        return ExecutionResult.timeout(config.timeout_ms, duration_ms=_elapsed_ms(started))
    except asyncio.CancelledError:
        _kill_group(proc)
        raise

    return ExecutionResult(
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        exit_code=proc.returncode,
        duration_ms=_elapsed_ms(started),
    )


class ExecutionBackend(ABC):
    """A single execution target."""

    languages: tuple[Language, ...] = ()

    @abstractmethod
    async def run(self, code: str, config: SandboxConfig) -> ExecutionResult:
        ...


class ShellBackend(ExecutionBackend):
    """Runs shell commands after the denylist check.

    Args:
        shell: Interpreter path. Defaults to ``bash`` and falls back to
            ``sh`` when bash is not installed.
    """

    languages = (Language.SHELL,)

    def __init__(self, shell: str | None = None):
        self.shell = shell or shutil.which("bash") or "/bin/sh"

    async def run(self, code: str, config: SandboxConfig) -> ExecutionResult:
        denied = find_denied(code)
        if denied is not None:
            logger.warning(f"Rejected shell command containing {denied!r}")
            return ExecutionResult.failure(
                "unsafe command rejected",
                stderr=f"Unsafe command detected: contains {denied!r}",
            )
        return await run_process([self.shell, "-c", code], config)


class PythonBackend(ExecutionBackend):
    """Runs Python in a separate interpreter in isolated mode."""

    languages = (Language.PYTHON,)

    def __init__(self, executable: str | None = None):
        self.executable = executable or sys.executable

    async def run(self, code: str, config: SandboxConfig) -> ExecutionResult:
        return await run_process([self.executable, "-I", "-B", "-c", code], config)


# Exit status the harness uses when the vm timeout fires before ours does.
_NODE_TIMEOUT_EXIT = 124

# Evaluates stdin inside a fresh vm context. Only a captured console is
# exposed; require, process and timers are not.
_NODE_HARNESS = r"""
const vm = require('vm');
const util = require('util');
const timeout = Number(process.argv[1]);
const TIMEOUT_EXIT = Number(process.argv[2]);
let source = '';
process.stdin.setEncoding('utf8');
process.stdin.on('data', (chunk) => { source += chunk; });
process.stdin.on('end', () => {
  const out = [];
  const err = [];
  const fmt = (args) => args.map((a) => (typeof a === 'string' ? a : util.inspect(a))).join(' ');
  const sandbox = {
    console: {
      log: (...a) => { out.push(fmt(a)); },
      info: (...a) => { out.push(fmt(a)); },
      warn: (...a) => { err.push(fmt(a)); },
      error: (...a) => { err.push(fmt(a)); },
    },
  };
  let code = 0;
  try {
    const result = vm.runInNewContext(source, sandbox, { timeout });
    if (result !== undefined) out.push(fmt([result]));
  } catch (e) {
    if (e && e.code === 'ERR_SCRIPT_EXECUTION_TIMEOUT') {
      code = TIMEOUT_EXIT;
    } else {
      err.push(e && e.message ? `${e.name || 'Error'}: ${e.message}` : String(e));
      code = 1;
    }
  }
  if (out.length) process.stdout.write(out.join('\n') + '\n');
  if (err.length) process.stderr.write(err.join('\n') + '\n');
  process.exitCode = code;
});
"""


class JavaScriptBackend(ExecutionBackend):
    """Evaluates JavaScript in an isolated ``vm`` context under node.

    TypeScript is routed here as well and runs as long as it is valid
    JavaScript.
    """

    languages = (Language.JAVASCRIPT, Language.TYPESCRIPT)

    def __init__(self, node: str | None = None):
        self.node = node or shutil.which("node") or "node"

    async def run(self, code: str, config: SandboxConfig) -> ExecutionResult:
        argv = [
            self.node,
            f"--max-old-space-size={config.max_memory_mb}",
            "-e", _NODE_HARNESS,
            str(config.timeout_ms),
            str(_NODE_TIMEOUT_EXIT),
        ]
        # V8 reserves far more address space than it uses, so the heap flag
        # replaces RLIMIT_AS here.
        result = await run_process(argv, config, stdin=code, limit_memory=False)
        if result.exit_code == _NODE_TIMEOUT_EXIT:
            return ExecutionResult.timeout(
                config.timeout_ms, stdout=result.stdout, duration_ms=result.duration_ms,
            )
        return result


class RemoteBackend(ExecutionBackend):
    """Delegates execution to an HTTP worker.

    Posts ``{code, config}`` to ``<base_url>/execute/<language>`` and
    expects ``{stdout, stderr, exitCode, duration, error?}`` back.

    Args:
        base_url: Root URL of the execution worker.
        language: Language served by this backend.
        client: Optional shared ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        base_url: str,
        language: Language = Language.PYTHON,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.language = language
        self.languages = (language,)
        self._client = client

    async def run(self, code: str, config: SandboxConfig) -> ExecutionResult:
        started = time.monotonic()
        url = f"{self.base_url}/execute/{self.language.value}"
        body = {"code": code, "config": config.model_dump()}
        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, timeout=config.timeout_seconds)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, json=body, timeout=config.timeout_seconds)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            return ExecutionResult.timeout(config.timeout_ms, duration_ms=_elapsed_ms(started))
        except httpx.HTTPStatusError as e:
            logger.error(f"Remote execution failed: HTTP {e.response.status_code}")
            return ExecutionResult.failure(
                f"remote execution failed: HTTP {e.response.status_code}",
                duration_ms=_elapsed_ms(started),
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Remote execution failed: {e}")
            return ExecutionResult.failure(
                f"remote execution failed: {e}", duration_ms=_elapsed_ms(started),
            )

        return ExecutionResult(
            stdout=data.get("stdout") or "",
            stderr=data.get("stderr") or "",
            exit_code=int(data.get("exitCode", 1)),
            duration_ms=int(data.get("duration") or _elapsed_ms(started)),
            error=data.get("error"),
        )
