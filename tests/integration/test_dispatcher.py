"""ExecutionDispatcher against real local interpreters and fake backends."""

import asyncio
import json
import os
import shutil
import time

import httpx
import pytest

from coderelay import backends
from coderelay.backends import (
    ExecutionBackend,
    JavaScriptBackend,
    PythonBackend,
    RemoteBackend,
    ShellBackend,
)
from coderelay.dispatcher import ExecutionDispatcher
from coderelay.execution import ExecutionRequest, ExecutionResult, Language, SandboxConfig

requires_node = pytest.mark.skipif(shutil.which("node") is None, reason="node not installed")


@pytest.fixture
def dispatcher():
    return ExecutionDispatcher()


def run(dispatcher, code, language, config):
    return dispatcher.execute(ExecutionRequest(code=code, language=language, config=config))


# ---------------------------------------------------------------------------
# Local backends
# ---------------------------------------------------------------------------

class TestShell:
    @pytest.mark.asyncio
    async def test_echo(self, dispatcher, sandbox_config):
        result = await run(dispatcher, "echo hello", Language.SHELL, sandbox_config)

        assert result.ok
        assert result.stdout == "hello\n"
        assert result.error is None

    @pytest.mark.asyncio
    async def test_runs_in_working_dir(self, dispatcher, sandbox_config, tmp_path):
        result = await run(dispatcher, "pwd", Language.SHELL, sandbox_config)
        assert os.path.realpath(result.stdout.strip()) == os.path.realpath(tmp_path)

    @pytest.mark.asyncio
    async def test_config_env_is_passed(self, dispatcher, tmp_path):
        config = SandboxConfig(working_dir=str(tmp_path), env={"GREETING": "hi"})
        result = await run(dispatcher, "echo $GREETING", Language.SHELL, config)
        assert result.stdout == "hi\n"

    @pytest.mark.asyncio
    async def test_timeout_with_background_jobs(self, dispatcher, tmp_path):
        config = SandboxConfig(timeout_ms=200, working_dir=str(tmp_path))
        started = time.monotonic()

        result = await run(dispatcher, "sleep 5 & sleep 6; wait", Language.SHELL, config)

        assert time.monotonic() - started < 2
        assert result.exit_code == 1
        assert result.error == "timeout"

    @pytest.mark.asyncio
    async def test_timeout_kills_whole_process_group(self, dispatcher, tmp_path):
        config = SandboxConfig(timeout_ms=200, working_dir=str(tmp_path), read_only=False)

        result = await run(
            dispatcher, "(sleep 1; touch late.txt) & wait", Language.SHELL, config,
        )
        await asyncio.sleep(1.5)

        assert result.error == "timeout"
        assert not (tmp_path / "late.txt").exists()

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, dispatcher, sandbox_config):
        result = await run(dispatcher, "echo oops >&2; exit 3", Language.SHELL, sandbox_config)

        assert result.exit_code == 3
        assert result.error == "oops"

    @pytest.mark.asyncio
    async def test_denied_command_never_spawns(self, dispatcher, sandbox_config, monkeypatch):
        async def no_spawn(*args, **kwargs):
            raise AssertionError("process spawned for a rejected command")

        monkeypatch.setattr(asyncio, "create_subprocess_exec", no_spawn)

        result = await run(dispatcher, "sudo rm -rf /", Language.SHELL, sandbox_config)

        assert result.exit_code == 1
        assert result.stdout == ""
        assert "Unsafe command detected" in result.stderr
        assert result.error == "unsafe command rejected"


class TestPython:
    @pytest.mark.asyncio
    async def test_print(self, dispatcher, sandbox_config):
        result = await run(dispatcher, "print(6 * 7)", Language.PYTHON, sandbox_config)
        assert result.stdout == "42\n"
        assert result.exit_code == 0

    @pytest.mark.asyncio
    async def test_runtime_error(self, dispatcher, sandbox_config):
        result = await run(dispatcher, "raise ValueError('bad')", Language.PYTHON, sandbox_config)

        assert result.exit_code == 1
        assert "Traceback" in result.stderr
        assert result.error == "ValueError: bad"

    @pytest.mark.asyncio
    async def test_host_environment_not_inherited(self, dispatcher, sandbox_config, monkeypatch):
        monkeypatch.setenv("SECRET_TOKEN", "leak")
        code = "import os; print(os.environ.get('SECRET_TOKEN'))"

        result = await run(dispatcher, code, Language.PYTHON, sandbox_config)

        assert result.stdout == "None\n"

    @pytest.mark.asyncio
    async def test_read_only_blocks_file_writes(self, dispatcher, tmp_path):
        code = "with open('out.txt', 'w') as f:\n    f.write('x' * 10)"

        blocked = await run(dispatcher, code, Language.PYTHON, SandboxConfig(working_dir=str(tmp_path)))
        allowed = await run(
            dispatcher, code, Language.PYTHON,
            SandboxConfig(working_dir=str(tmp_path), read_only=False),
        )

        assert blocked.exit_code != 0
        assert allowed.ok
        assert (tmp_path / "out.txt").read_text() == "x" * 10

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, dispatcher, tmp_path):
        config = SandboxConfig(timeout_ms=100, working_dir=str(tmp_path))
        started = time.monotonic()

        result = await run(dispatcher, "import time; time.sleep(10)", Language.PYTHON, config)

        assert time.monotonic() - started < 2
        assert result.exit_code == 1
        assert result.error == "timeout"
        assert "timed out" in result.stderr

    @pytest.mark.asyncio
    async def test_missing_interpreter(self, sandbox_config):
        dispatcher = ExecutionDispatcher(backends=[PythonBackend(executable="/nonexistent/python3")])

        result = await run(dispatcher, "print(1)", Language.PYTHON, sandbox_config)

        assert result.exit_code == 1
        assert "could not start" in result.error


@requires_node
class TestJavaScript:
    @pytest.mark.asyncio
    async def test_console_log(self, dispatcher, sandbox_config):
        result = await run(dispatcher, "console.log(1 + 1)", Language.JAVASCRIPT, sandbox_config)
        assert result.stdout == "2\n"
        assert result.ok

    @pytest.mark.asyncio
    async def test_completion_value_printed(self, dispatcher, sandbox_config):
        result = await run(dispatcher, "const x = 5; x * 2", Language.JAVASCRIPT, sandbox_config)
        assert result.stdout == "10\n"

    @pytest.mark.asyncio
    async def test_thrown_error(self, dispatcher, sandbox_config):
        result = await run(dispatcher, "throw new Error('nope')", Language.JAVASCRIPT, sandbox_config)

        assert result.exit_code == 1
        assert result.error == "Error: nope"

    @pytest.mark.asyncio
    async def test_no_require_in_context(self, dispatcher, sandbox_config):
        result = await run(dispatcher, "require('fs')", Language.JAVASCRIPT, sandbox_config)

        assert result.exit_code == 1
        assert "require is not defined" in result.error

    @pytest.mark.asyncio
    async def test_typescript_routes_to_node(self, dispatcher, sandbox_config):
        result = await run(dispatcher, "console.log('ts')", Language.TYPESCRIPT, sandbox_config)
        assert result.stdout == "ts\n"

    @pytest.mark.asyncio
    async def test_console_methods_add_no_completion_value(self, dispatcher, sandbox_config):
        code = "console.log('a'); console.info('b'); console.warn('w'); console.error('e')"

        result = await run(dispatcher, code, Language.JAVASCRIPT, sandbox_config)

        assert result.ok
        assert result.stdout == "a\nb\n"
        assert result.stderr == "w\ne\n"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("timeout_ms", [100, 1500])
    async def test_infinite_loop_times_out(self, dispatcher, tmp_path, timeout_ms):
        config = SandboxConfig(timeout_ms=timeout_ms, working_dir=str(tmp_path))
        started = time.monotonic()

        result = await run(dispatcher, "while (true) {}", Language.JAVASCRIPT, config)

        assert time.monotonic() - started < timeout_ms / 1000 + 2
        assert result.exit_code == 1
        assert result.error == "timeout"


# ---------------------------------------------------------------------------
# Routing and normalisation
# ---------------------------------------------------------------------------

class FakeBackend(ExecutionBackend):
    languages = (Language.PYTHON,)

    def __init__(self, result=None, delay=0.0, error=None):
        self.result = result or ExecutionResult(stdout="fake\n")
        self.delay = delay
        self.error = error
        self.active = 0
        self.peak = 0
        self.seen = []

    async def run(self, code, config):
        self.seen.append(code)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return self.result.model_copy()
        finally:
            self.active -= 1


class TestRouting:
    @pytest.mark.asyncio
    async def test_auto_detects_python(self, sandbox_config):
        backend = FakeBackend()
        dispatcher = ExecutionDispatcher(backends=[backend])

        result = await run(dispatcher, "print('auto')", Language.AUTO, sandbox_config)

        assert result.stdout == "fake\n"
        assert backend.seen == ["print('auto')"]

    @pytest.mark.asyncio
    async def test_auto_with_real_interpreter(self, dispatcher, sandbox_config):
        result = await run(dispatcher, "print('auto')", Language.AUTO, sandbox_config)
        assert result.stdout == "auto\n"

    @pytest.mark.asyncio
    async def test_unsupported_language(self, sandbox_config):
        dispatcher = ExecutionDispatcher(backends=[ShellBackend()])

        result = await run(dispatcher, "print(1)", Language.PYTHON, sandbox_config)

        assert result.exit_code == 1
        assert result.error == "unsupported language: python"

    def test_default_routes(self, dispatcher):
        assert isinstance(dispatcher.routes[Language.SHELL], ShellBackend)
        assert isinstance(dispatcher.routes[Language.PYTHON], PythonBackend)
        assert isinstance(dispatcher.routes[Language.TYPESCRIPT], JavaScriptBackend)
        assert Language.AUTO not in dispatcher.routes


class TestNormalisation:
    @pytest.mark.asyncio
    async def test_backend_exception_becomes_failure(self, sandbox_config):
        dispatcher = ExecutionDispatcher(backends=[FakeBackend(error=RuntimeError("boom"))])

        result = await run(dispatcher, "x", Language.PYTHON, sandbox_config)

        assert result.exit_code == 1
        assert result.error == "RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_stuck_backend_hits_backstop(self, tmp_path):
        dispatcher = ExecutionDispatcher(backends=[FakeBackend(delay=10)], grace_ms=50)
        config = SandboxConfig(timeout_ms=50, working_dir=str(tmp_path))
        started = time.monotonic()

        result = await run(dispatcher, "x", Language.PYTHON, config)

        assert time.monotonic() - started < 1
        assert result.error == "timeout"

    @pytest.mark.asyncio
    async def test_duration_measured_by_dispatcher(self, sandbox_config):
        backend = FakeBackend(result=ExecutionResult(stdout="", duration_ms=999_999), delay=0.01)
        dispatcher = ExecutionDispatcher(backends=[backend])

        result = await run(dispatcher, "x", Language.PYTHON, sandbox_config)

        assert 0 < result.duration_ms < 999_999

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, sandbox_config):
        backend = FakeBackend(delay=0.05)
        dispatcher = ExecutionDispatcher(backends=[backend], max_concurrency=2)

        results = await asyncio.gather(*[
            run(dispatcher, f"job {i}", Language.PYTHON, sandbox_config) for i in range(5)
        ])

        assert all(r.ok for r in results)
        assert backend.peak == 2


# ---------------------------------------------------------------------------
# Remote backend
# ---------------------------------------------------------------------------

class TestRemoteBackend:
    @pytest.mark.asyncio
    async def test_posts_code_and_config(self, sandbox_config):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={
                "stdout": "remote\n", "stderr": "", "exitCode": 0, "duration": 12,
            })

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        backend = RemoteBackend("https://worker.test/", Language.PYTHON, client=client)

        result = await backend.run("print('remote')", sandbox_config)

        assert result.stdout == "remote\n"
        assert result.duration_ms == 12
        assert str(seen[0].url) == "https://worker.test/execute/python"
        body = json.loads(seen[0].content)
        assert body["code"] == "print('remote')"
        assert body["config"]["timeout_ms"] == 5_000

    @pytest.mark.asyncio
    async def test_http_error_becomes_failure(self, sandbox_config):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        backend = RemoteBackend("https://worker.test", client=client)

        result = await backend.run("x", sandbox_config)

        assert result.exit_code == 1
        assert result.error == "remote execution failed: HTTP 503"

    @pytest.mark.asyncio
    async def test_timeout_becomes_timeout_result(self, sandbox_config):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        backend = RemoteBackend("https://worker.test", client=client)

        result = await backend.run("x", sandbox_config)

        assert result.error == "timeout"

    @pytest.mark.asyncio
    async def test_routed_through_dispatcher(self, sandbox_config):
        def handler(request):
            return httpx.Response(200, json={"stdout": "", "stderr": "boom", "exitCode": 2})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = ExecutionDispatcher(
            backends=[RemoteBackend("https://worker.test", Language.SHELL, client=client)],
        )

        result = await run(dispatcher, "echo hi", Language.SHELL, sandbox_config)

        assert result.exit_code == 2
        assert result.error == "boom"


class TestJavaScriptTimeoutMapping:
    @pytest.mark.asyncio
    async def test_vm_timeout_exit_becomes_timeout_result(self, monkeypatch, sandbox_config):
        seen = []

        async def fake_run_process(argv, config, stdin=None, limit_memory=True):
            seen.append(argv)
            return ExecutionResult(stdout="partial\n", exit_code=124, duration_ms=7)

        monkeypatch.setattr(backends, "run_process", fake_run_process)

        result = await JavaScriptBackend(node="node").run("while (true) {}", sandbox_config)

        assert seen[0][-2:] == ["5000", "124"]
        assert result.error == "timeout"
        assert result.exit_code == 1
        assert result.stdout == "partial\n"
        assert result.duration_ms == 7
