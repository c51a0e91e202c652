import asyncio
import logging
import time

from coderelay.backends import (
    ExecutionBackend,
    JavaScriptBackend,
    PythonBackend,
    ShellBackend,
)
from coderelay.detect import detect_language
from coderelay.execution import ExecutionRequest, ExecutionResult, Language
from coderelay.instrumentation import execution_span, record_execution

logger = logging.getLogger(__name__)


class ExecutionDispatcher:
    """Routes execution requests to a backend and normalises the result.

    ``execute()`` never raises for failures of the executed code. Unknown
    languages, rejected commands, timeouts and backend crashes all come back
    as an :class:`ExecutionResult` with a non-zero exit code.

    Args:
        backends: Backends to route to. Each one serves the languages in its
            ``languages`` attribute; later entries override earlier ones.
            Defaults to local JavaScript, Python and shell backends.
        max_concurrency: Upper bound on executions running at once.
        grace_ms: Extra time granted to a backend past the request timeout
            before the dispatcher gives up on it.
    """

    def __init__(
        self,
        backends: list[ExecutionBackend] | None = None,
        max_concurrency: int = 4,
        grace_ms: int = 1000,
    ):
        if backends is None:
            backends = [JavaScriptBackend(), PythonBackend(), ShellBackend()]
        self.routes: dict[Language, ExecutionBackend] = {}
        for backend in backends:
            for language in backend.languages:
                self.routes[language] = backend
        self.grace_ms = grace_ms
        self._slots = asyncio.Semaphore(max_concurrency)

    def resolve(self, request: ExecutionRequest) -> Language:
        if request.language is Language.AUTO:
            return detect_language(request.code)
        return request.language

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        language = self.resolve(request)
        started = time.monotonic()
        async with execution_span(language.value) as span:
            async with self._slots:
                result = await self._execute(language, request)
            result.duration_ms = int((time.monotonic() - started) * 1000)
            record_execution(span, result)
        logger.info(
            f"Executed {language.value} code: exit_code={result.exit_code} "
            f"duration_ms={result.duration_ms}"
        )
        return result

    async def _execute(self, language: Language, request: ExecutionRequest) -> ExecutionResult:
        backend = self.routes.get(language)
        if backend is None:
            return ExecutionResult.failure(f"unsupported language: {language.value}")

        config = request.config
        deadline = (config.timeout_ms + self.grace_ms) / 1000
        try:
            return await asyncio.wait_for(backend.run(request.code, config), timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning(f"{type(backend).__name__} overran its {config.timeout_ms} ms budget")
            return ExecutionResult.timeout(config.timeout_ms)
        except Exception as e:
            logger.error(f"{type(backend).__name__} raised: {e}")
            return ExecutionResult.failure(f"{type(e).__name__}: {e}")
