import json
import logging
import re

from pydantic import BaseModel, Field, ValidationError

from coderelay.cli_session import CliSession, open_session, run_command
from coderelay.client import StreamCallbacks
from coderelay.dispatcher import ExecutionDispatcher
from coderelay.errors import ConfigurationError
from coderelay.execution import (
    DEFAULT_WORKING_DIR,
    ExecutionRequest,
    ExecutionResult,
    Language,
    SandboxConfig,
)
from coderelay.instrumentation import operation_span
from coderelay.provider import ModelProvider, ProviderPolicy, WebSearchResult

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are an expert programmer. Generate clean, efficient code."

_FENCE = re.compile(r"```[\w+\-.]*[ \t]*\n(.*?)```", re.DOTALL)

# Shell snippets run with a tighter budget than the default sandbox.
SHELL_CONFIG = SandboxConfig(timeout_ms=10_000, allow_network=False, read_only=True)


class CodeTask(BaseModel):
    """Input of :meth:`CodeAgent.generate_code`.

    Args:
        description: What the code should do.
        code: Existing code to work from, if any.
        language: Language used when the result is executed.
        provider: Provider name; ``None`` uses the agent default.
        sandbox: Execute the generated code and attach the result.
        web_search: Answer with a search-augmented chat and attach sources.
        stream: Consume the provider's chunked stream instead of a single
            response.
        config: Sandbox limits for the execution step.
    """

    description: str
    code: str | None = None
    language: Language = Language.AUTO
    provider: str | None = None
    sandbox: bool = False
    web_search: bool = False
    stream: bool = False
    config: SandboxConfig | None = None


class CodeReview(BaseModel):
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    score: int = Field(default=0, ge=0, le=100)


class CodeResult(BaseModel):
    code: str
    explanation: str | None = None
    execution_result: ExecutionResult | None = None
    sources: list[WebSearchResult] | None = None
    review: CodeReview | None = None


def extract_code(text: str) -> str:
    """Return the first fenced block of *text*, or *text* itself."""
    match = _FENCE.search(text)
    if match is None:
        return text.strip()
    return match.group(1).rstrip("\n")


class CodeAgent:
    """Generate, edit and optionally execute code.

    Each operation makes one upstream generation call and, when asked, one
    sandboxed execution. Stream parsing and execution safety are delegated
    to :class:`~coderelay.client.StreamingClient` and
    :class:`~coderelay.dispatcher.ExecutionDispatcher`.

    Args:
        policy: Ordered provider selection.
        dispatcher: Executes generated code. Defaults to local backends.
        provider: Default provider name; ``None`` means the first one in
            the policy order.
    """

    def __init__(
        self,
        policy: ProviderPolicy,
        dispatcher: ExecutionDispatcher | None = None,
        provider: str | None = None,
    ):
        self.policy = policy
        self.dispatcher = dispatcher or ExecutionDispatcher()
        self.default_provider, _ = policy.resolve(provider)
        self.session: CliSession | None = None

    def set_provider(self, name: str) -> None:
        self.default_provider, _ = self.policy.resolve(name)

    def _provider(self, name: str | None) -> tuple[str, ModelProvider]:
        return self.policy.resolve(name or self.default_provider)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_code(
        self, task: CodeTask, callbacks: StreamCallbacks | None = None,
    ) -> CodeResult:
        name, provider = self._provider(task.provider)
        explanation = None
        sources = None

        async with operation_span("generate_code", name):
            if task.web_search:
                answer = await provider.search_chat(task.description, count=3)
                generated = answer.answer
                sources = answer.sources
            elif task.code and provider.supports_apply:
                generated = await provider.apply_edit(task.code, task.description)
            else:
                content = task.description
                if task.code:
                    content = f"Task: {task.description}\n\nExisting code:\n{task.code}"
                messages = [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": content},
                ]
                if task.stream or callbacks is not None:
                    result = await provider.stream(messages, callbacks=callbacks)
                    generated = result.content
                    explanation = result.reasoning or None
                else:
                    generated = await provider.complete(messages)

        execution_result = None
        if task.sandbox and generated:
            execution_result = await self.execute_code(
                extract_code(generated), task.language, task.config,
            )

        return CodeResult(
            code=generated,
            explanation=explanation,
            execution_result=execution_result,
            sources=sources,
        )

    async def execute_code(
        self,
        code: str,
        language: Language = Language.AUTO,
        config: SandboxConfig | None = None,
    ) -> ExecutionResult:
        request = ExecutionRequest(code=code, language=language)
        resolved = self.dispatcher.resolve(request)
        if config is None:
            config = SHELL_CONFIG if resolved is Language.SHELL else SandboxConfig()
        return await self.dispatcher.execute(ExecutionRequest(
            code=code, language=resolved, config=config,
        ))

    # ------------------------------------------------------------------
    # Operations built on generate_code
    # ------------------------------------------------------------------

    async def edit_code(
        self, original_code: str, instruction: str, sandbox: bool = False,
    ) -> CodeResult:
        name, provider = self._provider(None)
        async with operation_span("edit_code", name):
            edited = await provider.apply_edit(original_code, instruction)
        execution_result = None
        if sandbox and edited:
            execution_result = await self.execute_code(extract_code(edited))
        return CodeResult(
            code=edited,
            explanation=f"Applied: {instruction}",
            execution_result=execution_result,
        )

    async def explain_code(self, code: str, provider: str | None = None) -> str:
        result = await self.generate_code(CodeTask(
            description=f"Explain this code in detail:\n\n{code}",
            provider=provider,
        ))
        return result.code

    async def debug_code(self, code: str, error: str | None = None) -> CodeResult:
        if error:
            description = f"Debug this code. Error: {error}"
        else:
            description = "Find and fix bugs in this code"
        return await self.generate_code(CodeTask(description=description, code=code))

    async def refactor_code(self, code: str, improvements: list[str]) -> CodeResult:
        description = "Refactor this code with these improvements:\n" + "\n".join(improvements)
        return await self.generate_code(CodeTask(description=description, code=code))

    async def convert_code(self, code: str, from_lang: str, to_lang: str) -> CodeResult:
        # Plain generation: an apply-style edit would keep the source language.
        return await self.generate_code(CodeTask(
            description=f"Convert this {from_lang} code to {to_lang}:\n\n{code}",
        ))

    async def generate_tests(self, code: str, framework: str | None = None) -> CodeResult:
        if framework:
            description = f"Generate unit tests for this code using {framework}:\n\n{code}"
        else:
            description = f"Generate comprehensive unit tests for this code:\n\n{code}"
        return await self.generate_code(CodeTask(description=description))

    async def review_code(self, code: str) -> CodeResult:
        description = (
            "Review this code. Reply with a JSON object with the keys "
            '"issues" (list of strings), "suggestions" (list of strings) '
            'and "score" (integer quality score from 0 to 100).'
            f"\n\nCode:\n{code}"
        )
        result = await self.generate_code(CodeTask(description=description))
        return CodeResult(
            code=code,
            explanation=result.code,
            review=parse_review(result.code),
        )

    # ------------------------------------------------------------------
    # CLI session
    # ------------------------------------------------------------------

    def open_session(self, working_dir: str = DEFAULT_WORKING_DIR) -> CliSession:
        _, provider = self._provider(None)
        self.session = open_session(getattr(provider, "api_key", None), working_dir)
        return self.session

    async def session_command(self, command: str) -> ExecutionResult:
        if self.session is None:
            raise ConfigurationError("No CLI session open. Call open_session() first.")
        return await run_command(self.session, command, self.dispatcher)


def parse_review(text: str) -> CodeReview | None:
    """Parse a JSON review, also when wrapped in a fenced block."""
    try:
        return CodeReview.model_validate(json.loads(extract_code(text)))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.info(f"Review reply was not valid JSON: {e}")
        return None
