"""Optional OpenTelemetry instrumentation for coderelay.

Call ``coderelay.instrument()`` once at startup to enable tracing.
Requires ``opentelemetry-api`` to be installed; the package
works identically without it.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "coderelay") -> None:
    """Enable OpenTelemetry tracing for agent operations, provider
    calls, streams and sandboxed executions.

    Call once at startup, after configuring your TracerProvider.
    Requires ``opentelemetry-api``: ``pip install coderelay[otel]``

    Example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())

        import coderelay
        coderelay.instrument()

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install coderelay[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured, spans will be "
            "discarded. Set up a TracerProvider to export "
            "traces."
        )
    else:
        logger.info("coderelay instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def operation_span(operation: str, provider: str):
    """Wrap a CodeAgent operation."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"code_agent {operation}",
        attributes={
            "gen_ai.operation.name": operation,
            "gen_ai.provider.name": provider,
        },
    ) as span:
        yield span


@asynccontextmanager
async def completion_span(system: str, model: str):
    """Wrap a request/response provider call in a ``chat`` span."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"chat {model}",
        kind=SpanKind.CLIENT,
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.provider.name": system,
            "gen_ai.request.model": model,
        },
    ) as span:
        yield span


@asynccontextmanager
async def stream_span(url: str, model: str):
    """Wrap one streaming request."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"chat.stream {model}",
        kind=SpanKind.CLIENT,
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.request.model": model,
            "server.address": url,
        },
    ) as span:
        yield span


@asynccontextmanager
async def execution_span(language: str):
    """Wrap a dispatcher execution in an ``execute_code`` span."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"execute_code {language}",
        attributes={
            "code.language": language,
        },
    ) as span:
        yield span


def record_usage(span, usage, response_model: str | None = None):
    """Set token-usage and response-model attributes on a span."""
    if span is None or usage is None:
        return
    if getattr(usage, "prompt_tokens", None) is not None:
        span.set_attribute("gen_ai.usage.input_tokens", usage.prompt_tokens)
    if getattr(usage, "completion_tokens", None) is not None:
        span.set_attribute("gen_ai.usage.output_tokens", usage.completion_tokens)
    if response_model:
        span.set_attribute("gen_ai.response.model", response_model)


def record_execution(span, result) -> None:
    """Copy exit code, duration and error of an ExecutionResult onto a span."""
    if span is None:
        return
    span.set_attribute("process.exit.code", result.exit_code)
    span.set_attribute("code.duration_ms", result.duration_ms)
    if result.error is not None:
        from opentelemetry.trace import StatusCode

        span.set_status(StatusCode.ERROR, result.error)
        span.set_attribute("error.type", result.error)


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on a span.

    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
