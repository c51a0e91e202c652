from coderelay.agent import CodeAgent, CodeResult, CodeTask
from coderelay.client import ChatRequest, StreamCallbacks, StreamingClient
from coderelay.detect import detect_language
from coderelay.dispatcher import ExecutionDispatcher
from coderelay.errors import ConfigurationError, TransportError
from coderelay.execution import ExecutionRequest, ExecutionResult, Language, SandboxConfig
from coderelay.instrumentation import instrument, uninstrument
from coderelay.provider import ProviderPolicy, default_policy
from coderelay.streaming import AccumulatedToolCall, StreamResult, ToolCallAccumulator
from coderelay.validator import is_safe

__all__ = [
    "AccumulatedToolCall",
    "ChatRequest",
    "CodeAgent",
    "CodeResult",
    "CodeTask",
    "ConfigurationError",
    "ExecutionDispatcher",
    "ExecutionRequest",
    "ExecutionResult",
    "Language",
    "ProviderPolicy",
    "SandboxConfig",
    "StreamCallbacks",
    "StreamResult",
    "StreamingClient",
    "ToolCallAccumulator",
    "TransportError",
    "default_policy",
    "detect_language",
    "instrument",
    "is_safe",
    "uninstrument",
]
