import json

import httpx
import pytest

from coderelay.client import StreamingClient
from coderelay.execution import SandboxConfig
from coderelay.provider import ModelProvider, SearchAnswer
from coderelay.streaming import StreamResult


# ---------------------------------------------------------------------------
# Wire helpers (mirror the OpenAI streaming chunk shape)
# ---------------------------------------------------------------------------

def chunk(
    reasoning: str | None = None,
    content: str | None = None,
    tool_calls: list[dict] | None = None,
    finish_reason: str | None = None,
) -> dict:
    """Build one ``chat.completion.chunk`` payload."""
    delta = {}
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    choice = {"index": 0, "delta": delta}
    if finish_reason is not None:
        choice["finish_reason"] = finish_reason
    return {"id": "chunk", "object": "chat.completion.chunk", "choices": [choice]}


def tool_call(
    index: int,
    arguments: str = "",
    call_id: str | None = None,
    name: str | None = None,
) -> dict:
    tc = {"index": index, "function": {"arguments": arguments}}
    if call_id is not None:
        tc["id"] = call_id
        tc["type"] = "function"
    if name is not None:
        tc["function"]["name"] = name
    return tc


def sse(*payloads, done: bool = True) -> bytes:
    """Encode payloads (dicts or raw strings) as an SSE body."""
    lines = []
    for p in payloads:
        data = p if isinstance(p, str) else json.dumps(p)
        lines.append(f"data: {data}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def split_every(body: bytes, size: int) -> list[bytes]:
    return [body[i:i + size] for i in range(0, len(body), size)]


class FakeStreamServer:
    """httpx transport replaying a fixed list of byte chunks."""

    def __init__(self, chunks: list[bytes], status_code: int = 200, error: Exception | None = None):
        self.chunks = chunks
        self.status_code = status_code
        self.error = error
        self.requests: list[httpx.Request] = []

    async def _body(self):
        for c in self.chunks:
            yield c
        if self.error is not None:
            raise self.error

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, content=b'{"error": "nope"}')
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=self._body(),
        )

    def client(self, api_key: str | None = "test-key") -> StreamingClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return StreamingClient(base_url="https://llm.test/v1", api_key=api_key, http_client=http)

    @property
    def last_payload(self) -> dict:
        return json.loads(self.requests[-1].content)


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------

class MockProvider(ModelProvider):
    """Provider that returns pre-queued responses. No network calls."""

    def __init__(self, name: str = "mock", supports_apply: bool = False, api_key: str | None = "k"):
        self.name = name
        self.supports_apply = supports_apply
        self.api_key = api_key
        self.responses: list[str] = []
        self.stream_results: list[StreamResult] = []
        self.search_answers: list[SearchAnswer] = []
        self.call_log: list[dict] = []

    async def complete(self, messages, model=None, temperature=0.7, max_tokens=4096):
        self.call_log.append({"kind": "complete", "messages": messages})
        return self.responses.pop(0)

    async def stream(self, messages, callbacks=None, model=None, tools=None,
                     temperature=0.7, max_tokens=4096):
        self.call_log.append({"kind": "stream", "messages": messages})
        result = self.stream_results.pop(0)
        if callbacks is not None and callbacks.on_content is not None:
            callbacks.on_content(result.content)
        return result

    async def apply_edit(self, code, instruction, update=""):
        self.call_log.append({"kind": "apply", "code": code, "instruction": instruction})
        return self.responses.pop(0)

    async def search_chat(self, query, count=5):
        self.call_log.append({"kind": "search", "query": query, "count": count})
        return self.search_answers.pop(0)


@pytest.fixture
def mock_provider():
    return MockProvider()


@pytest.fixture
def sandbox_config(tmp_path):
    return SandboxConfig(timeout_ms=5_000, working_dir=str(tmp_path))
