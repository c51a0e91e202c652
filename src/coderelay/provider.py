import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI
from pydantic import BaseModel

from coderelay.client import ChatRequest, StreamCallbacks, StreamingClient
from coderelay.errors import ConfigurationError, TransportError
from coderelay.instrumentation import completion_span, record_error, record_usage
from coderelay.message import Message, dump_messages
from coderelay.streaming import StreamResult
from coderelay.tools import ToolDefinition

logger = logging.getLogger(__name__)


class WebSearchResult(BaseModel):
    """One citation returned by a search-augmented chat."""

    model_config = {"extra": "allow"}

    title: str | None = None
    link: str | None = None
    content: str | None = None
    media: str | None = None
    icon: str | None = None
    publish_date: str | None = None
    refer: str | None = None


class SearchAnswer(BaseModel):
    answer: str
    sources: list[WebSearchResult] = []


class ModelProvider(ABC):
    """Interface every model provider implements.

    ``complete`` is a single request/response call, ``stream`` consumes the
    chunked stream through :class:`~coderelay.client.StreamingClient`.
    ``apply_edit`` and ``search_chat`` have generic fallbacks that
    specialised providers override.
    """

    name: str = "provider"
    supports_apply: bool = False

    @abstractmethod
    async def complete(
            self,
            messages: list[Message | dict],
            model: str | None = None,
            temperature: float = 0.7,
            max_tokens: int = 4096,
    ) -> str:
        ...

    @abstractmethod
    async def stream(
            self,
            messages: list[Message | dict],
            callbacks: StreamCallbacks | None = None,
            model: str | None = None,
            tools: list[ToolDefinition | dict] | None = None,
            temperature: float = 0.7,
            max_tokens: int = 4096,
    ) -> StreamResult:
        ...

    async def apply_edit(self, code: str, instruction: str, update: str = "") -> str:
        """Return *code* rewritten according to *instruction*."""
        prompt = f"Task: {instruction}\n\nExisting code:\n{code}"
        if update:
            prompt += f"\n\nRequested change:\n{update}"
        return await self.complete([
            {"role": "system", "content": "You are an expert programmer. Return the full updated code."},
            {"role": "user", "content": prompt},
        ])

    async def search_chat(self, query: str, count: int = 5) -> SearchAnswer:
        raise ConfigurationError(f"{self.name} does not support web search")


class OpenAICompatibleProvider(ModelProvider):
    """Provider for any endpoint speaking the OpenAI chat completions API.

    Args:
        base_url: API root, without the ``/chat/completions`` suffix.
        api_key: Bearer token. Falls back to the ``api_key_env`` variable.
        default_model: Model used when a call does not name one.
        http_client: Optional ``httpx.AsyncClient`` used for streaming.
    """

    name = "openai"
    base_url = "https://api.openai.com/v1"
    api_key_env = "OPENAI_API_KEY"
    default_model = "gpt-4o"
    stream_extra_body: dict[str, Any] = {}

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        default_model: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        max_retries: int = 2,
        timeout: float = 180.0,
    ):
        if not api_key:
            api_key = os.getenv(self.api_key_env)
        self.api_key = api_key
        if base_url:
            self.base_url = base_url.rstrip("/")
        if default_model:
            self.default_model = default_model
        self.max_retries = max_retries
        self.timeout = timeout
        self.streaming = StreamingClient(
            base_url=self.base_url,
            api_key=api_key,
            http_client=http_client,
            timeout=timeout,
        )
        self._client: AsyncOpenAI | None = None

    @property
    def client(self) -> AsyncOpenAI:
        if not self.api_key:
            raise ConfigurationError(
                f"{self.name} API key not configured. Set {self.api_key_env}."
            )
        if self._client is None:
            self._client = AsyncOpenAI(
                base_url=self.base_url,
                api_key=self.api_key,
                max_retries=self.max_retries,
                timeout=self.timeout,
            )
        return self._client

    async def _create(self, model: str, messages: list, **kwargs):
        client = self.client
        async with completion_span(self.name, model) as span:
            try:
                response = await client.chat.completions.create(
                    model=model,
                    messages=dump_messages(messages),
                    **kwargs,
                )
            except openai.APIStatusError as e:
                record_error(span, e)
                raise TransportError(
                    f"{self.name} API error: {e.message}", status_code=e.status_code,
                ) from e
            except openai.APIError as e:
                record_error(span, e)
                raise TransportError(f"{self.name} API error: {e}") from e
            record_usage(span, getattr(response, "usage", None), getattr(response, "model", None))
        if not response.choices:
            raise TransportError(f"No response from {self.name} API")
        return response

    async def complete(
            self,
            messages: list[Message | dict],
            model: str | None = None,
            temperature: float = 0.7,
            max_tokens: int = 4096,
    ) -> str:
        model = model or self.default_model
        logger.debug(f"Requesting completion from {self.name} ({model})")
        response = await self._create(
            model, messages, temperature=temperature, max_tokens=max_tokens,
        )
        return response.choices[0].message.content or ""

    async def stream(
            self,
            messages: list[Message | dict],
            callbacks: StreamCallbacks | None = None,
            model: str | None = None,
            tools: list[ToolDefinition | dict] | None = None,
            temperature: float = 0.7,
            max_tokens: int = 4096,
    ) -> StreamResult:
        request = ChatRequest(
            model=model or self.default_model,
            messages=messages,
            tools=tools,
            temperature=temperature,
            max_tokens=max_tokens,
            extra_body=dict(self.stream_extra_body) if tools else {},
        )
        return await self.streaming.consume(request, callbacks)


class GLMProvider(OpenAICompatibleProvider):
    """Zhipu GLM, including search-augmented chat with citations."""

    name = "glm"
    base_url = "https://api.z.ai/api/paas/v4"
    api_key_env = "GLM_API_KEY"
    default_model = "glm-4.6"
    stream_extra_body = {"tool_stream": True}

    async def search_chat(self, query: str, count: int = 5) -> SearchAnswer:
        tools = [{
            "type": "web_search",
            "web_search": {
                "enable": True,
                "search_engine": "search-prime",
                "search_result": True,
                "count": count,
                "search_recency_filter": "noLimit",
                "content_size": "high",
            },
        }]
        response = await self._create(
            self.default_model,
            [{"role": "user", "content": query}],
            extra_body={"tools": tools},
        )
        extra = getattr(response, "model_extra", None) or {}
        sources = extra.get("web_search") or []
        return SearchAnswer(
            answer=response.choices[0].message.content or "",
            sources=[WebSearchResult.model_validate(s) for s in sources],
        )


class MorphProvider(OpenAICompatibleProvider):
    """MorphLLM, specialised in fast code edits."""

    name = "morph"
    base_url = "https://api.morphllm.com/v1"
    api_key_env = "MORPH_API_KEY"
    default_model = "morph-v3-large"
    supports_apply = True

    async def apply_edit(self, code: str, instruction: str, update: str = "") -> str:
        content = f"<instruction>{instruction}</instruction><code>{code}</code><update>{update}</update>"
        response = await self._create(
            self.default_model, [{"role": "user", "content": content}],
        )
        return response.choices[0].message.content or ""


class QwenProvider(OpenAICompatibleProvider):
    """Qwen coder models through DashScope's OpenAI-compatible mode."""

    name = "qwen"
    base_url = "https://dashscope-intl.aliyuncs.com/compatible-mode/v1"
    api_key_env = "DASHSCOPE_API_KEY"
    default_model = "qwen3-coder-plus"


class ProviderPolicy:
    """Explicit, ordered provider selection.

    Resolution never depends on which credentials happen to be present: a
    named provider must be registered, and no name means the first entry
    of ``order``.

    Args:
        providers: Providers keyed by name.
        order: Preference order. Defaults to the mapping's order.
    """

    def __init__(
        self,
        providers: Mapping[str, ModelProvider],
        order: Sequence[str] | None = None,
    ):
        if not providers:
            raise ConfigurationError("at least one provider is required")
        self.providers = dict(providers)
        self.order = list(order) if order is not None else list(self.providers)
        unknown = [name for name in self.order if name not in self.providers]
        if unknown:
            raise ConfigurationError(f"unknown providers in order: {', '.join(unknown)}")

    def names(self) -> list[str]:
        return list(self.order)

    def resolve(self, name: str | None = None) -> tuple[str, ModelProvider]:
        if name is None:
            if not self.order:
                raise ConfigurationError("provider order is empty")
            name = self.order[0]
        provider = self.providers.get(name)
        if provider is None:
            raise ConfigurationError(f"Unknown provider: {name}")
        return name, provider


def default_policy(http_client: httpx.AsyncClient | None = None) -> ProviderPolicy:
    """Morph, GLM and Qwen, in that order, with keys from the environment."""
    return ProviderPolicy({
        "morph": MorphProvider(http_client=http_client),
        "glm": GLMProvider(http_client=http_client),
        "qwen": QwenProvider(http_client=http_client),
    })
