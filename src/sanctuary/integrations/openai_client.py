"""OpenAI-compatible streaming chat client."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, ClassVar

import openai
from openai import AsyncOpenAI
from openai.types.chat import ChatCompletionChunk

from sanctuary.config.settings import Settings
from sanctuary.core.types import StreamDelta, ToolCallDelta, Usage
from sanctuary.errors import ConfigurationError, TransportError


def chunk_to_delta(chunk: ChatCompletionChunk) -> StreamDelta:
    """Map one provider chunk onto the engine's delta shape."""
    text: str | None = None
    calls: list[ToolCallDelta] = []
    if chunk.choices:
        delta = chunk.choices[0].delta
        text = delta.content or None
        for call in delta.tool_calls or ():
            function = call.function
            calls.append(
                ToolCallDelta(
                    index=call.index,
                    id=call.id or None,
                    name=function.name if function is not None else None,
                    arguments=function.arguments if function is not None else None,
                )
            )
    usage = None
    if chunk.usage is not None:
        usage = Usage(prompt_tokens=chunk.usage.prompt_tokens, completion_tokens=chunk.usage.completion_tokens)
    return StreamDelta(text=text, tool_calls=tuple(calls), usage=usage)


class OpenAIChatClient:
    """Streams chat completions from any OpenAI-compatible endpoint."""

    DEFAULT_HEADERS: ClassVar[dict[str, str]] = {"HTTP-Referer": "https://sanctuary.local/", "X-Title": "Sanctuary"}

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, default_headers=self.DEFAULT_HEADERS)

    async def stream(
        self, *, messages: list[dict[str, Any]], tools: list[dict[str, Any]]
    ) -> AsyncIterator[StreamDelta]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            kwargs["tools"] = tools
        if self._max_tokens is not None:
            kwargs["max_tokens"] = self._max_tokens
        if self._temperature is not None:
            kwargs["temperature"] = self._temperature
        try:
            response = await self._client.chat.completions.create(**kwargs)
            async for chunk in response:
                yield chunk_to_delta(chunk)
        except openai.APIError as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc


def build_model_client(settings: Settings, model: str, *, temperature: float | None = None) -> OpenAIChatClient:
    """Build a streaming client for one of the configured models."""

    if not settings.api_key:
        raise ConfigurationError("SANCTUARY_API_KEY is not set")
    return OpenAIChatClient(
        model=model,
        api_key=settings.api_key,
        base_url=settings.api_base,
        max_tokens=settings.max_tokens,
        temperature=temperature,
    )
