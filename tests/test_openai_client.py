from types import SimpleNamespace
from typing import Any

import httpx
import openai
import pytest
from openai.types.chat import ChatCompletionChunk

from sanctuary.config.settings import Settings
from sanctuary.errors import ConfigurationError, TransportError
from sanctuary.integrations.openai_client import OpenAIChatClient, build_model_client, chunk_to_delta


def make_chunk(delta: dict[str, Any] | None = None, usage: dict[str, int] | None = None) -> ChatCompletionChunk:
    return ChatCompletionChunk.model_validate(
        {
            "id": "chunk",
            "object": "chat.completion.chunk",
            "created": 0,
            "model": "test-model",
            "choices": [] if delta is None else [{"index": 0, "delta": delta, "finish_reason": None}],
            "usage": usage,
        }
    )


class FakeStream:
    def __init__(self, chunks: list[ChatCompletionChunk], error: Exception | None = None) -> None:
        self._chunks = chunks
        self._error = error

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error


class FakeCompletions:
    def __init__(self, outcome: FakeStream | Exception) -> None:
        self._outcome = outcome
        self.kwargs: dict[str, Any] = {}

    async def create(self, **kwargs: Any) -> FakeStream:
        self.kwargs = kwargs
        if isinstance(self._outcome, Exception):
            raise self._outcome
        return self._outcome


def fake_client(outcome: FakeStream | Exception) -> tuple[Any, FakeCompletions]:
    completions = FakeCompletions(outcome)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


def connection_error() -> openai.APIConnectionError:
    return openai.APIConnectionError(request=httpx.Request("POST", "https://provider.test/chat/completions"))


def test_chunk_to_delta_maps_text_calls_and_usage() -> None:
    delta = chunk_to_delta(
        make_chunk(
            {
                "content": "Hi",
                "tool_calls": [
                    {"index": 0, "id": "call_1", "type": "function", "function": {"name": "look", "arguments": '{"a"'}}
                ],
            }
        )
    )
    assert delta.text == "Hi"
    assert delta.tool_calls[0].id == "call_1"
    assert delta.tool_calls[0].name == "look"
    assert delta.tool_calls[0].arguments == '{"a"'
    assert delta.usage is None

    tail = chunk_to_delta(make_chunk(usage={"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}))
    assert tail.text is None
    assert tail.tool_calls == ()
    assert (tail.usage.prompt_tokens, tail.usage.completion_tokens) == (3, 2)


@pytest.mark.asyncio
async def test_stream_requests_usage_and_yields_deltas() -> None:
    client, completions = fake_client(FakeStream([make_chunk({"content": "a"}), make_chunk({"content": "b"})]))
    model = OpenAIChatClient(model="test-model", api_key="key", max_tokens=50, client=client)

    deltas = [delta async for delta in model.stream(messages=[{"role": "user", "content": "hi"}], tools=[])]

    assert [delta.text for delta in deltas] == ["a", "b"]
    assert completions.kwargs["stream"] is True
    assert completions.kwargs["stream_options"] == {"include_usage": True}
    assert completions.kwargs["max_tokens"] == 50
    assert "tools" not in completions.kwargs


@pytest.mark.asyncio
async def test_provider_errors_become_transport_errors() -> None:
    client, _ = fake_client(connection_error())
    model = OpenAIChatClient(model="test-model", api_key="key", client=client)
    with pytest.raises(TransportError):
        async for _ in model.stream(messages=[], tools=[]):
            pass

    client, _ = fake_client(FakeStream([make_chunk({"content": "partial"})], error=connection_error()))
    model = OpenAIChatClient(model="test-model", api_key="key", client=client)
    received: list[str | None] = []
    with pytest.raises(TransportError):
        async for delta in model.stream(messages=[], tools=[]):
            received.append(delta.text)
    assert received == ["partial"]


def test_build_model_client_requires_an_api_key(tmp_path) -> None:
    with pytest.raises(ConfigurationError):
        build_model_client(Settings(home=tmp_path, api_key=None), "x-ai/grok-3")
    assert build_model_client(Settings(home=tmp_path, api_key="key"), "x-ai/grok-3").model == "x-ai/grok-3"
