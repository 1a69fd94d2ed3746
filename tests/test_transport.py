from __future__ import annotations

import json

import httpx
import pytest

from termpilot.agent.cancellation import CancelToken
from termpilot.agent.events import Content, Error, Finished, Retry, Thought, ToolCall, Usage
from termpilot.agent.messages import FunctionCall, Message, ToolCallRequest
from termpilot.agent.transport import (
    ChatTransport,
    SSEDecoder,
    ToolCallAccumulator,
    is_retryable_error,
    resolve_endpoint,
)
from termpilot.config import AgentConfig, Provider
from termpilot.errors import ConfigError, TransportError
from termpilot.usage import TokensSummary
from tests.utils import delta, sse

SPLIT_TOOL_CALL = sse(
    delta(tool_calls=[{"index": 0, "id": "x", "function": {"name": "read_file"}}]),
    delta(tool_calls=[{"index": 0, "function": {"arguments": '{"path":"a"}'}}]),
)


def _config(**overrides) -> AgentConfig:
    values = {"provider": Provider.OPENAI, "api_key": "sk-test"}
    values.update(overrides)
    return AgentConfig(**values)


def _transport(handler, config: AgentConfig | None = None, delays: list[float] | None = None) -> ChatTransport:
    async def _sleep(seconds: float) -> None:
        if delays is not None:
            delays.append(seconds)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ChatTransport(config or _config(), http_client=client, sleep=_sleep)


async def _collect(transport: ChatTransport, cancel: CancelToken | None = None, tools=None) -> list:
    messages = [Message.system("sys"), Message.user("hi")]
    return [event async for event in transport.stream_with_tools(messages, tools, cancel or CancelToken())]


def _sse_response(body: str) -> httpx.Response:
    return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})


def test_decoder_content_then_finished():
    decoder = SSEDecoder()
    events = decoder.feed('data: {"choices":[{"delta":{"content":"Hi"}}]}\n\ndata: [DONE]\n\n')
    assert events == [Content("Hi"), Finished()]
    assert decoder.done
    assert decoder.close() == []


def test_decoder_merges_split_tool_call():
    decoder = SSEDecoder()
    events = decoder.feed(SPLIT_TOOL_CALL)
    expected = ToolCallRequest(id="x", function=FunctionCall(name="read_file", arguments='{"path":"a"}'))
    assert events == [ToolCall(expected), Finished()]


def test_decoder_is_independent_of_chunk_boundaries():
    whole = SSEDecoder().feed(SPLIT_TOOL_CALL)

    decoder = SSEDecoder()
    byte_by_byte = []
    for char in SPLIT_TOOL_CALL:
        byte_by_byte.extend(decoder.feed(char))
    assert byte_by_byte == whole


def test_decoder_skips_noise_and_flushes_on_close():
    decoder = SSEDecoder()
    events = decoder.feed(
        ": keep-alive\n"
        "event: message\n"
        "data: {not json\n"
        + sse(delta(tool_calls=[{"index": 0, "id": "c1", "function": {"name": "list_directory", "arguments": "{}"}}]), done=False)
    )
    assert events == []
    closed = decoder.close()
    assert [type(event) for event in closed] == [ToolCall, Finished]
    assert closed[0].request.function.name == "list_directory"


def test_decoder_reasoning_usage_and_embedded_error():
    decoder = SSEDecoder()
    events = decoder.feed(
        sse(
            delta(reasoning_content="thinking"),
            {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}},
            {"error": {"message": "quota exceeded"}},
            delta(content="never"),
        )
    )
    assert events == [
        Thought("thinking"),
        Usage(TokensSummary(prompt_tokens=5, completion_tokens=2, cached_tokens=0, total_tokens=7)),
        Error("quota exceeded"),
    ]
    assert decoder.done


def test_accumulator_orders_by_index_and_fills_missing_ids():
    acc = ToolCallAccumulator()
    acc.merge([{"index": 1, "id": "b", "function": {"name": "glob_search", "arguments": '{"pattern":'}}])
    acc.merge([{"index": 0, "function": {"name": "list_", "arguments": "{}"}}])
    acc.merge([{"index": 0, "function": {"name": "directory"}}, {"index": 1, "function": {"arguments": '"*"}'}}])
    calls = acc.flush()
    assert [call.function.name for call in calls] == ["list_directory", "glob_search"]
    assert calls[0].id.startswith("call_")
    assert calls[1].id == "b"
    assert calls[1].function.arguments == '{"pattern":"*"}'


def test_resolve_endpoint_bearer_and_presets():
    endpoint = resolve_endpoint(_config())
    assert endpoint.url == "https://api.openai.com/v1/chat/completions"
    assert endpoint.model == "gpt-4o-mini"
    assert endpoint.headers["Authorization"] == "Bearer sk-test"


def test_resolve_endpoint_azure_uses_deployment_and_api_key_header():
    endpoint = resolve_endpoint(
        _config(
            provider=Provider.AZURE,
            base_url="https://res.openai.azure.com/openai/",
            api_key="az-key",
            model="gpt-4o",
            deployment="prod-dep",
        )
    )
    assert endpoint.url == (
        "https://res.openai.azure.com/openai/deployments/prod-dep/chat/completions?api-version=2024-12-01-preview"
    )
    assert endpoint.headers["api-key"] == "az-key"
    assert "Authorization" not in endpoint.headers


def test_resolve_endpoint_azure_deployment_defaults_to_model():
    endpoint = resolve_endpoint(
        _config(provider=Provider.AZURE, base_url="https://res.openai.azure.com/openai", model="gpt-4o")
    )
    assert "/deployments/gpt-4o/" in endpoint.url


def test_resolve_endpoint_ollama_needs_no_key():
    endpoint = resolve_endpoint(AgentConfig(provider=Provider.OLLAMA))
    assert endpoint.url == "http://localhost:11434/v1/chat/completions"
    assert "Authorization" not in endpoint.headers


@pytest.mark.parametrize(
    "config",
    [
        AgentConfig(provider=Provider.CUSTOM, api_key="k"),
        AgentConfig(provider=Provider.OPENAI, api_key=""),
    ],
)
def test_resolve_endpoint_config_errors(config):
    with pytest.raises(ConfigError):
        resolve_endpoint(config)


def test_retryable_error_walks_cause_chain():
    class FetchError(Exception):
        def __init__(self, code: str) -> None:
            super().__init__("socket problem")
            self.code = code

    try:
        try:
            raise FetchError("ECONNRESET")
        except FetchError as inner:
            raise RuntimeError("request failed") from inner
    except RuntimeError as outer:
        assert is_retryable_error(outer)

    assert is_retryable_error(RuntimeError("TypeError: fetch failed"))
    assert is_retryable_error(httpx.ConnectError("refused"))
    assert not is_retryable_error(ValueError("bad input"))
    assert not is_retryable_error(TransportError("nope", status=401))
    assert is_retryable_error(TransportError("busy", status=503))


@pytest.mark.asyncio
async def test_stream_sends_openai_body_and_yields_events():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _sse_response(sse(delta(content="Hi")))

    tools = [{"type": "function", "function": {"name": "read_file", "parameters": {}}}]
    events = await _collect(_transport(handler), tools=tools)

    assert events == [Content("Hi"), Finished()]
    body = json.loads(seen[0].content)
    assert body["model"] == "gpt-4o-mini"
    assert body["stream"] is True
    assert body["stream_options"] == {"include_usage": True}
    assert body["tools"] == tools
    assert body["max_tokens"] == 4096
    assert body["messages"][1] == {"role": "user", "content": "hi"}
    assert seen[0].headers["authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 500, 502, 503, 599])
async def test_retryable_status_retries_with_linear_backoff(status):
    calls = 0
    delays: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(status, json={"error": {"message": "try later"}})

    events = await _collect(_transport(handler, delays=delays))

    assert calls == 3
    assert delays == [0.5, 1.0]
    assert events[:2] == [Retry(2, 3), Retry(3, 3)]
    assert len(events) == 3
    assert isinstance(events[2], Error)
    assert str(status) in events[2].message
    assert "try later" in events[2].message


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 401, 403, 404])
async def test_permanent_status_makes_one_attempt(status):
    calls = 0
    delays: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(status, text="denied")

    events = await _collect(_transport(handler, delays=delays))

    assert calls == 1
    assert delays == []
    assert len(events) == 1
    assert isinstance(events[0], Error)


@pytest.mark.asyncio
async def test_network_error_then_success():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise httpx.ConnectError("connection reset", request=request)
        return _sse_response(sse(delta(content="ok")))

    events = await _collect(_transport(handler))
    assert events == [Retry(2, 3), Content("ok"), Finished()]


@pytest.mark.asyncio
async def test_config_error_is_single_event_without_network():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return _sse_response(sse())

    events = await _collect(_transport(handler, config=AgentConfig(provider=Provider.OPENAI)))
    assert calls == 0
    assert len(events) == 1
    assert isinstance(events[0], Error)
    assert "API key" in events[0].message


@pytest.mark.asyncio
async def test_cancelled_before_start_yields_nothing():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return _sse_response(sse(delta(content="Hi")))

    cancel = CancelToken()
    cancel.cancel()
    assert await _collect(_transport(handler), cancel=cancel) == []
    assert calls == 0


@pytest.mark.asyncio
async def test_stream_without_terminator_still_finishes():
    def handler(request: httpx.Request) -> httpx.Response:
        return _sse_response(sse(delta(content="partial"), done=False))

    assert await _collect(_transport(handler)) == [Content("partial"), Finished()]


@pytest.mark.asyncio
async def test_complete_parses_single_body():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"role": "assistant", "content": "hello"}}],
                "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
            },
        )

    text, usage = await _transport(handler).complete([Message.user("hi")])
    assert text == "hello"
    assert usage == TokensSummary(prompt_tokens=3, completion_tokens=2, cached_tokens=0, total_tokens=5)
    assert "stream" not in seen[0]
    assert "stream_options" not in seen[0]


@pytest.mark.asyncio
async def test_complete_raises_transport_error_after_retries():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(500, text="boom")

    with pytest.raises(TransportError) as excinfo:
        await _transport(handler).complete([Message.user("hi")])
    assert calls == 3
    assert excinfo.value.status == 500
