"""OpenAI-compatible chat-completions transport with SSE streaming and retries.

``stream_with_tools`` never raises: configuration problems, exhausted retries
and provider-side errors all end the sequence with a single ``Error`` event.
Cancellation ends it silently.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import json
import logging
import socket
import ssl
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Sequence
from urllib.parse import quote

import httpx

from termpilot.agent.cancellation import CancelToken
from termpilot.agent.events import Content, Error, Finished, Retry, StreamEvent, Thought, ToolCall, Usage
from termpilot.agent.messages import Message, ToolCallRequest
from termpilot.config import AgentConfig, Provider
from termpilot.errors import ConfigError, RunCancelled, TransportError
from termpilot.log_utils import log_chunks_enabled, log_event
from termpilot.usage import TokensSummary

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
BASE_DELAY_S = 0.5
MAX_CAUSE_DEPTH = 5
CONNECT_TIMEOUT_S = 10.0
DATA_PREFIX = "data: "
DONE_TOKEN = "[DONE]"
ERROR_BODY_LIMIT = 500

RETRYABLE_ERROR_CODES = frozenset(
    {
        "ECONNRESET",
        "ETIMEDOUT",
        "ECONNREFUSED",
        "ECONNABORTED",
        "EPIPE",
        "ENOTFOUND",
        "EAI_AGAIN",
        "EHOSTUNREACH",
        "ENETUNREACH",
        "UND_ERR_CONNECT_TIMEOUT",
        "UND_ERR_SOCKET",
        "ERR_SSL_WRONG_VERSION_NUMBER",
        "ERR_SSL_DECRYPTION_FAILED_OR_BAD_RECORD_MAC",
    }
)
RETRYABLE_ERRNOS = frozenset(
    {
        errno.ECONNRESET,
        errno.ETIMEDOUT,
        errno.ECONNREFUSED,
        errno.ECONNABORTED,
        errno.EPIPE,
        errno.EHOSTUNREACH,
        errno.ENETUNREACH,
    }
)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class Endpoint:
    url: str
    model: str
    headers: Mapping[str, str] = field(default_factory=dict)


def resolve_endpoint(config: AgentConfig) -> Endpoint:
    """Build URL and auth headers for the configured provider.

    Raises ``ConfigError`` when the base URL or a required key is missing.
    """

    base_url = config.resolved_base_url
    if not base_url:
        raise ConfigError(
            f"No base URL configured for provider '{config.provider.value}'. Set base_url in the config file."
        )
    api_key = (config.api_key or "").strip()
    if config.requires_api_key and not api_key:
        raise ConfigError(f"No API key configured for provider '{config.provider.value}'.")

    model = config.resolved_model
    base = base_url.rstrip("/")
    headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
    if config.provider is Provider.AZURE:
        deployment = config.deployment or model
        url = f"{base}/deployments/{quote(deployment, safe='')}/chat/completions?api-version={config.api_version}"
        headers["api-key"] = api_key
    else:
        url = f"{base}/chat/completions"
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
    return Endpoint(url=url, model=model, headers=headers)


def is_retryable_status(status: int | None) -> bool:
    return status is not None and (status == 429 or 500 <= status <= 599)


def _iter_causes(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and len(chain) < MAX_CAUSE_DEPTH and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def is_retryable_error(exc: BaseException) -> bool:
    """Classify an exception raised while talking to the provider."""

    if isinstance(exc, (RunCancelled, asyncio.CancelledError, ConfigError)):
        return False
    if isinstance(exc, TransportError) and exc.status is not None:
        return is_retryable_status(exc.status)
    for cause in _iter_causes(exc):
        if isinstance(cause, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
            return True
        if isinstance(cause, (socket.gaierror, ssl.SSLError, TimeoutError, ConnectionError)):
            return True
        code = getattr(cause, "code", None)
        if isinstance(code, str) and code.upper() in RETRYABLE_ERROR_CODES:
            return True
        if isinstance(cause, OSError) and cause.errno in RETRYABLE_ERRNOS:
            return True
        if "fetch failed" in str(cause).lower():
            return True
    return False


class ToolCallAccumulator:
    """Merge streamed ``tool_calls`` deltas keyed by their fragment index."""

    def __init__(self) -> None:
        self._calls: dict[int, ToolCallRequest] = {}

    def __bool__(self) -> bool:
        return bool(self._calls)

    def merge(self, deltas: Sequence[Any]) -> None:
        for position, delta in enumerate(deltas):
            if not isinstance(delta, Mapping):
                continue
            index = delta.get("index")
            if not isinstance(index, int):
                index = position
            call = self._calls.setdefault(index, ToolCallRequest())
            call_id = delta.get("id")
            if call_id and not call.id:
                call.id = str(call_id)
            function = delta.get("function")
            if isinstance(function, Mapping):
                if function.get("name"):
                    call.function.name += str(function["name"])
                if function.get("arguments"):
                    call.function.arguments += str(function["arguments"])

    def flush(self) -> list[ToolCallRequest]:
        calls = [self._calls[index] for index in sorted(self._calls)]
        self._calls = {}
        for call in calls:
            if not call.id:
                call.id = f"call_{uuid.uuid4().hex[:24]}"
        return calls


class SSEDecoder:
    """Incremental decoder from response text chunks to stream events.

    A trailing partial line is held back until the next chunk. ``done`` flips
    once the terminator, an embedded error, or ``close()`` ends the stream.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._tool_calls = ToolCallAccumulator()
        self.done = False

    def feed(self, chunk: str) -> list[StreamEvent]:
        if self.done:
            return []
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        events: list[StreamEvent] = []
        for line in lines:
            events.extend(self._handle_line(line))
            if self.done:
                break
        return events

    def close(self) -> list[StreamEvent]:
        """Finish a stream whose transport closed, with or without the terminator."""
        if self.done:
            return []
        events: list[StreamEvent] = []
        if self._buffer:
            line, self._buffer = self._buffer, ""
            events.extend(self._handle_line(line))
        if not self.done:
            events.extend(self._finish())
        return events

    def _finish(self) -> list[StreamEvent]:
        self.done = True
        events: list[StreamEvent] = [ToolCall(call) for call in self._tool_calls.flush()]
        events.append(Finished())
        return events

    def _handle_line(self, raw: str) -> list[StreamEvent]:
        line = raw.rstrip("\r")
        if not line.startswith(DATA_PREFIX):
            return []
        data = line[len(DATA_PREFIX) :].strip()
        if data == DONE_TOKEN:
            return self._finish()
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            if log_chunks_enabled():
                log_event(logger, "transport.chunk.invalid", level=logging.DEBUG, data=data[:200])
            return []
        if not isinstance(chunk, Mapping):
            return []
        if log_chunks_enabled():
            log_event(logger, "transport.chunk", level=logging.DEBUG, chunk=chunk)

        error = chunk.get("error")
        if error:
            self.done = True
            message = error.get("message") if isinstance(error, Mapping) else str(error)
            return [Error(str(message or error))]

        events: list[StreamEvent] = []
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") if isinstance(choice, Mapping) else None
            if not isinstance(delta, Mapping):
                continue
            reasoning = delta.get("reasoning_content") or delta.get("reasoning")
            if isinstance(reasoning, str) and reasoning:
                events.append(Thought(reasoning))
            content = delta.get("content")
            if isinstance(content, str) and content:
                events.append(Content(content))
            tool_calls = delta.get("tool_calls")
            if isinstance(tool_calls, list):
                self._tool_calls.merge(tool_calls)

        usage = chunk.get("usage")
        if isinstance(usage, Mapping):
            events.append(Usage(TokensSummary.from_openai(usage)))
        return events


async def _next_chunk(iterator: AsyncIterator[str]) -> str | None:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


async def _error_detail(response: httpx.Response) -> str:
    try:
        body = (await response.aread()).decode("utf-8", errors="replace")
    except httpx.HTTPError:
        return ""
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        return body[:ERROR_BODY_LIMIT]
    if isinstance(parsed, Mapping) and isinstance(parsed.get("error"), Mapping):
        return str(parsed["error"].get("message") or body)[:ERROR_BODY_LIMIT]
    return body[:ERROR_BODY_LIMIT]


class ChatTransport:
    """Talks to one configured provider.

    ``http_client`` and ``sleep`` are injectable so tests can use
    ``httpx.MockTransport`` and observe backoff delays without waiting.
    """

    def __init__(
        self,
        config: AgentConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay: float = BASE_DELAY_S,
    ) -> None:
        self.config = config
        self._client = http_client
        self._sleep = sleep
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.config.request_timeout, connect=CONNECT_TIMEOUT_S)

    @contextlib.asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self._timeout()) as client:
            yield client

    def build_body(
        self,
        endpoint: Endpoint,
        messages: Sequence[Message],
        tools: Sequence[Mapping[str, Any]] | None = None,
        *,
        stream: bool = True,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": endpoint.model,
            "messages": [message.to_wire() for message in messages],
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
        }
        if tools:
            body["tools"] = list(tools)
        if stream:
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}
        return body

    async def stream_with_tools(
        self,
        messages: Sequence[Message],
        tools: Sequence[Mapping[str, Any]] | None,
        cancel: CancelToken,
    ) -> AsyncIterator[StreamEvent]:
        try:
            endpoint = resolve_endpoint(self.config)
        except ConfigError as exc:
            log_event(logger, "transport.config_error", level=logging.WARNING, error=str(exc))
            yield Error(str(exc))
            return

        body = self.build_body(endpoint, messages, tools, stream=True)
        for attempt in range(1, self.max_attempts + 1):
            if cancel.cancelled:
                return
            if attempt > 1:
                yield Retry(attempt, self.max_attempts)
                try:
                    await cancel.guard(self._sleep((attempt - 1) * self.base_delay))
                except RunCancelled:
                    return

            log_event(
                logger,
                "transport.request",
                url=endpoint.url,
                model=endpoint.model,
                attempt=attempt,
                messages=len(messages),
            )
            emitted = False
            try:
                async with contextlib.aclosing(self._stream_once(endpoint, body, cancel)) as events:
                    async for event in events:
                        emitted = True
                        yield event
                return
            except RunCancelled:
                return
            except Exception as exc:
                failure = exc

            retryable = not emitted and is_retryable_error(failure)
            if retryable and attempt < self.max_attempts:
                log_event(
                    logger,
                    "transport.retry",
                    level=logging.WARNING,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(failure),
                )
                continue
            log_event(logger, "transport.error", level=logging.ERROR, attempt=attempt, error=str(failure))
            yield Error(self._describe(failure))
            return

    async def _stream_once(
        self,
        endpoint: Endpoint,
        body: Mapping[str, Any],
        cancel: CancelToken,
    ) -> AsyncIterator[StreamEvent]:
        async with self._http() as client:
            request = client.build_request(
                "POST", endpoint.url, json=body, headers=dict(endpoint.headers), timeout=self._timeout()
            )
            response = await cancel.guard(client.send(request, stream=True))
            try:
                if response.status_code >= 400:
                    detail = await _error_detail(response)
                    raise TransportError(
                        f"API error ({response.status_code}): {detail}".rstrip(": "),
                        status=response.status_code,
                        retryable=is_retryable_status(response.status_code),
                    )
                decoder = SSEDecoder()
                chunks = response.aiter_text().__aiter__()
                while not decoder.done:
                    chunk = await cancel.guard(_next_chunk(chunks))
                    if chunk is None:
                        break
                    for event in decoder.feed(chunk):
                        yield event
                for event in decoder.close():
                    yield event
            finally:
                await response.aclose()

    async def complete(self, messages: Sequence[Message], cancel: CancelToken | None = None) -> tuple[str, TokensSummary]:
        """Non-streaming request; returns the assistant text and usage.

        Raises ``ConfigError`` or ``TransportError``; same retry policy as streaming.
        """

        cancel = cancel or CancelToken()
        endpoint = resolve_endpoint(self.config)
        body = self.build_body(endpoint, messages, None, stream=False)
        headers = {**endpoint.headers, "Accept": "application/json"}
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                await cancel.guard(self._sleep((attempt - 1) * self.base_delay))
            try:
                async with self._http() as client:
                    response = await cancel.guard(
                        client.post(endpoint.url, json=body, headers=headers, timeout=self._timeout())
                    )
                    if response.status_code >= 400:
                        raise TransportError(
                            f"API error ({response.status_code}): {await _error_detail(response)}".rstrip(": "),
                            status=response.status_code,
                            retryable=is_retryable_status(response.status_code),
                        )
                    data = response.json()
            except RunCancelled:
                raise
            except Exception as exc:
                last_error = exc
                if is_retryable_error(exc) and attempt < self.max_attempts:
                    log_event(logger, "transport.retry", level=logging.WARNING, attempt=attempt, error=str(exc))
                    continue
                break
            return _parse_completion(data)
        assert last_error is not None
        if isinstance(last_error, TransportError):
            raise last_error
        raise TransportError(self._describe(last_error)) from last_error

    @staticmethod
    def _describe(exc: BaseException) -> str:
        if isinstance(exc, TransportError):
            return str(exc)
        return f"Request failed: {exc}" if str(exc) else f"Request failed: {type(exc).__name__}"


def _parse_completion(data: Any) -> tuple[str, TokensSummary]:
    if not isinstance(data, Mapping):
        raise TransportError("Unexpected response body from provider.")
    error = data.get("error")
    if error:
        message = error.get("message") if isinstance(error, Mapping) else error
        raise TransportError(f"API error: {message}")
    text = ""
    choices = data.get("choices") or []
    if choices and isinstance(choices[0], Mapping):
        message = choices[0].get("message") or {}
        text = str(message.get("content") or "")
    return text, TokensSummary.from_openai(data.get("usage"))
