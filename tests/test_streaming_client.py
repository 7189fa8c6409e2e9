"""Tests for StreamingClient SSE decoding and retry policy.

Uses httpx.MockTransport so no network is involved.
"""

import asyncio
import json
import os
import sys
import time

import httpx
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from toolpipe.interrupt import CancelToken
from toolpipe.stream_parser import ContentToken, ReasoningToken, UsageToken
from toolpipe.streaming_client import ModelRequestError, StreamingClient


def sse(*events) -> bytes:
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode("utf-8")


OPENAI_BODY = sse(
    {"choices": [{"delta": {"reasoning_content": "hmm"}}]},
    {"choices": [{"delta": {"content": "Hel"}}]},
    {"choices": [{"delta": {"content": "lo ✓"}}]},
    {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 2}},
    "[DONE]",
)

ANTHROPIC_BODY = (
    b"event: message_start\n" + sse({"type": "message_start", "message": {"usage": {"input_tokens": 7}}})
    + sse(
        {"type": "content_block_delta", "delta": {"type": "thinking_delta", "thinking": "plan"}},
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}},
        {"type": "message_delta", "usage": {"output_tokens": 4}},
        {"type": "message_stop"},
    )
)


class Recorder:
    """MockTransport handler that replays a list of responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if callable(response):
            return response()
        # A fresh copy per request; a Response cannot be sent twice
        return httpx.Response(response.status_code, content=response.content)


def client_for(handler, **kwargs) -> StreamingClient:
    kwargs.setdefault("base_url", "https://api.test/v1")
    return StreamingClient(api_key="sk-test", model="test-model",
                           transport=httpx.MockTransport(handler), **kwargs)


async def collect(client, messages=None, cancel=None):
    async with client:
        return [t async for t in client.stream(messages or [{"role": "user", "content": "hi"}], cancel)]


# ============================================================
# Decoding
# ============================================================

class TestDecoding:

    def test_openai_stream(self):
        handler = Recorder(httpx.Response(200, content=OPENAI_BODY))
        tokens = asyncio.run(collect(client_for(handler)))
        assert tokens == [
            ReasoningToken("hmm"),
            ContentToken("Hel"),
            ContentToken("lo ✓"),
            UsageToken(3, 2),
        ]
        request = handler.requests[0]
        assert str(request.url) == "https://api.test/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        payload = json.loads(request.content)
        assert payload["stream"] is True
        assert payload["model"] == "test-model"

    def test_anthropic_stream(self):
        handler = Recorder(httpx.Response(200, content=ANTHROPIC_BODY))
        messages = [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}]
        tokens = asyncio.run(collect(client_for(handler, api_format="anthropic"), messages))
        assert tokens == [ReasoningToken("plan"), ContentToken("Hi"), UsageToken(7, 4)]

        request = handler.requests[0]
        assert str(request.url) == "https://api.test/v1/messages"
        assert request.headers["x-api-key"] == "sk-test"
        payload = json.loads(request.content)
        assert payload["system"] == "be brief"
        assert payload["messages"] == [{"role": "user", "content": "hi"}]

    def test_anthropic_error_event(self):
        body = sse({"type": "error", "error": {"type": "overloaded_error", "message": "busy"}})
        handler = Recorder(httpx.Response(200, content=body))
        with pytest.raises(ModelRequestError, match="overloaded_error"):
            asyncio.run(collect(client_for(handler, api_format="anthropic")))

    def test_junk_lines_are_skipped(self):
        body = b": keep-alive\n\ndata: not json\n\n" + sse({"choices": [{"delta": {"content": "ok"}}]})
        tokens = asyncio.run(collect(client_for(Recorder(httpx.Response(200, content=body)))))
        assert tokens == [ContentToken("ok")]

    def test_stream_outside_context_manager(self):
        async def scenario():
            client = client_for(Recorder(httpx.Response(200, content=OPENAI_BODY)))
            with pytest.raises(RuntimeError):
                async for _ in client.stream([]):
                    pass

        asyncio.run(scenario())


# ============================================================
# Retries
# ============================================================

class FailingAfterFirstChunk(httpx.AsyncByteStream):
    async def __aiter__(self):
        yield sse({"choices": [{"delta": {"content": "partial"}}]})
        raise httpx.ReadError("connection dropped")


class HangingAfterFirstChunk(httpx.AsyncByteStream):
    async def __aiter__(self):
        yield sse({"choices": [{"delta": {"content": "partial"}}]})
        await asyncio.sleep(30)


class TestRetries:

    def test_retries_server_errors_before_first_token(self):
        handler = Recorder(
            httpx.Response(503, content=b"overloaded"),
            httpx.Response(429, content=b"slow down"),
            httpx.Response(200, content=OPENAI_BODY),
        )
        tokens = asyncio.run(collect(client_for(handler, backoff_base=0.01)))
        assert len(handler.requests) == 3
        assert ContentToken("Hel") in tokens

    def test_client_errors_are_not_retried(self):
        handler = Recorder(httpx.Response(400, content=b"bad request"))
        with pytest.raises(ModelRequestError, match="API error 400"):
            asyncio.run(collect(client_for(handler, backoff_base=0.01)))
        assert len(handler.requests) == 1

    def test_gives_up_after_max_retries(self):
        handler = Recorder(httpx.Response(503, content=b"down"))
        with pytest.raises(ModelRequestError, match="API error 503"):
            asyncio.run(collect(client_for(handler, backoff_base=0.01, max_retries=2)))
        assert len(handler.requests) == 3

    def test_no_retry_after_first_token(self):
        handler = Recorder(lambda: httpx.Response(200, stream=FailingAfterFirstChunk()))
        received = []

        async def scenario():
            client = client_for(handler, backoff_base=0.01)
            async with client:
                async for token in client.stream([{"role": "user", "content": "hi"}]):
                    received.append(token)

        with pytest.raises(ModelRequestError):
            asyncio.run(scenario())
        assert received == [ContentToken("partial")]
        assert len(handler.requests) == 1

    def test_cancellation_while_server_is_silent(self):
        handler = Recorder(lambda: httpx.Response(200, stream=HangingAfterFirstChunk()))

        async def scenario():
            cancel = CancelToken()
            asyncio.get_running_loop().call_later(0.2, cancel.cancel)
            started = time.monotonic()
            tokens = await collect(client_for(handler), cancel=cancel)
            return tokens, time.monotonic() - started

        tokens, elapsed = asyncio.run(scenario())
        assert tokens == [ContentToken("partial")]
        assert elapsed < 5

    def test_cancellation_during_backoff(self):
        handler = Recorder(httpx.Response(503, content=b"down"))

        async def scenario():
            cancel = CancelToken()
            asyncio.get_running_loop().call_later(0.2, cancel.cancel)
            started = time.monotonic()
            tokens = await collect(client_for(handler, backoff_base=20), cancel=cancel)
            return tokens, time.monotonic() - started

        tokens, elapsed = asyncio.run(scenario())
        assert tokens == []
        assert elapsed < 5
