"""Streaming LLM client producing typed tokens from SSE responses.

Speaks both the OpenAI-compatible ``/chat/completions`` stream and the
Anthropic ``/v1/messages`` stream over a plain httpx.AsyncClient.
"""

import asyncio
import codecs
import json
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from .interrupt import CancelToken, is_cancelled
from .logger import get_logger
from .stream_parser import ContentToken, ReasoningToken, StreamToken, UsageToken

_log = get_logger("streaming")

RETRY_STATUSES = (429, 500, 502, 503)
MAX_BACKOFF = 60.0
POLL_INTERVAL = 0.3
ANTHROPIC_VERSION = "2023-06-01"


class ModelRequestError(RuntimeError):
    """The model API refused or failed the request."""


class _StreamDone(Exception):
    """The provider signalled end of stream ([DONE] / message_stop)."""


class StreamingClient:
    """LLM client yielding content, reasoning and usage tokens."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        api_format: str = "openai",
        temperature: float = 0.7,
        max_tokens: int = 8192,
        max_retries: int = 5,
        backoff_base: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.model = model
        self.api_format = api_format
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> "StreamingClient":
        return cls(
            api_key=config.api_key,
            base_url=config.api_url,
            model=config.model,
            api_format=config.api_format,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            **kwargs,
        )

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(600.0, connect=30.0),
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
        self._client = None

    # ── Request building ─────────────────────────────────────────

    def _build_request(self, messages: List[Dict[str, Any]]) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        if self.api_format == "anthropic":
            root = self.base_url[:-3] if self.base_url.lower().endswith("/v1") else self.base_url
            system = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
            payload: Dict[str, Any] = {
                "model": self.model,
                "max_tokens": self.max_tokens,
                "temperature": self.temperature,
                "messages": [m for m in messages if m.get("role") != "system"],
                "stream": True,
            }
            if system:
                payload["system"] = system
            headers = {
                "Content-Type": "application/json",
                "x-api-key": self.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            }
            return f"{root}/v1/messages", headers, payload

        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        return f"{self.base_url}/chat/completions", headers, payload

    # ── SSE event decoding ───────────────────────────────────────

    @staticmethod
    def _openai_tokens(data: Dict[str, Any]) -> List[StreamToken]:
        tokens: List[StreamToken] = []
        choices = data.get("choices") or []
        if choices:
            delta = choices[0].get("delta") or {}
            reasoning = delta.get("reasoning_content") or delta.get("reasoning") or ""
            if isinstance(reasoning, str) and reasoning:
                tokens.append(ReasoningToken(reasoning))
            content = delta.get("content") or ""
            if isinstance(content, list):
                # Some providers emit content parts
                content = "".join(
                    part.get("text", "") for part in content
                    if isinstance(part, dict) and isinstance(part.get("text"), str)
                )
            if content:
                tokens.append(ContentToken(content))
        usage = data.get("usage")
        if isinstance(usage, dict):
            tokens.append(UsageToken(
                input_tokens=int(usage.get("prompt_tokens") or usage.get("input_tokens") or 0),
                output_tokens=int(usage.get("completion_tokens") or usage.get("output_tokens") or 0),
            ))
        return tokens

    def _anthropic_tokens(self, data: Dict[str, Any], state: Dict[str, int]) -> List[StreamToken]:
        kind = data.get("type")
        if kind == "message_start":
            usage = (data.get("message") or {}).get("usage") or {}
            state["input_tokens"] = int(usage.get("input_tokens") or 0)
        elif kind == "content_block_delta":
            delta = data.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                return [ContentToken(delta["text"])]
            if delta.get("type") == "thinking_delta" and delta.get("thinking"):
                return [ReasoningToken(delta["thinking"])]
        elif kind == "message_delta":
            usage = data.get("usage") or {}
            if "output_tokens" in usage:
                return [UsageToken(input_tokens=state.get("input_tokens", 0),
                                   output_tokens=int(usage["output_tokens"] or 0))]
        elif kind == "message_stop":
            raise _StreamDone()
        elif kind == "error":
            error = data.get("error") or {}
            raise ModelRequestError(f"API error: {error.get('type', 'error')}: {error.get('message', '')}")
        return []

    def _decode_line(self, line: str, state: Dict[str, int]) -> List[StreamToken]:
        line = line.strip()
        if not line.startswith("data:"):
            return []
        data_str = line[5:].strip()
        if data_str == "[DONE]":
            raise _StreamDone()
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            _log.debug("Skipping undecodable SSE line: %s", data_str[:200])
            return []
        if not isinstance(data, dict):
            return []
        if self.api_format == "anthropic":
            return self._anthropic_tokens(data, state)
        return self._openai_tokens(data)

    # ── Streaming ────────────────────────────────────────────────

    async def _read_events(
        self,
        response: httpx.Response,
        cancel: Optional[CancelToken],
    ) -> AsyncIterator[StreamToken]:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        state: Dict[str, int] = {}
        line_buffer = ""
        # Poll instead of 'async for' so cancellation is noticed every
        # POLL_INTERVAL even while the server is silent.
        chunks = response.aiter_bytes().__aiter__()
        pending_read: Optional[asyncio.Future] = None
        try:
            while True:
                if is_cancelled(cancel):
                    _log.info("Stream cancelled by %s", cancel.reason)
                    return
                if pending_read is None:
                    pending_read = asyncio.ensure_future(chunks.__anext__())
                done, _ = await asyncio.wait({pending_read}, timeout=POLL_INTERVAL)
                if not done:
                    continue
                try:
                    chunk = pending_read.result()
                except StopAsyncIteration:
                    break
                pending_read = None

                line_buffer += decoder.decode(chunk)
                while "\n" in line_buffer:
                    line, line_buffer = line_buffer.split("\n", 1)
                    for token in self._decode_line(line, state):
                        yield token
            line_buffer += decoder.decode(b"", final=True)
            for token in self._decode_line(line_buffer, state):
                yield token
        except _StreamDone:
            return
        finally:
            if pending_read is not None and not pending_read.done():
                pending_read.cancel()
                try:
                    await pending_read
                except (asyncio.CancelledError, StopAsyncIteration):
                    pass

    async def _backoff(self, attempt: int, reason: str, cancel: Optional[CancelToken]) -> bool:
        """Interruptible sleep before a retry. Returns False if cancelled."""
        wait = min(self.backoff_base * (2 ** attempt), MAX_BACKOFF)
        _log.info("Retrying in %.1fs (attempt %d/%d) reason=%s",
                  wait, attempt + 1, self.max_retries, reason)
        remaining = wait
        while remaining > 0:
            await asyncio.sleep(min(POLL_INTERVAL, remaining))
            remaining -= POLL_INTERVAL
            if is_cancelled(cancel):
                return False
        return True

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        cancel: Optional[CancelToken] = None,
    ) -> AsyncIterator[StreamToken]:
        """Stream one completion as tokens.

        Retries rate limits, server errors and connection failures with
        exponential backoff, but only until the first token has been
        yielded; after that a failure is raised as ModelRequestError.
        """
        if self._client is None:
            raise RuntimeError("StreamingClient must be used as an async context manager")

        url, headers, payload = self._build_request(messages)
        _log.info("stream: url=%s model=%s msgs=%d", url, self.model, len(messages))
        t0 = time.time()

        for attempt in range(self.max_retries + 1):
            yielded = False
            try:
                async with self._client.stream("POST", url, headers=headers, json=payload) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        response.raise_for_status()
                    async with aclosing(self._read_events(response, cancel)) as events:
                        async for token in events:
                            yielded = True
                            yield token
                _log.info("stream complete in %.1fs", time.time() - t0)
                return

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                _log.warning("HTTP error %d on attempt %d/%d: %s",
                             status, attempt + 1, self.max_retries, e.response.text[:500])
                if yielded or status not in RETRY_STATUSES or attempt >= self.max_retries:
                    raise ModelRequestError(f"API error {status}: {e.response.text[:500]}") from e
                if not await self._backoff(attempt, f"HTTP {status}", cancel):
                    return

            except (httpx.TimeoutException, httpx.RequestError) as e:
                _log.warning("Connection error on attempt %d/%d: %s: %s",
                             attempt + 1, self.max_retries, type(e).__name__, e)
                if yielded or attempt >= self.max_retries:
                    raise ModelRequestError(f"Request failed: {type(e).__name__}: {e}") from e
                if not await self._backoff(attempt, type(e).__name__, cancel):
                    return
