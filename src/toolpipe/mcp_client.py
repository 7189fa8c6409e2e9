"""JSON-RPC 2.0 client for a tool server speaking over a child's stdio.

Messages are single JSON values terminated by a newline. Requests are
pipelined: any number may be in flight, and responses are routed back
to their caller by id regardless of arrival order.

    client = MCPClient("files", MCPServerConfig(command="my-server"))
    await client.connect()
    tools = await client.list_tools()
    result = await client.call_tool("search", {"query": "foo"})
    await client.disconnect()
"""

import asyncio
import json
import os
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from . import __version__
from .errors import TransportError, TransportErrorKind
from .logger import get_logger, truncate
from .tools.shell_tools import kill_process_tree

log = get_logger("transport")

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "toolpipe", "version": __version__}
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_HANDSHAKE_TIMEOUT = 30.0
METHOD_NOT_FOUND = -32601

NotificationHandler = Callable[[str, Any], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class MCPServerConfig:
    """How to launch one tool server."""
    command: str
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    # Failing to start a required server aborts startup
    required: bool = False


@dataclass
class MCPTool:
    name: str
    description: str = ""
    input_schema: Optional[Dict[str, Any]] = None
    server_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], server_name: Optional[str] = None) -> "MCPTool":
        return cls(
            name=str(data["name"]),
            description=data.get("description") or "",
            input_schema=data.get("inputSchema"),
            server_name=server_name,
        )


@dataclass
class MCPToolCallResult:
    content: List[Dict[str, Any]] = field(default_factory=list)
    # The tool ran and reported failure (as opposed to a transport failure)
    is_error: bool = False

    @property
    def text(self) -> str:
        """Text content blocks joined with newlines."""
        return "\n".join(
            block.get("text", "") for block in self.content
            if isinstance(block, dict) and block.get("type") == "text"
        )


@dataclass
class PendingRequest:
    id: int
    future: "asyncio.Future[Any]"
    method: str
    created_at: float = field(default_factory=time.monotonic)


class MCPClient:
    """Owns one child process and the table of requests awaiting replies."""

    def __init__(
        self,
        name: str,
        config: MCPServerConfig,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        on_notification: Optional[NotificationHandler] = None,
    ):
        self.name = name
        self.config = config
        self.request_timeout = request_timeout
        self.handshake_timeout = handshake_timeout
        self.on_notification = on_notification
        self.server_info: Dict[str, Any] = {}
        self.dropped_frames = 0

        self._process: Optional[asyncio.subprocess.Process] = None
        self._pending: Dict[int, PendingRequest] = {}
        self._next_id = 1
        self._buffer = bytearray()
        self._write_lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []
        self._background: Set[asyncio.Task] = set()
        self._initialized = False
        self._closed = False

    # ── Lifecycle ────────────────────────────────────────────────

    async def connect(self) -> None:
        """Spawn the server and complete the initialize handshake."""
        if self.is_connected():
            return
        env = {**os.environ, **self.config.env}
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.config.command, *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except (OSError, ValueError) as e:
            log.error("[%s] spawn failed: %s %s: %s", self.name, self.config.command,
                      " ".join(self.config.args), e)
            raise TransportError(
                TransportErrorKind.SPAWN_FAILED,
                f"could not start '{self.config.command}': {e}",
            ) from e

        log.info("[%s] spawned pid=%d: %s %s", self.name, self._process.pid,
                 self.config.command, " ".join(self.config.args))
        self._closed = False
        self._buffer.clear()
        self._next_id = 1
        self._tasks = [
            asyncio.create_task(self._read_stdout(self._process)),
            asyncio.create_task(self._drain_stderr(self._process)),
        ]

        try:
            result = await self.send_request("initialize", {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            }, timeout=self.handshake_timeout)
            if not isinstance(result, dict):
                raise TransportError(TransportErrorKind.MALFORMED_FRAME,
                                     f"initialize returned {type(result).__name__}, expected object")
            await self.send_notification("notifications/initialized")
        except TransportError as e:
            log.error("[%s] handshake failed: %s", self.name, e)
            await self.disconnect()
            raise TransportError(
                TransportErrorKind.HANDSHAKE_FAILED,
                f"handshake with '{self.name}' failed: {e.message}",
                code=e.code, data=e.data,
            ) from e

        self.server_info = result.get("serverInfo") or {}
        self._initialized = True
        log.info("[%s] initialized (server=%s protocol=%s)", self.name,
                 self.server_info.get("name", "?"), result.get("protocolVersion", "?"))

    async def disconnect(self) -> None:
        """Terminate the server and fail every outstanding request. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._initialized = False
        self._reject_all(f"connection to '{self.name}' closed")

        process, self._process = self._process, None
        if process is not None:
            if process.returncode is None:
                log.info("[%s] terminating pid=%d", self.name, process.pid)
                try:
                    process.stdin.close()
                except (OSError, RuntimeError):
                    pass
                await asyncio.to_thread(kill_process_tree, process.pid)
            await process.wait()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    def is_connected(self) -> bool:
        return (
            self._initialized
            and not self._closed
            and self._process is not None
            and self._process.returncode is None
        )

    # ── Requests ─────────────────────────────────────────────────

    async def send_request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a request and wait for its result.

        Raises:
            TransportError: ``timeout`` if no reply arrives in time,
                ``disconnected`` if the server goes away first,
                ``remote-error`` if the server answers with an error.
        """
        if self._process is None or self._closed:
            raise TransportError(TransportErrorKind.DISCONNECTED,
                                 f"'{self.name}' is not connected")
        timeout = self.request_timeout if timeout is None else timeout

        request_id = self._next_id
        self._next_id += 1
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingRequest(request_id, future, method)

        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        try:
            await self._write(message)
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("[%s] request #%d %s timed out after %ss",
                        self.name, request_id, method, timeout)
            raise TransportError(TransportErrorKind.TIMEOUT,
                                 f"{method} timed out after {timeout:g}s") from None
        finally:
            self._pending.pop(request_id, None)
            if future.done() and not future.cancelled():
                # Mark a rejection nobody awaited as retrieved
                future.exception()

    async def send_notification(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        if self._process is None or self._closed:
            raise TransportError(TransportErrorKind.DISCONNECTED,
                                 f"'{self.name}' is not connected")
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._write(message)

    async def list_tools(self) -> List[MCPTool]:
        self._require_initialized()
        tools: List[MCPTool] = []
        cursor = None
        while True:
            result = await self.send_request("tools/list", {"cursor": cursor} if cursor else {})
            if not isinstance(result, dict):
                raise TransportError(TransportErrorKind.MALFORMED_FRAME, "tools/list result is not an object")
            tools.extend(MCPTool.from_dict(t) for t in result.get("tools", []) if isinstance(t, dict) and "name" in t)
            cursor = result.get("nextCursor")
            if not cursor:
                break
        log.info("[%s] %d tools listed", self.name, len(tools))
        return tools

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> MCPToolCallResult:
        self._require_initialized()
        result = await self.send_request("tools/call", {"name": name, "arguments": arguments or {}})
        if not isinstance(result, dict):
            raise TransportError(TransportErrorKind.MALFORMED_FRAME, "tools/call result is not an object")
        content = result.get("content") or []
        return MCPToolCallResult(
            content=[c for c in content if isinstance(c, dict)],
            is_error=bool(result.get("isError", False)),
        )

    def _require_initialized(self) -> None:
        if not self.is_connected():
            raise TransportError(TransportErrorKind.DISCONNECTED,
                                 f"'{self.name}' is not connected")

    # ── Wire I/O ─────────────────────────────────────────────────

    async def _write(self, message: Dict[str, Any]) -> None:
        data = (json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8")
        async with self._write_lock:
            process = self._process
            if process is None or process.stdin is None:
                raise TransportError(TransportErrorKind.DISCONNECTED,
                                     f"'{self.name}' is not connected")
            try:
                process.stdin.write(data)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise TransportError(TransportErrorKind.DISCONNECTED,
                                     f"write to '{self.name}' failed: {e}") from e
        log.debug("[%s] -> %s", self.name, truncate(data.decode("utf-8")))

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        try:
            while True:
                chunk = await process.stdout.read(65536)
                if not chunk:
                    break
                self._feed(chunk)
        finally:
            self._on_stream_closed(process)

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            log.debug("[%s stderr] %s", self.name, line.decode("utf-8", errors="replace").rstrip())

    def _on_stream_closed(self, process: asyncio.subprocess.Process) -> None:
        if self._closed:
            return
        log.warning("[%s] server stdout closed (pid=%d returncode=%s), %d pending request(s) failed",
                    self.name, process.pid, process.returncode, len(self._pending))
        self._initialized = False
        self._reject_all(f"'{self.name}' exited")

    def _reject_all(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            if not entry.future.done():
                entry.future.set_exception(
                    TransportError(TransportErrorKind.DISCONNECTED, f"{entry.method}: {reason}"))

    # ── Framing and dispatch ─────────────────────────────────────

    def _feed(self, data: bytes) -> None:
        """Append raw bytes and handle every complete line.

        The trailing partial line stays buffered, so any chunking of the
        same byte stream produces the same messages.
        """
        self._buffer.extend(data)
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[:newline + 1]
            self._handle_line(line)

    def _drop(self, reason: str, raw: Any) -> None:
        self.dropped_frames += 1
        log.warning("[%s] %s: dropped frame (%s): %s", self.name,
                    TransportErrorKind.MALFORMED_FRAME.value, reason, truncate(str(raw)))

    def _handle_line(self, line: bytes) -> None:
        line = line.strip()
        if not line:
            return
        try:
            message = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            self._drop(f"undecodable: {e}", line)
            return
        if not isinstance(message, dict):
            self._drop("not an object", message)
            return
        self._dispatch(message)

    def _dispatch(self, message: Dict[str, Any]) -> None:
        msg_id = message.get("id")
        method = message.get("method")

        if isinstance(method, str):
            if msg_id is None:
                self._handle_notification(method, message.get("params"))
            else:
                self._spawn(self._answer_server_request(msg_id, method))
            return

        if msg_id is None:
            self._drop("no id and no method", message)
            return
        entry = self._pending.pop(msg_id, None) if type(msg_id) is int else None
        if entry is None:
            self._drop(f"no pending request with id {msg_id!r}", message)
            return
        if entry.future.done():
            return

        log.debug("[%s] <- #%d %s (%.0fms)", self.name, entry.id, entry.method,
                  (time.monotonic() - entry.created_at) * 1000)
        if "error" in message:
            error = message["error"] if isinstance(message["error"], dict) else {"message": str(message["error"])}
            entry.future.set_exception(TransportError(
                TransportErrorKind.REMOTE_ERROR,
                str(error.get("message", "unknown error")),
                code=error.get("code"),
                data=error.get("data"),
            ))
        elif "result" in message:
            entry.future.set_result(message["result"])
        else:
            entry.future.set_exception(TransportError(
                TransportErrorKind.MALFORMED_FRAME, "response has neither result nor error"))

    def _handle_notification(self, method: str, params: Any) -> None:
        log.debug("[%s] notification %s %s", self.name, method, truncate(json.dumps(params)))
        if self.on_notification is None:
            return
        try:
            outcome = self.on_notification(method, params)
        except Exception as e:
            log.error("[%s] notification handler failed for %s: %s", self.name, method, e)
            return
        if asyncio.iscoroutine(outcome):
            self._spawn(outcome)

    async def _answer_server_request(self, msg_id: Any, method: str) -> None:
        if method == "ping":
            reply: Dict[str, Any] = {"jsonrpc": "2.0", "id": msg_id, "result": {}}
        else:
            log.info("[%s] unsupported server request %s", self.name, method)
            reply = {"jsonrpc": "2.0", "id": msg_id,
                     "error": {"code": METHOD_NOT_FOUND, "message": "Method not found"}}
        try:
            await self._write(reply)
        except TransportError as e:
            log.warning("[%s] could not answer %s: %s", self.name, method, e)

    def _spawn(self, coro: Awaitable[None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No running loop (bytes fed synchronously in tests)
            coro.close()
            return
        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
