"""Exception hierarchy for the tool-calling pipeline.

Each exception carries a ``kind`` so callers can branch on the failure
mode without string matching. Tool execution errors never escape the
dispatcher: they are converted into a failed ToolResult there.
"""

from enum import Enum
from typing import Any, Optional


class TransportErrorKind(str, Enum):
    SPAWN_FAILED = "spawn-failed"
    HANDSHAKE_FAILED = "handshake-failed"
    DISCONNECTED = "disconnected"
    TIMEOUT = "timeout"
    MALFORMED_FRAME = "malformed-frame"
    # The server answered the request with a JSON-RPC error object
    REMOTE_ERROR = "remote-error"


class ToolErrorKind(str, Enum):
    NOT_FOUND = "not-found"
    PERMISSION_DENIED = "permission-denied"
    IO_FAILURE = "io-failure"
    REMOTE_ERROR = "remote-error"


class ParseErrorKind(str, Enum):
    MALFORMED_ARGUMENTS = "malformed-arguments"


class ToolpipeError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, kind: Enum, message: str):
        self.kind = kind
        self.message = message
        super().__init__(f"[{kind.value}] {message}")


class TransportError(ToolpipeError):
    """Failure talking to a remote tool server over its stdio pipes."""

    def __init__(
        self,
        kind: TransportErrorKind,
        message: str,
        code: Optional[int] = None,
        data: Any = None,
    ):
        self.code = code
        self.data = data
        super().__init__(kind, message)


class ToolExecutionError(ToolpipeError):
    """A tool call could not be carried out."""

    def __init__(self, kind: ToolErrorKind, message: str, tool: str = ""):
        self.tool = tool
        super().__init__(kind, message)


class ParseError(ToolpipeError):
    """A tool-call directive was recognised but its arguments are unusable."""

    def __init__(self, message: str, raw: str = ""):
        self.raw = raw
        super().__init__(ParseErrorKind.MALFORMED_ARGUMENTS, message)
