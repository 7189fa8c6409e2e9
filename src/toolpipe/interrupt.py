"""Cancellation tokens for streaming turns."""

import asyncio
import signal
from dataclasses import dataclass, field
from typing import Optional

from .logger import get_logger

log = get_logger("interrupt")


@dataclass
class CancelToken:
    """Explicit cancellation signal shared by one model turn.

    The streaming client and the stream parser poll ``cancelled``;
    code that wants to block until cancellation awaits ``wait()``.
    """
    reason: str = ""
    _event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "user") -> None:
        if not self._event.is_set():
            log.info("Cancellation requested: %s", reason)
            self.reason = reason
            self._event.set()

    def reset(self) -> None:
        self._event.clear()
        self.reason = ""


def is_cancelled(token: Optional[CancelToken]) -> bool:
    """True when a token was supplied and has fired."""
    return token is not None and token.cancelled


class SigintCanceller:
    """Route Ctrl+C to a CancelToken while a turn is streaming.

    A second Ctrl+C while the token is already set falls through to the
    default handler so the user can still hard-exit.
    """

    def __init__(self, token: CancelToken):
        self.token = token
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _on_sigint(self) -> None:
        if self.token.cancelled:
            self.stop()
            raise KeyboardInterrupt()
        self.token.cancel("ctrl-c")

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        try:
            self._loop.add_signal_handler(signal.SIGINT, self._on_sigint)
        except (NotImplementedError, RuntimeError):
            # Windows event loops and non-main threads
            self._loop = None

    def stop(self) -> None:
        if self._loop is not None:
            self._loop.remove_signal_handler(signal.SIGINT)
            self._loop = None

    def __enter__(self) -> "SigintCanceller":
        self.start()
        return self

    def __exit__(self, *args) -> None:
        self.stop()
