"""Always-on file log for toolpipe.

Every module logs through a child of the ``toolpipe`` logger:

    from .logger import get_logger
    log = get_logger("transport")
    log.info("[%s] spawned pid=%d", name, pid)

Records go to ``<workspace>/.toolpipe_output/toolpipe.log`` (rotated at
5 MB, five backups), so a failed session can be replayed from the file:
dropped frames, child spawns and exits, tool runs and undos all land
there. Set TOOLPIPE_DEBUG to mirror the log on stderr, and
TOOLPIPE_LOG_LEVEL (e.g. ``INFO``) to raise the threshold.
"""

import logging
import os
import sys
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

ROOT_LOGGER = "toolpipe"
LOG_DIR_NAME = ".toolpipe_output"
LOG_FILE_NAME = "toolpipe.log"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 5

_FORMAT = logging.Formatter(
    fmt="%(asctime)s.%(msecs)03d | %(levelname)-5s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

_file_handler: Optional[RotatingFileHandler] = None
_stderr_handler: Optional[logging.Handler] = None


def _resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        level = os.environ.get("TOOLPIPE_LOG_LEVEL", logging.DEBUG)
    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        return resolved if isinstance(resolved, int) else logging.DEBUG
    return level


def log_path() -> Optional[Path]:
    """Path of the active log file, or None before the first log call."""
    return Path(_file_handler.baseFilename) if _file_handler else None


def init_logging(workspace: Optional[str] = None, level: Union[int, str, None] = None) -> Path:
    """Point the file log at ``workspace`` (default: the current directory).

    Safe to call repeatedly. Calling it with a different workspace after
    modules have already logged moves the file handler there, so the
    lazily created default log is only used until the CLI knows its
    workspace.
    """
    global _file_handler, _stderr_handler

    target = Path(workspace or Path.cwd()) / LOG_DIR_NAME / LOG_FILE_NAME
    resolved_level = _resolve_level(level)
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(resolved_level)

    if _file_handler is not None and _file_handler.baseFilename == os.path.abspath(target):
        _file_handler.setLevel(resolved_level)
        return target

    target.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(str(target), maxBytes=MAX_LOG_BYTES,
                                  backupCount=LOG_BACKUPS, encoding="utf-8")
    handler.setLevel(resolved_level)
    handler.setFormatter(_FORMAT)

    if _file_handler is not None:
        root.info("Log continues in %s", target)
        root.removeHandler(_file_handler)
        _file_handler.close()
    _file_handler = handler
    root.addHandler(handler)

    if os.environ.get("TOOLPIPE_DEBUG") and _stderr_handler is None:
        _stderr_handler = logging.StreamHandler(sys.stderr)
        _stderr_handler.setFormatter(_FORMAT)
        root.addHandler(_stderr_handler)

    root.info("=== toolpipe log === pid=%d python=%s level=%s",
              os.getpid(), sys.version.split()[0], logging.getLevelName(resolved_level))
    return target


def get_logger(name: str) -> logging.Logger:
    """Child logger ``toolpipe.<name>``; opens the default log on first use."""
    if _file_handler is None:
        init_logging()
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def log_exception(logger: logging.Logger, msg: str, exc: BaseException) -> None:
    """Log an exception with full traceback."""
    tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    logger.error("%s: %s\n%s", msg, exc, tb)


def truncate(text: str, max_len: int = 200) -> str:
    """One-line, length-capped form of ``text`` for log messages."""
    if not text:
        return "(empty)"
    flat = text.replace("\n", "\\n")
    if len(flat) <= max_len:
        return flat
    return f"{flat[:max_len]}...[{len(flat)} chars]"
