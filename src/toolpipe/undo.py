"""Undo log: reversible history of file mutations made by tools."""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Deque, List, Optional

from .logger import get_logger

log = get_logger("undo")

DEFAULT_UNDO_LIMIT = 50


class ChangeType(str, Enum):
    WRITE = "write"
    EDIT = "edit"
    DELETE = "delete"


@dataclass(frozen=True)
class FileChange:
    """One recorded mutation.

    ``previous_content`` is None when the file did not exist before the
    change, so undoing it means deleting the file.
    """
    type: ChangeType
    file_path: str
    previous_content: Optional[str]
    new_content: Optional[str]
    description: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass
class UndoResult:
    success: bool
    message: str
    warning: Optional[str] = None
    change: Optional[FileChange] = None


def read_text_exact(path: Path) -> str:
    """Read text without newline translation so restores are byte-exact."""
    with open(path, "r", encoding="utf-8", newline="") as f:
        return f.read()


def write_text_exact(path: Path, text: str) -> None:
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(text)


def capture_before_state(file_path: str) -> Optional[str]:
    """Return the file's current text, or None if it does not exist.

    Raises OSError/UnicodeDecodeError if the file exists but cannot be
    read as text; callers must not mutate a file they cannot restore.
    """
    path = Path(file_path)
    if not path.exists():
        return None
    return read_text_exact(path)


class UndoLog:
    """Stack of FileChange records, most recent last.

    Bounded to ``limit`` entries; pushing beyond it drops the oldest.
    """

    def __init__(self, limit: int = DEFAULT_UNDO_LIMIT):
        self.limit = limit
        self._stack: Deque[FileChange] = deque(maxlen=limit)

    def track_change(self, change: FileChange) -> None:
        if len(self._stack) == self.limit:
            log.debug("Undo log full (%d), dropping oldest: %s",
                      self.limit, self._stack[0].description)
        self._stack.append(change)
        log.debug("Tracked %s %s (stack=%d)", change.type.value, change.file_path, len(self._stack))

    def get_last_change(self) -> Optional[FileChange]:
        return self._stack[-1] if self._stack else None

    def get_undo_stack(self) -> List[FileChange]:
        return list(self._stack)

    def get_undo_stack_size(self) -> int:
        return len(self._stack)

    def clear_undo_stack(self) -> None:
        self._stack.clear()

    @staticmethod
    def _drift_warning(change: FileChange) -> Optional[str]:
        """Describe how the file differs from what the change left behind."""
        path = Path(change.file_path)
        if change.new_content is None:
            if path.exists():
                return f"{change.file_path} was recreated after it was deleted; overwriting it"
            return None
        if not path.exists():
            return f"{change.file_path} no longer exists; it was removed after the change"
        try:
            current = read_text_exact(path)
        except (OSError, UnicodeDecodeError) as e:
            return f"could not compare current content of {change.file_path}: {e}"
        if current != change.new_content:
            return f"{change.file_path} was modified after the change; those edits are lost"
        return None

    def undo_last_change(self) -> UndoResult:
        """Revert the most recent change. Never raises."""
        if not self._stack:
            return UndoResult(success=False, message="Nothing to undo.")
        change = self._stack.pop()
        warning = self._drift_warning(change)
        if warning:
            log.warning("Undo drift: %s", warning)

        path = Path(change.file_path)
        try:
            if change.previous_content is None:
                if path.exists():
                    path.unlink()
                message = f"Deleted {change.file_path} (it was newly created)"
            else:
                path.parent.mkdir(parents=True, exist_ok=True)
                write_text_exact(path, change.previous_content)
                if change.type == ChangeType.DELETE:
                    message = f"Restored deleted file {change.file_path}"
                elif change.type == ChangeType.EDIT:
                    message = f"Reverted edit to {change.file_path}"
                else:
                    message = f"Restored previous content of {change.file_path}"
        except OSError as e:
            log.error("Undo failed for %s: %s", change.file_path, e)
            return UndoResult(success=False, message=f"Undo failed: {e}", warning=warning, change=change)

        if warning:
            message = f"{message} (warning: {warning})"
        log.info("Undo: %s", message)
        return UndoResult(success=True, message=message, warning=warning, change=change)
