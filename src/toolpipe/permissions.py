"""Permission gate: decides whether a tool call needs human approval.

The decision table lives in should_ask_permission() and nowhere else.
The current mode is held by a PermissionGate owned by the orchestration
layer and passed explicitly into every dispatch call.
"""

from enum import Enum
from typing import Iterable, Optional, Set, Union

from .logger import get_logger
from .tool_registry import TOOL_BY_NAME, ToolCategory

log = get_logger("permissions")


class PermissionMode(str, Enum):
    AUTO = "auto"
    ASK = "ask"
    STRICT = "strict"


DEFAULT_PERMISSION_MODE = PermissionMode.ASK

_MODE_DESCRIPTIONS = {
    PermissionMode.AUTO: "Run every tool without asking",
    PermissionMode.ASK: "Ask before write/edit/delete/bash and remote tools",
    PermissionMode.STRICT: "Ask before every non-read-only tool, ignoring 'always allow'",
}

_CATEGORY_ICONS = {
    ToolCategory.SAFE: "ℹ️",
    ToolCategory.MODERATE: "✏️",
    ToolCategory.DANGEROUS: "⚠️",
}

PROMPT_PREVIEW_CHARS = 80
WRITE_PREVIEW_LINES = 15


def parse_permission_mode(value: Union[str, PermissionMode]) -> PermissionMode:
    """Coerce a string into a PermissionMode, raising ValueError if unknown."""
    if isinstance(value, PermissionMode):
        return value
    try:
        return PermissionMode(str(value).strip().lower())
    except ValueError:
        valid = ", ".join(m.value for m in PermissionMode)
        raise ValueError(f"Unknown permission mode '{value}' (expected one of: {valid})")


def get_tool_category(tool: str) -> ToolCategory:
    """Risk category of a tool; anything not built in is dangerous."""
    tool_def = TOOL_BY_NAME.get(tool)
    if tool_def is None:
        return ToolCategory.DANGEROUS
    return tool_def.category


def should_ask_permission(
    tool: str,
    mode: PermissionMode,
    allow_list: Optional[Iterable[str]] = None,
) -> bool:
    """Return True if the user must confirm this tool before it runs.

    Read-only tools never ask. In ``auto`` nothing asks. ``ask`` and
    ``strict`` both ask for moderate and dangerous tools; only ``ask``
    honours the session allow list built from "always allow" answers.
    """
    category = get_tool_category(tool)
    if category == ToolCategory.SAFE:
        return False
    if mode == PermissionMode.AUTO:
        return False
    if mode == PermissionMode.ASK:
        return not (allow_list and tool in allow_list)
    return True


def describe_permission_mode(mode: PermissionMode) -> str:
    return _MODE_DESCRIPTIONS.get(mode, "Unknown")


def format_permission_prompt(tool: str, args: str) -> str:
    """Text shown to the user before approving or denying a tool call."""
    icon = _CATEGORY_ICONS[get_tool_category(tool)]
    preview = " ".join(args.split())
    if len(preview) > PROMPT_PREVIEW_CHARS:
        preview = preview[:PROMPT_PREVIEW_CHARS - 3] + "..."
    return f"{icon} [{tool}] {preview}"


def generate_diff_preview(file_path: str, old_str: str, new_str: str) -> str:
    """Removed lines as '-' and added lines as '+' for an edit prompt."""
    lines = [f"  File: {file_path}"]
    lines.extend(f"  - {line}" for line in old_str.split("\n"))
    lines.extend(f"  + {line}" for line in new_str.split("\n"))
    return "\n".join(lines) + "\n"


def generate_write_preview(file_path: str, content: str, is_new: bool) -> str:
    """First lines of a pending write, for the approval prompt."""
    lines = content.split("\n")
    out = [
        f"  File: {file_path} ({'NEW' if is_new else 'OVERWRITE'})",
        f"  {len(lines)} lines",
    ]
    out.extend(f"  + {line}" for line in lines[:WRITE_PREVIEW_LINES])
    if len(lines) > WRITE_PREVIEW_LINES:
        out.append(f"  ... +{len(lines) - WRITE_PREVIEW_LINES} more lines")
    return "\n".join(out) + "\n"


class PermissionGate:
    """Current permission mode plus the session's "always allow" list."""

    def __init__(self, mode: Union[str, PermissionMode] = DEFAULT_PERMISSION_MODE):
        self._mode = parse_permission_mode(mode)
        self._allow_list: Set[str] = set()

    def get_permission_mode(self) -> PermissionMode:
        return self._mode

    def set_permission_mode(self, mode: Union[str, PermissionMode]) -> PermissionMode:
        new_mode = parse_permission_mode(mode)
        if new_mode != self._mode:
            log.info("Permission mode %s -> %s", self._mode.value, new_mode.value)
        self._mode = new_mode
        return new_mode

    @property
    def allow_list(self) -> Set[str]:
        return set(self._allow_list)

    def allow_always(self, tool: str) -> None:
        log.info("Tool '%s' added to session allow list", tool)
        self._allow_list.add(tool)

    def clear_allow_list(self) -> None:
        self._allow_list.clear()

    def needs_approval(self, tool: str) -> bool:
        return should_ask_permission(tool, self._mode, self._allow_list)
