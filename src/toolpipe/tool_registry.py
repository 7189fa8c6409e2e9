"""Single source of truth for the built-in tool set.

Every built-in tool is defined ONCE here. The argument parser, the
permission gate, the dispatcher and the tool help text all derive from
this module, so adding a tool means adding one ToolDef.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import time

from .logger import get_logger

log = get_logger("registry")


class ToolCategory(str, Enum):
    SAFE = "safe"
    MODERATE = "moderate"
    DANGEROUS = "dangerous"


class BuiltinTool(str, Enum):
    """The closed set of tools executed in-process."""
    READ = "read"
    WRITE = "write"
    EDIT = "edit"
    DELETE = "delete"
    BASH = "bash"
    GREP = "grep"
    GLOB = "glob"
    LS = "ls"
    GIT = "git"


# ── Tool Definition ──────────────────────────────────────────────

@dataclass
class ToolParam:
    """Metadata for a single tool argument."""
    name: str
    required: bool = False
    description: str = ""


@dataclass
class ToolDef:
    """Canonical definition of a built-in tool.

    ``body_format`` documents the plain-text argument block accepted
    between the markers; a JSON object is always accepted as well.
    """
    tool: BuiltinTool
    category: ToolCategory
    params: List[ToolParam] = field(default_factory=list)
    body_format: str = ""
    description: str = ""

    @property
    def name(self) -> str:
        return self.tool.value

    @property
    def required_params(self) -> List[str]:
        return [p.name for p in self.params if p.required]


# ── The Registry ─────────────────────────────────────────────────

TOOL_DEFS: List[ToolDef] = [
    ToolDef(BuiltinTool.READ, ToolCategory.SAFE,
            params=[ToolParam("path", required=True)],
            body_format="path",
            description="Read a file with line numbers"),
    ToolDef(BuiltinTool.WRITE, ToolCategory.MODERATE,
            params=[ToolParam("path", required=True),
                    ToolParam("content", required=True)],
            body_format="path\\ncontent",
            description="Create or overwrite a file"),
    ToolDef(BuiltinTool.EDIT, ToolCategory.MODERATE,
            params=[ToolParam("path", required=True),
                    ToolParam("old_str", required=True),
                    ToolParam("new_str", required=True)],
            body_format="path\\n<<<\\nold text\\n>>>\\nnew text",
            description="Replace the first occurrence of a string in a file"),
    ToolDef(BuiltinTool.DELETE, ToolCategory.DANGEROUS,
            params=[ToolParam("path", required=True)],
            body_format="path",
            description="Delete a file"),
    ToolDef(BuiltinTool.BASH, ToolCategory.DANGEROUS,
            params=[ToolParam("command", required=True)],
            body_format="command",
            description="Run a shell command in the working directory"),
    ToolDef(BuiltinTool.GREP, ToolCategory.SAFE,
            params=[ToolParam("pattern", required=True),
                    ToolParam("glob")],
            body_format="pattern[\\nfile glob]",
            description="Search file contents with a regular expression"),
    ToolDef(BuiltinTool.GLOB, ToolCategory.SAFE,
            params=[ToolParam("pattern", required=True)],
            body_format="glob pattern",
            description="Find files by name pattern"),
    ToolDef(BuiltinTool.LS, ToolCategory.SAFE,
            params=[ToolParam("path")],
            body_format="[directory]",
            description="List a directory"),
    ToolDef(BuiltinTool.GIT, ToolCategory.SAFE,
            description="Show branch, short status and recent commits"),
]

# Derived lookups (computed once at import time)
TOOL_NAMES: List[str] = [t.name for t in TOOL_DEFS]
TOOL_BY_NAME: Dict[str, ToolDef] = {t.name: t for t in TOOL_DEFS}


def get_tool_names() -> List[str]:
    """Return canonical list of built-in tool names."""
    return TOOL_NAMES


def get_tool_def(name: str) -> Optional[ToolDef]:
    """Return tool definition by name, or None if it is not a built-in."""
    return TOOL_BY_NAME.get(name)


def as_builtin(name: str) -> Optional[BuiltinTool]:
    """Map a tool name onto the closed built-in set, or None for remote tools."""
    tool_def = TOOL_BY_NAME.get(name)
    return tool_def.tool if tool_def else None


def format_tool_help() -> str:
    """Describe the built-in tools and their markup, one per line."""
    lines = ["Tools are called with <tool:NAME>ARGUMENTS</tool>.",
             "ARGUMENTS may always be a JSON object instead of the plain format.", ""]
    for t in TOOL_DEFS:
        fmt = t.body_format or "(no arguments)"
        lines.append(f"  {t.name:<7} {fmt:<40} {t.description}")
    return "\n".join(lines)


# ── Per-session tool statistics ──────────────────────────────────

@dataclass
class ToolStats:
    """Running totals for one tool name (built-in or remote)."""
    calls: int = 0
    failures: int = 0
    total_ms: float = 0.0
    slowest_ms: float = 0.0
    output_chars: int = 0
    last_error: Optional[str] = None

    @property
    def mean_ms(self) -> float:
        return self.total_ms / self.calls if self.calls else 0.0


class ToolMetrics:
    """Counts, timings and failures of every dispatched tool call.

    Tool calls run one at a time on the event loop, so no locking.
    """

    def __init__(self) -> None:
        self.by_tool: Dict[str, ToolStats] = {}
        self.opened_at = time.monotonic()

    def record(self, tool_name: str, elapsed_ms: float, success: bool,
               error: Optional[str] = None, result_size: int = 0) -> None:
        stats = self.by_tool.setdefault(tool_name, ToolStats())
        stats.calls += 1
        stats.total_ms += elapsed_ms
        stats.slowest_ms = max(stats.slowest_ms, elapsed_ms)
        stats.output_chars += result_size
        if not success:
            stats.failures += 1
            stats.last_error = error
        log.debug("%s took %.1fms ok=%s chars=%d", tool_name, elapsed_ms, success, result_size)

    def summary(self) -> Dict[str, Any]:
        """Totals plus a per-tool breakdown, remote tools marked as such."""
        return {
            "session_s": round(time.monotonic() - self.opened_at, 1),
            "total_calls": sum(s.calls for s in self.by_tool.values()),
            "total_errors": sum(s.failures for s in self.by_tool.values()),
            "per_tool": {
                name: {
                    "remote": name not in TOOL_BY_NAME,
                    "calls": s.calls,
                    "errors": s.failures,
                    "avg_ms": round(s.mean_ms, 1),
                    "max_ms": round(s.slowest_ms, 1),
                }
                for name, s in sorted(self.by_tool.items())
            },
        }


_session_metrics = ToolMetrics()


def get_metrics() -> ToolMetrics:
    """Metrics shared by dispatchers that are not handed their own."""
    return _session_metrics
