"""Built-in tool implementations.

Each handler takes the parsed argument dict and the working directory and
returns a ToolResult. Conditions the caller should classify (missing
file, unreadable file) are raised as ToolExecutionError; the dispatcher
turns those into failed results.
"""

import asyncio
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict

from .errors import ParseError, ToolErrorKind, ToolExecutionError
from .logger import get_logger, truncate as log_truncate
from .tool_registry import BuiltinTool, get_tool_def
from .tools.file_tools import delete_file, glob_files, list_directory, read_file, write_file
from .tools.result import FileDiff, ToolResult
from .tools.search_tools import grep_files
from .tools.shell_tools import DEFAULT_COMMAND_TIMEOUT, git_status, run_shell_command
from .undo import ChangeType, FileChange, UndoLog, capture_before_state

log = get_logger("tools")

MAX_OUTPUT = 15000
MAX_GLOB_RESULTS = 100
MAX_GREP_RESULTS = 50


def truncate(text: str, max_chars: int = MAX_OUTPUT) -> str:
    """Cap tool output, noting how much was cut."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + f"\n...[truncated, {len(text) - max_chars} chars omitted]"


def resolve_path(cwd: str, path: str) -> Path:
    return (Path(cwd) / path).resolve()


def count_lines(text: str) -> int:
    return len(text.split("\n"))


def _require(tool: BuiltinTool, args: Dict[str, Any]) -> None:
    tool_def = get_tool_def(tool.value)
    missing = [p for p in tool_def.required_params if not isinstance(args.get(p), str)]
    if missing:
        raise ParseError(f"{tool.value} needs {', '.join(missing)}", raw=repr(args))


class ToolHandlers:
    """Runs built-in tools, recording file mutations in the undo log."""

    def __init__(self, undo_log: UndoLog, command_timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.undo_log = undo_log
        self.command_timeout = command_timeout
        self._handlers: Dict[BuiltinTool, Callable[[Dict[str, Any], str], Awaitable[ToolResult]]] = {
            BuiltinTool.READ: self.handle_read,
            BuiltinTool.WRITE: self.handle_write,
            BuiltinTool.EDIT: self.handle_edit,
            BuiltinTool.DELETE: self.handle_delete,
            BuiltinTool.BASH: self.handle_bash,
            BuiltinTool.GREP: self.handle_grep,
            BuiltinTool.GLOB: self.handle_glob,
            BuiltinTool.LS: self.handle_ls,
            BuiltinTool.GIT: self.handle_git,
        }

    async def run(self, tool: BuiltinTool, args: Dict[str, Any], cwd: str) -> ToolResult:
        _require(tool, args)
        return await self._handlers[tool](args, cwd)

    def _capture(self, tool: str, path: Path) -> Any:
        try:
            return capture_before_state(str(path))
        except (OSError, UnicodeDecodeError) as e:
            raise ToolExecutionError(
                ToolErrorKind.IO_FAILURE,
                f"Cannot snapshot {path} for undo, refusing to modify it: {e}",
                tool=tool,
            ) from e

    # ── File tools ───────────────────────────────────────────────

    async def handle_read(self, args: Dict[str, Any], cwd: str) -> ToolResult:
        path = args["path"]
        try:
            content = await read_file(str(resolve_path(cwd, path)))
        except FileNotFoundError as e:
            raise ToolExecutionError(ToolErrorKind.NOT_FOUND, f"File not found: {path}", tool="read") from e
        except (OSError, UnicodeDecodeError) as e:
            raise ToolExecutionError(ToolErrorKind.IO_FAILURE, f"Cannot read {path}: {e}", tool="read") from e

        lines = content.split("\n")
        numbered = "\n".join(f"{i:4d} | {line}" for i, line in enumerate(lines, 1))
        return ToolResult(tool="read", result=truncate(numbered), success=True,
                          file_path=path, lines_changed=len(lines))

    async def handle_write(self, args: Dict[str, Any], cwd: str) -> ToolResult:
        path, content = args["path"], args["content"]
        abs_path = resolve_path(cwd, path)
        if abs_path.is_dir():
            raise ToolExecutionError(ToolErrorKind.IO_FAILURE, f"{path} is a directory", tool="write")

        previous = self._capture("write", abs_path)
        self.undo_log.track_change(FileChange(
            type=ChangeType.WRITE,
            file_path=str(abs_path),
            previous_content=previous,
            new_content=content,
            description=f"write {path}",
        ))
        try:
            await write_file(str(abs_path), content)
        except OSError as e:
            raise ToolExecutionError(ToolErrorKind.IO_FAILURE, f"Cannot write {path}: {e}", tool="write") from e

        lines = count_lines(content)
        log.info("write %s (%d lines, %s)", abs_path, lines, "new" if previous is None else "overwrite")
        return ToolResult(tool="write", result=f"Wrote {lines} lines to {path}", success=True,
                          file_path=path, lines_changed=lines)

    async def handle_edit(self, args: Dict[str, Any], cwd: str) -> ToolResult:
        path, old_str, new_str = args["path"], args["old_str"], args["new_str"]
        abs_path = resolve_path(cwd, path)
        if not abs_path.is_file():
            raise ToolExecutionError(ToolErrorKind.NOT_FOUND, f"File not found: {path}", tool="edit")

        content = self._capture("edit", abs_path)
        if not old_str or old_str not in content:
            return ToolResult(tool="edit", result=f"String not found in {path}. No change made.",
                              success=False, file_path=path)

        updated = content.replace(old_str, new_str, 1)
        self.undo_log.track_change(FileChange(
            type=ChangeType.EDIT,
            file_path=str(abs_path),
            previous_content=content,
            new_content=updated,
            description=f"edit {path}",
        ))
        try:
            await write_file(str(abs_path), updated, create_dirs=False)
        except OSError as e:
            raise ToolExecutionError(ToolErrorKind.IO_FAILURE, f"Cannot write {path}: {e}", tool="edit") from e

        added, removed = count_lines(new_str), count_lines(old_str)
        delta = added - removed
        delta_str = f"+{delta}" if delta >= 0 else str(delta)
        log.info("edit %s (%s lines)", abs_path, delta_str)
        return ToolResult(
            tool="edit",
            result=f"Updated {path} ({delta_str} lines)",
            success=True,
            diff=FileDiff(file_path=path, old_str=old_str, new_str=new_str),
            file_path=path,
            lines_changed=added,
        )

    async def handle_delete(self, args: Dict[str, Any], cwd: str) -> ToolResult:
        path = args["path"]
        abs_path = resolve_path(cwd, path)
        if not abs_path.exists():
            raise ToolExecutionError(ToolErrorKind.NOT_FOUND, f"File not found: {path}", tool="delete")
        if abs_path.is_dir():
            raise ToolExecutionError(ToolErrorKind.IO_FAILURE, f"{path} is a directory", tool="delete")

        previous = self._capture("delete", abs_path)
        self.undo_log.track_change(FileChange(
            type=ChangeType.DELETE,
            file_path=str(abs_path),
            previous_content=previous,
            new_content=None,
            description=f"delete {path}",
        ))
        try:
            await delete_file(str(abs_path))
        except OSError as e:
            raise ToolExecutionError(ToolErrorKind.IO_FAILURE, f"Cannot delete {path}: {e}", tool="delete") from e

        log.info("delete %s", abs_path)
        return ToolResult(tool="delete", result=f"Deleted {path}", success=True, file_path=path)

    # ── Shell and search ─────────────────────────────────────────

    async def handle_bash(self, args: Dict[str, Any], cwd: str) -> ToolResult:
        command = args["command"]
        log.info("bash: %s", log_truncate(command))
        res = await run_shell_command(command, cwd=cwd, timeout=self.command_timeout)
        success = res.return_code == 0 and not res.timed_out
        if not success:
            log.info("bash exit=%d timed_out=%s", res.return_code, res.timed_out)
        return ToolResult(tool="bash", result=truncate(res.output or "(no output)"),
                          success=success, command=command)

    async def handle_grep(self, args: Dict[str, Any], cwd: str) -> ToolResult:
        pattern = args["pattern"]
        file_glob = args.get("glob") or None
        try:
            matches = await asyncio.to_thread(grep_files, cwd, pattern, file_glob, MAX_GREP_RESULTS)
        except re.error as e:
            return ToolResult(tool="grep", result=f"Invalid pattern {pattern!r}: {e}", success=False)
        except FileNotFoundError as e:
            raise ToolExecutionError(ToolErrorKind.NOT_FOUND, str(e), tool="grep") from e
        if not matches:
            return ToolResult(tool="grep", result="No matches.", success=True)
        return ToolResult(tool="grep", result=truncate("\n".join(m.format() for m in matches)), success=True)

    async def handle_glob(self, args: Dict[str, Any], cwd: str) -> ToolResult:
        pattern = args["pattern"]
        try:
            files, total = await asyncio.to_thread(glob_files, cwd, pattern, MAX_GLOB_RESULTS)
        except FileNotFoundError as e:
            raise ToolExecutionError(ToolErrorKind.NOT_FOUND, str(e), tool="glob") from e
        except (ValueError, NotImplementedError) as e:
            return ToolResult(tool="glob", result=f"Invalid pattern {pattern!r}: {e}", success=False)
        if not files:
            return ToolResult(tool="glob", result="No files found.", success=True)
        result = "\n".join(files)
        if total > len(files):
            result += f"\n...(+{total - len(files)} more)"
        return ToolResult(tool="glob", result=result, success=True)

    async def handle_ls(self, args: Dict[str, Any], cwd: str) -> ToolResult:
        path = args.get("path") or "."
        try:
            entries = list_directory(str(resolve_path(cwd, path)))
        except FileNotFoundError as e:
            raise ToolExecutionError(ToolErrorKind.NOT_FOUND, f"Directory not found: {path}", tool="ls") from e
        except OSError as e:
            raise ToolExecutionError(ToolErrorKind.IO_FAILURE, f"Cannot list {path}: {e}", tool="ls") from e
        result = "\n".join(f"  {entry}" for entry in entries) or "(empty)"
        return ToolResult(tool="ls", result=result, success=True)

    async def handle_git(self, args: Dict[str, Any], cwd: str) -> ToolResult:
        res = await git_status(cwd)
        if res.return_code != 0:
            return ToolResult(tool="git", result=f"Git error: {res.output.strip()}", success=False)
        return ToolResult(tool="git", result=res.stdout, success=True)
