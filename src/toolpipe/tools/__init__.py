"""Built-in tool primitives and the shared result model."""

from .result import FileDiff, ToolResult
from .file_tools import (
    read_file,
    write_file,
    delete_file,
    list_directory,
    glob_files,
)
from .shell_tools import ShellResult, git_status, kill_process_tree, run_shell_command
from .search_tools import SearchMatch, grep_files

__all__ = [
    "FileDiff",
    "ToolResult",
    "read_file",
    "write_file",
    "delete_file",
    "list_directory",
    "glob_files",
    "ShellResult",
    "git_status",
    "kill_process_tree",
    "run_shell_command",
    "SearchMatch",
    "grep_files",
]
