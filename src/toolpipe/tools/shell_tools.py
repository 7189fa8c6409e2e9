"""Shell command execution tools."""

import asyncio
import re
from dataclasses import dataclass
from typing import Optional

import psutil

from ..logger import get_logger

log = get_logger("shell")

DEFAULT_COMMAND_TIMEOUT = 30.0

# CSI and OSC sequences plus single-character escapes
_ANSI_ESCAPE_RE = re.compile(r'\x1b(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~]|\][^\x07]*(?:\x07|\x1b\\))')

# Keeps tab, newline and carriage return
_DANGEROUS_CTRL_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1a\x1c-\x1f\x7f]')


def kill_process_tree(pid: int, timeout: float = 3.0) -> None:
    """Kill a process and all its descendants.

    Uses psutil to walk the process tree and kill children first,
    then the parent.
    """
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    children = []
    try:
        children = parent.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        pass

    # Leaf-to-root order
    for child in reversed(children):
        try:
            child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    try:
        parent.kill()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        pass

    gone, alive = psutil.wait_procs(children + [parent], timeout=timeout)
    for p in alive:
        try:
            p.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass


def sanitize_terminal_output(text: str) -> str:
    """Strip ANSI escape sequences and control characters from command output."""
    text = _ANSI_ESCAPE_RE.sub('', text)
    return _DANGEROUS_CTRL_CHARS.sub('\ufffd', text)


@dataclass
class ShellResult:
    """Result of a shell command execution."""

    stdout: str
    stderr: str
    return_code: int
    timed_out: bool = False

    @property
    def output(self) -> str:
        """stdout followed by stderr."""
        return self.stdout + self.stderr


async def run_shell_command(
    command: str,
    cwd: Optional[str] = None,
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
) -> ShellResult:
    """Execute a shell command, killing its whole process tree on timeout.

    Args:
        command: The command to execute.
        cwd: Working directory for the command.
        timeout: Timeout in seconds.

    Returns:
        ShellResult with stdout, stderr, and return code.
    """
    try:
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=cwd,
        )
    except OSError as e:
        log.error("Failed to start command %r: %s", command, e)
        return ShellResult(stdout="", stderr=str(e), return_code=-1)

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        log.warning("Command timed out after %ss: %s", timeout, command)
        kill_process_tree(process.pid)
        await process.wait()
        return ShellResult(
            stdout="",
            stderr=f"Command timed out after {timeout:g} seconds",
            return_code=-1,
            timed_out=True,
        )
    except asyncio.CancelledError:
        kill_process_tree(process.pid)
        raise

    return ShellResult(
        stdout=sanitize_terminal_output(stdout.decode("utf-8", errors="replace")),
        stderr=sanitize_terminal_output(stderr.decode("utf-8", errors="replace")),
        return_code=process.returncode or 0,
    )


async def git_status(cwd: str, timeout: float = 5.0) -> ShellResult:
    """Current branch, short status and the last five commits."""
    branch = await run_shell_command("git branch --show-current", cwd=cwd, timeout=timeout)
    if branch.return_code != 0:
        return branch
    status = await run_shell_command(
        "git status --short && echo '---' && git log --oneline -5",
        cwd=cwd, timeout=timeout,
    )
    if status.return_code != 0:
        return status
    return ShellResult(
        stdout=f"Branch: {branch.stdout.strip()}\n{status.stdout}",
        stderr="",
        return_code=0,
    )
