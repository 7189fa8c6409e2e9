"""File operation primitives used by the built-in tools.

These raise ordinary exceptions (FileNotFoundError, NotADirectoryError,
OSError); ToolHandlers turns them into ToolResults.
"""

from pathlib import Path
from typing import Iterable, List, Tuple

import aiofiles
import aiofiles.os

GLOB_IGNORE_DIRS = ("node_modules", ".git", "dist", ".next")


async def read_file(file_path: str) -> str:
    """Read a UTF-8 text file without newline translation.

    Args:
        file_path: Absolute path to the file.

    Returns:
        File content as a string.
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")
    if path.is_dir():
        raise IsADirectoryError(f"Is a directory: {file_path}")

    async with aiofiles.open(path, "r", encoding="utf-8", newline="") as f:
        return await f.read()


async def write_file(file_path: str, content: str, create_dirs: bool = True) -> int:
    """Write content to a file, returning the number of characters written.

    Args:
        file_path: Absolute path to the file to write.
        content: Content to write.
        create_dirs: Whether to create parent directories.
    """
    path = Path(file_path)

    if create_dirs:
        path.parent.mkdir(parents=True, exist_ok=True)

    async with aiofiles.open(path, "w", encoding="utf-8", newline="") as f:
        await f.write(content)

    return len(content)


async def delete_file(file_path: str) -> None:
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")
    if path.is_dir():
        raise IsADirectoryError(f"Refusing to delete a directory: {file_path}")
    await aiofiles.os.remove(path)


def format_size(num_bytes: int) -> str:
    if num_bytes < 1024:
        return f"{num_bytes}B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f}KB"
    return f"{num_bytes / (1024 * 1024):.1f}MB"


def list_directory(directory_path: str) -> List[str]:
    """List a directory, one entry per line, directories suffixed with '/'.

    Args:
        directory_path: Absolute path to the directory.

    Returns:
        Sorted entry descriptions like ``src/`` or ``main.py (1.2KB)``.
    """
    path = Path(directory_path)
    if not path.exists():
        raise FileNotFoundError(f"Directory not found: {directory_path}")
    if not path.is_dir():
        raise NotADirectoryError(f"Not a directory: {directory_path}")

    entries = []
    for item in sorted(path.iterdir(), key=lambda p: p.name):
        try:
            if item.is_dir():
                entries.append(f"{item.name}/")
            else:
                entries.append(f"{item.name} ({format_size(item.stat().st_size)})")
        except (PermissionError, OSError):
            entries.append(item.name)
    return entries


def _is_ignored(rel_parts: Iterable[str]) -> bool:
    return any(part in GLOB_IGNORE_DIRS for part in rel_parts)


def glob_files(directory: str, pattern: str, max_results: int = 100) -> Tuple[List[str], int]:
    """Find files matching a glob pattern below ``directory``.

    Args:
        directory: Root directory to search from.
        pattern: Glob pattern (e.g. ``**/*.py``).
        max_results: Maximum number of paths to return.

    Returns:
        (sorted relative paths, capped at max_results; total match count)
    """
    root = Path(directory)
    if not root.exists():
        raise FileNotFoundError(f"Directory not found: {directory}")

    matches = []
    for match in root.glob(pattern):
        rel = match.relative_to(root)
        if _is_ignored(rel.parts[:-1]) or not match.is_file():
            continue
        matches.append(rel.as_posix())
    matches.sort()
    return matches[:max_results], len(matches)
