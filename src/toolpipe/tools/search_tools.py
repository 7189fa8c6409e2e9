"""Content search for the grep tool."""

import os
import re
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import List, Optional

DEFAULT_GREP_PATTERNS = (
    "*.ts", "*.tsx", "*.js", "*.jsx", "*.py", "*.go", "*.rs",
    "*.java", "*.css", "*.json", "*.md",
)
SKIP_DIRS = ("node_modules", "__pycache__", "dist", ".next")


@dataclass
class SearchMatch:
    """A search match result."""

    file_path: str
    line_number: int
    line_content: str

    def format(self) -> str:
        return f"{self.file_path}:{self.line_number}:{self.line_content}"


def grep_files(
    directory: str,
    pattern: str,
    file_glob: Optional[str] = None,
    max_results: int = 50,
) -> List[SearchMatch]:
    """Regex search across files below ``directory``.

    Args:
        directory: Root directory to search.
        pattern: Regular expression (case-sensitive).
        file_glob: Only search file names matching this glob; defaults to
            common source and text file types.
        max_results: Stop after this many matching lines.

    Returns:
        Matches in walk order, paths relative to ``directory``.

    Raises:
        re.error: If the pattern is not a valid regular expression.
        FileNotFoundError: If the directory does not exist.
    """
    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"Directory not found: {directory}")

    regex = re.compile(pattern)
    patterns = (file_glob,) if file_glob else DEFAULT_GREP_PATTERNS
    results: List[SearchMatch] = []

    for current, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if not d.startswith(".") and d not in SKIP_DIRS)
        for file_name in sorted(files):
            if not any(fnmatch(file_name, p) for p in patterns):
                continue
            file_path = Path(current) / file_name
            rel = file_path.relative_to(root).as_posix()
            try:
                with open(file_path, "r", encoding="utf-8", errors="replace") as f:
                    for i, line in enumerate(f, 1):
                        if regex.search(line):
                            results.append(SearchMatch(rel, i, line.rstrip("\r\n")))
                            if len(results) >= max_results:
                                return results
            except (PermissionError, OSError):
                continue

    return results
