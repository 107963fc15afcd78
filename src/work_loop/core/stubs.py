"""Detection of incomplete-work markers in recently changed files."""

import logging
import re
from pathlib import Path

from work_loop.integrations.git import changed_files

logger = logging.getLogger(__name__)

SOURCE_EXTENSIONS = (".py", ".ts", ".tsx", ".js", ".jsx")

TODO_PATTERNS = [
    re.compile(r"//\s*TODO:", re.IGNORECASE),
    re.compile(r"//\s*FIXME:", re.IGNORECASE),
    re.compile(r"#\s*TODO:", re.IGNORECASE),
    re.compile(r"#\s*FIXME:", re.IGNORECASE),
    re.compile(r"throw new Error\(['\"]Not implemented", re.IGNORECASE),
    re.compile(r"raise NotImplementedError", re.IGNORECASE),
]


def has_stub_markers(content: str) -> bool:
    return any(pattern.search(content) for pattern in TODO_PATTERNS)


def detect_todo_stubs(cwd: str | Path) -> list[str]:
    """Recently changed source files that still contain TODO/FIXME stubs.

    Best-effort: any failure is treated as "nothing found".
    """
    try:
        candidates = [f for f in changed_files(cwd) if f.endswith(SOURCE_EXTENSIONS)]
    except Exception:
        logger.debug("Stub detection skipped in %s", cwd, exc_info=True)
        return []

    found = []
    for name in candidates:
        path = Path(cwd) / name
        if not path.is_file():
            continue
        try:
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue
        if has_stub_markers(content):
            found.append(name)
    return found
