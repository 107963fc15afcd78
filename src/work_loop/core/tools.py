"""Tool classification and display helpers."""

from typing import Any

from work_loop.config import TOOL_DISPLAY_NAME_LIMIT

READ = "read"
WRITE = "write"
COMMAND = "command"
META = "meta"

TOOL_CATEGORIES: dict[str, str] = {
    "Read": READ,
    "Grep": READ,
    "Glob": READ,
    "WebFetch": READ,
    "WebSearch": READ,
    "LSP": READ,
    "Edit": WRITE,
    "Write": WRITE,
    "NotebookEdit": WRITE,
    "Bash": COMMAND,
    "TodoWrite": META,
    "Task": META,
    "AskUserQuestion": META,
    "EnterPlanMode": META,
    "ExitPlanMode": META,
}

CATEGORY_VERBS = {
    READ: "Reading",
    WRITE: "Editing",
    COMMAND: "Running",
    META: "Processing",
}

# Highest priority first; decides the phase while several tools are in flight
CATEGORY_PRIORITY = (COMMAND, WRITE, READ, META)


def get_tool_category(tool_name: str) -> str:
    """Map an external tool name to its category. Unknown tools are meta."""
    return TOOL_CATEGORIES.get(tool_name, META)


def get_category_verb(category: str) -> str:
    return CATEGORY_VERBS.get(category, CATEGORY_VERBS[META])


def _truncate(text: str, limit: int = TOOL_DISPLAY_NAME_LIMIT) -> str:
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def get_tool_display_name(tool_name: str, tool_input: dict[str, Any] | None = None) -> str:
    """Short label for a tool call: a file's base name, a command's first word, a pattern."""
    if not tool_input:
        return tool_name

    file_path = tool_input.get("file_path")
    command = tool_input.get("command")
    pattern = tool_input.get("pattern")

    if tool_name in ("Read", "Edit", "Write") and isinstance(file_path, str):
        return _truncate(file_path.rstrip("/").split("/")[-1]) or tool_name
    if tool_name == "Bash" and isinstance(command, str):
        parts = command.split()
        return _truncate(parts[0]) if parts else tool_name
    if tool_name in ("Glob", "Grep") and isinstance(pattern, str):
        return _truncate(pattern)
    return tool_name
