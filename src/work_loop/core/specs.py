"""Task spec documents: locating, parsing and progress.

A spec is a markdown file with one ``### T001: Title`` section per task::

    ### T001: Add login form
    - Status: pending | in_progress | passed | failed
    - Size: S | M | L

    **Deliverables:**
    - Form component with validation

    **Verify:** `pytest tests/test_login.py`

The agent edits the Status lines between iterations; this module only reads.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

PENDING = "pending"
IN_PROGRESS = "in_progress"
PASSED = "passed"
FAILED = "failed"
TASK_STATUSES = (PENDING, IN_PROGRESS, PASSED, FAILED)

SIZE_POINTS = {"S": 1, "M": 2, "L": 4}
DEFAULT_SIZE = "M"

LEGACY_WARNING = (
    "Legacy spec format detected (checkbox tasks). "
    "Migrate to task IDs (### T001: Title) with Status and Size lines."
)

_TASK_HEADER = re.compile(r"^###\s+(T\d{3}):\s*(.+)$", re.MULTILINE)
_DEPENDS_ON = re.compile(r"depends on:\s*(T\d{3}(?:\s*,\s*T\d{3})*)", re.IGNORECASE)


class SpecLocatorError(Exception):
    """Raised when the active spec cannot be determined."""

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


@dataclass
class Task:
    id: str
    title: str
    status: str = PENDING
    size: str = DEFAULT_SIZE
    size_points: int = SIZE_POINTS[DEFAULT_SIZE]
    deliverables: list[str] = field(default_factory=list)
    verify: str | None = None
    dependencies: list[str] = field(default_factory=list)
    raw_content: str = ""


@dataclass
class SpecDocument:
    title: str
    goal: str = ""
    context: str = ""
    tasks: list[Task] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    notes: str = ""
    path: str | None = None

    @property
    def total_size_points(self) -> int:
        return sum(t.size_points for t in self.tasks)

    @property
    def completed_size_points(self) -> int:
        return sum(t.size_points for t in self.tasks if t.status == PASSED)

    @property
    def pending_size_points(self) -> int:
        return sum(t.size_points for t in self.tasks if t.status in (PENDING, IN_PROGRESS))


@dataclass
class LegacySpec:
    warning: str = LEGACY_WARNING
    path: str | None = None


@dataclass
class MissingSpec:
    path: str


SpecResult = Union[SpecDocument, LegacySpec, MissingSpec]


@dataclass
class Progress:
    completed: int
    total: int

    @property
    def percentage(self) -> int:
        return round(self.completed / self.total * 100) if self.total else 0


# ── Locating ──────────────────────────────────────────────────────────────────


def locate_active_spec(project_dir: str | Path, specs_dir: str = "specs/active") -> Path:
    """Return the single active spec in ``<project_dir>/<specs_dir>``."""
    active_dir = Path(project_dir) / specs_dir
    files = []
    if active_dir.is_dir():
        files = sorted(
            p for p in active_dir.iterdir()
            if p.is_file() and p.suffix == ".md" and not p.name.startswith(".")
        )

    if len(files) > 1:
        names = ", ".join(p.name for p in files)
        raise SpecLocatorError(
            f"Multiple specs found in {active_dir}: {names}. Only one active spec is allowed.",
            "MULTIPLE_SPECS",
        )
    if not files:
        raise SpecLocatorError(
            f"No spec found. Create a spec in {specs_dir}/.",
            "NO_SPEC",
        )
    return files[0]


# ── Parsing ───────────────────────────────────────────────────────────────────


def normalize_spec(content: str) -> str:
    """Smooth over common formatting slips in hand- or AI-written specs."""
    content = re.sub(r"^[-*]\s*Status\s*:\s*", "- Status: ", content, flags=re.MULTILINE | re.IGNORECASE)
    content = re.sub(r"^[-*]\s*Size\s*:\s*", "- Size: ", content, flags=re.MULTILINE | re.IGNORECASE)
    content = re.sub(r"^(###\s+T\d{3}):(\S)", r"\1: \2", content, flags=re.MULTILINE)
    content = re.sub(r"\*\*\s*Deliverables\s*:\s*\*\*", "**Deliverables:**", content, flags=re.IGNORECASE)
    content = re.sub(r"\*\*\s*Verify\s*:\s*\*\*", "**Verify:**", content, flags=re.IGNORECASE)
    return content


def is_legacy_format(content: str) -> bool:
    has_checkboxes = re.search(r"^-\s*\[\s*[xX ]?\s*\]\s+", content, re.MULTILINE) is not None
    has_task_ids = _TASK_HEADER.search(content) is not None
    return has_checkboxes and not has_task_ids


def parse_spec_content(content: str) -> SpecDocument | LegacySpec:
    normalized = normalize_spec(content)
    if is_legacy_format(normalized):
        return LegacySpec()

    return SpecDocument(
        title=_match_group(r"^#\s+(.+)$", normalized) or "Untitled Spec",
        goal=_match_group(r"^Goal:\s*(.+)$", normalized),
        context=_section(normalized, "Context"),
        tasks=parse_tasks(normalized),
        acceptance_criteria=_bullets(_section(normalized, "Acceptance Criteria")),
        notes=_match_group(r"^## Notes\s*\n([\s\S]*)$", normalized),
    )


def parse_tasks(content: str) -> list[Task]:
    headers = list(_TASK_HEADER.finditer(content))
    tasks = []
    for i, header in enumerate(headers):
        end = headers[i + 1].start() if i + 1 < len(headers) else len(content)
        tasks.append(_parse_task(header.group(1), header.group(2).strip(), content[header.start():end]))
    return tasks


def parse_dependencies(text: str) -> list[str]:
    """Task ids referenced by ``depends on: T001, T002`` annotations."""
    match = _DEPENDS_ON.search(text)
    if not match:
        return []
    return [dep.strip() for dep in match.group(1).split(",")]


def _parse_task(task_id: str, title: str, section: str) -> Task:
    status_match = re.search(
        r"^-\s*Status:\s*(pending|in_progress|passed|failed)", section, re.MULTILINE
    )
    size_match = re.search(r"^-\s*Size:\s*([SML])\b", section, re.MULTILINE)
    size = size_match.group(1) if size_match else DEFAULT_SIZE

    deliverables_match = re.search(
        r"\*\*Deliverables:\*\*\s*\n([\s\S]*?)(?=\n\*\*|\n---|\n###|\Z)", section
    )
    verify = _match_group(r"\*\*Verify:\*\*\s*(.+)$", section) or None
    if verify:
        code = re.search(r"`(.+?)`", verify)
        verify = code.group(1) if code else verify

    return Task(
        id=task_id,
        title=title,
        status=status_match.group(1) if status_match else PENDING,
        size=size,
        size_points=SIZE_POINTS[size],
        deliverables=_bullets(deliverables_match.group(1)) if deliverables_match else [],
        verify=verify,
        dependencies=parse_dependencies(section),
        raw_content=section,
    )


def _match_group(pattern: str, content: str) -> str:
    match = re.search(pattern, content, re.MULTILINE)
    return match.group(1).strip() if match else ""


def _section(content: str, heading: str) -> str:
    match = re.search(rf"^## {re.escape(heading)}\s*\n([\s\S]*?)(?=\n## |\n---|\Z)", content, re.MULTILINE)
    return match.group(1).strip() if match else ""


def _bullets(text: str) -> list[str]:
    items = []
    for line in text.split("\n"):
        bullet = re.match(r"^-\s+(.+)$", line)
        if bullet:
            items.append(bullet.group(1).strip())
    return items


# ── Reading from disk ─────────────────────────────────────────────────────────


def load_spec(path: str | Path) -> SpecResult:
    """Read a spec file. Missing, unreadable and legacy documents are reported, not raised."""
    spec_path = Path(path)
    if not spec_path.is_file():
        return MissingSpec(path=str(spec_path))

    try:
        content = spec_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read spec %s: %s", spec_path, e)
        return MissingSpec(path=str(spec_path))

    result = parse_spec_content(content)
    result.path = str(spec_path)
    return result


def get_progress(path: str | Path) -> Progress | None:
    """Passed/total task counts, or None when the spec is missing or legacy."""
    spec = load_spec(path)
    if not isinstance(spec, SpecDocument):
        return None
    return spec_progress(spec)


def spec_progress(spec: SpecDocument) -> Progress:
    completed = sum(1 for t in spec.tasks if t.status == PASSED)
    return Progress(completed=completed, total=len(spec.tasks))


def is_spec_done(spec: SpecDocument) -> bool:
    """All tasks passed or failed. Failed tasks are not retried."""
    return all(t.status in (PASSED, FAILED) for t in spec.tasks)


def is_spec_complete(path: str | Path) -> bool:
    spec = load_spec(path)
    if not isinstance(spec, SpecDocument):
        return False
    return is_spec_done(spec)


def next_task(spec: SpecDocument) -> Task | None:
    """First task still pending or in progress, in document order."""
    for task in spec.tasks:
        if task.status in (PENDING, IN_PROGRESS):
            return task
    return None


def get_task_by_id(spec: SpecDocument, task_id: str) -> Task | None:
    for task in spec.tasks:
        if task.id == task_id:
            return task
    return None
