"""Budget-constrained task selection.

Each iteration gets a point budget (S=1, M=2, L=4). In-progress tasks are
resumed first, then pending tasks are taken in document order. Nothing is
ever re-sorted: the order the spec author wrote is the priority order.
"""

from dataclasses import dataclass, field

from work_loop.config import DEFAULT_BUDGET_POINTS
from work_loop.core.specs import IN_PROGRESS, PASSED, PENDING, SIZE_POINTS, Task

_LARGE_SIZES = ("M", "L")


@dataclass
class BudgetResult:
    selected_tasks: list[Task] = field(default_factory=list)
    total_points: int = 0
    remaining_budget: int = 0
    skipped_tasks: list[Task] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def points_for_size(size: str) -> int:
    return SIZE_POINTS.get(size, SIZE_POINTS["M"])


def dependency_block_reason(task: Task, tasks_by_id: dict[str, Task]) -> str | None:
    """Why ``task`` cannot start yet, or None if all its dependencies have passed."""
    for dep_id in task.dependencies:
        dep = tasks_by_id.get(dep_id)
        if dep is None:
            return f"{task.id} depends on unknown task {dep_id}"
        if dep.status != PASSED:
            return f"{task.id} blocked: depends on {dep_id} ({dep.status})"
    return None


def select_tasks(
    tasks: list[Task],
    budget_points: int = DEFAULT_BUDGET_POINTS,
    conservative: bool = False,
) -> BudgetResult:
    """Pick the tasks to attempt this iteration within ``budget_points``.

    In-progress tasks that do not fit are only warned about: they are
    deferred, not skipped. With ``conservative`` set, at most one M or L
    pending task is taken; every pending task after it is skipped.
    """
    tasks_by_id = {t.id: t for t in tasks}
    in_progress = [t for t in tasks if t.status == IN_PROGRESS]
    pending = [t for t in tasks if t.status == PENDING]

    result = BudgetResult()
    remaining = budget_points

    for task in in_progress:
        if task.size_points <= remaining:
            result.selected_tasks.append(task)
            remaining -= task.size_points
        else:
            result.warnings.append(
                f"In-progress task {task.id} ({task.size}={task.size_points}pts) "
                "exceeds remaining budget"
            )

    for task in pending:
        if conservative and result.selected_tasks:
            if result.selected_tasks[-1].size in _LARGE_SIZES:
                result.skipped_tasks.append(task)
                continue

        reason = dependency_block_reason(task, tasks_by_id)
        if reason:
            result.skipped_tasks.append(task)
            result.warnings.append(reason)
            continue

        if task.size_points <= remaining:
            result.selected_tasks.append(task)
            remaining -= task.size_points
        else:
            result.skipped_tasks.append(task)

    result.total_points = sum(t.size_points for t in result.selected_tasks)
    result.remaining_budget = remaining
    return result


def format_budget_summary(result: BudgetResult) -> str:
    lines = []
    if not result.selected_tasks:
        lines.append("No tasks selected within budget.")
    else:
        lines.append(
            f"Selected {len(result.selected_tasks)} task(s) ({result.total_points} points):"
        )
        for task in result.selected_tasks:
            marker = "~" if task.status == IN_PROGRESS else "-"
            lines.append(f"  {marker} {task.id}: {task.title} [{task.size}]")

    if result.remaining_budget > 0 and result.skipped_tasks:
        lines.append(f"\nRemaining budget: {result.remaining_budget} points")

    for warning in result.warnings:
        lines.append(f"Warning: {warning}")

    return "\n".join(lines)
