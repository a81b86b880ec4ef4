from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from epicflow.graphs import DONE
from epicflow.models import Task
from epicflow.observability import get_logger
from epicflow.state.store import TaskStore, find_cycles

logger = get_logger(__name__)


@dataclass(slots=True)
class WaitingTask:
    task: Task
    reason: str
    waiting_on: list[str] = field(default_factory=list)


def _sort_key(task: Task) -> tuple[int, str]:
    return (task.priority.rank, task.id)


def _cycle_members(tasks: list[Task]) -> set[str]:
    cycles = find_cycles({task.id: task.depends_on for task in tasks})
    members: set[str] = set()
    for cycle in cycles:
        logger.warning("Skipping tasks on dependency cycle: %s", " -> ".join(cycle))
        members.update(cycle)
    return members


def select_ready(tasks: Iterable[Task], epic_id: str | None = None) -> list[Task]:
    """Ready tasks from an in-memory snapshot, ordered by priority then id."""
    snapshot = list(tasks)
    by_id = {task.id: task for task in snapshot}
    on_cycle = _cycle_members(snapshot)
    ready: list[Task] = []
    for task in snapshot:
        if epic_id is not None and task.epic_id != epic_id:
            continue
        if task.state == DONE or task.blocked or task.breakpoint or task.id in on_cycle:
            continue
        if all(dep in by_id and by_id[dep].state == DONE for dep in task.depends_on):
            ready.append(task)
    return sorted(ready, key=_sort_key)


def ready_tasks(store: TaskStore, epic_id: str | None = None) -> list[Task]:
    return select_ready(store.list_tasks(), epic_id)


def dependency_cycles(store: TaskStore) -> list[list[str]]:
    return find_cycles({task.id: task.depends_on for task in store.list_tasks()})


def waiting_tasks(store: TaskStore) -> list[WaitingTask]:
    """Every unfinished task that is not ready, with the reason it is held back."""
    snapshot = store.list_tasks()
    by_id = {task.id: task for task in snapshot}
    on_cycle = _cycle_members(snapshot)
    waiting: list[WaitingTask] = []
    for task in sorted(snapshot, key=_sort_key):
        if task.state == DONE:
            continue
        unmet = [
            dep for dep in task.depends_on if dep not in by_id or by_id[dep].state != DONE
        ]
        if task.blocked:
            waiting.append(WaitingTask(task, "blocked", unmet))
        elif task.breakpoint:
            waiting.append(WaitingTask(task, "breakpoint", unmet))
        elif task.id in on_cycle:
            waiting.append(WaitingTask(task, "cycle", unmet))
        elif unmet:
            waiting.append(WaitingTask(task, "dependencies", unmet))
    return waiting


def independent_batch(ready: list[Task], limit: int) -> list[Task]:
    """Take up to ``limit`` ready tasks with no dependency edge between any two of them."""
    batch: list[Task] = []
    for task in ready:
        if len(batch) >= max(1, limit):
            break
        related = any(
            other.id in task.depends_on or task.id in other.depends_on for other in batch
        )
        if not related:
            batch.append(task)
    return batch
