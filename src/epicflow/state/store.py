from __future__ import annotations

import asyncio
import re
from collections.abc import Iterable
from typing import Any

from epicflow.graphs import DONE, InvalidTaskState, WorkflowGraphRegistry
from epicflow.models import Epic, EpicStatus, HistoryEntry, Task, utcnow_iso
from epicflow.observability import get_logger
from epicflow.state.backends import EpicflowStateError, StateBackend, get_json, update_json

logger = get_logger(__name__)

_TASK_NUMBER = re.compile(r"-T(\d+)$")


class TaskNotFoundError(EpicflowStateError):
    """Raised when a task id is not present in the store."""


class EpicNotFoundError(EpicflowStateError):
    """Raised when an epic id is not present in the store."""


class DuplicateTaskError(EpicflowStateError):
    """Raised when adding a task whose id already exists."""


class DependencyCycleError(EpicflowStateError):
    """Raised when task dependencies form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__("Dependency cycle detected: " + " -> ".join(cycle))


def find_cycles(depends_on: dict[str, list[str]]) -> list[list[str]]:
    """Return each dependency cycle once, as a closed path starting at its smallest id."""
    cycles: list[list[str]] = []
    seen: set[tuple[str, ...]] = set()
    visiting: list[str] = []
    on_path: set[str] = set()
    finished: set[str] = set()

    def visit(node: str) -> None:
        visiting.append(node)
        on_path.add(node)
        for dep in depends_on.get(node, []):
            if dep not in depends_on:
                continue
            if dep in on_path:
                members = visiting[visiting.index(dep):]
                start = members.index(min(members))
                rotated = members[start:] + members[:start]
                key = tuple(rotated)
                if key not in seen:
                    seen.add(key)
                    cycles.append(rotated + [rotated[0]])
            elif dep not in finished:
                visit(dep)
        visiting.pop()
        on_path.discard(node)
        finished.add(node)

    for node in sorted(depends_on):
        if node not in finished:
            visit(node)
    return cycles


class TaskStore:
    """Task and epic records over a state backend, plus the in-process step locks."""

    def __init__(
        self,
        backend: StateBackend,
        registry: WorkflowGraphRegistry | None = None,
    ) -> None:
        self.backend = backend
        self.registry = registry or WorkflowGraphRegistry()
        self._task_locks: dict[str, asyncio.Lock] = {}
        self._epic_locks: dict[str, asyncio.Lock] = {}
        self._lock_loop: asyncio.AbstractEventLoop | None = None

    # -- reads ---------------------------------------------------------------

    def _task_payloads(self) -> dict[str, Any]:
        payload = get_json(self.backend, "tasks", default={"tasks": {}})
        if not isinstance(payload, dict):
            return {}
        tasks = payload.get("tasks", {})
        return tasks if isinstance(tasks, dict) else {}

    def _epic_payloads(self) -> dict[str, Any]:
        payload = get_json(self.backend, "epics", default={"epics": {}})
        if not isinstance(payload, dict):
            return {}
        epics = payload.get("epics", {})
        return epics if isinstance(epics, dict) else {}

    def list_tasks(self, epic_id: str | None = None) -> list[Task]:
        tasks = [Task.from_dict(item) for item in self._task_payloads().values()]
        if epic_id is not None:
            tasks = [task for task in tasks if task.epic_id == epic_id]
        return tasks

    def find_task(self, task_id: str) -> Task | None:
        payload = self._task_payloads().get(task_id)
        return Task.from_dict(payload) if isinstance(payload, dict) else None

    def get_task(self, task_id: str) -> Task:
        task = self.find_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    def list_epics(self) -> list[Epic]:
        epics = [Epic.from_dict(item) for item in self._epic_payloads().values()]
        return sorted(epics, key=lambda epic: epic.id)

    def find_epic(self, epic_id: str) -> Epic | None:
        payload = self._epic_payloads().get(epic_id)
        return Epic.from_dict(payload) if isinstance(payload, dict) else None

    def get_epic(self, epic_id: str) -> Epic:
        epic = self.find_epic(epic_id)
        if epic is None:
            raise EpicNotFoundError(f"Epic not found: {epic_id}")
        return epic

    def epic_tasks(self, epic_id: str) -> list[Task]:
        epic = self.find_epic(epic_id)
        by_id = {task.id: task for task in self.list_tasks(epic_id)}
        if epic is None:
            return list(by_id.values())
        ordered = [by_id.pop(task_id) for task_id in epic.tasks if task_id in by_id]
        return ordered + list(by_id.values())

    def epic_is_done(self, epic_id: str) -> bool:
        tasks = self.list_tasks(epic_id)
        return bool(tasks) and all(task.state == DONE for task in tasks)

    def next_task_id(self, epic_id: str) -> str:
        highest = 0
        for task in self.list_tasks(epic_id):
            match = _TASK_NUMBER.search(task.id)
            if match:
                highest = max(highest, int(match.group(1)))
        return f"{epic_id}-T{highest + 1:03d}"

    # -- writes --------------------------------------------------------------

    def save_task(self, task: Task) -> None:
        task.updated_at = utcnow_iso()
        serialized = task.to_dict()

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"tasks": {}}
            result.setdefault("tasks", {})
            result["tasks"][task.id] = serialized
            return result

        update_json(self.backend, "tasks", _updater, default={"tasks": {}})

    def save_epic(self, epic: Epic) -> None:
        serialized = epic.to_dict()

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"epics": {}}
            result.setdefault("epics", {})
            result["epics"][epic.id] = serialized
            return result

        update_json(self.backend, "epics", _updater, default={"epics": {}})

    def _prepare(self, task: Task) -> None:
        graph = self.registry.resolve(task.category, task.variant_labels, task.modifier_labels)
        if not task.state:
            task.state = graph.first_phase
        elif task.state != DONE and not graph.has_phase(task.state):
            raise InvalidTaskState(
                f"Task {task.id}: state {task.state!r} is not part of the "
                f"{graph.describe()} workflow."
            )
        if not task.history:
            task.record(
                HistoryEntry(at=task.created_at, state=task.state, agent="", note="created")
            )

    def add_tasks(self, tasks: Iterable[Task], *, epic_title: str | None = None) -> list[Task]:
        """Validate and insert new tasks, registering them on their epics.

        Labels must resolve to a graph, ids must be new, and the combined
        dependency graph must stay acyclic. ``blocks`` is kept as the reverse
        of ``depends_on`` across old and new tasks.
        """
        new_tasks = list(tasks)
        existing = {task.id: task for task in self.list_tasks()}
        incoming: dict[str, Task] = {}
        for task in new_tasks:
            if task.id in existing or task.id in incoming:
                raise DuplicateTaskError(f"Task already exists: {task.id}")
            self._prepare(task)
            incoming[task.id] = task

        combined = {**existing, **incoming}
        cycles = find_cycles({task_id: task.depends_on for task_id, task in combined.items()})
        if cycles:
            raise DependencyCycleError(cycles[0])

        touched: dict[str, Task] = {}
        for task in incoming.values():
            for dep in task.depends_on:
                target = combined.get(dep)
                if target is None:
                    logger.warning("Task %s depends on unknown task %s", task.id, dep)
                    continue
                if task.id not in target.blocks:
                    target.blocks.append(task.id)
                    if dep in existing:
                        touched[dep] = target

        serialized = {task.id: task.to_dict() for task in [*incoming.values(), *touched.values()]}

        def _task_updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"tasks": {}}
            result.setdefault("tasks", {})
            result["tasks"].update(serialized)
            return result

        update_json(self.backend, "tasks", _task_updater, default={"tasks": {}})

        for epic_id in dict.fromkeys(task.epic_id for task in new_tasks):
            epic = self.find_epic(epic_id) or Epic(id=epic_id, title=epic_title or "")
            if epic_title and not epic.title:
                epic.title = epic_title
            for task in new_tasks:
                if task.epic_id == epic_id and task.id not in epic.tasks:
                    epic.tasks.append(task.id)
            if epic.status == EpicStatus.COMPLETED:
                epic.status = EpicStatus.IN_PROGRESS
                epic.completed_at = None
            self.save_epic(epic)
        logger.info("Added %d task(s)", len(new_tasks))
        return new_tasks

    def add_epic(self, epic: Epic, tasks: Iterable[Task]) -> list[Task]:
        """Register an epic record (kept if it already exists) and add its tasks."""
        existing = self.find_epic(epic.id)
        if existing is None:
            self.save_epic(epic)
        elif epic.title and not existing.title:
            existing.title = epic.title
            self.save_epic(existing)
        return self.add_tasks(tasks)

    def set_breakpoint(self, task_id: str, enabled: bool) -> Task:
        task = self.get_task(task_id)
        if task.breakpoint != enabled:
            task.breakpoint = enabled
            task.record(
                HistoryEntry(
                    at=utcnow_iso(),
                    state=task.state,
                    agent="operator",
                    note="breakpoint set" if enabled else "breakpoint cleared",
                )
            )
            self.save_task(task)
        return task

    def unblock(self, task_id: str, note: str = "") -> Task:
        task = self.get_task(task_id)
        if not task.blocked:
            return task
        task.blocked = False
        task.blocked_reason = None
        task.record(
            HistoryEntry(
                at=utcnow_iso(),
                state=task.state,
                agent="operator",
                note=note or "unblocked",
            )
        )
        self.save_task(task)
        return task

    # -- locks ---------------------------------------------------------------

    def _bind_locks(self) -> None:
        loop = asyncio.get_running_loop()
        if loop is not self._lock_loop:
            self._lock_loop = loop
            self._task_locks = {}
            self._epic_locks = {}

    def task_lock(self, task_id: str) -> asyncio.Lock:
        self._bind_locks()
        return self._task_locks.setdefault(task_id, asyncio.Lock())

    def epic_lock(self, epic_id: str) -> asyncio.Lock:
        self._bind_locks()
        return self._epic_locks.setdefault(epic_id, asyncio.Lock())

    def is_task_locked(self, task_id: str) -> bool:
        lock = self._task_locks.get(task_id)
        return lock is not None and lock.locked()
