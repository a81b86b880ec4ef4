from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from epicflow.epic_review import EpicReviewEngine
from epicflow.executor import StepExecutor, TaskNotRunnableError
from epicflow.graphs import DONE
from epicflow.models import Epic, EpicStatus, NewEpic, StepOutcome
from epicflow.observability import get_logger, task_context
from epicflow.scheduler import independent_batch, select_ready
from epicflow.state.store import TaskStore

logger = get_logger(__name__)

NextEpicPlanner = Callable[[list[Epic]], Awaitable[NewEpic | None] | NewEpic | None]


class RunModeKind(str, Enum):
    SINGLE = "single"
    AUTO = "auto"
    CONTINUOUS = "continuous"


@dataclass(frozen=True, slots=True)
class RunMode:
    kind: RunModeKind
    task_id: str | None = None

    @classmethod
    def single(cls, task_id: str) -> RunMode:
        return cls(RunModeKind.SINGLE, task_id)

    @classmethod
    def auto(cls) -> RunMode:
        return cls(RunModeKind.AUTO)

    @classmethod
    def continuous(cls) -> RunMode:
        return cls(RunModeKind.CONTINUOUS)


@dataclass(slots=True)
class RunSummary:
    mode: str
    steps: int = 0
    processed_tasks: list[str] = field(default_factory=list)
    blocked_tasks: list[str] = field(default_factory=list)
    completed_epics: list[str] = field(default_factory=list)
    follow_up_tasks: list[str] = field(default_factory=list)
    incomplete_epics: list[str] = field(default_factory=list)
    stopped_reason: str = ""

    @property
    def has_blocked(self) -> bool:
        return bool(self.blocked_tasks)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class OrchestratorLoop:
    def __init__(
        self,
        store: TaskStore,
        executor: StepExecutor,
        reviewer: EpicReviewEngine,
        *,
        planner: NextEpicPlanner | None = None,
        max_parallel_tasks: int = 1,
        max_steps_per_run: int = 0,
    ) -> None:
        self.store = store
        self.executor = executor
        self.reviewer = reviewer
        self.planner = planner
        self.max_parallel_tasks = max(1, int(max_parallel_tasks))
        self.max_steps_per_run = max(0, int(max_steps_per_run))
        self._review_queue: list[str] = []
        executor.on_epic_complete = self._queue_review

    def _queue_review(self, epic_id: str) -> None:
        if epic_id not in self._review_queue:
            self._review_queue.append(epic_id)
        logger.info("All tasks of %s are done; epic review queued", epic_id)

    async def run(self, mode: RunMode) -> RunSummary:
        summary = RunSummary(mode=mode.kind.value)
        self._review_queue.clear()
        if mode.kind == RunModeKind.SINGLE:
            if not mode.task_id:
                raise TaskNotRunnableError("Single-task mode needs a task id.")
            await self._run_single(mode.task_id, summary)
        else:
            await self._run_loop(mode, summary)
        still_blocked = {task.id for task in self.store.list_tasks() if task.blocked}
        summary.blocked_tasks = sorted(still_blocked)
        summary.incomplete_epics = [
            epic.id for epic in self.store.list_epics() if epic.status != EpicStatus.COMPLETED
        ]
        logger.info(
            "Run finished (%s): %d step(s), stopped: %s",
            summary.mode,
            summary.steps,
            summary.stopped_reason,
        )
        return summary

    def _check_runnable(self, task_id: str) -> bool:
        task = self.store.get_task(task_id)
        if task.state == DONE:
            raise TaskNotRunnableError(f"Task {task_id} is already done.")
        if task.blocked:
            raise TaskNotRunnableError(
                f"Task {task_id} is blocked: {task.blocked_reason or 'handler failure'}. "
                "Unblock it first."
            )
        unmet = []
        for dep in task.depends_on:
            other = self.store.find_task(dep)
            if other is None or other.state != DONE:
                unmet.append(dep)
        if unmet:
            raise TaskNotRunnableError(
                f"Task {task_id} is waiting on unfinished dependencies: {', '.join(unmet)}"
            )
        return not task.breakpoint

    async def _run_single(self, task_id: str, summary: RunSummary) -> None:
        if not self._check_runnable(task_id):
            logger.info("Task %s is paused at a breakpoint; skipping", task_id)
            summary.stopped_reason = "breakpoint"
            return
        await self._step(task_id, summary)
        summary.stopped_reason = "single-step"
        while self._review_queue:
            await self._review(self._review_queue.pop(0), summary)

    async def _step(self, task_id: str, summary: RunSummary) -> StepOutcome | None:
        current = self.store.get_task(task_id)
        if current.breakpoint or current.blocked or current.state == DONE:
            logger.info("Skipping %s (%s)", task_id, current.status)
            return None
        outcome = await self.executor.run_step(task_id)
        summary.steps += 1
        if task_id not in summary.processed_tasks:
            summary.processed_tasks.append(task_id)
        return outcome

    async def _review(self, epic_id: str, summary: RunSummary) -> list[str]:
        with task_context(epic_id=epic_id):
            follow_ups = await self.reviewer.review_epic(epic_id)
        created = [task.id for task in follow_ups]
        summary.follow_up_tasks.extend(created)
        if not created:
            summary.completed_epics.append(epic_id)
        return created

    async def _run_batch(self, task_ids: list[str], summary: RunSummary) -> None:
        results = await asyncio.gather(
            *(self._step(task_id, summary) for task_id in task_ids),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _plan_next_epic(self) -> NewEpic | None:
        if self.planner is None:
            return None
        planned = self.planner(self.store.list_epics())
        if inspect.isawaitable(planned):
            planned = await planned
        return planned

    async def _run_loop(self, mode: RunMode, summary: RunSummary) -> None:
        while True:
            remaining = None
            if self.max_steps_per_run:
                remaining = self.max_steps_per_run - summary.steps
                if remaining <= 0:
                    summary.stopped_reason = "step-limit"
                    return

            ready = select_ready(self.store.list_tasks())
            if ready:
                epic_id = min(task.epic_id for task in ready)
                candidates = [task for task in ready if task.epic_id == epic_id]
                limit = self.max_parallel_tasks
                if remaining is not None:
                    limit = min(limit, remaining)
                batch = independent_batch(candidates, limit)
                await self._run_batch([task.id for task in batch], summary)
                continue

            reviewable = [
                epic.id for epic in self.store.list_epics() if self.reviewer.is_reviewable(epic.id)
            ]
            self._review_queue.clear()
            if reviewable:
                for epic_id in reviewable:
                    await self._review(epic_id, summary)
                continue

            epics = self.store.list_epics()
            all_completed = all(epic.status == EpicStatus.COMPLETED for epic in epics)
            if mode.kind != RunModeKind.CONTINUOUS or not all_completed:
                summary.stopped_reason = "idle" if all_completed else "no-ready-tasks"
                return

            new_epic = await self._plan_next_epic()
            if new_epic is None:
                summary.stopped_reason = "roadmap-exhausted"
                return
            if not new_epic.tasks:
                logger.warning("Planned epic %s has no tasks; stopping", new_epic.epic.id)
                summary.stopped_reason = "empty-epic"
                return
            logger.info("Starting planned epic %s", new_epic.epic.id)
            self.store.add_epic(new_epic.epic, new_epic.tasks)
