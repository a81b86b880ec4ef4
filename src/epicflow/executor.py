from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable

from epicflow.dispatcher import AgentDispatcher
from epicflow.graphs import DONE, InvalidTransition, WorkflowGraphRegistry
from epicflow.models import (
    EpicStatus,
    HistoryEntry,
    StepOutcome,
    merge_artifacts,
    utcnow_iso,
)
from epicflow.observability import get_logger, task_context
from epicflow.state.store import TaskStore

logger = get_logger(__name__)

EpicCompleteHook = Callable[[str], Awaitable[None] | None]


class TaskNotRunnableError(RuntimeError):
    """Raised when a task cannot take a step in its current condition."""


class StepExecutor:
    def __init__(
        self,
        store: TaskStore,
        dispatcher: AgentDispatcher,
        registry: WorkflowGraphRegistry | None = None,
        *,
        pause_on: Iterable[str] = (),
        on_epic_complete: EpicCompleteHook | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.registry = registry or store.registry
        self.pause_on = frozenset(pause_on)
        self.on_epic_complete = on_epic_complete

    async def run_step(self, task_id: str) -> StepOutcome:
        """Run the current phase's command and apply exactly one transition.

        A handler failure blocks the task in place. A verdict the phase does
        not accept raises ``InvalidTransition`` and leaves the task untouched.
        """
        async with self.store.task_lock(task_id):
            task = self.store.get_task(task_id)
            with task_context(task.id, task.epic_id):
                if task.state == DONE:
                    raise TaskNotRunnableError(f"Task {task.id} is already done.")
                if task.blocked:
                    raise TaskNotRunnableError(
                        f"Task {task.id} is blocked: {task.blocked_reason or 'handler failure'}"
                    )
                graph = self.registry.resolve(
                    task.category, task.variant_labels, task.modifier_labels
                )
                from_state = task.state
                self._mark_epic_started(task.epic_id)

                result = await self.dispatcher.dispatch(task, from_state)
                now = utcnow_iso()

                if result.failed:
                    task.blocked = True
                    task.blocked_reason = result.note or "handler failed"
                    task.record(
                        HistoryEntry(
                            at=now,
                            state=from_state,
                            agent=result.agent,
                            note=result.note,
                            verdict=result.verdict,
                            from_state=from_state,
                        )
                    )
                    self.store.save_task(task)
                    logger.warning("Blocked in %s: %s", from_state, task.blocked_reason)
                    return StepOutcome(task=task, from_state=from_state, result=result)

                next_state = graph.transition(from_state, result.verdict)
                if next_state is None:
                    raise InvalidTransition(
                        task.id, from_state, result.verdict, graph.phase(from_state).verdicts
                    )

                rejected = graph.is_rejection(from_state, result.verdict)
                if rejected:
                    task.rejected_from = from_state
                elif task.rejected_from == from_state:
                    task.rejected_from = None

                task.artifacts = merge_artifacts(task.artifacts, result.artifacts)
                task.state = next_state
                task.record(
                    HistoryEntry(
                        at=now,
                        state=next_state,
                        agent=result.agent,
                        note=result.note,
                        verdict=result.verdict,
                        from_state=from_state,
                    )
                )
                if next_state in self.pause_on and not task.breakpoint:
                    task.breakpoint = True
                    logger.info("Pausing at %s", next_state)
                self.store.save_task(task)
                logger.info(
                    "%s --%s--> %s%s",
                    from_state,
                    result.verdict,
                    next_state,
                    " (rejected)" if rejected else "",
                )

                epic_complete = next_state == DONE and self.store.epic_is_done(task.epic_id)
                outcome = StepOutcome(
                    task=task,
                    from_state=from_state,
                    result=result,
                    rejected=rejected,
                    epic_complete=epic_complete,
                )

        if outcome.epic_complete and self.on_epic_complete is not None:
            maybe_awaitable = self.on_epic_complete(task.epic_id)
            if maybe_awaitable is not None:
                await maybe_awaitable
        return outcome

    def _mark_epic_started(self, epic_id: str) -> None:
        epic = self.store.find_epic(epic_id)
        if epic is not None and epic.status == EpicStatus.PLANNED:
            epic.status = EpicStatus.IN_PROGRESS
            self.store.save_epic(epic)
