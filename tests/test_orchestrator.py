import asyncio
from typing import Any

import pytest

from epicflow.dispatcher import AgentDispatcher
from epicflow.epic_review import EpicReviewEngine
from epicflow.executor import StepExecutor, TaskNotRunnableError
from epicflow.graphs import DONE, Category, Command
from epicflow.handlers.base import CommandHandler, HandlerOutput, HandlerRequest
from epicflow.models import Epic, EpicStatus, NewEpic, Priority, Task
from epicflow.orchestrator import OrchestratorLoop, RunMode, RunSummary
from epicflow.state import MemoryBackend, TaskStore


class ApprovingHandler(CommandHandler):
    """Approves every phase; optionally attaches reviews or fails for chosen tasks."""

    def __init__(
        self,
        reviews: dict[str, str] | None = None,
        failing: set[str] | None = None,
    ) -> None:
        self.reviews = reviews or {}
        self.failing = failing or set()
        self.calls: list[tuple[str, str]] = []
        self.active = 0
        self.peak = 0

    async def run(self, request: HandlerRequest) -> HandlerOutput:
        self.calls.append((request.task_id, request.phase))
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.01)
        finally:
            self.active -= 1
        if request.task_id in self.failing:
            raise RuntimeError("agent crashed")
        artifacts: dict[str, list[str]] = {}
        if request.task_id in self.reviews and request.phase == "WRITING_DOCS":
            artifacts["reviews"] = [self.reviews[request.task_id]]
        return HandlerOutput(verdict=request.forward_verdicts[0], artifacts=artifacts)


def _docs_task(task_id: str, **kwargs: Any) -> Task:
    kwargs.setdefault("state", "")
    return Task(
        id=task_id,
        epic_id=task_id.split("-")[0],
        category=Category.DOCUMENTATION,
        variant_labels=frozenset({"docs:simple"}),
        **kwargs,
    )


def _loop(
    store: TaskStore,
    handler: CommandHandler,
    documents: dict[str, str] | None = None,
    **kwargs: Any,
) -> OrchestratorLoop:
    dispatcher = AgentDispatcher(store.registry, {command: handler for command in Command})
    executor = StepExecutor(store, dispatcher)
    reviewer = EpicReviewEngine(store, (documents or {}).get)
    return OrchestratorLoop(store, executor, reviewer, **kwargs)


def _store(*tasks: Task) -> TaskStore:
    store = TaskStore(MemoryBackend())
    store.add_tasks(tasks)
    return store


def _run(loop: OrchestratorLoop, mode: RunMode) -> RunSummary:
    return asyncio.run(loop.run(mode))


def test_single_mode_runs_exactly_one_step() -> None:
    store = _store(_docs_task("E01-T001"), _docs_task("E01-T002"))
    handler = ApprovingHandler()

    summary = _run(_loop(store, handler), RunMode.single("E01-T002"))

    assert handler.calls == [("E01-T002", "WRITING_DOCS")]
    assert summary.steps == 1
    assert summary.processed_tasks == ["E01-T002"]
    assert summary.stopped_reason == "single-step"
    assert store.get_task("E01-T002").state == "PR_READY"
    assert store.get_task("E01-T001").state == "WRITING_DOCS"


def test_single_mode_refuses_blocked_done_or_waiting_tasks() -> None:
    store = _store(
        _docs_task("E01-T001", blocked=True, blocked_reason="timeout"),
        _docs_task("E01-T002", state=DONE),
        _docs_task("E01-T003", depends_on=["E01-T002", "E01-T001"]),
    )
    loop = _loop(store, ApprovingHandler())

    for task_id in ("E01-T001", "E01-T002", "E01-T003"):
        with pytest.raises(TaskNotRunnableError):
            _run(loop, RunMode.single(task_id))


def test_single_mode_skips_breakpoint() -> None:
    store = _store(_docs_task("E01-T001", breakpoint=True))
    handler = ApprovingHandler()

    summary = _run(_loop(store, handler), RunMode.single("E01-T001"))

    assert summary.steps == 0
    assert summary.stopped_reason == "breakpoint"
    assert handler.calls == []


def test_single_step_that_finishes_epic_triggers_review() -> None:
    store = _store(_docs_task("E01-T001", state="PR_READY"))
    loop = _loop(store, ApprovingHandler())

    summary = _run(loop, RunMode.single("E01-T001"))

    assert loop.executor.on_epic_complete == loop._queue_review
    assert summary.completed_epics == ["E01"]
    assert store.get_epic("E01").status == EpicStatus.COMPLETED


def test_auto_mode_processes_follow_ups_until_epic_is_complete() -> None:
    store = _store(_docs_task("E01-T001"))
    handler = ApprovingHandler(reviews={"E01-T001": "reviews/E01-T001.md"})
    documents = {"reviews/E01-T001.md": "Must fix: broken link in the install guide"}

    summary = _run(_loop(store, handler, documents), RunMode.auto())

    assert summary.steps == 4
    assert summary.processed_tasks == ["E01-T001", "E01-T002"]
    assert summary.follow_up_tasks == ["E01-T002"]
    assert summary.completed_epics == ["E01"]
    assert summary.incomplete_epics == []
    assert summary.stopped_reason == "idle"
    assert not summary.has_blocked
    epic = store.get_epic("E01")
    assert epic.status == EpicStatus.COMPLETED
    assert epic.review_count == 2


def test_task_blocked_before_the_run_is_reported_blocked() -> None:
    store = _store(
        _docs_task("E01-T001"),
        _docs_task("E01-T002", blocked=True, blocked_reason="credentials expired"),
    )
    handler = ApprovingHandler()

    summary = _run(_loop(store, handler), RunMode.auto())

    assert store.get_task("E01-T001").state == DONE
    assert summary.processed_tasks == ["E01-T001"]
    assert summary.blocked_tasks == ["E01-T002"]
    assert summary.has_blocked
    assert summary.stopped_reason == "no-ready-tasks"


def test_auto_mode_with_blocked_task_leaves_epic_incomplete() -> None:
    store = _store(_docs_task("E01-T001"), _docs_task("E01-T002"), _docs_task("E01-T003"))
    handler = ApprovingHandler(failing={"E01-T003"})

    summary = _run(_loop(store, handler), RunMode.auto())

    assert store.get_task("E01-T001").state == DONE
    assert store.get_task("E01-T002").state == DONE
    blocked = store.get_task("E01-T003")
    assert blocked.blocked is True
    assert blocked.state == "WRITING_DOCS"
    assert summary.blocked_tasks == ["E01-T003"]
    assert summary.has_blocked
    assert summary.incomplete_epics == ["E01"]
    assert summary.completed_epics == []
    assert summary.stopped_reason == "no-ready-tasks"
    assert store.get_epic("E01").review_count == 0


def test_handler_failure_does_not_stop_other_tasks() -> None:
    store = _store(_docs_task("E01-T001"), _docs_task("E01-T002"))
    handler = ApprovingHandler(failing={"E01-T001"})

    _run(_loop(store, handler), RunMode.auto())

    assert store.get_task("E01-T001").state == "WRITING_DOCS"
    assert store.get_task("E01-T002").state == DONE


def test_auto_mode_skips_tasks_at_breakpoint() -> None:
    store = _store(_docs_task("E01-T001", breakpoint=True), _docs_task("E01-T002"))
    handler = ApprovingHandler()

    summary = _run(_loop(store, handler), RunMode.auto())

    assert {task_id for task_id, _ in handler.calls} == {"E01-T002"}
    assert store.get_task("E01-T001").state == "WRITING_DOCS"
    assert summary.stopped_reason == "no-ready-tasks"


def test_auto_mode_respects_dependencies_and_priority() -> None:
    store = _store(
        _docs_task("E01-T001"),
        _docs_task("E01-T002", depends_on=["E01-T003"]),
        _docs_task("E01-T003", priority=Priority.CRITICAL),
    )
    handler = ApprovingHandler()

    _run(_loop(store, handler), RunMode.auto())

    order = list(dict.fromkeys(task_id for task_id, _ in handler.calls))
    assert order == ["E01-T003", "E01-T001", "E01-T002"]


def test_parallel_batches_only_run_independent_tasks_together() -> None:
    store = _store(
        _docs_task("E01-T001"),
        _docs_task("E01-T002"),
        _docs_task("E01-T003", depends_on=["E01-T001"]),
    )
    handler = ApprovingHandler()

    summary = _run(_loop(store, handler, max_parallel_tasks=2), RunMode.auto())

    assert handler.peak == 2
    assert all(task.state == DONE for task in store.list_tasks())
    first_t3 = handler.calls.index(("E01-T003", "WRITING_DOCS"))
    assert handler.calls.index(("E01-T001", "PR_READY")) < first_t3
    assert summary.completed_epics == ["E01"]


def test_step_limit_stops_the_loop() -> None:
    store = _store(_docs_task("E01-T001"))

    summary = _run(_loop(store, ApprovingHandler(), max_steps_per_run=1), RunMode.auto())

    assert summary.steps == 1
    assert summary.stopped_reason == "step-limit"
    assert summary.incomplete_epics == ["E01"]


def test_continuous_mode_asks_for_next_epic_until_roadmap_is_exhausted() -> None:
    store = _store(_docs_task("E01-T001"))
    seen: list[list[str]] = []
    queued = [NewEpic(epic=Epic(id="E02", title="Billing"), tasks=[_docs_task("E02-T001")])]

    async def _planner(epics: list[Epic]) -> NewEpic | None:
        seen.append([epic.id for epic in epics])
        return queued.pop(0) if queued else None

    summary = _run(_loop(store, ApprovingHandler(), planner=_planner), RunMode.continuous())

    assert seen == [["E01"], ["E01", "E02"]]
    assert summary.completed_epics == ["E01", "E02"]
    assert summary.stopped_reason == "roadmap-exhausted"
    assert store.get_task("E02-T001").state == DONE
    assert store.get_epic("E02").title == "Billing"


def test_continuous_mode_stops_on_empty_epic() -> None:
    store = _store(_docs_task("E01-T001"))

    def _planner(epics: list[Epic]) -> NewEpic:
        return NewEpic(epic=Epic(id="E02"), tasks=[])

    summary = _run(_loop(store, ApprovingHandler(), planner=_planner), RunMode.continuous())

    assert summary.stopped_reason == "empty-epic"
    assert store.find_epic("E02") is None


def test_auto_mode_does_not_plan_new_epics() -> None:
    store = _store(_docs_task("E01-T001"))
    calls: list[int] = []

    def _planner(epics: list[Epic]) -> None:
        calls.append(len(epics))

    summary = _run(_loop(store, ApprovingHandler(), planner=_planner), RunMode.auto())

    assert calls == []
    assert summary.stopped_reason == "idle"
