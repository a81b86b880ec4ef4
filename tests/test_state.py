import json
from pathlib import Path
from typing import Any

import pytest

from epicflow.graphs import Category, IncompatibleLabels, InvalidTaskState
from epicflow.models import Epic, EpicStatus, Priority, Task
from epicflow.state import (
    DependencyCycleError,
    DuplicateTaskError,
    EpicflowStateError,
    JsonFileBackend,
    MemoryBackend,
    TaskNotFoundError,
    TaskStore,
    create_backend,
)
from epicflow.state.backends import get_json, update_json
from epicflow.state.store import find_cycles


def _task(task_id: str, *, depends_on: list[str] | None = None, **kwargs: Any) -> Task:
    return Task(
        id=task_id,
        epic_id=kwargs.pop("epic_id", "E01"),
        category=kwargs.pop("category", Category.DEVELOPMENT),
        state=kwargs.pop("state", ""),
        depends_on=depends_on or [],
        **kwargs,
    )


def test_file_backend_roundtrip_and_envelope(tmp_path: Path) -> None:
    backend = JsonFileBackend(tmp_path / ".epicflow")
    backend.set_json("tasks", {"tasks": {"E01-T001": {"id": "E01-T001"}}})

    reopened = JsonFileBackend(tmp_path / ".epicflow")
    assert get_json(reopened, "tasks") == {"tasks": {"E01-T001": {"id": "E01-T001"}}}

    on_disk = json.loads((tmp_path / ".epicflow" / "state" / "tasks.json").read_text("utf-8"))
    assert on_disk["schema_version"] == 1
    assert on_disk["revision"] == 2
    assert on_disk["data"]["tasks"]["E01-T001"]["id"] == "E01-T001"
    assert not (tmp_path / ".epicflow" / "state" / ".lock").exists()


def test_file_backend_wraps_legacy_payload(tmp_path: Path) -> None:
    backend = JsonFileBackend(tmp_path)
    (tmp_path / "state" / "epics.json").write_text(json.dumps({"legacy": True}), "utf-8")

    envelope = backend.get_envelope("epics")

    assert envelope["data"] == {"legacy": True}
    assert envelope["revision"] == 1


def test_file_backend_times_out_on_held_lock(tmp_path: Path) -> None:
    backend = JsonFileBackend(tmp_path, lock_timeout_seconds=0.05)
    backend.lock_file.write_text("4242", encoding="utf-8")

    with pytest.raises(EpicflowStateError, match="Timed out"):
        backend.set_json("tasks", {})


def test_unknown_namespace_is_rejected() -> None:
    with pytest.raises(EpicflowStateError):
        MemoryBackend().set_json("patches", {})


def test_stale_revision_is_rejected() -> None:
    backend = MemoryBackend()
    backend.set_json("epics", {"epics": {}})

    with pytest.raises(EpicflowStateError, match="Concurrent state update detected"):
        backend.set_json("epics", {"epics": {}}, expected_revision=1)


def test_update_json_increments_revision() -> None:
    backend = MemoryBackend()
    backend.set_json("tasks", {"count": 1})
    first_revision = backend.get_envelope("tasks")["revision"]

    update_json(backend, "tasks", lambda payload: {"count": payload["count"] + 1})

    assert get_json(backend, "tasks")["count"] == 2
    assert backend.get_envelope("tasks")["revision"] > first_revision


def test_update_json_retries_after_concurrent_write() -> None:
    backend = MemoryBackend()
    backend.set_json("tasks", {"count": 0})
    calls = {"count": 0}

    def _updater(payload: Any) -> dict[str, Any]:
        calls["count"] += 1
        if calls["count"] == 1:
            backend.set_json("tasks", {"count": 10})
        return {"count": payload["count"] + 1}

    update_json(backend, "tasks", _updater)

    assert calls["count"] == 2
    assert get_json(backend, "tasks") == {"count": 11}


def test_memory_backend_returns_copies() -> None:
    backend = MemoryBackend()
    backend.set_json("tasks", {"tasks": {}})

    get_json(backend, "tasks")["tasks"]["ghost"] = {}

    assert get_json(backend, "tasks") == {"tasks": {}}


def test_create_backend_rejects_unknown_kind(tmp_path: Path) -> None:
    assert isinstance(create_backend("memory", tmp_path), MemoryBackend)
    with pytest.raises(EpicflowStateError):
        create_backend("git-notes", tmp_path)


def test_add_tasks_starts_at_first_phase_and_registers_epic() -> None:
    store = TaskStore(MemoryBackend())

    store.add_tasks(
        [_task("E01-T001"), _task("E01-T002", category=Category.DOCUMENTATION)],
        epic_title="Auth",
    )

    first = store.get_task("E01-T001")
    assert first.state == "ANALYZING"
    assert first.history[0].note == "created"
    assert store.get_task("E01-T002").state == "WRITING_DOCS"
    epic = store.get_epic("E01")
    assert epic.title == "Auth"
    assert epic.tasks == ["E01-T001", "E01-T002"]
    assert epic.status == EpicStatus.PLANNED


def test_add_tasks_maintains_reverse_dependencies() -> None:
    store = TaskStore(MemoryBackend())
    store.add_tasks([_task("E01-T001")])

    store.add_tasks([_task("E01-T002", depends_on=["E01-T001"])])
    store.add_tasks([_task("E01-T003", depends_on=["E01-T001", "E01-T002"])])

    assert store.get_task("E01-T001").blocks == ["E01-T002", "E01-T003"]
    assert store.get_task("E01-T002").blocks == ["E01-T003"]


def test_add_tasks_rejects_duplicates() -> None:
    store = TaskStore(MemoryBackend())
    store.add_tasks([_task("E01-T001")])

    with pytest.raises(DuplicateTaskError):
        store.add_tasks([_task("E01-T001")])
    with pytest.raises(DuplicateTaskError):
        store.add_tasks([_task("E01-T002"), _task("E01-T002")])


def test_add_tasks_rejects_cycles_without_writing() -> None:
    store = TaskStore(MemoryBackend())

    with pytest.raises(DependencyCycleError) as excinfo:
        store.add_tasks(
            [
                _task("E01-T001", depends_on=["E01-T003"]),
                _task("E01-T002", depends_on=["E01-T001"]),
                _task("E01-T003", depends_on=["E01-T002"]),
            ]
        )

    assert excinfo.value.cycle == ["E01-T001", "E01-T003", "E01-T002", "E01-T001"]
    assert store.list_tasks() == []


def test_add_tasks_validates_labels_and_state() -> None:
    store = TaskStore(MemoryBackend())

    with pytest.raises(IncompatibleLabels):
        store.add_tasks([_task("E01-T001", variant_labels=frozenset({"docs:simple"}))])
    with pytest.raises(InvalidTaskState):
        store.add_tasks([_task("E01-T001", state="MIGRATION_TESTING")])

    store.add_tasks([_task("E01-T001", state="CODE_REVIEW")])
    assert store.get_task("E01-T001").state == "CODE_REVIEW"


def test_adding_to_completed_epic_reopens_it() -> None:
    store = TaskStore(MemoryBackend())
    store.add_tasks([_task("E01-T001")])
    epic = store.get_epic("E01")
    epic.status = EpicStatus.COMPLETED
    epic.completed_at = "2026-01-01T00:00:00+00:00"
    store.save_epic(epic)

    store.add_tasks([_task("E01-T002")])

    reopened = store.get_epic("E01")
    assert reopened.status == EpicStatus.IN_PROGRESS
    assert reopened.completed_at is None


def test_add_epic_keeps_existing_record() -> None:
    store = TaskStore(MemoryBackend())
    store.add_epic(Epic(id="E02", title="Billing"), [_task("E02-T001", epic_id="E02")])

    store.add_epic(Epic(id="E02", title="Renamed"), [_task("E02-T002", epic_id="E02")])

    epic = store.get_epic("E02")
    assert epic.title == "Billing"
    assert epic.tasks == ["E02-T001", "E02-T002"]


def test_next_task_id_follows_highest_number() -> None:
    store = TaskStore(MemoryBackend())
    assert store.next_task_id("E03") == "E03-T001"

    store.add_tasks([_task("E03-T001", epic_id="E03"), _task("E03-T007", epic_id="E03")])

    assert store.next_task_id("E03") == "E03-T008"


def test_breakpoint_and_unblock_are_recorded() -> None:
    store = TaskStore(MemoryBackend())
    store.add_tasks([_task("E01-T001")])

    store.set_breakpoint("E01-T001", True)
    store.set_breakpoint("E01-T001", True)
    task = store.get_task("E01-T001")
    assert task.breakpoint is True
    assert task.status == "paused"
    assert [entry.note for entry in task.history] == ["created", "breakpoint set"]

    task.blocked = True
    task.blocked_reason = "Handler timed out after 1.0s"
    store.save_task(task)
    store.set_breakpoint("E01-T001", False)
    assert store.get_task("E01-T001").status == "blocked"

    released = store.unblock("E01-T001", "credentials rotated")
    assert released.blocked is False
    assert released.blocked_reason is None
    assert released.history[-1].note == "credentials rotated"
    assert released.history[-1].agent == "operator"


def test_missing_task_raises() -> None:
    with pytest.raises(TaskNotFoundError):
        TaskStore(MemoryBackend()).get_task("E09-T001")


def test_store_persists_through_file_backend(tmp_path: Path) -> None:
    store = TaskStore(JsonFileBackend(tmp_path))
    store.add_tasks(
        [_task("E01-T001", priority=Priority.HIGH, modifier_labels=frozenset({"frontend"}))]
    )

    reloaded = TaskStore(JsonFileBackend(tmp_path)).get_task("E01-T001")

    assert reloaded.modifier_labels == frozenset({"frontend"})
    assert reloaded.priority.value == "high"
    assert reloaded.state == "ANALYZING"


def test_find_cycles_reports_each_cycle_once() -> None:
    cycles = find_cycles(
        {
            "B": ["C"],
            "C": ["B"],
            "D": ["D"],
            "E": ["B", "missing"],
        }
    )

    assert cycles == [["B", "C", "B"], ["D", "D"]]
