from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from epicflow.graphs import DONE, HANDLER_FAILED, Category

ARTIFACT_SPEC = "spec"
ARTIFACT_TESTS = "tests"
ARTIFACT_CODE = "code"
ARTIFACT_REVIEWS = "reviews"


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def parse(cls, value: str | Priority) -> Priority:
        if isinstance(value, Priority):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown priority: {value!r}") from exc


_PRIORITY_RANK = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}


class EpicStatus(str, Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


@dataclass(slots=True)
class HistoryEntry:
    at: str
    state: str
    agent: str
    note: str = ""
    verdict: str | None = None
    from_state: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": self.at,
            "state": self.state,
            "agent": self.agent,
            "note": self.note,
            "verdict": self.verdict,
            "from_state": self.from_state,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> HistoryEntry:
        return cls(
            at=str(payload.get("at") or utcnow_iso()),
            state=str(payload["state"]),
            agent=str(payload.get("agent", "")),
            note=str(payload.get("note", "")),
            verdict=payload.get("verdict"),
            from_state=payload.get("from_state"),
        )


def merge_artifacts(
    current: dict[str, list[str]], incoming: dict[str, list[str]] | None
) -> dict[str, list[str]]:
    """Union incoming references into current, preserving first-seen order."""
    merged = {kind: list(refs) for kind, refs in current.items()}
    for kind, refs in (incoming or {}).items():
        bucket = merged.setdefault(kind, [])
        for ref in refs:
            if ref not in bucket:
                bucket.append(ref)
    return merged


def normalize_artifacts(raw: Any) -> dict[str, list[str]]:
    if not isinstance(raw, dict):
        return {}
    normalized: dict[str, list[str]] = {}
    for kind, refs in raw.items():
        key = str(kind).strip()
        if not key:
            continue
        if isinstance(refs, str):
            values = [refs]
        elif isinstance(refs, (list, tuple, set)):
            values = [str(ref) for ref in refs]
        else:
            continue
        cleaned = [value.strip() for value in values if value and value.strip()]
        normalized[key] = list(dict.fromkeys(cleaned))
    return normalized


@dataclass(slots=True)
class Task:
    id: str
    epic_id: str
    category: Category
    state: str
    title: str = ""
    variant_labels: frozenset[str] = frozenset()
    modifier_labels: frozenset[str] = frozenset()
    priority: Priority = Priority.MEDIUM
    depends_on: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    breakpoint: bool = False
    blocked: bool = False
    blocked_reason: str | None = None
    artifacts: dict[str, list[str]] = field(default_factory=dict)
    rejected_from: str | None = None
    history: list[HistoryEntry] = field(default_factory=list)
    source_issue: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    @property
    def is_done(self) -> bool:
        return self.state == DONE

    @property
    def status(self) -> str:
        """Operator-facing status: done, blocked, paused or in-progress."""
        if self.is_done:
            return "done"
        if self.blocked:
            return "blocked"
        if self.breakpoint:
            return "paused"
        return "in-progress"

    def record(self, entry: HistoryEntry) -> None:
        self.history.append(entry)
        self.updated_at = entry.at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "epic_id": self.epic_id,
            "title": self.title,
            "category": self.category.value,
            "variant_labels": sorted(self.variant_labels),
            "modifier_labels": sorted(self.modifier_labels),
            "priority": self.priority.value,
            "state": self.state,
            "depends_on": list(self.depends_on),
            "blocks": list(self.blocks),
            "breakpoint": self.breakpoint,
            "blocked": self.blocked,
            "blocked_reason": self.blocked_reason,
            "artifacts": {kind: list(refs) for kind, refs in self.artifacts.items()},
            "rejected_from": self.rejected_from,
            "history": [entry.to_dict() for entry in self.history],
            "source_issue": self.source_issue,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        history_payload = payload.get("history", [])
        if not isinstance(history_payload, list):
            history_payload = []
        return cls(
            id=str(payload["id"]),
            epic_id=str(payload["epic_id"]),
            title=str(payload.get("title", "")),
            category=Category.parse(payload["category"]),
            variant_labels=frozenset(str(label) for label in payload.get("variant_labels", [])),
            modifier_labels=frozenset(str(label) for label in payload.get("modifier_labels", [])),
            priority=Priority.parse(payload.get("priority", Priority.MEDIUM)),
            state=str(payload["state"]),
            depends_on=[str(dep) for dep in payload.get("depends_on", [])],
            blocks=[str(item) for item in payload.get("blocks", [])],
            breakpoint=bool(payload.get("breakpoint", False)),
            blocked=bool(payload.get("blocked", False)),
            blocked_reason=payload.get("blocked_reason"),
            artifacts=normalize_artifacts(payload.get("artifacts", {})),
            rejected_from=payload.get("rejected_from"),
            history=[
                HistoryEntry.from_dict(item) for item in history_payload if isinstance(item, dict)
            ],
            source_issue=payload.get("source_issue"),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class Epic:
    id: str
    title: str = ""
    tasks: list[str] = field(default_factory=list)
    status: EpicStatus = EpicStatus.PLANNED
    reviewed_issues: dict[str, str] = field(default_factory=dict)
    review_count: int = 0
    created_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "tasks": list(self.tasks),
            "status": self.status.value,
            "reviewed_issues": dict(self.reviewed_issues),
            "review_count": self.review_count,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Epic:
        reviewed = payload.get("reviewed_issues", {})
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title", "")),
            tasks=[str(task_id) for task_id in payload.get("tasks", [])],
            status=EpicStatus(payload.get("status", EpicStatus.PLANNED.value)),
            reviewed_issues=dict(reviewed) if isinstance(reviewed, dict) else {},
            review_count=int(payload.get("review_count", 0)),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            completed_at=payload.get("completed_at"),
        )


@dataclass(slots=True)
class StepResult:
    verdict: str
    artifacts: dict[str, list[str]] = field(default_factory=dict)
    note: str = ""
    agent: str = ""
    command: str = ""
    phase: str = ""

    @property
    def failed(self) -> bool:
        return self.verdict == HANDLER_FAILED


@dataclass(slots=True)
class StepOutcome:
    task: Task
    from_state: str
    result: StepResult
    rejected: bool = False
    epic_complete: bool = False

    @property
    def blocked(self) -> bool:
        return self.result.failed


@dataclass(slots=True)
class NewEpic:
    epic: Epic
    tasks: list[Task]


def split_labels(labels: list[str]) -> tuple[frozenset[str], frozenset[str]]:
    """Split a flat label list into variant labels (``kind:flavour``) and modifiers."""
    variants = {label.strip().lower() for label in labels if ":" in label}
    modifiers = {label.strip().lower() for label in labels if label.strip() and ":" not in label}
    return frozenset(variants), frozenset(modifiers)


def parse_task_payload(payload: dict[str, Any], epic_id: str) -> Task:
    """Build a new task from an import record.

    Accepts either explicit ``variant_labels`` / ``modifier_labels`` or a flat
    ``labels`` list. An empty ``state`` is filled with the graph's first phase
    when the task is added to a store.
    """
    if "id" not in payload or "category" not in payload:
        raise ValueError(f"Task record needs 'id' and 'category': {payload!r}")
    variants, modifiers = split_labels([str(label) for label in payload.get("labels", [])])
    variants |= {str(label).lower() for label in payload.get("variant_labels", [])}
    modifiers |= {str(label).lower() for label in payload.get("modifier_labels", [])}
    return Task(
        id=str(payload["id"]),
        epic_id=str(payload.get("epic_id") or epic_id),
        title=str(payload.get("title", "")),
        category=Category.parse(payload["category"]),
        variant_labels=frozenset(variants),
        modifier_labels=frozenset(modifiers),
        priority=Priority.parse(payload.get("priority", Priority.MEDIUM)),
        state=str(payload.get("state") or ""),
        depends_on=[str(dep) for dep in payload.get("depends_on", [])],
        breakpoint=bool(payload.get("breakpoint", False)),
    )


def parse_epic_payload(payload: dict[str, Any]) -> NewEpic:
    if "id" not in payload:
        raise ValueError(f"Epic record needs an 'id': {payload!r}")
    epic = Epic(id=str(payload["id"]), title=str(payload.get("title", "")))
    raw_tasks = payload.get("tasks", [])
    if not isinstance(raw_tasks, list):
        raise ValueError(f"Epic {epic.id}: 'tasks' must be a list")
    tasks = [parse_task_payload(item, epic.id) for item in raw_tasks if isinstance(item, dict)]
    return NewEpic(epic=epic, tasks=tasks)
