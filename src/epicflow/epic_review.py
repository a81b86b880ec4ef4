from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from epicflow.graphs import DONE, SECURITY, Category
from epicflow.models import (
    ARTIFACT_REVIEWS,
    EpicStatus,
    Priority,
    Task,
    utcnow_iso,
)
from epicflow.observability import get_logger, task_context
from epicflow.state.store import TaskStore

logger = get_logger(__name__)

ArtifactReader = Callable[[str], str | None]

SEVERITY_TAG = re.compile(r"\b(BLOCKER|MAJOR|MINOR|SUGGESTION)\b")
REVIEW_LABEL = re.compile(r"\b(must[ -]fix|should[ -]fix|suggestions?)\b", re.IGNORECASE)
ESCALATION = re.compile(r"\b(critical|blocker|security)\b", re.IGNORECASE)
HEADING = re.compile(r"^#{1,6}\s+(.*)$")
LIST_ITEM = re.compile(r"^(?:[-*+]|\d+[.)])\s+(?:\[([ xX])\]\s*)?(.*)$")
TESTS_ISSUE = re.compile(r"\b(tests?|testing|coverage)\b", re.IGNORECASE)
DOCS_ISSUE = re.compile(r"\b(docs?|documentation|readme|changelog)\b", re.IGNORECASE)
SECURITY_ISSUE = re.compile(
    r"\b(security|vulnerab\w*|injection|xss|csrf|secrets?)\b", re.IGNORECASE
)
NEGATION = re.compile(r"^(?:no|none|zero|0|without)\b", re.IGNORECASE)
PLACEHOLDER = re.compile(r"^(?:none|n/?a|nothing|no issues?)\W*$", re.IGNORECASE)

_TAG_SEVERITY = {
    "BLOCKER": Priority.CRITICAL,
    "MAJOR": Priority.HIGH,
    "MINOR": Priority.MEDIUM,
    "SUGGESTION": Priority.LOW,
}
_NAMED_SEVERITY = {
    "critical": Priority.CRITICAL,
    "blocker": Priority.CRITICAL,
    "high": Priority.HIGH,
    "major": Priority.HIGH,
    "medium": Priority.MEDIUM,
    "minor": Priority.MEDIUM,
    "low": Priority.LOW,
    "suggestion": Priority.LOW,
}


class EpicNotReadyError(RuntimeError):
    """Raised when an epic cannot be reviewed yet."""


@dataclass(slots=True)
class ReviewIssue:
    severity: Priority
    text: str
    task_id: str = ""
    source: str = ""

    @property
    def normalized_text(self) -> str:
        return " ".join(re.sub(r"[^\w\s]", " ", self.text.lower()).split())


class FileArtifactReader:
    """Reads artifact references as paths relative to the project root."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def __call__(self, reference: str) -> str | None:
        path = Path(reference)
        if not path.is_absolute():
            path = self.root / path
        if not path.is_file():
            logger.warning("Review artifact not found: %s", reference)
            return None
        return path.read_text(encoding="utf-8", errors="replace")


def _severity_from_label(label: str, line: str) -> Priority:
    normalized = label.lower().replace("-", " ")
    if normalized == "must fix":
        return Priority.CRITICAL if ESCALATION.search(line) else Priority.HIGH
    if normalized == "should fix":
        return Priority.MEDIUM
    return Priority.LOW


def _clean_issue_text(text: str) -> str:
    return text.strip().strip("*_:- ").strip()


def _issues_from_json(content: str) -> list[ReviewIssue] | None:
    found: list[ReviewIssue] = []
    structured = False
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict):
            continue
        items: list[Any] = [payload]
        if isinstance(payload.get("findings"), list):
            items = payload["findings"]
            structured = True
        for item in items:
            if not isinstance(item, dict):
                continue
            text = str(item.get("title") or item.get("message") or item.get("text") or "")
            named = " ".join(str(item.get("severity", "")).strip().lower().split())
            severity = _NAMED_SEVERITY.get(named)
            if severity is None and REVIEW_LABEL.fullmatch(named):
                severity = _severity_from_label(named, text)
            if severity is None:
                continue
            structured = True
            if item.get("resolved"):
                continue
            if text.strip():
                found.append(ReviewIssue(severity=severity, text=text.strip()))
    return found if structured else None


def parse_review_issues(content: str) -> list[ReviewIssue]:
    """Extract review issues from an artifact.

    JSON lines win when present. Otherwise markdown is scanned for
    ``BLOCKER/MAJOR/MINOR/SUGGESTION`` tags, inline ``must fix`` /
    ``should fix`` / ``suggestion`` labels, and list items under a heading
    carrying one of those labels. Checked boxes and ``(resolved)`` lines are
    skipped.
    """
    structured = _issues_from_json(content)
    if structured is not None:
        return structured

    issues: list[ReviewIssue] = []
    section_label: str | None = None
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        heading = HEADING.match(line)
        if heading:
            label = REVIEW_LABEL.search(heading.group(1))
            section_label = label.group(1) if label else None
            continue

        if line.startswith("|"):
            continue

        is_item = False
        item = LIST_ITEM.match(line)
        if item:
            if item.group(1) in {"x", "X"}:
                continue
            line = item.group(2).strip()
            is_item = True
        if "(resolved)" in line.lower() or PLACEHOLDER.match(_clean_issue_text(line)):
            continue

        tag = SEVERITY_TAG.search(line)
        if tag:
            if NEGATION.match(line):
                continue
            if is_item or not re.search(r"\w", line[: tag.start()]):
                text = _clean_issue_text(line[: tag.start()] + line[tag.end():])
                if text:
                    issues.append(
                        ReviewIssue(severity=_TAG_SEVERITY[tag.group(1)], text=text)
                    )
                continue
        label = REVIEW_LABEL.search(line)
        if label and label.start() <= 4:
            if NEGATION.match(line):
                continue
            text = _clean_issue_text(line[label.end():])
            if text and not PLACEHOLDER.match(text):
                issues.append(
                    ReviewIssue(severity=_severity_from_label(label.group(1), line), text=text)
                )
            continue
        if section_label and is_item:
            text = _clean_issue_text(line)
            if text:
                issues.append(
                    ReviewIssue(severity=_severity_from_label(section_label, line), text=text)
                )
    return issues


def issue_fingerprint(epic_id: str, task_id: str, issue: ReviewIssue) -> str:
    raw = f"{epic_id}|{task_id}|{issue.normalized_text}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class EpicReviewEngine:
    def __init__(
        self,
        store: TaskStore,
        reader: ArtifactReader,
        *,
        threshold: str | Priority = Priority.HIGH,
    ) -> None:
        self.store = store
        self.reader = reader
        self.threshold = Priority.parse(threshold)

    def is_reviewable(self, epic_id: str) -> bool:
        epic = self.store.find_epic(epic_id)
        if epic is None or epic.status == EpicStatus.COMPLETED:
            return False
        tasks = self.store.list_tasks(epic_id)
        return bool(tasks) and all(task.state == DONE and not task.blocked for task in tasks)

    def _check_ready(self, epic_id: str, tasks: list[Task]) -> None:
        if not tasks:
            raise EpicNotReadyError(f"Epic {epic_id} has no tasks.")
        unfinished = [task.id for task in tasks if task.state != DONE]
        if unfinished:
            raise EpicNotReadyError(
                f"Epic {epic_id} has unfinished tasks: {', '.join(unfinished)}"
            )
        blocked = [task.id for task in tasks if task.blocked]
        if blocked:
            raise EpicNotReadyError(f"Epic {epic_id} has blocked tasks: {', '.join(blocked)}")
        running = [task.id for task in tasks if self.store.is_task_locked(task.id)]
        if running:
            raise EpicNotReadyError(f"Epic {epic_id} has running tasks: {', '.join(running)}")

    def collect_issues(self, tasks: list[Task]) -> list[ReviewIssue]:
        issues: list[ReviewIssue] = []
        for task in tasks:
            for reference in task.artifacts.get(ARTIFACT_REVIEWS, []):
                content = self.reader(reference)
                if content is None:
                    continue
                for issue in parse_review_issues(content):
                    issue.task_id = task.id
                    issue.source = reference
                    issues.append(issue)
        return issues

    @staticmethod
    def _follow_up(task_id: str, origin: Task, issue: ReviewIssue, fingerprint: str) -> Task:
        if TESTS_ISSUE.search(issue.text):
            category = Category.DEVELOPMENT
            variants: frozenset[str] = frozenset()
            modifiers: frozenset[str] = frozenset()
        elif DOCS_ISSUE.search(issue.text):
            category = Category.DOCUMENTATION
            variants = frozenset({"docs:simple"})
            modifiers = frozenset()
        else:
            category = origin.category
            variants = origin.variant_labels
            modifiers = origin.modifier_labels
        if SECURITY_ISSUE.search(issue.text):
            modifiers = modifiers | {SECURITY}
        title = issue.text if len(issue.text) <= 120 else issue.text[:117] + "..."
        return Task(
            id=task_id,
            epic_id=origin.epic_id,
            title=title,
            category=category,
            variant_labels=variants,
            modifier_labels=modifiers,
            priority=issue.severity,
            state="",
            source_issue=fingerprint,
        )

    async def review_epic(
        self, epic_id: str, threshold: str | Priority | None = None
    ) -> list[Task]:
        """Turn unresolved review findings into follow-up tasks.

        Only issues at or above the threshold count, and each fingerprint is
        emitted once per epic. An empty result completes the epic.
        """
        limit = Priority.parse(threshold) if threshold is not None else self.threshold
        self.store.get_epic(epic_id)
        lock = self.store.epic_lock(epic_id)
        if lock.locked():
            raise EpicNotReadyError(f"Epic {epic_id} is already under review.")
        async with lock:
            with task_context(epic_id=epic_id):
                tasks = self.store.epic_tasks(epic_id)
                self._check_ready(epic_id, tasks)
                by_id = {task.id: task for task in tasks}
                epic = self.store.get_epic(epic_id)
                issues = self.collect_issues(tasks)

                next_number = int(self.store.next_task_id(epic_id).rsplit("-T", 1)[1])
                seen = set(epic.reviewed_issues)
                follow_ups: list[Task] = []
                skipped = 0
                for issue in issues:
                    if issue.severity.rank > limit.rank:
                        skipped += 1
                        continue
                    fingerprint = issue_fingerprint(epic_id, issue.task_id, issue)
                    if fingerprint in seen:
                        continue
                    seen.add(fingerprint)
                    task_id = f"{epic_id}-T{next_number:03d}"
                    next_number += 1
                    follow_ups.append(
                        self._follow_up(task_id, by_id[issue.task_id], issue, fingerprint)
                    )

                if follow_ups:
                    self.store.add_tasks(follow_ups)
                epic = self.store.get_epic(epic_id)
                for task in follow_ups:
                    if task.source_issue:
                        epic.reviewed_issues[task.source_issue] = task.id
                epic.review_count += 1
                if not follow_ups:
                    epic.status = EpicStatus.COMPLETED
                    epic.completed_at = utcnow_iso()
                self.store.save_epic(epic)
                logger.info(
                    "Review of %s: %d issue(s), %d below %s, %d follow-up task(s)",
                    epic_id,
                    len(issues),
                    skipped,
                    limit.value,
                    len(follow_ups),
                )
        return follow_ups
