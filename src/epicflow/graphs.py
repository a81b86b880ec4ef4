from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from threading import Lock

DONE = "DONE"

APPROVED = "APPROVED"
CHANGES_REQUESTED = "CHANGES_REQUESTED"
NOT_APPLICABLE = "NOT_APPLICABLE"
ANALYZED = "ANALYZED"
TESTS_READY = "TESTS_READY"
TESTS_REVISION_NEEDED = "TESTS_REVISION_NEEDED"
IMPLEMENTED = "IMPLEMENTED"
NEEDS_UX_CHANGES = "NEEDS_UX_CHANGES"
NEEDS_UI_CHANGES = "NEEDS_UI_CHANGES"
PASSED = "PASSED"
INTEGRATION_FAILED = "INTEGRATION_FAILED"
MIGRATION_FAILED = "MIGRATION_FAILED"
DOCS_UPDATED = "DOCS_UPDATED"
DOCS_WRITTEN = "DOCS_WRITTEN"
PR_CREATED = "PR_CREATED"
HANDLER_FAILED = "HANDLER_FAILED"

FRONTEND = "frontend"
SECURITY = "security"
KNOWN_MODIFIERS = frozenset({FRONTEND, SECURITY})


class WorkflowConfigurationError(RuntimeError):
    """Raised when workflow definitions and task data disagree."""


class UnknownCategory(WorkflowConfigurationError):
    """Raised when a task category has no base graph."""


class IncompatibleLabels(WorkflowConfigurationError):
    """Raised when variant and modifier labels cannot be combined."""


class InvalidTaskState(WorkflowConfigurationError):
    """Raised when a task state is not a node of its resolved graph."""


class InvalidTransition(WorkflowConfigurationError):
    """Raised when a verdict has no outgoing edge from the current phase."""

    def __init__(self, task_id: str, phase: str, verdict: str, accepted: Iterable[str]) -> None:
        accepted_list = sorted(accepted)
        super().__init__(
            f"Verdict '{verdict}' is not valid for {task_id} in phase {phase}. "
            f"Accepted verdicts: {', '.join(accepted_list) or 'none'}"
        )
        self.task_id = task_id
        self.phase = phase
        self.verdict = verdict
        self.accepted = accepted_list


class HandlerNotRegistered(WorkflowConfigurationError):
    """Raised when no command handler is registered for a graph command."""


class Category(str, Enum):
    DEVELOPMENT = "development"
    SCHEMA = "schema"
    INFRASTRUCTURE = "infrastructure"
    DOCUMENTATION = "documentation"
    BUGFIX = "bugfix"

    @classmethod
    def parse(cls, value: str | Category) -> Category:
        if isinstance(value, Category):
            return value
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise UnknownCategory(f"Unknown task category: {value!r}")


class Command(str, Enum):
    ANALYZE = "analyze"
    REVIEW_PLAN = "review-plan"
    REVIEW_UX = "review-ux"
    WRITE_TESTS = "write-tests"
    IMPLEMENT = "implement"
    REVIEW_UI = "review-ui"
    REVIEW_CODE = "review-code"
    QA = "qa"
    INTEGRATION_TEST = "integration-test"
    TEST_MIGRATION = "test-migration"
    UPDATE_DOCS = "update-docs"
    WRITE_DOCS = "write-docs"
    REVIEW_DOCS = "review-docs"
    COMMIT_AND_PR = "commit-and-pr"


COMMAND_AGENTS: dict[Command, str] = {
    Command.ANALYZE: "analyst",
    Command.REVIEW_PLAN: "architect",
    Command.REVIEW_UX: "designer",
    Command.WRITE_TESTS: "developer",
    Command.IMPLEMENT: "developer",
    Command.REVIEW_UI: "designer",
    Command.REVIEW_CODE: "reviewer",
    Command.QA: "qa",
    Command.INTEGRATION_TEST: "qa",
    Command.TEST_MIGRATION: "qa",
    Command.UPDATE_DOCS: "writer",
    Command.WRITE_DOCS: "writer",
    Command.REVIEW_DOCS: "reviewer",
    Command.COMMIT_AND_PR: "git-agent",
}


@dataclass(frozen=True, slots=True)
class Phase:
    name: str
    command: Command
    forward_verdicts: tuple[str, ...]
    reject_verdicts: tuple[str, ...] = ()
    reject_to: str | None = None

    @property
    def verdicts(self) -> tuple[str, ...]:
        return self.forward_verdicts + self.reject_verdicts


@dataclass(frozen=True, slots=True)
class Graph:
    category: Category
    variant: str | None
    modifiers: tuple[str, ...]
    phases: tuple[Phase, ...]

    @property
    def phase_names(self) -> tuple[str, ...]:
        return tuple(phase.name for phase in self.phases)

    @property
    def first_phase(self) -> str:
        return self.phases[0].name

    def has_phase(self, name: str) -> bool:
        return any(phase.name == name for phase in self.phases)

    def phase(self, name: str) -> Phase:
        for phase in self.phases:
            if phase.name == name:
                return phase
        raise InvalidTaskState(
            f"Phase {name!r} is not part of the {self.describe()} workflow."
        )

    def command(self, phase: str) -> Command:
        return self.phase(phase).command

    @staticmethod
    def agent(command: Command) -> str:
        return COMMAND_AGENTS[command]

    def rejection_target(self, phase: str) -> str | None:
        return self.phase(phase).reject_to

    def is_rejection(self, phase: str, verdict: str) -> bool:
        return verdict in self.phase(phase).reject_verdicts

    def transition(self, phase: str, verdict: str) -> str | None:
        if phase == DONE:
            return None
        current = self.phase(phase)
        if verdict in current.reject_verdicts:
            return current.reject_to
        if verdict not in current.forward_verdicts:
            return None
        index = self.phase_names.index(phase)
        if index + 1 >= len(self.phases):
            return DONE
        return self.phases[index + 1].name

    def edges(self) -> frozenset[tuple[str, str]]:
        names = self.phase_names
        result: set[tuple[str, str]] = set()
        for index, phase in enumerate(self.phases):
            target = names[index + 1] if index + 1 < len(names) else DONE
            result.add((phase.name, target))
            if phase.reject_to is not None:
                result.add((phase.name, phase.reject_to))
        return frozenset(result)

    def describe(self) -> str:
        parts = [self.category.value]
        if self.variant:
            parts.append(self.variant)
        parts.extend(self.modifiers)
        return "+".join(parts)


# Phase catalog: command, forward verdicts, reject verdicts, and the role of the
# phase a rejection routes back to.
_PHASE_CATALOG: dict[str, tuple[Command, tuple[str, ...], tuple[str, ...], str | None]] = {
    "ANALYZING": (Command.ANALYZE, (ANALYZED,), (), None),
    "PLAN_REVIEW": (Command.REVIEW_PLAN, (APPROVED,), (CHANGES_REQUESTED,), "analysis"),
    "UX_REVIEW": (
        Command.REVIEW_UX,
        (APPROVED, NOT_APPLICABLE),
        (NEEDS_UX_CHANGES, CHANGES_REQUESTED),
        "analysis",
    ),
    "WRITING_TESTS": (Command.WRITE_TESTS, (TESTS_READY,), (), None),
    "IMPLEMENTING": (Command.IMPLEMENT, (IMPLEMENTED,), (TESTS_REVISION_NEEDED,), "tests"),
    "UI_REVIEW": (
        Command.REVIEW_UI,
        (APPROVED, NOT_APPLICABLE),
        (NEEDS_UI_CHANGES, CHANGES_REQUESTED),
        "implementation",
    ),
    "CODE_REVIEW": (Command.REVIEW_CODE, (APPROVED,), (CHANGES_REQUESTED,), "implementation"),
    "QA_REVIEW": (Command.QA, (APPROVED,), (CHANGES_REQUESTED,), "implementation"),
    "INTEGRATION_TESTING": (
        Command.INTEGRATION_TEST,
        (PASSED, NOT_APPLICABLE),
        (INTEGRATION_FAILED,),
        "implementation",
    ),
    "MIGRATION_TESTING": (
        Command.TEST_MIGRATION,
        (PASSED,),
        (MIGRATION_FAILED,),
        "implementation",
    ),
    "DOCS_UPDATE": (Command.UPDATE_DOCS, (DOCS_UPDATED, NOT_APPLICABLE), (), None),
    "WRITING_DOCS": (Command.WRITE_DOCS, (DOCS_WRITTEN,), (), None),
    "DOCS_REVIEW": (Command.REVIEW_DOCS, (APPROVED,), (CHANGES_REQUESTED,), "implementation"),
    "PR_READY": (Command.COMMIT_AND_PR, (PR_CREATED,), (), None),
}


@dataclass(frozen=True, slots=True)
class _GraphTemplate:
    phases: tuple[str, ...]
    analysis: str | None
    tests: str | None
    implementation: str


_BASE_GRAPHS: dict[Category, _GraphTemplate] = {
    Category.DEVELOPMENT: _GraphTemplate(
        phases=(
            "ANALYZING",
            "PLAN_REVIEW",
            "WRITING_TESTS",
            "IMPLEMENTING",
            "CODE_REVIEW",
            "QA_REVIEW",
            "INTEGRATION_TESTING",
            "DOCS_UPDATE",
            "PR_READY",
        ),
        analysis="ANALYZING",
        tests="WRITING_TESTS",
        implementation="IMPLEMENTING",
    ),
    Category.SCHEMA: _GraphTemplate(
        phases=(
            "ANALYZING",
            "PLAN_REVIEW",
            "IMPLEMENTING",
            "MIGRATION_TESTING",
            "CODE_REVIEW",
            "DOCS_UPDATE",
            "PR_READY",
        ),
        analysis="ANALYZING",
        tests=None,
        implementation="IMPLEMENTING",
    ),
    Category.INFRASTRUCTURE: _GraphTemplate(
        phases=(
            "ANALYZING",
            "PLAN_REVIEW",
            "IMPLEMENTING",
            "CODE_REVIEW",
            "INTEGRATION_TESTING",
            "DOCS_UPDATE",
            "PR_READY",
        ),
        analysis="ANALYZING",
        tests=None,
        implementation="IMPLEMENTING",
    ),
    Category.DOCUMENTATION: _GraphTemplate(
        phases=("WRITING_DOCS", "DOCS_REVIEW", "PR_READY"),
        analysis=None,
        tests=None,
        implementation="WRITING_DOCS",
    ),
    Category.BUGFIX: _GraphTemplate(
        phases=(
            "ANALYZING",
            "WRITING_TESTS",
            "IMPLEMENTING",
            "CODE_REVIEW",
            "QA_REVIEW",
            "PR_READY",
        ),
        analysis="ANALYZING",
        tests="WRITING_TESTS",
        implementation="IMPLEMENTING",
    ),
}

VARIANT_PHASES: dict[str, tuple[Category, tuple[str, ...]]] = {
    "schema:simple": (Category.SCHEMA, ("IMPLEMENTING", "MIGRATION_TESTING", "PR_READY")),
    "infra:simple": (Category.INFRASTRUCTURE, ("IMPLEMENTING", "INTEGRATION_TESTING", "PR_READY")),
    "docs:simple": (Category.DOCUMENTATION, ("WRITING_DOCS", "PR_READY")),
    "bugfix:simple": (Category.BUGFIX, ("IMPLEMENTING", "CODE_REVIEW", "PR_READY")),
}


def _normalize_labels(labels: Iterable[str] | None) -> tuple[str, ...]:
    if not labels:
        return ()
    return tuple(sorted({str(label).strip().lower() for label in labels if str(label).strip()}))


def _select_template(
    category: Category, variants: tuple[str, ...]
) -> tuple[_GraphTemplate, str | None]:
    base = _BASE_GRAPHS[category]
    if not variants:
        return base, None
    if len(variants) > 1:
        raise IncompatibleLabels(
            f"Conflicting variant labels for {category.value}: {', '.join(variants)}"
        )
    variant = variants[0]
    if variant not in VARIANT_PHASES:
        raise IncompatibleLabels(f"Unknown variant label: {variant}")
    variant_category, phases = VARIANT_PHASES[variant]
    if variant_category is not category:
        raise IncompatibleLabels(
            f"Variant label {variant} does not apply to category {category.value}"
        )
    template = _GraphTemplate(
        phases=phases,
        analysis=base.analysis if base.analysis in phases else None,
        tests=base.tests if base.tests in phases else None,
        implementation=base.implementation,
    )
    return template, variant


def _insert_after(phases: list[str], anchor: str, name: str) -> None:
    phases.insert(phases.index(anchor) + 1, name)


def build_graph(
    category: str | Category,
    variant_labels: Iterable[str] | None = None,
    modifier_labels: Iterable[str] | None = None,
) -> Graph:
    """Construct the workflow graph for a label combination.

    Base graph per category, then the "simple" variant swap, then modifier
    insertion (``frontend`` adds UX/UI review, ``security`` forces code review).
    Pure: the same inputs always produce an equal graph.
    """
    resolved_category = Category.parse(category)
    variants = _normalize_labels(variant_labels)
    modifiers = tuple(
        label for label in _normalize_labels(modifier_labels) if label in KNOWN_MODIFIERS
    )
    template, variant = _select_template(resolved_category, variants)

    phase_names = list(template.phases)
    implementation_anchor = template.implementation
    if FRONTEND in modifiers:
        if template.analysis is None:
            raise IncompatibleLabels(
                f"Label '{FRONTEND}' requires an analysis phase; "
                f"{variant or resolved_category.value} has none"
            )
        _insert_after(phase_names, template.analysis, "UX_REVIEW")
        _insert_after(phase_names, template.implementation, "UI_REVIEW")
        implementation_anchor = "UI_REVIEW"
    if SECURITY in modifiers and "CODE_REVIEW" not in phase_names:
        _insert_after(phase_names, implementation_anchor, "CODE_REVIEW")

    roles = {
        "analysis": template.analysis,
        "tests": template.tests,
        "implementation": template.implementation,
    }
    phases: list[Phase] = []
    for name in phase_names:
        command, forward, reject, reject_role = _PHASE_CATALOG[name]
        target = roles.get(reject_role) if reject_role else None
        if target is None or target not in phase_names:
            phases.append(Phase(name=name, command=command, forward_verdicts=forward))
            continue
        phases.append(
            Phase(
                name=name,
                command=command,
                forward_verdicts=forward,
                reject_verdicts=reject,
                reject_to=target,
            )
        )
    return Graph(
        category=resolved_category,
        variant=variant,
        modifiers=modifiers,
        phases=tuple(phases),
    )


class WorkflowGraphRegistry:
    """Memoizing front for build_graph; graphs are shared, never copied per task."""

    def __init__(self) -> None:
        self._cache: dict[tuple[Category, tuple[str, ...], tuple[str, ...]], Graph] = {}
        self._lock = Lock()

    def resolve(
        self,
        category: str | Category,
        variant_labels: Iterable[str] | None = None,
        modifier_labels: Iterable[str] | None = None,
    ) -> Graph:
        key = (
            Category.parse(category),
            _normalize_labels(variant_labels),
            _normalize_labels(modifier_labels),
        )
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached
        graph = build_graph(*key)
        with self._lock:
            self._cache.setdefault(key, graph)
            return self._cache[key]
