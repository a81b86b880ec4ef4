from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from epicflow.graphs import (
    HANDLER_FAILED,
    Command,
    HandlerNotRegistered,
    WorkflowGraphRegistry,
)
from epicflow.handlers.base import CommandHandler, HandlerOutput, HandlerRequest
from epicflow.models import StepResult, Task, normalize_artifacts
from epicflow.observability import get_logger

logger = get_logger(__name__)


class AgentDispatcher:
    """Routes a task's current phase to the handler registered for its command."""

    def __init__(
        self,
        registry: WorkflowGraphRegistry,
        handlers: Mapping[Command, CommandHandler] | None = None,
        *,
        timeout_seconds: float = 900.0,
    ) -> None:
        self.registry = registry
        self.handlers: dict[Command, CommandHandler] = dict(handlers or {})
        self.timeout_seconds = timeout_seconds

    def register(self, command: Command, handler: CommandHandler) -> None:
        self.handlers[command] = handler

    @staticmethod
    def _normalize(raw: Any) -> HandlerOutput | None:
        if isinstance(raw, HandlerOutput):
            verdict: Any = raw.verdict
            artifacts: Any = raw.artifacts
            note: Any = raw.note
        elif isinstance(raw, Mapping):
            verdict = raw.get("verdict")
            artifacts = raw.get("artifacts", {})
            note = raw.get("note", "")
        else:
            return None
        if not isinstance(verdict, str) or not verdict.strip():
            return None
        if artifacts is None:
            artifacts = {}
        if not isinstance(artifacts, Mapping):
            return None
        return HandlerOutput(
            verdict=verdict.strip().upper(),
            artifacts=normalize_artifacts(dict(artifacts)),
            note="" if note is None else str(note),
        )

    async def dispatch(self, task: Task, phase: str) -> StepResult:
        graph = self.registry.resolve(task.category, task.variant_labels, task.modifier_labels)
        phase_def = graph.phase(phase)
        command = phase_def.command
        agent = graph.agent(command)
        handler = self.handlers.get(command)
        if handler is None:
            raise HandlerNotRegistered(f"No handler registered for command '{command.value}'.")

        request = HandlerRequest(
            task_id=task.id,
            command=command.value,
            phase=phase,
            artifacts={kind: list(refs) for kind, refs in task.artifacts.items()},
            rejected_from=task.rejected_from,
            forward_verdicts=phase_def.forward_verdicts,
            reject_verdicts=phase_def.reject_verdicts,
        )

        def _failed(note: str) -> StepResult:
            logger.warning("Handler for /%s failed on %s: %s", command.value, task.id, note)
            return StepResult(
                verdict=HANDLER_FAILED,
                note=note,
                agent=agent,
                command=command.value,
                phase=phase,
            )

        logger.info("Dispatching /%s for %s (%s, agent %s)", command.value, task.id, phase, agent)
        try:
            raw = await asyncio.wait_for(handler.run(request), timeout=self.timeout_seconds)
        except TimeoutError:
            return _failed(f"Handler timed out after {self.timeout_seconds:.1f}s")
        except Exception as exc:
            return _failed(f"{type(exc).__name__}: {exc}")

        output = self._normalize(raw)
        if output is None:
            return _failed(f"Malformed handler output: {raw!r}"[:500])
        return StepResult(
            verdict=output.verdict,
            artifacts=output.artifacts,
            note=output.note,
            agent=agent,
            command=command.value,
            phase=phase,
        )
