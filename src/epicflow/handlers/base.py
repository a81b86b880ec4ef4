from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

VERDICT_LINE = re.compile(r"^\s*VERDICT\s*[:=]\s*([A-Za-z_]+)\s*$", re.IGNORECASE | re.MULTILINE)


class HandlerExecutionError(RuntimeError):
    """Raised when a command handler cannot produce a verdict."""

    def __init__(
        self,
        message: str,
        *,
        handler: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.handler = handler
        self.exit_code = exit_code


class HandlerProcessError(HandlerExecutionError):
    """Raised when a handler subprocess cannot be started or inspected."""


class MalformedHandlerOutput(HandlerExecutionError):
    """Raised when handler output carries no usable verdict."""


@dataclass(slots=True)
class HandlerRequest:
    task_id: str
    command: str
    phase: str
    artifacts: dict[str, list[str]] = field(default_factory=dict)
    rejected_from: str | None = None
    forward_verdicts: tuple[str, ...] = ()
    reject_verdicts: tuple[str, ...] = ()

    @property
    def prompt(self) -> str:
        return f"/{self.command} {self.task_id}"


@dataclass(slots=True)
class HandlerOutput:
    verdict: str
    artifacts: dict[str, list[str]] = field(default_factory=dict)
    note: str = ""


class CommandHandler(ABC):
    name = "handler"

    @abstractmethod
    async def run(self, request: HandlerRequest) -> HandlerOutput | Mapping[str, Any]:
        """Execute one phase command for a task and report its verdict."""


def _verdict_payloads(text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict) and isinstance(parsed.get("verdict"), str):
            payloads.append(parsed)
    return payloads


def parse_verdict_text(text: str) -> HandlerOutput:
    """Read a verdict from agent output.

    The last JSON object line carrying a ``verdict`` wins; otherwise the last
    ``VERDICT: X`` line. Anything else is malformed.
    """
    payloads = _verdict_payloads(text)
    if payloads:
        payload = payloads[-1]
        artifacts = payload.get("artifacts", {})
        return HandlerOutput(
            verdict=str(payload["verdict"]),
            artifacts=artifacts if isinstance(artifacts, dict) else {},
            note=str(payload.get("note", "")),
        )
    matches = VERDICT_LINE.findall(text)
    if matches:
        return HandlerOutput(verdict=matches[-1])
    raise MalformedHandlerOutput("Handler output did not contain a verdict.")
