from __future__ import annotations

from pathlib import Path

from epicflow.config import EpicflowConfig
from epicflow.graphs import Command, WorkflowConfigurationError
from epicflow.handlers.base import (
    CommandHandler,
    HandlerExecutionError,
    HandlerOutput,
    HandlerProcessError,
    HandlerRequest,
    MalformedHandlerOutput,
    parse_verdict_text,
)
from epicflow.handlers.claude import ClaudeCodeHandler, ClaudeCodeRunner, ClaudeEpicPlanner
from epicflow.handlers.human import HumanApprovalHandler


def build_handlers(
    config: EpicflowConfig, working_directory: Path
) -> dict[Command, CommandHandler]:
    """One handler per command: Claude by default, the console gate where configured."""
    if config.handlers.kind != "claude":
        raise WorkflowConfigurationError(f"Unsupported handler kind: {config.handlers.kind}")
    human_commands: set[Command] = set()
    for name in config.handlers.human_commands:
        try:
            human_commands.add(Command(name))
        except ValueError as exc:
            raise WorkflowConfigurationError(f"Unknown command in human_commands: {name}") from exc

    claude = ClaudeCodeHandler(binary=config.handlers.binary, working_directory=working_directory)
    human = HumanApprovalHandler()
    return {command: human if command in human_commands else claude for command in Command}


__all__ = [
    "ClaudeCodeHandler",
    "ClaudeCodeRunner",
    "ClaudeEpicPlanner",
    "CommandHandler",
    "HandlerExecutionError",
    "HandlerOutput",
    "HandlerProcessError",
    "HandlerRequest",
    "HumanApprovalHandler",
    "MalformedHandlerOutput",
    "build_handlers",
    "parse_verdict_text",
]
