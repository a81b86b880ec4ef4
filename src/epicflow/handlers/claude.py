from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from epicflow.handlers.base import (
    CommandHandler,
    HandlerExecutionError,
    HandlerOutput,
    HandlerProcessError,
    HandlerRequest,
    parse_verdict_text,
)
from epicflow.models import Epic, NewEpic, parse_epic_payload
from epicflow.observability import get_logger

logger = get_logger(__name__)


def _event_text(event: dict[str, Any]) -> str:
    kind = event.get("type")
    if kind == "assistant":
        message = event.get("message")
        blocks = message.get("content") if isinstance(message, dict) else None
        if isinstance(blocks, list):
            return "".join(
                str(block.get("text", ""))
                for block in blocks
                if isinstance(block, dict) and block.get("type") == "text"
            )
        return ""
    if kind == "content_block_delta":
        delta = event.get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("text"), str):
            return delta["text"]
        return ""
    if kind == "result":
        result = event.get("result")
        return result if isinstance(result, str) else ""
    content = event.get("content")
    return content if isinstance(content, str) else ""


class ClaudeCodeRunner:
    """Runs ``claude -p <prompt> --output-format stream-json`` and collects its text."""

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "-p", prompt, "--output-format", "stream-json"]

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        env = os.environ.copy()
        env["FORCE_COLOR"] = "0"
        command = self.build_command(prompt)
        logger.info("Running: %s", " ".join(command))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise HandlerProcessError(
                f"Claude binary not found: {self.binary}", handler="claude"
            ) from exc

        if process.stdout is None:
            raise HandlerProcessError("Claude process did not expose stdout.", handler="claude")

        try:
            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    yield line
                    continue

                if isinstance(event, dict):
                    if event.get("type") == "error":
                        error = event.get("error")
                        message = error.get("message") if isinstance(error, dict) else None
                        logger.warning("Claude reported an error: %s", message or "unknown")
                    text = _event_text(event)
                    if text:
                        yield text

            if parse_buffer:
                yield parse_buffer

            return_code = await process.wait()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            raise
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise HandlerExecutionError(
                f"Claude exited with code {return_code}: {stderr_output}",
                handler="claude",
                exit_code=return_code,
            )

    async def collect(self, prompt: str) -> str:
        chunks: list[str] = []
        async for chunk in self.stream(prompt):
            chunks.append(chunk)
        return "\n".join(chunks)


class ClaudeCodeHandler(CommandHandler):
    name = "claude"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.runner = ClaudeCodeRunner(binary=binary, working_directory=working_directory)

    async def run(self, request: HandlerRequest) -> HandlerOutput:
        output = await self.runner.collect(request.prompt)
        return parse_verdict_text(output)


class ClaudeEpicPlanner:
    """Asks ``/roadmap plan-next`` for the next epic; ``None`` when the roadmap is exhausted."""

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.runner = ClaudeCodeRunner(binary=binary, working_directory=working_directory)

    async def __call__(self, epics: list[Epic]) -> NewEpic | None:
        known = {epic.id for epic in epics}
        output = await self.runner.collect("/roadmap plan-next")
        for raw_line in reversed(output.splitlines()):
            line = raw_line.strip()
            if not (line.startswith("{") and line.endswith("}")):
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(payload, dict):
                continue
            if payload.get("epic") is None and "tasks" not in payload:
                logger.info("Roadmap planner reported no further epics")
                return None
            new_epic = parse_epic_payload(payload.get("epic", payload))
            if new_epic.epic.id in known:
                logger.warning("Roadmap planner proposed existing epic %s", new_epic.epic.id)
                return None
            return new_epic
        logger.info("Roadmap planner returned no epic payload")
        return None
