from __future__ import annotations

import asyncio
import threading

import click

from epicflow.handlers.base import (
    CommandHandler,
    HandlerExecutionError,
    HandlerOutput,
    HandlerRequest,
)
from epicflow.observability import get_logger

logger = get_logger(__name__)


class HumanApprovalHandler(CommandHandler):
    """Console gate: the operator approves a phase or sends it back.

    Prompts run on daemon threads so a dispatcher timeout abandons the prompt
    instead of holding the event loop open. While an abandoned prompt still
    owns the console, new prompts fail immediately.
    """

    name = "human"

    def __init__(self) -> None:
        self._console = threading.Lock()
        self._guard = threading.Lock()
        self._abandoned: set[str] = set()

    def _prompt(self, request: HandlerRequest) -> HandlerOutput:
        click.echo(f"\n[{request.task_id}] {request.phase} -> /{request.command}")
        if request.rejected_from:
            click.echo(f"  previously rejected at {request.rejected_from}")
        for kind, refs in sorted(request.artifacts.items()):
            click.echo(f"  {kind}: {', '.join(refs)}")
        if not request.forward_verdicts:
            raise HandlerExecutionError(
                f"Phase {request.phase} has no approval verdict.", handler=self.name
            )
        if click.confirm("Approve?", default=True):
            note = click.prompt("Note", default="", show_default=False)
            return HandlerOutput(verdict=request.forward_verdicts[0], note=note)
        if not request.reject_verdicts:
            raise HandlerExecutionError(
                f"Operator declined {request.phase}, which has no rejection path.",
                handler=self.name,
            )
        note = click.prompt("Reason", default="", show_default=False)
        return HandlerOutput(verdict=request.reject_verdicts[0], note=note)

    @property
    def abandoned_prompts(self) -> list[str]:
        with self._guard:
            return sorted(self._abandoned)

    async def run(self, request: HandlerRequest) -> HandlerOutput:
        pending = self.abandoned_prompts
        if pending:
            raise HandlerExecutionError(
                f"An earlier approval prompt is still waiting for input: {', '.join(pending)}",
                handler=self.name,
            )
        key = f"{request.task_id} {request.phase}"
        loop = asyncio.get_running_loop()
        future: asyncio.Future[HandlerOutput] = loop.create_future()
        finished = threading.Event()

        def _deliver(output: HandlerOutput | None, error: Exception | None) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(output)

        def _worker() -> None:
            output: HandlerOutput | None = None
            error: Exception | None = None
            with self._console:
                try:
                    output = self._prompt(request)
                except Exception as exc:
                    error = exc
            with self._guard:
                finished.set()
                self._abandoned.discard(key)
            try:
                loop.call_soon_threadsafe(_deliver, output, error)
            except RuntimeError:
                logger.info("Answer for %s arrived after the run ended; discarded", key)

        threading.Thread(target=_worker, name=f"epicflow-approval-{key}", daemon=True).start()
        try:
            return await future
        except asyncio.CancelledError:
            with self._guard:
                if not finished.is_set():
                    self._abandoned.add(key)
            logger.warning("Approval prompt for %s abandoned", key)
            raise
