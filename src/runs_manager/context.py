from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from rich.console import Console
from rich.prompt import Confirm

from runs_manager.docker import ContainerRuntime
from runs_manager.models import Aborted, ConfirmationRequest
from runs_manager.process import Runner, run_command
from runs_manager.registry import RunRegistry
from runs_manager.vcs import GitRepository

_log = logging.getLogger("runs_manager.context")

Confirmer = Callable[[ConfirmationRequest], bool]


def _console() -> Console:
    return Console(highlight=False)


def render_request(console: Console, request: ConfirmationRequest, header: str) -> None:
    console.print(header)
    style = "red" if request.highlight else None
    for item in request.items:
        console.print(item, style=style, markup=False)


def console_confirmer(console: Console) -> Confirmer:
    """Resolve confirmation requests with a blocking yes/no prompt."""

    def _confirm(request: ConfirmationRequest) -> bool:
        render_request(console, request, request.prompt)
        return Confirm.ask("Continue?", console=console, default=False)

    return _confirm


def decline_all(_request: ConfirmationRequest) -> bool:
    return False


@dataclass
class ExecutionContext:
    """Everything a pipeline needs, passed explicitly instead of held globally."""

    registry: RunRegistry
    runtime: ContainerRuntime
    vcs: GitRepository
    yes: bool = False
    confirmer: Confirmer = decline_all
    console: Console = field(default_factory=_console)
    max_workers: int = 1
    runner: Runner = run_command

    def __post_init__(self) -> None:
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")

    def confirm(self, request: ConfirmationRequest) -> None:
        if self.yes:
            render_request(self.console, request, request.notice)
            _log.info("confirmation_auto prompt=%s", request.prompt)
            return
        if not self.confirmer(request):
            _log.info("confirmation_declined prompt=%s", request.prompt)
            raise Aborted(f"Declined: {request.prompt}")

    def echo(self, message: str, *, style: str | None = None) -> None:
        self.console.print(message, style=style, markup=False)
