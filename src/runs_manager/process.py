"""Thin wrapper around ``subprocess`` used by every external collaborator."""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from runs_manager.models import CommandError

_log = logging.getLogger("runs_manager.process")


@dataclass(frozen=True)
class ProcessResult:
    argv: tuple[str, ...]
    exit_code: int
    stdout: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def run_command(
    argv: Sequence[str],
    *,
    capture: bool = True,
    check: bool = False,
) -> ProcessResult:
    """Run *argv* to completion.

    With ``capture`` the child's stdout is collected for parsing; otherwise it
    is streamed to the terminal. A non-zero exit only raises when ``check`` is
    set, since several callers treat exit status as advisory.
    """
    command = tuple(str(part) for part in argv)
    started = time.perf_counter()
    _log.debug("process_start argv=%s", " ".join(command))
    try:
        completed = subprocess.run(
            list(command),
            stdout=subprocess.PIPE if capture else None,
            stderr=subprocess.PIPE if capture else None,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise CommandError(
            f"Failed to spawn {command[0]!r}: {exc}", argv=command
        ) from exc

    stdout = completed.stdout if capture and completed.stdout is not None else ""
    stderr = completed.stderr if capture and completed.stderr is not None else ""
    _log.debug(
        "process_end argv=%s exit_code=%s duration_sec=%.3f",
        " ".join(command),
        completed.returncode,
        time.perf_counter() - started,
    )
    result = ProcessResult(argv=command, exit_code=completed.returncode, stdout=stdout)
    if check and not result.ok:
        detail = stderr.strip() or stdout.strip()
        raise CommandError(
            f"Command failed (exit {result.exit_code}): {' '.join(command)}"
            f"{': ' + detail if detail else ''}",
            argv=command,
            exit_code=result.exit_code,
            output=stdout,
        )
    return result


Runner = Callable[..., ProcessResult]
