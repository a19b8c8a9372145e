from __future__ import annotations

import datetime as dt
import itertools
import logging
import threading
from pathlib import Path
from typing import Callable, Sequence

import pytest
from rich.console import Console

from runs_manager.context import ExecutionContext
from runs_manager.models import CommandError, ConfirmationRequest, RunRecord
from runs_manager.process import ProcessResult
from runs_manager.registry import RunRegistry

DIGEST = "ab" * 32


class FakeRuntime:
    """In-memory stand-in for the docker CLI gateway."""

    def __init__(self) -> None:
        self.running: dict[str, str] = {}
        self.volumes: set[str] = set()
        self.calls: list[tuple[object, ...]] = []
        self.launch_args: dict[str, tuple[str, ...]] = {}
        self.fail_launch: set[str] = set()
        self.fail_kill: set[str] = set()
        self.fail_build = False
        self.streamed_builds: list[bool] = []
        self.short_ids = True
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def build(
        self, *, dockerfile: str, context: str, tag: str, stream: bool = False
    ) -> str:
        self.calls.append(("build", tag))
        self.streamed_builds.append(stream)
        if self.fail_build:
            raise CommandError("Command failed (exit 1): docker build", exit_code=1)
        return DIGEST

    def run(
        self,
        *,
        image: str,
        name: str,
        volume: str,
        mount_path: str,
        run_args: Sequence[str] = (),
        label: str | None = None,
        command_args: Sequence[str] = (),
    ) -> str:
        with self._lock:
            self.calls.append(("run", name))
            self.volumes.add(volume)
            if name in self.fail_launch or name in self.running.values():
                raise CommandError(
                    f"Command failed (exit 125): docker run --name {name}",
                    exit_code=125,
                )
            container_id = f"{next(self._ids):012x}" + "e" * 52
            self.running[container_id] = name
            self.launch_args[name] = tuple(command_args)
            return container_id

    def _match(self, container_id: str) -> str | None:
        for running_id in self.running:
            if running_id.startswith(container_id) or container_id.startswith(
                running_id
            ):
                return running_id
        return None

    def kill(self, container_ids: Sequence[str]) -> list[str]:
        failures: list[str] = []
        for container_id in container_ids:
            self.calls.append(("kill", container_id))
            matched = self._match(container_id)
            if matched is None or container_id in self.fail_kill:
                failures.append(container_id)
                continue
            del self.running[matched]
        return failures

    def remove_volumes(self, volumes: Sequence[str]) -> list[str]:
        for volume in volumes:
            self.calls.append(("volume_rm", volume))
            self.volumes.discard(volume)
        return []

    def active_containers(self, label: str | None = None) -> set[str]:
        self.calls.append(("ps", label))
        if self.short_ids:
            return {container_id[:12] for container_id in self.running}
        return set(self.running)

    def existing_volumes(self, candidates) -> set[str]:
        return set(candidates) & self.volumes

    def logs(self, container_id: str, *, follow: bool = False) -> int:
        self.calls.append(("logs", container_id, follow))
        return 0

    def names_running(self) -> set[str]:
        return set(self.running.values())


class FakeVcs:
    def __init__(self, *, commit: str = "c0ffee" * 6, message: str = "tune lr") -> None:
        self.commit = commit
        self.message = message
        self.dirty = False

    def head_commit(self) -> str:
        return self.commit

    def last_commit_message(self) -> str:
        return self.message

    def is_dirty(self) -> bool:
        return self.dirty


class RecordingConfirmer:
    def __init__(self, answer: bool = True) -> None:
        self.answer = answer
        self.requests: list[ConfirmationRequest] = []

    def __call__(self, request: ConfirmationRequest) -> bool:
        self.requests.append(request)
        return self.answer

    @property
    def prompts(self) -> list[str]:
        return [request.prompt for request in self.requests]


def fake_runner(
    outputs: Callable[[list[str]], str] | None = None, exit_code: int = 0
) -> Callable[..., ProcessResult]:
    calls: list[list[str]] = []

    def _run(argv, *, capture: bool = True, check: bool = False) -> ProcessResult:
        argv = [str(part) for part in argv]
        calls.append(argv)
        stdout = outputs(argv) if outputs is not None else ""
        if check and exit_code != 0:
            raise CommandError(
                f"Command failed (exit {exit_code}): {' '.join(argv)}",
                argv=tuple(argv),
                exit_code=exit_code,
            )
        return ProcessResult(argv=tuple(argv), exit_code=exit_code, stdout=stdout)

    _run.calls = calls  # type: ignore[attr-defined]
    return _run


def make_record(
    name: str,
    *,
    container_id: str = "",
    volume: str | None = None,
    config: str | None = "lr=0.1",
) -> RunRecord:
    return RunRecord(
        name=name,
        commit_hash="deadbeef",
        config=config,
        config_script=None,
        image_id=DIGEST,
        container_id=container_id or f"{name}-container",
        volume=volume or name,
        description="seed",
        datetime=dt.datetime(2026, 1, 1, 12, 0, 0),
    )


@pytest.fixture
def registry(tmp_path: Path):
    reg = RunRegistry.open(tmp_path / "runs.db")
    yield reg
    reg.close()


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def vcs() -> FakeVcs:
    return FakeVcs()


@pytest.fixture
def confirmer() -> RecordingConfirmer:
    return RecordingConfirmer(answer=True)


@pytest.fixture
def make_ctx(registry, runtime, vcs, confirmer):
    def _make(**overrides) -> ExecutionContext:
        kwargs = {
            "registry": registry,
            "runtime": runtime,
            "vcs": vcs,
            "yes": False,
            "confirmer": confirmer,
            "console": Console(record=True, width=120, highlight=False),
        }
        kwargs.update(overrides)
        return ExecutionContext(**kwargs)

    return _make


@pytest.fixture(autouse=True)
def _reset_runs_logger():
    yield
    root = logging.getLogger("runs_manager")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
