"""Provisioning pipeline behind ``runs new``.

A batch is all-or-nothing: containers are launched first, then every record
is written to the registry in one transaction. If anything fails after the
first launch, the compensating scopes kill what this batch started and remove
the volumes it created before the error propagates.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from runs_manager.context import ExecutionContext
from runs_manager.docker import is_live
from runs_manager.models import (
    ConfigError,
    ConfigTuple,
    ConfirmationRequest,
    ExistingRun,
    MultiConfig,
    NewMethod,
    NewRequest,
    PartialRunRecord,
    PipelineError,
    RunRecord,
    SingleConfig,
)
from runs_manager.utils import split_args, unique, utc_now

_log = logging.getLogger("runs_manager.provision")

NAME_PLACEHOLDER = "<name>"
COMMIT_PLACEHOLDER = "<commit>"


@dataclass(frozen=True)
class ProvisionResult:
    image_id: str
    records: tuple[RunRecord, ...]
    replaced: tuple[str, ...] = ()


@dataclass
class _Batch:
    """What this invocation has created so far, for the rollback scopes."""

    attempted: list[PartialRunRecord] = field(default_factory=list)
    launched: list[RunRecord] = field(default_factory=list)
    failed: threading.Event = field(default_factory=threading.Event)


def _read_script(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read config script {path}: {exc}") from exc


def _sample_config(ctx: ExecutionContext, method: MultiConfig, script: str) -> str:
    argv = [method.interpreter, *method.interpreter_args, script]
    result = ctx.runner(argv, capture=True, check=True)
    return result.stdout.strip()


def materialize_configs(
    ctx: ExecutionContext, name: str, method: NewMethod
) -> list[ConfigTuple]:
    if isinstance(method, SingleConfig):
        return [ConfigTuple(name=name, config_script=None, config=method.config)]
    if method.count < 1:
        raise ConfigError("--num-runs must be >= 1")

    script = _read_script(method.script_path)
    _log.info(
        "sampling_configs name=%s count=%d interpreter=%s",
        name,
        method.count,
        method.interpreter,
    )
    with ThreadPoolExecutor(max_workers=ctx.max_workers) as pool:
        # map() yields in submission order, so index i pairs with sample i.
        configs = list(
            pool.map(
                lambda _index: _sample_config(ctx, method, script),
                range(method.count),
            )
        )
    return [
        ConfigTuple(name=f"{name}{index}", config_script=script, config=config)
        for index, config in enumerate(configs)
    ]


def render_config(config: str | None, *, name: str, commit: str) -> str | None:
    if config is None:
        return None
    return config.replace(NAME_PLACEHOLDER, name).replace(COMMIT_PLACEHOLDER, commit)


def _check_clean_tree(ctx: ExecutionContext) -> None:
    if not ctx.vcs.is_dirty():
        return
    ctx.confirm(
        ConfirmationRequest(
            prompt="The working tree has uncommitted changes. Launch anyway?",
            notice="Launching with uncommitted changes in the working tree.",
        )
    )


def _preflight(
    ctx: ExecutionContext, request: NewRequest, tuples: list[ConfigTuple]
) -> list[ExistingRun]:
    """Ask every pre-flight question, then clear the way for the batch.

    All confirmations happen before the first mutation, so declining any of
    them leaves containers, volumes and registry untouched.
    """
    names = [t.name for t in tuples]
    volumes = unique(request.volume_for(name) for name in names)

    _check_clean_tree(ctx)

    existing = ctx.registry.find_by_names(names)
    active = ctx.runtime.active_containers(request.kill_label) if existing else set()
    if existing:
        ctx.confirm(
            ConfirmationRequest(
                prompt="Overwrite the following rows?",
                notice="Overwriting the following rows:",
                items=tuple(run.name for run in existing),
                highlight=True,
            )
        )

    reused = [
        (name, volume)
        for name, volume in ctx.registry.find_by_volumes(volumes)
        if name not in names
    ]
    if reused:
        ctx.confirm(
            ConfirmationRequest(
                prompt="These volumes are also used by other runs. Reuse them?",
                notice="Reusing volumes that belong to other runs:",
                items=tuple(f"{volume} ({name})" for name, volume in reused),
            )
        )

    present = sorted(ctx.runtime.existing_volumes(volumes))
    if present:
        ctx.confirm(
            ConfirmationRequest(
                prompt="Remove the following volumes?",
                notice="Removing the following volumes:",
                items=tuple(present),
                highlight=True,
            )
        )

    if any(is_live(run.container_id, active) for run in existing):
        # The first snapshot may be stale after prompting; refresh before killing.
        refreshed = ctx.runtime.active_containers(request.kill_label)
        replaced = [
            run.container_id
            for run in existing
            if is_live(run.container_id, refreshed)
        ]
        if replaced:
            ctx.echo("Killing replaced containers...")
            ctx.runtime.kill(replaced)
    if present:
        ctx.runtime.remove_volumes(present)
    return existing


def build_image(ctx: ExecutionContext, request: NewRequest) -> str:
    ctx.echo(f"Building image {request.image}...")
    return ctx.runtime.build(
        dockerfile=str(request.dockerfile),
        context=str(request.build_path),
        tag=request.image,
        # Verbose logging streams the build instead of running it quietly.
        stream=_log.isEnabledFor(logging.INFO),
    )


@contextlib.contextmanager
def _remove_volumes_on_failure(ctx: ExecutionContext, batch: _Batch) -> Iterator[None]:
    try:
        yield
    except BaseException:
        volumes = unique(partial.volume for partial in batch.attempted)
        if volumes:
            ctx.echo("Abort. Removing volumes...", style="red")
            for volume in volumes:
                ctx.echo(volume)
            failed = ctx.runtime.remove_volumes(volumes)
            _log.warning(
                "rollback_volumes removed=%d failed=%s",
                len(volumes) - len(failed),
                ",".join(failed) or "-",
            )
        raise


@contextlib.contextmanager
def _kill_containers_on_failure(
    ctx: ExecutionContext, batch: _Batch
) -> Iterator[None]:
    try:
        yield
    except BaseException:
        container_ids = [record.container_id for record in batch.launched]
        if container_ids:
            ctx.echo("Abort. Killing containers...", style="red")
            for record in batch.launched:
                ctx.echo(f"{record.name} {record.container_id}")
            failed = ctx.runtime.kill(container_ids)
            _log.warning(
                "rollback_kill killed=%d failed=%s",
                len(container_ids) - len(failed),
                ",".join(failed) or "-",
            )
        raise


def _launch_one(
    ctx: ExecutionContext,
    request: NewRequest,
    partial: PartialRunRecord,
    command_args: tuple[str, ...],
    batch: _Batch,
) -> RunRecord | None:
    if batch.failed.is_set():
        return None
    batch.attempted.append(partial)
    try:
        container_id = ctx.runtime.run(
            image=request.image,
            name=partial.name,
            volume=partial.volume,
            mount_path=request.mount_path,
            run_args=request.docker_run_args,
            label=request.kill_label,
            command_args=command_args,
        )
    except BaseException:
        batch.failed.set()
        raise
    record = partial.complete(container_id)
    batch.launched.append(record)
    return record


def _launch_all(
    ctx: ExecutionContext,
    request: NewRequest,
    partials: list[PartialRunRecord],
    command_args: dict[str, tuple[str, ...]],
    batch: _Batch,
) -> None:
    """Start one container per partial record.

    After the first failure no further launch is started. Launches already
    in flight are awaited, since the runtime cannot cancel them, and the
    containers they start are recorded in ``batch.launched`` for rollback.
    """
    order = {partial.name: index for index, partial in enumerate(partials)}

    _log.info(
        "provision_launch count=%d max_workers=%d", len(partials), ctx.max_workers
    )
    ctx.echo("Launching runs...")
    with ThreadPoolExecutor(max_workers=ctx.max_workers) as pool:
        futures: list[Future[RunRecord | None]] = [
            pool.submit(
                _launch_one, ctx, request, partial, command_args[partial.name], batch
            )
            for partial in partials
        ]
        wait(futures, return_when=FIRST_EXCEPTION)
        for future in futures:
            future.cancel()
        wait(futures)
    batch.launched.sort(key=lambda record: order[record.name])

    first_error: BaseException | None = None
    for partial, future in zip(partials, futures):
        if future.cancelled():
            _log.info("launch_skipped name=%s", partial.name)
            continue
        error = future.exception()
        if error is None:
            if future.result() is None:
                _log.info("launch_skipped name=%s", partial.name)
            continue
        _log.error("launch_failed name=%s error=%s", partial.name, error)
        if first_error is None:
            first_error = error
    if first_error is not None:
        raise first_error


def provision(ctx: ExecutionContext, request: NewRequest) -> ProvisionResult:
    tuples = materialize_configs(ctx, request.name, request.method)
    if not tuples:
        raise PipelineError("No configurations were generated")

    commit = ctx.vcs.head_commit()
    configs = {
        t.name: render_config(t.config, name=t.name, commit=commit) for t in tuples
    }
    # Quoting errors must surface before pre-flight kills or removes anything.
    command_args = {
        name: split_args(config, label=f"config for {name}")
        for name, config in configs.items()
    }

    existing = _preflight(ctx, request, tuples)

    image_id = build_image(ctx, request)
    description = request.description
    if description is None:
        description = ctx.vcs.last_commit_message()

    created = utc_now()
    partials = [
        PartialRunRecord(
            name=t.name,
            commit_hash=commit,
            config=configs[t.name],
            config_script=t.config_script,
            image_id=image_id,
            volume=request.volume_for(t.name),
            description=description,
            datetime=created,
        )
        for t in tuples
    ]

    batch = _Batch()
    with _remove_volumes_on_failure(ctx, batch):
        with _kill_containers_on_failure(ctx, batch):
            _launch_all(ctx, request, partials, command_args, batch)
            ctx.registry.upsert_all(batch.launched)

    ctx.echo("Runs successfully launched.", style="green")
    _log.info(
        "provision_complete names=%s image_id=%s",
        ",".join(record.name for record in batch.launched),
        image_id,
    )
    result = ProvisionResult(
        image_id=image_id,
        records=tuple(batch.launched),
        replaced=tuple(run.name for run in existing),
    )
    follow_or_advise(ctx, result, follow=request.follow)
    return result


def follow_or_advise(
    ctx: ExecutionContext, result: ProvisionResult, *, follow: bool
) -> None:
    if not result.records:
        return
    if follow:
        ctx.runtime.logs(result.records[0].container_id, follow=True)
        return
    ctx.echo("To follow the logs:")
    for record in result.records:
        ctx.echo(f"docker logs -f {record.container_id}")
