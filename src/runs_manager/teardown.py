"""Termination pipeline behind ``runs rm`` and ``runs kill``.

Runtime teardown is best-effort: every target is attempted and failures are
logged. For ``rm`` the registry rows are deleted last, so an interrupted
teardown leaves the rows that still describe what needs cleaning up.
"""

from __future__ import annotations

import logging

from runs_manager.context import ExecutionContext
from runs_manager.docker import is_live
from runs_manager.models import ConfirmationRequest, RunRecord, TeardownSummary
from runs_manager.utils import unique, validate_like_pattern

_log = logging.getLogger("runs_manager.teardown")

ALL_RUNS_PATTERN = "%"


def resolve_pattern(pattern: str | None) -> str:
    # Only an absent pattern means every run; "" is left for validation.
    return ALL_RUNS_PATTERN if pattern is None else pattern


def select_runs(
    ctx: ExecutionContext,
    pattern: str,
    *,
    active: bool,
    label: str | None = None,
) -> list[RunRecord]:
    records = ctx.registry.find_by_name_pattern(validate_like_pattern(pattern))
    if not records or not active:
        return records
    snapshot = ctx.runtime.active_containers(label)
    return [r for r in records if is_live(r.container_id, snapshot)]


def _kill_live(
    ctx: ExecutionContext, records: list[RunRecord], label: str | None
) -> tuple[list[str], list[str]]:
    # Snapshot taken after confirmation, right before killing.
    snapshot = ctx.runtime.active_containers(label)
    live = [r for r in records if is_live(r.container_id, snapshot)]
    for record in records:
        if record not in live:
            _log.info("kill_skipped name=%s reason=not_running", record.name)
    failed = set(ctx.runtime.kill([r.container_id for r in live]))
    killed = [r.name for r in live if r.container_id not in failed]
    failures = [f"kill {r.name}" for r in live if r.container_id in failed]
    return killed, failures


def _confirm_matches(
    ctx: ExecutionContext, records: list[RunRecord], *, verb: str, gerund: str
) -> None:
    ctx.confirm(
        ConfirmationRequest(
            prompt=f"{verb} the following runs?",
            notice=f"{gerund} the following runs:",
            items=tuple(r.name for r in records),
            highlight=True,
        )
    )


def kill_runs(
    ctx: ExecutionContext,
    pattern: str | None,
    *,
    active: bool = False,
    label: str | None = None,
) -> TeardownSummary:
    resolved = resolve_pattern(pattern)
    records = select_runs(ctx, resolved, active=active, label=label)
    if not records:
        ctx.echo(f"No runs match pattern {resolved}")
        return TeardownSummary(pattern=resolved)

    _confirm_matches(ctx, records, verb="Kill", gerund="Killing")
    killed, failures = _kill_live(ctx, records, label)
    _log.info("kill_complete pattern=%s killed=%d", resolved, len(killed))
    return TeardownSummary(
        pattern=resolved,
        matched=tuple(r.name for r in records),
        killed=tuple(killed),
        failures=tuple(failures),
    )


def remove_runs(
    ctx: ExecutionContext,
    pattern: str | None,
    *,
    active: bool = False,
    label: str | None = None,
) -> TeardownSummary:
    if pattern is None and not active:
        ctx.confirm(
            ConfirmationRequest(
                prompt="This will delete all runs. Are you sure?",
                notice="Deleting all runs.",
                highlight=True,
            )
        )
    resolved = resolve_pattern(pattern)
    records = select_runs(ctx, resolved, active=active, label=label)
    if not records:
        ctx.echo(f"No runs match pattern {resolved}")
        return TeardownSummary(pattern=resolved)

    _confirm_matches(ctx, records, verb="Remove", gerund="Removing")
    names = [r.name for r in records]
    killed, failures = _kill_live(ctx, records, label)

    volumes = unique(r.volume for r in records)
    shared = {
        volume
        for name, volume in ctx.registry.find_by_volumes(volumes)
        if name not in names
    }
    for volume in sorted(shared):
        ctx.echo(f"Keeping volume {volume}: still used by other runs.")
    present = ctx.runtime.existing_volumes(v for v in volumes if v not in shared)
    to_remove = [v for v in volumes if v in present]
    failed_volumes = set(ctx.runtime.remove_volumes(to_remove))
    failures += [f"volume rm {v}" for v in to_remove if v in failed_volumes]

    ctx.registry.delete_by_names(names)
    _log.info(
        "rm_complete pattern=%s rows=%d killed=%d failures=%d",
        resolved,
        len(names),
        len(killed),
        len(failures),
    )
    return TeardownSummary(
        pattern=resolved,
        matched=tuple(names),
        killed=tuple(killed),
        removed_volumes=tuple(v for v in to_remove if v not in failed_volumes),
        deleted_rows=tuple(names),
        failures=tuple(failures),
    )
