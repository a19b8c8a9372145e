from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from runs_manager.context import ExecutionContext
from runs_manager.docker import is_live
from runs_manager.models import LOOKUP_ACCESSORS, ConfigError, LookupField, RunRecord
from runs_manager.teardown import resolve_pattern, select_runs


@dataclass(frozen=True)
class RunListing:
    record: RunRecord
    live: bool

    def to_json(self) -> dict[str, Any]:
        return {**self.record.to_json(), "live": self.live}


def parse_field(raw: str) -> LookupField:
    try:
        return LookupField(raw)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in LookupField)
        raise ConfigError(f"Unknown field {raw!r}. Allowed: {allowed}") from exc


def lookup_values(
    ctx: ExecutionContext,
    field: LookupField,
    pattern: str | None,
    *,
    active: bool = False,
    label: str | None = None,
) -> list[str]:
    records = select_runs(
        ctx, resolve_pattern(pattern), active=active, label=label
    )
    accessor = LOOKUP_ACCESSORS[field]
    return [accessor(record) for record in records]


def list_runs(
    ctx: ExecutionContext,
    pattern: str | None,
    *,
    active: bool = False,
    label: str | None = None,
) -> list[RunListing]:
    records = select_runs(
        ctx, resolve_pattern(pattern), active=active, label=label
    )
    if not records:
        return []
    # Liveness is never stored; derive it from the runtime every time.
    snapshot = ctx.runtime.active_containers(label)
    return [
        RunListing(record=record, live=is_live(record.container_id, snapshot))
        for record in records
    ]


def find_container_id(ctx: ExecutionContext, name: str) -> str:
    matches = ctx.registry.find_by_names([name])
    if not matches:
        raise ConfigError(f"No run named {name!r}")
    return matches[0].container_id
