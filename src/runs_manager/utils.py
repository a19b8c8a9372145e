from __future__ import annotations

import datetime as dt
import shlex
from typing import Iterable

from runs_manager.models import ConfigError


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0)


def split_args(raw: str | None, *, label: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    try:
        return tuple(shlex.split(raw))
    except ValueError as exc:
        raise ConfigError(f"{label} is not a valid argument string: {exc}") from exc


def output_lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def validate_like_pattern(pattern: str) -> str:
    # `\` is the escape character in registry queries; a trailing one is dangling.
    if not pattern:
        raise ConfigError("Pattern must be a non-empty LIKE expression")
    trailing = len(pattern) - len(pattern.rstrip("\\"))
    if trailing % 2 == 1:
        raise ConfigError(f"Pattern ends with a dangling escape: {pattern!r}")
    return pattern


def unique(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out
