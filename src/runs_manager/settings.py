from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import yaml

from runs_manager.models import ConfigError

DEFAULT_SETTINGS_FILE = "runs.yaml"
DEFAULT_DB_FILE = "runs.db"
SETTINGS_ALLOWED_KEYS = {
    "db",
    "image",
    "build_path",
    "dockerfile",
    "docker_run_args",
    "mount",
    "kill_label",
    "interpreter",
    "interpreter_args",
    "num_runs",
    "max_workers",
}


@dataclass(frozen=True)
class Settings:
    db: str | None = None
    image: str = "runs"
    build_path: str = "."
    dockerfile: str = "Dockerfile"
    docker_run_args: tuple[str, ...] = ()
    mount: str = "/data"
    kill_label: str | None = None
    interpreter: str = "python3"
    interpreter_args: tuple[str, ...] = ("-c",)
    num_runs: int = 1
    max_workers: int = 1
    source: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "db": self.db,
            "image": self.image,
            "build_path": self.build_path,
            "dockerfile": self.dockerfile,
            "docker_run_args": list(self.docker_run_args),
            "mount": self.mount,
            "kill_label": self.kill_label,
            "interpreter": self.interpreter,
            "interpreter_args": list(self.interpreter_args),
            "num_runs": self.num_runs,
            "max_workers": self.max_workers,
            "source": self.source,
        }


def _coerce_optional_str(value: Any, *, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be a string")
    trimmed = value.strip()
    return trimmed or None


def _coerce_required_str(value: Any, *, label: str) -> str:
    parsed = _coerce_optional_str(value, label=label)
    if parsed is None:
        raise ConfigError(f"{label} must be a non-empty string")
    return parsed


def _coerce_positive_int(value: Any, *, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{label} must be an integer")
    if value < 1:
        raise ConfigError(f"{label} must be >= 1")
    return value


def _coerce_str_list(value: Any, *, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError(f"{label} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, (str, int, float)) or isinstance(item, bool):
            raise ConfigError(f"{label} must contain only strings")
        out.append(str(item))
    return tuple(out)


def resolve_settings_path(explicit: str | None = None) -> Path | None:
    """Pick the settings file: flag, then ``RUNS_SETTINGS``, then ./runs.yaml.

    An explicitly named file must exist; the implicit default may be absent.
    """
    raw = explicit or os.environ.get("RUNS_SETTINGS", "").strip()
    if raw:
        path = Path(raw).expanduser().resolve()
        if not path.is_file():
            raise ConfigError(f"Settings file not found: {path}")
        return path
    default = Path(DEFAULT_SETTINGS_FILE).expanduser().resolve()
    return default if default.is_file() else None


def load_settings(path: Path | None) -> Settings:
    if path is None:
        return Settings()
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in settings file {path}: {exc}") from exc
    if raw is None:
        return Settings(source=str(path))
    if not isinstance(raw, dict):
        raise ConfigError(f"Settings file {path} must contain a mapping")
    data = {str(key): value for key, value in raw.items()}
    unknown = sorted(set(data) - SETTINGS_ALLOWED_KEYS)
    if unknown:
        raise ConfigError(
            f"Settings file {path} has unknown keys: {unknown}. "
            f"Allowed keys: {sorted(SETTINGS_ALLOWED_KEYS)}"
        )

    parsed: dict[str, Any] = {"source": str(path)}
    for key in ("db", "kill_label"):
        if key in data:
            parsed[key] = _coerce_optional_str(data[key], label=key)
    for key in ("image", "build_path", "dockerfile", "mount", "interpreter"):
        if key in data:
            parsed[key] = _coerce_required_str(data[key], label=key)
    for key in ("docker_run_args", "interpreter_args"):
        if key in data:
            parsed[key] = _coerce_str_list(data[key], label=key)
    for key in ("num_runs", "max_workers"):
        if key in data:
            parsed[key] = _coerce_positive_int(data[key], label=key)

    return replace(Settings(), **parsed)


def resolve_db_path(explicit: str | None, settings: Settings) -> Path:
    """Registry path: ``--db`` flag, ``RUNS_DB``, settings ``db``, ./runs.db."""
    raw = (
        explicit
        or os.environ.get("RUNS_DB", "").strip()
        or settings.db
        or DEFAULT_DB_FILE
    )
    return Path(raw).expanduser().resolve()
