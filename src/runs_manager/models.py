from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Union


class RunsError(RuntimeError):
    """Base error for run management failures."""


class ConfigError(RunsError):
    """Raised when user input or settings are invalid."""


class Aborted(RunsError):
    """Raised when the user declines a confirmation."""


class PipelineError(RunsError):
    """Raised when a provisioning or teardown step fails fatally."""


class CommandError(PipelineError):
    """Raised when an external command fails or cannot be spawned."""

    def __init__(
        self,
        message: str,
        *,
        argv: tuple[str, ...] = (),
        exit_code: int | None = None,
        output: str = "",
    ):
        super().__init__(message)
        self.argv = argv
        self.exit_code = exit_code
        self.output = output


class RegistryError(PipelineError):
    """Raised when a registry transaction fails."""


def _as_utc(value: dt.datetime) -> dt.datetime:
    # SQLite keeps no offset; stored timestamps are always UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


@dataclass(frozen=True)
class RunRecord:
    name: str
    commit_hash: str
    config: str | None
    config_script: str | None
    image_id: str
    container_id: str
    volume: str
    description: str
    datetime: dt.datetime

    def to_json(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "commit_hash": self.commit_hash,
            "config": self.config,
            "config_script": self.config_script,
            "image_id": self.image_id,
            "container_id": self.container_id,
            "volume": self.volume,
            "description": self.description,
            "datetime": self.datetime.isoformat(),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RunRecord":
        return cls(
            name=str(row["name"]),
            commit_hash=str(row["commit_hash"]),
            config=row.get("config"),
            config_script=row.get("config_script"),
            image_id=str(row["image_id"]),
            container_id=str(row["container_id"]),
            volume=str(row["volume"]),
            description=str(row["description"]),
            datetime=_as_utc(row["datetime"]),
        )


@dataclass(frozen=True)
class PartialRunRecord:
    """Everything about a run that is known before its container exists."""

    name: str
    commit_hash: str
    config: str | None
    config_script: str | None
    image_id: str
    volume: str
    description: str
    datetime: dt.datetime

    def complete(self, container_id: str) -> RunRecord:
        return RunRecord(
            name=self.name,
            commit_hash=self.commit_hash,
            config=self.config,
            config_script=self.config_script,
            image_id=self.image_id,
            container_id=container_id,
            volume=self.volume,
            description=self.description,
            datetime=self.datetime,
        )


@dataclass(frozen=True)
class ExistingRun:
    name: str
    container_id: str
    volume: str


@dataclass(frozen=True)
class ConfigTuple:
    name: str
    config_script: str | None
    config: str | None


@dataclass(frozen=True)
class SingleConfig:
    config: str | None = None


@dataclass(frozen=True)
class MultiConfig:
    script_path: Path
    interpreter: str
    interpreter_args: tuple[str, ...] = ()
    count: int = 1


NewMethod = Union[SingleConfig, MultiConfig]


@dataclass(frozen=True)
class NewRequest:
    name: str
    image: str
    build_path: Path
    dockerfile: Path
    method: NewMethod
    mount_path: str
    description: str | None = None
    docker_run_args: tuple[str, ...] = ()
    volume: str | None = None
    kill_label: str | None = None
    follow: bool = False

    def volume_for(self, run_name: str) -> str:
        return self.volume or run_name


class LookupField(str, enum.Enum):
    NAME = "name"
    COMMIT_HASH = "commit_hash"
    CONFIG = "config"
    CONFIG_SCRIPT = "config_script"
    IMAGE_ID = "image_id"
    CONTAINER_ID = "container_id"
    VOLUME = "volume"
    DESCRIPTION = "description"
    DATETIME = "datetime"


def _optional_text(value: str | None) -> str:
    return "" if value is None else value


LOOKUP_ACCESSORS: dict[LookupField, Callable[[RunRecord], str]] = {
    LookupField.NAME: lambda record: record.name,
    LookupField.COMMIT_HASH: lambda record: record.commit_hash,
    LookupField.CONFIG: lambda record: _optional_text(record.config),
    LookupField.CONFIG_SCRIPT: lambda record: _optional_text(record.config_script),
    LookupField.IMAGE_ID: lambda record: record.image_id,
    LookupField.CONTAINER_ID: lambda record: record.container_id,
    LookupField.VOLUME: lambda record: record.volume,
    LookupField.DESCRIPTION: lambda record: record.description,
    LookupField.DATETIME: lambda record: record.datetime.isoformat(),
}


@dataclass(frozen=True)
class ConfirmationRequest:
    """A question the pipeline needs answered before it mutates anything.

    ``prompt`` is shown when confirmation is interactive, ``notice`` when it
    is auto-approved by ``--yes``.
    """

    prompt: str
    notice: str
    items: tuple[str, ...] = ()
    highlight: bool = False


@dataclass(frozen=True)
class TeardownSummary:
    pattern: str
    matched: tuple[str, ...] = ()
    killed: tuple[str, ...] = ()
    removed_volumes: tuple[str, ...] = ()
    deleted_rows: tuple[str, ...] = ()
    failures: tuple[str, ...] = field(default_factory=tuple)

    def to_json(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "matched": list(self.matched),
            "killed": list(self.killed),
            "removed_volumes": list(self.removed_volumes),
            "deleted_rows": list(self.deleted_rows),
            "failures": list(self.failures),
        }
