"""Persistent run registry backed by SQLite through SQLAlchemy Core.

Every public method runs in exactly one transaction, so a caller never sees
a registry that is half-written by a single call.
"""

from __future__ import annotations

import contextlib
import datetime as dt
import logging
from pathlib import Path
from typing import Any, Collection, Iterator, Sequence

from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    event,
    select,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from runs_manager.models import ExistingRun, RegistryError, RunRecord

_log = logging.getLogger("runs_manager.registry")
LIKE_ESCAPE = "\\"

metadata = MetaData()

runs_table = Table(
    "runs",
    metadata,
    Column("name", String, primary_key=True),
    Column("commit_hash", String, nullable=False),
    Column("config", Text, nullable=True),
    Column("config_script", Text, nullable=True),
    Column("image_id", String, nullable=False),
    Column("container_id", String, nullable=False),
    Column("volume", String, nullable=False),
    Column("description", Text, nullable=False),
    Column("datetime", DateTime(timezone=True), nullable=False),
)


def _record_values(record: RunRecord) -> dict[str, Any]:
    return {
        "name": record.name,
        "commit_hash": record.commit_hash,
        "config": record.config,
        "config_script": record.config_script,
        "image_id": record.image_id,
        "container_id": record.container_id,
        "volume": record.volume,
        "description": record.description,
        "datetime": record.datetime.astimezone(dt.timezone.utc)
        if record.datetime.tzinfo is not None
        else record.datetime,
    }


def _require_nonempty(values: Collection[str], *, label: str) -> list[str]:
    items = sorted({str(value) for value in values})
    if not items:
        raise ValueError(f"{label} must not be empty")
    return items


class RunRegistry:
    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def open(cls, path: str | Path) -> "RunRegistry":
        db_path = Path(path).expanduser().resolve()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(f"sqlite:///{db_path}")

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection: Any, _record: Any) -> None:
            # Run names are case-sensitive; SQLite's LIKE is not by default.
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA case_sensitive_like = ON")
            cursor.close()

        registry = cls(engine)
        registry.create_if_absent()
        _log.debug("registry_open path=%s", db_path)
        return registry

    def close(self) -> None:
        self.engine.dispose()

    @contextlib.contextmanager
    def _transaction(self, operation: str) -> Iterator[Connection]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            _log.error("registry_error operation=%s error=%s", operation, exc)
            raise RegistryError(f"Registry {operation} failed: {exc}") from exc

    def create_if_absent(self) -> None:
        with self._transaction("create") as conn:
            metadata.create_all(conn, checkfirst=True)

    def find_by_name_pattern(self, pattern: str) -> list[RunRecord]:
        query = (
            select(runs_table)
            .where(runs_table.c.name.like(pattern, escape=LIKE_ESCAPE))
            .order_by(runs_table.c.name)
        )
        with self._transaction("query") as conn:
            rows = conn.execute(query).mappings().all()
        return [RunRecord.from_row(row) for row in rows]

    def find_by_names(self, names: Collection[str]) -> list[ExistingRun]:
        wanted = _require_nonempty(names, label="names")
        query = (
            select(
                runs_table.c.name, runs_table.c.container_id, runs_table.c.volume
            )
            .where(runs_table.c.name.in_(wanted))
            .order_by(runs_table.c.name)
        )
        with self._transaction("query") as conn:
            rows = conn.execute(query).all()
        return [
            ExistingRun(name=name, container_id=container_id, volume=volume)
            for name, container_id, volume in rows
        ]

    def find_by_volumes(self, volumes: Collection[str]) -> list[tuple[str, str]]:
        wanted = _require_nonempty(volumes, label="volumes")
        query = (
            select(runs_table.c.name, runs_table.c.volume)
            .where(runs_table.c.volume.in_(wanted))
            .order_by(runs_table.c.name)
        )
        with self._transaction("query") as conn:
            rows = conn.execute(query).all()
        return [(name, volume) for name, volume in rows]

    def upsert_all(self, records: Sequence[RunRecord]) -> None:
        if not records:
            return
        statement = sqlite_insert(runs_table)
        statement = statement.on_conflict_do_update(
            index_elements=[runs_table.c.name],
            set_={
                column.name: statement.excluded[column.name]
                for column in runs_table.columns
                if column.name != "name"
            },
        )
        with self._transaction("upsert") as conn:
            conn.execute(statement, [_record_values(record) for record in records])
        _log.info("registry_upsert names=%s", ",".join(r.name for r in records))

    def delete_by_names(self, names: Sequence[str]) -> None:
        if not names:
            return
        with self._transaction("delete") as conn:
            conn.execute(delete(runs_table).where(runs_table.c.name.in_(list(names))))
        _log.info("registry_delete names=%s", ",".join(names))
