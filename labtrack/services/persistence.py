"""Snapshot persistence for the lifecycle store.

The whole store (patients and orders) is written as one versioned JSON
document into a named slot after every mutation and read back once at
startup. Writers replace the slot atomically, so a failed write leaves the
previous snapshot in place. Readers never fail startup: a missing or damaged
slot yields an empty state plus a warning on ``last_warning``.
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Protocol

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from labtrack.config import Settings
from labtrack.database import make_engine, make_session_factory
from labtrack.errors import PersistenceError, ValidationError
from labtrack.models.snapshot import SnapshotRecord
from labtrack.schemas.common import build_model
from labtrack.schemas.order import StoreState

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


def dump_snapshot(state: StoreState) -> str:
    return json.dumps(
        {"version": SNAPSHOT_VERSION, "state": state.model_dump(mode="json", by_alias=True)},
        ensure_ascii=False,
    )


def parse_snapshot(raw: str) -> StoreState:
    try:
        envelope = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise PersistenceError(f"Snapshot is not valid JSON: {exc}") from exc
    if not isinstance(envelope, dict):
        raise PersistenceError("Snapshot envelope must be an object")

    version = envelope.get("version")
    if version != SNAPSHOT_VERSION:
        raise PersistenceError(f"Unsupported snapshot version: {version!r}", detail={"version": version})
    try:
        return build_model(StoreState, envelope.get("state") or {})
    except ValidationError as exc:
        raise PersistenceError(f"Snapshot state is malformed: {exc.message}", detail=exc.detail) from exc


class SnapshotStore(Protocol):
    last_warning: str | None

    def save(self, state: StoreState) -> None: ...

    def load(self) -> StoreState: ...


class _SnapshotStoreBase(ABC):
    """Serialization and the never-fail load; subclasses only move the raw payload."""

    def __init__(self, name: str):
        self.name = name
        self.last_warning: str | None = None

    @abstractmethod
    def _read(self) -> str | None:
        """Raw payload of the slot, or None when the slot does not exist."""

    @abstractmethod
    def _write(self, payload: str) -> None:
        """Replace the slot with ``payload``, raising ``PersistenceError`` on failure."""

    def save(self, state: StoreState) -> None:
        self._write(dump_snapshot(state))

    def load(self) -> StoreState:
        self.last_warning = None
        try:
            raw = self._read()
            if raw is None:
                return self._start_empty(f"No snapshot found in slot {self.name!r}")
            state = parse_snapshot(raw)
        except PersistenceError as exc:
            return self._start_empty(f"Could not restore slot {self.name!r}: {exc.message}")
        logger.info("Restored %d patients and %d orders from %r", len(state.patients), len(state.orders), self.name)
        return state

    def _start_empty(self, reason: str) -> StoreState:
        self.last_warning = reason
        logger.warning("%s; starting with an empty store", reason)
        return StoreState()


class MemorySnapshotStore(_SnapshotStoreBase):
    """Keeps the serialized snapshot in memory."""

    def __init__(self, name: str = "memory", payload: str | None = None):
        super().__init__(name)
        self.payload = payload
        self.writes = 0

    def _read(self) -> str | None:
        return self.payload

    def _write(self, payload: str) -> None:
        self.payload = payload
        self.writes += 1


class JsonFileSnapshotStore(_SnapshotStoreBase):
    """One JSON file per slot, replaced through a temp file and ``os.replace``."""

    def __init__(self, path: Path | str, name: str | None = None):
        self.path = Path(path)
        super().__init__(name or self.path.stem)

    def _read(self) -> str | None:
        if not self.path.exists():
            return None
        try:
            return self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise PersistenceError(f"Could not read {self.path}: {exc}") from exc

    def _write(self, payload: str) -> None:
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self.path)
        except OSError as exc:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceError(f"Could not write {self.path}: {exc}") from exc


class SqlSnapshotStore(_SnapshotStoreBase):
    """One row per slot in ``lims_snapshots``; each save replaces the row in a single transaction."""

    def __init__(self, engine: Engine, name: str):
        super().__init__(name)
        self.engine = engine
        self.session_factory = make_session_factory(engine)

    def _read(self) -> str | None:
        try:
            with self.session_factory() as session:
                record = session.get(SnapshotRecord, self.name)
                return record.payload if record else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not read snapshot {self.name!r}: {exc}") from exc

    def _write(self, payload: str) -> None:
        try:
            with self.session_factory() as session, session.begin():
                record = session.get(SnapshotRecord, self.name)
                if record is None:
                    session.add(SnapshotRecord(name=self.name, version=SNAPSHOT_VERSION, payload=payload))
                else:
                    record.version = SNAPSHOT_VERSION
                    record.payload = payload
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not write snapshot {self.name!r}: {exc}") from exc


def build_snapshot_store(config: Settings) -> SnapshotStore:
    backend = config.storage_backend.strip().lower()
    if backend == "json":
        return JsonFileSnapshotStore(Path(config.data_dir) / f"{config.storage_name}.json", name=config.storage_name)
    if backend == "sql":
        return SqlSnapshotStore(make_engine(config.database_url), config.storage_name)
    if backend == "memory":
        return MemorySnapshotStore(config.storage_name)
    raise ValueError(f"Unknown storage backend: {config.storage_backend!r}")
