import json
import logging
import os
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from labtrack.config import Settings
from labtrack.database import Base
from labtrack.errors import PersistenceError
from labtrack.schemas.order import OrderStatus, StoreState
from labtrack.services.lifecycle import LifecycleStore
from labtrack.services.persistence import (
    JsonFileSnapshotStore,
    MemorySnapshotStore,
    SqlSnapshotStore,
    _SnapshotStoreBase,
    build_snapshot_store,
    dump_snapshot,
    parse_snapshot,
)

S = OrderStatus

VERIFIED_IST = datetime(2026, 3, 14, 16, 45, 12, 250000, tzinfo=timezone(timedelta(hours=5, minutes=30)))


@pytest.fixture()
def populated(store, patient, catalog, advance) -> LifecycleStore:
    """A store holding orders in several states, including every optional field."""
    store.add_patient(
        {"name": "Ravi Kumar", "age": 52, "gender": "male", "phone": "555-0199", "email": "ravi@example.com", "address": "12 Elm St"}
    )
    store.add_order(patient, [catalog.by_code("CBC")])
    advance(store.add_order(patient, [catalog.by_code("LIPID"), catalog.by_code("HBA1C")]), S.SAMPLE_RECEIVED, S.REJECTED)
    advance(
        store.add_order(patient, [catalog.by_code("LFT")]),
        S.SAMPLE_RECEIVED,
        S.ACCEPTED,
        S.WORK_IN_PROGRESS,
        S.RESULT_SAVED,
        S.REPORT_CREATED,
        S.ON_HOLD,
    )
    # Caller-supplied timestamps: one with a +05:30 offset, one naive.
    kft = store.add_order(patient, [catalog.by_code("KFT")])
    store.update_order_status(
        kft.id, S.SAMPLE_RECEIVED, {"sampleReceivedBy": "Tech Adams", "sampleReceivedAt": datetime(2026, 3, 14, 8, 0)}
    )
    advance(store.get_order(kft.id), S.ACCEPTED, S.WORK_IN_PROGRESS, S.RESULT_SAVED, S.REPORT_CREATED)
    store.update_order_status(kft.id, S.VERIFIED, {"verifiedBy": "Dr. Lee", "verifiedAt": VERIFIED_IST})
    advance(
        store.add_order(patient, [catalog.by_code("VITD")]),
        S.SAMPLE_RECEIVED,
        S.ACCEPTED,
        S.WORK_IN_PROGRESS,
        S.RESULT_SAVED,
        S.REPORT_CREATED,
        S.VERIFIED,
        S.DELIVERED,
    )
    return store


@pytest.fixture()
def sql_engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


def test_round_trip_preserves_state_exactly(populated):
    state = populated.snapshot()
    assert parse_snapshot(dump_snapshot(state)) == state


def test_round_trip_keeps_on_hold_and_caller_timestamps(populated):
    restored = {o.id: o for o in parse_snapshot(dump_snapshot(populated.snapshot())).orders}

    (on_hold,) = populated.get_orders_by_status(S.ON_HOLD)
    assert restored[on_hold.id] == on_hold
    assert restored[on_hold.id].report_content == "<h1>Laboratory Test Report</h1>"

    (verified,) = populated.get_orders_by_status(S.VERIFIED)
    again = restored[verified.id]
    assert again == verified
    assert again.verified_at == VERIFIED_IST
    assert again.verified_at.utcoffset() == timedelta(hours=5, minutes=30)
    assert again.sample_received_at == datetime(2026, 3, 14, 8, 0)
    assert again.sample_received_at.tzinfo is None


def test_snapshot_layout_is_versioned_camel_case_json(populated):
    envelope = json.loads(dump_snapshot(populated.snapshot()))

    assert envelope["version"] == 1
    assert set(envelope["state"]) == {"patients", "orders"}
    delivered = envelope["state"]["orders"][-1]
    assert delivered["status"] == "delivered"
    assert delivered["verifiedBy"] == "Dr. Lee"
    assert delivered["results"][0]["isAbnormal"] is False
    assert delivered["createdAt"].startswith("2026-03-14T09:")


def test_reopened_store_sees_same_data(populated, snapshots, ids):
    reopened = LifecycleStore.open(snapshots, ids)

    assert reopened.list_patients() == populated.list_patients()
    assert reopened.list_orders() == populated.list_orders()
    assert reopened.persistence_warning is None
    booked = reopened.get_orders_by_status(S.BOOKED)[0]
    assert reopened.update_order_status(booked.id, S.SAMPLE_RECEIVED, {"sampleReceivedBy": "Tech"}).status is S.SAMPLE_RECEIVED


def test_json_file_slot_round_trip(tmp_path, populated):
    slot = JsonFileSnapshotStore(tmp_path / "lims-storage.json")
    slot.save(populated.snapshot())

    assert slot.load() == populated.snapshot()
    assert slot.last_warning is None
    assert [p.name for p in tmp_path.iterdir()] == ["lims-storage.json"]


def test_json_file_failed_write_keeps_last_good_snapshot(tmp_path, populated, monkeypatch):
    slot = JsonFileSnapshotStore(tmp_path / "lims-storage.json")
    slot.save(StoreState(patients=populated.list_patients()))
    before = slot.path.read_text(encoding="utf-8")

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(PersistenceError):
        slot.save(populated.snapshot())

    assert slot.path.read_text(encoding="utf-8") == before
    assert [p.name for p in tmp_path.iterdir()] == ["lims-storage.json"]


@pytest.mark.parametrize(
    "payload",
    [
        "{not json",
        "[]",
        json.dumps({"version": 99, "state": {"patients": [], "orders": []}}),
        json.dumps({"version": 1, "state": {"patients": [{"name": "No id"}], "orders": []}}),
    ],
)
def test_corrupt_snapshot_loads_empty_with_warning(payload, caplog):
    slot = MemorySnapshotStore("broken", payload=payload)
    with caplog.at_level(logging.WARNING, logger="labtrack.services.persistence"):
        state = slot.load()

    assert state == StoreState()
    assert slot.last_warning
    assert "starting with an empty store" in caplog.text


def test_missing_slot_loads_empty_with_warning(tmp_path):
    slot = JsonFileSnapshotStore(tmp_path / "nothing-here.json")
    store = LifecycleStore.open(slot)

    assert store.list_orders() == []
    assert store.list_patients() == []
    assert "No snapshot found" in store.persistence_warning


def test_sql_slot_round_trip_and_overwrite(sql_engine, populated):
    slot = SqlSnapshotStore(sql_engine, "lims-storage")
    slot.save(StoreState())
    slot.save(populated.snapshot())

    assert slot.load() == populated.snapshot()
    other = SqlSnapshotStore(sql_engine, "other-slot")
    assert other.load() == StoreState()
    assert other.last_warning


def test_sql_slot_without_table_degrades_to_empty():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    slot = SqlSnapshotStore(engine, "lims-storage")

    assert slot.load() == StoreState()
    assert "Could not restore" in slot.last_warning
    with pytest.raises(PersistenceError):
        slot.save(StoreState())


class FlakySnapshotStore(MemorySnapshotStore):
    def __init__(self):
        super().__init__("flaky")
        self.fail = False

    def _write(self, payload):
        if self.fail:
            raise PersistenceError("slot unavailable")
        super()._write(payload)


def test_failed_write_keeps_mutation_and_retries(ids, caplog):
    slot = FlakySnapshotStore()
    store = LifecycleStore(slot, ids)
    store.add_patient({"name": "Jane Doe", "age": 34, "gender": "female", "phone": "555-0100"})

    slot.fail = True
    with caplog.at_level(logging.WARNING, logger="labtrack.services.lifecycle"):
        second = store.add_patient({"name": "Ann Lee", "age": 61, "gender": "female", "phone": "555-0101"})
    assert store.get_patient(second.id) == second
    assert store.dirty
    assert store.persistence_warning == "slot unavailable"
    assert "Snapshot write failed" in caplog.text
    assert len(parse_snapshot(slot.payload).patients) == 1
    assert store.flush() is False

    slot.fail = False
    assert store.flush() is True
    assert not store.dirty
    assert store.persistence_warning is None
    assert len(parse_snapshot(slot.payload).patients) == 2


def test_build_snapshot_store_from_settings(tmp_path):
    json_slot = build_snapshot_store(Settings(storage_backend="json", data_dir=tmp_path, storage_name="lab-a"))
    assert isinstance(json_slot, JsonFileSnapshotStore)
    assert json_slot.path == tmp_path / "lab-a.json"

    sql_slot = build_snapshot_store(Settings(storage_backend="sql", database_url="sqlite://"))
    assert isinstance(sql_slot, SqlSnapshotStore)

    assert isinstance(build_snapshot_store(Settings(storage_backend="memory")), MemorySnapshotStore)
    with pytest.raises(ValueError):
        build_snapshot_store(Settings(storage_backend="floppy"))


def test_slot_without_write_cannot_be_built():
    class ReadOnlySlot(_SnapshotStoreBase):
        def _read(self):
            return None

    with pytest.raises(TypeError):
        ReadOnlySlot("read-only")
    with pytest.raises(TypeError):
        _SnapshotStoreBase("bare")
