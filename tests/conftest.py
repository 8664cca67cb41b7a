import random
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from labtrack.main import app
from labtrack.routers.deps import get_catalog, get_store
from labtrack.schemas.order import OrderStatus
from labtrack.seed.test_catalog import load_tests
from labtrack.services.catalog import TestCatalog
from labtrack.services.identifiers import IdentifierGenerator
from labtrack.services.lifecycle import LifecycleStore
from labtrack.services.persistence import MemorySnapshotStore

START = datetime(2026, 3, 14, 9, 30, 0, tzinfo=timezone.utc)


class FakeClock:
    """Starts at ``START`` and moves one second per reading."""

    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def ids(clock) -> IdentifierGenerator:
    return IdentifierGenerator(clock=clock, rng=random.Random(42))


@pytest.fixture()
def snapshots() -> MemorySnapshotStore:
    return MemorySnapshotStore("test-slot")


@pytest.fixture()
def store(snapshots, ids) -> LifecycleStore:
    return LifecycleStore(snapshots, ids)


@pytest.fixture()
def catalog() -> TestCatalog:
    return TestCatalog(load_tests())


@pytest.fixture()
def cbc(catalog):
    return catalog.by_code("CBC")


@pytest.fixture()
def patient(store):
    return store.add_patient({"name": "Jane Doe", "age": 34, "gender": "female", "phone": "555-0100"})


@pytest.fixture()
def booked(store, patient, cbc):
    return store.add_order(patient, [cbc])


# Payload that satisfies each transition guard for a single-test CBC order.
def transition_fields(order, target: OrderStatus) -> dict:
    if target == OrderStatus.SAMPLE_RECEIVED:
        return {"sampleReceivedBy": "Tech Adams"}
    if target == OrderStatus.REJECTED:
        return {"rejectionReason": "insufficient quantity"}
    if target == OrderStatus.RESULT_SAVED:
        return {
            "results": [
                {"testId": t.id, "testName": t.name, "value": "13.5", "unit": "g/dL", "referenceRange": "12-16"}
                for t in order.tests
            ]
        }
    if target == OrderStatus.REPORT_CREATED:
        return {"reportContent": "<h1>Laboratory Test Report</h1>"}
    if target == OrderStatus.VERIFIED:
        return {"verifiedBy": "Dr. Lee"}
    return {}


@pytest.fixture()
def advance(store):
    """Walk an order through ``path`` with valid payloads, returning the final order."""

    def _advance(order, *path: OrderStatus):
        for target in path:
            order = store.update_order_status(order.id, target, transition_fields(order, target))
        return order

    return _advance


@pytest.fixture()
def client(store, catalog) -> Generator[TestClient, None, None]:
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_catalog] = lambda: catalog

    # Not entered as a context manager, so the lifespan (which opens the configured snapshot slot) never runs.
    yield TestClient(app)
    app.dependency_overrides.clear()
