"""The lifecycle store: owner of all patients and orders.

Every mutation validates first and changes nothing on failure. A successful
mutation is applied in memory, then written through the snapshot store. A
failed write does not undo the mutation; the store stays dirty and retries on
the next mutation or on ``flush()``, with the failure kept on
``persistence_warning`` until a write succeeds.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel

from labtrack.errors import NotFoundError, PersistenceError, ValidationError
from labtrack.schemas.catalog import LabTest
from labtrack.schemas.common import build_model, field_names
from labtrack.schemas.order import Order, OrderStatus, StoreState
from labtrack.schemas.patient import Patient, PatientCreate
from labtrack.services.identifiers import IdentifierGenerator
from labtrack.services.persistence import MemorySnapshotStore, SnapshotStore
from labtrack.services.queries import filter_by_status
from labtrack.services.workflow import (
    STATUS_TIMESTAMPS,
    allowed_targets,
    check_transition,
    ensure_allowed,
    guard_problems,
    parse_status,
)

logger = logging.getLogger(__name__)

# Assigned at booking and never changed by a merge update. Status moves only through update_order_status.
PROTECTED_ORDER_FIELDS = frozenset({"id", "order_id", "barcode", "created_at", "patient", "tests", "status"})


class LifecycleStore:
    def __init__(
        self,
        snapshots: SnapshotStore | None = None,
        ids: IdentifierGenerator | None = None,
        state: StoreState | None = None,
    ):
        self.snapshots = snapshots if snapshots is not None else MemorySnapshotStore()
        self.ids = ids if ids is not None else IdentifierGenerator()
        self.persistence_warning: str | None = None
        self._dirty = False
        self._patients: list[Patient] = []
        self._orders: list[Order] = []
        self._patient_pos: dict[str, int] = {}
        self._order_pos: dict[str, int] = {}
        if state is not None:
            self._restore(state)

    @classmethod
    def open(cls, snapshots: SnapshotStore, ids: IdentifierGenerator | None = None) -> LifecycleStore:
        """Build a store from the last snapshot. Never fails; see ``SnapshotStore.load``."""
        store = cls(snapshots, ids, state=snapshots.load())
        store.persistence_warning = snapshots.last_warning
        return store

    def _restore(self, state: StoreState) -> None:
        self._patients = list(state.patients)
        self._orders = list(state.orders)
        self._patient_pos = {p.id: i for i, p in enumerate(self._patients)}
        self._order_pos = {o.id: i for i, o in enumerate(self._orders)}

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> StoreState:
        return StoreState(patients=list(self._patients), orders=list(self._orders))

    @property
    def dirty(self) -> bool:
        return self._dirty

    def _persist(self) -> None:
        try:
            self.snapshots.save(self.snapshot())
        except PersistenceError as exc:
            self._dirty = True
            self.persistence_warning = exc.message
            logger.warning("Snapshot write failed, keeping change in memory and retrying later: %s", exc.message)
            return
        self._dirty = False
        self.persistence_warning = None

    def flush(self) -> bool:
        """Retry a pending snapshot write. True when the stored snapshot is current."""
        if self._dirty:
            self._persist()
        return not self._dirty

    # ------------------------------------------------------------------
    # patients
    # ------------------------------------------------------------------

    def add_patient(self, data: PatientCreate | Mapping[str, Any]) -> Patient:
        if isinstance(data, BaseModel):
            data = data.model_dump()
        details = build_model(PatientCreate, data)
        patient = Patient(id=self.ids.entity_id(), created_at=self.ids.now(), **details.model_dump())

        self._patient_pos[patient.id] = len(self._patients)
        self._patients.append(patient)
        logger.info("Registered patient %s", patient.id)
        self._persist()
        return patient

    def get_patient(self, patient_id: str) -> Patient | None:
        pos = self._patient_pos.get(patient_id)
        return self._patients[pos] if pos is not None else None

    def list_patients(self) -> list[Patient]:
        return list(self._patients)

    # ------------------------------------------------------------------
    # orders
    # ------------------------------------------------------------------

    def add_order(
        self,
        patient: Patient | Mapping[str, Any],
        tests: Iterable[LabTest | Mapping[str, Any]],
        status: OrderStatus | str = OrderStatus.BOOKED,
    ) -> Order:
        if parse_status(status) != OrderStatus.BOOKED:
            raise ValidationError(f"New orders start as booked, not {status}")

        if not isinstance(patient, Patient):
            patient = build_model(Patient, patient)
        # Orders snapshot the stored record, whatever copy the caller holds.
        registered = self.get_patient(patient.id)
        if registered is None:
            raise NotFoundError(f"Patient {patient.id} is not registered", detail={"patient_id": patient.id})

        selected = [t if isinstance(t, LabTest) else build_model(LabTest, t) for t in tests or []]
        if not selected:
            raise ValidationError("An order needs at least one test")
        test_ids = [t.id for t in selected]
        if len(set(test_ids)) != len(test_ids):
            raise ValidationError("An order cannot list the same test twice", detail={"tests": test_ids})

        now = self.ids.now()
        order = build_model(
            Order,
            {
                "id": self.ids.entity_id(),
                "order_id": self.ids.order_id(now),
                "barcode": self.ids.barcode(now),
                "patient": registered.model_copy(deep=True),
                "tests": selected,
                "status": OrderStatus.BOOKED,
                "created_at": now,
            },
        )

        self._order_pos[order.id] = len(self._orders)
        self._orders.append(order)
        logger.info("Booked order %s (%s) with %d tests", order.order_id, order.id, len(selected))
        self._persist()
        return order

    def get_order(self, order_id: str) -> Order | None:
        pos = self._order_pos.get(order_id)
        return self._orders[pos] if pos is not None else None

    def list_orders(self) -> list[Order]:
        return list(self._orders)

    def get_orders_by_status(self, status: OrderStatus | str) -> list[Order]:
        return filter_by_status(self._orders, status)

    def allowed_transitions(self, order_id: str) -> list[OrderStatus]:
        _, order = self._locate(order_id)
        targets = allowed_targets(order.status)
        return [status for status in OrderStatus if status in targets]

    def update_order_status(
        self,
        order_id: str,
        target: OrderStatus | str,
        extra_fields: Mapping[str, Any] | None = None,
    ) -> Order:
        """Move an order to ``target``, merging ``extra_fields`` into it.

        Raises ``NotFoundError`` for an unknown order, ``InvalidTransitionError``
        when ``target`` is not reachable or its required payload is missing, and
        ``ValidationError`` when ``extra_fields`` is malformed. The order is
        untouched on any error.
        """
        pos, order = self._locate(order_id)
        target = parse_status(target)
        current = order.status
        ensure_allowed(current, target)

        changes = self._normalize_changes(extra_fields)
        stamp_field = STATUS_TIMESTAMPS.get(target)
        if stamp_field and changes.get(stamp_field) is None:
            changes[stamp_field] = self.ids.now()

        candidate = self._merge(order, changes)
        check_transition(candidate, current, target)
        updated = candidate.model_copy(update={"status": target})

        self._orders[pos] = updated
        logger.info("Order %s moved %s -> %s", order.order_id, current.value, target.value)
        self._persist()
        return updated

    def update_order(self, order_id: str, partial_fields: Mapping[str, Any]) -> Order:
        """Merge non-status fields (results, report content, ...) into an order."""
        pos, order = self._locate(order_id)
        changes = self._normalize_changes(partial_fields)
        if not changes:
            return order

        updated = self._merge(order, changes)
        problems = guard_problems(updated, updated.status)
        if problems:
            raise ValidationError(
                f"Update would leave a {updated.status.value} order without required data",
                detail={"problems": problems},
            )

        self._orders[pos] = updated
        logger.info("Order %s updated: %s", order.order_id, ", ".join(sorted(changes)))
        self._persist()
        return updated

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _locate(self, order_id: str) -> tuple[int, Order]:
        pos = self._order_pos.get(order_id)
        if pos is None:
            raise NotFoundError(f"Order {order_id} not found", detail={"order_id": order_id})
        return pos, self._orders[pos]

    def _normalize_changes(self, fields: Mapping[str, Any] | BaseModel | None) -> dict[str, Any]:
        if fields is None:
            return {}
        if isinstance(fields, BaseModel):
            fields = fields.model_dump(exclude_unset=True)

        names = field_names(Order)
        unknown = sorted(key for key in fields if key not in names)
        if unknown:
            raise ValidationError(f"Unknown order fields: {', '.join(unknown)}", detail={"fields": unknown})

        changes = {names[key]: value for key, value in fields.items()}
        protected = sorted(PROTECTED_ORDER_FIELDS.intersection(changes))
        if protected:
            raise ValidationError(
                f"Fields cannot be changed by an update: {', '.join(protected)}",
                detail={"fields": protected},
            )
        return changes

    @staticmethod
    def _merge(order: Order, changes: dict[str, Any]) -> Order:
        data = order.model_dump()
        data.update(changes)
        return build_model(Order, data)
