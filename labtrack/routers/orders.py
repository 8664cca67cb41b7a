from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from labtrack.errors import ValidationError
from labtrack.routers.deps import get_catalog, get_store, ok
from labtrack.schemas.api import OrderCreateRequest, StatusChangeRequest
from labtrack.services.catalog import TestCatalog
from labtrack.services.lifecycle import LifecycleStore
from labtrack.services.queries import filter_by_status, search_orders

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("")
def book_order(
    payload: OrderCreateRequest,
    store: LifecycleStore = Depends(get_store),
    catalog: TestCatalog = Depends(get_catalog),
):
    if (payload.patient_id is None) == (payload.patient is None):
        raise HTTPException(status_code=400, detail="Provide either patient_id or patient")
    if not payload.tests:
        raise ValidationError("Please select at least one test", detail={"tests": []})

    # Resolve tests before registering a new patient so a bad reference books nothing.
    tests = catalog.resolve_many(payload.tests)
    if payload.patient_id is not None:
        patient = store.get_patient(payload.patient_id)
        if not patient:
            raise HTTPException(status_code=404, detail="Patient not found")
    else:
        patient = store.add_patient(payload.patient)

    order = store.add_order(patient, tests)
    return ok(order, message=f"Order {order.order_id} created successfully")


@router.get("")
def list_orders(
    status: list[str] | None = Query(default=None),
    q: str | None = Query(default=None),
    store: LifecycleStore = Depends(get_store),
):
    orders = store.list_orders()
    if status:
        orders = filter_by_status(orders, *status)
    orders = search_orders(orders, q)
    return ok({"orders": orders, "total": len(orders)})


@router.get("/{order_id}")
def get_order(order_id: str, store: LifecycleStore = Depends(get_store)):
    order = store.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return ok(order)


@router.patch("/{order_id}")
def update_order(
    order_id: str,
    fields: dict[str, Any] = Body(...),
    store: LifecycleStore = Depends(get_store),
):
    order = store.update_order(order_id, fields)
    return ok(order, message="Order updated")


@router.post("/{order_id}/status")
def change_status(
    order_id: str,
    payload: StatusChangeRequest,
    store: LifecycleStore = Depends(get_store),
):
    order = store.update_order_status(order_id, payload.status, payload.fields)
    return ok(order, message=f"Order {order.order_id} is now {order.status.label}")


@router.get("/{order_id}/transitions")
def transitions(order_id: str, store: LifecycleStore = Depends(get_store)):
    targets = store.allowed_transitions(order_id)
    return ok([{"status": status.value, "label": status.label} for status in targets])
