from fastapi import APIRouter, Depends, HTTPException, Query

from labtrack.routers.deps import get_store, ok
from labtrack.schemas.patient import PatientCreate
from labtrack.services.lifecycle import LifecycleStore
from labtrack.services.queries import orders_for_patient, search_patients

router = APIRouter(prefix="/api/patients", tags=["patients"])


@router.post("")
def register_patient(payload: PatientCreate, store: LifecycleStore = Depends(get_store)):
    patient = store.add_patient(payload)
    return ok(patient, message="Patient registered")


@router.get("")
def list_patients(q: str | None = Query(default=None), store: LifecycleStore = Depends(get_store)):
    patients = search_patients(store.list_patients(), q)
    return ok({"patients": patients, "total": len(patients)})


@router.get("/{patient_id}")
def get_patient(patient_id: str, store: LifecycleStore = Depends(get_store)):
    patient = store.get_patient(patient_id)
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")
    return ok(patient)


@router.get("/{patient_id}/orders")
def patient_orders(patient_id: str, store: LifecycleStore = Depends(get_store)):
    if not store.get_patient(patient_id):
        raise HTTPException(status_code=404, detail="Patient not found")
    return ok(orders_for_patient(store.list_orders(), patient_id))
