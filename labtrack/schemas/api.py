from typing import Any

from pydantic import BaseModel, Field

from labtrack.schemas.patient import PatientCreate


class OrderCreateRequest(BaseModel):
    """Booking request: an existing patient or a new one, plus catalog test references."""
    patient_id: str | None = Field(default=None, description="Id of an already registered patient")
    patient: PatientCreate | None = Field(default=None, description="Details of a patient to register with the order")
    tests: list[str] = Field(description="Catalog test ids, codes or names")


class StatusChangeRequest(BaseModel):
    status: str = Field(description="Target order status")
    fields: dict[str, Any] = Field(default_factory=dict, description="Fields merged into the order with the transition")
