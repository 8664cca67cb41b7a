from datetime import datetime
from enum import Enum
from typing import ClassVar

from pydantic import ConfigDict, Field, model_validator

from labtrack.schemas.catalog import LabTest
from labtrack.schemas.common import CamelModel
from labtrack.schemas.patient import Patient


class OrderStatus(str, Enum):
    BOOKED = "booked"
    SAMPLE_RECEIVED = "sample_received"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WORK_IN_PROGRESS = "work_in_progress"
    RESULT_SAVED = "result_saved"
    REPORT_CREATED = "report_created"
    VERIFIED = "verified"
    ON_HOLD = "on_hold"
    DELIVERED = "delivered"

    @property
    def label(self) -> str:
        return STATUS_LABELS[self]


STATUS_LABELS: dict[OrderStatus, str] = {
    OrderStatus.BOOKED: "Booked",
    OrderStatus.SAMPLE_RECEIVED: "Sample Received",
    OrderStatus.ACCEPTED: "Accepted",
    OrderStatus.REJECTED: "Rejected",
    OrderStatus.WORK_IN_PROGRESS: "Work In Progress",
    OrderStatus.RESULT_SAVED: "Result Saved",
    OrderStatus.REPORT_CREATED: "Report Created",
    OrderStatus.VERIFIED: "Verified",
    OrderStatus.ON_HOLD: "On Hold",
    OrderStatus.DELIVERED: "Delivered",
}

# Main flow, in order; rejected and on_hold are side branches.
STATUS_FLOW: tuple[OrderStatus, ...] = (
    OrderStatus.BOOKED,
    OrderStatus.SAMPLE_RECEIVED,
    OrderStatus.ACCEPTED,
    OrderStatus.WORK_IN_PROGRESS,
    OrderStatus.RESULT_SAVED,
    OrderStatus.REPORT_CREATED,
    OrderStatus.VERIFIED,
    OrderStatus.DELIVERED,
)


class TestResult(CamelModel):
    """One measured value for a test on an order."""
    __test__: ClassVar[bool] = False

    test_id: str = Field(description="Catalog id of the measured test")
    test_name: str = Field(description="Name of the lab test")
    value: str = Field(default="", description="Test result value")
    unit: str = Field(default="", description="Unit of measurement")
    reference_range: str = Field(default="", description="Normal/reference range for the test")
    is_abnormal: bool = Field(default=False, description="Flag indicating abnormal result")


class Order(CamelModel):
    """A booked set of tests for one patient.

    ``patient`` is a copy of the patient record taken at booking time, so later
    corrections to the patient do not rewrite order history.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    order_id: str
    barcode: str
    patient: Patient
    tests: list[LabTest] = Field(min_length=1)
    status: OrderStatus = OrderStatus.BOOKED
    created_at: datetime

    sample_received_at: datetime | None = None
    sample_received_by: str | None = None
    accepted_at: datetime | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    results: list[TestResult] | None = None
    report_content: str | None = None
    verified_at: datetime | None = None
    verified_by: str | None = None
    delivered_at: datetime | None = None

    @model_validator(mode="after")
    def _check_status_fields(self):
        if self.status == OrderStatus.REJECTED and not (self.rejection_reason or "").strip():
            raise ValueError("rejected orders require a rejection reason")
        if self.status == OrderStatus.VERIFIED and not (self.verified_by or "").strip():
            raise ValueError("verified orders require the verifier name")
        return self

    def result_for(self, test_id: str) -> TestResult | None:
        for result in self.results or []:
            if result.test_id == test_id:
                return result
        return None


class StoreState(CamelModel):
    """Everything the store owns; the unit of persistence."""
    patients: list[Patient] = Field(default_factory=list)
    orders: list[Order] = Field(default_factory=list)
