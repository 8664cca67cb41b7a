from datetime import datetime
from enum import Enum

from pydantic import ConfigDict, Field, field_validator

from labtrack.schemas.common import CamelModel


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class PatientCreate(CamelModel):
    """Patient demographics as supplied at registration."""
    name: str = Field(min_length=1, description="Patient full name")
    age: int = Field(gt=0, description="Age in years")
    gender: Gender
    phone: str = Field(min_length=1, description="Contact phone number")
    email: str | None = Field(default=None, description="Contact email")
    address: str | None = Field(default=None, description="Postal address")

    @field_validator("name", "phone", mode="before")
    @classmethod
    def _strip_required(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("email", "address", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class Patient(PatientCreate):
    model_config = ConfigDict(frozen=True)

    id: str
    created_at: datetime
