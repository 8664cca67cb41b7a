from pydantic import Field

from labtrack.schemas.common import CamelModel


class LabTest(CamelModel):
    """A test catalog entry. Reference data, never mutated by the store."""
    id: str = Field(description="Catalog identifier")
    name: str = Field(min_length=1, description="Display name of the test")
    code: str = Field(min_length=1, description="Short test code, e.g. CBC")
    category: str = Field(description="Department or panel the test belongs to")
    price: float = Field(ge=0, description="List price")
    reference_range: str | None = Field(default=None, description="Normal/reference range for the test")
