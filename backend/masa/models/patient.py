from typing import Optional

from pydantic import Field

from .base import RecordModel, UtcDatetime


class Patient(RecordModel):
    id: str
    # PHI fields - encrypted at rest by both backends
    name: str
    date_of_birth: str = ""
    mrn: str = ""  # Medical Record Number
    organization: Optional[str] = None
    created_by: Optional[str] = None
    created_at: UtcDatetime
    updated_at: UtcDatetime

    @property
    def natural_key(self) -> tuple:
        return natural_key(self.name, self.date_of_birth)


class PatientCreate(RecordModel):
    name: str = Field(min_length=1)
    date_of_birth: str = ""
    mrn: str = ""


class PatientUpdate(RecordModel):
    name: Optional[str] = Field(default=None, min_length=1)
    date_of_birth: Optional[str] = None
    mrn: Optional[str] = None


def natural_key(name: str, date_of_birth: str) -> tuple:
    """(name, date of birth) pair used to match patients lacking an explicit link."""
    return ((name or "").strip(), (date_of_birth or "").strip())
